"""
Social Metrics API

A Flask API that refreshes TikTok/Instagram post metrics from scraper
providers into Supabase and serves accrual (daily delta) series computed from
cumulative snapshot history.

PRODUCTION SETUP:
- Background refresh batches with Celery
- Logging and error tracking with Sentry
- Rate limiting for API protection
"""

from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import os
import logging
import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.celery import CeleryIntegration
from dotenv import load_dotenv
from dataclasses import asdict
from typing import Optional

from pipeline.accrual import accrue, add_series, campaign_accrual, campaign_postdate, series_sum, INTERVALS
from pipeline.config import Settings
from pipeline.db import get_supabase_client
from pipeline.key_rotation import NoKeysConfiguredError
from pipeline.orchestrator import build_orchestrator, ensure_configured
from pipeline.platforms import METRICS, PLATFORMS, get_platform
from pipeline.timeutils import resolve_window

# Load environment variables from .env file
load_dotenv()

# ===================================================================
# LOGGING CONFIGURATION
# ===================================================================
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

# ===================================================================
# SENTRY ERROR TRACKING
# ===================================================================
if os.getenv('SENTRY_DSN'):
    sentry_sdk.init(
        dsn=os.getenv('SENTRY_DSN'),
        integrations=[
            FlaskIntegration(),
            CeleryIntegration()
        ],
        traces_sample_rate=0.1,  # 10% performance monitoring
        environment=os.getenv('FLASK_ENV', 'development'),
        release=os.getenv('APP_VERSION', '1.0.0')
    )
    logger.info("Sentry error tracking initialized")
else:
    logger.warning("SENTRY_DSN not set, error tracking disabled")

# ===================================================================
# FLASK APP INITIALIZATION
# ===================================================================
app = Flask(__name__)

# CORS configuration with restricted origins
allowed_origins = os.getenv('ALLOWED_ORIGINS', '*').split(',')
CORS(app, resources={
    r"/api/*": {
        "origins": allowed_origins,
        "methods": ["GET", "POST"],
        "allow_headers": ["Content-Type", "X-API-Key"]
    }
})

# In-memory storage keeps rate limiting independent of the Redis broker
limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=["200 per hour"],
    storage_uri='memory://'
)

logger.info("Flask app initialized with CORS and rate limiting")


# ===================================================================
# REQUEST HELPERS
# ===================================================================

def get_param(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read a parameter from the query string, falling back to the JSON body."""
    value = request.args.get(name)
    if value is None:
        body = request.get_json(silent=True) or {}
        value = body.get(name)
    if value is None or value == '':
        return default
    return str(value)


def get_flag(name: str, default: bool) -> bool:
    value = get_param(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def get_window():
    days = get_param('days')
    return resolve_window(
        start=get_param('start'),
        end=get_param('end'),
        days=int(days) if days and days.isdigit() else None
    )


# ===================================================================
# SINGLE-HANDLE REFRESH
# ===================================================================

def refresh_single(platform: str, username: str):
    try:
        start = get_param('start')
        end = get_param('end')
        if start and end and start > end:
            return jsonify({
                'success': False,
                'error': '"start" must not be after "end"'
            }), 400

        settings = Settings.from_env()
        ensure_configured(platform, settings)
        orchestrator = build_orchestrator(get_supabase_client(), platform, settings)
        if platform == 'tiktok' and get_flag('rapid', False):
            orchestrator.collector.aggregator = None

        result = orchestrator.attempt(username, False, start, end)
        status_code = 200 if result.ok else 502
        return jsonify({'success': result.ok, 'platform': platform, **asdict(result)}), status_code

    except NoKeysConfiguredError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500
    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400
    except Exception as e:
        logger.error(f"Error refreshing {platform}:{username}: {str(e)}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@app.route('/api/fetch-metrics/<username>', methods=['GET', 'POST'])
@limiter.limit("60 per hour")
def fetch_tiktok_metrics(username: str):
    """
    Refresh one TikTok handle: collect posts, upsert tiktok_posts_daily,
    append snapshots for the owners the handle maps to.

    Parameters (query or JSON body):
        start, end: Optional YYYY-MM-DD post-date window
        rapid: 1 to skip the aggregator and use RapidAPI directly
    """
    return refresh_single('tiktok', username)


@app.route('/api/fetch-ig/<username>', methods=['GET', 'POST'])
@limiter.limit("60 per hour")
def fetch_instagram_metrics(username: str):
    """Refresh one Instagram handle."""
    return refresh_single('instagram', username)


# ===================================================================
# ACCRUAL ENDPOINTS
# ===================================================================

@app.route('/api/accrual', methods=['GET'])
def owner_accrual():
    """
    Daily accrual series for a set of owners.

    Query:
        user_ids: Comma-separated owner ids (required)
        platform: tiktok | instagram | all (default all)
        start, end: YYYY-MM-DD; or days: 7 | 28 | 60 (default 7)
        cutoff: YYYY-MM-DD (default ACCRUAL_CUTOFF_DATE)
        mask: 0/1 (default 1)

    Returns:
    {
        "success": true,
        "start": "2026-01-01",
        "end": "2026-01-07",
        "series": {"tiktok": [...], "instagram": [...], "total": [...]},
        "totals": {"views": 0, ...}
    }
    """
    try:
        user_ids = [u.strip() for u in (get_param('user_ids') or '').split(',') if u.strip()]
        if not user_ids:
            return jsonify({
                'success': False,
                'error': '"user_ids" is required'
            }), 400

        platform = (get_param('platform', 'all') or 'all').lower()
        platforms = list(PLATFORMS) if platform == 'all' else [get_platform(platform).platform]
        start, end = get_window()
        settings = Settings.from_env()
        cutoff = get_param('cutoff', settings.cutoff_date)
        mask = get_flag('mask', True)

        supabase = get_supabase_client()
        series = {}
        for name in platforms:
            series[name] = accrue(supabase, user_ids, name, start, end, cutoff=cutoff, mask=mask)

        total = add_series(*[
            {p['date']: {m: p[m] for m in METRICS} for p in points} for points in series.values()
        ])
        series['total'] = [{'date': k, **v} for k, v in total.items()]

        return jsonify({
            'success': True,
            'start': start.isoformat(),
            'end': end.isoformat(),
            'cutoff_applied': cutoff if mask else None,
            'series': series,
            'totals': series_sum(total)
        })

    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400
    except Exception as e:
        logger.error(f"Error computing owner accrual: {str(e)}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@app.route('/api/campaigns/<campaign_id>/accrual', methods=['GET'])
def campaign_accrual_endpoint(campaign_id: str):
    """
    Campaign dashboard series.

    Query:
        start, end | days (7/28/60, default 7)
        mode: accrual (default) | postdate
        cutoff: YYYY-MM-DD (default ACCRUAL_CUTOFF_DATE)
        mask: 0/1 (default 1), trim: 0/1 (default 0)
        snapshots_only: 0/1 (default 1)
        respect_hashtags: 0/1 (default 0)
        interval: daily | weekly | monthly (postdate mode only)
    """
    try:
        start, end = get_window()
        mode = (get_param('mode', 'accrual') or 'accrual').lower()
        respect_hashtags = get_flag('respect_hashtags', False)
        supabase = get_supabase_client()

        if mode == 'postdate':
            interval = (get_param('interval', 'daily') or 'daily').lower()
            if interval not in INTERVALS:
                return jsonify({
                    'success': False,
                    'error': f'"interval" must be one of {", ".join(INTERVALS)}'
                }), 400
            payload = campaign_postdate(supabase, campaign_id, start, end,
                                        interval=interval, respect_hashtags=respect_hashtags)
        elif mode == 'accrual':
            settings = Settings.from_env()
            payload = campaign_accrual(
                supabase,
                campaign_id,
                start,
                end,
                cutoff=get_param('cutoff', settings.cutoff_date),
                mask=get_flag('mask', True),
                trim=get_flag('trim', False),
                snapshots_only=get_flag('snapshots_only', True),
                respect_hashtags=respect_hashtags
            )
        else:
            return jsonify({
                'success': False,
                'error': '"mode" must be "accrual" or "postdate"'
            }), 400

        return jsonify({'success': True, 'campaign_id': campaign_id, **payload})

    except LookupError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 404
    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400
    except Exception as e:
        logger.error(f"Error computing campaign accrual for {campaign_id}: {str(e)}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({
        'status': 'healthy',
        'service': 'Social Metrics API',
        'version': os.getenv('APP_VERSION', '1.0.0'),
        'async_enabled': True
    })


@app.route('/healthz', methods=['GET'])
@limiter.exempt
def healthz():
    """Plain liveness probe."""
    return 'ok', 200


# ===================================================================
# REGISTER ASYNC ENDPOINTS
# ===================================================================
from api_async import register_async_endpoints  # noqa: E402

register_async_endpoints(app, get_supabase_client, limiter)
logger.info("✅ Async endpoints registered successfully")


# ===================================================================
# APPLICATION ENTRY POINT
# ===================================================================
if __name__ == '__main__':
    port = int(os.environ.get("PORT", 5001))
    debug = os.getenv('FLASK_ENV') != 'production'

    logger.info("=" * 60)
    logger.info("Social Metrics API Starting...")
    logger.info(f"Port: {port}")
    logger.info(f"Environment: {os.getenv('FLASK_ENV', 'development')}")
    logger.info(f"Debug mode: {debug}")
    logger.info("=" * 60)

    app.run(host='0.0.0.0', port=port, debug=debug)
