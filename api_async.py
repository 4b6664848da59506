"""
Batch refresh and background job endpoints.

Refresh-all runs exactly one small batch per call and hands back
`next_offset`; callers poll until `remaining` is 0. The /async variants push
the same work onto Celery instead.
"""
import logging
from typing import Any, Dict

from celery.result import AsyncResult
from flask import jsonify, request

from celery_config import celery
from pipeline.config import Settings
from pipeline.key_rotation import NoKeysConfiguredError
from pipeline.orchestrator import NoHandlesError, build_orchestrator, ensure_configured
from pipeline.platforms import PLATFORMS, get_platform
from pipeline.retry_queue import RetryQueue
from tasks import refresh_platform_batch, sync_platform_snapshots

logger = logging.getLogger(__name__)


def _int_field(data: Dict[str, Any], name: str, default: int, minimum: int = 0, maximum: int = 10000) -> int:
    value = data.get(name, default)
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f'"{name}" must be an integer')
    try:
        value = int(value)
    except ValueError:
        raise ValueError(f'"{name}" must be an integer')
    if value < minimum or value > maximum:
        raise ValueError(f'"{name}" must be between {minimum} and {maximum}')
    return value


def register_async_endpoints(app, get_supabase_client, limiter=None):
    """
    Register batch and job endpoints on the Flask app.

    Args:
        app: Flask application instance
        get_supabase_client: Function to get Supabase client
        limiter: Optional Flask-Limiter instance
    """

    def limit(rule):
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule)

    @app.route('/api/admin/<platform>/refresh-all', methods=['POST'])
    @limit("120 per hour")
    def refresh_all(platform: str):
        """
        Run one refresh batch for a platform.

        Expected JSON payload (all optional):
        {
            "offset": 0,          // position in the sorted handle list
            "limit": 1,           // handles per batch
            "delay_ms": 2000,     // pause between handle groups
            "concurrency": 3,     // parallel handles
            "start": "2026-01-01",
            "end": "2026-01-31"
        }

        Returns:
        {
            "success": true,
            "total_usernames": 120,
            "processed": 1,
            "success_count": 1,
            "failed": 0,
            "remaining": 119,
            "next_offset": 1,
            "retry_queue": 3,
            "results": [...],
            "failed_usernames": []
        }
        """
        try:
            platform = get_platform(platform).platform
            data = request.get_json(silent=True) or {}
            offset = _int_field(data, 'offset', 0)
            batch_limit = _int_field(data, 'limit', 1, minimum=1, maximum=50)
            delay_ms = _int_field(data, 'delay_ms', 2000, maximum=60000)
            concurrency = _int_field(data, 'concurrency', 3, minimum=1, maximum=8)

            settings = Settings.from_env()
            ensure_configured(platform, settings)

            orchestrator = build_orchestrator(
                get_supabase_client(),
                platform,
                settings,
                delay_ms=delay_ms,
                concurrency=concurrency
            )
            result = orchestrator.run_batch(
                offset=offset,
                limit=batch_limit,
                start=data.get('start'),
                end=data.get('end')
            ).to_dict()

            logger.info(
                f"[Batch {platform}@{offset}] success={result['success']} failed={result['failed']} "
                f"next_offset={result['next_offset']}"
            )
            result['success_count'] = result.pop('success')
            return jsonify({'success': True, 'platform': platform, **result})

        except NoKeysConfiguredError as e:
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500
        except NoHandlesError as e:
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
            logger.error(f"Error running refresh batch: {str(e)}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/admin/<platform>/refresh-all/async', methods=['POST'])
    @limit("10 per hour")
    def refresh_all_async(platform: str):
        """
        ASYNC: Queue a self-continuing refresh over every handle.

        Returns:
        {
            "success": true,
            "task_id": "celery-task-id",
            "status_url": "/api/job-status/celery-task-id"
        }
        """
        try:
            platform = get_platform(platform).platform
            data = request.get_json(silent=True) or {}
            offset = _int_field(data, 'offset', 0)
            batch_limit = _int_field(data, 'limit', 5, minimum=1, maximum=50)
            ensure_configured(platform, Settings.from_env())

            task = refresh_platform_batch.delay(
                platform=platform,
                offset=offset,
                limit=batch_limit,
                start=data.get('start'),
                end=data.get('end')
            )
            logger.info(f"Queued {platform} refresh from offset {offset} as task {task.id}")

            return jsonify({
                'success': True,
                'platform': platform,
                'task_id': task.id,
                'status_url': f'/api/job-status/{task.id}',
                'message': 'Refresh queued. Each batch re-queues the next until done.'
            }), 202

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
            logger.error(f"Error queueing refresh: {str(e)}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/cron/sync-snapshots', methods=['POST'])
    @limit("30 per hour")
    def sync_snapshots_endpoint():
        """Queue a snapshot rewrite for every owner of one platform (default: all)."""
        try:
            data = request.get_json(silent=True) or {}
            requested = data.get('platform')
            platforms = [get_platform(requested).platform] if requested else list(PLATFORMS)

            tasks = {name: sync_platform_snapshots.delay(platform=name).id for name in platforms}
            logger.info(f"Queued snapshot sync for {', '.join(platforms)}")

            return jsonify({
                'success': True,
                'task_ids': tasks
            }), 202

        except ValueError as e:
            return jsonify({
                'success': False,
                'error': str(e)
            }), 400
        except Exception as e:
            logger.error(f"Error queueing snapshot sync: {str(e)}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/job-status/<task_id>', methods=['GET'])
    def get_job_status(task_id: str):
        """
        Get status of a background task.

        Returns:
        {
            "success": true,
            "task_id": "...",
            "status": "SUCCESS",
            "result": {...}
        }
        """
        try:
            task = AsyncResult(task_id, app=celery)
            payload = {
                'success': True,
                'task_id': task_id,
                'status': task.state
            }
            if task.successful():
                payload['result'] = task.result
            elif task.failed():
                payload['error_message'] = str(task.result)
            return jsonify(payload)

        except Exception as e:
            logger.error(f"Error fetching task status: {str(e)}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500

    @app.route('/api/admin/<platform>/retry-queue', methods=['GET'])
    def retry_queue_status(platform: str):
        """Size of the retry queue and the entries currently due."""
        try:
            platform = get_platform(platform).platform
            queue = RetryQueue(get_supabase_client())
            due = queue.due(platform, limit=int(request.args.get('limit', 50)))
            return jsonify({
                'success': True,
                'platform': platform,
                'total': queue.count(platform),
                'due': due
            })

        except ValueError as e:
            return jsonify({
                'success': False,
                'error': str(e)
            }), 400
        except Exception as e:
            logger.error(f"Error reading retry queue: {str(e)}")
            return jsonify({
                'success': False,
                'error': str(e)
            }), 500
