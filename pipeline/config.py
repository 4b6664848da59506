"""
Environment-driven settings for the ingestion and accrual pipeline.

All values come from the process environment (populated by load_dotenv() at
startup). Numeric values fall back to their defaults when unset or malformed.
"""
import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_AGGREGATOR_BASE = 'http://202.10.44.90/api/v1'
DEFAULT_TIKTOK_HOST = 'tiktok-scraper7.p.rapidapi.com'
DEFAULT_CUTOFF_DATE = '2025-12-17'


def _get_env(name: str, default: Optional[str] = None, required: bool = False) -> str:
    value = os.getenv(name, default)
    if required and not value:
        raise ValueError(f"Missing required env var: {name}")
    return (value or '').strip()


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name)
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using {default}")
        return default


def _get_flag(name: str, default: bool = True) -> bool:
    raw = _get_env(name)
    if not raw:
        return default
    return raw.lower() not in ('0', 'false', 'no', 'off')


def _split_keys(raw: str) -> List[str]:
    return [k.strip() for k in (raw or '').split(',') if k.strip()]


def load_rapidapi_keys() -> List[str]:
    """
    Build the RapidAPI key pool: premium key first, then the shared pool.

    Returns:
        Ordered list of distinct keys. Index 0 is the premium key when
        RAPIDAPI_KEY is set.
    """
    premium = _get_env('RAPIDAPI_KEY')
    pool_raw = (
        _get_env('RAPID_API_KEYS')
        or _get_env('RAPIDAPI_KEYS')
        or _get_env('RAPID_KEY_BACKFILL')
    )
    keys: List[str] = [premium] if premium else []
    for key in _split_keys(pool_raw):
        if key not in keys:
            keys.append(key)
    return keys


@dataclass
class Settings:
    rapidapi_keys: List[str] = field(default_factory=list)
    has_premium_key: bool = False
    tiktok_host: str = DEFAULT_TIKTOK_HOST
    instagram_host: str = 'instagram-media-api.p.rapidapi.com'
    ig_scraper_host: str = 'instagram-scraper-api11.p.rapidapi.com'
    ig_fast_host: str = 'instagram-api-fast-reliable-data-scraper.p.rapidapi.com'
    ig_best_host: str = 'instagram-best-experience.p.rapidapi.com'
    aggregator_base: str = DEFAULT_AGGREGATOR_BASE
    aggregator_enabled: bool = True
    aggregator_per_page: int = 100
    aggregator_rate_ms: int = 200
    aggregator_max_pages: int = 10
    snapshot_window_days: int = 60
    cutoff_date: str = DEFAULT_CUTOFF_DATE
    refresh_delay_ms: int = 2000
    refresh_concurrency: int = 3
    refresh_budget_seconds: int = 55

    @classmethod
    def from_env(cls) -> 'Settings':
        keys = load_rapidapi_keys()
        return cls(
            rapidapi_keys=keys,
            has_premium_key=bool(_get_env('RAPIDAPI_KEY')),
            tiktok_host=_get_env('RAPIDAPI_TIKTOK_HOST', DEFAULT_TIKTOK_HOST),
            instagram_host=_get_env('RAPIDAPI_INSTAGRAM_HOST', cls.instagram_host),
            ig_scraper_host=_get_env('RAPIDAPI_IG_SCRAPER_HOST', cls.ig_scraper_host),
            ig_fast_host=_get_env('RAPIDAPI_IG_FAST_HOST', cls.ig_fast_host),
            ig_best_host=_get_env('RAPIDAPI_IG_BEST_HOST', cls.ig_best_host),
            aggregator_base=_get_env('AGGREGATOR_API_BASE', DEFAULT_AGGREGATOR_BASE).rstrip('/'),
            aggregator_enabled=_get_flag('AGGREGATOR_ENABLED', True),
            aggregator_per_page=_get_int('AGGREGATOR_PER_PAGE', 100),
            aggregator_rate_ms=_get_int('AGGREGATOR_RATE_MS', 200),
            aggregator_max_pages=_get_int('AGGREGATOR_MAX_PAGES', 10),
            snapshot_window_days=_get_int('SNAPSHOT_WINDOW_DAYS', 60),
            cutoff_date=_get_env('ACCRUAL_CUTOFF_DATE', DEFAULT_CUTOFF_DATE),
            refresh_delay_ms=_get_int('REFRESH_DELAY_MS', 2000),
            refresh_concurrency=max(1, _get_int('REFRESH_CONCURRENCY', 3)),
            refresh_budget_seconds=_get_int('REFRESH_BUDGET_SECONDS', 55),
        )
