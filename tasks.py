"""
Background tasks for refresh and snapshot jobs using Celery.
"""
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from celery import Task
from celery.exceptions import SoftTimeLimitExceeded
from dotenv import load_dotenv

from celery_config import celery
from pipeline.config import Settings
from pipeline.db import get_supabase_client
from pipeline.orchestrator import NoHandlesError, build_orchestrator
from pipeline.platforms import PLATFORMS, get_platform
from pipeline.snapshots import SnapshotWriter, sync_snapshots

load_dotenv()

logger = logging.getLogger(__name__)


class BaseTask(Task):
    """Base task with error handling and retry logic."""

    autoretry_for = (Exception,)
    dont_autoretry_for = (NoHandlesError, ValueError, SoftTimeLimitExceeded)
    retry_kwargs = {'max_retries': 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True


@celery.task(base=BaseTask, bind=True, name='tasks.refresh_handle')
def refresh_handle(
    self,
    platform: str,
    username: str,
    start: Optional[str] = None,
    end: Optional[str] = None
) -> Dict[str, Any]:
    """
    Refresh one handle: collect, upsert posts, append snapshots.

    Failures are recorded in the retry queue rather than retried by Celery.

    Args:
        platform: 'tiktok' or 'instagram'
        username: Handle to refresh
        start: Optional first post date (YYYY-MM-DD)
        end: Optional last post date (YYYY-MM-DD)

    Returns:
        Per-handle result dictionary
    """
    platform = get_platform(platform).platform
    orchestrator = build_orchestrator(get_supabase_client(), platform, Settings.from_env())
    result = orchestrator.attempt(username, False, start, end)
    return asdict(result)


@celery.task(base=BaseTask, bind=True, name='tasks.refresh_platform_batch')
def refresh_platform_batch(
    self,
    platform: str,
    offset: int = 0,
    limit: int = 5,
    delay_ms: Optional[int] = None,
    start: Optional[str] = None,
    end: Optional[str] = None
) -> Dict[str, Any]:
    """
    Run one orchestrator batch and re-queue itself at next_offset until done.

    Args:
        platform: 'tiktok' or 'instagram'
        offset: Position in the sorted handle list
        limit: Handles per batch
        delay_ms: Pause between handle groups (defaults to REFRESH_DELAY_MS)

    Returns:
        Batch summary (see BatchResult)
    """
    try:
        platform = get_platform(platform).platform
        orchestrator = build_orchestrator(
            get_supabase_client(), platform, Settings.from_env(), delay_ms=delay_ms
        )
        result = orchestrator.run_batch(offset=offset, limit=limit, start=start, end=end)

        logger.info(
            f"[Batch {platform}@{offset}] processed={result.processed} success={result.success} "
            f"failed={result.failed} remaining={result.remaining}"
        )

        if result.next_offset is not None:
            refresh_platform_batch.apply_async(kwargs={
                'platform': platform,
                'offset': result.next_offset,
                'limit': limit,
                'delay_ms': delay_ms,
                'start': start,
                'end': end
            })

        return result.to_dict()

    except SoftTimeLimitExceeded:
        logger.error(f"[Batch {platform}@{offset}] Task exceeded time limit")
        raise
    except NoHandlesError as e:
        logger.warning(f"[Batch {platform}@{offset}] {str(e)}")
        return {'success': 0, 'failed': 0, 'remaining': 0, 'next_offset': None, 'error': str(e)}


@celery.task(base=BaseTask, bind=True, name='tasks.drain_retry_queue')
def drain_retry_queue(self, platform: Optional[str] = None, limit: int = 5) -> Dict[str, Any]:
    """Re-attempt due retry-queue entries for one platform, or for all of them."""
    platforms = [get_platform(platform).platform] if platform else list(PLATFORMS)
    supabase = get_supabase_client()
    settings = Settings.from_env()

    summary = {}
    for name in platforms:
        results = build_orchestrator(supabase, name, settings).drain_retries(limit=limit)
        summary[name] = {
            'attempted': len(results),
            'success': sum(1 for r in results if r.ok),
            'failed': [r.username for r in results if not r.ok]
        }
        logger.info(f"[Retry {name}] attempted={len(results)} success={summary[name]['success']}")
    return summary


@celery.task(base=BaseTask, bind=True, name='tasks.sync_platform_snapshots')
def sync_platform_snapshots(self, platform: str = 'tiktok') -> Dict[str, Any]:
    """Append a fresh cumulative snapshot for every owner on a platform."""
    platform = get_platform(platform).platform
    settings = Settings.from_env()
    writer = SnapshotWriter(get_supabase_client(), window_days=settings.snapshot_window_days)
    summary = sync_snapshots(writer, platform)
    logger.info(f"[Snapshots {platform}] written={summary['written']}/{summary['owners']}")
    return summary
