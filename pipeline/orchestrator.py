"""
Batch refresh orchestration over a platform's handle list.

Each call processes one small batch and returns a resumable `next_offset`;
callers (HTTP polling or the Celery loop task) keep calling until
`remaining == 0`. Due retry-queue entries are drained before new handles are
taken from the offset, and only new handles move the offset forward.
"""
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from supabase import Client

from pipeline.collector import build_collector
from pipeline.key_rotation import NoKeysConfiguredError
from pipeline.normalizer import normalize_many, upsert_posts
from pipeline.platforms import get_platform, normalize_handle
from pipeline.retry_queue import RetryQueue
from pipeline.snapshots import SnapshotWriter
from pipeline.storage import fetch_all

logger = logging.getLogger(__name__)


class NoHandlesError(Exception):
    """The platform has no handles to refresh."""


class RefreshError(Exception):
    """A handle refresh completed collection but could not be persisted."""


class BatchState(Enum):
    IDLE = 'idle'
    BATCH_RUNNING = 'batch_running'
    ADVANCE = 'advance'
    RETRY_PENDING = 'retry_pending'


@dataclass
class HandleResult:
    username: str
    ok: bool
    outcome: str
    from_retry_queue: bool = False
    posts: int = 0
    upserted: int = 0
    snapshots: int = 0
    mode: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    total_usernames: int
    processed: int
    success: int
    failed: int
    remaining: int
    next_offset: Optional[int]
    retry_queue: int
    results: List[HandleResult] = field(default_factory=list)
    failed_usernames: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_handles(supabase: Client, platform: str) -> List[str]:
    """Sorted, deduplicated, normalized handles from users, mappings and participants."""
    tables = get_platform(platform)
    sources = [
        ('users', tables.users_handle_column),
        (tables.mapping_table, tables.mapping_handle_column),
        (tables.participants_table, tables.participants_handle_column),
    ]
    handles = set()
    for table, column in sources:
        rows = fetch_all(lambda: supabase.table(table).select(column).order(column))
        handles.update(normalize_handle(r.get(column)) for r in rows if r.get(column))
    handles.discard('')
    return sorted(handles)


class RefreshOrchestrator:
    """
    Drive collect -> normalize/upsert -> snapshot for one platform, one batch at a time.

    Args:
        supabase: Supabase client instance
        platform: 'tiktok' or 'instagram'
        collector: Object with collect(handle, start, end) -> CollectResult
        retry_queue: RetryQueue for failed handles
        snapshot_writer: SnapshotWriter used after each successful upsert
        concurrency: Handles refreshed in parallel
        delay_ms: Pause between groups of handles
        budget_seconds: No new group starts once this much wall-clock time has passed
    """

    def __init__(
        self,
        supabase: Client,
        platform: str,
        collector,
        retry_queue: RetryQueue,
        snapshot_writer: SnapshotWriter,
        concurrency: int = 3,
        delay_ms: int = 2000,
        budget_seconds: float = 55,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.supabase = supabase
        self.platform = get_platform(platform).platform
        self.collector = collector
        self.retry_queue = retry_queue
        self.snapshot_writer = snapshot_writer
        self.concurrency = max(1, concurrency)
        self.delay_ms = delay_ms
        self.budget_seconds = budget_seconds
        self.sleep = sleep
        self.monotonic = monotonic
        self.state = BatchState.IDLE

    def refresh_handle(self, username: str, start: Optional[str] = None,
                       end: Optional[str] = None) -> HandleResult:
        """Collect, upsert and snapshot one handle. Raises on any failure."""
        username = normalize_handle(username)
        collected = self.collector.collect(username, start, end)
        rows = normalize_many(collected.posts, username, self.platform)
        upserted, failed_batches = upsert_posts(self.supabase, self.platform, rows, sleep=self.sleep)
        if failed_batches:
            raise RefreshError(f"{failed_batches} upsert batches failed for {username}")
        snapshots = self.snapshot_writer.snapshot_handle(username, self.platform)
        return HandleResult(
            username=username,
            ok=True,
            outcome=BatchState.ADVANCE.value,
            posts=len(collected.posts),
            upserted=upserted,
            snapshots=len(snapshots),
            mode=collected.mode
        )

    def attempt(self, username: str, from_retry: bool, start: Optional[str], end: Optional[str]) -> HandleResult:
        try:
            result = self.refresh_handle(username, start, end)
            result.from_retry_queue = from_retry
        except NoKeysConfiguredError:
            raise
        except Exception as e:
            logger.error(f"✗ [{self.platform}:{username}] Refresh failed: {str(e)}")
            try:
                self.retry_queue.enqueue(self.platform, username, str(e))
            except Exception as queue_error:
                logger.error(f"[{self.platform}:{username}] Could not enqueue retry: {str(queue_error)}")
            return HandleResult(
                username=username,
                ok=False,
                outcome=BatchState.RETRY_PENDING.value,
                from_retry_queue=from_retry,
                error=str(e)
            )

        try:
            self.retry_queue.remove(self.platform, username)
        except Exception as queue_error:
            logger.warning(f"[{self.platform}:{username}] Could not clear retry entry: {str(queue_error)}")
        logger.info(f"✓ [{self.platform}:{username}] {result.upserted} posts upserted via {result.mode}")
        return result

    def run_batch(self, offset: int = 0, limit: int = 1, start: Optional[str] = None,
                  end: Optional[str] = None, handles: Optional[List[str]] = None) -> BatchResult:
        """
        Process one batch starting at offset.

        Raises:
            NoHandlesError: If there are no handles at all
        """
        handles = handles if handles is not None else load_handles(self.supabase, self.platform)
        if not handles:
            raise NoHandlesError(f"No {self.platform} handles found")
        offset = max(0, min(offset, len(handles)))
        limit = max(1, limit)

        self.state = BatchState.BATCH_RUNNING
        due = [normalize_handle(r['username']) for r in self.retry_queue.due(self.platform, limit)]
        slots = max(0, limit - len(due))
        fresh = handles[offset:offset + slots]
        due_set = set(due)
        work = [(h, True) for h in due] + [(h, False) for h in fresh if h not in due_set]
        logger.info(
            f"[{self.platform}] Batch at offset {offset}: {len(due)} retries, {len(fresh)} new "
            f"(of {len(handles)})"
        )

        started = self.monotonic()
        results: List[HandleResult] = []
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for i in range(0, len(work), self.concurrency):
                if i > 0:
                    if self.monotonic() - started >= self.budget_seconds:
                        logger.warning(f"[{self.platform}] Time budget spent, stopping batch early")
                        break
                    self.sleep(self.delay_ms / 1000)
                group = work[i:i + self.concurrency]
                results.extend(pool.map(lambda item: self.attempt(item[0], item[1], start, end), group))

        # Offset only moves past the contiguous run of fresh handles that were attempted
        attempted = {r.username for r in results}
        attempted_new = 0
        for h in fresh:
            if h not in attempted:
                break
            attempted_new += 1

        next_offset = offset + attempted_new
        remaining = max(0, len(handles) - next_offset)
        self.state = BatchState.IDLE

        failed = [r.username for r in results if not r.ok]
        return BatchResult(
            total_usernames=len(handles),
            processed=len(results),
            success=len(results) - len(failed),
            failed=len(failed),
            remaining=remaining,
            next_offset=next_offset if remaining > 0 else None,
            retry_queue=self.retry_queue.count(self.platform),
            results=results,
            failed_usernames=failed
        )

    def drain_retries(self, limit: int = 5, start: Optional[str] = None,
                      end: Optional[str] = None) -> List[HandleResult]:
        """Re-attempt due retry entries only, without touching the offset sweep."""
        due = [normalize_handle(r['username']) for r in self.retry_queue.due(self.platform, limit)]
        results = []
        for i, username in enumerate(due):
            if i > 0:
                self.sleep(self.delay_ms / 1000)
            results.append(self.attempt(username, True, start, end))
        return results


def build_orchestrator(supabase: Client, platform: str, settings, **overrides) -> RefreshOrchestrator:
    """Wire an orchestrator with production collectors from settings."""
    options = {
        'concurrency': settings.refresh_concurrency,
        'delay_ms': settings.refresh_delay_ms,
        'budget_seconds': settings.refresh_budget_seconds,
    }
    options.update({k: v for k, v in overrides.items() if v is not None})
    return RefreshOrchestrator(
        supabase,
        platform,
        build_collector(platform, settings, supabase=supabase),
        RetryQueue(supabase),
        SnapshotWriter(supabase, window_days=settings.snapshot_window_days),
        **options
    )


def ensure_configured(platform: str, settings) -> None:
    """
    Fail fast when no provider can serve the platform.

    Raises:
        NoKeysConfiguredError: If the platform needs RapidAPI keys and none are set
    """
    if settings.rapidapi_keys:
        return
    if get_platform(platform).platform == 'tiktok' and settings.aggregator_enabled:
        return
    raise NoKeysConfiguredError()
