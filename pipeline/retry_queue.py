"""
Persisted retry queue for handles whose refresh failed.

One row per (platform, username) in refresh_retry_queue. Each failure bumps
retry_count and schedules the next attempt
clamp(2 * 2^min(retry_count, 5), 2, 360) minutes out.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from supabase import Client

from pipeline.platforms import normalize_handle

logger = logging.getLogger(__name__)

TABLE = 'refresh_retry_queue'
MIN_BACKOFF_MINUTES = 2
MAX_BACKOFF_MINUTES = 360


def backoff_minutes(retry_count: int) -> int:
    return min(MAX_BACKOFF_MINUTES, max(MIN_BACKOFF_MINUTES, 2 * (2 ** min(retry_count, 5))))


class RetryQueue:
    def __init__(self, supabase: Client, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.supabase = supabase
        self.clock = clock

    def enqueue(self, platform: str, username: str, error: str) -> Dict[str, Any]:
        """
        Record a failure and schedule the next attempt.

        Returns:
            The upserted queue row
        """
        username = normalize_handle(username)
        existing = self.supabase.table(TABLE)\
            .select('retry_count')\
            .eq('platform', platform)\
            .eq('username', username)\
            .limit(1)\
            .execute()
        count = int((existing.data[0].get('retry_count') or 0) if existing.data else 0)

        now = self.clock()
        minutes = backoff_minutes(count)
        row = {
            'platform': platform,
            'username': username,
            'last_error': (error or '')[:500],
            'retry_count': count + 1,
            'last_error_at': now.isoformat(),
            'next_retry_at': (now + timedelta(minutes=minutes)).isoformat()
        }
        self.supabase.table(TABLE).upsert(row, on_conflict='platform,username').execute()
        logger.info(f"[{platform}:{username}] Queued for retry #{count + 1} in {minutes} min")
        return row

    def due(self, platform: str, limit: int = 1) -> List[Dict[str, Any]]:
        """Entries whose next_retry_at has passed, oldest first."""
        if limit <= 0:
            return []
        result = self.supabase.table(TABLE)\
            .select('platform, username, retry_count, last_error, next_retry_at')\
            .eq('platform', platform)\
            .lte('next_retry_at', self.clock().isoformat())\
            .order('next_retry_at')\
            .limit(limit)\
            .execute()
        return result.data or []

    def remove(self, platform: str, username: str) -> None:
        self.supabase.table(TABLE)\
            .delete()\
            .eq('platform', platform)\
            .eq('username', normalize_handle(username))\
            .execute()

    def count(self, platform: str) -> int:
        result = self.supabase.table(TABLE)\
            .select('username')\
            .eq('platform', platform)\
            .execute()
        return len(result.data or [])
