"""
Cumulative snapshot writer.

After a refresh, an owner's totals are recomputed from posts_daily across all
of the owner's handles and appended to social_metrics_history. The latest
totals are also upserted into social_metrics.

Totals cover a trailing window (SNAPSHOT_WINDOW_DAYS, default 60), not the
account's lifetime. A post that ages out of the window between two snapshots
lowers the total; accrual clamps that to zero, so the loss is not visible as
negative growth.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from supabase import Client

from pipeline.platforms import METRICS, PlatformTables, get_platform, normalize_handle
from pipeline.storage import fetch_all
from pipeline.timeutils import to_date

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_owner_ids(supabase: Client, tables: PlatformTables, handle: str) -> List[str]:
    """Owners a handle belongs to, from users and the handle mapping table."""
    handle = normalize_handle(handle)
    owners: List[str] = []

    direct = supabase.table('users')\
        .select('id')\
        .eq(tables.users_handle_column, handle)\
        .execute()
    for row in direct.data or []:
        if row.get('id') and str(row['id']) not in owners:
            owners.append(str(row['id']))

    mapped = supabase.table(tables.mapping_table)\
        .select('user_id')\
        .eq(tables.mapping_handle_column, handle)\
        .execute()
    for row in mapped.data or []:
        if row.get('user_id') and str(row['user_id']) not in owners:
            owners.append(str(row['user_id']))

    return owners


def owner_handles(supabase: Client, tables: PlatformTables, owner_id: str) -> List[str]:
    handles = set()

    user = supabase.table('users')\
        .select(tables.users_handle_column)\
        .eq('id', owner_id)\
        .execute()
    for row in user.data or []:
        if row.get(tables.users_handle_column):
            handles.add(normalize_handle(row[tables.users_handle_column]))

    mapped = supabase.table(tables.mapping_table)\
        .select(tables.mapping_handle_column)\
        .eq('user_id', owner_id)\
        .execute()
    for row in mapped.data or []:
        if row.get(tables.mapping_handle_column):
            handles.add(normalize_handle(row[tables.mapping_handle_column]))

    return sorted(h for h in handles if h)


def sum_posts(rows: List[Dict[str, Any]], tables: PlatformTables) -> Dict[str, int]:
    totals = {metric: 0 for metric in METRICS}
    for row in rows:
        for metric, column in tables.metric_columns.items():
            if column:
                totals[metric] += int(row.get(column) or 0)
    return totals


class SnapshotWriter:
    """
    Append cumulative snapshots for owners.

    Args:
        supabase: Supabase client instance
        window_days: Trailing window the totals cover
        clock: Callable returning an aware datetime, used for captured_at
    """

    def __init__(self, supabase: Client, window_days: int = 60,
                 clock: Callable[[], datetime] = _utcnow):
        self.supabase = supabase
        self.window_days = window_days
        self.clock = clock

    def default_window(self):
        today = self.clock().date()
        return today - timedelta(days=self.window_days - 1), today

    def compute_totals(self, tables: PlatformTables, handles: List[str],
                       window_start, window_end) -> Dict[str, int]:
        if not handles:
            return {metric: 0 for metric in METRICS}

        start_str = to_date(window_start).isoformat()
        end_str = to_date(window_end).isoformat()
        rows = fetch_all(lambda: self.supabase.table(tables.posts_table)
                         .select(tables.select_columns())
                         .in_('username', handles)
                         .gte('post_date', start_str)
                         .lte('post_date', end_str)
                         .order(tables.post_key))
        return sum_posts(rows, tables)

    def snapshot(self, owner_id: str, platform: str,
                 window_start=None, window_end=None) -> Dict[str, Any]:
        """
        Recompute one owner's totals and append a history row.

        Returns:
            The appended social_metrics_history row
        """
        tables = get_platform(platform)
        if window_start is None or window_end is None:
            default_start, default_end = self.default_window()
            window_start = window_start or default_start
            window_end = window_end or default_end

        handles = owner_handles(self.supabase, tables, owner_id)
        totals = self.compute_totals(tables, handles, window_start, window_end)
        captured_at = self.clock().isoformat()

        self.supabase.table('social_metrics')\
            .upsert({
                'user_id': owner_id,
                'platform': tables.platform,
                **totals,
                'last_updated': captured_at
            }, on_conflict='user_id,platform')\
            .execute()

        history_row = {
            'user_id': owner_id,
            'platform': tables.platform,
            **totals,
            'captured_at': captured_at
        }
        self.supabase.table('social_metrics_history').insert(history_row).execute()

        logger.info(
            f"✓ Snapshot {tables.platform}/{owner_id}: views={totals['views']} likes={totals['likes']} "
            f"({len(handles)} handles, {to_date(window_start)}..{to_date(window_end)})"
        )
        return history_row

    def snapshot_handle(self, handle: str, platform: str) -> List[Dict[str, Any]]:
        """Snapshot every owner the handle resolves to. Unmapped handles write nothing."""
        tables = get_platform(platform)
        owners = resolve_owner_ids(self.supabase, tables, handle)
        if not owners:
            logger.info(f"[{tables.platform}:{handle}] No owner mapped, snapshot skipped")
            return []
        return [self.snapshot(owner_id, platform) for owner_id in owners]


def list_owner_ids(supabase: Client, platform: str) -> List[str]:
    """Every owner with at least one handle on the platform."""
    tables = get_platform(platform)
    owners = set()

    users = fetch_all(lambda: supabase.table('users')
                      .select(f"id, {tables.users_handle_column}")
                      .order('id'))
    for row in users:
        if row.get(tables.users_handle_column):
            owners.add(str(row['id']))

    mapped = fetch_all(lambda: supabase.table(tables.mapping_table)
                       .select('user_id')
                       .order('user_id'))
    for row in mapped:
        if row.get('user_id'):
            owners.add(str(row['user_id']))

    return sorted(owners)


def sync_snapshots(writer: SnapshotWriter, platform: str,
                   owner_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Rewrite snapshots for many owners, collecting per-owner failures."""
    owner_ids = owner_ids if owner_ids is not None else list_owner_ids(writer.supabase, platform)
    written = 0
    failures: List[Dict[str, str]] = []
    for owner_id in owner_ids:
        try:
            writer.snapshot(owner_id, platform)
            written += 1
        except Exception as e:
            logger.error(f"✗ Snapshot {platform}/{owner_id} failed: {str(e)}")
            failures.append({'user_id': owner_id, 'error': str(e)})
    return {'platform': platform, 'owners': len(owner_ids), 'written': written, 'failed': failures}
