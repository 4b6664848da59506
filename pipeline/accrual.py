"""
Accrual aggregation: daily deltas from cumulative snapshot history.

For every owner the last snapshot of each calendar day is kept, seeded by the
snapshot of the day before the window (the baseline). Each day that has both
a current and a previous snapshot contributes max(0, current - previous) per
metric; previous then moves to current. Owner deltas are summed per day into
a zero-filled series.

Days strictly before the cutoff date can be masked to zero (kept on the axis)
or trimmed off entirely. When history is sparse, raw posts_daily counters can
fill empty days; those values are point-in-time totals grouped by post date,
not true deltas.
"""
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd
from supabase import Client

from pipeline.hashtags import HashtagPredicate
from pipeline.platforms import METRICS, PLATFORMS, PlatformTables, get_platform, normalize_handle
from pipeline.storage import fetch_all
from pipeline.timeutils import iter_days, ms_to_date_str, parse_ms, to_date

logger = logging.getLogger(__name__)

Series = Dict[str, Dict[str, int]]


def zero_metrics() -> Dict[str, int]:
    return {metric: 0 for metric in METRICS}


def _metric(row: Dict[str, Any], metric: str) -> int:
    try:
        return int(float(row.get(metric) or 0))
    except (TypeError, ValueError):
        return 0


# ===================================================================
# PURE DIFFERENCING
# ===================================================================

def last_snapshot_per_day(rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """
    Reduce history rows to {owner: {date: last snapshot of that day}}.

    Rows are re-sorted by capture time so callers need not rely on storage order.
    """
    stamped = []
    for row in rows:
        ms = parse_ms(row.get('captured_at'))
        if ms is None or not row.get('user_id'):
            continue
        stamped.append((str(row['user_id']), ms, row))
    stamped.sort(key=lambda item: (item[0], item[1]))

    per_owner: Dict[str, Dict[str, Dict[str, Any]]] = {}
    for owner, ms, row in stamped:
        per_owner.setdefault(owner, {})[ms_to_date_str(ms)] = row
    return per_owner


def owner_deltas(daily: Dict[str, Dict[str, Any]], start, end) -> Series:
    """Per-day deltas for one owner, seeded by the snapshot on start - 1."""
    start_d = to_date(start)
    prev = daily.get((start_d - timedelta(days=1)).isoformat())
    out: Series = {}
    for day in iter_days(start_d, end):
        key = day.isoformat()
        cur = daily.get(key)
        if cur is not None and prev is not None:
            out[key] = {m: max(0, _metric(cur, m) - _metric(prev, m)) for m in METRICS}
        if cur is not None:
            prev = cur
    return out


def accrue_rows(rows: Iterable[Dict[str, Any]], start, end) -> Series:
    """Zero-filled series of deltas summed across every owner in rows."""
    series: Series = {day.isoformat(): zero_metrics() for day in iter_days(start, end)}
    for owner, daily in last_snapshot_per_day(rows).items():
        for key, delta in owner_deltas(daily, start, end).items():
            for metric, value in delta.items():
                series[key][metric] += value
    return series


def apply_cutoff(series: Series, cutoff: Optional[str], mask: bool = True, trim: bool = False) -> Series:
    """Zero (mask) or drop (trim) every day strictly before cutoff."""
    if not cutoff:
        return series
    cutoff_str = to_date(cutoff).isoformat()
    out: Series = {}
    for key, values in series.items():
        if key < cutoff_str:
            if trim:
                continue
            if mask:
                out[key] = zero_metrics()
                continue
        out[key] = dict(values)
    return out


def series_sum(series: Series) -> Dict[str, int]:
    totals = zero_metrics()
    for values in series.values():
        for metric in METRICS:
            totals[metric] += values.get(metric, 0)
    return totals


def add_series(*many: Series) -> Series:
    out: Series = {}
    for series in many:
        for key, values in series.items():
            bucket = out.setdefault(key, zero_metrics())
            for metric in METRICS:
                bucket[metric] += values.get(metric, 0)
    return dict(sorted(out.items()))


def series_to_list(series: Series) -> List[Dict[str, Any]]:
    return [{'date': key, **values} for key, values in sorted(series.items())]


# ===================================================================
# STORAGE-BACKED QUERIES
# ===================================================================

def fetch_history(supabase: Client, owner_ids: List[str], platform: str, start, end) -> List[Dict[str, Any]]:
    """Snapshots from (start - 1) 00:00Z through end 23:59:59Z, by owner then capture time."""
    if not owner_ids:
        return []
    start_d = to_date(start) - timedelta(days=1)
    lo = f"{start_d.isoformat()}T00:00:00Z"
    hi = f"{to_date(end).isoformat()}T23:59:59Z"
    return fetch_all(lambda: supabase.table('social_metrics_history')
                     .select('user_id, views, likes, comments, shares, saves, captured_at')
                     .in_('user_id', owner_ids)
                     .eq('platform', get_platform(platform).platform)
                     .gte('captured_at', lo)
                     .lte('captured_at', hi)
                     .order('user_id')
                     .order('captured_at'))


def accrue(
    supabase: Client,
    owner_ids: List[str],
    platform: str,
    start,
    end,
    cutoff: Optional[str] = None,
    mask: bool = True
) -> List[Dict[str, Any]]:
    """
    Zero-filled daily deltas for owners on one platform.

    Args:
        supabase: Supabase client instance
        owner_ids: Owner (user) ids
        platform: 'tiktok' or 'instagram'
        start: First day of the series (inclusive)
        end: Last day of the series (inclusive)
        cutoff: Days strictly before this date are zeroed when mask is on
        mask: Whether to apply the cutoff

    Returns:
        List of {'date', 'views', 'likes', 'comments', 'shares', 'saves'}
    """
    rows = fetch_history(supabase, owner_ids, platform, start, end)
    series = accrue_rows(rows, start, end)
    if mask:
        series = apply_cutoff(series, cutoff, mask=True)
    return series_to_list(series)


def posts_daily_series(
    supabase: Client,
    tables: PlatformTables,
    handles: List[str],
    start,
    end,
    predicate: Optional[Callable[[Dict[str, Any]], bool]] = None
) -> Series:
    """Per-post counters summed by post_date. Point-in-time totals, not deltas."""
    series: Series = {day.isoformat(): zero_metrics() for day in iter_days(start, end)}
    if not handles:
        return series

    columns = tables.select_columns()
    if tables.text_column:
        columns = f"{columns}, {tables.text_column}"
    rows = fetch_all(lambda: supabase.table(tables.posts_table)
                     .select(columns)
                     .in_('username', handles)
                     .gte('post_date', to_date(start).isoformat())
                     .lte('post_date', to_date(end).isoformat())
                     .order('post_date'))
    if predicate is not None:
        rows = [row for row in rows if predicate(row)]
    if not rows:
        return series

    df = pd.DataFrame(rows)
    rename = {column: metric for metric, column in tables.metric_columns.items() if column}
    df = df.rename(columns=rename)
    for metric in METRICS:
        df[metric] = pd.to_numeric(df[metric], errors='coerce').fillna(0).astype(int) if metric in df else 0
    grouped = df.groupby('post_date')[list(METRICS)].sum()

    for post_date, values in grouped.iterrows():
        key = str(post_date)[:10]
        if key in series:
            series[key] = {metric: int(values[metric]) for metric in METRICS}
    return series


def merge_fallback(history: Series, fallback: Series) -> Series:
    """Fill days the history left empty (or all-zero) from the fallback series."""
    merged: Series = {}
    for key in sorted(set(history) | set(fallback)):
        values = history.get(key)
        if values is None or not any(values.values()):
            values = fallback.get(key, values or zero_metrics())
        merged[key] = dict(values)
    return merged


# ===================================================================
# CAMPAIGN SCOPE
# ===================================================================

def campaign_handles(supabase: Client, campaign_id: str, tables: PlatformTables) -> List[str]:
    rows = fetch_all(lambda: supabase.table(tables.participants_table)
                     .select(tables.participants_handle_column)
                     .eq('campaign_id', campaign_id)
                     .order(tables.participants_handle_column))
    handles = {normalize_handle(r.get(tables.participants_handle_column)) for r in rows}
    return sorted(h for h in handles if h)


def owners_for_handles(supabase: Client, tables: PlatformTables, handles: List[str]) -> List[str]:
    if not handles:
        return []
    owners = set()
    direct = supabase.table('users')\
        .select('id')\
        .in_(tables.users_handle_column, handles)\
        .execute()
    owners.update(str(r['id']) for r in (direct.data or []) if r.get('id'))
    mapped = supabase.table(tables.mapping_table)\
        .select('user_id')\
        .in_(tables.mapping_handle_column, handles)\
        .execute()
    owners.update(str(r['user_id']) for r in (mapped.data or []) if r.get('user_id'))
    return sorted(owners)


def handles_with_matching_posts(
    supabase: Client,
    tables: PlatformTables,
    handles: List[str],
    start,
    end,
    predicate: Callable[[Dict[str, Any]], bool]
) -> List[str]:
    """Handles with at least one post inside the window that passes the predicate."""
    if not handles:
        return []
    rows = fetch_all(lambda: supabase.table(tables.posts_table)
                     .select(f"username, {tables.text_column}")
                     .in_('username', handles)
                     .gte('post_date', to_date(start).isoformat())
                     .lte('post_date', to_date(end).isoformat())
                     .order('post_date'))
    return sorted({normalize_handle(r.get('username')) for r in rows if predicate(r)})


def campaign_required_hashtags(supabase: Client, campaign_id: str) -> List[str]:
    result = supabase.table('campaigns')\
        .select('required_hashtags')\
        .eq('id', campaign_id)\
        .limit(1)\
        .execute()
    if not result.data:
        raise LookupError(f"Campaign {campaign_id} not found")
    tags = result.data[0].get('required_hashtags') or []
    if isinstance(tags, str):
        tags = [t for t in tags.replace(',', ' ').split() if t]
    return list(tags)


def campaign_accrual(
    supabase: Client,
    campaign_id: str,
    start,
    end,
    cutoff: Optional[str] = None,
    mask: bool = True,
    trim: bool = False,
    snapshots_only: bool = True,
    respect_hashtags: bool = False
) -> Dict[str, Any]:
    """
    Accrual payload for a campaign's participants on every platform.

    Returns:
        Dict with start, end, cutoff_applied, series_total, series_tiktok,
        series_instagram, totals, required_hashtags, filtered_by_hashtag
    """
    required = campaign_required_hashtags(supabase, campaign_id)
    predicate = HashtagPredicate(required) if respect_hashtags else None
    filtered = bool(predicate and predicate.active)

    per_platform: Dict[str, Series] = {}
    for name, tables in PLATFORMS.items():
        handles = campaign_handles(supabase, campaign_id, tables)
        if filtered:
            # Snapshots are account-level; an owner counts only with a tagged post in the window
            owner_ids = owners_for_handles(
                supabase, tables, handles_with_matching_posts(supabase, tables, handles, start, end, predicate)
            )
        else:
            owner_ids = owners_for_handles(supabase, tables, handles)
        history = accrue_rows(fetch_history(supabase, owner_ids, name, start, end), start, end)
        if not snapshots_only:
            fallback = posts_daily_series(
                supabase, tables, handles, start, end,
                predicate=predicate if filtered else None
            )
            history = merge_fallback(history, fallback)
        per_platform[name] = apply_cutoff(history, cutoff, mask=mask, trim=trim)
        logger.info(f"[Campaign {campaign_id}] {name}: {len(handles)} handles, {len(owner_ids)} owners")

    total = add_series(per_platform['tiktok'], per_platform['instagram'])
    return {
        'start': to_date(start).isoformat(),
        'end': to_date(end).isoformat(),
        'cutoff_applied': to_date(cutoff).isoformat() if cutoff and (mask or trim) else None,
        'series_total': series_to_list(total),
        'series_tiktok': series_to_list(per_platform['tiktok']),
        'series_instagram': series_to_list(per_platform['instagram']),
        'totals': series_sum(total),
        'required_hashtags': required,
        'filtered_by_hashtag': filtered,
    }


# ===================================================================
# POST-DATE SERIES
# ===================================================================

INTERVALS = ('daily', 'weekly', 'monthly')


def bucket_key(day: date, interval: str) -> str:
    if interval == 'weekly':
        return (day - timedelta(days=day.weekday())).isoformat()
    if interval == 'monthly':
        return day.replace(day=1).isoformat()
    return day.isoformat()


def postdate_series(rows: List[Dict[str, Any]], tables: PlatformTables, start, end,
                    interval: str = 'daily') -> List[Dict[str, Any]]:
    """
    Bucket posts by their own post date (daily, weekly on Mondays, or monthly).

    Each bucket sums the posts' current counters.
    """
    if interval not in INTERVALS:
        raise ValueError(f"interval must be one of {INTERVALS}")

    buckets = {bucket_key(day, interval): zero_metrics() for day in iter_days(start, end)}
    if rows:
        df = pd.DataFrame(rows)
        df = df.rename(columns={c: m for m, c in tables.metric_columns.items() if c})
        for metric in METRICS:
            df[metric] = pd.to_numeric(df[metric], errors='coerce').fillna(0).astype(int) if metric in df else 0
        df['bucket'] = [bucket_key(to_date(str(v)), interval) for v in df['post_date']]
        grouped = df[df['bucket'].isin(list(buckets))].groupby('bucket')[list(METRICS)].sum()
        for key, values in grouped.iterrows():
            buckets[key] = {metric: int(values[metric]) for metric in METRICS}
    return [{'date': key, **values} for key, values in sorted(buckets.items())]


def campaign_postdate(
    supabase: Client,
    campaign_id: str,
    start,
    end,
    interval: str = 'daily',
    respect_hashtags: bool = False
) -> Dict[str, Any]:
    required = campaign_required_hashtags(supabase, campaign_id)
    predicate = HashtagPredicate(required) if respect_hashtags else None

    out: Dict[str, Any] = {'start': to_date(start).isoformat(), 'end': to_date(end).isoformat(),
                           'interval': interval, 'mode': 'postdate'}
    totals: Series = {}
    for name, tables in PLATFORMS.items():
        handles = campaign_handles(supabase, campaign_id, tables)
        rows: List[Dict[str, Any]] = []
        if handles:
            columns = f"{tables.select_columns()}, {tables.text_column}"
            rows = fetch_all(lambda: supabase.table(tables.posts_table)
                             .select(columns)
                             .in_('username', handles)
                             .gte('post_date', to_date(start).isoformat())
                             .lte('post_date', to_date(end).isoformat())
                             .order('post_date'))
        if predicate is not None and predicate.active:
            rows = [row for row in rows if predicate(row)]
        series = postdate_series(rows, tables, start, end, interval)
        out[f"series_{name}"] = series
        totals = add_series(totals, {p['date']: {m: p[m] for m in METRICS} for p in series})
    out['series_total'] = series_to_list(totals)
    out['totals'] = series_sum(totals)
    out['required_hashtags'] = required
    out['filtered_by_hashtag'] = bool(predicate and predicate.active)
    return out
