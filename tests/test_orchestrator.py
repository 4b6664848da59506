"""
Tests for the batch refresh orchestrator.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import FakeSupabase, tiktok_video, utc
from pipeline.accrual import accrue
from pipeline.collector import CollectResult, CollectorError, CursorCollector, TikTokCollector
from pipeline.key_rotation import NoKeysConfiguredError
from pipeline.orchestrator import (
    NoHandlesError,
    RefreshOrchestrator,
    build_orchestrator,
    ensure_configured,
    load_handles,
)
from pipeline.retry_queue import RetryQueue
from pipeline.snapshots import SnapshotWriter
from pipeline.timeutils import day_start_ms

NOW = datetime(2026, 1, 8, 1, 0, tzinfo=timezone.utc)


class StubCollector:
    """Returns canned posts per handle; raises for handles listed in failing."""

    def __init__(self, posts=None, failing=()):
        self.posts = posts or {}
        self.failing = set(failing)
        self.calls = []

    def collect(self, handle, start=None, end=None):
        self.calls.append(handle)
        if handle in self.failing:
            raise CollectorError(f"provider down for {handle}")
        return CollectResult(posts=self.posts.get(handle, []), mode='stub')


def orchestrator(supabase, collector, **kwargs):
    options = {'concurrency': 1, 'delay_ms': 0, 'sleep': lambda s: None}
    options.update(kwargs)
    return RefreshOrchestrator(
        supabase,
        'tiktok',
        collector,
        RetryQueue(supabase, clock=lambda: NOW),
        SnapshotWriter(supabase, clock=lambda: NOW),
        **options
    )


def handles_db(*names):
    return FakeSupabase({'users': [{'id': f"u-{n}", 'tiktok_username': n} for n in names]})


# =============================================================================
# HANDLE LOADING
# =============================================================================

def test_load_handles_merges_normalizes_and_sorts():
    supabase = FakeSupabase({
        'users': [{'id': 'u1', 'tiktok_username': '@Carol'}, {'id': 'u2', 'tiktok_username': None}],
        'user_tiktok_usernames': [{'user_id': 'u1', 'tiktok_username': 'alice'}],
        'campaign_participants': [{'campaign_id': 'c1', 'tiktok_username': ' Bob '},
                                  {'campaign_id': 'c1', 'tiktok_username': 'carol'}],
    })
    assert load_handles(supabase, 'tiktok') == ['alice', 'bob', 'carol']


def test_no_handles_raises():
    with pytest.raises(NoHandlesError):
        orchestrator(FakeSupabase(), StubCollector()).run_batch()


# =============================================================================
# OFFSET ADVANCE
# =============================================================================

def test_batches_advance_offset_until_done():
    supabase = handles_db('alice', 'bob', 'carol')
    collector = StubCollector()
    orch = orchestrator(supabase, collector)

    first = orch.run_batch(offset=0, limit=2)
    assert first.processed == 2
    assert first.next_offset == 2
    assert first.remaining == 1
    assert first.total_usernames == 3

    second = orch.run_batch(offset=first.next_offset, limit=2)
    assert second.processed == 1
    assert second.remaining == 0
    assert second.next_offset is None
    assert collector.calls == ['alice', 'bob', 'carol']


def test_offset_past_end_processes_nothing():
    result = orchestrator(handles_db('alice'), StubCollector()).run_batch(offset=5, limit=2)
    assert result.processed == 0
    assert result.remaining == 0
    assert result.next_offset is None


def test_failure_is_reported_and_enqueued():
    supabase = handles_db('alice', 'bob')
    result = orchestrator(supabase, StubCollector(failing={'bob'})).run_batch(offset=0, limit=2)

    assert result.success == 1
    assert result.failed == 1
    assert result.failed_usernames == ['bob']
    assert result.retry_queue == 1
    assert result.next_offset is None

    queued = supabase.rows('refresh_retry_queue')
    assert queued[0]['username'] == 'bob'
    assert 'provider down' in queued[0]['last_error']


def test_due_retries_take_batch_slots_first():
    supabase = handles_db('alice', 'bob')
    supabase.tables['refresh_retry_queue'] = [{
        'platform': 'tiktok', 'username': 'zed', 'retry_count': 1,
        'next_retry_at': (NOW - timedelta(minutes=1)).isoformat(),
    }]
    collector = StubCollector()

    result = orchestrator(supabase, collector).run_batch(offset=0, limit=1)

    assert collector.calls == ['zed']
    assert result.results[0].from_retry_queue is True
    assert result.next_offset == 0
    assert result.remaining == 2
    assert supabase.rows('refresh_retry_queue') == []


def test_not_yet_due_retries_do_not_block_new_handles():
    supabase = handles_db('alice')
    supabase.tables['refresh_retry_queue'] = [{
        'platform': 'tiktok', 'username': 'zed', 'retry_count': 3,
        'next_retry_at': (NOW + timedelta(hours=1)).isoformat(),
    }]
    collector = StubCollector()
    orchestrator(supabase, collector).run_batch(offset=0, limit=1)
    assert collector.calls == ['alice']


def test_handle_both_due_and_fresh_is_attempted_once():
    supabase = handles_db('alice', 'bob')
    supabase.tables['refresh_retry_queue'] = [{
        'platform': 'tiktok', 'username': 'alice', 'retry_count': 1,
        'next_retry_at': (NOW - timedelta(minutes=1)).isoformat(),
    }]
    collector = StubCollector()

    result = orchestrator(supabase, collector).run_batch(offset=0, limit=2)

    assert collector.calls == ['alice']
    assert result.next_offset == 1


def test_time_budget_stops_before_next_group():
    supabase = handles_db('alice', 'bob', 'carol')
    clock = iter([0.0, 60.0, 120.0])
    collector = StubCollector()

    result = orchestrator(supabase, collector, budget_seconds=55, monotonic=lambda: next(clock))\
        .run_batch(offset=0, limit=3)

    assert collector.calls == ['alice']
    assert result.next_offset == 1
    assert result.remaining == 2


def test_groups_are_separated_by_delay():
    supabase = handles_db('alice', 'bob', 'carol')
    sleeps = []
    orchestrator(supabase, StubCollector(), concurrency=2, delay_ms=1500, sleep=sleeps.append)\
        .run_batch(offset=0, limit=3)
    assert sleeps == [1.5]


def test_missing_keys_abort_without_enqueueing():
    supabase = handles_db('alice')
    collector = MagicMock()
    collector.collect.side_effect = NoKeysConfiguredError()

    with pytest.raises(NoKeysConfiguredError):
        orchestrator(supabase, collector).attempt('alice', False, None, None)
    assert supabase.rows('refresh_retry_queue') == []


def test_drain_retries_only_touches_queue():
    supabase = handles_db('alice')
    supabase.tables['refresh_retry_queue'] = [{
        'platform': 'tiktok', 'username': 'zed', 'retry_count': 1,
        'next_retry_at': (NOW - timedelta(minutes=1)).isoformat(),
    }]
    collector = StubCollector(failing={'zed'})

    results = orchestrator(supabase, collector).drain_retries(limit=5)

    assert [r.username for r in results] == ['zed']
    assert results[0].ok is False
    assert supabase.rows('refresh_retry_queue')[0]['retry_count'] == 2


def test_upsert_failure_counts_as_handle_failure():
    supabase = handles_db('alice')
    supabase.fail('tiktok_posts_daily', 'upsert')
    collector = StubCollector(posts={'alice': [tiktok_video('1', '2026-01-03', views=5)]})

    result = orchestrator(supabase, collector).run_batch(offset=0, limit=1)
    assert result.failed_usernames == ['alice']
    assert supabase.rows('refresh_retry_queue')[0]['username'] == 'alice'


# =============================================================================
# END TO END
# =============================================================================

def test_refresh_snapshot_then_accrual_for_one_creator():
    supabase = FakeSupabase({'users': [{'id': 'u1', 'tiktok_username': 'alice'}]})
    counters = {'v1': 100, 'v2': 40}

    def fetch(params):
        videos = [tiktok_video(vid, day, views=views) for (vid, day), views in zip(
            [('v1', '2026-01-03'), ('v2', '2026-01-05')], [counters['v1'], counters['v2']]
        )]
        return {'data': {'videos': videos, 'hasMore': False}}

    aggregator = CursorCollector(fetch, sleep=lambda s: None, clock=lambda: day_start_ms('2026-01-08'))
    today = {'value': utc('2026-01-07', 23)}
    orch = RefreshOrchestrator(
        supabase, 'tiktok', TikTokCollector(aggregator, None),
        RetryQueue(supabase, clock=lambda: NOW),
        SnapshotWriter(supabase, clock=lambda: today['value']),
        concurrency=1, delay_ms=0, sleep=lambda s: None
    )

    first = orch.run_batch(offset=0, limit=1, start='2026-01-01', end='2026-01-07')
    assert first.success == 1
    assert first.results[0].upserted == 2
    assert first.results[0].snapshots == 1
    assert first.results[0].mode == 'aggregator'

    counters.update(v1=180, v2=60)
    today['value'] = utc('2026-01-08', 23)
    orch.run_batch(offset=0, limit=1, start='2026-01-01', end='2026-01-08')

    posts = {r['video_id']: r['play_count'] for r in supabase.rows('tiktok_posts_daily')}
    assert posts == {'v1': 180, 'v2': 60}
    assert [h['views'] for h in supabase.rows('social_metrics_history')] == [140, 240]

    points = accrue(supabase, ['u1'], 'tiktok', '2026-01-08', '2026-01-08')
    assert points == [{'date': '2026-01-08', 'views': 100, 'likes': 0, 'comments': 0, 'shares': 0, 'saves': 0}]


def test_two_page_collection_lands_as_one_day_of_accrual():
    baseline = {'user_id': 'u1', 'platform': 'tiktok', 'views': 0, 'likes': 0, 'comments': 0,
                'shares': 0, 'saves': 0, 'captured_at': '2025-12-31T12:00:00+00:00'}
    supabase = FakeSupabase({
        'users': [{'id': 'u1', 'tiktok_username': 'alice'}],
        'social_metrics_history': [baseline],
    })
    pages = {
        None: {'data': {'videos': [tiktok_video('v1', '2026-01-05', views=100, likes=1, hour=18),
                                   tiktok_video('v2', '2026-01-05', views=200, likes=2, hour=15)],
                        'hasMore': True, 'cursor': 'p2'}},
        'p2': {'data': {'videos': [tiktok_video('v3', '2026-01-05', views=300, likes=3, hour=9)],
                        'hasMore': False}},
    }
    seen_cursors = []

    def fetch(params):
        seen_cursors.append(params['cursor'])
        return pages[params['cursor']]

    aggregator = CursorCollector(fetch, sleep=lambda s: None, clock=lambda: day_start_ms('2026-01-08'))
    orch = RefreshOrchestrator(
        supabase, 'tiktok', TikTokCollector(aggregator, None),
        RetryQueue(supabase, clock=lambda: NOW),
        SnapshotWriter(supabase, clock=lambda: utc('2026-01-05', 23)),
        concurrency=1, delay_ms=0, sleep=lambda s: None
    )

    result = orch.run_batch(offset=0, limit=1, start='2026-01-01', end='2026-01-07')

    assert seen_cursors == [None, 'p2']
    assert result.results[0].upserted == 3
    assert sorted(r['video_id'] for r in supabase.rows('tiktok_posts_daily')) == ['v1', 'v2', 'v3']
    history = supabase.rows('social_metrics_history')
    assert len(history) == 2
    assert (history[1]['views'], history[1]['likes']) == (600, 6)

    points = accrue(supabase, ['u1'], 'tiktok', '2026-01-01', '2026-01-07')
    assert [p['date'] for p in points] == [f"2026-01-0{d}" for d in range(1, 8)]
    assert [p['views'] for p in points] == [0, 0, 0, 0, 600, 0, 0]
    assert [p['likes'] for p in points] == [0, 0, 0, 0, 6, 0, 0]


# =============================================================================
# WIRING
# =============================================================================

def settings(**overrides):
    values = dict(
        rapidapi_keys=[], has_premium_key=False, tiktok_host='tt.host',
        instagram_host='media.host', ig_scraper_host='scraper.host',
        ig_fast_host='fast.host', ig_best_host='best.host',
        aggregator_base='http://agg', aggregator_enabled=True, aggregator_per_page=100,
        aggregator_rate_ms=200, aggregator_max_pages=10, snapshot_window_days=60,
        refresh_delay_ms=2000, refresh_concurrency=3, refresh_budget_seconds=55,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_ensure_configured():
    ensure_configured('tiktok', settings())
    ensure_configured('instagram', settings(rapidapi_keys=['k']))
    with pytest.raises(NoKeysConfiguredError):
        ensure_configured('instagram', settings())
    with pytest.raises(NoKeysConfiguredError):
        ensure_configured('tiktok', settings(aggregator_enabled=False))


def test_build_orchestrator_applies_overrides():
    orch = build_orchestrator(MagicMock(), 'tiktok', settings(rapidapi_keys=['k']), delay_ms=500, concurrency=None)
    assert orch.delay_ms == 500
    assert orch.concurrency == 3
    assert orch.collector.aggregator is not None
    assert orch.collector.continuation is not None


def test_build_orchestrator_without_keys_has_no_rapid_fallback():
    orch = build_orchestrator(MagicMock(), 'tiktok', settings())
    assert orch.collector.continuation is None
