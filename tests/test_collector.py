"""
Tests for cursor pagination, backward sweep, continuation paging and the
Instagram provider chain.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import FakeSupabase, MockHttpResponse, epoch_seconds, tiktok_video
from pipeline.collector import (
    AggregatorClient,
    CollectResult,
    CollectorError,
    ContinuationCollector,
    CursorCollector,
    InstagramCollector,
    PostAccumulator,
    TikTokCollector,
    post_key,
)
from pipeline.key_rotation import AllKeysExhaustedError, NoKeysConfiguredError
from pipeline.timeutils import day_start_ms

JAN_8 = day_start_ms('2026-01-08')


def page(videos, has_more=True, cursor=None):
    data = {'videos': videos, 'hasMore': has_more}
    if cursor is not None:
        data['cursor'] = cursor
    return {'code': 0, 'data': data}


def cursor_collector(fetch, clock=JAN_8, **kwargs):
    return CursorCollector(fetch, sleep=lambda s: None, clock=lambda: clock, **kwargs)


# =============================================================================
# ACCUMULATOR
# =============================================================================

def test_accumulator_dedupes_and_windows():
    acc = PostAccumulator(day_start_ms('2026-01-02'), day_start_ms('2026-01-05'))
    added, oldest = acc.add_all([
        tiktok_video('1', '2026-01-03'),
        tiktok_video('1', '2026-01-03'),
        tiktok_video('2', '2026-01-01'),
        tiktok_video('3', '2026-01-02', hour=1),
        'not-a-dict',
    ])
    assert added == 2
    assert oldest == epoch_seconds('2026-01-02', 1) * 1000
    assert [post_key(p) for p in acc.posts] == ['1', '3']


def test_accumulator_without_window_keeps_undated_posts():
    acc = PostAccumulator()
    added, oldest = acc.add_all([{'aweme_id': '9'}])
    assert added == 1
    assert oldest is None


# =============================================================================
# CURSOR COLLECTOR
# =============================================================================

def test_echoed_cursor_terminates_within_four_pages():
    calls = []

    def fetch(params):
        calls.append(params)
        return page([tiktok_video('1', '2026-01-03'), tiktok_video('2', '2026-01-04')], cursor='c1')

    result = cursor_collector(fetch).collect('Alice', '2026-01-01', '2026-01-07')

    assert len(calls) <= 4
    assert result.pages == len(calls)
    assert result.stop_reason == 'stalled'
    assert len(result.posts) == 2
    assert result.mode == 'aggregator'
    assert calls[0]['username'] == 'alice'
    assert calls[0]['cursor'] is None
    assert calls[1]['cursor'] == 'c1'


def test_repeated_fallback_cursor_stops_as_cycle():
    counter = {'n': 0}

    def fetch(params):
        counter['n'] += 1
        # Each page is newer than the first, so oldest-1 never moves
        video = tiktok_video(str(counter['n']), '2026-01-03', hour=counter['n'])
        return page([video], cursor=params.get('cursor'))

    result = cursor_collector(fetch).collect('alice', '2026-01-01', '2026-01-07')

    assert result.stop_reason == 'cursor_cycle'
    assert result.pages == 4
    assert len(result.posts) == 4


def test_fallback_cursor_is_oldest_minus_one():
    calls = []

    def fetch(params):
        calls.append(params)
        if len(calls) == 1:
            return page([tiktok_video('1', '2026-01-05'), tiktok_video('2', '2026-01-04')])
        return page([], has_more=False)

    result = cursor_collector(fetch).collect('alice', '2026-01-01', '2026-01-07')

    assert calls[1]['cursor'] == str(epoch_seconds('2026-01-04') * 1000 - 1)
    assert result.stop_reason == 'no_more'


def test_no_more_stops_after_first_page():
    fetch = MagicMock(return_value=page([tiktok_video('1', '2026-01-03')], has_more=False))
    result = cursor_collector(fetch).collect('alice', '2026-01-01', '2026-01-07')
    assert fetch.call_count == 1
    assert result.stop_reason == 'no_more'


def test_max_pages_caps_forward_paging():
    counter = {'n': 0}

    def fetch(params):
        counter['n'] += 1
        n = counter['n']
        return page([tiktok_video(str(n), '2026-01-06', hour=23 - n)], cursor=f"c{n}")

    result = cursor_collector(fetch, max_pages=2).collect('alice', '2026-01-01', '2026-01-07')
    assert result.pages == 2
    assert result.stop_reason == 'max_pages'


def test_first_page_failure_raises():
    with pytest.raises(CollectorError):
        cursor_collector(lambda params: None).collect('alice', '2026-01-01', '2026-01-07')


def test_later_page_failure_keeps_collected_posts():
    responses = [page([tiktok_video('1', '2026-01-03')], cursor='c1'), None]
    result = cursor_collector(lambda params: responses.pop(0)).collect('alice', '2026-01-01', '2026-01-07')
    assert result.stop_reason == 'fetch_failed'
    assert len(result.posts) == 1


def test_malformed_body_raises():
    with pytest.raises(CollectorError):
        cursor_collector(lambda params: ['nope']).collect('alice')


def test_backward_sweep_for_long_under_returning_window():
    calls = []

    def fetch(params):
        calls.append(params)
        if 'cursor' in params:
            return page([tiktok_video('new', '2026-03-20')], has_more=False)
        if params['end'] == '2026-03-10':
            return page([tiktok_video('old', '2026-03-01')], has_more=False)
        return page([], has_more=False)

    collector = cursor_collector(fetch, clock=day_start_ms('2026-03-31') + 1000)
    result = collector.collect('alice', '2025-12-01', '2026-03-31')

    sweeps = [c for c in calls if 'cursor' not in c]
    assert [(c['start'], c['end']) for c in sweeps[:2]] == [
        ('2026-03-11', '2026-03-31'),
        ('2026-02-18', '2026-03-10'),
    ]
    assert result.swept_windows == 5
    assert {post_key(p) for p in result.posts} == {'new', 'old'}


def test_sweep_not_triggered_for_recent_window():
    fetch = MagicMock(return_value=page([], has_more=False))
    result = cursor_collector(fetch).collect('alice', '2026-01-01', '2026-01-07')
    assert fetch.call_count == 1
    assert result.swept_windows == 0


# =============================================================================
# AGGREGATOR CLIENT
# =============================================================================

def test_aggregator_client_retries_then_gives_up():
    session = MagicMock()
    session.get.return_value = MockHttpResponse(503, text='unavailable')
    sleeps = []
    client = AggregatorClient('http://agg/api/v1/', session=session, sleep=sleeps.append)

    assert client.fetch_posts({'username': 'alice', 'cursor': None}) is None
    assert session.get.call_count == 3
    assert sleeps == [0.25, 0.5, 0.75]

    url = session.get.call_args.args[0]
    assert url == 'http://agg/api/v1/user/posts'
    assert session.get.call_args.kwargs['params'] == {'username': 'alice'}


def test_aggregator_client_returns_json():
    session = MagicMock()
    session.get.return_value = MockHttpResponse(200, page([]))
    client = AggregatorClient('http://agg', session=session, sleep=lambda s: None)
    assert client.fetch_posts({'username': 'alice'}) == page([])


# =============================================================================
# CONTINUATION COLLECTOR
# =============================================================================

def continuation_client(routes):
    client = MagicMock()

    def get(url, host, **kwargs):
        for fragment, body in routes:
            if fragment in url:
                return body(url) if callable(body) else body
        raise AssertionError(f"unexpected url {url}")

    client.get.side_effect = get
    return client


def test_continuation_guard_stops_when_no_new_items():
    client = continuation_client([
        ('/user/details', {'data': {'secondary_id': 'SEC'}}),
        ('/user/videos/continuation', {'data': {'videos': [tiktok_video('1', '2026-01-03')],
                                                'continuation_token': 't2'}}),
        ('/user/videos', {'data': {'videos': [tiktok_video('1', '2026-01-03')], 'continuation_token': 't1'}}),
    ])
    collector = ContinuationCollector(client, 'host', sleep=lambda s: None)

    result = collector.collect('alice', '2026-01-01', '2026-01-07')

    assert result.mode == 'rapid-continuation'
    assert len(result.posts) == 1
    continuation_calls = [c for c in client.get.call_args_list if 'continuation' in c.args[0]]
    assert len(continuation_calls) == 3
    assert 'secondary_id=SEC' in continuation_calls[0].args[0]


def test_continuation_pages_until_token_runs_out():
    def continuation(url):
        if 'continuation_token=t1' in url:
            return {'data': {'videos': [tiktok_video('2', '2026-01-04')], 'continuation_token': 't2'}}
        return {'data': {'videos': [tiktok_video('3', '2026-01-05')]}}

    client = continuation_client([
        ('/user/details', {'data': {'secondary_id': 'SEC'}}),
        ('/user/videos/continuation', continuation),
        ('/user/videos', {'data': {'videos': [tiktok_video('1', '2026-01-03')], 'continuation_token': 't1'}}),
    ])
    result = ContinuationCollector(client, 'host', sleep=lambda s: None).collect('alice')

    assert [post_key(p) for p in result.posts] == ['1', '2', '3']
    assert result.pages == 3


def test_continuation_first_page_failure_raises():
    client = MagicMock()
    client.get.side_effect = AllKeysExhaustedError(['Key#0 on cooldown'])
    collector = ContinuationCollector(client, 'host', sleep=lambda s: None)
    with pytest.raises(CollectorError):
        collector.collect('alice')


# =============================================================================
# TIKTOK FALLBACK
# =============================================================================

def test_tiktok_collector_falls_back_on_aggregator_error():
    aggregator = MagicMock()
    aggregator.collect.side_effect = CollectorError('down')
    continuation = MagicMock()
    continuation.collect.return_value = CollectResult(posts=[{'aweme_id': '1'}], mode='rapid-continuation')

    result = TikTokCollector(aggregator, continuation).collect('alice', '2026-01-01', '2026-01-07')

    assert result.mode == 'rapid-continuation'
    continuation.collect.assert_called_once_with('alice', '2026-01-01', '2026-01-07')


def test_tiktok_collector_falls_back_on_empty_aggregator_result():
    aggregator = MagicMock()
    aggregator.collect.return_value = CollectResult(posts=[], mode='aggregator')
    continuation = MagicMock()
    continuation.collect.return_value = CollectResult(posts=[], mode='rapid-continuation')

    TikTokCollector(aggregator, continuation).collect('alice')
    continuation.collect.assert_called_once()


def test_tiktok_collector_force_rapid_skips_aggregator():
    aggregator = MagicMock()
    continuation = MagicMock()
    continuation.collect.return_value = CollectResult(posts=[], mode='rapid-continuation')

    TikTokCollector(aggregator, continuation).collect('alice', force_rapid=True)
    aggregator.collect.assert_not_called()


def test_tiktok_collector_without_fallback_reraises():
    aggregator = MagicMock()
    aggregator.collect.side_effect = CollectorError('down')
    with pytest.raises(CollectorError, match='down'):
        TikTokCollector(aggregator, None).collect('alice')


# =============================================================================
# INSTAGRAM
# =============================================================================

IG_SETTINGS = SimpleNamespace(
    ig_scraper_host='scraper.host',
    instagram_host='media.host',
    ig_fast_host='fast.host',
    ig_best_host='best.host',
)


def reel(pk: str, day: str, views: int = 0):
    return {'media': {'pk': pk, 'taken_at': epoch_seconds(day), 'play_count': views}}


def test_instagram_uses_cached_user_id_and_first_provider():
    supabase = FakeSupabase({'instagram_user_ids': [
        {'instagram_username': 'bella', 'instagram_user_id': '42'}
    ]})
    client = MagicMock()
    client.get.return_value = {'data': {'reels': [reel('1', '2026-01-03'), reel('2', '2025-11-01')]}}

    result = InstagramCollector(client, IG_SETTINGS, supabase=supabase, sleep=lambda s: None)\
        .collect('@Bella', '2026-01-01', '2026-01-07')

    assert result.source == 'scraper'
    assert len(result.posts) == 1
    assert 'user_id=42' in client.get.call_args.args[0]


def test_instagram_resolves_and_caches_user_id():
    supabase = FakeSupabase()
    client = MagicMock()

    def get(url, host, **kwargs):
        if 'get_instagram_user_id' in url:
            return {'user_id': 77}
        return {'data': {'reels': [reel('1', '2026-01-03')]}}

    client.get.side_effect = get
    collector = InstagramCollector(client, IG_SETTINGS, supabase=supabase, sleep=lambda s: None)

    assert collector.resolve_user_id('bella') == '77'
    assert supabase.rows('instagram_user_ids') == [
        {'instagram_username': 'bella', 'instagram_user_id': '77'}
    ]


def test_instagram_falls_through_to_next_provider():
    client = MagicMock()
    client.get.side_effect = AllKeysExhaustedError(['Key#0 rate-limited (429)'])
    client.request.return_value = {'result': {'edges': [{'node': {'media': {
        'pk': '5', 'taken_at': epoch_seconds('2026-01-02'), 'play_count': 10}}}]}}

    collector = InstagramCollector(client, IG_SETTINGS, sleep=lambda s: None)
    collector.resolve_user_id = MagicMock(return_value='42')
    result = collector.collect('bella', '2026-01-01', '2026-01-07')

    assert result.source == 'ig_host'
    assert len(result.posts) == 1
    assert client.request.call_args.kwargs['method'] == 'POST'


def test_instagram_unresolved_user_raises():
    client = MagicMock()
    client.get.return_value = {}
    collector = InstagramCollector(client, IG_SETTINGS, sleep=lambda s: None)
    with pytest.raises(CollectorError, match='user id'):
        collector.collect('ghost')


def test_instagram_all_providers_empty_raises():
    client = MagicMock()
    client.get.return_value = {'data': {'reels': []}}
    client.request.return_value = {'result': {'edges': []}}
    collector = InstagramCollector(client, IG_SETTINGS, sleep=lambda s: None)
    collector.resolve_user_id = MagicMock(return_value='42')
    with pytest.raises(CollectorError, match='All Instagram providers'):
        collector.collect('bella')


def test_instagram_missing_keys_abort_the_lookup():
    client = MagicMock()
    client.get.side_effect = NoKeysConfiguredError()
    collector = InstagramCollector(client, IG_SETTINGS, sleep=lambda s: None)
    with pytest.raises(NoKeysConfiguredError):
        collector.collect('bella')
    assert client.get.call_count == 1
