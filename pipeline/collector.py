"""
Paginated post collection from scraper providers.

Three provider shapes are supported:

1. Aggregator (cursor style): GET {base}/user/posts with an optional cursor.
   Driven by an explicit state machine (FORWARD_PAGE -> STALL_CHECK ->
   BACKWARD_SWEEP -> DONE). When the provider under-returns for a long
   history window, fixed 21 day windows are swept backward from the end date.
2. RapidAPI TikTok (continuation style): /user/details for the secondary id,
   /user/videos for the first page, then /user/videos/continuation.
3. RapidAPI Instagram: a chain of reels providers tried in order; the first
   provider returning items wins.

Collectors return raw provider objects, deduplicated by post id and limited to
the requested [start, end] window. Mapping to storage rows is the
normalizer's job.
"""
import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from pipeline.key_rotation import KeyRotationClient, NoKeysConfiguredError, RapidApiError
from pipeline.normalizer import (
    derive_tiktok_video_id,
    first_match,
    first_timestamp,
    path,
    tiktok_post_ms,
    unwrap_instagram,
    INSTAGRAM_ID_EXTRACTORS,
    INSTAGRAM_TIME_EXTRACTORS,
)
from pipeline.platforms import normalize_handle
from pipeline.timeutils import DAY_MS, day_end_ms, day_start_ms, ms_to_date_str, now_ms

logger = logging.getLogger(__name__)

STALL_LIMIT = 3
CURSOR_REPEAT_LIMIT = 3
SWEEP_EMPTY_LIMIT = 3
SWEEP_WINDOW_DAYS = 21
SWEEP_TRIGGER_DAYS = 60
CONTINUATION_GUARD_LIMIT = 3


class CollectorError(Exception):
    """A provider failed or answered with something unusable."""


class PageState(Enum):
    FORWARD_PAGE = 'forward_page'
    STALL_CHECK = 'stall_check'
    BACKWARD_SWEEP = 'backward_sweep'
    DONE = 'done'


@dataclass
class PaginationState:
    state: PageState = PageState.FORWARD_PAGE
    cursor: Optional[str] = None
    pages: int = 0
    stall_count: int = 0
    repeat_count: int = 0
    oldest_ms: Optional[int] = None
    last_added: int = 0
    has_more: bool = False
    api_cursor: Optional[str] = None
    stop_reason: Optional[str] = None
    sweep_end_ms: Optional[int] = None
    sweep_windows: int = 0
    sweep_empty: int = 0


@dataclass
class CollectResult:
    posts: List[Dict[str, Any]]
    mode: str
    pages: int = 0
    stop_reason: Optional[str] = None
    swept_windows: int = 0
    source: Optional[str] = None


def post_key(item: Dict[str, Any]) -> str:
    return str(item.get('aweme_id') or item.get('video_id') or item.get('id') or '')


class PostAccumulator:
    """Running id set plus in-window posts, in first-seen order."""

    def __init__(self, start_ms: Optional[int] = None, end_ms: Optional[int] = None,
                 key_func: Callable[[Dict[str, Any]], str] = post_key,
                 time_func: Callable[[Dict[str, Any]], Optional[int]] = tiktok_post_ms):
        self.start_ms = start_ms
        self.end_ms = end_ms
        self.key_func = key_func
        self.time_func = time_func
        self.seen = set()
        self.posts: List[Dict[str, Any]] = []

    def in_window(self, ms: Optional[int], start_ms: Optional[int] = None, end_ms: Optional[int] = None) -> bool:
        lo = self.start_ms if start_ms is None else start_ms
        hi = self.end_ms if end_ms is None else end_ms
        if ms is None:
            return lo is None and hi is None
        if lo is not None and ms < lo:
            return False
        if hi is not None and ms > hi:
            return False
        return True

    def add_all(self, items: List[Any], start_ms: Optional[int] = None,
                end_ms: Optional[int] = None) -> Tuple[int, Optional[int]]:
        """
        Add unseen in-window items.

        Returns:
            Tuple of (added count, oldest timestamp among added items)
        """
        added = 0
        oldest = None
        for item in items or []:
            if not isinstance(item, dict):
                continue
            key = self.key_func(item)
            if not key or key in self.seen:
                continue
            ms = self.time_func(item)
            if not self.in_window(ms, start_ms, end_ms):
                continue
            self.seen.add(key)
            self.posts.append(item)
            added += 1
            if ms is not None:
                oldest = ms if oldest is None else min(oldest, ms)
        return added, oldest


# ===================================================================
# AGGREGATOR (CURSOR STYLE)
# ===================================================================

class AggregatorClient:
    """Plain-HTTP client for the aggregator service."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = 20.0, attempts: int = 3,
                 sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout
        self.attempts = attempts
        self.sleep = sleep

    def fetch_posts(self, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Fetch one page; returns None when every attempt failed."""
        url = f"{self.base_url}/user/posts"
        for attempt in range(self.attempts):
            try:
                response = self.session.get(
                    url,
                    params={k: v for k, v in params.items() if v not in (None, '')},
                    headers={'Accept': 'application/json'},
                    timeout=self.timeout
                )
                if response.ok:
                    return response.json()
                logger.warning(f"Aggregator {response.status_code} for {params.get('username')} (attempt {attempt + 1})")
            except (requests.RequestException, ValueError) as e:
                logger.warning(f"Aggregator error for {params.get('username')} (attempt {attempt + 1}): {str(e)}")
            self.sleep(0.25 * (attempt + 1))
        return None


class CursorCollector:
    """
    Cursor-paginated collection with stall detection and backward sweep.

    Args:
        fetch_page: Callable taking query params, returning the JSON body or None
        page_size: Posts requested per page
        max_pages: Hard cap on forward pages
        rate_ms: Delay between requests
        sleep: Callable taking seconds
        clock: Callable returning epoch ms ("now" for the sweep trigger)
    """

    def __init__(
        self,
        fetch_page: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]],
        page_size: int = 100,
        max_pages: int = 10,
        rate_ms: int = 200,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], int] = now_ms
    ):
        self.fetch_page = fetch_page
        self.page_size = page_size
        self.max_pages = max_pages
        self.rate_ms = rate_ms
        self.sleep = sleep
        self.clock = clock

    def collect(self, handle: str, start: Optional[str] = None, end: Optional[str] = None) -> CollectResult:
        username = normalize_handle(handle)
        start_ms = day_start_ms(start) if start else None
        end_ms = day_end_ms(end) if end else None
        acc = PostAccumulator(start_ms, end_ms)
        st = PaginationState()

        while st.state is not PageState.DONE:
            if st.state is PageState.FORWARD_PAGE:
                self._forward_page(st, acc, username, start, end)
            elif st.state is PageState.STALL_CHECK:
                self._stall_check(st, acc)
            elif st.state is PageState.BACKWARD_SWEEP:
                self._sweep_window(st, acc, username, start_ms)

        logger.info(
            f"[tiktok:{username}] Aggregator collected {len(acc.posts)} posts "
            f"in {st.pages} pages, {st.sweep_windows} sweep windows (stop: {st.stop_reason})"
        )
        return CollectResult(
            posts=acc.posts,
            mode='aggregator',
            pages=st.pages,
            stop_reason=st.stop_reason,
            swept_windows=st.sweep_windows
        )

    def _forward_page(self, st: PaginationState, acc: PostAccumulator,
                      username: str, start: Optional[str], end: Optional[str]) -> None:
        if st.pages >= self.max_pages:
            self._finish_forward(st, acc, 'max_pages')
            return

        body = self.fetch_page({
            'username': username,
            'count': self.page_size,
            'start': start,
            'end': end,
            'cursor': st.cursor
        })
        if body is None:
            if st.pages == 0:
                raise CollectorError(f"Aggregator returned no data for {username}")
            self._finish_forward(st, acc, 'fetch_failed')
            return
        if not isinstance(body, dict):
            raise CollectorError(f"Malformed aggregator response for {username}: {type(body).__name__}")

        data = body.get('data') if isinstance(body.get('data'), dict) else {}
        videos = data.get('videos') if isinstance(data.get('videos'), list) else []
        added, oldest = acc.add_all(videos)

        st.pages += 1
        st.last_added = added
        st.has_more = bool(data.get('hasMore'))
        st.api_cursor = str(data['cursor']) if data.get('cursor') else None
        if oldest is not None:
            st.oldest_ms = oldest if st.oldest_ms is None else min(st.oldest_ms, oldest)
        st.state = PageState.STALL_CHECK

    def _stall_check(self, st: PaginationState, acc: PostAccumulator) -> None:
        st.stall_count = 0 if st.last_added else st.stall_count + 1
        if st.stall_count >= STALL_LIMIT:
            self._finish_forward(st, acc, 'stalled')
            return

        fallback = str(max(0, st.oldest_ms - 1)) if st.oldest_ms is not None else None
        next_cursor = st.api_cursor if st.api_cursor and st.api_cursor != st.cursor else fallback

        if not st.has_more:
            self._finish_forward(st, acc, 'no_more')
            return
        if not next_cursor:
            self._finish_forward(st, acc, 'no_cursor')
            return

        if st.cursor and next_cursor == st.cursor:
            st.repeat_count += 1
            if st.repeat_count >= CURSOR_REPEAT_LIMIT:
                self._finish_forward(st, acc, 'cursor_cycle')
                return
        else:
            st.repeat_count = 0

        st.cursor = next_cursor
        st.state = PageState.FORWARD_PAGE
        self.sleep(self.rate_ms / 1000)

    def _finish_forward(self, st: PaginationState, acc: PostAccumulator, reason: str) -> None:
        st.stop_reason = reason
        if self.needs_sweep(acc.start_ms, len(acc.posts)):
            st.sweep_end_ms = acc.end_ms if acc.end_ms is not None else self.clock()
            st.state = PageState.BACKWARD_SWEEP
        else:
            st.state = PageState.DONE

    def needs_sweep(self, start_ms: Optional[int], collected: int) -> bool:
        if start_ms is None:
            return False
        far_past = (self.clock() - start_ms) > SWEEP_TRIGGER_DAYS * DAY_MS
        return far_past and collected < self.page_size

    def _sweep_window(self, st: PaginationState, acc: PostAccumulator,
                      username: str, start_ms: Optional[int]) -> None:
        if start_ms is None or st.sweep_end_ms is None or st.sweep_end_ms <= start_ms:
            st.state = PageState.DONE
            return

        win_end = st.sweep_end_ms
        win_start = max(start_ms, win_end - SWEEP_WINDOW_DAYS * DAY_MS + 1)
        body = self.fetch_page({
            'username': username,
            'count': self.page_size,
            'start': ms_to_date_str(win_start),
            'end': ms_to_date_str(win_end),
        })
        data = body.get('data') if isinstance(body, dict) and isinstance(body.get('data'), dict) else {}
        videos = data.get('videos') if isinstance(data.get('videos'), list) else []
        added, _ = acc.add_all(videos)

        st.sweep_windows += 1
        st.sweep_empty = 0 if added else st.sweep_empty + 1
        logger.debug(f"[tiktok:{username}] Sweep {ms_to_date_str(win_start)}..{ms_to_date_str(win_end)}: +{added}")

        if st.sweep_empty >= SWEEP_EMPTY_LIMIT:
            st.state = PageState.DONE
            return
        st.sweep_end_ms = win_start - 1
        self.sleep(self.rate_ms / 1000)


# ===================================================================
# RAPIDAPI TIKTOK (CONTINUATION STYLE)
# ===================================================================

CONT_ITEMS = (path('data', 'videos'), path('videos'), path('data', 'items'))
CONT_TOKEN = (
    path('data', 'continuation_token'),
    path('continuation_token'),
    path('data', 'cursor'),
    path('cursor'),
)
SECONDARY_ID = (path('data', 'secondary_id'), path('secondary_id'), path('user', 'secondary_id'))


def tiktok_item_key(item: Dict[str, Any]) -> str:
    return post_key(item) or str(derive_tiktok_video_id(item) or '')


class ContinuationCollector:
    """Continuation-token pagination against a RapidAPI TikTok host."""

    def __init__(self, client: KeyRotationClient, host: str,
                 sleep: Callable[[float], None] = time.sleep, rate_ms: int = 250,
                 attempts: int = 3):
        self.client = client
        self.host = host
        self.sleep = sleep
        self.rate_ms = rate_ms
        self.attempts = attempts

    def _get_json(self, url: str) -> Optional[Any]:
        for attempt in range(self.attempts):
            try:
                return self.client.get(url, self.host, timeout_ms=20000)
            except RapidApiError as e:
                logger.warning(f"RapidAPI GET failed (attempt {attempt + 1}): {str(e)[:300]}")
            self.sleep(0.3 * (attempt + 1))
        return None

    def collect(self, handle: str, start: Optional[str] = None, end: Optional[str] = None) -> CollectResult:
        username = normalize_handle(handle)
        q = quote(username)
        base = f"https://{self.host}"
        acc = PostAccumulator(
            day_start_ms(start) if start else None,
            day_end_ms(end) if end else None,
            key_func=tiktok_item_key
        )

        details = self._get_json(f"{base}/user/details?username={q}")
        secondary_id = first_match(details, SECONDARY_ID) if isinstance(details, dict) else None

        first = self._get_json(f"{base}/user/videos?username={q}")
        if not isinstance(first, dict):
            raise CollectorError(f"RapidAPI returned no first page for {username}")

        pages = 1
        items = first_match(first, CONT_ITEMS)
        acc.add_all(items if isinstance(items, list) else [])
        token = first_match(first, CONT_TOKEN)

        guard = 0
        while secondary_id and token:
            url = (
                f"{base}/user/videos/continuation?username={q}"
                f"&secondary_id={quote(str(secondary_id))}&continuation_token={quote(str(token))}"
            )
            body = self._get_json(url)
            pages += 1
            items = first_match(body, CONT_ITEMS) if isinstance(body, dict) else None
            next_token = first_match(body, CONT_TOKEN) if isinstance(body, dict) else None

            added, _ = acc.add_all(items if isinstance(items, list) else [])
            guard = guard + 1 if (not next_token or added == 0) else 0
            token = next_token
            if guard >= CONTINUATION_GUARD_LIMIT:
                break
            self.sleep(self.rate_ms / 1000)

        logger.info(f"[tiktok:{username}] RapidAPI continuation collected {len(acc.posts)} posts in {pages} pages")
        return CollectResult(posts=acc.posts, mode='rapid-continuation', pages=pages)


class TikTokCollector:
    """Aggregator first, RapidAPI continuation as fallback."""

    def __init__(self, aggregator: Optional[CursorCollector], continuation: Optional[ContinuationCollector]):
        self.aggregator = aggregator
        self.continuation = continuation

    def collect(self, handle: str, start: Optional[str] = None, end: Optional[str] = None,
                force_rapid: bool = False) -> CollectResult:
        errors = []
        if self.aggregator is not None and not force_rapid:
            try:
                result = self.aggregator.collect(handle, start, end)
                if result.posts:
                    return result
                logger.info(f"[tiktok:{handle}] Aggregator returned no posts, trying RapidAPI")
            except CollectorError as e:
                errors.append(str(e))
                logger.warning(f"[tiktok:{handle}] Aggregator failed, falling back to RapidAPI: {str(e)}")

        if self.continuation is not None:
            return self.continuation.collect(handle, start, end)
        if errors:
            raise CollectorError('; '.join(errors))
        return CollectResult(posts=[], mode='aggregator')


# ===================================================================
# RAPIDAPI INSTAGRAM
# ===================================================================

USER_ID_EXTRACTORS = (
    path('user_id'),
    path('id'),
    path('data', 'user_id'),
    path('data', 'id'),
    path('data', 'user', 'id'),
    path('user', 'id'),
    path('result', 'user', 'pk'),
    path('result', 'pk'),
    path('result', 'id'),
)


def instagram_item_key(item: Dict[str, Any]) -> str:
    media_id = first_match(unwrap_instagram(item), INSTAGRAM_ID_EXTRACTORS)
    return str(media_id) if media_id is not None else ''


def instagram_item_ms(item: Dict[str, Any]) -> Optional[int]:
    return first_timestamp(unwrap_instagram(item), INSTAGRAM_TIME_EXTRACTORS)


class InstagramCollector:
    """
    Resolve an Instagram username to its numeric id, then pull reels from
    the first provider that returns anything.
    """

    def __init__(self, client: KeyRotationClient, settings, supabase=None,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.settings = settings
        self.supabase = supabase
        self.sleep = sleep

    def resolve_user_id(self, username: str) -> Optional[str]:
        if self.supabase is not None:
            cached = self.supabase.table('instagram_user_ids')\
                .select('instagram_user_id')\
                .eq('instagram_username', username)\
                .limit(1)\
                .execute()
            if cached.data and cached.data[0].get('instagram_user_id'):
                return str(cached.data[0]['instagram_user_id'])

        scraper = self.settings.ig_scraper_host
        media = self.settings.instagram_host
        link = quote(f"https://www.instagram.com/{username}", safe='')
        q = quote(username)
        candidates = [
            (scraper, f"https://{scraper}/get_instagram_user_id?link={link}"),
            (media, f"https://{media}/api/instagram/user?username={q}"),
            (media, f"https://{media}/api/instagram/userinfo?username={q}"),
            (scraper, f"https://{scraper}/get_user_id?user_name={q}"),
        ]
        for host, url in candidates:
            try:
                body = self.client.get(url, host, timeout_ms=15000, max_per_key_retries=2)
            except NoKeysConfiguredError:
                raise
            except RapidApiError as e:
                logger.warning(f"[instagram:{username}] user id lookup failed on {host}: {str(e)[:200]}")
                continue
            user_id = first_match(body, USER_ID_EXTRACTORS) if isinstance(body, dict) else None
            if user_id:
                self._cache_user_id(username, str(user_id))
                return str(user_id)
        return None

    def _cache_user_id(self, username: str, user_id: str) -> None:
        if self.supabase is None:
            return
        try:
            self.supabase.table('instagram_user_ids')\
                .upsert({'instagram_username': username, 'instagram_user_id': user_id},
                        on_conflict='instagram_username')\
                .execute()
        except Exception as e:
            logger.warning(f"[instagram:{username}] Could not cache user id: {str(e)}")

    def providers(self, user_id: str) -> List[Tuple[str, Callable[[], List[Any]]]]:
        s = self.settings
        uid = quote(user_id)

        def scraper():
            body = self.client.get(
                f"https://{s.ig_scraper_host}/get_instagram_reels_details_from_id?user_id={uid}",
                s.ig_scraper_host, timeout_ms=30000, max_per_key_retries=3)
            return first_match(body, (path('data', 'reels'), path('reels'), path('data', 'items'), path('items'))) or []

        def media_host():
            body = self.client.request(
                f"https://{s.instagram_host}/api/instagram/reels", s.instagram_host,
                method='POST', body={'userid': user_id, 'user_id': user_id, 'maxId': ''},
                timeout_ms=30000, max_per_key_retries=3)
            return first_match(body, (path('result', 'edges'), path('result', 'items'))) or []

        def fast():
            body = self.client.get(
                f"https://{s.ig_fast_host}/reels?user_id={uid}&include_feed_video=true",
                s.ig_fast_host, timeout_ms=30000, max_per_key_retries=3)
            items = first_match(body, (path('data', 'items'), path('items'))) or []
            return [{'media': it.get('media') or it} for it in items if isinstance(it, dict)]

        def best():
            body = self.client.get(
                f"https://{s.ig_best_host}/feed?user_id={uid}",
                s.ig_best_host, timeout_ms=30000, max_per_key_retries=3)
            if isinstance(body, list):
                return body
            return first_match(body, (path('items'), path('data', 'items'), path('result', 'items'))) or []

        return [('scraper', scraper), ('ig_host', media_host), ('fast', fast), ('best', best)]

    def _try_provider(self, name: str, fetcher: Callable[[], List[Any]], username: str) -> List[Any]:
        for attempt in range(3):
            try:
                items = fetcher()
                if isinstance(items, list) and items:
                    return items
            except NoKeysConfiguredError:
                raise
            except RapidApiError as e:
                if attempt == 2:
                    logger.warning(f"[instagram:{username}] {name} failed after 3 attempts: {str(e)[:200]}")
            if attempt < 2:
                self.sleep(1.0 * (attempt + 1))
        return []

    def collect(self, handle: str, start: Optional[str] = None, end: Optional[str] = None) -> CollectResult:
        username = normalize_handle(handle)
        user_id = self.resolve_user_id(username)
        if not user_id:
            raise CollectorError(f"Could not resolve Instagram user id for {username}")

        acc = PostAccumulator(
            day_start_ms(start) if start else None,
            day_end_ms(end) if end else None,
            key_func=instagram_item_key,
            time_func=instagram_item_ms
        )
        for index, (name, fetcher) in enumerate(self.providers(user_id)):
            items = self._try_provider(name, fetcher, username)
            if items:
                acc.add_all(items)
                logger.info(f"[instagram:{username}] ✓ {name} returned {len(items)} items ({len(acc.posts)} in window)")
                return CollectResult(posts=acc.posts, mode='rapid-providers', pages=index + 1, source=name)
            self.sleep(1.0)

        raise CollectorError(f"All Instagram providers returned nothing for {username}")


def build_collector(platform: str, settings, client: Optional[KeyRotationClient] = None,
                    supabase=None, sleep: Callable[[float], None] = time.sleep):
    """Wire the production collector for a platform from settings."""
    client = client or KeyRotationClient.from_settings(settings, sleep=sleep)
    if platform == 'instagram':
        return InstagramCollector(client, settings, supabase=supabase, sleep=sleep)

    aggregator = None
    if settings.aggregator_enabled:
        aggregator = CursorCollector(
            AggregatorClient(settings.aggregator_base, sleep=sleep).fetch_posts,
            page_size=settings.aggregator_per_page,
            max_pages=settings.aggregator_max_pages,
            rate_ms=settings.aggregator_rate_ms,
            sleep=sleep
        )
    continuation = ContinuationCollector(client, settings.tiktok_host, sleep=sleep) if client.keys else None
    return TikTokCollector(aggregator, continuation)
