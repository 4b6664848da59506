"""
Map raw provider posts onto canonical posts_daily rows and upsert them.

Providers disagree on field names and nesting, so every canonical field is
read through an ordered tuple of extractors; the first one that yields a
value wins.
"""
import time
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlparse

from supabase import Client

from pipeline.platforms import get_platform, normalize_handle
from pipeline.timeutils import parse_ms, ms_to_iso, ms_to_date_str

logger = logging.getLogger(__name__)

Extractor = Callable[[Dict[str, Any]], Any]


def path(*keys: str) -> Extractor:
    """Build an extractor that walks nested dict keys."""
    def extract(item: Dict[str, Any]) -> Any:
        current: Any = item
        for key in keys:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        return current
    return extract


def first_match(item: Dict[str, Any], extractors: Sequence[Extractor]) -> Any:
    for extractor in extractors:
        value = extractor(item)
        if value is not None and value != '':
            return value
    return None


def first_timestamp(item: Dict[str, Any], extractors: Sequence[Extractor]) -> Optional[int]:
    for extractor in extractors:
        ms = parse_ms(extractor(item))
        if ms is not None:
            return ms
    return None


def to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


# ===================================================================
# TIKTOK
# ===================================================================

STAT_SOURCES = ('statsV2', 'stats', 'statistics', None)

TIKTOK_METRIC_KEYS = {
    'play_count': ('playCount', 'play_count', 'play', 'views'),
    'digg_count': ('diggCount', 'likeCount', 'likes', 'digg_count'),
    'comment_count': ('commentCount', 'comments', 'comment_count'),
    'share_count': ('shareCount', 'shares', 'share_count'),
    'save_count': ('saveCount', 'collectCount', 'favoriteCount', 'save_count'),
}


def _stat_extractors(keys: Tuple[str, ...]) -> Tuple[Extractor, ...]:
    return tuple(
        path(source, key) if source else path(key)
        for source in STAT_SOURCES
        for key in keys
    )


TIKTOK_METRIC_EXTRACTORS = {
    column: _stat_extractors(keys) for column, keys in TIKTOK_METRIC_KEYS.items()
}

TIKTOK_VIDEO_ID_EXTRACTORS = (
    path('video_id'),
    path('videoId'),
    path('item_id'),
    path('itemId'),
    path('video', 'id'),
    path('video', 'video_id'),
    path('itemInfos', 'id'),
)

TIKTOK_AWEME_ID_EXTRACTORS = (
    path('aweme_id'),
    path('awemeId'),
    path('id'),
)

TIKTOK_URL_LIST_EXTRACTORS = (
    path('urlList'),
    path('video', 'urlList'),
    path('playAddr', 'urlList'),
    path('video', 'playAddr'),
    path('play'),
)

TIKTOK_TIME_EXTRACTORS = (
    path('create_time'),
    path('createTime'),
    path('create_time_utc'),
    path('create_date'),
    path('timestamp'),
)

TIKTOK_TITLE_EXTRACTORS = (
    path('title'),
    path('desc'),
    path('description'),
)

TIKTOK_SEC_UID_EXTRACTORS = (
    path('author', 'secUid'),
    path('author', 'sec_uid'),
    path('secUid'),
    path('sec_uid'),
)

URL_ID_PARAMS = ('item_id', 'video_id', 'file_id')


def _id_from_urls(value: Any) -> Optional[str]:
    urls = value if isinstance(value, list) else [value]
    for url in urls:
        if not isinstance(url, str) or '?' not in url:
            continue
        query = parse_qs(urlparse(url).query)
        for param in URL_ID_PARAMS:
            if query.get(param) and query[param][0]:
                return query[param][0]
    return None


def derive_tiktok_video_id(item: Dict[str, Any]) -> Optional[str]:
    """Explicit video id fields, then an id embedded in a play URL, then the aweme id."""
    explicit = first_match(item, TIKTOK_VIDEO_ID_EXTRACTORS)
    if explicit is not None:
        return str(explicit)
    for extractor in TIKTOK_URL_LIST_EXTRACTORS:
        from_url = _id_from_urls(extractor(item))
        if from_url:
            return from_url
    aweme = first_match(item, TIKTOK_AWEME_ID_EXTRACTORS)
    return str(aweme) if aweme is not None else None


def tiktok_post_ms(item: Dict[str, Any]) -> Optional[int]:
    return first_timestamp(item, TIKTOK_TIME_EXTRACTORS)


def normalize_tiktok(item: Dict[str, Any], handle: str) -> Optional[Dict[str, Any]]:
    if not isinstance(item, dict):
        return None
    video_id = derive_tiktok_video_id(item)
    taken_ms = tiktok_post_ms(item)
    if not video_id or taken_ms is None:
        return None

    row: Dict[str, Any] = {
        'video_id': video_id,
        'username': normalize_handle(handle),
        'sec_uid': first_match(item, TIKTOK_SEC_UID_EXTRACTORS),
        'taken_at': ms_to_iso(taken_ms),
        'post_date': ms_to_date_str(taken_ms),
        'title': first_match(item, TIKTOK_TITLE_EXTRACTORS),
    }
    for column, extractors in TIKTOK_METRIC_EXTRACTORS.items():
        row[column] = to_int(first_match(item, extractors))
    return row


# ===================================================================
# INSTAGRAM
# ===================================================================

INSTAGRAM_ID_EXTRACTORS = (path('pk'), path('id'), path('code'))

INSTAGRAM_TIME_EXTRACTORS = (
    path('taken_at'),
    path('taken_at_ms'),
    path('device_timestamp'),
    path('taken_at_timestamp'),
    path('timestamp'),
    path('created_at'),
    path('created_at_utc'),
    path('caption', 'created_at'),
)

INSTAGRAM_METRIC_EXTRACTORS = {
    'play_count': (path('play_count'), path('ig_play_count'), path('view_count'), path('video_view_count')),
    'like_count': (path('like_count'), path('edge_liked_by', 'count')),
    'comment_count': (path('comment_count'), path('edge_media_to_comment', 'count')),
}

INSTAGRAM_CAPTION_EXTRACTORS = (
    path('caption', 'text'),
    lambda m: m.get('caption') if isinstance(m.get('caption'), str) else None,
    path('edge_media_to_caption', 'edges'),
)


def unwrap_instagram(item: Dict[str, Any]) -> Dict[str, Any]:
    """Providers wrap the media object as node, media or node.media."""
    node = item.get('node') if isinstance(item.get('node'), dict) else None
    for candidate in (item.get('media'), (node or {}).get('media'), node):
        if isinstance(candidate, dict):
            return candidate
    return item


def normalize_instagram(item: Dict[str, Any], handle: str) -> Optional[Dict[str, Any]]:
    if not isinstance(item, dict):
        return None
    media = unwrap_instagram(item)
    media_id = first_match(media, INSTAGRAM_ID_EXTRACTORS)
    taken_ms = first_timestamp(media, INSTAGRAM_TIME_EXTRACTORS)
    if media_id is None or taken_ms is None:
        return None

    caption = first_match(media, INSTAGRAM_CAPTION_EXTRACTORS)
    if isinstance(caption, list):
        caption = ' '.join(
            str(path('node', 'text')(edge) or '') for edge in caption if isinstance(edge, dict)
        ).strip() or None

    row: Dict[str, Any] = {
        'id': str(media_id),
        'username': normalize_handle(handle),
        'taken_at': ms_to_iso(taken_ms),
        'post_date': ms_to_date_str(taken_ms),
        'caption': caption,
    }
    for column, extractors in INSTAGRAM_METRIC_EXTRACTORS.items():
        row[column] = to_int(first_match(media, extractors))
    return row


NORMALIZERS = {
    'tiktok': normalize_tiktok,
    'instagram': normalize_instagram,
}


def normalize(item: Dict[str, Any], handle: str, platform: str = 'tiktok') -> Optional[Dict[str, Any]]:
    """
    Map one raw provider post to a canonical row.

    Returns:
        The row, or None when no id or timestamp can be derived
    """
    return NORMALIZERS[get_platform(platform).platform](item, handle)


def normalize_many(items: Iterable[Dict[str, Any]], handle: str, platform: str = 'tiktok') -> List[Dict[str, Any]]:
    rows = []
    skipped = 0
    for item in items:
        row = normalize(item, handle, platform)
        if row is None:
            skipped += 1
            continue
        rows.append(row)
    if skipped:
        logger.info(f"[{platform}:{handle}] Skipped {skipped} posts without id or timestamp")
    return rows


# ===================================================================
# UPSERT
# ===================================================================

def upsert_posts(
    supabase: Client,
    platform: str,
    rows: List[Dict[str, Any]],
    batch_size: int = 500,
    rate_limit_delay: float = 0.1,
    sleep: Callable[[float], None] = time.sleep
) -> Tuple[int, int]:
    """
    Idempotently upsert canonical rows into the platform's posts_daily table.

    Rows sharing a key within one call collapse to the last one; conflicting
    rows in storage are overwritten with the latest counters.

    Args:
        supabase: Supabase client instance
        platform: 'tiktok' or 'instagram'
        rows: Canonical rows from normalize()
        batch_size: Rows per upsert request
        rate_limit_delay: Delay in seconds between batches

    Returns:
        Tuple of (upserted, failed_batches)
    """
    tables = get_platform(platform)
    unique: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        key = row.get(tables.post_key)
        if key:
            unique[str(key)] = row
    records = list(unique.values())

    if not records:
        return 0, 0

    upserted = 0
    failed_batches = 0
    total_batches = (len(records) + batch_size - 1) // batch_size

    for i in range(0, len(records), batch_size):
        batch = records[i:i + batch_size]
        batch_num = (i // batch_size) + 1
        try:
            supabase.table(tables.posts_table)\
                .upsert(batch, on_conflict=tables.post_key)\
                .execute()
            upserted += len(batch)
            logger.info(f"✓ {tables.posts_table} batch {batch_num}/{total_batches}: {len(batch)} rows")
        except Exception as e:
            failed_batches += 1
            logger.error(f"✗ {tables.posts_table} batch {batch_num}/{total_batches} failed: {str(e)}")

        if i + batch_size < len(records):
            sleep(rate_limit_delay)

    return upserted, failed_batches
