"""
Per-platform storage layout.
"""
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Tuple

Platform = Literal['tiktok', 'instagram']

METRICS: Tuple[str, ...] = ('views', 'likes', 'comments', 'shares', 'saves')


@dataclass(frozen=True)
class PlatformTables:
    platform: str
    posts_table: str
    post_key: str
    text_column: str
    # canonical metric -> posts_daily column (None when the platform has no such counter)
    metric_columns: Dict[str, Optional[str]]
    users_handle_column: str
    mapping_table: str
    mapping_handle_column: str
    participants_table: str
    participants_handle_column: str

    def select_columns(self) -> str:
        cols = ['username', 'post_date'] + [c for c in self.metric_columns.values() if c]
        return ', '.join(cols)


TIKTOK = PlatformTables(
    platform='tiktok',
    posts_table='tiktok_posts_daily',
    post_key='video_id',
    text_column='title',
    metric_columns={
        'views': 'play_count',
        'likes': 'digg_count',
        'comments': 'comment_count',
        'shares': 'share_count',
        'saves': 'save_count',
    },
    users_handle_column='tiktok_username',
    mapping_table='user_tiktok_usernames',
    mapping_handle_column='tiktok_username',
    participants_table='campaign_participants',
    participants_handle_column='tiktok_username',
)

INSTAGRAM = PlatformTables(
    platform='instagram',
    posts_table='instagram_posts_daily',
    post_key='id',
    text_column='caption',
    metric_columns={
        'views': 'play_count',
        'likes': 'like_count',
        'comments': 'comment_count',
        'shares': None,
        'saves': None,
    },
    users_handle_column='instagram_username',
    mapping_table='user_instagram_usernames',
    mapping_handle_column='instagram_username',
    participants_table='campaign_instagram_participants',
    participants_handle_column='instagram_username',
)

PLATFORMS: Dict[str, PlatformTables] = {
    'tiktok': TIKTOK,
    'instagram': INSTAGRAM,
}


def get_platform(name: str) -> PlatformTables:
    try:
        return PLATFORMS[(name or '').strip().lower()]
    except KeyError:
        raise ValueError(f"Unsupported platform: {name!r}. Expected one of {sorted(PLATFORMS)}")


def normalize_handle(value) -> str:
    """Strip whitespace and a leading '@', then lowercase."""
    return str(value or '').strip().lstrip('@').strip().lower()
