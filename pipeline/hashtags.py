"""
Hashtag gating for campaign-scoped aggregation.
"""
import re
from typing import Any, Dict, Iterable, List, Optional

HASHTAG_RE = re.compile(r'#[\wЀ-ӿ]+')


def clean_tag(tag: str) -> str:
    return str(tag or '').strip().lstrip('#').lower()


def extract_hashtags(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [m.lower() for m in HASHTAG_RE.findall(text)]


def has_required_hashtag(text: Optional[str], required: Optional[Iterable[str]]) -> bool:
    """
    True when no tags are required, or when the text carries any of them,
    either as '#tag' or as the bare word.
    """
    tags = [clean_tag(t) for t in (required or []) if clean_tag(t)]
    if not tags:
        return True
    if not text:
        return False
    lowered = text.lower()
    for tag in tags:
        if f"#{tag}" in lowered:
            return True
        if re.search(rf"\b{re.escape(tag)}\b", lowered):
            return True
    return False


class HashtagPredicate:
    """Callable filter over posts_daily rows (title for TikTok, caption for Instagram)."""

    def __init__(self, required: Optional[Iterable[str]] = None):
        self.required = [clean_tag(t) for t in (required or []) if clean_tag(t)]

    @property
    def active(self) -> bool:
        return bool(self.required)

    def __call__(self, row: Dict[str, Any]) -> bool:
        text = row.get('title') or row.get('caption') or ''
        return has_required_hashtag(text, self.required)
