"""
RapidAPI key rotation with per-key cooldowns.

A single logical request walks the key pool: the premium key first, then the
remaining keys in an order derived from a 10 minute time bucket and a hash of
the URL, so repeated calls for the same URL lean on the same key while
different URLs spread across the pool.

Rate-limited keys are put on cooldown and skipped; transient failures are
retried on the same key with exponential backoff.
"""
import time
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from pipeline.timeutils import now_ms, ms_to_iso

logger = logging.getLogger(__name__)

PREMIUM_COOLDOWN_MS = 5 * 60 * 1000
POOL_COOLDOWN_MS = 15 * 60 * 1000
MIN_COOLDOWN_MS = 1000
ROTATION_BUCKET_MS = 10 * 60 * 1000
MAX_BACKOFF_MS = 10000
DEFAULT_TIMEOUT_MS = 20000
DEFAULT_MAX_PER_KEY_RETRIES = 5

QUOTA_PHRASES = ('rate limit', 'quota', 'exceeded', 'over limit', 'too many requests')


class RapidApiError(Exception):
    """Base error for RapidAPI calls."""


class NoKeysConfiguredError(RapidApiError):
    def __init__(self):
        super().__init__("No RapidAPI keys configured")


class AllKeysExhaustedError(RapidApiError):
    def __init__(self, details: List[str]):
        self.details = details
        super().__init__(
            "All RapidAPI keys failed or on cooldown. Details: " + ' | '.join(details)
        )


def stable_hash(value: str) -> int:
    """32-bit FNV-1a hash."""
    h = 2166136261
    for ch in value:
        h ^= ord(ch)
        h = (h * 16777619) & 0xFFFFFFFF
    return h


def looks_like_quota(text: str) -> bool:
    lowered = (text or '').lower()
    return any(phrase in lowered for phrase in QUOTA_PHRASES)


class CooldownRegistry:
    """
    Tracks which pool indices are cooling down.

    State is in-memory and best-effort; it is not shared across processes.
    Pass a clock to make expiry deterministic.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or now_ms
        self._until: Dict[int, int] = {}

    def now(self) -> int:
        return self._clock()

    def mark(self, idx: int, duration_ms: int) -> int:
        until = self.now() + max(duration_ms, MIN_COOLDOWN_MS)
        self._until[idx] = until
        return until

    def cooling_until(self, idx: int) -> Optional[int]:
        until = self._until.get(idx)
        if until is None:
            return None
        if until <= self.now():
            self._until.pop(idx, None)
            return None
        return until

    def is_cooling(self, idx: int) -> bool:
        return self.cooling_until(idx) is not None

    def clear(self) -> None:
        self._until.clear()


# Shared by every client in this process unless one is injected
default_cooldowns = CooldownRegistry()


class KeyRotationClient:
    """
    Issue HTTP requests against RapidAPI hosts, rotating through a key pool.

    Args:
        keys: Ordered key pool. When has_premium is True, keys[0] is the premium key.
        has_premium: Whether keys[0] is the premium key (tried first, shorter cooldown)
        cooldowns: Cooldown registry; defaults to the process-wide registry
        session: requests.Session (or compatible) used for HTTP
        sleep: Callable taking seconds, used for backoff
        clock: Callable returning epoch ms, used for the rotation bucket
    """

    def __init__(
        self,
        keys: List[str],
        has_premium: bool = True,
        cooldowns: Optional[CooldownRegistry] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], int]] = None
    ):
        self.keys = [k for k in keys if k]
        self.has_premium = has_premium and bool(self.keys)
        self.cooldowns = cooldowns if cooldowns is not None else default_cooldowns
        self.session = session or requests.Session()
        self.sleep = sleep
        self.clock = clock or self.cooldowns.now

    @classmethod
    def from_settings(cls, settings, **kwargs) -> 'KeyRotationClient':
        return cls(settings.rapidapi_keys, has_premium=settings.has_premium_key, **kwargs)

    def key_order(self, url: str) -> List[int]:
        """Return pool indices in the order they should be tried for this URL."""
        indices = list(range(len(self.keys)))
        premium = indices[:1] if self.has_premium else []
        pool = indices[1:] if self.has_premium else indices
        if not pool:
            return premium
        bucket = self.clock() // ROTATION_BUCKET_MS
        start = (bucket + stable_hash(url)) % len(pool)
        return premium + pool[start:] + pool[:start]

    def mark_cooldown(self, idx: int, duration_ms: Optional[int] = None) -> int:
        if duration_ms is None:
            duration_ms = PREMIUM_COOLDOWN_MS if (self.has_premium and idx == 0) else POOL_COOLDOWN_MS
        until = self.cooldowns.mark(idx, duration_ms)
        logger.warning(f"Key#{idx} on cooldown until {ms_to_iso(until)}")
        return until

    def request(
        self,
        url: str,
        host: str,
        method: str = 'GET',
        body: Optional[Dict[str, Any]] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_per_key_retries: int = DEFAULT_MAX_PER_KEY_RETRIES
    ) -> Any:
        """
        Perform one logical request, failing over across keys.

        Returns:
            Parsed JSON when the response is JSON, the body text otherwise

        Raises:
            NoKeysConfiguredError: If the pool is empty
            AllKeysExhaustedError: If every key failed or is cooling down
        """
        if not self.keys:
            raise NoKeysConfiguredError()

        details: List[str] = []
        for idx in self.key_order(url):
            until = self.cooldowns.cooling_until(idx)
            if until is not None:
                details.append(f"Key#{idx} on cooldown until {ms_to_iso(until)}")
                continue

            headers = {
                'X-RapidAPI-Key': self.keys[idx],
                'X-RapidAPI-Host': host,
                'Content-Type': 'application/json'
            }

            attempt = 0
            while True:
                try:
                    response = self.session.request(
                        method,
                        url,
                        headers=headers,
                        json=body,
                        timeout=timeout_ms / 1000
                    )
                except requests.RequestException as e:
                    if attempt < max_per_key_retries:
                        self._backoff(attempt)
                        attempt += 1
                        continue
                    details.append(f"Key#{idx} exception: {e}")
                    break

                status = response.status_code
                if status in (429, 403):
                    self.mark_cooldown(idx)
                    details.append(f"Key#{idx} rate-limited ({status}) {response.text[:200]}")
                    break

                if not (200 <= status < 300):
                    text = response.text
                    if looks_like_quota(text):
                        self.mark_cooldown(idx)
                        details.append(f"Key#{idx} quota msg: {text[:200]}")
                        break
                    if attempt < max_per_key_retries:
                        self._backoff(attempt)
                        attempt += 1
                        continue
                    details.append(f"Key#{idx} non-ok status: {status} {text[:200]}")
                    break

                try:
                    payload = self._parse(response)
                except ValueError as e:
                    if attempt < max_per_key_retries:
                        self._backoff(attempt)
                        attempt += 1
                        continue
                    details.append(f"Key#{idx} exception: invalid JSON ({e})")
                    break

                if self._is_quota_payload(payload):
                    self.mark_cooldown(idx)
                    details.append(f"Key#{idx} quota msg: {str(payload.get('message'))[:200]}")
                    break

                return payload

        raise AllKeysExhaustedError(details)

    def get(self, url: str, host: str, **kwargs) -> Any:
        return self.request(url, host, method='GET', **kwargs)

    def _backoff(self, attempt: int) -> None:
        self.sleep(min(500 * (2 ** attempt), MAX_BACKOFF_MS) / 1000)

    @staticmethod
    def _parse(response) -> Any:
        content_type = response.headers.get('content-type', '') or ''
        if 'application/json' in content_type:
            return response.json()
        return response.text

    @staticmethod
    def _is_quota_payload(payload: Any) -> bool:
        # RapidAPI sometimes answers 200 with a bare {"message": "...quota..."}
        if not isinstance(payload, dict) or 'message' not in payload:
            return False
        if any(k in payload for k in ('data', 'items', 'videos', 'result')):
            return False
        return looks_like_quota(str(payload.get('message')))
