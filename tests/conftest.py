"""
Pytest fixtures for pipeline testing.

Provides:
- An in-memory stand-in for the Supabase query builder
- Mock HTTP responses for RapidAPI / aggregator calls
- Timestamp helpers
"""

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from pipeline.timeutils import day_start_ms


# =============================================================================
# FAKE SUPABASE
# =============================================================================

class FakeResponse:
    def __init__(self, data):
        self.data = data


def _same(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is b
    return str(a) == str(b)


def _sort_key(value: Any):
    return (value is None, '' if value is None else value)


class FakeQuery:
    """Records a fluent PostgREST-style chain and applies it to in-memory rows on execute()."""

    def __init__(self, db: 'FakeSupabase', table: str):
        self.db = db
        self.table_name = table
        self.op = 'select'
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List = []
        self.orders: List = []
        self.limit_n: Optional[int] = None
        self.range_bounds: Optional[tuple] = None

    # Operations
    def select(self, columns: str = '*', count: Optional[str] = None):
        self.op = 'select'
        return self

    def insert(self, rows):
        self.op = 'insert'
        self.payload = rows
        return self

    def upsert(self, rows, on_conflict: Optional[str] = None):
        self.op = 'upsert'
        self.payload = rows
        self.on_conflict = on_conflict
        return self

    def update(self, values: Dict[str, Any]):
        self.op = 'update'
        self.payload = values
        return self

    def delete(self):
        self.op = 'delete'
        return self

    # Filters
    def eq(self, column, value):
        self.filters.append(lambda r: _same(r.get(column), value))
        return self

    def in_(self, column, values):
        allowed = [str(v) for v in values]
        self.filters.append(lambda r: r.get(column) is not None and str(r.get(column)) in allowed)
        return self

    def gte(self, column, value):
        self.filters.append(lambda r: r.get(column) is not None and r.get(column) >= value)
        return self

    def lte(self, column, value):
        self.filters.append(lambda r: r.get(column) is not None and r.get(column) <= value)
        return self

    def lt(self, column, value):
        self.filters.append(lambda r: r.get(column) is not None and r.get(column) < value)
        return self

    def gt(self, column, value):
        self.filters.append(lambda r: r.get(column) is not None and r.get(column) > value)
        return self

    # Modifiers
    def order(self, column, desc: bool = False):
        self.orders.append((column, desc))
        return self

    def limit(self, n: int):
        self.limit_n = n
        return self

    def range(self, start: int, end: int):
        self.range_bounds = (start, end)
        return self

    def _matches(self, row: Dict[str, Any]) -> bool:
        return all(f(row) for f in self.filters)

    def execute(self) -> FakeResponse:
        with self.db.lock:
            self.db.calls.append((self.table_name, self.op))
            if (self.table_name, self.op) in self.db.failures:
                raise Exception(f"Simulated {self.op} failure on {self.table_name}")
            rows = self.db.tables.setdefault(self.table_name, [])
            return getattr(self, f"_exec_{self.op}")(rows)

    def _exec_select(self, rows):
        out = [copy.deepcopy(r) for r in rows if self._matches(r)]
        for column, desc in reversed(self.orders):
            out.sort(key=lambda r: _sort_key(r.get(column)), reverse=desc)
        if self.range_bounds is not None:
            start, end = self.range_bounds
            out = out[start:end + 1]
        if self.limit_n is not None:
            out = out[:self.limit_n]
        return FakeResponse(out)

    def _exec_insert(self, rows):
        new = self.payload if isinstance(self.payload, list) else [self.payload]
        added = [copy.deepcopy(r) for r in new]
        rows.extend(added)
        return FakeResponse(copy.deepcopy(added))

    def _exec_upsert(self, rows):
        new = self.payload if isinstance(self.payload, list) else [self.payload]
        keys = [k.strip() for k in (self.on_conflict or 'id').split(',')]
        written = []
        for record in new:
            existing = next(
                (r for r in rows if all(_same(r.get(k), record.get(k)) for k in keys)),
                None
            )
            if existing is not None:
                existing.update(copy.deepcopy(record))
                written.append(copy.deepcopy(existing))
            else:
                rows.append(copy.deepcopy(record))
                written.append(copy.deepcopy(record))
        return FakeResponse(written)

    def _exec_update(self, rows):
        changed = []
        for r in rows:
            if self._matches(r):
                r.update(copy.deepcopy(self.payload))
                changed.append(copy.deepcopy(r))
        return FakeResponse(changed)

    def _exec_delete(self, rows):
        removed = [r for r in rows if self._matches(r)]
        rows[:] = [r for r in rows if not self._matches(r)]
        return FakeResponse(removed)


class FakeSupabase:
    """Minimal in-memory Supabase client: supabase.table(name)...execute()."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(tables or {})
        self.calls: List[tuple] = []
        self.failures = set()
        self.lock = threading.RLock()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str) -> List[Dict[str, Any]]:
        return self.tables.get(name, [])

    def fail(self, table: str, op: str) -> None:
        self.failures.add((table, op))


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


# =============================================================================
# HTTP FIXTURES
# =============================================================================

class MockHttpResponse:
    """Mimics requests.Response for the fields the clients read."""

    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None,
                 content_type: str = 'application/json'):
        self.status_code = status_code
        self._payload = payload
        self.headers = {'content-type': content_type}
        if text is None:
            text = '' if payload is None else str(payload)
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


# =============================================================================
# TIME HELPERS
# =============================================================================

def epoch_seconds(day: str, hour: int = 12) -> int:
    """Epoch seconds for a UTC calendar day at the given hour."""
    return day_start_ms(day) // 1000 + hour * 3600


def utc(day: str, hour: int = 12) -> datetime:
    y, m, d = (int(p) for p in day.split('-'))
    return datetime(y, m, d, hour, tzinfo=timezone.utc)


def tiktok_video(aweme_id: str, day: str, views: int = 0, likes: int = 0, hour: int = 12,
                 title: str = '') -> Dict[str, Any]:
    return {
        'aweme_id': aweme_id,
        'create_time': epoch_seconds(day, hour),
        'title': title,
        'play_count': views,
        'digg_count': likes,
        'comment_count': 0,
        'share_count': 0,
        'save_count': 0,
    }
