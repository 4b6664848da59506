"""
Supabase read helpers.
"""
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000


def fetch_all(build_query: Callable[[], Any], page_size: int = PAGE_SIZE, max_rows: int = 200000) -> List[Dict[str, Any]]:
    """
    Read every row of a query, page by page.

    PostgREST caps each response (1000 rows by default), so the query is
    re-built and ranged until a short page comes back.

    Args:
        build_query: Zero-argument callable returning a fresh filtered query builder
        page_size: Rows per request
        max_rows: Safety cap

    Returns:
        All rows, in the query's order
    """
    rows: List[Dict[str, Any]] = []
    offset = 0
    while offset < max_rows:
        response = build_query().range(offset, offset + page_size - 1).execute()
        page = response.data or []
        rows.extend(page)
        if len(page) < page_size:
            break
        offset += page_size
    else:
        logger.warning(f"fetch_all stopped at the {max_rows} row cap")
    return rows
