"""
Shared Supabase client for the web process and Celery workers.
"""
import os
import logging
import threading

from supabase import create_client, Client
from supabase.lib.client_options import ClientOptions

logger = logging.getLogger(__name__)

# Single client per process, created lazily under a lock
_supabase_client = None
_supabase_lock = threading.Lock()


def get_supabase_client() -> Client:
    """
    Initialize and return the Supabase client (service role).

    Thread-safe singleton: every request handler and Celery task reuses the
    same client instead of opening new connections.

    Raises:
        ValueError: If SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is missing
    """
    global _supabase_client

    if _supabase_client is not None:
        return _supabase_client

    with _supabase_lock:
        # Another thread may have initialized it while we waited
        if _supabase_client is not None:
            return _supabase_client

        supabase_url = os.getenv('SUPABASE_URL')
        supabase_key = os.getenv('SUPABASE_SERVICE_ROLE_KEY')

        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY environment variables are required.")

        options = ClientOptions(
            schema='public',
            headers={
                'x-client-info': 'social-metrics-pipeline/1.0'
            },
            auto_refresh_token=False,
            persist_session=False
        )

        _supabase_client = create_client(supabase_url, supabase_key, options=options)
        logger.info("✓ Supabase client initialized (thread-safe singleton)")

        return _supabase_client


def reset_supabase_client() -> None:
    global _supabase_client
    with _supabase_lock:
        _supabase_client = None
