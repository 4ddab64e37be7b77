"""
Canonical Supabase client module.

This is the only module that calls create_async_client directly. Everything
else goes through get_async_client() (normally via SupabaseRecordStore).
"""
import asyncio
import logging
import os
from typing import Dict

from supabase import AsyncClient, AsyncClientOptions, create_async_client

from . import config

logger = logging.getLogger(__name__)


def _get_credentials() -> tuple:
    """Get Supabase credentials from environment."""
    supabase_url = config.SUPABASE_URL or os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY")

    if not supabase_url or not supabase_key:
        raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY/SERVICE_ROLE_KEY must be set")

    return supabase_url, supabase_key


# Async-safe singleton cache, one client per schema
_async_clients: Dict[str, AsyncClient] = {}
_async_client_lock = asyncio.Lock()


async def get_async_client(schema: str = None) -> AsyncClient:
    """
    Create or get the cached async Supabase client for a schema.

    Args:
        schema: Database schema to bind (defaults to SUPABASE_SCHEMA)

    Returns:
        Cached or newly created async Supabase client
    """
    schema = schema or config.SUPABASE_SCHEMA

    async with _async_client_lock:
        if schema in _async_clients:
            return _async_clients[schema]

        supabase_url, supabase_key = _get_credentials()

        options = AsyncClientOptions(
            schema=schema,
            auto_refresh_token=False,  # service-role usage
            persist_session=False,
        )

        client = await create_async_client(supabase_url, supabase_key, options=options)

        _async_clients[schema] = client
        logger.info(f"Created async Supabase client for schema: {schema}")

        return client


def get_client_stats() -> Dict:
    """Get statistics about active clients (for monitoring)."""
    return {
        "async_clients": list(_async_clients.keys()),
        "total_async": len(_async_clients),
    }


async def close_all_clients() -> None:
    """Close all cached clients (for graceful shutdown)."""
    async with _async_client_lock:
        for schema, client in _async_clients.items():
            try:
                await client.remove_all_channels()
            except Exception as e:
                logger.warning(f"Error closing async client for {schema}: {e}")
        _async_clients.clear()

    logger.info("All Supabase clients closed")
