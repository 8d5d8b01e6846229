import logging
from typing import Optional

from supabase import AsyncClient, acreate_client

from app.core.config import SUPABASE_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

_client: Optional[AsyncClient] = None


async def get_supabase() -> AsyncClient:
    """Shared async Supabase client, created on first use."""
    global _client
    if _client is not None:
        return _client
    if not SUPABASE_URL or not SUPABASE_KEY:
        raise RuntimeError("PUBLIC_SUPABASE_URL and SECRET_API_KEY must be set")
    _client = await acreate_client(SUPABASE_URL, SUPABASE_KEY)
    logger.info("Supabase client created")
    return _client


async def close_supabase() -> None:
    global _client
    if _client is None:
        return
    try:
        await _client.remove_all_channels()
    except Exception:
        logger.exception("Failed to remove realtime channels on shutdown")
    _client = None
