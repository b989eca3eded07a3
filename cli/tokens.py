from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from mindbody.config import Settings
from mindbody.localdb import session as db
from mindbody.localdb.tokens import ApiTokenStore
from webhooks import maintenance


@asynccontextmanager
async def open_token_store(settings: Settings) -> AsyncIterator[ApiTokenStore]:
    async with db.open_database(settings.db_url, settings.db_auto_create) as session_factory:
        yield ApiTokenStore(session_factory)


async def cleanup(settings: Settings, days: Optional[int] = None) -> Dict[str, Any]:
    """Delete revoked tokens and tokens expired past the retention window."""
    retention = days if days is not None else settings.api_tokens_retention_days
    async with open_token_store(settings) as token_store:
        deleted = await maintenance.cleanup_tokens(token_store, retention)
    return {"deleted": deleted, "retention_days": retention}


async def stats(settings: Settings) -> Dict[str, Any]:
    async with open_token_store(settings) as token_store:
        return await token_store.stats()
