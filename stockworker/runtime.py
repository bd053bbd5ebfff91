from __future__ import annotations

import logging

from sqlalchemy.orm import Session, sessionmaker

from stockledger.adapters.base import AdapterRegistry, PlatformAdapter
from stockledger.core.cache import CacheClient
from stockledger.db.session import SessionLocal

logger = logging.getLogger(__name__)

ADAPTERS: AdapterRegistry = {}
session_factory: sessionmaker[Session] = SessionLocal
_cache: CacheClient | None = None


def register_adapter(adapter: PlatformAdapter) -> None:
    """Install the marketplace client for ``adapter.platform`` in this worker process."""
    ADAPTERS[adapter.platform] = adapter


def get_cache() -> CacheClient:
    global _cache
    if _cache is None:
        _cache = CacheClient.from_settings()
        if not _cache.is_distributed:
            logger.warning("Running without Redis: product and job locks only cover this process")
    return _cache
