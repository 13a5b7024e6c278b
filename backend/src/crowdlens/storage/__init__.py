"""Storage layer for the clustering and search engine.

This module provides the detection store contract and its backends:
- DetectionStore, the abstract interface the engine depends on
- MemoryStore, dict-backed, for tests and one-off runs
- SQLStore, SQLAlchemy-backed, durable
- EventLocks, per-event locks serializing cluster mutations

Usage:
    from crowdlens.storage import MemoryStore

    store = MemoryStore()
    event = store.create_event('City Marathon 2024')
    photo = store.create_photo(event.id, thumbnail_url='/thumbs/1.jpg')
"""

import logging
from pathlib import Path

from .base import DetectionStore
from .memory_store import MemoryStore
from .sql_store import SQLStore
from .event_lock import EventLock, EventLocks

logger = logging.getLogger(__name__)


def create_store(settings) -> DetectionStore:
    """Build the store backend named in settings.storage.

    Args:
        settings: crowdlens.config.Settings

    Returns:
        MemoryStore or SQLStore
    """
    backend = settings.storage.backend
    if backend == 'memory':
        return MemoryStore()
    if backend == 'sql':
        url = settings.storage.resolved_url()
        if url.startswith('sqlite:///'):
            # Make sure the directory of the default database exists
            Path(url[len('sqlite:///'):]).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return SQLStore(url=url)
    raise ValueError(f"Unknown storage backend: {backend}")


__all__ = [
    'DetectionStore',
    'MemoryStore',
    'SQLStore',
    'EventLock',
    'EventLocks',
    'create_store',
]
