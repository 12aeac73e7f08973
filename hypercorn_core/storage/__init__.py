# hypercorn_core/storage/__init__.py

from .models import Entry, ReplyReference
from .provider import FeedStorageProvider
from .providers.memory_provider import InMemoryFeedStorage
from .providers.sqlite_provider import SQLiteFeedStorage
from hypercorn_core.constants import FEED_DB
import os


def load_storage_provider(feed_dir: str, config: dict | None = None) -> FeedStorageProvider:
    """
    Factory resolver for the backing store of one feed.

    For now:
        - sqlite (default): <feed_dir>/log.db
        - memory: process-local, keyed by feed_dir
    """
    config = config or {}
    provider = config.get("provider") or os.getenv("HYPERCORN_STORAGE_PROVIDER", "sqlite")

    if provider == "memory":
        return InMemoryFeedStorage(feed_dir)

    if provider == "sqlite":
        return SQLiteFeedStorage(os.path.join(feed_dir, FEED_DB))
    raise ValueError(f"Unknown storage provider: {provider}")


__all__ = [
    "Entry",
    "ReplyReference",
    "FeedStorageProvider",
    "InMemoryFeedStorage",
    "SQLiteFeedStorage",
    "load_storage_provider",
]
