# hypercorn_core/storage/provider.py
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from hypercorn_core.storage.models import Entry, ReplyReference


class FeedStorageProvider(ABC):
    """
    Backing store of a single append-only log.

    Providers are synchronous and not safe for concurrent writers; the Feed
    serializes access. `created` is True when opening made a new, empty log.
    """
    created: bool = False

    @abstractmethod
    def length(self) -> int: ...

    @abstractmethod
    def append(self, type_: str, payload: Dict[str, Any]) -> int: ...

    @abstractmethod
    def put(self, entry: Entry) -> None:
        """Store a replicated entry; `entry.index` must equal `length()`."""

    @abstractmethod
    def get(self, index: int) -> Optional[Entry]: ...

    @abstractmethod
    def range(self, offset: int, limit: int) -> List[Entry]: ...

    @abstractmethod
    def add_reply(self, index: int, reply: ReplyReference) -> None: ...

    @abstractmethod
    def replies(self, index: int) -> List[ReplyReference]: ...

    @abstractmethod
    def close(self) -> None: ...

    def discard(self) -> None:
        """Close the log and remove it if it holds no entries."""
        self.close()
