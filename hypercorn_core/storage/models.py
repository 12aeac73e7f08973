# hypercorn_core/storage/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List
from hypercorn_core.utils import b64e


@dataclass(frozen=True)
class ReplyReference:
    """Points at entry `index` of the feed identified by `feed_key`."""
    feed_key: bytes
    index: int

    def to_dict(self) -> Dict[str, Any]:
        return {"feed_key": b64e(self.feed_key), "index": self.index}


@dataclass
class Entry:
    """
    One log entry. `index` is assigned by the owning log and never changes;
    `replies` are back-references added later by other feeds.
    """
    index: int
    type: str
    payload: Dict[str, Any]
    replies: List[ReplyReference] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "type": self.type, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        index = data["index"]
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise ValueError(f"invalid entry index {index!r}")
        if not isinstance(data.get("payload"), dict):
            raise ValueError("entry payload must be an object")
        return cls(index=index, type=str(data["type"]), payload=dict(data["payload"]))

