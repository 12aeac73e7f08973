from typing import Any, Dict, List, Optional
from hypercorn_core.storage.models import Entry, ReplyReference
from hypercorn_core.storage.provider import FeedStorageProvider

# path -> (entries, replies); survives close/reopen within one process
_LOGS: Dict[str, tuple] = {}


class InMemoryFeedStorage(FeedStorageProvider):
    def __init__(self, path: str = ":memory:"):
        self.path = path
        self.created = path not in _LOGS
        self.entries, self.reply_index = _LOGS.setdefault(path, ([], {}))

    def length(self) -> int:
        return len(self.entries)

    def append(self, type_: str, payload: Dict[str, Any]) -> int:
        index = len(self.entries)
        self.entries.append((type_, dict(payload)))
        return index

    def put(self, entry: Entry) -> None:
        if entry.index != len(self.entries):
            raise ValueError(f"out of order entry {entry.index}, log length is {len(self.entries)}")
        self.entries.append((entry.type, dict(entry.payload)))

    def get(self, index: int) -> Optional[Entry]:
        if index >= len(self.entries): return None
        type_, payload = self.entries[index]
        return Entry(index=index, type=type_, payload=dict(payload), replies=self.replies(index))

    def range(self, offset: int, limit: int) -> List[Entry]:
        return [self.get(i) for i in range(offset, min(offset + limit, len(self.entries)))]

    def add_reply(self, index: int, reply: ReplyReference) -> None:
        refs = self.reply_index.setdefault(index, [])
        if reply not in refs:
            refs.append(reply)

    def replies(self, index: int) -> List[ReplyReference]:
        return list(self.reply_index.get(index, []))

    def close(self): pass

    def discard(self) -> None:
        if not self.entries:
            _LOGS.pop(self.path, None)
