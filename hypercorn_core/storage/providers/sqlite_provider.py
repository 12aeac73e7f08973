from __future__ import annotations
from typing import Any, Dict, List, Optional
import json, sqlite3, os
from hypercorn_core.storage.models import Entry, ReplyReference
from hypercorn_core.storage.provider import FeedStorageProvider


class SQLiteFeedStorage(FeedStorageProvider):
    def __init__(self, path="hypercore/log.db"):
        # If no directory, default to current working directory
        dir_path = os.path.dirname(path) or "."
        os.makedirs(dir_path, exist_ok=True)
        self.path = path
        self.created = not os.path.exists(path)
        self.db = sqlite3.connect(path, check_same_thread=False)

        self._init()

    def _init(self) -> None:
        c = self.db.cursor()

        c.execute("""CREATE TABLE IF NOT EXISTS entries(
            idx INTEGER PRIMARY KEY,
            type TEXT NOT NULL,
            payload TEXT NOT NULL
        )""")
        c.execute("""CREATE TABLE IF NOT EXISTS replies(
            idx INTEGER NOT NULL,
            feed_key BLOB NOT NULL,
            reply_idx INTEGER NOT NULL,
            PRIMARY KEY (idx, feed_key, reply_idx)
        )""")

        self.db.commit()

    def length(self) -> int:
        row = self.db.execute("SELECT COALESCE(MAX(idx) + 1, 0) FROM entries").fetchone()
        return row[0]

    def append(self, type_: str, payload: Dict[str, Any]) -> int:
        index = self.length()
        self._insert(index, type_, payload)
        return index

    def put(self, entry: Entry) -> None:
        if entry.index != self.length():
            raise ValueError(f"out of order entry {entry.index}, log length is {self.length()}")
        self._insert(entry.index, entry.type, entry.payload)

    def _insert(self, index: int, type_: str, payload: Dict[str, Any]) -> None:
        self.db.execute(
            "INSERT INTO entries(idx,type,payload) VALUES(?,?,?)",
            (index, type_, json.dumps(payload, separators=(",", ":"), sort_keys=True)),
        )
        self.db.commit()

    def get(self, index: int) -> Optional[Entry]:
        row = self.db.execute("SELECT idx,type,payload FROM entries WHERE idx=?", (index,)).fetchone()
        if not row: return None
        return self._entry(row)

    def range(self, offset: int, limit: int) -> List[Entry]:
        cur = self.db.execute(
            "SELECT idx,type,payload FROM entries WHERE idx >= ? ORDER BY idx LIMIT ?",
            (offset, limit),
        )
        return [self._entry(row) for row in cur.fetchall()]

    def _entry(self, row) -> Entry:
        idx, type_, payload = row
        return Entry(index=idx, type=type_, payload=json.loads(payload), replies=self.replies(idx))

    def add_reply(self, index: int, reply: ReplyReference) -> None:
        self.db.execute(
            "INSERT OR IGNORE INTO replies(idx,feed_key,reply_idx) VALUES(?,?,?)",
            (index, reply.feed_key, reply.index),
        )
        self.db.commit()

    def replies(self, index: int) -> List[ReplyReference]:
        cur = self.db.execute(
            "SELECT feed_key, reply_idx FROM replies WHERE idx=? ORDER BY rowid", (index,)
        )
        return [ReplyReference(feed_key=bytes(k), index=i) for k, i in cur.fetchall()]

    def close(self):
        self.db.close()

    def discard(self) -> None:
        # another handle on the same path may have filled it meanwhile
        empty = self.length() == 0
        self.db.close()
        if not empty:
            return
        os.remove(self.path)
        dir_path = os.path.dirname(self.path)
        if dir_path and not os.listdir(dir_path):
            os.rmdir(dir_path)
