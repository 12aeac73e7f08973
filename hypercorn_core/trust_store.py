"""
hypercorn_core.trust_store
--------------------------
Distributed trust store: the web-of-trust sink every trust link ends up in.

Links are indexed by (issuer, subject); re-adding a pair keeps whichever link
expires last. Stored links are announced on the mesh transport so peers can
discover them, and links announced by peers are verified and stored the same
way.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional
import asyncio, os, sqlite3, threading, time

from .chain import LinkInfo, TrustChain
from .constants import TRUST_DB, TRUST_TOPIC
from .errors import SchemaError, StorageError, TrustError
from .logger import get_logger
from .transport import BaseTransport
from .utils import b64d, b64e, decode_key, key_b64

log = get_logger("hypercorn.trust")


@dataclass
class TrustRecord:
    """Storage-level view of one trust link, keyed by (issuer, subject)."""
    issuer: bytes
    subject: bytes
    expires_at: float
    link: bytes


class TrustStore:
    def __init__(self, storage: str, public_key: bytes, transport: Optional[BaseTransport] = None):
        os.makedirs(storage, exist_ok=True)
        self.public_key = public_key
        self.transport = transport
        self.db = sqlite3.connect(os.path.join(storage, TRUST_DB), check_same_thread=False)
        # announcements may arrive on transport threads
        self._lock = threading.Lock()
        self._closed = False
        self._init()

        if self.transport is not None:
            self.transport.subscribe(TRUST_TOPIC, self._on_announce)

    def _init(self) -> None:
        self.db.execute("""CREATE TABLE IF NOT EXISTS links(
            issuer BLOB NOT NULL,
            subject BLOB NOT NULL,
            expires_at REAL NOT NULL,
            link BLOB NOT NULL,
            PRIMARY KEY (issuer, subject)
        )""")
        self.db.commit()

    def add_link(self, issuer: bytes, link: bytes, announce: bool = True) -> bool:
        """
        Verify `link` as issued by `issuer` and store it.
        Returns False when the link is rejected (malformed, forged or expired).
        """
        try:
            info: LinkInfo = TrustChain.verify_link(link, issuer)
        except (SchemaError, TrustError) as e:
            log.warning(f"rejecting trust link by={key_b64(issuer)}: {e}")
            return False

        with self._lock:
            if self._closed:
                raise StorageError("trust store is closed")
            try:
                cur = self.db.execute(
                    "INSERT INTO links(issuer,subject,expires_at,link) VALUES(?,?,?,?) "
                    "ON CONFLICT(issuer,subject) DO UPDATE SET expires_at=excluded.expires_at, link=excluded.link "
                    "WHERE excluded.expires_at > links.expires_at",
                    (issuer, info.subject, info.expiration, link),
                )
                self.db.commit()
            except sqlite3.Error as e:
                raise StorageError(f"cannot store trust link: {e}") from e
            stored = cur.rowcount > 0

        if not stored:
            return True

        log.info(f"trust link stored by={key_b64(issuer)} for={key_b64(info.subject)}")
        if announce and self.transport is not None:
            self.transport.publish(TRUST_TOPIC, {"issuer": b64e(issuer), "link": b64e(link)})
        return True

    def _on_announce(self, data: dict) -> None:
        if self._closed:
            return
        try:
            issuer = decode_key(data["issuer"])
            link = b64d(data["link"])
        except (KeyError, TypeError, ValueError) as e:
            log.warning(f"malformed trust announcement: {e}")
            return
        try:
            # no re-announce, peers already saw it
            self.add_link(issuer, link, announce=False)
        except StorageError as e:
            log.debug(f"trust announcement by={key_b64(issuer)} arrived during close: {e}")

    def _query(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            if self._closed:
                raise StorageError("trust store is closed")
            return self.db.execute(sql, params).fetchall()

    def get_link(self, issuer: bytes, subject: bytes) -> Optional[TrustRecord]:
        rows = self._query(
            "SELECT issuer,subject,expires_at,link FROM links WHERE issuer=? AND subject=?",
            (issuer, subject),
        )
        if not rows: return None
        i, s, e, l = rows[0]
        return TrustRecord(bytes(i), bytes(s), e, bytes(l))

    def list_links(self, issuer: Optional[bytes] = None) -> List[TrustRecord]:
        if issuer is None:
            rows = self._query("SELECT issuer,subject,expires_at,link FROM links")
        else:
            rows = self._query("SELECT issuer,subject,expires_at,link FROM links WHERE issuer=?", (issuer,))
        return [TrustRecord(bytes(i), bytes(s), e, bytes(l)) for i, s, e, l in rows]

    def trusted_by(self, issuer: bytes, now: Optional[float] = None) -> List[bytes]:
        now = time.time() if now is None else now
        rows = self._query("SELECT subject FROM links WHERE issuer=? AND expires_at > ?", (issuer, now))
        return [bytes(row[0]) for row in rows]

    async def close(self) -> None:
        if self._closed:
            return
        if self.transport is not None:
            self.transport.unsubscribe(TRUST_TOPIC, self._on_announce)
        await asyncio.to_thread(self._close_db)

    def _close_db(self) -> None:
        # waits out any writer still inside add_link
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.db.close()
