"""
hypercorn_core.feed
-------------------
A Feed is one open handle on an append-only log identified by a public key.

- full feeds keep a complete replica: the owner's feed publishes every
  appended entry on the mesh transport, remote full feeds subscribe and
  ingest them in index order
- sparse feeds are opened for a single lookup, then closed; while open they
  fetch from the owner on demand, and a lookup waits up to `fetch_timeout`
  for the entries it needs

Replication protocol, all on the feed topics:
- `feed.<hex>.want` carries `{"feed_key", "from"}`; the owner answers by
  republishing its entries from that offset, or a bare head when it has none
- `feed.<hex>` carries entries (`index`, `type`, `payload`) and heads; both
  carry the owner's `length` at publish time
- an owner announces its head when it opens, and a replica asks again from
  its own length whenever it sees a gap

Watchers deliver entries strictly in index order, one at a time, to an async
handler. A failing handler is logged and delivery continues with the next
entry.
"""

from __future__ import annotations
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import asyncio, sqlite3

from .constants import FEED_TOPIC_PREFIX
from .crypto import ed25519_public_from_private
from .errors import NotFoundError, StorageError
from .logger import get_logger
from .storage import Entry, ReplyReference, load_storage_provider
from .transport import BaseTransport
from .utils import key_b64, key_hex

log = get_logger("hypercorn.feed")

EntryHandler = Callable[[Entry], Awaitable[None]]

MAX_PENDING = 4096
FETCH_TIMEOUT = 2.0
WANT_INTERVAL = 1.0


class FeedState(str, Enum):
    OPENING = "opening"
    READY = "ready"
    CLOSED = "closed"


def feed_topic(feed_key: bytes) -> str:
    return FEED_TOPIC_PREFIX + key_hex(feed_key)


def want_topic(feed_key: bytes) -> str:
    return feed_topic(feed_key) + ".want"


class Watcher:
    """Delivers entries of one feed, from `start` onwards, to `handler`."""

    def __init__(self, feed: "Feed", start: int, handler: EntryHandler):
        self.feed = feed
        self.position = start
        self.handler = handler
        self.task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self.task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        feed = self.feed
        while feed.state is FeedState.READY:
            if self.position >= feed.length:
                async with feed._changed:
                    await feed._changed.wait_for(
                        lambda: self.position < feed.length or feed.state is not FeedState.READY
                    )
                continue

            try:
                entry = await feed.get_message(self.position)
            except (StorageError, NotFoundError) as e:
                log.error(f"watch read failed feed={feed.short_key} index={self.position}: {e}")
                return

            try:
                await self.handler(entry)
            except Exception:
                log.exception(f"watch handler failed feed={feed.short_key} index={entry.index}")
            self.position = entry.index + 1

    def stop(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


class Feed:
    def __init__(
        self,
        feed_dir: str,
        feed_key: bytes,
        full: bool = True,
        private_key: Optional[bytes] = None,
        transport: Optional[BaseTransport] = None,
        storage_config: Optional[dict] = None,
        on_trust: Optional[Callable[[Entry], None]] = None,
        fetch_timeout: float = FETCH_TIMEOUT,
    ):
        self.feed_dir = feed_dir
        self.feed_key = bytes(feed_key)
        self.full = full
        self.transport = transport
        self.storage_config = storage_config
        self.on_trust = on_trust
        self.fetch_timeout = fetch_timeout
        self.writable = private_key is not None and ed25519_public_from_private(private_key) == self.feed_key

        self.state = FeedState.OPENING
        self.created = False
        self.length = 0
        # owner's length as last announced, None until heard from
        self.remote_length: Optional[int] = None

        self._storage = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition()
        self._watchers: List[Watcher] = []
        self._pending: Dict[int, Entry] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._subscriptions = []
        self._last_want: Optional[tuple] = None

    @property
    def short_key(self) -> str:
        return key_b64(self.feed_key)[:12]

    def __repr__(self) -> str:
        mode = "full" if self.full else "sparse"
        return f"<Feed {self.short_key} {mode} {self.state.value}>"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self) -> "Feed":
        if self.state is FeedState.READY:
            return self
        if self.state is FeedState.CLOSED:
            raise StorageError(f"feed {self.short_key} is closed")

        try:
            self._storage = await asyncio.to_thread(load_storage_provider, self.feed_dir, self.storage_config)
            self.length = await asyncio.to_thread(self._storage.length)
        except (OSError, sqlite3.Error, ValueError) as e:
            self.state = FeedState.CLOSED
            raise StorageError(f"cannot open feed {self.short_key} at {self.feed_dir}: {e}") from e

        self.created = self._storage.created
        self._loop = asyncio.get_running_loop()
        self.state = FeedState.READY

        if self.transport is not None:
            if self.writable:
                if self.full:
                    self._subscribe(want_topic(self.feed_key), self._on_want)
                    self._publish_head()
            else:
                self._subscribe(feed_topic(self.feed_key), self._on_remote)
                self._request(force=True)

        log.debug(f"feed ready key={self.short_key} full={self.full} length={self.length} created={self.created}")
        return self

    async def close(self) -> None:
        if self.state is FeedState.CLOSED:
            return
        self.state = FeedState.CLOSED

        for topic, handler in self._subscriptions:
            self.transport.unsubscribe(topic, handler)
        self._subscriptions = []

        watchers, self._watchers = self._watchers, []
        await self._stop_watchers(watchers)
        async with self._changed:
            self._changed.notify_all()

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._storage is not None:
            # a lookup that found nothing leaves no replica behind
            release = self._storage.discard if not self.full and self.length == 0 else self._storage.close
            try:
                async with self._lock:
                    await asyncio.to_thread(release)
            except (OSError, sqlite3.Error) as e:
                raise StorageError(f"cannot close feed {self.short_key}: {e}") from e
        log.debug(f"feed closed key={self.short_key}")

    def _check_ready(self) -> None:
        if self.state is not FeedState.READY:
            raise StorageError(f"feed {self.short_key} is {self.state.value}")

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------
    async def append(self, type_: str, payload: Dict[str, Any]) -> int:
        self._check_ready()
        if not self.writable:
            raise StorageError(f"feed {self.short_key} is read-only")

        try:
            async with self._lock:
                index = await asyncio.to_thread(self._storage.append, type_, payload)
                self.length = index + 1
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"append to {self.short_key} failed: {e}") from e

        if self.full and self.transport is not None:
            self._publish(Entry(index=index, type=type_, payload=payload))
        await self._notify()
        return index

    async def ingest(self, entry: Entry) -> int:
        """
        Store a replicated entry. Duplicates are ignored and entries ahead of
        the log are held until the gap closes. Returns the number of entries
        that became visible.
        """
        self._check_ready()
        if entry.index < self.length:
            return 0

        stored = 0
        try:
            async with self._lock:
                if len(self._pending) >= MAX_PENDING and entry.index not in self._pending:
                    log.warning(f"ingest buffer full feed={self.short_key}, dropping index={entry.index}")
                    return 0
                self._pending[entry.index] = entry
                while self.length in self._pending:
                    await asyncio.to_thread(self._storage.put, self._pending.pop(self.length))
                    self.length += 1
                    stored += 1
        except (OSError, sqlite3.Error, ValueError) as e:
            raise StorageError(f"ingest into {self.short_key} failed: {e}") from e

        if self._pending:
            # something below the buffered entries went missing
            self._request()
        if stored:
            await self._notify()
        return stored

    async def add_reply(self, index: int, feed_key: bytes, reply_index: int) -> None:
        self._check_ready()
        await self._fetch(index + 1)
        reply = ReplyReference(feed_key=bytes(feed_key), index=reply_index)
        try:
            async with self._lock:
                if await asyncio.to_thread(self._storage.get, index) is None:
                    raise NotFoundError(f"feed {self.short_key} has no entry {index}")
                await asyncio.to_thread(self._storage.add_reply, index, reply)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"add reply to {self.short_key}#{index} failed: {e}") from e

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    async def get_message(self, index: int) -> Entry:
        self._check_ready()
        await self._fetch(index + 1)
        try:
            async with self._lock:
                entry = await asyncio.to_thread(self._storage.get, index)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"read {self.short_key}#{index} failed: {e}") from e
        if entry is None:
            raise NotFoundError(f"feed {self.short_key} has no entry {index}")
        self._report_trust([entry])
        return entry

    async def get_timeline(self, offset: int, limit: int) -> List[Entry]:
        self._check_ready()
        await self._fetch(offset + limit)
        try:
            async with self._lock:
                entries = await asyncio.to_thread(self._storage.range, offset, limit)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"read {self.short_key} timeline failed: {e}") from e
        if not entries and limit > 0:
            raise NotFoundError(f"feed {self.short_key} has no entries from {offset}")
        self._report_trust(entries)
        return entries

    async def get_replies(self, index: int) -> List[ReplyReference]:
        return (await self.get_message(index)).replies

    async def _fetch(self, upto: int) -> None:
        """
        Wait until entries below `upto` are local, the owner is known to have
        fewer, or `fetch_timeout` runs out. Owned feeds never wait.
        """
        if self.writable or self.transport is None or self.length >= upto:
            return

        def enough() -> bool:
            if self.state is not FeedState.READY or self.length >= upto:
                return True
            return self.remote_length is not None and self.length >= self.remote_length

        async with self._changed:
            try:
                await asyncio.wait_for(self._changed.wait_for(enough), self.fetch_timeout)
            except asyncio.TimeoutError:
                log.debug(f"fetch timed out feed={self.short_key} have={self.length} want={upto}")
        self._check_ready()

    def _report_trust(self, entries: List[Entry]) -> None:
        # only sparse handles report; full ones deliver trust through their watcher
        if self.full or self.on_trust is None:
            return
        for entry in entries:
            if entry.type == "trust":
                self.on_trust(entry)

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------
    async def watch(self, start: int, handler: EntryHandler) -> Watcher:
        self._check_ready()
        if start < 0:
            raise ValueError("`start` must be non-negative")
        watcher = Watcher(self, start, handler)
        watcher.start()
        self._watchers.append(watcher)
        return watcher

    async def unwatch(self, watcher: Watcher) -> None:
        if watcher in self._watchers:
            self._watchers.remove(watcher)
        await self._stop_watchers([watcher])

    @staticmethod
    async def _stop_watchers(watchers: List[Watcher]) -> None:
        current = asyncio.current_task()
        tasks = []
        for watcher in watchers:
            watcher.stop()
            if watcher.task is not None and watcher.task is not current:
                tasks.append(watcher.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Replication over the mesh transport
    # ------------------------------------------------------------------
    def _subscribe(self, topic: str, handler) -> None:
        self.transport.subscribe(topic, handler)
        self._subscriptions.append((topic, handler))

    def _publish(self, entry: Entry) -> None:
        data = entry.to_dict()
        data["feed_key"] = key_b64(self.feed_key)
        data["length"] = self.length
        self.transport.publish(feed_topic(self.feed_key), data, key=key_hex(self.feed_key))

    def _publish_head(self) -> None:
        self.transport.publish(feed_topic(self.feed_key), {
            "feed_key": key_b64(self.feed_key),
            "length": self.length,
        }, key=key_hex(self.feed_key))

    def _request(self, force: bool = False) -> None:
        """Ask the owner for everything from our length on, at most once per WANT_INTERVAL per offset."""
        if self.transport is None or self.writable or self.state is not FeedState.READY:
            return
        now = self._loop.time()
        if not force and self._last_want is not None:
            offset, at = self._last_want
            if offset == self.length and now - at < WANT_INTERVAL:
                return
        self._last_want = (self.length, now)
        self.transport.publish(want_topic(self.feed_key), {
            "feed_key": key_b64(self.feed_key),
            "from": self.length,
        })

    def _call_on_loop(self, fn, *args) -> None:
        # transport handlers may run on a foreign thread
        try:
            self._loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            log.debug(f"event loop gone, dropping transport event for {self.short_key}")

    def _spawn(self, coro) -> None:
        if self.state is not FeedState.READY:
            coro.close()
            return
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning(f"replication task failed feed={self.short_key}: {task.exception()}")

    def _on_remote(self, data: dict) -> None:
        if data.get("feed_key") != key_b64(self.feed_key):
            return
        length = data.get("length")
        if not isinstance(length, int) or isinstance(length, bool) or length < 0:
            length = None

        entry = None
        if "index" in data:
            try:
                entry = Entry.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                log.warning(f"malformed replicated entry for {self.short_key}: {e}")
                return
        self._call_on_loop(lambda: self._spawn(self._receive(entry, length)))

    async def _receive(self, entry: Optional[Entry], length: Optional[int]) -> None:
        if length is not None and (self.remote_length is None or length > self.remote_length):
            self.remote_length = length
        if entry is not None:
            await self.ingest(entry)
        elif self.remote_length is not None and self.remote_length > self.length:
            # the owner came (back) online ahead of us
            self._request(force=True)
        await self._notify()

    def _on_want(self, data: dict) -> None:
        start = data.get("from", 0)
        if not isinstance(start, int) or isinstance(start, bool) or start < 0:
            return
        self._call_on_loop(lambda: self._spawn(self._serve_want(start)))

    async def _serve_want(self, start: int) -> None:
        if start >= self.length:
            self._publish_head()
            return
        for entry in await self.get_timeline(start, self.length - start):
            self._publish(entry)
