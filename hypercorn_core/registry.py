"""
hypercorn_core.registry
-----------------------
FeedRegistry owns every long-lived feed handle of a node.

Ownership rules:
- the node's own feed is opened by `open_main()` and is never released
- `adopt()` turns a followed key into a full, watched handle; concurrent
  adopts of one key share a single open
- `borrow()` lends a tracked handle, or a transient sparse one that is closed
  when the borrower is done, whatever the outcome
- a key present in the registry always maps to an opening or ready handle
"""

from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional
import asyncio, os

from .crypto import KeyPair
from .errors import StorageError
from .feed import FETCH_TIMEOUT, EntryHandler, Feed, Watcher
from .logger import get_logger
from .storage import Entry
from .transport import BaseTransport
from .utils import key_b64, key_hex

log = get_logger("hypercorn.registry")

SparseTrustHandler = Callable[[Entry, bytes], None]


class FeedRegistry:
    def __init__(
        self,
        feed_dir: str,
        pair: KeyPair,
        transport: Optional[BaseTransport] = None,
        storage_config: Optional[dict] = None,
        on_sparse_trust: Optional[SparseTrustHandler] = None,
        fetch_timeout: float = FETCH_TIMEOUT,
    ):
        self.feed_dir = feed_dir
        self.pair = pair
        self.transport = transport
        self.storage_config = storage_config
        self.on_sparse_trust = on_sparse_trust
        self.fetch_timeout = fetch_timeout

        self.main: Optional[Feed] = None
        self._feeds: Dict[str, Feed] = {}
        self._watchers: Dict[str, Watcher] = {}
        self._adopting: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def __contains__(self, feed_key: bytes) -> bool:
        return key_b64(feed_key) in self._feeds

    def __len__(self) -> int:
        return len(self._feeds)

    def get(self, feed_key: bytes) -> Optional[Feed]:
        return self._feeds.get(key_b64(feed_key))

    def watcher(self, feed_key: bytes) -> Optional[Watcher]:
        return self._watchers.get(key_b64(feed_key))

    def keys(self) -> List[bytes]:
        return [feed.feed_key for feed in self._feeds.values()]

    def path_for(self, feed_key: bytes) -> str:
        return os.path.join(self.feed_dir, key_hex(feed_key))

    def _new_feed(self, feed_key: bytes, full: bool, private_key: Optional[bytes] = None) -> Feed:
        on_trust = None
        if not full and self.on_sparse_trust is not None:
            on_trust = lambda entry: self.on_sparse_trust(entry, feed_key)
        return Feed(
            self.path_for(feed_key),
            feed_key,
            full=full,
            private_key=private_key,
            transport=self.transport,
            storage_config=self.storage_config,
            on_trust=on_trust,
            fetch_timeout=self.fetch_timeout,
        )

    # ------------------------------------------------------------------
    # Main feed
    # ------------------------------------------------------------------
    async def open_main(self) -> Feed:
        if self.main is not None:
            return self.main

        feed = self._new_feed(self.pair.public_key, full=True, private_key=self.pair.private_key)
        await feed.open()
        self.main = feed
        self._feeds[key_b64(feed.feed_key)] = feed
        log.info(f"main feed open key={key_b64(feed.feed_key)} length={feed.length}")
        return feed

    async def watch_main(self, handler: EntryHandler, start: int = 0) -> Watcher:
        if self.main is None:
            raise StorageError("main feed is not open")
        b64 = key_b64(self.main.feed_key)
        if b64 in self._watchers:
            return self._watchers[b64]
        watcher = await self.main.watch(start, handler)
        self._watchers[b64] = watcher
        return watcher

    # ------------------------------------------------------------------
    # Long-lived handles
    # ------------------------------------------------------------------
    async def adopt(self, feed_key: bytes, handler: EntryHandler) -> Feed:
        """
        Open `feed_key` as a full feed watched from the start.

        The key is registered only once its watch is attached; a failed open
        or watch leaves nothing behind.
        """
        b64 = key_b64(feed_key)
        if b64 in self._feeds:
            return self._feeds[b64]

        pending = self._adopting.get(b64)
        if pending is not None:
            return await asyncio.shield(pending)

        done = asyncio.get_running_loop().create_future()
        # adopt failures are re-raised to the caller; waiters are optional
        done.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._adopting[b64] = done

        feed = self._new_feed(feed_key, full=True)
        try:
            await feed.open()
            watcher = await feed.watch(0, handler)
        except BaseException as e:
            self._adopting.pop(b64, None)
            await feed.close()
            if isinstance(e, asyncio.CancelledError):
                done.cancel()
            else:
                done.set_exception(e)
            raise

        self._feeds[b64] = feed
        self._watchers[b64] = watcher
        self._adopting.pop(b64, None)
        done.set_result(feed)
        log.info(f"following feed={b64}")
        return feed

    async def release(self, feed_key: bytes) -> bool:
        b64 = key_b64(feed_key)
        feed = self._feeds.get(b64)
        if feed is None or feed is self.main:
            return False

        watcher = self._watchers.pop(b64, None)
        try:
            if watcher is not None:
                await feed.unwatch(watcher)
            await feed.close()
        finally:
            self._feeds.pop(b64, None)
        log.info(f"unfollowed feed={b64}")
        return True

    # ------------------------------------------------------------------
    # Transient handles
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def borrow(self, feed_key: bytes, full: bool = False) -> AsyncIterator[Feed]:
        b64 = key_b64(feed_key)
        pending = self._adopting.get(b64)
        if pending is not None:
            try:
                await asyncio.shield(pending)
            except StorageError:
                pass

        tracked = self._feeds.get(b64)
        if tracked is not None:
            # the registry owns its lifetime
            yield tracked
            return

        feed = self._new_feed(feed_key, full=full)
        try:
            await feed.open()
            yield feed
        finally:
            await feed.close()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def close_all(self) -> None:
        """Close every tracked handle, the main feed last."""
        main = self.main
        if main is not None:
            # no follow may be applied once shutdown has started
            main_watcher = self._watchers.pop(key_b64(main.feed_key), None)
            if main_watcher is not None:
                await main.unwatch(main_watcher)

        self.main = None
        feeds, self._feeds = self._feeds, {}
        watchers, self._watchers = self._watchers, {}

        async def close_one(b64: str, feed: Feed) -> None:
            watcher = watchers.get(b64)
            if watcher is not None:
                await feed.unwatch(watcher)
            await feed.close()

        others = [(b64, feed) for b64, feed in feeds.items() if feed is not main]
        results = await asyncio.gather(*(close_one(b64, f) for b64, f in others), return_exceptions=True)
        if main is not None:
            try:
                await main.close()
            except StorageError as e:
                results.append(e)

        errors = [r for r in results if isinstance(r, BaseException)]
        for err in errors:
            log.error(f"close failed: {err}")
        if errors:
            raise errors[0]
