"""
hypercorn_core.node
-------------------
HyperCorn: one participant of the network.

The node owns a single append-only feed, follows other feeds and issues
expiring trust links. Public calls only append to the node's own feed; the
node's watcher on that feed then applies follow/unfollow/trust through
SocialGraph, so replaying the feed after a restart rebuilds the same state.

Persisted layout under `storage`:

    hypercore/<hex key>/   one log per owned or fetched feed
    trust/trust.db         distributed trust store
    key.json               node key pair
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple, Union
import asyncio, os

from .chain import TrustChain
from .config import NodeConfig
from .constants import DEFAULT_EXPIRATION, FEED_DIR, HYPERCORN_VERSION, PROTOCOL, TRUST_DIR
from .crypto import KeyPair, load_key
from .errors import NotFoundError, StorageError, ValidationError
from .feed import FETCH_TIMEOUT, Feed
from .graph import SocialGraph
from .logger import get_logger, set_level
from .registry import FeedRegistry
from .schema import (
    FollowMessage, OpenMessage, PostMessage, ReplyTo, TrustMessage, UnfollowMessage, to_payload,
)
from .storage import Entry, ReplyReference
from .transport import BaseTransport, transport_factory
from .trust_store import TrustStore
from .utils import decode_key, is_key, key_b64, now_unix

log = get_logger("hypercorn.node")

FeedKey = Union[bytes, str]
ReplyTarget = Union[ReplyReference, Tuple[FeedKey, int]]


@dataclass
class IssuedTrust:
    """
    Result of `HyperCorn.trust()`.

    `link` is usable immediately; `written` resolves to the index of the
    trust entry once it is durable in the node's feed, or raises StorageError.
    """
    link: bytes
    subject: bytes
    expires_at: float
    written: asyncio.Future


def _check_key(feed_key: FeedKey, name: str = "feed_key") -> bytes:
    if isinstance(feed_key, str):
        try:
            return decode_key(feed_key)
        except ValueError as e:
            raise ValidationError(f"`{name}` is not a valid key: {e}") from e
    if not is_key(feed_key):
        raise ValidationError(f"`{name}` must be a 32-byte public key")
    return bytes(feed_key)


def _check_uint(value, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(f"`{name}` must be a non-negative integer")
    return value


def _report_written(written: asyncio.Future) -> None:
    # retrieves the error so an unawaited `written` does not warn at teardown
    if not written.cancelled() and written.exception() is not None:
        log.error(f"trust entry not written: {written.exception()}")


class HyperCorn:
    def __init__(
        self,
        storage: str,
        public_key: Optional[bytes] = None,
        private_key: Optional[bytes] = None,
        transport: Optional[BaseTransport] = None,
        storage_provider: Optional[str] = None,
        fetch_timeout: float = FETCH_TIMEOUT,
    ):
        if not isinstance(storage, (str, os.PathLike)):
            raise ValidationError("`storage` must be a path to directory")
        self.storage = os.fspath(storage)
        self.feed_dir = os.path.join(self.storage, FEED_DIR)
        os.makedirs(self.feed_dir, exist_ok=True)

        if public_key and private_key:
            self.pair = KeyPair(public_key=bytes(public_key), private_key=bytes(private_key))
        else:
            self.pair = load_key(self.storage)

        self._owns_transport = transport is None
        self.transport = transport if transport is not None else transport_factory()
        self.trust_store = TrustStore(
            os.path.join(self.storage, TRUST_DIR), self.pair.public_key, self.transport
        )
        self._chain = TrustChain(root=self.pair.public_key)

        storage_config = {"provider": storage_provider} if storage_provider else None
        self.registry = FeedRegistry(
            self.feed_dir, self.pair, self.transport, storage_config, fetch_timeout=fetch_timeout,
        )
        self.graph = SocialGraph(self.registry, self.trust_store, self.pair)
        self.registry.on_sparse_trust = self.graph.on_sparse_trust

    @classmethod
    def from_config(cls, config: NodeConfig, transport: Optional[BaseTransport] = None) -> "HyperCorn":
        set_level(config.log_level)
        node = cls(
            config.storage,
            transport=transport if transport is not None else transport_factory(config.transport),
            storage_provider=config.storage_provider,
            fetch_timeout=config.fetch_timeout,
        )
        node._owns_transport = transport is None
        return node

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def listen(self) -> None:
        feed = await self.registry.open_main()

        if self.pair.just_created and feed.created:
            await self._post_open(feed)
        self.pair = replace(self.pair, just_created=False)

        await self.registry.watch_main(self.graph.on_self_message)
        log.info(f"listening key={key_b64(self.pair.public_key)}")

    async def close(self) -> None:
        results = await asyncio.gather(
            self.trust_store.close(),
            self.registry.close_all(),
            return_exceptions=True,
        )
        if self._owns_transport:
            self.transport.close()
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def get_feed_key(self) -> bytes:
        return self.pair.public_key

    @property
    def _main(self) -> Feed:
        if self.registry.main is None:
            raise StorageError("node is not listening")
        return self.registry.main

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    async def get_timeline(self, feed_key: FeedKey, offset: int, limit: int) -> List[Entry]:
        key = _check_key(feed_key)
        _check_uint(offset, "offset")
        _check_uint(limit, "limit")
        log.debug(f"timeline request key={key_b64(key)} offset={offset} limit={limit}")

        async with self.registry.borrow(key) as feed:
            return await feed.get_timeline(offset, limit)

    async def get_message(self, feed_key: FeedKey, index: int) -> Entry:
        key = _check_key(feed_key)
        _check_uint(index, "index")
        log.debug(f"message request key={key_b64(key)} index={index}")

        async with self.registry.borrow(key) as feed:
            return await feed.get_message(index)

    async def get_replies(self, feed_key: FeedKey, index: int) -> List[ReplyReference]:
        return (await self.get_message(feed_key, index)).replies

    def is_following(self, feed_key: FeedKey) -> bool:
        key = _check_key(feed_key)
        return key != self.pair.public_key and key in self.registry

    def following(self) -> List[bytes]:
        return [k for k in self.registry.keys() if k != self.pair.public_key]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def trust(
        self,
        feed_key: FeedKey,
        expires_in: float = DEFAULT_EXPIRATION,
        description: Optional[str] = None,
    ) -> IssuedTrust:
        """
        Issue a trust link for `feed_key` and record it in the node's feed.

        Must be called from a running event loop. The link is returned right
        away; the trust store picks it up when the node's watcher sees the
        recorded entry. A write failure is logged; awaiting `written` re-raises it.
        """
        key = _check_key(feed_key)
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in <= 0:
            raise ValidationError("`expires_in` must be a positive number of seconds")
        if description is not None and not isinstance(description, str):
            raise ValidationError("`description` must be a string")

        base64_key = key_b64(key)
        log.info(f"trust key={base64_key}")

        expires_at = now_unix() + expires_in
        link = self._chain.issue_link({
            "publicKey": key,
            "expiration": expires_at,
        }, self.pair.private_key)

        payload = to_payload(TrustMessage(
            expires_at=expires_at,
            feed_key=base64_key,
            link=key_b64(link),
            description=description,
        ))

        loop = asyncio.get_running_loop()
        try:
            written = loop.create_task(self._main.append("trust", payload))
        except StorageError as e:
            written = loop.create_future()
            written.set_exception(e)
        written.add_done_callback(_report_written)
        return IssuedTrust(link=link, subject=key, expires_at=expires_at, written=written)

    async def follow(self, feed_key: FeedKey) -> int:
        key = _check_key(feed_key)
        log.info(f"follow feed={key_b64(key)}")
        return await self._main.append("follow", to_payload(FollowMessage(feed_key=key_b64(key))))

    async def unfollow(self, feed_key: FeedKey) -> int:
        key = _check_key(feed_key)
        log.info(f"unfollow feed={key_b64(key)}")
        return await self._main.append("unfollow", to_payload(UnfollowMessage(feed_key=key_b64(key))))

    async def post(self, content: str, reply_to: Optional[ReplyTarget] = None) -> int:
        """
        Append a post and return its index.

        With `reply_to`, the target entry is annotated with a reference back to
        the new post. The post stands even if that annotation fails.
        """
        if not isinstance(content, str):
            raise ValidationError("`content` must be a string")
        target = None
        if reply_to is not None:
            if isinstance(reply_to, ReplyReference):
                target_key, target_index = reply_to.feed_key, reply_to.index
            else:
                try:
                    target_key, target_index = reply_to
                except (TypeError, ValueError) as e:
                    raise ValidationError("`reply_to` must be a (feed_key, index) pair") from e
            target = ReplyReference(
                feed_key=_check_key(target_key, "reply_to.feed_key"),
                index=_check_uint(target_index, "reply_to.index"),
            )

        payload = to_payload(PostMessage(
            content=content,
            reply_to=ReplyTo(**target.to_dict()) if target is not None else None,
        ))

        try:
            index = await self._main.append("post", payload)
        except StorageError as e:
            log.error(f"post append error={e}")
            raise

        if target is not None:
            await self._add_reply(index, target)
        return index

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------
    async def _post_open(self, feed: Feed) -> None:
        log.info("posting open")
        await feed.append("open", to_payload(OpenMessage(protocol=PROTOCOL, version=HYPERCORN_VERSION)))

    async def _add_reply(self, index: int, target: ReplyReference) -> bool:
        log.debug(f"adding reply to={key_b64(target.feed_key)}#{target.index} from={index}")
        try:
            async with self.registry.borrow(target.feed_key) as feed:
                await feed.add_reply(target.index, self.pair.public_key, index)
        except (StorageError, NotFoundError) as e:
            log.warning(f"reply annotation failed to={key_b64(target.feed_key)}#{target.index}: {e}")
            return False
        return True
