"""
hypercorn_core.graph
--------------------
SocialGraph reacts to feed messages and keeps the registry and trust store
in line with them.

Self messages (the node's own feed) are the single source of truth for
follow, unfollow and trust: the public API only appends, and the state change
happens here when the node's own watcher observes the entry. Messages on
followed feeds only contribute trust links, attributed to the followed feed.

A payload that fails validation is logged and dropped; it never stops the
watcher that delivered it.
"""

from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict

from .crypto import KeyPair
from .errors import SchemaError, StorageError
from .logger import get_logger
from .registry import FeedRegistry
from .schema import FollowMessage, OpenMessage, TrustMessage, UnfollowMessage, validate
from .storage import Entry
from .trust_store import TrustStore
from .utils import key_b64

log = get_logger("hypercorn.graph")


class SocialGraph:
    def __init__(self, registry: FeedRegistry, trust_store: TrustStore, pair: KeyPair):
        self.registry = registry
        self.trust_store = trust_store
        self.pair = pair
        self._self_handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            "open": self._on_open,
            "follow": self._on_follow,
            "unfollow": self._on_unfollow,
            "trust": self._on_trust,
        }

    # ------------------------------------------------------------------
    # Own feed
    # ------------------------------------------------------------------
    async def on_self_message(self, entry: Entry) -> None:
        handler = self._self_handlers.get(entry.type)
        if handler is None:
            return
        try:
            await handler(entry.payload)
        except SchemaError as e:
            log.warning(f"dropping self message type={entry.type} index={entry.index}: {e}")
        except StorageError as e:
            log.error(f"self message type={entry.type} index={entry.index} not applied: {e}")

    async def _on_open(self, payload: Any) -> None:
        value = validate(payload, OpenMessage)
        log.debug(f"has open protocol={value.protocol} version={value.version}")

    async def _on_follow(self, payload: Any) -> None:
        value = validate(payload, FollowMessage)
        feed_key = value.key
        if feed_key in self.registry:
            return

        log.info(f"on follow feed={value.feed_key}")
        await self.registry.adopt(
            feed_key,
            lambda entry: self.on_external_message(entry, feed_key),
        )

    async def _on_unfollow(self, payload: Any) -> None:
        value = validate(payload, UnfollowMessage)
        if value.key not in self.registry:
            return

        log.info(f"on unfollow feed={value.feed_key}")
        await self.registry.release(value.key)

    async def _on_trust(self, payload: Any) -> None:
        value = validate(payload, TrustMessage)
        log.info(f"on trust key={value.feed_key}")
        self.trust_store.add_link(self.pair.public_key, value.link_bytes)

    # ------------------------------------------------------------------
    # Followed feeds
    # ------------------------------------------------------------------
    async def on_external_message(self, entry: Entry, feed_key: bytes) -> None:
        # everything but trust is ignored on external feeds for now
        if entry.type == "trust":
            self.on_external_trust(entry.payload, feed_key)

    def on_external_trust(self, payload: Any, feed_key: bytes) -> None:
        """Record a link found on `feed_key`'s log as issued by that feed."""
        try:
            value = validate(payload, TrustMessage)
        except SchemaError as e:
            log.warning(f"dropping external trust by={key_b64(feed_key)}: {e}")
            return

        log.info(f"on external trust key={value.feed_key} by={key_b64(feed_key)}")
        # TODO: fetch feeds reachable through this link once transitive trust drives following
        try:
            self.trust_store.add_link(feed_key, value.link_bytes)
        except StorageError as e:
            log.error(f"external trust by={key_b64(feed_key)} not stored: {e}")

    def on_sparse_trust(self, entry: Entry, feed_key: bytes) -> None:
        self.on_external_trust(entry.payload, feed_key)
