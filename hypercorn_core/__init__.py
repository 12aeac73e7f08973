"""
hypercorn_core
==============
A node of a peer-to-peer social network: every participant owns one
append-only feed, follows other feeds and vouches for other participants
with signed, expiring trust links.

Provides:
- HyperCorn node facade (listen, follow, unfollow, trust, post, lookups)
- Feed registry and the message-driven social graph
- Trust links, the distributed trust store and Ed25519 key handling
- Pluggable feed storage (SQLite default) and mesh transports
"""

from .chain import TrustChain
from .config import NodeConfig
from .crypto import KeyPair, load_key
from .errors import (
    HypercornError,
    NotFoundError,
    SchemaError,
    StorageError,
    TrustError,
    ValidationError,
)
from .node import HyperCorn, IssuedTrust
from .storage import Entry, ReplyReference

__all__ = [
    "HyperCorn",
    "IssuedTrust",
    "NodeConfig",
    "KeyPair",
    "load_key",
    "TrustChain",
    "Entry",
    "ReplyReference",
    "HypercornError",
    "NotFoundError",
    "SchemaError",
    "StorageError",
    "TrustError",
    "ValidationError",
]
