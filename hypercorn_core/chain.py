"""
hypercorn_core.chain
--------------------
Trust links: signed, expiring assertions that an issuer vouches for a subject.

Wire format of a link (105 bytes):

    version (1) | subject public key (32) | expiration, big-endian double (8)
    | Ed25519 signature by the issuer over the first 41 bytes (64)

A chain is a list of links starting at a root key where every link's subject
is the issuer of the next one.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional
import struct, time
from .crypto import ed25519_sign, ed25519_verify
from .errors import SchemaError, TrustError
from .utils import KEY_SIZE, is_key

LINK_VERSION = 1
_BODY = struct.Struct(">B32sd")
SIG_SIZE = 64
LINK_SIZE = _BODY.size + SIG_SIZE


@dataclass(frozen=True)
class LinkInfo:
    subject: bytes
    expiration: float
    signature: bytes

    def expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expiration


class TrustChain:
    def __init__(self, root: bytes):
        if not is_key(root):
            raise ValueError(f"`root` must be a {KEY_SIZE}-byte public key")
        self.root = bytes(root)

    def issue_link(self, details: dict, private_key: bytes) -> bytes:
        """
        Sign a link for `details["publicKey"]` valid until `details["expiration"]`.
        """
        subject = details["publicKey"]
        if not is_key(subject):
            raise ValueError(f"`publicKey` must be a {KEY_SIZE}-byte public key")
        body = _BODY.pack(LINK_VERSION, bytes(subject), float(details["expiration"]))
        return body + ed25519_sign(private_key, body)

    @staticmethod
    def parse_link(link: bytes) -> LinkInfo:
        if len(link) != LINK_SIZE:
            raise SchemaError(f"trust link must be {LINK_SIZE} bytes, got {len(link)}")
        version, subject, expiration = _BODY.unpack(link[:_BODY.size])
        if version != LINK_VERSION:
            raise SchemaError(f"unsupported trust link version {version}")
        return LinkInfo(subject=subject, expiration=expiration, signature=link[_BODY.size:])

    @classmethod
    def verify_link(cls, link: bytes, issuer: bytes, now: Optional[float] = None) -> LinkInfo:
        info = cls.parse_link(link)
        if not ed25519_verify(issuer, info.signature, link[:_BODY.size]):
            raise TrustError("trust link signature does not match issuer")
        if info.expired(now):
            raise TrustError("trust link expired")
        return info

    def verify(self, chain: Iterable[bytes], now: Optional[float] = None) -> bytes:
        """Walk `chain` from the root and return the key it finally vouches for."""
        issuer = self.root
        for link in chain:
            issuer = self.verify_link(link, issuer, now).subject
        return issuer
