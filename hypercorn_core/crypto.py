"""
hypercorn_core.crypto
---------------------
Ed25519 primitives and the node key pair provider.

- ed25519_generate / ed25519_sign / ed25519_verify: raw-bytes wrappers
- KeyPair: the node identity, with a one-time `just_created` flag
- load_key(): load-or-create the key pair persisted under the storage root
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519
import json, os
from .constants import KEY_FILE
from .errors import StorageError
from .utils import b64e, b64d

# --------- Ed25519 (sign/verify) ----------
def ed25519_generate() -> Tuple[bytes, bytes]:
    sk = ed25519.Ed25519PrivateKey.generate()
    pk = sk.public_key()
    return sk.private_bytes_raw(), pk.public_bytes_raw()

def ed25519_sign(priv_raw: bytes, data: bytes) -> bytes:
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(priv_raw)
    return sk.sign(data)

def ed25519_verify(pub_raw: bytes, sig: bytes, data: bytes) -> bool:
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(pub_raw).verify(sig, data)
        return True
    except (InvalidSignature, ValueError):
        return False

def ed25519_public_from_private(priv_raw: bytes) -> bytes:
    sk = ed25519.Ed25519PrivateKey.from_private_bytes(priv_raw)
    return sk.public_key().public_bytes_raw()


@dataclass(frozen=True)
class KeyPair:
    public_key: bytes
    private_key: bytes
    just_created: bool = False


def load_key(storage: str) -> KeyPair:
    """
    Load the node key pair from `<storage>/key.json`, creating it on first run.

    The returned pair has `just_created=True` only when the key was generated
    by this call; the node uses that to post its self-introduction once.
    """
    path = os.path.join(storage, KEY_FILE)
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return KeyPair(
                public_key=b64d(data["public_key"]),
                private_key=b64d(data["private_key"]),
                just_created=False,
            )
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(f"cannot read key pair at {path}: {e}") from e

    priv, pub = ed25519_generate()
    try:
        os.makedirs(storage, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"public_key": b64e(pub), "private_key": b64e(priv)}, f)
    except OSError as e:
        raise StorageError(f"cannot write key pair at {path}: {e}") from e
    return KeyPair(public_key=pub, private_key=priv, just_created=True)

