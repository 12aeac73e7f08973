from __future__ import annotations
from typing import Any, Callable, Dict, Optional
import json

Headers = Dict[str, str]
Handler = Callable[[dict], None]


class BaseTransport:
    """
    Mesh transport contract.

    Feeds publish appended entries on `feed.<hex key>` and trust stores
    announce links on `hypercorn.trust`. Canonical payload at the transport
    boundary is bytes; handlers receive the decoded JSON object and may be
    invoked from a transport-owned thread.
    """
    name: str = "base"

    def publish(
        self,
        topic: str,
        payload: bytes | dict,
        headers: Optional[Headers] = None,
        key: Optional[str] = None,
    ) -> Any:
        raise NotImplementedError

    def subscribe(self, topic: str, handler: Handler) -> Any:
        raise NotImplementedError

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return

    # ---------------------------
    # Helpers for adapters
    # ---------------------------
    @staticmethod
    def to_bytes(payload: bytes | dict) -> bytes:
        if isinstance(payload, bytes):
            return payload
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")

    @staticmethod
    def to_dict(payload: bytes | dict) -> dict:
        if isinstance(payload, dict):
            return payload
        return json.loads(payload.decode("utf-8"))
