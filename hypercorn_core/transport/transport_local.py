# hypercorn_core/transport/transport_local.py
import json, threading
from typing import Dict, List
from hypercorn_core.logger import get_logger
from hypercorn_core.transport.transport_base import BaseTransport, Handler

log = get_logger("hypercorn.transport.local")


class LocalAdapter(BaseTransport):
    """
    In-process bus. Delivery is synchronous, in publish order, to every
    handler subscribed at publish time. Nodes sharing one adapter instance
    form a single-host mesh.
    """
    name = "local"

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def publish(self, topic, payload, headers=None, key=None):
        data = self.to_bytes(payload)
        with self._lock:
            handlers = list(self._handlers.get(topic, []))
        log.info(f"[LOCAL PUB] topic={topic} bytes={len(data)} subscribers={len(handlers)}")
        for handler in handlers:
            # each subscriber gets its own copy, as it would off the wire
            try:
                handler(json.loads(data.decode("utf-8")))
            except Exception:
                log.exception(f"[LOCAL PUB] handler failed topic={topic}")

    def subscribe(self, topic, handler):
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)
        log.debug(f"[LOCAL SUB] topic={topic}")

    def unsubscribe(self, topic, handler):
        with self._lock:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(topic, None)

    def subscribers(self, topic: str) -> int:
        with self._lock:
            return len(self._handlers.get(topic, []))

    def close(self):
        with self._lock:
            self._handlers.clear()
