# hypercorn_core/transport/__init__.py
import os
from hypercorn_core.transport.transport_base import BaseTransport
from hypercorn_core.transport.transport_local import LocalAdapter
from hypercorn_core.transport.transport_http import HTTPAdapter
from hypercorn_core.transport.transport_kafka import KafkaAdapter


def transport_factory(mode: str | None = None) -> BaseTransport:
    """
    Pick the mesh transport:
      - "local" (default) → in-process bus
      - "http"            → relay at HYPERCORN_RELAY_URL
      - "kafka"           → brokers at KAFKA_BROKERS

    Feeds replicate through subscriptions, so a transport that cannot
    subscribe (an unknown mode, or Kafka without a working client) is refused.
    """
    mode = (mode or os.getenv("HYPERCORN_TRANSPORT", "local")).lower()

    if mode == "kafka":
        adapter = KafkaAdapter(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            enabled=os.getenv("KAFKA_ENABLED", "1") == "1",
        )
        if not adapter.enabled:
            raise ValueError("kafka transport is disabled or unavailable")
        return adapter

    if mode == "http":
        return HTTPAdapter(os.getenv("HYPERCORN_RELAY_URL", "http://localhost:8080"))

    if mode == "local":
        return LocalAdapter()
    raise ValueError(f"Unknown transport: {mode}")


__all__ = [
    "BaseTransport",
    "LocalAdapter",
    "HTTPAdapter",
    "KafkaAdapter",
    "transport_factory",
]
