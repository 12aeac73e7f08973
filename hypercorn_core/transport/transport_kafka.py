# hypercorn_core/transport/transport_kafka.py
import threading
from typing import Optional, Any
from hypercorn_core.logger import get_logger
from hypercorn_core.transport.transport_base import BaseTransport

log = get_logger("hypercorn.transport.kafka")


class KafkaAdapter(BaseTransport):
    """
    Kafka transport adapter.

    - publish(): produce to the Kafka topic of the same name, keyed by feed
    - subscribe(): one consumer per topic, polled on a daemon thread; every
      node reads every record (no consumer group), starting from the latest
      offset. Handlers run on that thread.

    When kafka-python is missing or the brokers are unreachable at start the
    adapter disables itself: publishes are dropped and subscriptions refused
    with a logged error.
    """

    name = "kafka"

    def __init__(self, brokers="localhost:9092", enabled=True, poll_ms=500):
        self.brokers = brokers
        self.enabled = enabled
        self.poll_ms = poll_ms
        self.handlers = {}
        self._threads = {}
        self._stopped = {}
        self._lock = threading.Lock()
        self._producer = None

        if not self.enabled:
            log.warning("[KAFKA] disabled")
            return

        try:
            from kafka import KafkaProducer

            self._producer = KafkaProducer(
                bootstrap_servers=self.brokers,
                linger_ms=5,
                acks="all",
            )
            log.info(f"[KAFKA] connected brokers={self.brokers}")

        except Exception:
            log.exception("[KAFKA] producer init failed, disabling transport")
            self.enabled = False

    # ------------------------------------------------------------------
    # Outbound publishing
    # ------------------------------------------------------------------
    def publish(
        self,
        topic: str,
        payload: bytes | dict,
        headers=None,
        key: Optional[str] = None,
    ) -> Any:
        if not self.enabled:
            log.debug(f"[KAFKA-SKIP] {topic}")
            return

        data = self.to_bytes(payload)
        try:
            self._producer.send(
                topic,
                value=data,
                key=key.encode("utf-8") if key else None,
                headers=[(k, v.encode("utf-8")) for k, v in (headers or {}).items()],
            )
            self._producer.flush(timeout=1.0)
            log.debug(f"[KAFKA PUB] topic={topic} bytes={len(data)}")

        except Exception:
            log.exception(f"[KAFKA PUB ERROR] topic={topic}")

    # ------------------------------------------------------------------
    # Inbound consuming
    # ------------------------------------------------------------------
    def _dispatch(self, topic: str, value: bytes) -> None:
        try:
            payload = self.to_dict(value)
        except (ValueError, UnicodeDecodeError) as e:
            log.error(f"[KAFKA SUB] undecodable record topic={topic}: {e}")
            return
        with self._lock:
            handlers = list(self.handlers.get(topic, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                log.exception(f"[KAFKA SUB] handler failed topic={topic}")

    def _consume(self, topic: str, stop: threading.Event) -> None:
        from kafka import KafkaConsumer

        try:
            consumer = KafkaConsumer(
                topic,
                bootstrap_servers=self.brokers,
                group_id=None,
                auto_offset_reset="latest",
                enable_auto_commit=False,
            )
        except Exception:
            log.exception(f"[KAFKA SUB] consumer init failed topic={topic}")
            return

        log.info(f"[KAFKA SUB] consuming {topic}")
        try:
            while not stop.is_set():
                records = consumer.poll(timeout_ms=self.poll_ms)
                for batch in records.values():
                    for record in batch:
                        if stop.is_set():
                            break
                        self._dispatch(topic, record.value)
        except Exception:
            log.exception(f"[KAFKA SUB] consumer failed topic={topic}")
        finally:
            consumer.close()
            log.info(f"[KAFKA SUB] consumer ended for {topic}")

    def subscribe(self, topic, handler):
        if not self.enabled:
            log.error(f"[KAFKA] disabled, cannot subscribe to {topic}")
            return

        with self._lock:
            self.handlers.setdefault(topic, []).append(handler)
            if topic in self._threads:
                return
            stop = threading.Event()
            t = threading.Thread(target=self._consume, args=(topic, stop), daemon=True)
            self._stopped[topic] = stop
            self._threads[topic] = t
        t.start()

    def unsubscribe(self, topic, handler):
        with self._lock:
            handlers = self.handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
            if handlers:
                return
            self.handlers.pop(topic, None)
            stop = self._stopped.pop(topic, None)
            self._threads.pop(topic, None)
        if stop:
            stop.set()

    def close(self):
        with self._lock:
            for stop in self._stopped.values():
                stop.set()
            self._stopped.clear()
            self._threads.clear()
            self.handlers.clear()
        if self._producer is not None:
            self._producer.close()
            self._producer = None
