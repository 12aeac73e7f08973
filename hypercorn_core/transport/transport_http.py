# hypercorn_core/transport/transport_http.py
import requests, json, threading
from hypercorn_core.logger import get_logger
from hypercorn_core.transport.transport_base import BaseTransport

log = get_logger("hypercorn.transport.http")


class HTTPAdapter(BaseTransport):
    """
    HTTP transport adapter talking to a relay.

    - publish(): POST {"topic", "payload"} to `<base_url>/emit`
    - subscribe(): Server-Sent Events stream from `<base_url>/subscribe/<topic>`
      read on a daemon thread; handlers run on that thread.
    """
    name = "http"

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.handlers = {}
        self._threads = {}
        self._stopped = {}

    # ------------------------------------------------------------------
    # Outbound publishing
    # ------------------------------------------------------------------
    def publish(self, topic, payload, headers=None, key=None):
        url = f"{self.base_url}/emit"
        body = {"topic": topic, "payload": self.to_dict(payload)}
        if key:
            body["key"] = key

        log.debug(f"[HTTP PUB] → {url} | topic={topic}")
        try:
            res = requests.post(url, json=body, headers=headers or {}, timeout=self.timeout)
            if res.ok:
                return res.json() if res.content else {}
            log.error(f"[HTTP PUB] {res.status_code}: {res.text}")
            return {"error": res.text, "status": res.status_code}
        except requests.RequestException as e:
            log.error(f"[HTTP PUB] topic={topic} failed: {e}")
            return {"error": str(e)}

    # ------------------------------------------------------------------
    # Inbound streaming (Server-Sent Events)
    # ------------------------------------------------------------------
    def _dispatch(self, topic, event_lines):
        data_parts = [l[5:].lstrip() for l in event_lines if l.startswith("data:")]
        data_str = "\n".join(data_parts)
        try:
            payload = json.loads(data_str)
        except ValueError as e:
            log.error(f"[SSE parse error] topic={topic} {e}")
            return
        for handler in list(self.handlers.get(topic, [])):
            try:
                handler(payload)
            except Exception:
                log.exception(f"[HTTP SUB] handler failed topic={topic}")

    def _sse_reader(self, topic: str, stop: threading.Event):
        url = f"{self.base_url}/subscribe/{topic}"
        log.info(f"[HTTP SUB] Connecting to SSE stream: {url}")

        try:
            with requests.get(url, stream=True, timeout=None) as r:
                # absolutely required for SSE
                r.raw.decode_content = True
                log.info(f"[HTTP SUB] Connected to {url} status={r.status_code}")

                event_lines = []
                for raw in r.raw:
                    if stop.is_set():
                        break
                    line = raw.decode("utf-8", errors="replace").rstrip("\r\n")

                    # blank line = dispatch event
                    if line == "":
                        if event_lines:
                            self._dispatch(topic, event_lines)
                            event_lines = []
                        continue

                    # heartbeat
                    if line.startswith(":"):
                        continue

                    if line.startswith("data:"):
                        event_lines.append(line)

        except requests.RequestException as e:
            log.error(f"[SSE connection error] {e}")

        finally:
            log.info(f"[HTTP SUB] SSE loop ended for {topic}")

    def subscribe(self, topic, handler):
        self.handlers.setdefault(topic, []).append(handler)
        if topic in self._threads:
            return

        log.info(f"[HTTP SUB] Subscribing to {topic}")
        stop = threading.Event()
        t = threading.Thread(target=self._sse_reader, args=(topic, stop), daemon=True)
        self._stopped[topic] = stop
        self._threads[topic] = t
        t.start()

    def unsubscribe(self, topic, handler):
        handlers = self.handlers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self.handlers.pop(topic, None)
            stop = self._stopped.pop(topic, None)
            if stop:
                stop.set()
            self._threads.pop(topic, None)

    def close(self):
        for stop in self._stopped.values():
            stop.set()
        self._stopped.clear()
        self._threads.clear()
        self.handlers.clear()
