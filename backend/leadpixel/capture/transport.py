"""Fire-and-forget event delivery.

Both transports drop network failures: telemetry is never worth blocking or
breaking the host page for, and the ingestion endpoint tolerates loss. There
is no retry and no acknowledgement.
"""

import json
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class Transport(Protocol):
    def send(self, endpoint: str, payload: Dict[str, Any]) -> None: ...


class FetchTransport:
    """Direct POST on the caller's thread."""

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = DEFAULT_TIMEOUT):
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, endpoint: str, payload: Dict[str, Any]) -> None:
        try:
            self.client.post(endpoint, json=payload)
        except (httpx.HTTPError, TypeError, ValueError) as e:
            logger.debug(f"[CAPTURE] Send failed: {e}")

    def close(self) -> None:
        self.client.close()


class BeaconTransport:
    """Queues each POST on a daemon thread so `send` returns immediately.

    The body goes out as `text/plain`, which browsers send without a CORS
    preflight; the endpoint parses it as JSON regardless of content type.
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = DEFAULT_TIMEOUT):
        self.client = client or httpx.Client(timeout=timeout)
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def _post(self, endpoint: str, body: str) -> None:
        try:
            self.client.post(endpoint, content=body, headers={"Content-Type": "text/plain;charset=UTF-8"})
        except httpx.HTTPError as e:
            logger.debug(f"[CAPTURE] Beacon failed: {e}")

    def send(self, endpoint: str, payload: Dict[str, Any]) -> None:
        try:
            body = json.dumps(payload)
        except (TypeError, ValueError) as e:
            logger.debug(f"[CAPTURE] Unserializable payload dropped: {e}")
            return
        thread = threading.Thread(target=self._post, args=(endpoint, body), daemon=True)
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight beacons (shutdown and tests)."""
        with self._lock:
            pending = list(self._threads)
        for thread in pending:
            thread.join(timeout)
