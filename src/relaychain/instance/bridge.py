"""Best-effort loader for the core's browser forwarding page.

The core serves a page on the loopback forwarding port that a browser must
keep open for websocket hops using browser forwarding. The bridge waits
until the page answers and hands it to the browser. It keeps polling
afterwards and opens the page again once it recovers from a load error.
Failures are only logged; they never reach the instance.
"""

from __future__ import annotations

import logging
import threading
import webbrowser
from collections.abc import Callable

import httpx

from relaychain.config import BridgeSettings
from relaychain.instance.registry import LOCALHOST

logger = logging.getLogger(__name__)


class BrowserForwarderBridge:
    """Background loader for ``http://127.0.0.1:<port>/``."""

    def __init__(
        self,
        port: int,
        settings: BridgeSettings,
        *,
        open_page: Callable[[str], object] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = f"http://{LOCALHOST}:{port}/"
        self._settings = settings
        self._open_page = open_page or (webbrowser.open if settings.open_browser else None)
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(settings.request_timeout_seconds),
            follow_redirects=True,
        )
        self._stop = threading.Event()
        self._loaded = threading.Event()
        self._thread: threading.Thread | None = None
        self.failures = 0
        self.opens = 0

    @property
    def loaded(self) -> bool:
        return self._loaded.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True, name="browser-forwarder")
        self._thread.start()
        logger.info("Browser forwarder bridge started for %s", self.url)

    def wait_loaded(self, timeout: float | None = None) -> bool:
        return self._loaded.wait(timeout=timeout)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self._client.close()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                response = self._client.get(self.url)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                self.failures += 1
                self._loaded.clear()
                logger.debug("Browser forwarder load failed: %s", exc)
            else:
                if not self._loaded.is_set():
                    self._open()
            self._stop.wait(timeout=self._settings.retry_delay_seconds)

    def _open(self) -> None:
        logger.debug("Browser forwarder loaded: %s", self.url)
        self.opens += 1
        if self._open_page is not None:
            try:
                self._open_page(self.url)
            except Exception:  # noqa: BLE001
                logger.warning("Could not open %s", self.url, exc_info=True)
        self._loaded.set()
