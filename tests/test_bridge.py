from __future__ import annotations

import time

import allure
import httpx

from relaychain.config import BridgeSettings
from relaychain.instance.bridge import BrowserForwarderBridge

pytestmark = [
    allure.epic("Proxy Instance"),
    allure.feature("Browser Forwarder"),
]

_FAST = BridgeSettings(retry_delay_seconds=0.01, request_timeout_seconds=1.0)


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_bridge_retries_until_page_loads() -> None:
    attempts = {"count": 0}
    opened: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        if attempts["count"] == 2:
            return httpx.Response(503)
        return httpx.Response(200, text="<html></html>")

    bridge = BrowserForwarderBridge(20790, _FAST, open_page=opened.append, client=_client(handler))
    bridge.start()

    assert bridge.wait_loaded(timeout=5)
    bridge.stop()

    assert bridge.failures == 2
    assert opened == ["http://127.0.0.1:20790/"]


def test_bridge_stop_before_load_does_not_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    bridge = BrowserForwarderBridge(20791, _FAST, open_page=None, client=_client(handler))
    bridge.start()
    bridge.stop()

    assert not bridge.loaded


def test_open_page_failure_is_only_logged() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    def broken_open(url: str) -> None:
        raise RuntimeError("no browser")

    bridge = BrowserForwarderBridge(20792, _FAST, open_page=broken_open, client=_client(handler))
    bridge.start()

    assert bridge.wait_loaded(timeout=5)
    bridge.stop()


def test_bridge_reopens_page_after_it_recovers() -> None:
    attempts = {"count": 0}
    opened: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 2:
            raise httpx.ConnectError("forwarder restarted", request=request)
        return httpx.Response(200, text="<html></html>")

    bridge = BrowserForwarderBridge(20793, _FAST, open_page=opened.append, client=_client(handler))
    bridge.start()

    deadline = time.monotonic() + 5
    while len(opened) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    bridge.stop()

    assert opened == ["http://127.0.0.1:20793/", "http://127.0.0.1:20793/"]
    assert bridge.opens == 2
    assert bridge.failures == 1
    assert bridge.loaded
