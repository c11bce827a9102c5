"""Shared test fixtures."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from relaychain.config import InstanceSettings, Settings
from relaychain.errors import PluginResolutionError, SpawnError
from relaychain.instance.plugins import ResolvedPlugin
from relaychain.instance.process import ManagedProcess
from relaychain.profiles import ProfileGraph, ProfileGroup, ProxyProfile, parse_profile

SAMPLE_SETTINGS: dict[str, dict[str, Any]] = {
    "vmess": {"server": "vm.example.com", "port": 443, "uuid": "b831381d-6324-4d53-ad4f-8cda48b30811"},
    "vless": {"server": "vl.example.com", "port": 443, "uuid": "b831381d-6324-4d53-ad4f-8cda48b30811"},
    "socks": {"server": "socks.example.com", "port": 1080},
    "http": {"server": "http.example.com", "port": 8080},
    "shadowsocks": {
        "server": "ss.example.com",
        "port": 8388,
        "method": "aes-256-gcm",
        "password": "secret",
    },
    "shadowsocksr": {
        "server": "ssr.example.com",
        "port": 8389,
        "method": "aes-256-cfb",
        "password": "secret",
    },
    "trojan": {"server": "trojan.example.com", "port": 443, "password": "secret"},
    "trojan-go": {"server": "tgo.example.com", "port": 443, "password": "secret"},
    "naive": {"server": "naive.example.com", "port": 443, "username": "u", "password": "p"},
    "pingtunnel": {"server": "ping.example.com", "key": "42"},
    "relaybaton": {"server": "rb.example.com", "username": "u", "password": "p"},
    "brook": {"server": "brook.example.com", "port": 9999, "password": "secret"},
    "hysteria": {
        "server": "hy.example.com",
        "port": 36712,
        "auth": "token",
        "ca_text": "-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n",
    },
    "snell": {"server": "snell.example.com", "port": 6160, "psk": "secret"},
    "config": {"type": "trojan-go", "content": '{"remote_addr": "tgo.example.com", "remote_port": 443}'},
}


def make_profile(kind: str, profile_id: str | None = None, **overrides: Any) -> ProxyProfile:
    return parse_profile(
        {
            "type": kind,
            "id": profile_id or kind,
            "settings": {**SAMPLE_SETTINGS[kind], **overrides},
        },
        fallback_id=kind,
    )


def make_graph(*groups: tuple[bool, Sequence[ProxyProfile]], name: str = "test") -> ProfileGraph:
    return ProfileGraph(
        name=name,
        groups=tuple(
            ProfileGroup(balancer=balancer, profiles=tuple(profiles)) for balancer, profiles in groups
        ),
    )


class FakeCore:
    def __init__(self, *, fail_start: bool = False) -> None:
        self.config: dict[str, Any] | None = None
        self.fail_start = fail_start
        self.started = 0
        self.closed = 0

    def load_config(self, config: dict[str, Any]) -> None:
        self.config = config

    def start(self) -> None:
        if self.fail_start:
            raise SpawnError("core binary missing", transient=False)
        self.started += 1

    def close(self) -> None:
        self.closed += 1


class CountingResolver:
    def __init__(self, missing: Sequence[str] = ()) -> None:
        self.calls: Counter[str] = Counter()
        self.missing = set(missing)

    def resolve(self, name: str) -> ResolvedPlugin:
        self.calls[name] += 1
        if name in self.missing:
            raise PluginResolutionError(f"Plugin {name!r} not found", plugin=name)
        return ResolvedPlugin(name=name, path=Path("/opt/plugins") / name)


class RecordingPool:
    """Records start calls instead of spawning; optionally fails the N-th start."""

    def __init__(self, *, fail_on: int | None = None) -> None:
        self.started: list[list[str]] = []
        self.fail_on = fail_on
        self.closed = 0

    def start(self, args: Sequence[str]) -> ManagedProcess:
        if self.fail_on is not None and len(self.started) + 1 == self.fail_on:
            raise SpawnError(f"cannot start {args[0]}", transient=True)
        self.started.append(list(args))
        return ManagedProcess(args)

    def close(self) -> None:
        self.closed += 1


class FakeAdapter:
    def __init__(self, name: str, port: int, *, fail: bool = False) -> None:
        self.name = name
        self.port = port
        self.fail = fail
        self.launched = 0
        self.destroyed = 0

    def launch(self) -> None:
        if self.fail:
            raise OSError(f"{self.name} adapter exploded")
        self.launched += 1

    def destroy(self) -> None:
        self.destroyed += 1


class FakeBridge:
    def __init__(self, port: int) -> None:
        self.port = port
        self.started = 0
        self.stopped = 0

    def start(self) -> None:
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(scratch_dir=tmp_path / "scratch", instance=InstanceSettings())


@pytest.fixture()
def fake_core() -> FakeCore:
    return FakeCore()


@pytest.fixture()
def resolver() -> CountingResolver:
    return CountingResolver()


@pytest.fixture()
def pool() -> RecordingPool:
    return RecordingPool()


@pytest.fixture()
def adapters() -> list[FakeAdapter]:
    return []


@pytest.fixture()
def adapter_factory(adapters: list[FakeAdapter]) -> Callable[..., FakeAdapter]:
    def _factory(name: str, bean: Any, port: int, context: Any) -> FakeAdapter:
        adapter = FakeAdapter(name, port)
        adapters.append(adapter)
        return adapter

    return _factory


@pytest.fixture()
def adapter_pools(monkeypatch) -> list[RecordingPool]:
    """Replace the private pool each real adapter creates with a recording one."""

    from relaychain.instance import adapters as adapters_module

    created: list[RecordingPool] = []

    def _pool() -> RecordingPool:
        pool = RecordingPool()
        created.append(pool)
        return pool

    monkeypatch.setattr(adapters_module, "ProcessPool", _pool)
    return created
