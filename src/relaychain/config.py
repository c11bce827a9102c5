"""Runtime configuration for proxy instances, plugins, and the forwarding bridge."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

SHADOWSOCKS_PROVIDERS = ("v2ray", "shadowsocks-rust", "clash")
TROJAN_PROVIDERS = ("v2ray", "trojan", "trojan-go")

DEFAULT_PLUGIN_EXECUTABLES: dict[str, str] = {
    "shadowsocks-rust": "sslocal",
    "shadowsocksr": "ssr-local",
    "trojan-plugin": "trojan",
    "trojan-go-plugin": "trojan-go",
    "naive-plugin": "naive",
    "pingtunnel-plugin": "pingtunnel",
    "relaybaton-plugin": "relaybaton",
    "brook-plugin": "brook",
    "hysteria-plugin": "hysteria",
    "clash": "clash",
    "gost": "gost",
}


@dataclass(slots=True)
class InstanceSettings:
    """Feature flags and provider choices consumed while building an instance."""

    enable_mux: bool = False
    enable_log: bool = False
    shadowsocks_provider: str = "v2ray"
    trojan_provider: str = "v2ray"
    local_port_base: int = 20_800
    socks_port: int = 2_080
    ws_port: int = 20_790
    pingtunnel_wrapper: tuple[str, ...] = ()


@dataclass(slots=True)
class PluginSettings:
    """Where plugin binaries are looked up and what they are called."""

    plugin_dirs: tuple[Path, ...] = ()
    executables: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PLUGIN_EXECUTABLES))
    core_binary: str = "v2ray"


@dataclass(slots=True)
class BridgeSettings:
    """Browser forwarding bridge retry policy."""

    retry_delay_seconds: float = 1.0
    request_timeout_seconds: float = 5.0
    open_browser: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    scratch_dir: Path = Path(".relaychain")
    instance: InstanceSettings = field(default_factory=InstanceSettings)
    plugins: PluginSettings = field(default_factory=PluginSettings)
    bridge: BridgeSettings = field(default_factory=BridgeSettings)

    @classmethod
    def from_env(cls, scratch_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            scratch_dir=scratch_dir or Path(os.getenv("RELAYCHAIN_SCRATCH_DIR", ".relaychain")),
            instance=InstanceSettings(
                enable_mux=_env_bool("RELAYCHAIN_ENABLE_MUX", default=False),
                enable_log=_env_bool("RELAYCHAIN_ENABLE_LOG", default=False),
                shadowsocks_provider=os.getenv("RELAYCHAIN_SHADOWSOCKS_PROVIDER", "v2ray")
                .strip()
                .lower(),
                trojan_provider=os.getenv("RELAYCHAIN_TROJAN_PROVIDER", "v2ray").strip().lower(),
                local_port_base=int(os.getenv("RELAYCHAIN_LOCAL_PORT_BASE", "20800")),
                socks_port=int(os.getenv("RELAYCHAIN_SOCKS_PORT", "2080")),
                ws_port=int(os.getenv("RELAYCHAIN_WS_PORT", "20790")),
                pingtunnel_wrapper=tuple(
                    shlex.split(os.getenv("RELAYCHAIN_PINGTUNNEL_WRAPPER", "")),
                ),
            ),
            plugins=PluginSettings(
                plugin_dirs=_collect_plugin_dirs(),
                executables=_collect_executable_overrides(),
                core_binary=os.getenv("RELAYCHAIN_CORE_BINARY", "v2ray").strip() or "v2ray",
            ),
            bridge=BridgeSettings(
                retry_delay_seconds=float(
                    os.getenv("RELAYCHAIN_BRIDGE_RETRY_DELAY_SECONDS", "1.0"),
                ),
                request_timeout_seconds=float(
                    os.getenv("RELAYCHAIN_BRIDGE_REQUEST_TIMEOUT_SECONDS", "5.0"),
                ),
                open_browser=_env_bool("RELAYCHAIN_BRIDGE_OPEN_BROWSER", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if provider names or ports are invalid."""

        instance = self.instance
        if instance.shadowsocks_provider not in SHADOWSOCKS_PROVIDERS:
            raise ValueError(
                "Unsupported RELAYCHAIN_SHADOWSOCKS_PROVIDER: "
                f"{instance.shadowsocks_provider!r}. Use one of {SHADOWSOCKS_PROVIDERS}.",
            )
        if instance.trojan_provider not in TROJAN_PROVIDERS:
            raise ValueError(
                "Unsupported RELAYCHAIN_TROJAN_PROVIDER: "
                f"{instance.trojan_provider!r}. Use one of {TROJAN_PROVIDERS}.",
            )
        for name, port in (
            ("RELAYCHAIN_LOCAL_PORT_BASE", instance.local_port_base),
            ("RELAYCHAIN_SOCKS_PORT", instance.socks_port),
            ("RELAYCHAIN_WS_PORT", instance.ws_port),
        ):
            _validate_port(name, port)
        if instance.socks_port == instance.ws_port:
            raise ValueError("RELAYCHAIN_SOCKS_PORT and RELAYCHAIN_WS_PORT must differ.")
        if self.bridge.retry_delay_seconds < 0:
            raise ValueError("RELAYCHAIN_BRIDGE_RETRY_DELAY_SECONDS must be >= 0.")
        if self.bridge.request_timeout_seconds <= 0:
            raise ValueError("RELAYCHAIN_BRIDGE_REQUEST_TIMEOUT_SECONDS must be > 0.")


def _collect_plugin_dirs() -> tuple[Path, ...]:
    raw = os.getenv("RELAYCHAIN_PLUGIN_DIRS", "").strip()
    if not raw:
        return ()
    return tuple(Path(part.strip()) for part in raw.split(os.pathsep) if part.strip())


def _collect_executable_overrides() -> dict[str, str]:
    executables = dict(DEFAULT_PLUGIN_EXECUTABLES)
    raw = os.getenv("RELAYCHAIN_PLUGIN_EXECUTABLES", "").strip()
    if not raw:
        return executables

    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid RELAYCHAIN_PLUGIN_EXECUTABLES entry: "
                f"{token!r}. Expected format '<plugin>=<executable>'.",
            )
        name, executable = token.split("=", 1)
        name = name.strip()
        executable = executable.strip()
        if not name or not executable:
            raise ValueError(f"Invalid RELAYCHAIN_PLUGIN_EXECUTABLES entry: {token!r}")
        executables[name] = executable
    return executables


def _validate_port(name: str, port: int) -> None:
    if not 1 <= port <= 65_535:
        raise ValueError(f"{name} must be within 1..65535, got {port}.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
