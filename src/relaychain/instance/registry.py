"""Backend registry: which mechanism implements a hop and how to invoke it."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from relaychain.config import InstanceSettings
from relaychain.errors import ConfigurationError
from relaychain.instance.topology import HopSpec
from relaychain.profiles import (
    BrookBean,
    CustomConfigBean,
    PingTunnelBean,
    ProtocolKind,
    ProxyProfile,
    SocksBean,
)

LOCALHOST = "127.0.0.1"
CUSTOM_CONFIG_PLUGINS: dict[str, str] = {
    "clash": "clash",
    "hysteria": "hysteria-plugin",
    "naive": "naive-plugin",
    "shadowsocks-rust": "shadowsocks-rust",
    "trojan": "trojan-plugin",
}
CUSTOM_CONFIG_TYPES = tuple(CUSTOM_CONFIG_PLUGINS)


class BackendKind(str, Enum):
    """How a hop is brought up."""

    CORE = "core"
    PROCESS = "process"
    ADAPTER = "adapter"


@dataclass(frozen=True, slots=True)
class BackendStrategy:
    """Registry entry for one protocol variant."""

    backend: BackendKind
    kind: ProtocolKind
    plugin: str | None = None
    adapter: str | None = None
    config_prefix: str | None = None
    config_suffix: str | None = None
    command_template: str | None = None
    chainable: bool = True

    @property
    def writes_config(self) -> bool:
        return self.config_prefix is not None

    @property
    def name(self) -> str:
        return self.adapter or self.plugin or self.backend.value


_CORE = {
    kind: BackendStrategy(backend=BackendKind.CORE, kind=kind)
    for kind in (ProtocolKind.VMESS, ProtocolKind.VLESS, ProtocolKind.HTTP)
}

SHADOWSOCKS_RUST = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.SHADOWSOCKS,
    plugin="shadowsocks-rust",
    config_prefix="shadowsocks",
    config_suffix="json",
    command_template="{binary} -c {config} --log-without-time",
)
TROJAN = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.TROJAN,
    plugin="trojan-plugin",
    config_prefix="trojan",
    config_suffix="json",
    command_template="{binary} --config {config}",
)
TROJAN_GO = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.TROJAN_GO,
    plugin="trojan-go-plugin",
    config_prefix="trojan_go",
    config_suffix="json",
    command_template="{binary} -config {config}",
)
CUSTOM_TROJAN_GO = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.CONFIG,
    plugin="trojan-go-plugin",
    config_prefix="trojan_go",
    config_suffix="json",
    command_template="{binary} -config {config}",
    chainable=False,
)
NAIVE = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.NAIVE,
    plugin="naive-plugin",
    config_prefix="naive",
    config_suffix="json",
    command_template="{binary} {config}",
)
PINGTUNNEL = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.PINGTUNNEL,
    plugin="pingtunnel-plugin",
    command_template="{binary} -type client -sock5 1 -l {listen} -s {server}",
    chainable=False,
)
RELAYBATON = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.RELAYBATON,
    plugin="relaybaton-plugin",
    config_prefix="rb",
    config_suffix="toml",
    command_template="{binary} client --config {config}",
)
BROOK = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.BROOK,
    plugin="brook-plugin",
    command_template="{binary} {mode} {server_flag} {server}",
)
HYSTERIA = BackendStrategy(
    backend=BackendKind.PROCESS,
    kind=ProtocolKind.HYSTERIA,
    plugin="hysteria-plugin",
    config_prefix="hysteria",
    config_suffix="json",
    command_template="{binary} --no-check --config {config} --log-level {log_level} client",
)

_FIXED: dict[ProtocolKind, BackendStrategy] = {
    ProtocolKind.TROJAN_GO: TROJAN_GO,
    ProtocolKind.NAIVE: NAIVE,
    ProtocolKind.PINGTUNNEL: PINGTUNNEL,
    ProtocolKind.RELAYBATON: RELAYBATON,
    ProtocolKind.BROOK: BROOK,
    ProtocolKind.HYSTERIA: HYSTERIA,
    ProtocolKind.SHADOWSOCKSR: BackendStrategy(
        backend=BackendKind.ADAPTER,
        kind=ProtocolKind.SHADOWSOCKSR,
        adapter="shadowsocksr",
        plugin="shadowsocksr",
    ),
    ProtocolKind.SNELL: BackendStrategy(
        backend=BackendKind.ADAPTER,
        kind=ProtocolKind.SNELL,
        adapter="snell",
        plugin="clash",
    ),
}


def classify(profile: ProxyProfile, settings: InstanceSettings) -> BackendStrategy:
    """Pick the backend strategy for a profile.

    Raises ``ConfigurationError`` for kinds no backend can serve.
    """

    kind = profile.kind
    bean = profile.bean
    if kind in _CORE:
        return _CORE[kind]
    if kind in _FIXED:
        return _FIXED[kind]
    if kind == ProtocolKind.SHADOWSOCKS:
        return _shadowsocks_strategy(settings.shadowsocks_provider)
    if kind == ProtocolKind.TROJAN:
        return _trojan_strategy(settings.trojan_provider)
    if kind == ProtocolKind.SOCKS and isinstance(bean, SocksBean):
        if bean.version == "5":
            return BackendStrategy(backend=BackendKind.CORE, kind=kind)
        if bean.version in {"4", "4a"}:
            return BackendStrategy(
                backend=BackendKind.ADAPTER,
                kind=kind,
                adapter="socks4",
                plugin="gost",
            )
        raise ConfigurationError(
            f"Unsupported SOCKS version {bean.version!r} for profile {profile.profile_id!r}",
            kind=kind.value,
        )
    if kind == ProtocolKind.CONFIG and isinstance(bean, CustomConfigBean):
        if bean.type == "trojan-go":
            return CUSTOM_TROJAN_GO
        if bean.type not in CUSTOM_CONFIG_TYPES:
            raise ConfigurationError(
                f"Unsupported custom config type {bean.type!r} for profile {profile.profile_id!r}",
                kind=kind.value,
            )
        return BackendStrategy(
            backend=BackendKind.ADAPTER,
            kind=kind,
            adapter="custom-config",
            plugin=CUSTOM_CONFIG_PLUGINS[bean.type],
            chainable=False,
        )
    raise ConfigurationError(
        f"No backend registered for profile {profile.profile_id!r} of kind {kind.value!r}",
        kind=kind.value,
    )


def check_chain_placement(strategy: BackendStrategy, hop: HopSpec) -> None:
    """Fail fast when a terminal-only backend sits inside a chain."""

    if hop.need_chain and not strategy.chainable:
        raise ConfigurationError(
            f"{hop.profile.kind.value} cannot forward to a next hop; "
            f"move {hop.label} to the end of its chain",
            port=hop.port,
            kind=hop.profile.kind.value,
        )


def build_command(
    strategy: BackendStrategy,
    hop: HopSpec,
    *,
    binary: Path,
    config_path: Path | None,
    settings: InstanceSettings,
) -> list[str]:
    """Render the argument list for a process-backed hop."""

    if strategy.command_template is None:
        raise ConfigurationError(
            f"Backend {strategy.name!r} has no command template",
            port=hop.port,
            kind=strategy.kind.value,
        )
    if strategy.writes_config and config_path is None:
        raise ConfigurationError(
            f"Backend {strategy.name!r} requires a config file",
            port=hop.port,
            kind=strategy.kind.value,
        )

    values = {
        "binary": str(binary),
        "config": str(config_path) if config_path is not None else "",
        "listen": f"{LOCALHOST}:{hop.port}",
        "log_level": "trace" if settings.enable_log else "warn",
    }
    bean = hop.profile.bean
    extra: list[str] = []
    prefix: list[str] = []
    if isinstance(bean, PingTunnelBean):
        values["server"] = bean.server
        if bean.key.strip() and bean.key != "1":
            extra += ["-key", bean.key]
        prefix = list(settings.pingtunnel_wrapper)
    elif isinstance(bean, BrookBean):
        values.update(_brook_mode(bean.protocol))
        values["server"] = bean.internal_uri()
        if bean.password.strip():
            extra += ["--password", bean.password]
        extra += ["--socks5", values["listen"]]
    elif strategy is SHADOWSOCKS_RUST and settings.enable_log:
        extra.append("-v")

    return prefix + _render_template(strategy.command_template, values) + extra


def _render_template(template: str, values: dict[str, str]) -> list[str]:
    try:
        rendered = template.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise ConfigurationError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ConfigurationError("Command template rendered empty command.")
    return argv


def _brook_mode(protocol: str) -> dict[str, str]:
    if protocol == "ws":
        return {"mode": "wsclient", "server_flag": "--wsserver"}
    if protocol == "wss":
        return {"mode": "wssclient", "server_flag": "--wssserver"}
    return {"mode": "client", "server_flag": "--server"}


def _shadowsocks_strategy(provider: str) -> BackendStrategy:
    if provider == "v2ray":
        return BackendStrategy(backend=BackendKind.CORE, kind=ProtocolKind.SHADOWSOCKS)
    if provider == "shadowsocks-rust":
        return SHADOWSOCKS_RUST
    if provider == "clash":
        return BackendStrategy(
            backend=BackendKind.ADAPTER,
            kind=ProtocolKind.SHADOWSOCKS,
            adapter="clash-shadowsocks",
            plugin="clash",
        )
    raise ConfigurationError(f"Unsupported shadowsocks provider: {provider!r}")


def _trojan_strategy(provider: str) -> BackendStrategy:
    if provider == "v2ray":
        return BackendStrategy(backend=BackendKind.CORE, kind=ProtocolKind.TROJAN)
    if provider == "trojan":
        return TROJAN
    if provider == "trojan-go":
        return BackendStrategy(
            backend=BackendKind.PROCESS,
            kind=ProtocolKind.TROJAN,
            plugin="trojan-go-plugin",
            config_prefix="trojan_go",
            config_suffix="json",
            command_template=TROJAN_GO.command_template,
        )
    raise ConfigurationError(f"Unsupported trojan provider: {provider!r}")
