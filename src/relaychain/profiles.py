"""Proxy profile models and the JSON document reader for profile graphs."""

from __future__ import annotations

import json
from dataclasses import MISSING, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar


class ProtocolKind(str, Enum):
    """Protocol families a hop can speak."""

    VMESS = "vmess"
    VLESS = "vless"
    SOCKS = "socks"
    HTTP = "http"
    SHADOWSOCKS = "shadowsocks"
    SHADOWSOCKSR = "shadowsocksr"
    TROJAN = "trojan"
    TROJAN_GO = "trojan-go"
    NAIVE = "naive"
    PINGTUNNEL = "pingtunnel"
    RELAYBATON = "relaybaton"
    BROOK = "brook"
    HYSTERIA = "hysteria"
    SNELL = "snell"
    CONFIG = "config"


@dataclass(frozen=True, slots=True)
class VMessBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.VMESS

    server: str
    port: int
    uuid: str
    security: str = "auto"
    network: str = "tcp"
    tls: bool = False
    ws_path: str = ""
    ws_browser_forwarding: bool = False


@dataclass(frozen=True, slots=True)
class VLessBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.VLESS

    server: str
    port: int
    uuid: str
    flow: str = ""
    network: str = "tcp"
    tls: bool = False
    ws_path: str = ""
    ws_browser_forwarding: bool = False


@dataclass(frozen=True, slots=True)
class SocksBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.SOCKS

    server: str
    port: int
    version: str = "5"
    username: str = ""
    password: str = ""


@dataclass(frozen=True, slots=True)
class HttpBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.HTTP

    server: str
    port: int
    username: str = ""
    password: str = ""
    tls: bool = False


@dataclass(frozen=True, slots=True)
class ShadowsocksBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.SHADOWSOCKS

    server: str
    port: int
    method: str
    password: str
    plugin: str = ""
    plugin_opts: str = ""


@dataclass(frozen=True, slots=True)
class ShadowsocksRBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.SHADOWSOCKSR

    server: str
    port: int
    method: str
    password: str
    protocol: str = "origin"
    protocol_param: str = ""
    obfs: str = "plain"
    obfs_param: str = ""


@dataclass(frozen=True, slots=True)
class TrojanBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.TROJAN

    server: str
    port: int
    password: str
    sni: str = ""
    allow_insecure: bool = False


@dataclass(frozen=True, slots=True)
class TrojanGoBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.TROJAN_GO

    server: str
    port: int
    password: str
    sni: str = ""
    transport: str = "original"
    ws_path: str = ""
    ws_host: str = ""
    allow_insecure: bool = False


@dataclass(frozen=True, slots=True)
class NaiveBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.NAIVE

    server: str
    port: int
    username: str = ""
    password: str = ""
    proto: str = "https"
    sni: str = ""


@dataclass(frozen=True, slots=True)
class PingTunnelBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.PINGTUNNEL

    server: str
    key: str = "1"


@dataclass(frozen=True, slots=True)
class RelayBatonBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.RELAYBATON

    server: str
    username: str
    password: str
    port: int = 443


@dataclass(frozen=True, slots=True)
class BrookBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.BROOK

    server: str
    port: int
    password: str = ""
    protocol: str = ""
    ws_path: str = ""

    def internal_uri(self) -> str:
        """Server argument in the form brook expects for the chosen transport."""

        if self.protocol in {"ws", "wss"}:
            path = self.ws_path if self.ws_path.startswith("/") else f"/{self.ws_path}"
            return f"{self.protocol}://{_join_host_port(self.server, self.port)}{path}"
        return _join_host_port(self.server, self.port)


@dataclass(frozen=True, slots=True)
class HysteriaBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.HYSTERIA

    server: str
    port: int
    auth: str = ""
    obfs: str = ""
    alpn: str = ""
    sni: str = ""
    protocol: str = "udp"
    up_mbps: int = 10
    down_mbps: int = 50
    ca_text: str = ""
    allow_insecure: bool = False


@dataclass(frozen=True, slots=True)
class SnellBean:
    KIND: ClassVar[ProtocolKind] = ProtocolKind.SNELL

    server: str
    port: int
    psk: str
    version: int = 2
    obfs_mode: str = ""
    obfs_host: str = ""


@dataclass(frozen=True, slots=True)
class CustomConfigBean:
    """Raw config for a backend named by ``type``, passed through verbatim."""

    KIND: ClassVar[ProtocolKind] = ProtocolKind.CONFIG

    type: str
    content: str


ProfileBean = (
    VMessBean
    | VLessBean
    | SocksBean
    | HttpBean
    | ShadowsocksBean
    | ShadowsocksRBean
    | TrojanBean
    | TrojanGoBean
    | NaiveBean
    | PingTunnelBean
    | RelayBatonBean
    | BrookBean
    | HysteriaBean
    | SnellBean
    | CustomConfigBean
)

BEAN_TYPES: dict[ProtocolKind, type[Any]] = {
    bean.KIND: bean
    for bean in (
        VMessBean,
        VLessBean,
        SocksBean,
        HttpBean,
        ShadowsocksBean,
        ShadowsocksRBean,
        TrojanBean,
        TrojanGoBean,
        NaiveBean,
        PingTunnelBean,
        RelayBatonBean,
        BrookBean,
        HysteriaBean,
        SnellBean,
        CustomConfigBean,
    )
}


@dataclass(frozen=True, slots=True)
class ProxyProfile:
    """One outbound proxy: an identifier plus exactly one protocol payload."""

    profile_id: str
    name: str
    bean: ProfileBean

    @property
    def kind(self) -> ProtocolKind:
        return self.bean.KIND


@dataclass(frozen=True, slots=True)
class ProfileGroup:
    """Either a chain (ordered hops) or a balancer group (sibling hops)."""

    balancer: bool
    profiles: tuple[ProxyProfile, ...]


@dataclass(frozen=True, slots=True)
class ProfileGraph:
    """User-defined profile graph resolved into groups."""

    name: str
    groups: tuple[ProfileGroup, ...]


def load_profile_graph(path: Path) -> ProfileGraph:
    """Load and validate a profile graph document."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid profile document at {path}: {error}") from error
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return parse_profile_graph(payload)


def parse_profile_graph(raw: dict[str, Any]) -> ProfileGraph:
    """Validate a decoded profile graph document."""

    name = raw.get("name", "default")
    raw_groups = raw.get("groups")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("profile_graph.name must be a non-empty string")
    if not isinstance(raw_groups, list) or not raw_groups:
        raise TypeError("profile_graph.groups must be a non-empty array")

    groups: list[ProfileGroup] = []
    for group_index, raw_group in enumerate(raw_groups):
        if not isinstance(raw_group, dict):
            raise TypeError("profile_graph group must be an object")
        balancer = raw_group.get("balancer", False)
        raw_profiles = raw_group.get("profiles")
        if not isinstance(balancer, bool):
            raise TypeError(f"groups[{group_index}].balancer must be a boolean")
        if not isinstance(raw_profiles, list) or not raw_profiles:
            raise ValueError(f"groups[{group_index}].profiles must be a non-empty array")
        profiles = tuple(
            parse_profile(item, fallback_id=f"{group_index}-{profile_index}")
            for profile_index, item in enumerate(raw_profiles)
        )
        groups.append(ProfileGroup(balancer=balancer, profiles=profiles))
    return ProfileGraph(name=name.strip(), groups=tuple(groups))


def parse_profile(raw: Any, *, fallback_id: str) -> ProxyProfile:
    """Validate one profile object into a typed profile."""

    if not isinstance(raw, dict):
        raise TypeError("profile entry must be an object")
    raw_type = raw.get("type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise ValueError("profile.type must be a non-empty string")
    try:
        kind = ProtocolKind(raw_type.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported profile type: {raw_type!r}") from error

    profile_id = raw.get("id", fallback_id)
    name = raw.get("name", "")
    if not isinstance(profile_id, str) or not profile_id.strip():
        raise ValueError("profile.id must be a non-empty string when provided")
    if not isinstance(name, str):
        raise TypeError("profile.name must be a string")

    bean = _parse_bean(BEAN_TYPES[kind], raw.get("settings", {}), kind=kind)
    return ProxyProfile(profile_id=profile_id.strip(), name=name, bean=bean)


_FIELD_TYPES: dict[str, type] = {"str": str, "int": int, "bool": bool}


def _parse_bean(bean_type: type[Any], raw: Any, *, kind: ProtocolKind) -> Any:
    if not isinstance(raw, dict):
        raise TypeError(f"{kind.value}.settings must be an object")

    known = {item.name for item in fields(bean_type)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown {kind.value} settings: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for item in fields(bean_type):
        if item.name not in raw:
            if item.default is MISSING:
                raise ValueError(f"{kind.value}.settings.{item.name} is required")
            continue
        value = raw[item.name]
        expected = _FIELD_TYPES[str(item.type)]
        # bool is an int subclass; reject it where a port or counter is expected
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise TypeError(
                f"{kind.value}.settings.{item.name} must be {expected.__name__}",
            )
        values[item.name] = value
    return bean_type(**values)


def _join_host_port(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"
