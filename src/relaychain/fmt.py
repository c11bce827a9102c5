"""Config builders: the aggregate V2Ray config and per-hop native plugin configs.

``build_core`` assigns every hop a local port and produces the index the
instance walks. Hops that run outside the core are reached through a SOCKS
outbound to their local port. When such a hop has to dial through the next
hop, the core opens a dokodemo-door relay towards the real server and the
hop's profile is rewritten to point at that relay.
"""

from __future__ import annotations

import dataclasses
import json
import string
from dataclasses import dataclass, field
from typing import Any, Protocol

from relaychain.config import InstanceSettings
from relaychain.instance.artifacts import ScratchFiles
from relaychain.instance.registry import LOCALHOST, BackendKind, classify
from relaychain.instance.topology import ChainEntry, ChainGroup, HopSpec, walk_topology
from relaychain.profiles import (
    CustomConfigBean,
    HttpBean,
    HysteriaBean,
    NaiveBean,
    ProfileGraph,
    ProxyProfile,
    RelayBatonBean,
    ShadowsocksBean,
    SocksBean,
    TrojanBean,
    TrojanGoBean,
    VLessBean,
    VMessBean,
)

SOCKS_INBOUND_TAG = "socks-in"
DIRECT_TAG = "direct"


@dataclass(slots=True)
class CoreBuildResult:
    """Aggregate core config plus the port index it was built against."""

    index: tuple[ChainGroup, ...]
    config: dict[str, Any]
    require_ws: bool = False
    ws_port: int = 0
    relays: dict[int, int] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.config, indent=2, sort_keys=True)


class ConfigBuilder(Protocol):
    """Facade the instance uses to obtain configuration."""

    def build_core(self, graph: ProfileGraph, settings: InstanceSettings) -> CoreBuildResult:
        """Assign ports and build the aggregate core config."""

    def build_hop(
        self,
        profile: ProxyProfile,
        port: int,
        *,
        mux: bool,
        scratch: ScratchFiles,
        settings: InstanceSettings,
    ) -> str:
        """Build one external hop's native config."""


class V2RayConfigBuilder:
    """Reference builder producing V2Ray JSON plus native plugin configs."""

    def build_core(self, graph: ProfileGraph, settings: InstanceSettings) -> CoreBuildResult:
        next_port = settings.local_port_base
        index: list[ChainGroup] = []
        for group in graph.groups:
            entries = []
            for profile in group.profiles:
                entries.append(ChainEntry(port=next_port, profile=profile))
                next_port += 1
            index.append(ChainGroup(balancer=group.balancer, entries=tuple(entries)))

        hops = walk_topology(index, enable_mux=settings.enable_mux)
        relays: dict[int, int] = {}
        for hop in hops:
            if hop.need_chain and _is_external(hop.profile, settings) and _relayable(hop.profile):
                relays[hop.port] = next_port
                next_port += 1

        index = [
            ChainGroup(
                balancer=group.balancer,
                entries=tuple(
                    ChainEntry(
                        port=entry.port,
                        profile=_point_at_relay(entry.profile, relays[entry.port]),
                    )
                    if entry.port in relays
                    else entry
                    for entry in group.entries
                ),
            )
            for group in index
        ]

        config, require_ws = _core_config(graph, index, hops, relays, settings)
        return CoreBuildResult(
            index=tuple(index),
            config=config,
            require_ws=require_ws,
            ws_port=settings.ws_port if require_ws else 0,
            relays=relays,
        )

    def build_hop(
        self,
        profile: ProxyProfile,
        port: int,
        *,
        mux: bool,
        scratch: ScratchFiles,
        settings: InstanceSettings,
    ) -> str:
        bean = profile.bean
        if isinstance(bean, ShadowsocksBean):
            return _dump(_shadowsocks_rust_config(bean, port))
        if isinstance(bean, TrojanBean) and settings.trojan_provider == "trojan":
            return _dump(_trojan_config(bean, port, settings))
        if isinstance(bean, (TrojanBean, TrojanGoBean)):
            return _dump(_trojan_go_config(bean, port, mux=mux, settings=settings))
        if isinstance(bean, CustomConfigBean) and bean.type == "trojan-go":
            return _dump(_custom_trojan_go_config(bean.content, port))
        if isinstance(bean, NaiveBean):
            return _dump(_naive_config(bean, port, settings))
        if isinstance(bean, RelayBatonBean):
            return _relaybaton_config(bean, port, settings)
        if isinstance(bean, HysteriaBean):
            return _dump(_hysteria_config(bean, port, scratch=scratch))
        raise ValueError(f"No native config builder for {profile.kind.value!r}")


def _dump(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)


def _is_external(profile: ProxyProfile, settings: InstanceSettings) -> bool:
    return classify(profile, settings).backend != BackendKind.CORE


def _relayable(profile: ProxyProfile) -> bool:
    names = {item.name for item in dataclasses.fields(profile.bean)}
    return {"server", "port"} <= names


def _point_at_relay(profile: ProxyProfile, relay_port: int) -> ProxyProfile:
    bean = profile.bean
    changes: dict[str, Any] = {"server": LOCALHOST, "port": relay_port}
    names = {item.name for item in dataclasses.fields(bean)}
    # TLS still has to present the real server name
    if "sni" in names and not bean.sni:
        changes["sni"] = bean.server
    return dataclasses.replace(profile, bean=dataclasses.replace(bean, **changes))


def _core_config(
    graph: ProfileGraph,
    index: list[ChainGroup],
    hops: list[HopSpec],
    relays: dict[int, int],
    settings: InstanceSettings,
) -> tuple[dict[str, Any], bool]:
    original = {
        entry.port: profile
        for group, source in zip(index, graph.groups, strict=True)
        for entry, profile in zip(group.entries, source.profiles, strict=True)
    }
    next_tag = {
        hop.port: _tag(index[hop.group_index].entries[hop.position + 1].port)
        for hop in hops
        if hop.need_chain
    }

    inbounds: list[dict[str, Any]] = []
    outbounds: list[dict[str, Any]] = []
    rules: list[dict[str, Any]] = []
    balancers: list[dict[str, Any]] = []
    require_ws = False

    for group_index, group in enumerate(index):
        inbound_tag = SOCKS_INBOUND_TAG if group_index == 0 else f"{SOCKS_INBOUND_TAG}-{group_index}"
        inbounds.append(
            {
                "tag": inbound_tag,
                "listen": LOCALHOST,
                "port": settings.socks_port + group_index,
                "protocol": "socks",
                "settings": {"auth": "noauth", "udp": True},
            },
        )
        if group.balancer:
            balancer_tag = f"balancer-{group_index}"
            balancers.append(
                {"tag": balancer_tag, "selector": [_tag(entry.port) for entry in group.entries]},
            )
            rules.append({"type": "field", "inboundTag": [inbound_tag], "balancerTag": balancer_tag})
        else:
            rules.append(
                {
                    "type": "field",
                    "inboundTag": [inbound_tag],
                    "outboundTag": _tag(group.entries[0].port),
                },
            )

    for hop in hops:
        profile = hop.profile
        if _is_external(profile, settings):
            outbound = _local_socks_outbound(hop.port)
        else:
            outbound = _native_outbound(profile)
            require_ws = require_ws or _uses_browser_forwarding(profile)
            if hop.mux:
                outbound["mux"] = {"enabled": True, "concurrency": 8}
            if hop.need_chain:
                outbound["proxySettings"] = {"tag": next_tag[hop.port]}
        outbound["tag"] = _tag(hop.port)
        outbounds.append(outbound)

        relay_port = relays.get(hop.port)
        if relay_port is not None:
            upstream = original[hop.port].bean
            relay_tag = f"relay-{hop.port}"
            inbounds.append(
                {
                    "tag": relay_tag,
                    "listen": LOCALHOST,
                    "port": relay_port,
                    "protocol": "dokodemo-door",
                    "settings": {
                        "address": upstream.server,
                        "port": upstream.port,
                        "network": "tcp,udp",
                    },
                },
            )
            rules.append(
                {"type": "field", "inboundTag": [relay_tag], "outboundTag": next_tag[hop.port]},
            )

    outbounds.append({"tag": DIRECT_TAG, "protocol": "freedom"})
    config: dict[str, Any] = {
        "log": {"loglevel": "debug" if settings.enable_log else "warning"},
        "inbounds": inbounds,
        "outbounds": outbounds,
        "routing": {"domainStrategy": "AsIs", "rules": rules, "balancers": balancers},
    }
    if require_ws:
        config["browserForwarder"] = {"listenAddr": LOCALHOST, "listenPort": settings.ws_port}
    return config, require_ws


def _tag(port: int) -> str:
    return f"hop-{port}"


def _local_socks_outbound(port: int) -> dict[str, Any]:
    return {
        "protocol": "socks",
        "settings": {"servers": [{"address": LOCALHOST, "port": port}]},
    }


def _uses_browser_forwarding(profile: ProxyProfile) -> bool:
    bean = profile.bean
    return isinstance(bean, (VMessBean, VLessBean)) and bean.ws_browser_forwarding


def _native_outbound(profile: ProxyProfile) -> dict[str, Any]:  # noqa: PLR0911
    bean = profile.bean
    if isinstance(bean, VMessBean):
        return {
            "protocol": "vmess",
            "settings": {
                "vnext": [
                    {
                        "address": bean.server,
                        "port": bean.port,
                        "users": [{"id": bean.uuid, "security": bean.security}],
                    },
                ],
            },
            "streamSettings": _stream_settings(bean),
        }
    if isinstance(bean, VLessBean):
        user: dict[str, Any] = {"id": bean.uuid, "encryption": "none"}
        if bean.flow:
            user["flow"] = bean.flow
        return {
            "protocol": "vless",
            "settings": {"vnext": [{"address": bean.server, "port": bean.port, "users": [user]}]},
            "streamSettings": _stream_settings(bean),
        }
    if isinstance(bean, (SocksBean, HttpBean)):
        server: dict[str, Any] = {"address": bean.server, "port": bean.port}
        if bean.username:
            server["users"] = [{"user": bean.username, "pass": bean.password}]
        outbound: dict[str, Any] = {
            "protocol": "socks" if isinstance(bean, SocksBean) else "http",
            "settings": {"servers": [server]},
        }
        if isinstance(bean, HttpBean) and bean.tls:
            outbound["streamSettings"] = {"security": "tls"}
        return outbound
    if isinstance(bean, ShadowsocksBean):
        return {
            "protocol": "shadowsocks",
            "settings": {
                "servers": [
                    {
                        "address": bean.server,
                        "port": bean.port,
                        "method": bean.method,
                        "password": bean.password,
                    },
                ],
            },
        }
    if isinstance(bean, TrojanBean):
        tls: dict[str, Any] = {"allowInsecure": bean.allow_insecure}
        if bean.sni:
            tls["serverName"] = bean.sni
        return {
            "protocol": "trojan",
            "settings": {
                "servers": [
                    {"address": bean.server, "port": bean.port, "password": bean.password},
                ],
            },
            "streamSettings": {"security": "tls", "tlsSettings": tls},
        }
    raise ValueError(f"Core cannot consume {profile.kind.value!r} directly")


def _stream_settings(bean: VMessBean | VLessBean) -> dict[str, Any]:
    stream: dict[str, Any] = {"network": bean.network}
    if bean.tls:
        stream["security"] = "tls"
    if bean.network == "ws":
        ws: dict[str, Any] = {"path": bean.ws_path or "/"}
        if bean.ws_browser_forwarding:
            ws["useBrowserForwarding"] = True
        stream["wsSettings"] = ws
    return stream


def _shadowsocks_rust_config(bean: ShadowsocksBean, port: int) -> dict[str, Any]:
    config: dict[str, Any] = {
        "server": bean.server,
        "server_port": bean.port,
        "method": bean.method,
        "password": bean.password,
        "local_address": LOCALHOST,
        "local_port": port,
        "mode": "tcp_and_udp",
    }
    if bean.plugin:
        config["plugin"] = bean.plugin
        config["plugin_opts"] = bean.plugin_opts
    return config


def _trojan_config(bean: TrojanBean, port: int, settings: InstanceSettings) -> dict[str, Any]:
    return {
        "run_type": "client",
        "local_addr": LOCALHOST,
        "local_port": port,
        "remote_addr": bean.server,
        "remote_port": bean.port,
        "password": [bean.password],
        "log_level": 0 if settings.enable_log else 2,
        "ssl": {
            "verify": not bean.allow_insecure,
            "verify_hostname": not bean.allow_insecure,
            "sni": bean.sni or bean.server,
        },
    }


def _trojan_go_config(
    bean: TrojanBean | TrojanGoBean,
    port: int,
    *,
    mux: bool,
    settings: InstanceSettings,
) -> dict[str, Any]:
    config: dict[str, Any] = {
        "run_type": "client",
        "local_addr": LOCALHOST,
        "local_port": port,
        "remote_addr": bean.server,
        "remote_port": bean.port,
        "password": [bean.password],
        "log_level": 0 if settings.enable_log else 2,
        "ssl": {"sni": bean.sni or bean.server, "verify": not bean.allow_insecure},
        "mux": {"enabled": mux},
    }
    if isinstance(bean, TrojanGoBean) and bean.transport == "ws":
        config["websocket"] = {
            "enabled": True,
            "path": bean.ws_path or "/",
            "host": bean.ws_host or bean.sni or bean.server,
        }
    return config


def _custom_trojan_go_config(content: str, port: int) -> dict[str, Any]:
    rendered = string.Template(content).safe_substitute(port=port)
    try:
        config = json.loads(rendered)
    except json.JSONDecodeError as error:
        raise ValueError(f"Custom trojan-go config is not valid JSON: {error}") from error
    if not isinstance(config, dict):
        raise TypeError("Custom trojan-go config must be a JSON object")
    config["run_type"] = "client"
    config["local_addr"] = LOCALHOST
    config["local_port"] = port
    return config


def _naive_config(bean: NaiveBean, port: int, settings: InstanceSettings) -> dict[str, Any]:
    credentials = f"{bean.username}:{bean.password}@" if bean.username else ""
    host = bean.sni or bean.server
    config: dict[str, Any] = {
        "listen": f"socks://{LOCALHOST}:{port}",
        "proxy": f"{bean.proto}://{credentials}{host}:{bean.port}",
        "log": "" if settings.enable_log else None,
    }
    if bean.sni and bean.sni != bean.server:
        config["host-resolver-rules"] = f"MAP {bean.sni} {bean.server}"
    return {key: value for key, value in config.items() if value is not None}


def _relaybaton_config(bean: RelayBatonBean, port: int, settings: InstanceSettings) -> str:
    level = "debug" if settings.enable_log else "error"
    lines = [
        "[log]",
        f"level = {json.dumps(level)}",
        "",
        "[client]",
        f"port = {port}",
        f"server = {json.dumps(f'{bean.server}:{bean.port}')}",
        f"username = {json.dumps(bean.username)}",
        f"password = {json.dumps(bean.password)}",
        "proxy_all = true",
        "",
    ]
    return "\n".join(lines)


def _hysteria_config(bean: HysteriaBean, port: int, *, scratch: ScratchFiles) -> dict[str, Any]:
    config: dict[str, Any] = {
        "server": f"{bean.server}:{bean.port}",
        "protocol": bean.protocol,
        "up_mbps": bean.up_mbps,
        "down_mbps": bean.down_mbps,
        "socks5": {"listen": f"{LOCALHOST}:{port}"},
        "insecure": bean.allow_insecure,
    }
    if bean.sni:
        config["server_name"] = bean.sni
    if bean.auth:
        config["auth_str"] = bean.auth
    if bean.obfs:
        config["obfs"] = bean.obfs
    if bean.alpn:
        config["alpn"] = bean.alpn
    if bean.ca_text.strip():
        config["ca"] = str(scratch.write("hysteria", "ca", bean.ca_text))
    return config
