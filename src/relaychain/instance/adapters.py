"""Adapters bridging protocols the core cannot consume into local SOCKS5 ports.

Each adapter owns its own helper process and scratch files, so it can be
launched and destroyed independently of the instance process pool.
"""

from __future__ import annotations

import json
import logging
import string
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar, Protocol

from relaychain.config import InstanceSettings
from relaychain.errors import ConfigurationError
from relaychain.instance.artifacts import ScratchFiles
from relaychain.instance.plugins import ResolvedPlugin
from relaychain.instance.process import ProcessPool
from relaychain.instance.registry import CUSTOM_CONFIG_PLUGINS, LOCALHOST
from relaychain.profiles import (
    CustomConfigBean,
    ShadowsocksBean,
    ShadowsocksRBean,
    SnellBean,
    SocksBean,
)

logger = logging.getLogger(__name__)


class Adapter(Protocol):
    """Lifecycle shared by every adapter."""

    def launch(self) -> None:
        """Bring the adapter up; may raise."""

    def destroy(self) -> None:
        """Release everything the adapter owns; must not raise."""


@dataclass(slots=True)
class AdapterContext:
    """Collaborators an adapter borrows from the owning instance."""

    resolve_plugin: Callable[[str], ResolvedPlugin]
    scratch_dir: Path
    settings: InstanceSettings


class ProcessAdapter:
    """Adapter backed by one helper process in a private pool."""

    plugin: ClassVar[str]
    config_prefix: ClassVar[str | None] = None
    config_suffix: ClassVar[str] = "json"

    def __init__(self, bean: Any, port: int, context: AdapterContext) -> None:
        self.bean = bean
        self.port = port
        self.context = context
        self._scratch = ScratchFiles(context.scratch_dir)
        self._pool = ProcessPool()

    def plugin_name(self) -> str:
        return self.plugin

    def config_name(self) -> tuple[str, str]:
        return self.config_prefix or self.plugin_name(), self.config_suffix

    def render_config(self) -> str | None:
        return None

    def command(self, binary: Path, config_path: Path | None) -> list[str]:
        raise NotImplementedError

    def launch(self) -> None:
        binary = self.context.resolve_plugin(self.plugin_name()).path
        config = self.render_config()
        config_path = None
        if config is not None:
            prefix, suffix = self.config_name()
            config_path = self._scratch.write(prefix, suffix, config)
        self._pool.start(self.command(binary, config_path))
        logger.info("%s adapter listening on %s:%d", type(self).__name__, LOCALHOST, self.port)

    def destroy(self) -> None:
        try:
            self._pool.close()
        except Exception:  # noqa: BLE001
            logger.warning("Adapter pool close failed on port %d", self.port, exc_info=True)
        self._scratch.cleanup()


class ClashAdapter(ProcessAdapter):
    """Runs clash in global mode with a single proxy; JSON is valid clash YAML."""

    plugin = "clash"
    config_prefix = "clash"
    config_suffix = "yaml"

    def proxy_entry(self) -> dict[str, Any]:
        raise NotImplementedError

    def render_config(self) -> str:
        proxy = {"name": "upstream", **self.proxy_entry()}
        return json.dumps(
            {
                "socks-port": self.port,
                "bind-address": LOCALHOST,
                "allow-lan": False,
                "mode": "global",
                "log-level": "debug" if self.context.settings.enable_log else "warning",
                "proxies": [proxy],
                "proxy-groups": [{"name": "GLOBAL", "type": "select", "proxies": ["upstream"]}],
            },
            indent=2,
        )

    def command(self, binary: Path, config_path: Path | None) -> list[str]:
        return [str(binary), "-f", str(config_path)]


class ClashShadowsocksAdapter(ClashAdapter):
    def proxy_entry(self) -> dict[str, Any]:
        bean: ShadowsocksBean = self.bean
        entry: dict[str, Any] = {
            "type": "ss",
            "server": bean.server,
            "port": bean.port,
            "cipher": bean.method,
            "password": bean.password,
            "udp": True,
        }
        if bean.plugin:
            entry["plugin"] = bean.plugin
            entry["plugin-opts"] = _parse_plugin_opts(bean.plugin_opts)
        return entry


class SnellAdapter(ClashAdapter):
    def proxy_entry(self) -> dict[str, Any]:
        bean: SnellBean = self.bean
        entry: dict[str, Any] = {
            "type": "snell",
            "server": bean.server,
            "port": bean.port,
            "psk": bean.psk,
            "version": bean.version,
        }
        if bean.obfs_mode:
            entry["obfs-opts"] = {"mode": bean.obfs_mode, "host": bean.obfs_host or "bing.com"}
        return entry


class ShadowsocksRAdapter(ProcessAdapter):
    plugin = "shadowsocksr"
    config_prefix = "ssr"

    def render_config(self) -> str:
        bean: ShadowsocksRBean = self.bean
        return json.dumps(
            {
                "server": bean.server,
                "server_port": bean.port,
                "local_address": LOCALHOST,
                "local_port": self.port,
                "password": bean.password,
                "method": bean.method,
                "protocol": bean.protocol,
                "protocol_param": bean.protocol_param,
                "obfs": bean.obfs,
                "obfs_param": bean.obfs_param,
                "timeout": 600,
            },
            indent=2,
        )

    def command(self, binary: Path, config_path: Path | None) -> list[str]:
        return [str(binary), "-c", str(config_path)]


class Socks4Adapter(ProcessAdapter):
    """Serves SOCKS5 locally and forwards through a SOCKS4/4a upstream via gost."""

    plugin = "gost"

    def command(self, binary: Path, config_path: Path | None) -> list[str]:
        bean: SocksBean = self.bean
        userinfo = f"{bean.username}@" if bean.username else ""
        scheme = "socks4a" if bean.version == "4a" else "socks4"
        return [
            str(binary),
            "-L",
            f"socks5://{LOCALHOST}:{self.port}",
            "-F",
            f"{scheme}://{userinfo}{bean.server}:{bean.port}",
        ]


_CUSTOM_COMMANDS: dict[str, tuple[str, tuple[str, ...]]] = {
    "clash": ("yaml", ("-f", "{config}")),
    "hysteria": ("json", ("--no-check", "--config", "{config}", "client")),
    "naive": ("json", ("{config}",)),
    "shadowsocks-rust": ("json", ("-c", "{config}")),
    "trojan": ("json", ("--config", "{config}")),
}


class CustomConfigAdapter(ProcessAdapter):
    """Runs a user-supplied config verbatim; ``${port}`` is replaced by the hop port."""

    def __init__(self, bean: Any, port: int, context: AdapterContext) -> None:
        super().__init__(bean, port, context)
        custom: CustomConfigBean = bean
        if custom.type not in _CUSTOM_COMMANDS:
            raise ConfigurationError(
                f"Unsupported custom config type {custom.type!r}; "
                f"use one of {sorted(_CUSTOM_COMMANDS)}",
                port=port,
                kind="config",
            )
        self._plugin = CUSTOM_CONFIG_PLUGINS[custom.type]
        self._suffix, self._args = _CUSTOM_COMMANDS[custom.type]

    def plugin_name(self) -> str:
        return self._plugin

    def config_name(self) -> tuple[str, str]:
        return "custom", self._suffix

    def render_config(self) -> str:
        return string.Template(self.bean.content).safe_substitute(port=self.port)

    def command(self, binary: Path, config_path: Path | None) -> list[str]:
        return [str(binary), *(arg.format(config=config_path) for arg in self._args)]


ADAPTERS: dict[str, type[ProcessAdapter]] = {
    "clash-shadowsocks": ClashShadowsocksAdapter,
    "snell": SnellAdapter,
    "shadowsocksr": ShadowsocksRAdapter,
    "socks4": Socks4Adapter,
    "custom-config": CustomConfigAdapter,
}


def create_adapter(name: str, bean: Any, port: int, context: AdapterContext) -> Adapter:
    """Construct the adapter registered under ``name``."""

    adapter_type = ADAPTERS.get(name)
    if adapter_type is None:
        raise ConfigurationError(f"No adapter registered as {name!r}", port=port)
    return adapter_type(bean, port, context)


def _parse_plugin_opts(raw: str) -> dict[str, str]:
    options: dict[str, str] = {}
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        key, _, value = token.partition("=")
        options[key.strip()] = value.strip()
    return options
