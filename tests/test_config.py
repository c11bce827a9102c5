from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from relaychain.config import DEFAULT_PLUGIN_EXECUTABLES, InstanceSettings, Settings

pytestmark = [
    allure.epic("Proxy Instance"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("RELAYCHAIN_"):
            monkeypatch.delenv(name)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.scratch_dir == Path(".relaychain")
    assert settings.instance == InstanceSettings()
    assert settings.plugins.executables == DEFAULT_PLUGIN_EXECUTABLES
    assert settings.plugins.core_binary == "v2ray"
    assert settings.bridge.open_browser is True
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RELAYCHAIN_ENABLE_MUX", "yes")
    monkeypatch.setenv("RELAYCHAIN_SHADOWSOCKS_PROVIDER", " Shadowsocks-Rust ")
    monkeypatch.setenv("RELAYCHAIN_TROJAN_PROVIDER", "trojan-go")
    monkeypatch.setenv("RELAYCHAIN_SOCKS_PORT", "1080")
    monkeypatch.setenv("RELAYCHAIN_PINGTUNNEL_WRAPPER", "sudo -n")
    monkeypatch.setenv("RELAYCHAIN_PLUGIN_DIRS", os.pathsep.join(["/opt/a", "", "/opt/b"]))
    monkeypatch.setenv("RELAYCHAIN_PLUGIN_EXECUTABLES", "naive-plugin=naive-beta, gost=gost3")
    monkeypatch.setenv("RELAYCHAIN_BRIDGE_OPEN_BROWSER", "off")

    settings = Settings.from_env(scratch_dir=tmp_path)

    assert settings.scratch_dir == tmp_path
    assert settings.instance.enable_mux is True
    assert settings.instance.shadowsocks_provider == "shadowsocks-rust"
    assert settings.instance.trojan_provider == "trojan-go"
    assert settings.instance.socks_port == 1080
    assert settings.instance.pingtunnel_wrapper == ("sudo", "-n")
    assert settings.plugins.plugin_dirs == (Path("/opt/a"), Path("/opt/b"))
    assert settings.plugins.executables["naive-plugin"] == "naive-beta"
    assert settings.plugins.executables["gost"] == "gost3"
    assert settings.plugins.executables["brook-plugin"] == "brook"
    assert settings.bridge.open_browser is False
    settings.validate()


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RELAYCHAIN_ENABLE_LOG", "maybe")

    with pytest.raises(ValueError, match="RELAYCHAIN_ENABLE_LOG"):
        Settings.from_env()


def test_invalid_executable_override_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("RELAYCHAIN_PLUGIN_EXECUTABLES", "naive-plugin")

    with pytest.raises(ValueError, match="Expected format"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("instance", "message"),
    [
        (InstanceSettings(shadowsocks_provider="libev"), "SHADOWSOCKS_PROVIDER"),
        (InstanceSettings(trojan_provider="trojan-r"), "TROJAN_PROVIDER"),
        (InstanceSettings(socks_port=0), "RELAYCHAIN_SOCKS_PORT"),
        (InstanceSettings(local_port_base=70_000), "RELAYCHAIN_LOCAL_PORT_BASE"),
        (InstanceSettings(socks_port=9000, ws_port=9000), "must differ"),
    ],
)
def test_validate_rejects_bad_instance_settings(instance: InstanceSettings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(instance=instance).validate()
