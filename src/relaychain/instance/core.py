"""Proxy core handle: consumes the aggregate config and forwards traffic."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from relaychain.instance.artifacts import ScratchFiles
from relaychain.instance.process import ProcessPool

logger = logging.getLogger(__name__)


class ProxyCore(Protocol):
    """Protocol implemented by proxy cores."""

    def load_config(self, config: dict[str, Any]) -> None:
        """Validate and stage the aggregate configuration."""

    def start(self) -> None:
        """Start forwarding with the staged configuration."""

    def close(self) -> None:
        """Stop forwarding and release everything the core owns."""


class V2RayProcessCore:
    """Runs a V2Ray-compatible binary (``v2ray run -c <file>``) as the core."""

    def __init__(self, binary: Path, scratch_dir: Path) -> None:
        self._binary = binary
        self._scratch = ScratchFiles(scratch_dir)
        self._pool = ProcessPool()
        self._config_path: Path | None = None

    def load_config(self, config: dict[str, Any]) -> None:
        if not config.get("outbounds"):
            raise ValueError("Core config has no outbounds")
        self._config_path = self._scratch.write("v2ray", "json", json.dumps(config, indent=2))

    def start(self) -> None:
        if self._config_path is None:
            raise RuntimeError("Core config is not loaded")
        self._pool.start([str(self._binary), "run", "-c", str(self._config_path)])
        logger.info("Core started: %s", self._binary.name)

    def close(self) -> None:
        try:
            self._pool.close()
        finally:
            self._scratch.cleanup()
            self._config_path = None
