"""Plugin binary lookup."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from relaychain.config import PluginSettings
from relaychain.errors import PluginResolutionError


@dataclass(frozen=True, slots=True)
class ResolvedPlugin:
    """Executable backing a named plugin."""

    name: str
    path: Path


class PluginResolver(Protocol):
    """Protocol implemented by plugin lookups."""

    def resolve(self, name: str) -> ResolvedPlugin:
        """Return the binary for ``name`` or raise ``PluginResolutionError``."""


class PathPluginResolver:
    """Search configured plugin directories first, then ``PATH``."""

    def __init__(self, settings: PluginSettings) -> None:
        self._settings = settings

    def resolve(self, name: str) -> ResolvedPlugin:
        executable = self._settings.executables.get(name)
        if executable is None:
            raise PluginResolutionError(f"Unknown plugin: {name!r}", plugin=name)

        for directory in self._settings.plugin_dirs:
            candidate = directory / executable
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return ResolvedPlugin(name=name, path=candidate.resolve())

        found = shutil.which(executable)
        if found is None:
            searched = ", ".join([*(str(item) for item in self._settings.plugin_dirs), "PATH"])
            raise PluginResolutionError(
                f"Plugin {name!r} not found: no executable {executable!r} in {searched}",
                plugin=name,
            )
        return ResolvedPlugin(name=name, path=Path(found))
