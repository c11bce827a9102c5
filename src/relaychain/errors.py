"""Errors raised while starting a proxy instance.

Every error below is fatal to instance startup: the instance tears down
whatever it already built and re-raises the error to the caller.
"""

from __future__ import annotations


class InstanceError(RuntimeError):
    """Base error for instance startup failures, tagged with the offending hop."""

    def __init__(self, message: str, *, port: int | None = None, kind: str | None = None) -> None:
        super().__init__(message)
        self.port = port
        self.kind = kind


class ConfigurationError(InstanceError):
    """Unsupported protocol kind or incompatible chain placement."""


class PluginResolutionError(InstanceError):
    """A named plugin binary is not available."""

    def __init__(self, message: str, *, plugin: str, port: int | None = None) -> None:
        super().__init__(message, port=port)
        self.plugin = plugin


class BuildError(InstanceError):
    """Config builder failed for a hop."""


class SpawnError(InstanceError):
    """Process pool failed to start a backend process."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        port: int | None = None,
        kind: str | None = None,
    ) -> None:
        super().__init__(message, port=port, kind=kind)
        self.transient = transient


class AdapterLaunchError(InstanceError):
    """An adapter failed to launch."""
