"""Proxy instance lifecycle: build, launch, and tear down every hop backend.

Startup is two-phase. ``init`` builds the aggregate core config, classifies
every hop, resolves plugins and generates per-hop configs without starting
anything. ``launch`` then brings hops up in the same traversal order and
starts the core. Any fatal error tears down whatever was already built
before it reaches the caller.
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from relaychain.config import Settings
from relaychain.errors import (
    AdapterLaunchError,
    BuildError,
    ConfigurationError,
    InstanceError,
    PluginResolutionError,
    SpawnError,
)
from relaychain.fmt import ConfigBuilder, CoreBuildResult, V2RayConfigBuilder
from relaychain.instance.adapters import Adapter, AdapterContext, create_adapter
from relaychain.instance.artifacts import ScratchFiles
from relaychain.instance.bridge import BrowserForwarderBridge
from relaychain.instance.core import ProxyCore, V2RayProcessCore
from relaychain.instance.plugins import PathPluginResolver, PluginResolver, ResolvedPlugin
from relaychain.instance.process import ManagedProcess, ProcessPool, ProcessSupervisor
from relaychain.instance.registry import (
    BackendKind,
    BackendStrategy,
    build_command,
    check_chain_placement,
    classify,
)
from relaychain.instance.topology import HopSpec, walk_topology
from relaychain.profiles import ProfileGraph

logger = logging.getLogger(__name__)


class InstanceState(str, Enum):
    """Startup state machine."""

    UNINITIALIZED = "uninitialized"
    CONFIG_BUILT = "config_built"
    BACKENDS_CLASSIFIED = "backends_classified"
    LAUNCHING = "launching"
    RUNNING = "running"
    FAILED = "failed"
    DESTROYED = "destroyed"


@dataclass(slots=True)
class PlannedHop:
    """Classification and generated config for one hop, keyed by port."""

    hop: HopSpec
    strategy: BackendStrategy
    config: str | None = None
    plugin: ResolvedPlugin | None = None


@dataclass(slots=True)
class CoreManagedHandle:
    port: int


@dataclass(slots=True)
class ExternalProcessHandle:
    port: int
    process: ManagedProcess
    files: tuple[Path, ...]


@dataclass(slots=True)
class AdapterHandle:
    port: int
    adapter: Adapter


BackendHandle = CoreManagedHandle | ExternalProcessHandle | AdapterHandle
AdapterFactory = Callable[[str, Any, int, AdapterContext], Adapter]


def classify_hops(hops: Sequence[HopSpec], settings: Settings) -> list[PlannedHop]:
    """Classify every hop and reject invalid chain placements.

    Runs before any config is generated, so a misplaced hop fails the whole
    startup without side effects.
    """

    planned: list[PlannedHop] = []
    for hop in hops:
        try:
            strategy = classify(hop.profile, settings.instance)
        except InstanceError as error:
            if error.port is None:
                error.port = hop.port
            raise
        check_chain_placement(strategy, hop)
        planned.append(PlannedHop(hop=hop, strategy=strategy))
    return planned


class ProxyInstance:
    """One running profile graph: its core, helper processes, adapters and files."""

    def __init__(  # noqa: PLR0913
        self,
        graph: ProfileGraph,
        settings: Settings,
        *,
        builder: ConfigBuilder | None = None,
        resolver: PluginResolver | None = None,
        core_factory: Callable[[], ProxyCore] | None = None,
        pool_factory: Callable[[], ProcessSupervisor] = ProcessPool,
        adapter_factory: AdapterFactory = create_adapter,
        bridge_factory: Callable[[int], BrowserForwarderBridge] | None = None,
    ) -> None:
        self.graph = graph
        self.settings = settings
        self._builder = builder or V2RayConfigBuilder()
        self._resolver = resolver or PathPluginResolver(settings.plugins)
        self._core_factory = core_factory or self._default_core
        self._pool_factory = pool_factory
        self._adapter_factory = adapter_factory
        self._bridge_factory = bridge_factory or self._default_bridge

        self.state = InstanceState.UNINITIALIZED
        self.core_result: CoreBuildResult | None = None
        self.hops: list[HopSpec] = []
        self.planned: dict[int, PlannedHop] = {}
        self.handles: dict[int, BackendHandle] = {}
        self.plugins: dict[str, ResolvedPlugin] = {}
        self.scratch = ScratchFiles(settings.scratch_dir)

        self._core: ProxyCore | None = None
        self._pool: ProcessSupervisor | None = None
        self._bridge: BrowserForwarderBridge | None = None
        self._closed = False
        self._closed_lock = threading.Lock()
        self._released: set[int] = set()
        self._released_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        with self._closed_lock:
            return self._closed

    def __enter__(self) -> ProxyInstance:
        return self

    def __exit__(self, *_: object) -> None:
        self.destroy()

    # -- startup ----------------------------------------------------------------

    def init(self) -> None:
        """Build every config without starting anything."""

        self._expect(InstanceState.UNINITIALIZED)
        try:
            self._build_configs()
        except Exception as error:
            self._fail(error)
            raise

    def launch(self) -> None:
        """Start hop backends in traversal order, then the core."""

        self._expect(InstanceState.BACKENDS_CLASSIFIED)
        try:
            self._launch_backends()
            with self._closed_lock:
                if self._closed:
                    raise self._destroyed_during_launch()
                self.state = InstanceState.RUNNING
                self._start_bridge()
        except Exception as error:
            self._fail(error)
            raise
        logger.info("Instance %r running: hops=%d", self.graph.name, len(self.hops))

    def _build_configs(self) -> None:
        try:
            core_result = self._builder.build_core(self.graph, self.settings.instance)
        except InstanceError:
            raise
        except Exception as error:
            raise BuildError(f"Could not build core config for {self.graph.name!r}: {error}") from error
        self.core_result = core_result
        self.hops = walk_topology(core_result.index, enable_mux=self.settings.instance.enable_mux)
        self.state = InstanceState.CONFIG_BUILT

        for plan in classify_hops(self.hops, self.settings):
            hop, strategy = plan.hop, plan.strategy
            if strategy.plugin is not None:
                try:
                    plan.plugin = self.resolve_plugin(strategy.plugin)
                except PluginResolutionError as error:
                    if error.port is None:
                        error.port = hop.port
                    raise
            if strategy.writes_config:
                plan.config = self._build_hop_config(hop)
            self.planned[hop.port] = plan
            logger.debug("Planned %s -> %s", hop.label, strategy.name)

        self._core = self._core_factory()
        try:
            self._core.load_config(core_result.config)
        except Exception as error:
            raise BuildError(f"Core rejected config for {self.graph.name!r}: {error}") from error
        self.state = InstanceState.BACKENDS_CLASSIFIED

    def _build_hop_config(self, hop: HopSpec) -> str:
        try:
            return self._builder.build_hop(
                hop.profile,
                hop.port,
                mux=hop.mux,
                scratch=self.scratch,
                settings=self.settings.instance,
            )
        except InstanceError:
            raise
        except Exception as error:
            raise BuildError(
                f"Could not build config for {hop.label}: {error}",
                port=hop.port,
                kind=hop.profile.kind.value,
            ) from error

    def resolve_plugin(self, name: str) -> ResolvedPlugin:
        """Resolve a plugin once per instance; later calls reuse the result."""

        cached = self.plugins.get(name)
        if cached is not None:
            return cached
        resolved = self._resolver.resolve(name)
        self.plugins[name] = resolved
        logger.debug("Resolved plugin %s -> %s", name, resolved.path)
        return resolved

    def _launch_backends(self) -> None:
        self.state = InstanceState.LAUNCHING
        core = self._core
        if core is None:
            raise BuildError("Core config was never loaded")
        pool = self._pool = self._pool_factory()
        for hop in self.hops:
            if self.closed:
                raise self._destroyed_during_launch()
            plan = self.planned[hop.port]
            backend = plan.strategy.backend
            if backend == BackendKind.CORE:
                self.handles[hop.port] = CoreManagedHandle(port=hop.port)
            elif backend == BackendKind.PROCESS:
                self._launch_process(plan, pool)
            else:
                self._launch_adapter(plan)

        if self.closed:
            raise self._destroyed_during_launch()
        try:
            core.start()
        except InstanceError:
            raise
        except Exception as error:
            raise SpawnError(f"Core failed to start: {error}", transient=False) from error

    def _launch_process(self, plan: PlannedHop, pool: ProcessSupervisor) -> None:
        hop, strategy, plugin = plan.hop, plan.strategy, plan.plugin
        if plugin is None:
            raise PluginResolutionError(
                f"No plugin resolved for {hop.label}",
                plugin=strategy.name,
                port=hop.port,
            )

        files: list[Path] = []
        config_path = None
        if strategy.config_prefix is not None:
            config_path = self.scratch.write(
                strategy.config_prefix,
                strategy.config_suffix or "conf",
                plan.config or "",
            )
            files.append(config_path)
        args = build_command(
            strategy,
            hop,
            binary=plugin.path,
            config_path=config_path,
            settings=self.settings.instance,
        )
        try:
            process = pool.start(args)
        except SpawnError as error:
            error.port, error.kind = hop.port, hop.profile.kind.value
            raise
        self.handles[hop.port] = ExternalProcessHandle(
            port=hop.port,
            process=process,
            files=tuple(files),
        )
        logger.info("Started %s for %s", strategy.name, hop.label)

    def _launch_adapter(self, plan: PlannedHop) -> None:
        hop, strategy = plan.hop, plan.strategy
        if strategy.adapter is None:
            raise ConfigurationError(f"No adapter registered for {hop.label}", port=hop.port)
        context = AdapterContext(
            resolve_plugin=self.resolve_plugin,
            scratch_dir=self.settings.scratch_dir,
            settings=self.settings.instance,
        )
        try:
            adapter = self._adapter_factory(strategy.adapter, hop.profile.bean, hop.port, context)
            self.handles[hop.port] = AdapterHandle(port=hop.port, adapter=adapter)
            adapter.launch()
        except PluginResolutionError as error:
            error.port = hop.port
            raise
        except Exception as error:
            raise AdapterLaunchError(
                f"Adapter {strategy.adapter!r} failed for {hop.label}: {error}",
                port=hop.port,
                kind=hop.profile.kind.value,
            ) from error
        logger.info("Launched %s adapter for %s", strategy.adapter, hop.label)

    def _start_bridge(self) -> None:
        core_result = self.core_result
        if core_result is None or not core_result.require_ws:
            return
        try:
            self._bridge = self._bridge_factory(core_result.ws_port)
            self._bridge.start()
        except Exception:  # noqa: BLE001
            logger.warning("Browser forwarder bridge did not start", exc_info=True)

    def _fail(self, error: Exception) -> None:
        self.state = InstanceState.FAILED
        logger.error("Instance %r failed: %s", self.graph.name, error)
        if not self._teardown():
            # destroy() already ran on another thread; release what launch created since
            self._release_launched()

    def _destroyed_during_launch(self) -> InstanceError:
        return InstanceError(f"Instance {self.graph.name!r} was destroyed during launch")

    def _expect(self, state: InstanceState) -> None:
        if self.closed:
            raise RuntimeError(f"Instance {self.graph.name!r} is already destroyed")
        if self.state != state:
            raise RuntimeError(
                f"Instance {self.graph.name!r} is {self.state.value}, expected {state.value}",
            )

    # -- teardown ---------------------------------------------------------------

    def destroy(self) -> None:
        """Release everything this instance owns. Safe to call more than once."""

        self._teardown()

    def _teardown(self) -> bool:
        with self._closed_lock:
            if self._closed:
                return False
            self._closed = True
            bridge = self._bridge

        self._best_effort("stop adapters", self._destroy_adapters)
        self._best_effort("delete scratch files", self.scratch.cleanup)
        if bridge is not None:
            self._best_effort("stop browser forwarder", bridge.stop)
        if self._pool is not None:
            self._best_effort("close process pool", self._pool.close)
        if self._core is not None:
            self._best_effort("close core", self._core.close)

        if self.state != InstanceState.FAILED:
            self.state = InstanceState.DESTROYED
        logger.info("Instance %r destroyed", self.graph.name)
        return True

    def _release_launched(self) -> None:
        self._best_effort("stop adapters", self._destroy_adapters)
        self._best_effort("delete scratch files", self.scratch.cleanup)
        if self._pool is not None:
            self._best_effort("close process pool", self._pool.close)

    def _destroy_adapters(self) -> None:
        for handle in list(self.handles.values()):
            if not isinstance(handle, AdapterHandle):
                continue
            with self._released_lock:
                if handle.port in self._released:
                    continue
                self._released.add(handle.port)
            self._best_effort(f"destroy adapter on port {handle.port}", handle.adapter.destroy)

    def _best_effort(self, step: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception:  # noqa: BLE001
            logger.warning("Teardown step failed: %s", step, exc_info=True)

    def _default_core(self) -> ProxyCore:
        binary = self.settings.plugins.core_binary
        found = shutil.which(binary)
        return V2RayProcessCore(Path(found or binary), self.settings.scratch_dir)

    def _default_bridge(self, port: int) -> BrowserForwarderBridge:
        return BrowserForwarderBridge(port, self.settings.bridge)
