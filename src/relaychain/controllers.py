"""Controllers for relaychain CLI commands."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from relaychain.config import Settings
from relaychain.fmt import V2RayConfigBuilder
from relaychain.instance.orchestrator import ProxyInstance, classify_hops
from relaychain.instance.registry import LOCALHOST
from relaychain.instance.topology import walk_topology
from relaychain.profiles import ProfileGraph, load_profile_graph

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlanCommand:
    """CLI inputs for plan command."""

    profile_file: Path
    show_config: bool = False


@dataclass(slots=True)
class RunCommand:
    """CLI inputs for run command."""

    profile_file: Path
    scratch_dir: Path | None = None
    duration_seconds: float | None = None


class InstanceCliController:
    """Coordinates instance command execution."""

    def __init__(
        self,
        instance_factory: Callable[[ProfileGraph, Settings], ProxyInstance] = ProxyInstance,
    ) -> None:
        self._instance_factory = instance_factory

    def plan(self, command: PlanCommand) -> list[str]:
        """Describe ports and backends for a profile graph without starting anything."""

        settings = Settings.from_env()
        settings.validate()
        graph = load_profile_graph(command.profile_file)
        result = V2RayConfigBuilder().build_core(graph, settings.instance)
        hops = walk_topology(result.index, enable_mux=settings.instance.enable_mux)
        planned = classify_hops(hops, settings)

        lines = [
            f"Instance plan: name={graph.name} groups={len(graph.groups)} hops={len(hops)}",
        ]
        for group_index in range(len(result.index)):
            lines.append(f"SOCKS inbound: {LOCALHOST}:{settings.instance.socks_port + group_index}")
        for plan in planned:
            hop = plan.hop
            relay = result.relays.get(hop.port)
            lines.append(
                f"- {hop.label} backend={plan.strategy.backend.value} "
                f"via={plan.strategy.name} chain={_flag(hop.need_chain)} mux={_flag(hop.mux)}"
                + (f" relay={relay}" if relay is not None else ""),
            )
        if result.require_ws:
            lines.append(f"Browser forwarder: http://{LOCALHOST}:{result.ws_port}/")
        if command.show_config:
            lines.append(result.to_json())
        return lines

    def run(self, command: RunCommand, stop_event: threading.Event | None = None) -> list[str]:
        """Start an instance and keep it up until interrupted or the duration elapses."""

        settings = Settings.from_env(scratch_dir=command.scratch_dir)
        settings.validate()
        graph = load_profile_graph(command.profile_file)
        stop = stop_event or threading.Event()

        with self._instance_factory(graph, settings) as instance:
            instance.init()
            instance.launch()
            logger.info("Instance %r is up; waiting for shutdown", graph.name)
            try:
                stop.wait(timeout=command.duration_seconds)
            except KeyboardInterrupt:
                logger.info("Interrupted; shutting down")

        return [
            f"Instance stopped: name={graph.name} hops={len(instance.hops)} "
            f"last_state={instance.state.value}",
        ]


def _flag(value: bool) -> str:
    return "yes" if value else "no"
