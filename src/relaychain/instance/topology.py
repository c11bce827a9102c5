"""Flatten a resolved chain/balancer index into an ordered hop sequence."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from relaychain.errors import ConfigurationError
from relaychain.profiles import ProxyProfile


@dataclass(frozen=True, slots=True)
class ChainEntry:
    """One hop of the resolved index, bound to a unique local port."""

    port: int
    profile: ProxyProfile


@dataclass(frozen=True, slots=True)
class ChainGroup:
    """A chain (entries forward to the next) or a balancer group (siblings)."""

    balancer: bool
    entries: tuple[ChainEntry, ...]


@dataclass(frozen=True, slots=True)
class HopSpec:
    """Walker output for one hop."""

    port: int
    profile: ProxyProfile
    need_chain: bool
    mux: bool
    group_index: int
    position: int

    @property
    def label(self) -> str:
        return f"group {self.group_index} hop {self.position} ({self.profile.kind.value}:{self.port})"


def walk_topology(index: Sequence[ChainGroup], *, enable_mux: bool) -> list[HopSpec]:
    """Return hops in deterministic traversal order.

    Inside a chain every entry except the tail needs next-hop chaining.
    Multiplexing is requested for balancer members and chain tails only;
    interior links already carry nested framing.
    """

    hops: list[HopSpec] = []
    seen_ports: dict[int, str] = {}
    for group_index, group in enumerate(index):
        last = len(group.entries) - 1
        for position, entry in enumerate(group.entries):
            need_chain = not group.balancer and position != last
            hop = HopSpec(
                port=entry.port,
                profile=entry.profile,
                need_chain=need_chain,
                mux=enable_mux and (group.balancer or not need_chain),
                group_index=group_index,
                position=position,
            )
            previous = seen_ports.get(entry.port)
            if previous is not None:
                raise ConfigurationError(
                    f"Local port {entry.port} is used by both {previous} and {hop.label}",
                    port=entry.port,
                    kind=entry.profile.kind.value,
                )
            seen_ports[entry.port] = hop.label
            hops.append(hop)
    return hops
