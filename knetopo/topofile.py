"""Loading topology files and deriving topology-wide views of node state."""

from __future__ import annotations

import enum
from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .model import Service, Topology, parse_text_format, topology_from_dict
from .node import Status

_INGRESS_ATTRS = ("load_balancer_ingress", "ingress", "ingress_ips")


class TopologyState(enum.IntEnum):
    """Overall state of a topology, derived from the states of its nodes."""

    UNSPECIFIED = 0
    CREATING = 1
    RUNNING = 2
    ERROR = 3

    def __str__(self) -> str:
        return f"TOPOLOGY_STATE_{self.name}"


@dataclass
class StateMap:
    """The state of every node of a topology, by node name."""

    states: dict[str, Status] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.states)

    def set_node_state(self, name: str, state: Status) -> None:
        self.states[name] = state

    def topology_state(self) -> TopologyState:
        """Running when all nodes run; error if any failed; creating if any pend."""
        if not self.states:
            return TopologyState.UNSPECIFIED
        values = list(self.states.values())
        if all(s == Status.RUNNING for s in values):
            return TopologyState.RUNNING
        if Status.FAILED in values:
            return TopologyState.ERROR
        if Status.PENDING in values:
            return TopologyState.CREATING
        return TopologyState.UNSPECIFIED


def load(path: str | Path) -> Topology:
    """Load a topology from a YAML file (.yaml, .yml) or a text-format file."""
    path = Path(path)
    raw = path.read_bytes()
    if path.name.endswith((".yaml", ".yml")):
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ValueError(f"could not parse yaml: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(
                f"could not parse json: expected an object, got {type(data).__name__}"
            )
        try:
            return topology_from_dict(data)
        except ValueError as exc:
            raise ValueError(f"could not parse json: {exc}") from exc
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"invalid UTF-8 in {path}") from exc
    return parse_text_format(text)


def _ingress_ips(service: Any) -> list[str]:
    for attr in _INGRESS_ATTRS:
        entries = getattr(service, attr, None)
        if entries is not None:
            return [e if isinstance(e, str) else getattr(e, "ip", "") for e in entries]
    return []


def _int_port(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


def populate_service_map(service: Any, services: MutableMapping[int, Service]) -> None:
    """Fill ``services`` with the addresses and ports of a cluster service.

    Entries are keyed by the external port; missing entries are added, and
    entries without a name take the port's name.
    """
    if service is None or services is None:
        raise ValueError("service and map must not be nil")
    ingress = _ingress_ips(service)
    if not ingress:
        raise ValueError(
            f"service {service.name} has no external loadbalancer configured"
        )
    cluster_ip = getattr(service, "cluster_ip", "")
    for port in service.ports:
        key = port.port
        entry = services.get(key)
        if entry is None:
            entry = Service(name=port.name)
            services[key] = entry
        if not entry.name:
            entry.name = port.name
        entry.outside = key
        entry.inside = _int_port(port.target_port)
        entry.node_port = port.node_port
        entry.inside_ip = cluster_ip
        entry.outside_ip = ingress[0]


def set_link_peer(node_name: str, pod_name: str, link: Any, peer_specs: Iterable[Any]) -> None:
    """Point ``link`` at the pod and interface on the other end of the same link."""
    for peer_spec in peer_specs:
        for peer_link in peer_spec.links:
            # Same link (same UID) but not the very same interface.
            if peer_link.uid == link.uid and not (
                node_name == link.peer_pod and peer_link.local_intf == link.local_intf
            ):
                link.peer_pod = peer_spec.name
                link.peer_intf = peer_link.local_intf
                return
    raise LookupError(
        f"could not find peer for node {node_name} pod {pod_name} link UID {link.uid}"
    )