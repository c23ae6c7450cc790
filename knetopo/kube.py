"""Cluster object model and an in-memory cluster that stores it."""

from __future__ import annotations

import copy
import enum
import threading
from collections import deque
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any


class NotFoundError(LookupError):
    """An object does not exist in the cluster."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" not found')
        self.kind = kind
        self.name = name


class AlreadyExistsError(Exception):
    """An object with the same name already exists in the cluster."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" already exists')
        self.kind = kind
        self.name = name


class EventType(enum.Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    type: EventType
    object: Any


@dataclass
class PodCondition:
    type: str = ""
    status: str = ""


@dataclass
class PodStatus:
    phase: str = ""
    conditions: list[PodCondition] = field(default_factory=list)


@dataclass
class VolumeMount:
    name: str = ""
    mount_path: str = ""
    read_only: bool = False
    sub_path: str = ""


@dataclass
class Container:
    name: str = ""
    image: str = ""
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    env: list[tuple[str, str]] = field(default_factory=list)
    resources: dict[str, str] = field(default_factory=dict)
    image_pull_policy: str = ""
    privileged: bool = False
    volume_mounts: list[VolumeMount] = field(default_factory=list)


@dataclass
class Volume:
    """A pod volume backed by either a config map or a host path."""

    name: str = ""
    config_map: str | None = None
    host_path: str | None = None


@dataclass
class Pod:
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    init_containers: list[Container] = field(default_factory=list)
    containers: list[Container] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    node_selector: dict[str, str] = field(default_factory=dict)
    termination_grace_period_seconds: int | None = None
    affinity: dict[str, Any] = field(default_factory=dict)
    status: PodStatus = field(default_factory=PodStatus)


@dataclass
class ServicePort:
    name: str = ""
    protocol: str = "TCP"
    port: int = 0
    target_port: int = 0
    node_port: int = 0


@dataclass
class Service:
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    ports: list[ServicePort] = field(default_factory=list)
    selector: dict[str, str] = field(default_factory=dict)
    type: str = ""
    cluster_ip: str = ""
    load_balancer_ips: list[str] = field(default_factory=list)


@dataclass
class ConfigMap:
    name: str = ""
    namespace: str = ""
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class Namespace:
    name: str = ""


@dataclass
class MeshnetLink:
    uid: int = 0
    local_intf: str = ""
    peer_intf: str = ""
    peer_pod: str = ""
    local_ip: str = ""
    peer_ip: str = ""


@dataclass
class MeshnetTopology:
    name: str = ""
    namespace: str = ""
    links: list[MeshnetLink] = field(default_factory=list)


_KINDS: dict[type, str] = {
    Pod: "pods",
    Service: "services",
    ConfigMap: "configmaps",
    Namespace: "namespaces",
    MeshnetTopology: "topologies",
}

Reactor = Callable[..., Any]


class _Watch:
    """Iterator over the events seen by one watch; ends when none are pending."""

    def __init__(self, kind: str, namespace: str, events: Iterable[WatchEvent] = ()) -> None:
        self.kind = kind
        self.namespace = namespace
        self._events: deque[WatchEvent] = deque(events)
        self._stopped = False
        self._on_stop: Callable[[_Watch], None] | None = None

    def matches(self, kind: str, namespace: str) -> bool:
        return not self._stopped and self.kind == kind and (
            not self.namespace or self.namespace == namespace
        )

    def push(self, event: WatchEvent) -> None:
        self._events.append(event)

    def __iter__(self) -> Iterator[WatchEvent]:
        return self

    def __next__(self) -> WatchEvent:
        if self._stopped or not self._events:
            raise StopIteration
        return self._events.popleft()

    def stop(self) -> None:
        self._stopped = True
        if self._on_stop is not None:
            self._on_stop(self)


class InMemoryCluster:
    """A cluster kept in memory, addressed by resource kind and namespace.

    ``reactors`` maps ``(verb, kind)`` to a callable that takes over that call:
    ``create`` reactors receive ``(namespace, obj)``, ``get`` and ``delete``
    reactors ``(namespace, name)``, ``list`` and ``watch`` reactors
    ``(namespace)``. A reactor may raise, return a result, or return
    ``NotImplemented`` to let the cluster handle the call itself. A ``watch``
    reactor returns the events the watch yields.
    """

    def __init__(
        self,
        objects: Iterable[Any] = (),
        reactors: Mapping[tuple[str, str], Reactor] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._store: dict[tuple[str, str], dict[str, Any]] = {}
        self._watchers: list[_Watch] = []
        self._reactors = dict(reactors or {})
        for obj in objects:
            kind = _KINDS.get(type(obj))
            if kind is None:
                raise TypeError(f"cannot infer the kind of {type(obj).__name__}")
            bucket = self._store.setdefault((kind, getattr(obj, "namespace", "")), {})
            if obj.name in bucket:
                raise AlreadyExistsError(kind, obj.name)
            bucket[obj.name] = copy.deepcopy(obj)

    def _react(self, verb: str, kind: str, *args: Any) -> Any:
        reactor = self._reactors.get((verb, kind))
        if reactor is None:
            return NotImplemented
        return reactor(*args)

    def _notify(self, kind: str, namespace: str, event_type: EventType, obj: Any) -> None:
        for watcher in self._watchers:
            if watcher.matches(kind, namespace):
                watcher.push(WatchEvent(event_type, copy.deepcopy(obj)))

    def create(self, kind: str, namespace: str, obj: Any) -> Any:
        """Store a copy of ``obj`` and return the stored object."""
        result = self._react("create", kind, namespace, obj)
        if result is not NotImplemented:
            return result
        if not obj.name:
            raise ValueError(f"{kind}: object name must not be empty")
        stored = copy.deepcopy(obj)
        if hasattr(stored, "namespace"):
            stored.namespace = namespace
        with self._lock:
            bucket = self._store.setdefault((kind, namespace), {})
            if stored.name in bucket:
                raise AlreadyExistsError(kind, stored.name)
            bucket[stored.name] = stored
            self._notify(kind, namespace, EventType.ADDED, stored)
        return copy.deepcopy(stored)

    def get(self, kind: str, namespace: str, name: str) -> Any:
        result = self._react("get", kind, namespace, name)
        if result is not NotImplemented:
            return result
        with self._lock:
            obj = self._store.get((kind, namespace), {}).get(name)
            if obj is None:
                raise NotFoundError(kind, name)
            return copy.deepcopy(obj)

    def list(self, kind: str, namespace: str) -> list[Any]:
        """Objects of ``kind`` in ``namespace`` (all namespaces when empty), by name."""
        result = self._react("list", kind, namespace)
        if result is not NotImplemented:
            return result
        with self._lock:
            found = [
                obj
                for (k, ns), bucket in self._store.items()
                if k == kind and (not namespace or ns == namespace)
                for obj in bucket.values()
            ]
        found.sort(key=lambda o: (getattr(o, "namespace", ""), o.name))
        return [copy.deepcopy(obj) for obj in found]

    def delete(self, kind: str, namespace: str, name: str) -> None:
        result = self._react("delete", kind, namespace, name)
        if result is not NotImplemented:
            return
        with self._lock:
            bucket = self._store.get((kind, namespace), {})
            obj = bucket.pop(name, None)
            if obj is None:
                raise NotFoundError(kind, name)
            self._notify(kind, namespace, EventType.DELETED, obj)

    def watch(self, kind: str, namespace: str) -> _Watch:
        """Start a watch; iterating it yields the events recorded so far."""
        events = self._react("watch", kind, namespace)
        if events is not NotImplemented:
            return _Watch(kind, namespace, events)
        watcher = _Watch(kind, namespace)
        watcher._on_stop = self._remove_watcher
        with self._lock:
            self._watchers.append(watcher)
        return watcher

    def _remove_watcher(self, watcher: _Watch) -> None:
        with self._lock:
            if watcher in self._watchers:
                self._watchers.remove(watcher)