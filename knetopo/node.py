"""Base node implementation and the vendor registry."""

from __future__ import annotations

import enum
import logging
import os
import re
import tempfile
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .kube import (
    ConfigMap,
    Container,
    MeshnetLink,
    MeshnetTopology,
    Pod,
    Service,
    ServicePort,
    Volume,
    VolumeMount,
)
from .model import BoundedInteger, Config, Node, Vendor

log = logging.getLogger(__name__)

CONFIG_VOLUME_NAME = "startup-config-volume"
ONDATRA_ROLE_LABEL = "ondatra-role"
ONDATRA_ROLE_DUT = "DUT"
ONDATRA_ROLE_ATE = "ATE"
DEFAULT_INIT_CONTAINER_IMAGE = (
    "us-west1-docker.pkg.dev/kne-external/kne/networkop/init-wait:ga"
)
TEMP_CONFIG_DIR = "/tmp/kne"

_MAX_CONFIG_MAP_SIZE = 1048576 * 3
_MAX_INT64 = 2**63 - 1
_QUANTITY_RE = re.compile(
    r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+|[KMGTPE]i|[numkMGTPE])?"
)


class Status(str, enum.Enum):
    """Lifecycle state of a node."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    def __str__(self) -> str:
        return self.value


class UnimplementedError(Exception):
    """A node does not support the requested operation."""


@runtime_checkable
class Certer(Protocol):
    def generate_self_signed(self) -> None: ...


@runtime_checkable
class ConfigPusher(Protocol):
    def config_push(self, data: Any) -> None: ...


@runtime_checkable
class Resetter(Protocol):
    def reset_cfg(self) -> None: ...


NodeFactory = Callable[["NodeImpl"], Any]

_registry_lock = threading.Lock()
_vendor_types: dict[Vendor, NodeFactory] = {}


def register_vendor(vendor: Vendor | int, factory: NodeFactory) -> None:
    """Register the factory that builds nodes of ``vendor``."""
    key = Vendor(vendor)
    with _registry_lock:
        if key in _vendor_types:
            raise ValueError(f"duplicate registration for vendor {key}")
        _vendor_types[key] = factory


def sysctl_to_proc_path(name: str) -> str:
    """Map a dotted sysctl name to its path under /proc/sys."""
    return "/proc/sys/" + "/".join(name.split("."))


def kernel_constraint_value(name: str) -> int:
    """Read the current integer value of a kernel parameter."""
    data = Path(sysctl_to_proc_path(name)).read_text()
    try:
        return int(data.strip())
    except ValueError as exc:
        raise ValueError(
            f"failed to convert kernel constraint data: {data} error: {exc}"
        ) from exc


def validate_bounded_integer(constraint: BoundedInteger, value: int) -> None:
    """Check that ``value`` lies within the bounds; an unset maximum means no limit."""
    if constraint.max_value == 0:
        constraint.max_value = _MAX_INT64
    if constraint.min_value > constraint.max_value:
        raise ValueError(
            f"invalid bounds. Max value {constraint.max_value} is less than "
            f"min value {constraint.min_value}"
        )
    if not constraint.min_value <= value <= constraint.max_value:
        raise ValueError(
            f"invalid bounded integer constraint. min: {constraint.min_value} "
            f"max {constraint.max_value} constraint data {value}"
        )


def to_env_vars(kv: Mapping[str, str]) -> list[tuple[str, str]]:
    """Turn a mapping into container environment entries."""
    return list(kv.items())


def to_resource_requirements(kv: Mapping[str, str]) -> dict[str, str]:
    """Pick the cpu and memory requests out of a constraint mapping."""
    requests: dict[str, str] = {}
    for key in ("cpu", "memory"):
        if key in kv:
            value = kv[key]
            if not _QUANTITY_RE.fullmatch(value):
                raise ValueError(f"invalid quantity {value!r} for {key}")
            requests[key] = value
    return requests


@dataclass
class NodeImpl:
    """A topology node backed by a single pod and its service in a cluster."""

    namespace: str = ""
    kube_client: Any = None
    rest_config: Any = None
    proto: Node | None = None
    base_path: str = ""
    kubecfg: str = ""
    temp_config_dir: str = TEMP_CONFIG_DIR
    constraint_reader: Callable[[str], int] = field(default=kernel_constraint_value)

    @property
    def name(self) -> str:
        return self.proto.name

    @property
    def _config(self) -> Config:
        return self.proto.config if self.proto.config is not None else Config()

    def __str__(self) -> str:
        pb = self.proto
        return f'"{pb.name}" (vendor: "{pb.vendor}", model: "{pb.model}")'

    def topology_specs(self) -> list[MeshnetTopology]:
        """Meshnet resources for this node: one topology holding all its links."""
        links = []
        for ifc_name, ifc in self.proto.interfaces.items():
            if not ifc.peer_int_name:
                raise ValueError(f'interface "{ifc_name}" PeerIntName cannot be empty')
            if not ifc.peer_name:
                raise ValueError(f'interface "{ifc_name}" PeerName cannot be empty')
            links.append(
                MeshnetLink(
                    uid=ifc.uid,
                    local_intf=ifc_name,
                    peer_intf=ifc.peer_int_name,
                    peer_pod=ifc.peer_name,
                )
            )
        return [MeshnetTopology(name=self.proto.name, links=links)]

    def create(self) -> None:
        """Create the node's pod, config and service in the cluster."""
        try:
            self.validate_constraints()
        except Exception as exc:
            raise RuntimeError(
                f"node {self.name} failed to validate node with errors: {exc}"
            ) from exc
        try:
            self.create_pod()
        except Exception as exc:
            raise RuntimeError(f"node {self.name} failed to create pod {exc}") from exc
        try:
            self.create_service()
        except Exception as exc:
            raise RuntimeError(
                f"node {self.name} failed to create service {exc}"
            ) from exc

    def validate_constraints(self) -> None:
        """Check the host constraints of the node against the running host."""
        errors: list[Exception] = []
        for hc in self.proto.host_constraints:
            kc = hc.kernel_constraint
            if kc is None:
                return
            log.info("Validating %s constraint for node %s", kc.name, self)
            try:
                value = self.constraint_reader(kc.name)
            except Exception as exc:
                errors.append(exc)
                continue
            if kc.bounded_integer is not None:
                try:
                    validate_bounded_integer(kc.bounded_integer, value)
                except ValueError as exc:
                    errors.append(
                        ValueError(f"failed to validate kernel constraint error: {exc}")
                    )
        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise ValueError(", ".join(str(e) for e in errors))

    def _read_config(self) -> bytes | None:
        cfg = self.proto.config
        if cfg is None:
            return None
        if cfg.file:
            return Path(os.path.join(self.base_path, cfg.file)).read_bytes()
        return cfg.data

    def create_config(self) -> Volume | None:
        """Store the boot config and return the volume that carries it.

        Configs under 3MB go into a config map; larger ones are written to a
        read-only file used as a host path. No config gives ``None``.
        """
        data = self._read_config()
        if not data:
            return None
        pb = self.proto
        if len(data) < _MAX_CONFIG_MAP_SIZE:
            name = f"{pb.name}-config"
            cm = ConfigMap(
                name=name,
                data={pb.config.config_file: data.decode("utf-8", errors="replace")},
            )
            created = self.kube_client.create("configmaps", self.namespace, cm)
            log.debug("Created config ConfigMap: %s", created)
            return Volume(name=CONFIG_VOLUME_NAME, config_map=name)
        os.makedirs(self.temp_config_dir, exist_ok=True)
        fd, path = tempfile.mkstemp(
            prefix=f"kne-{pb.name}-config-", suffix=".cfg", dir=self.temp_config_dir
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(path, 0o444)
        except OSError:
            os.remove(path)
            raise
        log.debug("Created config file %s", path)
        return Volume(name=CONFIG_VOLUME_NAME, host_path=path)

    def create_pod(self) -> None:
        """Create the pod for the node."""
        pb = self.proto
        cfg = self._config
        log.info("Creating Pod: %s", pb)
        pod = Pod(
            name=pb.name,
            labels={"app": pb.name, "topo": self.namespace},
            init_containers=[
                Container(
                    name=f"init-{pb.name}",
                    image=cfg.init_image or DEFAULT_INIT_CONTAINER_IMAGE,
                    args=[str(len(pb.interfaces) + 1), str(cfg.sleep)],
                    image_pull_policy="IfNotPresent",
                )
            ],
            containers=[
                Container(
                    name=pb.name,
                    image=cfg.image,
                    command=list(cfg.command),
                    args=list(cfg.args),
                    env=to_env_vars(cfg.env),
                    resources=to_resource_requirements(pb.constraints),
                    image_pull_policy="IfNotPresent",
                    privileged=True,
                )
            ],
            termination_grace_period_seconds=0,
            affinity={
                "podAntiAffinity": {
                    "preferredDuringSchedulingIgnoredDuringExecution": [
                        {
                            "weight": 100,
                            "podAffinityTerm": {
                                "labelSelector": {
                                    "matchExpressions": [
                                        {
                                            "key": "topo",
                                            "operator": "In",
                                            "values": [pb.name],
                                        }
                                    ]
                                },
                                "topologyKey": "kubernetes.io/hostname",
                            },
                        }
                    ]
                }
            },
        )
        if cfg.file or cfg.data is not None:
            vol = self.create_config()
            if vol is not None:
                pod.volumes.append(vol)
                mount = VolumeMount(
                    name=CONFIG_VOLUME_NAME,
                    mount_path=f"{cfg.config_path}/{cfg.config_file}",
                    read_only=True,
                    sub_path=cfg.config_file if vol.config_map is not None else "",
                )
                for container in pod.containers:
                    container.volume_mounts.append(mount)
        created = self.kube_client.create("pods", self.namespace, pod)
        log.debug("Pod created: %s", created)

    def create_service(self) -> None:
        """Create the load-balancer service exposing the node's ports."""
        if not self.proto.services:
            log.info("no services found")
            return
        ports = []
        for key, svc in self.proto.services.items():
            if svc.outside:
                log.warning(
                    "Outside should not be set by user. "
                    "The key is used as the target external port"
                )
            ports.append(
                ServicePort(
                    name=svc.name or f"port-{key}",
                    protocol="TCP",
                    port=svc.outside or key,
                    target_port=svc.inside,
                    node_port=svc.node_port,
                )
            )
        service = Service(
            name=f"service-{self.name}",
            labels={"pod": self.name},
            ports=ports,
            selector={"app": self.name},
            type="LoadBalancer",
        )
        created = self.kube_client.create("services", self.namespace, service)
        log.debug("Created Service: %s", created)

    def delete(self) -> None:
        """Remove the node from the cluster, logging what could not be removed."""
        try:
            self.delete_service()
        except Exception as exc:
            log.warning("Error deleting service %r: %s", self.name, exc)
        try:
            self.delete_resource()
        except Exception as exc:
            log.warning("Error deleting resource %r: %s", self.name, exc)

    def delete_config(self) -> None:
        """Remove the boot config: its config map or its host-path file."""
        pod = self.kube_client.get("pods", self.namespace, self.name)
        for vol in pod.volumes:
            if vol.name != CONFIG_VOLUME_NAME:
                continue
            if vol.host_path is not None:
                os.remove(vol.host_path)
                log.debug("Deleted config file %s", vol.host_path)
            elif vol.config_map is not None:
                self.kube_client.delete("configmaps", self.namespace, vol.config_map)
                log.debug("Deleted config map %s", vol.config_map)

    def delete_service(self) -> None:
        self.kube_client.delete("services", self.namespace, f"service-{self.name}")

    def delete_resource(self) -> None:
        log.info("Deleting Resource for Pod:%s", self.name)
        self.delete_config()
        self.kube_client.delete("pods", self.namespace, self.name)

    def status(self) -> Status:
        """Current state of the node, derived from its pod."""
        pods = self.pods()
        if len(pods) != 1:
            raise ValueError(f"expected exactly one pod for node {self.name}")
        pod_status = pods[0].status
        if pod_status.phase == "Failed":
            return Status.FAILED
        if pod_status.phase == "Running" and any(
            c.type == "Ready" and c.status == "True" for c in pod_status.conditions
        ):
            return Status.RUNNING
        return Status.PENDING

    def pods(self) -> list[Pod]:
        return [self.kube_client.get("pods", self.namespace, self.name)]

    def services(self) -> list[Service]:
        return [self.kube_client.get("services", self.namespace, f"service-{self.name}")]

    def cli_open_args(self, bin: str, cli_cmd: list[str]) -> list[str]:
        """Command line that opens ``cli_cmd`` in the node's container through ``bin``."""
        args = [bin]
        if self.kubecfg:
            args.append(f"--kubeconfig={self.kubecfg}")
        args += ["exec", "-it", "-n", self.namespace, self.name, "--"]
        args += cli_cmd
        return args


def new_node(
    namespace: str,
    proto: Node | None,
    kube_client: Any,
    rest_config: Any,
    base_path: str,
    kubecfg: str,
) -> Any:
    """Build the node for ``proto`` with the factory registered for its vendor."""
    if proto is None:
        raise ValueError("node implementation proto cannot be nil")
    impl = NodeImpl(
        namespace=namespace,
        kube_client=kube_client,
        rest_config=rest_config,
        proto=proto,
        base_path=base_path,
        kubecfg=kubecfg,
    )
    with _registry_lock:
        factory = _vendor_types.get(proto.vendor)
    if factory is None:
        raise LookupError(f"node implementation not found for vendor {proto.vendor}")
    return factory(impl)