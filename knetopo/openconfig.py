"""OpenConfig nodes: lemming devices and magna traffic generators."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from typing import Any

from .model import CertificateCfg, Config, Node, SelfSignedCertCfg, Service, Vendor
from .node import (
    DEFAULT_INIT_CONTAINER_IMAGE,
    ONDATRA_ROLE_ATE,
    ONDATRA_ROLE_DUT,
    ONDATRA_ROLE_LABEL,
    NodeImpl,
    Status,
    UnimplementedError,
    register_vendor,
    to_env_vars,
    to_resource_requirements,
)

log = logging.getLogger(__name__)

# Model name of a magna ATE instance.
MODEL_MAGNA = "MAGNA"
# Model name of a lemming device instance.
MODEL_LEMMING = "LEMMING"
LEMMING_KIND = "lemmings"

_MAGNA_COMMAND = [
    "/app/magna",
    "-v=2",
    "-alsologtostderr",
    "-port=40051",
    "-telemetry_port=50051",
    "-certfile=/data/cert.pem",
    "-keyfile=/data/key.pem",
]


class LemmingPhase(str, enum.Enum):
    """Phase reported by a lemming resource."""

    RUNNING = "Running"
    FAILED = "Failed"
    PENDING = "Pending"
    UNKNOWN = "Unknown"


@dataclass
class LemmingSpec:
    """Desired state of a lemming.

    ``ports`` maps a service name to ``(inner_port, outer_port)``; ``tls``
    holds the self-signed certificate's common name and key size.
    """

    image: str = ""
    command: str = ""
    args: list[str] = field(default_factory=list)
    env: list[tuple[str, str]] = field(default_factory=list)
    config_path: str = ""
    config_file: str = ""
    init_image: str = ""
    ports: dict[str, tuple[int, int]] = field(default_factory=dict)
    interface_count: int = 0
    init_sleep: int = 0
    resources: dict[str, str] = field(default_factory=dict)
    tls: SelfSignedCertCfg | None = None


@dataclass
class Lemming:
    """A lemming resource as stored in the cluster."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    spec: LemmingSpec = field(default_factory=LemmingSpec)
    phase: LemmingPhase | str = LemmingPhase.UNKNOWN


def lemming_defaults(pb: Node) -> Node:
    """Fill in the lemming defaults that the node does not set itself."""
    if pb.config is None:
        pb.config = Config()
    cfg = pb.config
    if not cfg.image:
        cfg.image = "us-west1-docker.pkg.dev/openconfig-lemming/release/lemming:ga"
    if not cfg.init_image:
        cfg.init_image = DEFAULT_INIT_CONTAINER_IMAGE
    if not cfg.command:
        cfg.command = ["/lemming/lemming"]
    if not cfg.entry_command:
        cfg.entry_command = f"kubectl exec -it {pb.name} -- /bin/bash"
    if cfg.cert is None:
        cfg.cert = CertificateCfg(
            self_signed=SelfSignedCertCfg(common_name=pb.name, key_size=2048)
        )
    if pb.constraints is None:
        pb.constraints = {}
    if not pb.constraints.get("cpu"):
        pb.constraints["cpu"] = "0.5"
    if not pb.constraints.get("memory"):
        pb.constraints["memory"] = "1Gi"
    if pb.labels is None:
        pb.labels = {}
    if not pb.labels.get("vendor"):
        pb.labels["vendor"] = str(Vendor.OPENCONFIG)
    # A lemming is always a DUT; the user cannot override this.
    pb.labels[ONDATRA_ROLE_LABEL] = ONDATRA_ROLE_DUT
    if not pb.services:
        pb.services = {
            9339: Service(name="gnmi", inside=9339),
            9340: Service(name="gribi", inside=9340),
            9341: Service(name="gnsi", inside=9339),
            9342: Service(name="gnoi", inside=9339),
        }
    return pb


def magna_defaults(pb: Node) -> Node:
    """Fill in the magna defaults that the node does not set itself."""
    if pb.config is None:
        pb.config = Config()
    if pb.services is None:
        pb.services = {}
    cfg = pb.config
    if not cfg.command:
        cfg.command = list(_MAGNA_COMMAND)
    if not cfg.entry_command:
        cfg.entry_command = f"kubectl exec -it {pb.name} -- sh"
    if not cfg.image:
        cfg.image = "magna:latest"
    pb.services.setdefault(40051, Service(name="grpc", inside=40051, outside=40051))
    pb.services.setdefault(50051, Service(name="gnmi", inside=50051, outside=50051))
    if not pb.labels:
        pb.labels = {"vendor": str(Vendor.OPENCONFIG)}
    # Magna nodes are always ATEs; the user cannot override this.
    pb.labels[ONDATRA_ROLE_LABEL] = ONDATRA_ROLE_ATE
    return pb


@dataclass
class OpenConfigNode(NodeImpl):
    """A node of the OpenConfig vendor, either a lemming or a magna.

    ``client_factory`` is called with the rest config and returns the client
    that stores lemming resources; without one the kube client is used.
    """

    client_factory: Callable[[Any], Any] | None = None

    def _lemming_client(self) -> Any:
        if self.client_factory is None:
            return self.kube_client
        return self.client_factory(self.rest_config)

    def create(self) -> None:
        model = self.proto.model
        if model == MODEL_LEMMING:
            self._lemming_create()
        elif model == MODEL_MAGNA:
            # Magna is created as a plain pod, like a host.
            NodeImpl.create(self)
        else:
            raise ValueError("cannot create an instance of an unknown model")

    def _lemming_create(self) -> None:
        pb = self.proto
        cfg = self._config
        log.info("create lemming %r", pb.name)
        if not cfg.command:
            raise ValueError("lemming command must not be empty")
        ports = {svc.name: (svc.inside, key) for key, svc in pb.services.items()}
        tls = None
        if cfg.cert is not None and cfg.cert.self_signed is not None:
            tls = SelfSignedCertCfg(
                common_name=cfg.cert.self_signed.common_name,
                key_size=cfg.cert.self_signed.key_size,
            )
        dut = Lemming(
            name=pb.name,
            namespace=self.namespace,
            labels=dict(pb.labels),
            spec=LemmingSpec(
                image=cfg.image,
                command=cfg.command[0],
                args=list(cfg.args),
                env=to_env_vars(cfg.env),
                config_path=cfg.config_path,
                config_file=cfg.config_file,
                init_image=cfg.init_image,
                ports=ports,
                interface_count=len(pb.interfaces) + 1,
                init_sleep=cfg.sleep,
                resources=to_resource_requirements(pb.constraints),
                tls=tls,
            ),
        )
        try:
            client = self._lemming_client()
        except Exception as exc:
            raise RuntimeError(f"failed to get kubernetes client: {exc}") from exc
        try:
            client.create(LEMMING_KIND, self.namespace, dut)
        except Exception as exc:
            raise RuntimeError(f"failed to create lemming: {exc}") from exc

    def status(self) -> Status:
        model = self.proto.model
        if model == MODEL_MAGNA:
            return NodeImpl.status(self)
        if model == MODEL_LEMMING:
            return self._lemming_status()
        raise ValueError("invalid model specified.")

    def _lemming_status(self) -> Status:
        client = self._lemming_client()
        got = client.get(LEMMING_KIND, self.namespace, self.name)
        phase = got.phase
        if phase == LemmingPhase.RUNNING:
            return Status.RUNNING
        if phase == LemmingPhase.FAILED:
            return Status.FAILED
        if phase == LemmingPhase.PENDING:
            return Status.PENDING
        return Status.UNKNOWN

    def delete(self) -> None:
        model = self.proto.model
        if model == MODEL_MAGNA:
            NodeImpl.delete(self)
        elif model == MODEL_LEMMING:
            self._lemming_delete()
        else:
            raise ValueError("unknown model")

    def _lemming_delete(self) -> None:
        client = self._lemming_client()
        client.delete(LEMMING_KIND, self.namespace, self.name)

    def reset_cfg(self) -> None:
        log.info("ResetCfg is a noop.")

    def config_push(self, data: Any) -> None:
        raise UnimplementedError(
            "config push is not implemented using gNMI to configure device"
        )

    def generate_self_signed(self) -> None:
        raise UnimplementedError("certificate generation is not supported")


def new_openconfig_node(impl: NodeImpl | None) -> OpenConfigNode:
    """Build an OpenConfig node for the model named in the proto, with its defaults."""
    if impl is None:
        raise ValueError("node implementation cannot be None")
    if impl.proto is None:
        raise ValueError("node implementation proto cannot be None")
    model = impl.proto.model
    if model == MODEL_LEMMING:
        impl.proto = lemming_defaults(impl.proto)
    elif model == MODEL_MAGNA:
        impl.proto = magna_defaults(impl.proto)
    else:
        raise ValueError("a model must be specified")
    base = {f.name: getattr(impl, f.name) for f in fields(NodeImpl)}
    return OpenConfigNode(**base)


register_vendor(Vendor.OPENCONFIG, new_openconfig_node)