"""Nokia SR Linux nodes, created through the SR Linux controller resource."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .kube import ConfigMap
from .model import Config, Node, Service, Vendor
from .node import (
    ONDATRA_ROLE_DUT,
    ONDATRA_ROLE_LABEL,
    NodeImpl,
    register_vendor,
)

log = logging.getLogger(__name__)

SCRAPLI_PLATFORM_NAME = "nokia_srl"
# The controller creates a named checkpoint "initial" on node startup, so a
# configuration reset reverts to it.
CONFIG_RESET_CMD = "/tools system configuration checkpoint initial revert"
PUSH_CFG_FILE = "/home/admin/kne-push-config"
SRLINUX_KIND = "srlinuxes"

_CLI_OPTIONS = {"auth_bypass": True, "term_width": 5000}
_REQUIRED_DRIVER_METHODS = (
    "open",
    "close",
    "send_config",
    "send_configs",
    "wait_mgmt_server_ready",
    "add_self_signed_server_tls_profile",
)


class IncompatibleCliConnError(Exception):
    """The CLI connection in use cannot drive an SR Linux node."""


@dataclass
class _SrlinuxCertificate:
    cert_name: str = ""
    key_name: str = ""
    common_name: str = ""
    key_size: int = 0


@dataclass
class _SrlinuxConfig:
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    image: str = ""
    env: dict[str, str] = field(default_factory=dict)
    entry_command: str = ""
    config_path: str = ""
    config_file: str = ""
    config_data_present: bool = False
    cert: _SrlinuxCertificate = field(default_factory=_SrlinuxCertificate)
    sleep: int = 0


@dataclass
class _SrlinuxSpec:
    num_interfaces: int = 0
    config: _SrlinuxConfig = field(default_factory=_SrlinuxConfig)
    constraints: dict[str, str] = field(default_factory=dict)
    model: str = ""
    version: str = ""


@dataclass
class _Srlinux:
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    spec: _SrlinuxSpec = field(default_factory=_SrlinuxSpec)
    kind: str = "Srlinux"
    api_version: str = "kne.srlinux.dev/v1"


def _default_services() -> dict[int, Service]:
    return {
        443: Service(name="ssl", inside=443),
        22: Service(name="ssh", inside=22),
        9337: Service(name="gnoi", inside=57400),
        9339: Service(name="gnmi", inside=57400),
        9340: Service(name="gribi", inside=57401),
        9559: Service(name="p4rt", inside=9559),
    }


def nokia_defaults(pb: Node) -> Node:
    """Fill in the SR Linux defaults that the node does not set itself."""
    if pb.config is None:
        pb.config = Config()
    if not pb.services:
        pb.services = _default_services()
    if pb.labels is None:
        pb.labels = {}
    if not pb.labels.get("vendor"):
        pb.labels["vendor"] = str(Vendor.NOKIA)
    if not pb.labels.get(ONDATRA_ROLE_LABEL):
        pb.labels[ONDATRA_ROLE_LABEL] = ONDATRA_ROLE_DUT
    if not pb.config.image:
        pb.config.image = "ghcr.io/nokia/srlinux:latest"
    # The startup config is named config.json or config.cli after the
    # extension of the file provided.
    if not pb.config.config_file:
        ext = os.path.splitext(pb.config.file)[1]
        if ext != ".json":
            ext = ".cli"
        pb.config.config_file = "config" + ext
    if pb.constraints is None:
        pb.constraints = {}
    if not pb.constraints.get("cpu"):
        pb.constraints["cpu"] = "0.5"
    if not pb.constraints.get("memory"):
        pb.constraints["memory"] = "1Gi"
    return pb


def _read_all(data: Any) -> str:
    if hasattr(data, "read"):
        data = data.read()
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8")
    if isinstance(data, str):
        return data
    raise TypeError(f"cannot read config from {type(data).__name__}")


def _check_response(response: Any) -> None:
    failed = getattr(response, "failed", None)
    if failed is None:
        return
    if isinstance(failed, BaseException):
        raise failed
    raise RuntimeError(str(failed))


@dataclass
class NokiaNode(NodeImpl):
    """An SR Linux node managed by the SR Linux controller.

    ``cli_factory`` is called as ``cli_factory(platform, host, args, options)``
    and returns a CLI driver offering ``open``, ``close``, ``send_config``,
    ``send_configs``, ``wait_mgmt_server_ready`` and
    ``add_self_signed_server_tls_profile``. Responses carry a ``failed``
    attribute that is ``None`` on success.
    """

    controller_client: Any = None
    cli_factory: Callable[..., Any] | None = None
    cli_retry_interval: float = 2.0
    cli_conn: Any = field(default=None, repr=False)

    def _is_config_data_present(self) -> bool:
        cfg = self._config
        return cfg.data is not None or cfg.file != ""

    def _wait_pod_phase(self, phase: str) -> None:
        watcher = self.kube_client.watch("pods", self.namespace)
        try:
            for event in watcher:
                pod = event.object
                if getattr(pod, "name", self.name) not in ("", self.name):
                    continue
                if pod.status.phase == phase:
                    break
        finally:
            stop = getattr(watcher, "stop", None)
            if stop is not None:
                stop()

    def generate_self_signed(self) -> None:
        """Generate a self-signed TLS certificate and a server profile using it."""
        cert = self._config.cert
        self_signed = cert.self_signed if cert is not None else None
        if self_signed is None:
            log.info("%s - no cert config", self.name)
            return
        log.info("%s - generating self signed certs", self.name)
        log.info("%s - waiting for pod to be running", self.name)
        self._wait_pod_phase("Running")
        log.info("%s - pod running.", self.name)
        self.spawn_cli_conn()
        try:
            self.cli_conn.add_self_signed_server_tls_profile(self_signed.cert_name, False)
            log.info("%s - finished cert generation", self.name)
        finally:
            self.cli_conn.close()

    def config_push(self, data: Any) -> None:
        """Write the config to a file on the node, then load and commit it."""
        log.info("%s - pushing config", self.name)
        # Quotes are escaped so the config survives being echoed.
        cfg = _read_all(data).replace('"', '\\"')
        log.debug("config to push:\n%s", cfg)
        self.spawn_cli_conn()
        try:
            echo_cmd = f'echo "{cfg}" > {PUSH_CFG_FILE}'
            resp = self.cli_conn.send_config(echo_cmd, stop_on_failed=True, eager=True)
            if getattr(resp, "failed", None) is not None:
                log.info("%s - failed saving config to file", self.name)
                _check_response(resp)
            mresp = self.cli_conn.send_configs(
                [
                    "baseline update",
                    "discard /",
                    f"source {PUSH_CFG_FILE}",
                    "commit save",
                ],
                stop_on_failed=True,
            )
            if getattr(mresp, "failed", None) is not None:
                log.info("%s - failed config push", self.name)
                _check_response(mresp)
            log.info("%s - finished pushing config", self.name)
        finally:
            self.cli_conn.close()

    def create(self) -> None:
        """Create the SR Linux resource, wait for its pod, then its service."""
        log.info("Creating Srlinux node resource %s", self.name)
        try:
            self.create_config()
        except Exception as exc:
            raise RuntimeError(
                f"node {self.name} failed to create config-map {exc}"
            ) from exc
        log.info("Created SR Linux node %s configmap", self.name)

        pb = self.proto
        cfg = self._config
        self_signed = cfg.cert.self_signed if cfg.cert is not None else None
        cert = (
            _SrlinuxCertificate(
                cert_name=self_signed.cert_name,
                key_name=self_signed.key_name,
                common_name=self_signed.common_name,
                key_size=self_signed.key_size,
            )
            if self_signed is not None
            else _SrlinuxCertificate()
        )
        srl = _Srlinux(
            name=self.name,
            namespace=self.namespace,
            labels={"app": self.name, "topo": self.namespace},
            spec=_SrlinuxSpec(
                num_interfaces=len(pb.interfaces),
                config=_SrlinuxConfig(
                    command=list(cfg.command),
                    args=list(cfg.args),
                    image=cfg.image,
                    env=dict(cfg.env),
                    entry_command=cfg.entry_command,
                    config_path=cfg.config_path,
                    config_file=cfg.config_file,
                    config_data_present=self._is_config_data_present(),
                    cert=cert,
                    sleep=cfg.sleep,
                ),
                constraints=dict(pb.constraints),
                model=pb.model,
                version=pb.version,
            ),
        )
        self.controller_client.create(SRLINUX_KIND, self.namespace, srl)
        self._wait_pod_phase("Pending")
        log.info("Created Srlinux resource: %s", self.name)
        self.create_service()

    def create_config(self) -> None:
        """Store the startup config in a config map; the controller mounts it."""
        pb = self.proto
        cfg = pb.config
        data: bytes | None = None
        if cfg is not None:
            if cfg.file:
                data = Path(os.path.join(self.base_path, cfg.file)).read_bytes()
            elif cfg.data is not None:
                data = cfg.data
        if data is not None:
            cm = ConfigMap(
                name=f"{pb.name}-config",
                data={cfg.config_file: data.decode("utf-8", errors="replace")},
            )
            created = self.kube_client.create("configmaps", self.namespace, cm)
            log.debug("Server Config Map: %s", created)
        return None

    def delete(self) -> None:
        """Remove the SR Linux resource, its service and its config."""
        self.controller_client.delete(SRLINUX_KIND, self.namespace, self.name)
        self.delete_service()
        self.delete_config()
        log.info("Deleted Srlinux node resource %s", self.name)

    def reset_cfg(self) -> None:
        """Revert the node's config to the "initial" checkpoint."""
        log.info("%s resetting config", self.name)
        self.spawn_cli_conn()
        try:
            resp = self.cli_conn.send_config(CONFIG_RESET_CMD)
            _check_response(resp)
            log.info("%s - finished resetting config", self.name)
        finally:
            self.cli_conn.close()

    def spawn_cli_conn(self) -> None:
        """Open a CLI session on the node and wait until it accepts input."""
        if self.cli_factory is None:
            raise IncompatibleCliConnError("no cli connection factory configured")
        args = self.cli_open_args("kubectl", ["sr_cli", "-d"])
        while True:
            driver = self.cli_factory(
                SCRAPLI_PLATFORM_NAME, self.name, args, dict(_CLI_OPTIONS)
            )
            missing = [m for m in _REQUIRED_DRIVER_METHODS if not hasattr(driver, m)]
            if missing:
                raise IncompatibleCliConnError(
                    f"incompatible cli connection in use: missing {', '.join(missing)}"
                )
            try:
                driver.open()
            except Exception as exc:
                log.debug("%s - Cli not ready (%s) - waiting.", self.name, exc)
                time.sleep(self.cli_retry_interval)
                continue
            log.debug("%s - Cli ready.", self.name)
            break
        self.cli_conn = driver
        driver.wait_mgmt_server_ready()


def new_nokia_node(impl: NodeImpl | None) -> NokiaNode:
    """Build an SR Linux node from a base node, applying the vendor defaults."""
    if impl is None:
        raise ValueError("node implementation cannot be None")
    if impl.proto is None:
        raise ValueError("node implementation proto cannot be None")
    impl.proto = nokia_defaults(impl.proto)
    base = {f.name: getattr(impl, f.name) for f in fields(NodeImpl)}
    return NokiaNode(**base, controller_client=impl.kube_client)


register_vendor(Vendor.NOKIA, new_nokia_node)