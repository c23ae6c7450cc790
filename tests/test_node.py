import os

import pytest

from knetopo.kube import (
    AlreadyExistsError,
    ConfigMap,
    InMemoryCluster,
    MeshnetLink,
    MeshnetTopology,
    NotFoundError,
    Pod,
    PodCondition,
    PodStatus,
    Service,
    ServicePort,
    Volume,
)
from knetopo.model import (
    BoundedInteger,
    Config,
    HostConstraint,
    Interface,
    KernelParam,
    Node,
    Vendor,
)
from knetopo.model import Service as ServiceSpec
from knetopo.node import (
    CONFIG_VOLUME_NAME,
    DEFAULT_INIT_CONTAINER_IMAGE,
    NodeImpl,
    Resetter,
    Status,
    kernel_constraint_value,
    new_node,
    register_vendor,
    sysctl_to_proc_path,
    to_env_vars,
    to_resource_requirements,
    validate_bounded_integer,
)


class _NotResettable:
    def __init__(self, impl):
        self.impl = impl


class _Resettable(_NotResettable):
    def reset_cfg(self):
        return None


register_vendor(Vendor(2001), _Resettable)
register_vendor(Vendor(2002), _NotResettable)


def test_reset():
    n = new_node("test", Node(vendor=Vendor(2001)), None, None, "", "")
    assert isinstance(n, Resetter)
    assert n.impl.namespace == "test"
    nr = new_node("test", Node(vendor=Vendor(2002)), None, None, "", "")
    assert not isinstance(nr, Resetter)


def test_duplicate_registration():
    register_vendor(Vendor(2003), _NotResettable)
    with pytest.raises(ValueError, match="duplicate registration"):
        register_vendor(Vendor(2003), _Resettable)


def test_new_node_unknown_vendor():
    with pytest.raises(LookupError, match="node implementation not found for vendor"):
        new_node("test", Node(vendor=Vendor(2999)), None, None, "", "")


def test_new_node_nil_proto():
    with pytest.raises(ValueError, match="proto cannot be nil"):
        new_node("test", None, None, None, "", "")


def _impl(node, cluster=None, **kwargs):
    return NodeImpl(
        namespace="test",
        kube_client=cluster if cluster is not None else InMemoryCluster(),
        proto=node,
        **kwargs,
    )


def test_create_config_small_from_file(tmp_path):
    (tmp_path / "small.cfg").write_text("test config\n")
    node = Node(name="dev1", config=Config(config_file="test.cfg", file="small.cfg"))
    n = _impl(node, base_path=str(tmp_path), temp_config_dir=str(tmp_path / "tmp"))
    vol = n.create_config()
    assert vol == Volume(name=CONFIG_VOLUME_NAME, config_map="dev1-config")
    cm = n.kube_client.get("configmaps", "test", "dev1-config")
    assert cm == ConfigMap(
        name="dev1-config", namespace="test", data={"test.cfg": "test config\n"}
    )


def test_create_config_small_from_data(tmp_path):
    node = Node(
        name="dev1", config=Config(config_file="test.cfg", data=b"test config\n")
    )
    n = _impl(node, temp_config_dir=str(tmp_path))
    vol = n.create_config()
    assert vol == Volume(name=CONFIG_VOLUME_NAME, config_map="dev1-config")
    cm = n.kube_client.get("configmaps", "test", "dev1-config")
    assert cm.data == {"test.cfg": "test config\n"}


def test_create_config_large_from_file(tmp_path):
    content = b"x" * (3 * 1048576)
    (tmp_path / "large.cfg").write_bytes(content)
    tmpdir = tmp_path / "kne"
    node = Node(name="dev1", config=Config(config_file="test.cfg", file="large.cfg"))
    n = _impl(node, base_path=str(tmp_path), temp_config_dir=str(tmpdir))
    vol = n.create_config()
    assert vol.name == CONFIG_VOLUME_NAME
    assert vol.config_map is None
    assert os.path.dirname(vol.host_path) == str(tmpdir)
    base = os.path.basename(vol.host_path)
    assert base.startswith("kne-dev1-config-") and base.endswith(".cfg")
    with open(vol.host_path, "rb") as f:
        assert f.read() == content
    assert n.kube_client.list("configmaps", "test") == []


def test_create_config_missing_file(tmp_path):
    node = Node(name="dev1", config=Config(config_file="test.cfg", file="dne.cfg"))
    n = _impl(node, base_path=str(tmp_path))
    with pytest.raises(FileNotFoundError):
        n.create_config()


def test_create_config_none():
    n = _impl(Node(name="dev1"))
    assert n.create_config() is None


def test_service_none():
    n = _impl(Node(name="dev1", vendor=Vendor(2001)))
    n.create_service()
    with pytest.raises(NotFoundError, match='"service-dev1" not found'):
        n.services()


def test_service_valid():
    node = Node(name="dev1", services={22: ServiceSpec(name="ssh", inside=22)})
    n = _impl(node)
    n.create_service()
    assert n.services() == [
        Service(
            name="service-dev1",
            namespace="test",
            labels={"pod": "dev1"},
            ports=[ServicePort(name="ssh", protocol="TCP", port=22, target_port=22)],
            selector={"app": "dev1"},
            type="LoadBalancer",
        )
    ]


def test_service_multiple_mappings():
    node = Node(
        name="dev2",
        services={
            9339: ServiceSpec(name="gnmi", inside=9339),
            9337: ServiceSpec(name="gnoi", inside=9339),
        },
    )
    n = _impl(node)
    n.create_service()
    [got] = n.services()
    assert sorted(got.ports, key=lambda p: p.name) == [
        ServicePort(name="gnmi", protocol="TCP", port=9339, target_port=9339),
        ServicePort(name="gnoi", protocol="TCP", port=9337, target_port=9339),
    ]
    assert got.selector == {"app": "dev2"}
    assert got.type == "LoadBalancer"


def test_service_default_name_and_outside():
    node = Node(name="dev1", services={80: ServiceSpec(inside=8080, outside=81)})
    n = _impl(node)
    n.create_service()
    [got] = n.services()
    assert got.ports == [ServicePort(name="port-80", port=81, target_port=8080)]


def test_service_duplicate():
    cluster = InMemoryCluster([Service(name="service-dev1", namespace="test")])
    node = Node(name="dev1", services={22: ServiceSpec(name="ssh", inside=22)})
    n = _impl(node, cluster)
    with pytest.raises(AlreadyExistsError, match='"service-dev1" already exists'):
        n.create_service()


def _constraint_node(min_value, max_value):
    return Node(
        name="node1",
        host_constraints=[
            HostConstraint(
                kernel_constraint=KernelParam(
                    name="fs.inotify.max_user_instances",
                    bounded_integer=BoundedInteger(
                        min_value=min_value, max_value=max_value
                    ),
                )
            )
        ],
    )


@pytest.mark.parametrize(
    "min_value,max_value,value,want",
    [
        (
            0,
            1000,
            1500,
            "failed to validate kernel constraint error: invalid bounded integer "
            "constraint. min: 0 max 1000 constraint data 1500",
        ),
        (
            10,
            100,
            5,
            "failed to validate kernel constraint error: invalid bounded integer "
            "constraint. min: 10 max 100 constraint data 5",
        ),
        (
            10,
            1,
            5,
            "failed to validate kernel constraint error: invalid bounds. "
            "Max value 1 is less than min value 10",
        ),
    ],
)
def test_validate_constraints_invalid(min_value, max_value, value, want):
    values = {"fs.inotify.max_user_instances": value}
    n = NodeImpl(
        proto=_constraint_node(min_value, max_value), constraint_reader=values.__getitem__
    )
    with pytest.raises(ValueError) as exc:
        n.validate_constraints()
    assert want in str(exc.value)


def test_validate_constraints_valid():
    seen = []

    def reader(name):
        seen.append(name)
        return 500

    n = NodeImpl(proto=_constraint_node(1, 1000), constraint_reader=reader)
    assert n.validate_constraints() is None
    assert seen == ["fs.inotify.max_user_instances"]


def test_validate_constraints_reader_error():
    def reader(name):
        raise OSError("cannot read")

    n = NodeImpl(proto=_constraint_node(1, 1000), constraint_reader=reader)
    with pytest.raises(OSError, match="cannot read"):
        n.validate_constraints()


def test_validate_bounded_integer_defaults_max():
    bound = BoundedInteger(min_value=5)
    validate_bounded_integer(bound, 10**12)
    assert bound.max_value == 2**63 - 1


def test_sysctl_to_proc_path():
    assert (
        sysctl_to_proc_path("fs.inotify.max_user_instances")
        == "/proc/sys/fs/inotify/max_user_instances"
    )
    assert sysctl_to_proc_path("kernel") == "/proc/sys/kernel"


def test_kernel_constraint_value_missing():
    with pytest.raises(OSError):
        kernel_constraint_value("no.such.kernel.parameter.anywhere")


def test_to_env_vars_and_resources():
    assert to_env_vars({"A": "1", "B": "2"}) == [("A", "1"), ("B", "2")]
    assert to_resource_requirements({"cpu": "0.5", "memory": "1Gi", "x": "y"}) == {
        "cpu": "0.5",
        "memory": "1Gi",
    }
    with pytest.raises(ValueError):
        to_resource_requirements({"cpu": "lots"})


def test_topology_specs():
    node = Node(
        name="r1",
        interfaces={
            "eth1": Interface(int_name="eth1", peer_name="r2", peer_int_name="eth2", uid=3)
        },
    )
    assert _impl(node).topology_specs() == [
        MeshnetTopology(
            name="r1",
            links=[MeshnetLink(uid=3, local_intf="eth1", peer_intf="eth2", peer_pod="r2")],
        )
    ]


def test_topology_specs_missing_peer():
    node = Node(name="r1", interfaces={"eth1": Interface(peer_int_name="eth2")})
    with pytest.raises(ValueError, match="PeerName"):
        _impl(node).topology_specs()


def test_create_pod_with_config_and_delete():
    node = Node(
        name="r1",
        interfaces={"eth1": Interface()},
        constraints={"cpu": "1"},
        config=Config(
            image="img:1",
            config_path="/etc",
            config_file="boot.cfg",
            data=b"hostname r1\n",
            sleep=3,
        ),
    )
    n = _impl(node)
    n.create_pod()
    pod = n.kube_client.get("pods", "test", "r1")
    assert pod.labels == {"app": "r1", "topo": "test"}
    assert pod.init_containers[0].image == DEFAULT_INIT_CONTAINER_IMAGE
    assert pod.init_containers[0].args == ["2", "3"]
    [container] = pod.containers
    assert container.image == "img:1"
    assert container.privileged is True
    assert container.resources == {"cpu": "1"}
    [mount] = container.volume_mounts
    assert mount.mount_path == "/etc/boot.cfg"
    assert mount.sub_path == "boot.cfg"
    assert pod.volumes == [Volume(name=CONFIG_VOLUME_NAME, config_map="r1-config")]

    n.delete_resource()
    assert n.kube_client.list("pods", "test") == []
    assert n.kube_client.list("configmaps", "test") == []


def test_create_and_delete():
    node = Node(name="r1", services={22: ServiceSpec(name="ssh", inside=22)})
    n = _impl(node)
    n.create()
    assert [p.name for p in n.pods()] == ["r1"]
    assert n.status() is Status.PENDING
    n.delete()
    assert n.kube_client.list("pods", "test") == []
    assert n.kube_client.list("services", "test") == []


@pytest.mark.parametrize(
    "status,want",
    [
        (PodStatus(phase="Failed"), Status.FAILED),
        (
            PodStatus(phase="Running", conditions=[PodCondition("Ready", "True")]),
            Status.RUNNING,
        ),
        (PodStatus(phase="Running"), Status.PENDING),
        (PodStatus(phase="Pending"), Status.PENDING),
    ],
)
def test_status(status, want):
    cluster = InMemoryCluster([Pod(name="r1", namespace="test", status=status)])
    assert _impl(Node(name="r1"), cluster).status() is want


def test_status_no_pod():
    with pytest.raises(NotFoundError):
        _impl(Node(name="r1")).status()


def test_cli_open_args():
    n = _impl(Node(name="r1"), kubecfg="/home/u/.kube/config")
    assert n.cli_open_args("kubectl", ["sr_cli", "-d"]) == [
        "kubectl",
        "--kubeconfig=/home/u/.kube/config",
        "exec",
        "-it",
        "-n",
        "test",
        "r1",
        "--",
        "sr_cli",
        "-d",
    ]
    assert _impl(Node(name="r1")).cli_open_args("kubectl", ["sh"])[1] == "exec"


def test_str():
    n = _impl(Node(name="bad", vendor=Vendor(1002)))
    assert str(n) == '"bad" (vendor: "1002", model: "")'