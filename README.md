# knetopo

`knetopo` describes a network emulation topology (nodes, links, services) and
builds the cluster resources for its nodes: pods, services, config maps and
meshnet link specs.

## What is in the package

- `knetopo.model`: the topology data model (`Topology`, `Node`, `Link`,
  `Config`, `Service`, `Interface`, `Vendor`, ...) with two decoders:
  `topology_from_dict` for the JSON/YAML form and `parse_text_format` for the
  protocol-buffer text form.
- `knetopo.topofile`:
  - `load(path)` reads a topology from a `.yaml` / `.yml` file, or from a
    text-format file for any other extension.
  - `StateMap` collects node states and gives the overall `TopologyState`
    (`RUNNING` when every node runs, `ERROR` if any failed, `CREATING` if any
    is pending, otherwise `UNSPECIFIED`).
  - `populate_service_map(service, services)` copies ports and addresses of a
    cluster service into a node's service map. The service object needs
    `name`, `ports`, `cluster_ip` and one of the attributes
    `load_balancer_ingress`, `ingress` or `ingress_ips`.
  - `set_link_peer(node_name, pod_name, link, peer_specs)` points a meshnet
    link at the pod and interface at its other end.
- `knetopo.node`: the base node, `NodeImpl`, and the vendor registry
  (`register_vendor`, `new_node`). `NodeImpl` creates and deletes a node's pod,
  boot config and load-balancer service, reports `Status`, checks kernel host
  constraints (`validate_constraints`) and produces meshnet specs
  (`topology_specs`). A boot config under 3 MB goes into a config map; a larger
  one is written to a read-only file under `temp_config_dir` and mounted as a
  host path.
- `knetopo.nokia`: Nokia SR Linux nodes (`NokiaNode`), registered for
  `Vendor.NOKIA` when the module is imported. `nokia_defaults` fills in the
  image, services, labels, startup config name and resource constraints.
  Config push, config reset and certificate generation run over a CLI driver
  that you supply as `cli_factory`.
- `knetopo.openconfig`: OpenConfig nodes (`OpenConfigNode`), registered for
  `Vendor.OPENCONFIG` when the module is imported. Model `LEMMING` is created
  as a `Lemming` resource, model `MAGNA` as a plain pod. `config_push` and
  `generate_self_signed` raise `knetopo.node.UnimplementedError`.
- `knetopo.kube`: the cluster object model and `InMemoryCluster`, an
  in-process cluster with `create`, `get`, `list`, `delete` and `watch`. It
  raises `NotFoundError` and `AlreadyExistsError`, and takes per-call reactors
  to script failures in tests.

## Installation

```
pip install knetopo
```

## Usage

```python
from knetopo import openconfig  # registers the OPENCONFIG vendor
from knetopo.kube import InMemoryCluster
from knetopo.model import Node, Vendor
from knetopo.node import new_node
from knetopo.topofile import StateMap

cluster = InMemoryCluster()
ate = new_node(
    "demo",
    Node(name="ate1", vendor=Vendor.OPENCONFIG, model="MAGNA"),
    cluster, None, "", "",
)
ate.create()              # pod and service stored in the cluster

states = StateMap()
states.set_node_state(ate.name, ate.status())   # PENDING: the pod is not Ready
print(states.topology_state())                  # TOPOLOGY_STATE_CREATING
```

A node's vendor must have a registered factory, so import `knetopo.nokia` or
`knetopo.openconfig` (or call `register_vendor` for your own type) before
`new_node`.

## Topology files

```yaml
name: demo
nodes:
  - name: r1
    vendor: NOKIA
  - name: r2
    vendor: OPENCONFIG
    model: LEMMING
links:
  - a_node: r1
    a_int: e1-1
    z_node: r2
    z_int: eth1
```

Field names may be snake_case or camelCase, vendors may be names or numbers,
bytes fields are base64, and unknown fields are rejected.

## What the package does not do

- There is no topology manager: nothing creates, shows or deletes a whole
  topology in one call, and `load` does not connect the interfaces named in
  `links`. Each node is created and queried on its own.
- There is no client for a real cluster API; `InMemoryCluster` is the only
  cluster provided. Any object with the same `create` / `get` / `list` /
  `delete` / `watch` methods can take its place.
- There is no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```