# vpcipam

`vpcipam` keeps a warm pool of secondary IP addresses for the pods on a
node whose network interfaces (ENIs) live in a VPC. It tracks which
addresses belong to which interface. It hands addresses to pods and takes
them back. It decides when the pool should grow or shrink, and it
reconciles its own view with the ENIs and addresses that the instance
metadata reports.

The package also has a parser for the Prometheus text exposition format
and a small set of in-process counters and gauges that render in that
format.

The package has no third-party runtime dependencies.

## Modules

| Module | Purpose |
| --- | --- |
| `vpcipam.datastore` | `DataStore`: the thread-safe ENI/IP pool and the pod assignments |
| `vpcipam.models` | Pool records (`ENIIPPool`, `AddressInfo`, `PodInfo`, `PodIPInfo`, `ENIInfos`) and the data store errors |
| `vpcipam.cooldown` | `ReconcileCooldownCache`: keeps recently freed IPs out of reconciliation for a while |
| `vpcipam.config` | Settings from environment variables such as `WARM_IP_TARGET`, `WARM_ENI_TARGET`, `MAX_ENI` and `AWS_VPC_K8S_CNI_CUSTOM_NETWORK_CFG` |
| `vpcipam.ipamd` | `IPAMContext`: node initialisation, pool growth, ENI setup, and the ipamd metrics |
| `vpcipam.poolmanager` | `NodeIPPoolManager`: the periodic grow, shrink and reconcile loop |
| `vpcipam.rpc` | `CNIBackend`: answers add-network and delete-network requests |
| `vpcipam.crd` | `ENIConfig` / `ENIConfigSpec`: the custom-networking resource |
| `vpcipam.promstats` | Minimal `Counter`, `Gauge` and `Registry` rendered as Prometheus text |
| `vpcipam.promtext` | `parse_metric_families`: a parser for the Prometheus text format |

## The data store

```python
from vpcipam.datastore import DataStore
from vpcipam.models import DuplicateIPError, PodInfo

store = DataStore()
store.add_eni("eni-1", 1, True)
store.add_eni("eni-2", 2, False)
store.add_ipv4_address("eni-1", "10.0.0.11")
store.add_ipv4_address("eni-2", "10.0.1.11")

try:
    store.add_ipv4_address("eni-1", "10.0.0.11")
except DuplicateIPError:
    pass

info = store.assign_pod_ipv4_address(PodInfo(name="web", namespace="default", container="c1"))
print(info.ip, info.device_number)

total, assigned = store.get_stats()
store.unassign_pod_ipv4_address(PodInfo(name="web", namespace="default", container="c1"))
```

A pod is identified by its name, namespace and container. If the pod
already carries an `ip`, that address is taken back out of the pool. This
is how pods that were running before a restart are recovered. An address
that was unassigned less than 30 seconds ago is not handed to another pod.

`remove_unused_eni(warm_ip_target)` removes and returns an ENI that may be
freed, or `None`. An ENI may be freed only if all of these hold:

- it is not the primary ENI;
- it is at least a minute old;
- none of its addresses was released in the last minute;
- no pod uses any of its addresses;
- the other ENIs still cover the warm IP target.

Errors are raised as subclasses of `vpcipam.models.DataStoreError`:

- `DuplicatedENIError`
- `DuplicateIPError`
- `UnknownIPError`
- `IPInUseError`
- `ENIInUseError`
- `UnknownENIError`
- `UnknownPodError`
- `UnknownPodIPError`
- `PodIPConflictError`
- `NoAvailableIPError`

`get_eni_infos()` returns an `ENIInfos` snapshot. `ENIInfos.to_dict()`
turns it into a JSON-ready dictionary. `get_pod_infos()` returns the pod
assignments keyed by `name_namespace_container`.

When a `Registry` is passed to `DataStore`, three gauges are registered
with it:

- `awscni_eni_allocated`
- `awscni_total_ip_addresses`
- `awscni_assigned_ip_addresses`

## Configuration

Settings are read from the environment each time they are asked for:

```python
from vpcipam import config

config.get_warm_ip_target()      # 0 (no target) when WARM_IP_TARGET is unset, invalid or negative
config.get_warm_eni_target()     # 1 when WARM_ENI_TARGET is unset, invalid or negative
config.resolve_max_eni(8)        # MAX_ENI caps the instance limit when it is >= 1
config.use_custom_network_cfg()  # AWS_VPC_K8S_CNI_CUSTOM_NETWORK_CFG, default False
config.get_config_for_debug()    # the active values, keyed by variable name
```

Boolean variables accept `1`, `t`, `T`, `true`, `True` and `TRUE`, or
their false counterparts. Any other value falls back to the default.

## Pool management

`IPAMContext` does not talk to EC2, Kubernetes, the container runtime or
the host network itself. It calls the client objects it is given, which
are duck-typed; the `IPAMContext` docstring lists the methods each client
must offer. `IPAMContext.create(...)` reads the targets from the
environment and runs `node_init()`. `node_init()` does the following:

1. reads the ENI and IP limits;
2. sets up host networking;
3. adds every attached ENI and its secondary addresses to a fresh `DataStore`;
4. recovers the addresses of pods that are already running.

`NodeIPPoolManager(context)` keeps the pool within its targets:

- `update_ip_pool_if_required()` grows or shrinks the pool and then tries
  to free an ENI;
- `node_ip_pool_reconcile(interval)` adds the ENIs and IPs found in
  instance metadata and deletes those that are gone;
- `run(stop_event)` alternates these two every 2.5 seconds until the
  `threading.Event` is set.

`CNIBackend(context)` turns `AddNetworkRequest` and `DelNetworkRequest`
objects into `AddNetworkReply` and `DelNetworkReply` objects, using the
context's data store.

The ipamd counters and gauges are registered in `vpcipam.ipamd.REGISTRY`.
`REGISTRY.render()` returns them as Prometheus text.

## Parsing metrics

```python
from vpcipam.promtext import MetricType, parse_metric_families

families = parse_metric_families(
    "# TYPE awscni_eni_allocated gauge\nawscni_eni_allocated 2\n"
)
family = families["awscni_eni_allocated"]
assert family.type is MetricType.GAUGE
assert family.metrics[0].value == 2.0
```

The parser groups histogram and summary lines into one `Sample` per label
set, with their buckets or quantiles. Malformed input raises `ParseError`,
which carries the line number.

## What the package does not do

- It has no command to run; it is a library.
- It does not listen on any network port. There is no gRPC listener in
  front of `CNIBackend`. There is no HTTP server for introspection or for
  the metrics; `ENIInfos.to_dict()` and `Registry.render()` produce the
  content, and serving it is left to the caller.
- It has no EC2, Kubernetes, container runtime or netlink clients. Those
  are supplied by the caller.
- It does not aggregate metrics from several agents or publish them to
  CloudWatch; it only parses and renders the Prometheus text format.