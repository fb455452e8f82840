# energystats

This library keeps track of energy and resource usage on a node and breaks it
down by container and by process. It is written in pure Python and has no
runtime dependencies.

## Installation

```
pip install .
```

## Counters

`energystats.stats` provides the basic counter types.

- `UInt64Stat` holds two values: `aggr`, a running aggregate, and `delta`,
  the amount for the current collection interval.
  - `add_new_delta` adds a value to the delta.
  - `set_new_delta` replaces the delta.
  - `set_new_aggr` takes a new aggregate reading and works out the delta from
    the previous reading.
  - A value of zero is ignored.
  - If the aggregate would go past the unsigned 64-bit range, it is reset to
    zero and `StatOverflowError` is raised.
- `UInt64StatCollection` groups stats by source, such as a CPU package, a GPU
  or a sensor.
  - Write to it with `set_aggr_stat`, `add_delta_stat` or `set_delta_stat`.
  - Read totals with `sum_all_delta_values` and `sum_all_aggr_values`.
  - Its string form is `"<delta sum> (<aggregate sum>)"`.
  - Overflows on an existing source are logged, not raised.

```python
from energystats.stats import UInt64StatCollection

energy = UInt64StatCollection()
energy.set_aggr_stat("0", 10)
energy.set_aggr_stat("0", 18)
print(energy)                         # 8 (18)
print(energy.sum_all_delta_values())  # 8
```

## Metric catalogue and host facts

`energystats.features` holds the metric label constants and the `Component`
enum. The components are core, dram, uncore, pkg, gpu, other, platform and
frequency.

It also provides `MetricCatalog`. You fill it with `initialize(hw_counters,
ebpf_counters, kubelet_metrics)`, which always adds the standard cgroup
metrics. After that, it derives:

- `uint_feature_names()`
- `feature_names()`
- `metric_names()`, which is the feature names followed by
  `block_devices_used`
- `prometheus_metrics()`, which gives a `curr_` label and a `total_` label for
  each feature, followed by `block_devices_used`

The GPU utilisation features are included only when `gpu_enabled` and
`gpu_supported` are both set. A shared instance is available as
`features.default_catalog`.

The module also has helpers for facts about the host:

- `get_node_name()` returns `NODE_NAME` from the environment, or the host name.
- `get_cpu_architecture(cpu_arch_override, model_data_path)` works out the CPU
  model and returns it.
  - It runs `cpuid -1` on x86-64, `lscpu` on s390x, and `archspec cpu` on
    other machines.
  - It then looks the model up in a CSV file that has an `Architecture` column.
  - It raises `LookupError` if no row matches.
  - A non-empty override is returned as it is.
- `get_cpu_package_map(sys_root)` maps each CPU number to its physical package
  id, read from sysfs.

## Process, container and node metrics

- `energystats.process_metric.ProcessMetrics` holds a process's CPU time,
  hardware counters, softirq counts, and per-component dynamic and idle
  energy.
  - `int_delta_and_aggr(metric)` returns `(delta, aggr)`, or raises `KeyError`
    if the metric is unknown.
  - `dyn_energy(component)` and `idle_energy(component)` raise `ValueError`
    for an unknown component.
- `energystats.container_metric.ContainerMetrics` extends `ProcessMetrics`.
  - It adds pod and container identity, a list of pids, cgroup stat
    collections and kubelet stats.
  - `to_prometheus_value("curr_<metric>")` returns the delta as a string, and
    `to_prometheus_value("total_<metric>")` returns the aggregate.
  - `update_cgroup_metrics()` refreshes the cgroup stats through the attached
    `cgroup_stat_handler`.
- `energystats.node_metric.NodeMetrics` takes readings for the whole node.
  - `set_node_components_energy` accepts per-package `NodeComponentsEnergy`
    readings.
  - `set_latest_platform_energy` accepts platform sensor readings.
  - `add_node_gpu_energy` accepts GPU energy readings.
  - From these it works out idle energy (`update_idle_energy`) and dynamic
    energy (`update_dyn_energy`).
  - It assigns any platform energy that is not accounted for by package, DRAM
    and GPU to "other" (`set_node_other_components_energy`).
  - `add_node_res_usage_from_container_res_usage` sums the container deltas
    into `resource_usage`.

## cgroup statistics

`energystats.cgroup_stats` reads cgroup statistics from the file system.

- `new_cgroup_stat_reader(pid, cgroup_version, proc_root, cgroup_root)` reads
  `/proc/<pid>/cgroup` and returns one of:
  - a `CgroupV1StatReader`
  - a `CgroupV2StatReader`
  - `None` on macOS
- The reader's `set_cgroup_stat(container_id, stat_map)` copies memory, CPU
  and block-IO figures into the stat map. It raises `CgroupDeletedError` if the
  cgroup is gone.
- `parse_proc_cgroup(text)` parses a cgroup file on its own.

## Resolving containers

`energystats.containers.ContainerResolver` maps a pid or a cgroup id to a
container id and to a `ContainerInfo` (container, pod and namespace). It caches
the results.

- Processes that are not in a known Kubernetes container resolve to the
  `system_processes` entry.
- Pods are plain mappings in the Kubernetes JSON shape: `metadata.name`,
  `metadata.namespace`, and `status.initContainerStatuses`,
  `containerStatuses` and `ephemeralContainerStatuses`, each with
  `containerID` and `name`.
- `register_pods(pods)` records the pods' containers and returns the set of
  live container ids.

```python
from energystats.containers import (
    ContainerResolver,
    extract_container_id_from_path,
    parse_container_id_from_pod_status,
)

parse_container_id_from_pod_status("containerd://abc123")  # "abc123"
extract_container_id_from_path(
    "0::/kubepods.slice/kubepods-pod1.slice/cri-containerd-abc123.scope", 2
)  # "abc123"

resolver = ContainerResolver()
resolver.register_pods([{
    "metadata": {"name": "web", "namespace": "default"},
    "status": {"containerStatuses": [{"containerID": "containerd://abc123", "name": "app"}]},
}])  # {"abc123"}
```

## What this package does not do

This is a library of bookkeeping types and readers. It does not provide:

- a command-line program
- an HTTP or metrics-export server
- any way to read hardware counters, eBPF tables, RAPL/platform power sensors
  or GPUs

Energy and counter readings have to be supplied by the caller.

The package also contains no kubelet or API-server client. `ContainerResolver`
works from pods passed to `register_pods`, or from a `pod_lister` object that
you supply with `list_pods()`, `list_metrics()` and `available_metrics()`
methods.

Power models that turn resource usage into estimated energy are not included
either.

## Running the tests

```
pip install .[test]
pytest
```