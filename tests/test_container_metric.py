import pytest

from energystats.cgroup_stats import CgroupDeletedError, CgroupStatHandler
from energystats.container_metric import ContainerMetrics
from energystats.features import (
    CGROUPFS_MEMORY,
    CPU_CYCLE,
    CPU_INSTRUCTION,
    CPU_TIME,
    IRQ_NET_RX,
    IRQ_NET_RX_LABEL,
    Component,
    MetricCatalog,
)
from energystats.stats import UInt64Stat, UInt64StatCollection


def _catalog():
    catalog = MetricCatalog()
    catalog.initialize([CPU_CYCLE, CPU_INSTRUCTION], [CPU_TIME], ["kubelet_cpu", "kubelet_mem"])
    return catalog


def _new(catalog=None):
    return ContainerMetrics(
        catalog=catalog or MetricCatalog(),
        container_name="container",
        pod_name="PodName",
        namespace="Namespace",
        container_id="container",
    )


@pytest.fixture
def component_metrics():
    values = {
        Component.CORE: (13, 14),
        Component.DRAM: (15, 16),
        Component.UNCORE: (17, 18),
        Component.PKG: (19, 20),
        Component.GPU: (21, 22),
        Component.OTHER: (23, 24),
    }
    cgroup_map = {
        component.value: UInt64StatCollection({"usage": UInt64Stat(delta=d, aggr=a)})
        for component, (d, a) in values.items()
    }
    return ContainerMetrics(catalog=MetricCatalog(), cgroup_stat_map=cgroup_map)


@pytest.mark.parametrize(
    "component, delta, aggr",
    [
        (Component.CORE, 13, 14),
        (Component.DRAM, 15, 16),
        (Component.UNCORE, 17, 18),
        (Component.PKG, 19, 20),
        (Component.GPU, 21, 22),
        (Component.OTHER, 23, 24),
    ],
)
def test_int_delta_and_aggr_from_cgroup_map(component_metrics, component, delta, aggr):
    assert component_metrics.int_delta_and_aggr(component.value) == (delta, aggr)


def test_int_delta_and_aggr_unknown(component_metrics):
    with pytest.raises(KeyError):
        component_metrics.int_delta_and_aggr("nope")


def test_reset_delta_values():
    instance = _new(_catalog())
    instance.curr_processes = 5
    instance.cpu_time.add_new_delta(7)
    instance.cgroup_stat_map[CGROUPFS_MEMORY].set_delta_stat("x", 9)
    instance.kubelet_stats["kubelet_cpu"].set_new_delta(4)
    instance.reset_delta_values()
    assert instance.curr_processes == 0
    assert instance.cpu_time.delta == 0
    assert instance.cpu_time.aggr == 7
    assert instance.cgroup_stat_map[CGROUPFS_MEMORY].stat["x"].delta == 0
    assert instance.kubelet_stats["kubelet_cpu"].delta == 0


def test_sum_all_dyn_values():
    instance = _new()
    assert instance.sum_all_dyn_delta_values() == 0
    assert instance.sum_all_dyn_aggr_values() == 0
    instance.dyn[Component.PKG] = UInt64Stat(delta=7, aggr=8)
    instance.dyn[Component.GPU] = UInt64Stat(delta=9, aggr=10)
    instance.dyn[Component.OTHER] = UInt64Stat(delta=11, aggr=12)
    instance.dyn[Component.CORE] = UInt64Stat(delta=1, aggr=2)
    assert instance.sum_all_dyn_delta_values() == 27
    assert instance.sum_all_dyn_aggr_values() == 30


def test_catalog_initializes_maps():
    instance = _new(_catalog())
    assert set(instance.counter_stats) == {CPU_CYCLE, CPU_INSTRUCTION}
    assert CGROUPFS_MEMORY in instance.cgroup_stat_map
    assert set(instance.kubelet_stats) == {"kubelet_cpu", "kubelet_mem"}


def test_many_containers_with_cpu_time():
    for i in range(1000):
        metrics = ContainerMetrics(
            catalog=MetricCatalog(),
            container_name=f"container{i}",
            pod_name="podA",
            namespace="test",
            container_id=f"container{i}",
        )
        metrics.cpu_time.add_new_delta(10)
        assert metrics.container_id == f"container{i}"
        assert metrics.int_delta_and_aggr(CPU_TIME) == (10, 10)


def test_set_latest_process():
    instance = _new()
    instance.set_latest_process(11, 100, "bash")
    instance.set_latest_process(12, 100, "sh")
    instance.set_latest_process(12, 200, "sh")
    assert instance.cgroup_pid == 12
    assert instance.pids == [100, 200]
    assert instance.command == "sh"


def test_to_prometheus_value():
    instance = _new()
    instance.cpu_time.add_new_delta(5)
    instance.cpu_time.reset_delta_values()
    instance.cpu_time.add_new_delta(3)
    instance.soft_irq_count[IRQ_NET_RX].add_new_delta(2)
    assert instance.to_prometheus_value("curr_cpu_time") == "3"
    assert instance.to_prometheus_value("total_cpu_time") == "8"
    assert instance.to_prometheus_value("total_" + IRQ_NET_RX_LABEL) == "2"
    assert instance.to_prometheus_value("curr_unknown") == "0.000000"


def test_to_estimator_values():
    catalog = _catalog()
    instance = _new(catalog)
    instance.cpu_time.add_new_delta(4)
    instance.counter_stats[CPU_CYCLE].add_new_delta(6)
    values = instance.to_estimator_values()
    names = catalog.uint_feature_names()
    assert len(values) == len(names)
    assert values[names.index(CPU_TIME)] == 4.0
    assert values[names.index(CPU_CYCLE)] == 6.0


class _FakeHandler(CgroupStatHandler):
    def __init__(self, fail=False):
        self.fail = fail

    def set_cgroup_stat(self, container_id, stat_map):
        if self.fail:
            raise CgroupDeletedError()
        stat_map[CGROUPFS_MEMORY].set_aggr_stat(container_id, 123)


def test_update_cgroup_metrics_with_handler():
    instance = _new(_catalog())
    instance.cgroup_stat_handler = _FakeHandler()
    instance.update_cgroup_metrics()
    assert instance.cgroup_stat_map[CGROUPFS_MEMORY].stat["container"].aggr == 123


def test_update_cgroup_metrics_without_handler():
    instance = _new(_catalog())
    instance.update_cgroup_metrics()
    assert instance.cgroup_stat_map[CGROUPFS_MEMORY].stat == {}


def test_update_cgroup_metrics_error():
    instance = _new(_catalog())
    instance.cgroup_stat_handler = _FakeHandler(fail=True)
    with pytest.raises(CgroupDeletedError):
        instance.update_cgroup_metrics()


def test_energy_component_lookup():
    instance = _new()
    instance.idle[Component.DRAM].set_new_delta(5)
    assert instance.idle_energy("dram").delta == 5
    with pytest.raises(ValueError):
        instance.dyn_energy("bogus")


def test_str():
    instance = ContainerMetrics(
        catalog=MetricCatalog(), container_name="c", pod_name="podA", namespace="ns", container_id="id1"
    )
    instance.set_latest_process(1, 2, "bash")
    text = str(instance)
    assert text.startswith("energy from pod/container (0 active processes): name: podA/c namespace: ns \n")
    assert "\tcgrouppid: 1 pid: [2] comm: bash containerid:id1\n" in text
    assert "\tCPUTime:  0 (0)\n" in text