import pytest

from energystats.features import (
    CPU_INSTRUCTION,
    CPU_TIME,
    GPU_SM_UTILIZATION,
    IRQ_BLOCK,
    IRQ_BLOCK_LABEL,
    IRQ_NET_RX,
    IRQ_NET_RX_LABEL,
    IRQ_NET_TX_LABEL,
    Component,
    MetricCatalog,
)
from energystats.process_metric import ProcessMetrics
from energystats.stats import UInt64Stat


def test_reset_delta_values():
    p = ProcessMetrics(0, "command")
    p.cpu_time.add_new_delta(5)
    p.dyn[Component.PKG].add_new_delta(3)
    p.reset_delta_values()
    assert p.cpu_time.delta == 0
    assert p.cpu_time.aggr == 5
    assert p.dyn[Component.PKG].delta == 0


def test_sum_all_dyn_delta_values_zero():
    p = ProcessMetrics(0, "command")
    assert p.sum_all_dyn_delta_values() == 0


def test_sum_all_dyn_aggr_values_zero():
    p = ProcessMetrics(0, "command")
    assert p.sum_all_dyn_aggr_values() == 0


def test_sum_all_dyn_values():
    p = ProcessMetrics(1, "c")
    p.dyn[Component.PKG] = UInt64Stat(aggr=8, delta=7)
    p.dyn[Component.GPU] = UInt64Stat(aggr=10, delta=9)
    p.dyn[Component.OTHER] = UInt64Stat(aggr=12, delta=11)
    p.dyn[Component.CORE] = UInt64Stat(aggr=100, delta=100)
    assert p.sum_all_dyn_delta_values() == 27
    assert p.sum_all_dyn_aggr_values() == 30


def test_counters_from_catalog():
    catalog = MetricCatalog(hw_counters=[CPU_INSTRUCTION], gpu_supported=True)
    p = ProcessMetrics(1, "c", catalog=catalog)
    assert set(p.counter_stats) == {CPU_INSTRUCTION, GPU_SM_UTILIZATION, "gpu_mem_util"}


def test_int_delta_and_aggr():
    p = ProcessMetrics(1, "c", catalog=MetricCatalog(hw_counters=[CPU_INSTRUCTION]))
    p.cpu_time.add_new_delta(4)
    p.soft_irq_count[IRQ_BLOCK].add_new_delta(2)
    p.soft_irq_count[IRQ_NET_RX].add_new_delta(6)
    p.counter_stats[CPU_INSTRUCTION].add_new_delta(9)
    assert p.int_delta_and_aggr(CPU_TIME) == (4, 4)
    assert p.int_delta_and_aggr(IRQ_BLOCK_LABEL) == (2, 2)
    assert p.int_delta_and_aggr(IRQ_NET_RX_LABEL) == (6, 6)
    assert p.int_delta_and_aggr(IRQ_NET_TX_LABEL) == (0, 0)
    assert p.int_delta_and_aggr(CPU_INSTRUCTION) == (9, 9)


def test_int_delta_and_aggr_unknown():
    p = ProcessMetrics(1, "c", catalog=MetricCatalog())
    with pytest.raises(KeyError):
        p.int_delta_and_aggr("nope")


def test_to_estimator_values():
    catalog = MetricCatalog(ebpf_counters=[CPU_TIME], cgroup_metrics=["missing"])
    p = ProcessMetrics(1, "c", catalog=catalog)
    p.cpu_time.add_new_delta(3)
    assert p.to_estimator_values() == [3.0, 0.0]


def test_energy_accessors():
    p = ProcessMetrics(1, "c")
    assert p.dyn_energy("pkg") is p.dyn[Component.PKG]
    assert p.idle_energy(Component.PLATFORM) is p.idle[Component.PLATFORM]


@pytest.mark.parametrize("component", ["bogus", "frequency"])
def test_energy_accessor_unknown(component):
    p = ProcessMetrics(1, "c")
    with pytest.raises(ValueError):
        p.dyn_energy(component)
    with pytest.raises(ValueError):
        p.idle_energy(component)


def test_str():
    p = ProcessMetrics(42, "bash", catalog=MetricCatalog(hw_counters=[CPU_INSTRUCTION]))
    p.cpu_time.add_new_delta(5)
    text = str(p)
    assert text.startswith("energy from process pid: 42 comm: bash\n")
    assert "\tCPUTime:  5 (5)\n" in text
    assert text.endswith("\tcounters: map[cpu_instr:0 (0)]\n")