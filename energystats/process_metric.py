"""Per-process resource usage and energy counters."""

from __future__ import annotations

from dataclasses import dataclass, field

from .features import (
    CPU_TIME,
    ENERGY_COMPONENTS,
    GPU_MEM_UTILIZATION,
    GPU_SM_UTILIZATION,
    IRQ_BLOCK,
    IRQ_BLOCK_LABEL,
    IRQ_NET_RX,
    IRQ_NET_RX_LABEL,
    IRQ_NET_TX,
    IRQ_NET_TX_LABEL,
    MAX_IRQ,
    Component,
    MetricCatalog,
)
from .stats import UInt64Stat


def _default_catalog() -> MetricCatalog:
    from . import features

    return features.default_catalog


def _energy_stats() -> dict[Component, UInt64Stat]:
    return {component: UInt64Stat() for component in ENERGY_COMPONENTS}


def _format_map(stats: dict) -> str:
    return "map[" + " ".join(f"{key}:{stats[key]}" for key in sorted(stats)) + "]"


def _component_stat(table: dict[Component, UInt64Stat], component, kind: str) -> UInt64Stat:
    try:
        return table[Component(component)]
    except (ValueError, KeyError):
        raise ValueError(f"{kind} component type {component} is unknown") from None


@dataclass
class ProcessMetrics:
    """Counters and energy attributed to a single process."""

    pid: int = 0
    command: str = ""
    catalog: MetricCatalog = field(default_factory=_default_catalog, repr=False, compare=False)
    cpu_time: UInt64Stat = field(default_factory=UInt64Stat)
    counter_stats: dict[str, UInt64Stat] = field(default_factory=dict)
    soft_irq_count: list[UInt64Stat] = field(
        default_factory=lambda: [UInt64Stat() for _ in range(MAX_IRQ)]
    )
    dyn: dict[Component, UInt64Stat] = field(default_factory=_energy_stats)
    idle: dict[Component, UInt64Stat] = field(default_factory=_energy_stats)

    def __post_init__(self) -> None:
        for name in self.catalog.hw_counters:
            self.counter_stats.setdefault(name, UInt64Stat())
        if self.catalog.gpu_supported:
            self.counter_stats.setdefault(GPU_SM_UTILIZATION, UInt64Stat())
            self.counter_stats.setdefault(GPU_MEM_UTILIZATION, UInt64Stat())

    def reset_delta_values(self) -> None:
        """Reset all delta values to zero."""
        self.cpu_time.reset_delta_values()
        for stat in self.counter_stats.values():
            stat.reset_delta_values()
        for stat in self.soft_irq_count:
            stat.reset_delta_values()
        for stat in (*self.dyn.values(), *self.idle.values()):
            stat.reset_delta_values()

    def _named_stat(self, metric: str) -> UInt64Stat | None:
        if metric in self.counter_stats:
            return self.counter_stats[metric]
        if metric == CPU_TIME:
            return self.cpu_time
        irq = {IRQ_BLOCK_LABEL: IRQ_BLOCK, IRQ_NET_TX_LABEL: IRQ_NET_TX, IRQ_NET_RX_LABEL: IRQ_NET_RX}
        if metric in irq:
            return self.soft_irq_count[irq[metric]]
        return None

    def int_delta_and_aggr(self, metric: str) -> tuple[int, int]:
        """The (delta, aggregate) pair of an integer metric; KeyError if unknown."""
        stat = self._named_stat(metric)
        if stat is None:
            raise KeyError(f"cannot extract: {metric}")
        return stat.delta, stat.aggr

    def to_estimator_values(self) -> list[float]:
        """Current values of the catalogue's features, in feature order."""
        values = [0.0 for _ in self.catalog.float_feature_names]
        for metric in self.catalog.uint_feature_names():
            try:
                delta, _ = self.int_delta_and_aggr(metric)
            except KeyError:
                delta = 0
            values.append(float(delta))
        return values

    def sum_all_dyn_delta_values(self) -> int:
        """Sum of dynamic energy deltas of package, GPU and other components."""
        return sum(self.dyn[c].delta for c in (Component.PKG, Component.GPU, Component.OTHER))

    def sum_all_dyn_aggr_values(self) -> int:
        """Sum of dynamic energy aggregates of package, GPU and other components."""
        return sum(self.dyn[c].aggr for c in (Component.PKG, Component.GPU, Component.OTHER))

    def dyn_energy(self, component) -> UInt64Stat:
        """The dynamic energy stat of a component; ValueError if unknown."""
        return _component_stat(self.dyn, component, "DynEnergy")

    def idle_energy(self, component) -> UInt64Stat:
        """The idle energy stat of a component; ValueError if unknown."""
        return _component_stat(self.idle, component, "IdleEnergy")

    def _energy_lines(self) -> str:
        def line(title: str, table: dict[Component, UInt64Stat]) -> str:
            return (
                f"\t{title} ePkg (mJ): {table[Component.PKG]} (eCore: {table[Component.CORE]} "
                f"eDram: {table[Component.DRAM]} eUncore: {table[Component.UNCORE]}) "
                f"eGPU (mJ): {table[Component.GPU]} eOther (mJ): {table[Component.OTHER]} \n"
            )

        return line("Dyn", self.dyn) + line("Idle", self.idle)

    def __str__(self) -> str:
        return (
            f"energy from process pid: {self.pid} comm: {self.command}\n"
            + self._energy_lines()
            + f"\tCPUTime:  {self.cpu_time.delta} ({self.cpu_time.aggr})\n"
            + f"\tcounters: {_format_map(self.counter_stats)}\n"
        )