"""Node-wide energy readings split into total, idle and dynamic parts."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from .features import CPU_INSTRUCTION, ENERGY_COMPONENTS, Component, MetricCatalog
from .stats import UInt64StatCollection


def _default_catalog() -> MetricCatalog:
    from . import features

    return features.default_catalog


def _collections() -> dict[Component, UInt64StatCollection]:
    return {component: UInt64StatCollection() for component in ENERGY_COMPONENTS}


def _component_collection(
    table: dict[Component, UInt64StatCollection], component, kind: str
) -> UInt64StatCollection:
    try:
        return table[Component(component)]
    except (ValueError, KeyError):
        raise ValueError(f"{kind} component type {component} is unknown") from None


def _calc_dyn_energy(total: int, idle: int) -> int:
    if total == 0 or idle == 0 or total < idle:
        return 0
    return total - idle


@dataclass
class NodeComponentsEnergy:
    """Energy read from one CPU package's components, in millijoules."""

    core: int = 0
    dram: int = 0
    uncore: int = 0
    pkg: int = 0


@dataclass
class NodeMetrics:
    """Energy and resource usage of the whole node."""

    catalog: MetricCatalog = field(default_factory=_default_catalog, repr=False, compare=False)
    resource_usage: dict[str, float] = field(default_factory=dict)
    total: dict[Component, UInt64StatCollection] = field(default_factory=_collections)
    dyn: dict[Component, UInt64StatCollection] = field(default_factory=_collections)
    idle: dict[Component, UInt64StatCollection] = field(default_factory=_collections)
    cpu_frequency: dict[int, int] = field(default_factory=dict)
    idle_cpu_utilization: int = 0
    found_new_idle_state: bool = False

    def reset_delta_values(self) -> None:
        """Reset the deltas of measured and dynamic energy and clear resource usage."""
        for component in (
            Component.CORE,
            Component.DRAM,
            Component.UNCORE,
            Component.PKG,
            Component.GPU,
            Component.PLATFORM,
        ):
            self.total[component].reset_delta_values()
        for component in (Component.CORE, Component.DRAM, Component.UNCORE, Component.PKG):
            self.dyn[component].reset_delta_values()
        if self.catalog.gpu_collection:
            self.dyn[Component.GPU].reset_delta_values()
        self.dyn[Component.PLATFORM].reset_delta_values()
        self.resource_usage = {}

    def add_node_res_usage_from_container_res_usage(self, containers_metrics) -> None:
        """Set the node resource usage to the sum of the containers' deltas."""
        idle_cpu_utilization = 0
        usage: dict[str, float] = {}
        for metric in self.catalog.metric_names():
            usage[metric] = 0.0
            for container in containers_metrics.values():
                try:
                    delta, _ = container.int_delta_and_aggr(metric)
                except KeyError:
                    delta = 0
                usage[metric] += float(delta)
                if metric == CPU_INSTRUCTION:
                    idle_cpu_utilization += delta
        self.resource_usage = usage
        if self.idle_cpu_utilization > idle_cpu_utilization or self.idle_cpu_utilization == 0:
            self.found_new_idle_state = True
            self.idle_cpu_utilization = idle_cpu_utilization

    def set_latest_platform_energy(self, platform_energy, gauge: bool) -> None:
        """Record platform sensor readings, as deltas when ``gauge`` else as aggregates."""
        platform = self.total[Component.PLATFORM]
        for sensor_id, energy in platform_energy.items():
            value = math.ceil(energy)
            if gauge:
                platform.set_delta_stat(sensor_id, value)
            else:
                platform.set_aggr_stat(sensor_id, value)

    def set_node_components_energy(self, components_energy, gauge: bool) -> None:
        """Record per-package component readings keyed by package id."""
        for pkg_id, energy in components_energy.items():
            key = str(pkg_id)
            readings = (
                (Component.CORE, energy.core),
                (Component.DRAM, energy.dram),
                (Component.UNCORE, energy.uncore),
                (Component.PKG, energy.pkg),
            )
            for component, value in readings:
                if gauge:
                    self.total[component].set_delta_stat(key, value)
                else:
                    self.total[component].set_aggr_stat(key, value)

    def add_node_gpu_energy(self, gpu_energy) -> None:
        """Record the latest energy of each GPU, keyed by its index."""
        for gpu_id, energy in enumerate(gpu_energy):
            self.total[Component.GPU].set_delta_stat(str(gpu_id), int(energy))

    def update_idle_energy(self) -> None:
        """Update the idle energy of every component and clear the new-idle flag."""
        for component in (Component.CORE, Component.DRAM, Component.UNCORE, Component.PKG):
            self.calc_idle_energy(component)
        if self.catalog.gpu_collection:
            self.calc_idle_energy(Component.GPU)
        self.calc_idle_energy(Component.PLATFORM)
        self.found_new_idle_state = False

    def calc_idle_energy(self, component) -> None:
        """Keep the lowest delta seen during idle periods as the idle energy."""
        totals = self.total_energy(component)
        idles = self.idle_energy(component)
        for source_id, stat in totals.stat.items():
            delta = stat.delta
            existing = idles.stat.get(source_id)
            if existing is None:
                idles.set_delta_stat(source_id, delta)
                continue
            idle_delta = existing.delta
            lower = idle_delta == 0 or idle_delta > delta
            idle_period = self.found_new_idle_state or self.idle_cpu_utilization == 0
            idles.set_delta_stat(source_id, delta if lower and idle_period else idle_delta)

    def update_dyn_energy(self) -> None:
        """Compute dynamic energy for packages, platform sensors and GPUs."""
        for pkg_id in list(self.total[Component.PKG].stat):
            for component in (Component.PKG, Component.CORE, Component.UNCORE, Component.DRAM):
                self.calc_dyn_energy(component, pkg_id)
        for sensor_id in list(self.total[Component.PLATFORM].stat):
            self.calc_dyn_energy(Component.PLATFORM, sensor_id)
        if self.catalog.gpu_collection:
            for gpu_id in list(self.total[Component.GPU].stat):
                self.calc_dyn_energy(Component.GPU, gpu_id)

    def calc_dyn_energy(self, component, source_id: str) -> None:
        """Set the dynamic energy of one source as total minus idle.

        Raises KeyError when the source has no total or idle reading.
        """
        total = self.total_energy(component).stat[source_id].delta
        idle = self.idle_energy(component).stat[source_id].delta
        self.dyn_energy(component).set_delta_stat(source_id, _calc_dyn_energy(total, idle))

    def set_node_other_components_energy(self) -> None:
        """Attribute platform energy not explained by package, DRAM and GPU to 'other'."""
        for table in (self.dyn, self.idle):
            cpu_components = (
                table[Component.PKG].sum_all_delta_values()
                + table[Component.DRAM].sum_all_delta_values()
                + table[Component.GPU].sum_all_delta_values()
            )
            platform = table[Component.PLATFORM].sum_all_delta_values()
            if platform > cpu_components:
                table[Component.OTHER].set_delta_stat(
                    Component.OTHER.value, platform - cpu_components
                )

    def resource_usage_for(self, resource: str) -> float:
        """The node usage of a resource; KeyError if it is not recorded."""
        try:
            return self.resource_usage[resource]
        except KeyError:
            raise KeyError(f"resource {resource} not found") from None

    @staticmethod
    def _stat_value(collection: UInt64StatCollection, source_id: str, aggregate: bool) -> int:
        stat = collection.stat.get(source_id)
        if stat is None:
            return 0
        return stat.aggr if aggregate else stat.delta

    def aggr_dyn_energy_per_id(self, component, source_id: str) -> int:
        """Aggregated dynamic energy of one source, or 0."""
        return self._stat_value(self.dyn_energy(component), source_id, True)

    def delta_dyn_energy_per_id(self, component, source_id: str) -> int:
        """Delta dynamic energy of one source, or 0."""
        return self._stat_value(self.dyn_energy(component), source_id, False)

    def sum_aggr_dyn_energy(self, component) -> int:
        """Sum of aggregated dynamic energy over all sources."""
        return sum(s.aggr for s in self.dyn_energy(component).stat.values())

    def sum_delta_dyn_energy(self, component) -> int:
        """Sum of delta dynamic energy over all sources."""
        return sum(s.delta for s in self.dyn_energy(component).stat.values())

    def aggr_idle_energy_per_id(self, component, source_id: str) -> int:
        """Aggregated idle energy of one source, or 0."""
        return self._stat_value(self.idle_energy(component), source_id, True)

    def delta_idle_energy_per_id(self, component, source_id: str) -> int:
        """Delta idle energy of one source, or 0."""
        return self._stat_value(self.idle_energy(component), source_id, False)

    def sum_delta_idle_energy(self, component) -> int:
        """Sum of delta idle energy over all sources."""
        return sum(s.delta for s in self.idle_energy(component).stat.values())

    def sum_aggr_idle_energy(self, component) -> int:
        """Sum of aggregated idle energy over all sources."""
        return sum(s.aggr for s in self.idle_energy(component).stat.values())

    def total_energy(self, component) -> UInt64StatCollection:
        """Measured energy of a component; ValueError if unknown."""
        return _component_collection(self.total, component, "TotalEnergy")

    def dyn_energy(self, component) -> UInt64StatCollection:
        """Dynamic energy of a component; ValueError if unknown."""
        return _component_collection(self.dyn, component, "DynEnergy")

    def idle_energy(self, component) -> UInt64StatCollection:
        """Idle energy of a component; ValueError if unknown."""
        return _component_collection(self.idle, component, "IdleEnergy")

    def __str__(self) -> str:
        t = self.total
        return (
            "node delta energy (mJ): \n"
            f"\tePkg: {t[Component.PKG].sum_all_delta_values()} "
            f"(eCore: {t[Component.CORE].sum_all_delta_values()} "
            f"eDram: {t[Component.DRAM].sum_all_delta_values()} "
            f"eUncore: {t[Component.UNCORE].sum_all_delta_values()}) "
            f"eGPU: {t[Component.GPU].sum_all_delta_values()} "
            f"eOther: {t[Component.OTHER].sum_all_delta_values()} \n"
        )