"""Per-container resource usage and energy counters."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .cgroup_stats import CgroupStatHandler
from .features import AGGR_PREFIX, DELTA_PREFIX, IRQ_BLOCK, IRQ_NET_RX, IRQ_NET_TX
from .process_metric import ProcessMetrics, _format_map
from .stats import UInt64Stat, UInt64StatCollection

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class ContainerMetrics(ProcessMetrics):
    """Counters and energy attributed to a container, aggregated over its processes."""

    container_name: str = ""
    pod_name: str = ""
    namespace: str = ""
    container_id: str = ""
    cgroup_pid: int = 0
    pids: list[int] = field(default_factory=list)
    curr_processes: int = 0
    cgroup_stat_handler: CgroupStatHandler | None = field(default=None, repr=False, compare=False)
    cgroup_stat_map: dict[str, UInt64StatCollection] = field(default_factory=dict)
    kubelet_stats: dict[str, UInt64Stat] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__post_init__()
        for name in self.catalog.cgroup_metrics:
            self.cgroup_stat_map.setdefault(name, UInt64StatCollection())
        for name in self.catalog.kubelet_metrics:
            self.kubelet_stats.setdefault(name, UInt64Stat())

    def reset_delta_values(self) -> None:
        """Reset all delta values and the count of current processes."""
        self.curr_processes = 0
        super().reset_delta_values()
        for collection in self.cgroup_stat_map.values():
            collection.reset_delta_values()
        for stat in self.kubelet_stats.values():
            stat.reset_delta_values()

    def set_latest_process(self, cgroup_pid: int, pid: int, comm: str) -> None:
        """Record the latest process seen in this container."""
        self.cgroup_pid = cgroup_pid
        if pid not in self.pids:
            self.pids.append(pid)
        self.command = comm

    def int_delta_and_aggr(self, metric: str) -> tuple[int, int]:
        """The (delta, aggregate) pair of an integer metric; KeyError if unknown."""
        if metric in self.counter_stats:
            stat = self.counter_stats[metric]
            return stat.delta, stat.aggr
        if metric in self.cgroup_stat_map:
            collection = self.cgroup_stat_map[metric]
            return collection.sum_all_delta_values(), collection.sum_all_aggr_values()
        if metric in self.kubelet_stats:
            stat = self.kubelet_stats[metric]
            return stat.delta, stat.aggr
        stat = self._named_stat(metric)
        if stat is None:
            logger.debug("cannot extract: %s", metric)
            raise KeyError(f"cannot extract: {metric}")
        return stat.delta, stat.aggr

    def _float_curr_and_aggr(self, metric: str) -> tuple[float, float]:
        return 0.0, 0.0

    def to_prometheus_value(self, metric: str) -> str:
        """The value of an exported label: ``curr_`` gives the delta, otherwise the aggregate."""
        current = DELTA_PREFIX in metric
        if current:
            metric = metric.replace(DELTA_PREFIX, "")
        metric = metric.replace(AGGR_PREFIX, "")
        try:
            delta, aggr = self.int_delta_and_aggr(metric)
        except KeyError:
            curr_f, aggr_f = self._float_curr_and_aggr(metric)
            return f"{curr_f if current else aggr_f:f}"
        return str(delta if current else aggr)

    def update_cgroup_metrics(self) -> None:
        """Refresh the cgroup statistics from the stat handler, if there is one."""
        if self.cgroup_stat_handler is None:
            return
        try:
            self.cgroup_stat_handler.set_cgroup_stat(self.container_id, self.cgroup_stat_map)
        except Exception as err:
            logger.debug(
                "Error reading cgroup stats for container %s (%s): %s",
                self.container_name,
                self.container_id,
                err,
            )
            raise

    def __str__(self) -> str:
        irq = self.soft_irq_count
        pids = "[" + " ".join(str(p) for p in self.pids) + "]"
        return (
            f"energy from pod/container ({self.curr_processes} active processes): "
            f"name: {self.pod_name}/{self.container_name} namespace: {self.namespace} \n"
            f"\tcgrouppid: {self.cgroup_pid} pid: {pids} comm: {self.command} "
            f"containerid:{self.container_id}\n"
            + self._energy_lines()
            + f"\tCPUTime:  {self.cpu_time.delta} ({self.cpu_time.aggr})\n"
            + f"\tNetTX IRQ: {irq[IRQ_NET_TX].delta} ({irq[IRQ_NET_TX].aggr})\n"
            + f"\tNetRX IRQ: {irq[IRQ_NET_RX].delta} ({irq[IRQ_NET_RX].aggr})\n"
            + f"\tBlock IRQ: {irq[IRQ_BLOCK].delta} ({irq[IRQ_BLOCK].aggr})\n"
            + f"\tcounters: {_format_map(self.counter_stats)}\n"
            + f"\tcgroupfs: {_format_map(self.cgroup_stat_map)}\n"
            + f"\tkubelets: {_format_map(self.kubelet_stats)}\n"
        )