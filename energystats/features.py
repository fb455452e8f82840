"""Metric labels, the catalogue of available metrics and host information."""

from __future__ import annotations

import csv
import logging
import os
import platform
import socket
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

# hardware counters
CPU_CYCLE = "cpu_cycles"
CPU_REF_CYCLE = "cpu_ref_cycles"
CPU_INSTRUCTION = "cpu_instr"
CACHE_MISS = "cache_miss"

# eBPF counters
CPU_TIME = "cpu_time"
IRQ_NET_TX_LABEL = "irq_net_tx"
IRQ_NET_RX_LABEL = "irq_net_rx"
IRQ_BLOCK_LABEL = "irq_block"

# softirq vector numbers
MAX_IRQ = 10
IRQ_NET_TX = 2
IRQ_NET_RX = 3
IRQ_BLOCK = 4

# accelerator counters
GPU_SM_UTILIZATION = "gpu_sm_util"
GPU_MEM_UTILIZATION = "gpu_mem_util"

# cgroup metrics
CGROUPFS_MEMORY = "cgroupfs_memory_usage_bytes"
CGROUPFS_KERNEL_MEMORY = "cgroupfs_kernel_memory_usage_bytes"
CGROUPFS_TCP_MEMORY = "cgroupfs_tcp_memory_usage_bytes"
CGROUPFS_CPU = "cgroupfs_cpu_usage_us"
CGROUPFS_SYSTEM_CPU = "cgroupfs_system_cpu_usage_us"
CGROUPFS_USER_CPU = "cgroupfs_user_cpu_usage_us"
CGROUPFS_READ_IO = "cgroupfs_ioread_bytes"
CGROUPFS_WRITE_IO = "cgroupfs_iowrite_bytes"
BYTES_READ_IO = "bytes_read"
BYTES_WRITE_IO = "bytes_writes"
BLOCK_DEVICES_IO = "block_devices_used"

CGROUP_METRICS = (
    CGROUPFS_MEMORY,
    CGROUPFS_KERNEL_MEMORY,
    CGROUPFS_TCP_MEMORY,
    CGROUPFS_CPU,
    CGROUPFS_SYSTEM_CPU,
    CGROUPFS_USER_CPU,
    CGROUPFS_READ_IO,
    CGROUPFS_WRITE_IO,
    BLOCK_DEVICES_IO,
)

DELTA_PREFIX = "curr_"
AGGR_PREFIX = "total_"

NODE_METADATA_NAMES = ("cpu_architecture",)

CPU_MODEL_DATA_PATH = "/var/lib/kepler/data/normalized_cpu_arch.csv"


class Component(str, Enum):
    """Energy-consuming parts of a node."""

    CORE = "core"
    DRAM = "dram"
    UNCORE = "uncore"
    PKG = "pkg"
    GPU = "gpu"
    OTHER = "other"
    PLATFORM = "platform"
    FREQUENCY = "frequency"


ENERGY_COMPONENTS = (
    Component.PKG,
    Component.CORE,
    Component.DRAM,
    Component.UNCORE,
    Component.GPU,
    Component.OTHER,
    Component.PLATFORM,
)


@dataclass
class MetricCatalog:
    """Which metrics are available on this host and the feature names derived from them."""

    hw_counters: list[str] = field(default_factory=list)
    ebpf_counters: list[str] = field(default_factory=list)
    cgroup_metrics: list[str] = field(default_factory=list)
    kubelet_metrics: list[str] = field(default_factory=list)
    float_feature_names: list[str] = field(default_factory=list)
    gpu_enabled: bool = False
    gpu_supported: bool = False
    cpu_hardware_counter_enabled: bool = False

    @property
    def gpu_collection(self) -> bool:
        """True when GPU metrics are both enabled and supported."""
        return self.gpu_enabled and self.gpu_supported

    def initialize(self, hw_counters, ebpf_counters, kubelet_metrics) -> None:
        """Record the available counters; cgroup metrics are always the standard set."""
        self.hw_counters = list(hw_counters)
        self.ebpf_counters = list(ebpf_counters)
        self.cgroup_metrics = list(CGROUP_METRICS)
        self.kubelet_metrics = list(kubelet_metrics)
        self.cpu_hardware_counter_enabled = self.is_counter_stat_enabled(CPU_INSTRUCTION)
        logger.debug("Available ebpf metrics: %s", self.ebpf_counters)
        logger.debug("Available counter metrics: %s", self.hw_counters)
        logger.debug("Available cgroup metrics from cgroup: %s", self.cgroup_metrics)
        logger.debug("Available cgroup metrics from kubelet: %s", self.kubelet_metrics)

    def uint_feature_names(self) -> list[str]:
        """Integer feature names: eBPF, hardware, cgroup, kubelet, then GPU."""
        names = [
            *self.ebpf_counters,
            *self.hw_counters,
            *self.cgroup_metrics,
            *self.kubelet_metrics,
        ]
        if self.gpu_collection:
            names += [GPU_SM_UTILIZATION, GPU_MEM_UTILIZATION]
        return names

    def feature_names(self) -> list[str]:
        """All feature names, float ones first."""
        return [*self.float_feature_names, *self.uint_feature_names()]

    def metric_names(self) -> list[str]:
        """Names used by the estimators."""
        return [*self.feature_names(), BLOCK_DEVICES_IO]

    def prometheus_metrics(self) -> list[str]:
        """Exported labels: a delta and an aggregate label for every feature."""
        labels = []
        for feature in self.feature_names():
            labels += [DELTA_PREFIX + feature, AGGR_PREFIX + feature]
        labels.append(BLOCK_DEVICES_IO)
        return labels

    def is_counter_stat_enabled(self, label: str) -> bool:
        """Whether ``label`` is among the available hardware counters."""
        return label in self.hw_counters


default_catalog = MetricCatalog()


def get_node_name() -> str:
    """The node name from NODE_NAME, or the host name."""
    return os.environ.get("NODE_NAME") or socket.gethostname()


def _run(args: list[str]) -> str:
    return subprocess.run(args, capture_output=True, text=True, check=True).stdout


def _matching_lines(output: str, needle: str) -> str:
    lines = [line for line in output.splitlines() if needle in line]
    if not lines:
        raise RuntimeError(f"no line containing {needle!r} in command output")
    return "\n".join(lines) + "\n"


def _x86_architecture() -> str:
    res = _matching_lines(_run(["cpuid", "-1"]), "uarch")
    uarch = res.split("=")
    if len(uarch) != 2:
        raise RuntimeError("could not get the CPU Architecture")
    return uarch[1].split("{")[0]


def _arm64_architecture() -> str:
    return _run(["archspec", "cpu"]).removesuffix("\n")


def _s390x_architecture() -> str:
    res = _matching_lines(_run(["lscpu"]), "Machine type:")
    uarch = res.split(":")
    if len(uarch) != 2:
        raise RuntimeError("could not get the CPU Architecture")
    return f"zSystems model {uarch[1].strip()}"


def get_cpu_architecture(cpu_arch_override: str = "", model_data_path=CPU_MODEL_DATA_PATH) -> str:
    """Detect the CPU architecture and map it to a known power-model architecture.

    Raises LookupError when no architecture in the model data matches.
    """
    if cpu_arch_override:
        logger.debug("cpu arch override: %s", cpu_arch_override)
        return cpu_arch_override

    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        model = _x86_architecture()
    elif machine == "s390x":
        return _s390x_architecture()
    else:
        model = _arm64_architecture()

    with open(model_data_path, newline="") as handle:
        for row in csv.DictReader(handle):
            architecture = row.get("Architecture") or ""
            if architecture in model:
                return architecture
    raise LookupError(f"no CPU power model found for architecture {model}")


def get_cpu_package_map(sys_root="/sys") -> dict[int, str]:
    """Map each CPU number to its physical package id; stops at the first unreadable CPU."""
    package_map: dict[int, str] = {}
    base = Path(sys_root) / "devices" / "system" / "cpu"
    for cpu in range(os.cpu_count() or 1):
        target = base / f"cpu{cpu}" / "topology" / "physical_package_id"
        try:
            package_map[cpu] = target.read_text().strip()
        except OSError as err:
            logger.error("cannot get CPU-Package map: %s", err)
            return package_map
    logger.debug("CPU-Package Map: %s", package_map)
    return package_map