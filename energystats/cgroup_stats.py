"""Readers that copy cgroup memory, CPU and IO statistics into stat collections."""

from __future__ import annotations

import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from .features import (
    BLOCK_DEVICES_IO,
    CGROUPFS_CPU,
    CGROUPFS_KERNEL_MEMORY,
    CGROUPFS_MEMORY,
    CGROUPFS_READ_IO,
    CGROUPFS_SYSTEM_CPU,
    CGROUPFS_TCP_MEMORY,
    CGROUPFS_USER_CPU,
    CGROUPFS_WRITE_IO,
)
from .stats import UInt64StatCollection

logger = logging.getLogger(__name__)

PROC_ROOT = "/proc"
CGROUP_ROOT = "/sys/fs/cgroup"

_CPUACCT_DIRS = ("cpuacct", "cpu,cpuacct", "cpuacct,cpu")
_NANOSECONDS_PER_SECOND = 1_000_000_000


class CgroupDeletedError(RuntimeError):
    """Raised when the metrics of a cgroup are gone, usually because it was deleted."""

    def __init__(self, message: str = "cgroup metrics does not exist, the cgroup might be deleted"):
        super().__init__(message)


StatMap = dict[str, UInt64StatCollection]


class CgroupStatHandler(ABC):
    """Something that writes the current statistics of one cgroup into a stat map."""

    @abstractmethod
    def set_cgroup_stat(self, container_id: str, stat_map: StatMap) -> None:
        """Record the cgroup's statistics under ``container_id``."""


def _read_int(path: Path) -> int:
    try:
        text = path.read_text().strip()
    except FileNotFoundError:
        return 0
    if not text or text == "max":
        return 0
    return int(text.split()[0])


def _read_key_values(path: Path) -> dict[str, int]:
    try:
        text = path.read_text()
    except FileNotFoundError:
        return {}
    values: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2:
            values[parts[0]] = int(parts[1])
    return values


def _clock_ticks() -> int:
    try:
        return os.sysconf("SC_CLK_TCK")
    except (AttributeError, ValueError, OSError):
        return 100


def _relative(path: str) -> str:
    return path.lstrip("/")


@dataclass
class CgroupV1StatReader(CgroupStatHandler):
    """Reads statistics from a cgroup v1 hierarchy, one directory per subsystem."""

    root: Path
    path: str
    clock_ticks: int = field(default_factory=_clock_ticks)

    def _subsystem_dir(self, *names: str) -> Path | None:
        for name in names:
            candidate = Path(self.root) / name / _relative(self.path)
            if candidate.is_dir():
                return candidate
        return None

    def _blkio_entries(self, directory: Path):
        try:
            text = (directory / "blkio.io_service_bytes_recursive").read_text()
        except FileNotFoundError:
            return
        for line in text.splitlines():
            fields = line.split()
            if not fields:
                continue
            if len(fields) < 3:
                if len(fields) == 2 and fields[0] == "Total":
                    continue
                raise ValueError(f"invalid blkio line {line!r}")
            yield fields[1], int(fields[2])

    def set_cgroup_stat(self, container_id: str, stat_map: StatMap) -> None:
        memory = self._subsystem_dir("memory")
        if memory is None:
            raise CgroupDeletedError()
        stat_map[CGROUPFS_MEMORY].set_aggr_stat(container_id, _read_int(memory / "memory.usage_in_bytes"))
        stat_map[CGROUPFS_KERNEL_MEMORY].set_aggr_stat(
            container_id, _read_int(memory / "memory.kmem.usage_in_bytes")
        )
        stat_map[CGROUPFS_TCP_MEMORY].set_aggr_stat(
            container_id, _read_int(memory / "memory.kmem.tcp.usage_in_bytes")
        )

        cpuacct = self._subsystem_dir(*_CPUACCT_DIRS)
        if cpuacct is not None:
            total = _read_int(cpuacct / "cpuacct.usage")
            ticks = _read_key_values(cpuacct / "cpuacct.stat")
            to_ns = _NANOSECONDS_PER_SECOND // self.clock_ticks
            kernel = ticks.get("system", 0) * to_ns
            user = ticks.get("user", 0) * to_ns
            stat_map[CGROUPFS_CPU].set_aggr_stat(container_id, total // 1000)
            stat_map[CGROUPFS_SYSTEM_CPU].set_aggr_stat(container_id, kernel // 1000)
            stat_map[CGROUPFS_USER_CPU].set_aggr_stat(container_id, user // 1000)

        blkio = self._subsystem_dir("blkio")
        if blkio is not None:
            for op, value in self._blkio_entries(blkio):
                if op == "Read":
                    stat_map[CGROUPFS_READ_IO].add_delta_stat(container_id, value)
                if op == "Write":
                    stat_map[CGROUPFS_WRITE_IO].add_delta_stat(container_id, value)
                stat_map[BLOCK_DEVICES_IO].add_delta_stat(container_id, 1)


@dataclass
class CgroupV2StatReader(CgroupStatHandler):
    """Reads statistics from a single cgroup v2 (unified) directory."""

    directory: Path

    def _io_entries(self):
        try:
            text = (Path(self.directory) / "io.stat").read_text()
        except FileNotFoundError:
            return
        for line in text.splitlines():
            fields = line.split()
            if not fields:
                continue
            values = {}
            for item in fields[1:]:
                key, _, value = item.partition("=")
                if value:
                    values[key] = int(value)
            yield values.get("rbytes", 0), values.get("wbytes", 0)

    def set_cgroup_stat(self, container_id: str, stat_map: StatMap) -> None:
        directory = Path(self.directory)
        if not directory.is_dir():
            raise CgroupDeletedError()
        if not (directory / "memory.current").exists() and not (directory / "memory.stat").exists():
            raise CgroupDeletedError()

        memory = _read_key_values(directory / "memory.stat")
        stat_map[CGROUPFS_MEMORY].set_aggr_stat(container_id, _read_int(directory / "memory.current"))
        stat_map[CGROUPFS_KERNEL_MEMORY].set_aggr_stat(container_id, memory.get("kernel_stack", 0))
        stat_map[CGROUPFS_TCP_MEMORY].set_aggr_stat(container_id, memory.get("sock", 0))

        if (directory / "cpu.stat").exists():
            cpu = _read_key_values(directory / "cpu.stat")
            stat_map[CGROUPFS_CPU].set_aggr_stat(container_id, cpu.get("usage_usec", 0))
            stat_map[CGROUPFS_SYSTEM_CPU].set_aggr_stat(container_id, cpu.get("system_usec", 0))
            stat_map[CGROUPFS_USER_CPU].set_aggr_stat(container_id, cpu.get("user_usec", 0))

        for rbytes, wbytes in self._io_entries():
            stat_map[CGROUPFS_READ_IO].add_delta_stat(container_id, rbytes)
            stat_map[CGROUPFS_WRITE_IO].add_delta_stat(container_id, wbytes)
            stat_map[BLOCK_DEVICES_IO].add_delta_stat(container_id, 1)


def parse_proc_cgroup(text: str) -> tuple[dict[str, str], str]:
    """Parse a /proc/<pid>/cgroup file into (subsystem paths, unified path).

    Raises ValueError on a malformed line.
    """
    subsystems: dict[str, str] = {}
    unified = ""
    for line in text.splitlines():
        if not line.strip():
            continue
        parts = line.split(":", 2)
        if len(parts) < 3:
            raise ValueError(f"invalid cgroup entry: {line!r}")
        controllers, path = parts[1], parts[2]
        if controllers == "":
            unified = path
            continue
        for controller in controllers.split(","):
            if controller:
                subsystems[controller] = path
    return subsystems, unified


def new_cgroup_stat_reader(
    pid: int,
    cgroup_version: int,
    proc_root=PROC_ROOT,
    cgroup_root=CGROUP_ROOT,
) -> CgroupStatHandler | None:
    """Create a stat reader for the cgroup of ``pid``.

    Returns None on macOS, where there are no cgroups. Raises OSError when the
    process cgroup file cannot be read and CgroupDeletedError when a v1 cgroup
    has no subsystem directory left.
    """
    if sys.platform == "darwin":
        return None
    text = (Path(proc_root) / str(pid) / "cgroup").read_text()
    subsystems, path = parse_proc_cgroup(text)
    if not path:
        # without a unified entry, use the path of the pids subsystem
        path = subsystems.get("pids", "")
    root = Path(cgroup_root)
    if cgroup_version == 1:
        active = [
            child
            for child in (root.iterdir() if root.is_dir() else [])
            if child.is_dir() and (child / _relative(path)).is_dir()
        ]
        if not active:
            raise CgroupDeletedError("cgroup deleted")
        return CgroupV1StatReader(root=root, path=path)
    return CgroupV2StatReader(directory=root / _relative(path))