"""Resolve processes and cgroups to the Kubernetes containers they belong to."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

logger = logging.getLogger(__name__)

SYSTEM_PROCESS_NAME = "system_processes"
SYSTEM_PROCESS_NAMESPACE = "system"

UNKNOWN_PATH = "unknown"
PROC_ROOT = "/proc"
CGROUP_ROOT = "/sys/fs/cgroup"

_FIND_CONTAINER_ID_PATH = re.compile(r".*-(.*?)\.scope")
_REPLACE_CONTAINER_ID_PATH_PREFIX = re.compile(r".*-")
_REPLACE_CONTAINER_ID_PATH_SUFFIX = re.compile(r"\..*")
_REPLACE_CONTAINER_ID_PREFIX = re.compile(r".*//")

_RUNTIMES = ("crio", "docker", "containerd")
_STATUS_KINDS = ("initContainerStatuses", "containerStatuses", "ephemeralContainerStatuses")


class _PodLister(Protocol):
    def list_pods(self) -> list[Mapping[str, Any]]: ...

    def list_metrics(self) -> tuple[dict[str, float], dict[str, float]]: ...

    def available_metrics(self) -> list[str]: ...


@dataclass
class ContainerInfo:
    """Identity of a container within a pod."""

    container_id: str = SYSTEM_PROCESS_NAME
    container_name: str = SYSTEM_PROCESS_NAME
    pod_name: str = SYSTEM_PROCESS_NAME
    namespace: str = SYSTEM_PROCESS_NAMESPACE


def parse_container_id_from_pod_status(container_id: str) -> str:
    """Strip the runtime scheme (e.g. ``containerd://``) from a pod-status container id."""
    return _REPLACE_CONTAINER_ID_PREFIX.sub("", container_id)


def extract_container_id_from_path(path: str, cgroup_version: int) -> str:
    """Extract a container id from a cgroup path.

    Raises LookupError when, on cgroup v2, the path belongs to a conmon or a
    systemd service rather than to a Kubernetes container.
    """
    for match in _FIND_CONTAINER_ID_PATH.finditer(path):
        element = match.group(0)
        if cgroup_version == 2 and ("-conmon-" in element or ".service" in element):
            raise LookupError("process is not in a kubernetes pod")
        if any(runtime in element for runtime in _RUNTIMES):
            container_id = _REPLACE_CONTAINER_ID_PATH_PREFIX.sub("", element)
            return _REPLACE_CONTAINER_ID_PATH_SUFFIX.sub("", container_id)
    # some platforms (e.g. RHEL) use another layout: take what follows the last colon
    return path.rsplit(":", 1)[-1]


def _cgroup_id_from_inode(path: str) -> int:
    return os.stat(path).st_ino


def _status_entries(pod: Mapping[str, Any]) -> Iterable[Mapping[str, Any]]:
    status = pod.get("status") or {}
    for kind in _STATUS_KINDS:
        yield from status.get(kind) or ()


@dataclass
class ContainerResolver:
    """Maps pids and cgroup ids to container ids and pod information, with caches."""

    pod_lister: _PodLister | None = None
    cgroup_version: int = 2
    proc_root: str | Path = PROC_ROOT
    cgroup_root: str | Path = CGROUP_ROOT
    cgroup_id_of: Callable[[str], int] = _cgroup_id_from_inode
    _id_cache: dict[int, str] = field(default_factory=dict, init=False, repr=False)
    _info_cache: dict[str, ContainerInfo] = field(default_factory=dict, init=False, repr=False)
    _cgroup_paths: dict[int, str] = field(default_factory=dict, init=False, repr=False)

    def _lister(self) -> _PodLister:
        if self.pod_lister is None:
            raise RuntimeError("no pod lister configured")
        return self.pod_lister

    def load_pods(self) -> list[Mapping[str, Any]]:
        """List the pods of this node and register their containers."""
        pods = self._lister().list_pods()
        self.register_pods(pods)
        return pods

    def register_pods(self, pods: Iterable[Mapping[str, Any]]) -> set[str]:
        """Record the containers of ``pods`` and return the ids of those alive."""
        alive: set[str] = set()
        for pod in pods:
            metadata = pod.get("metadata") or {}
            for status in _status_entries(pod):
                container_id = parse_container_id_from_pod_status(status.get("containerID", ""))
                alive.add(container_id)
                self._info_cache[container_id] = ContainerInfo(
                    container_id=container_id,
                    container_name=status.get("name", ""),
                    pod_name=metadata.get("name", ""),
                    namespace=metadata.get("namespace", ""),
                )
        return alive

    def alive_containers(self) -> set[str]:
        """Ids of the containers in the pods currently listed."""
        return self.register_pods(self._lister().list_pods())

    def container_id(self, cgroup_id: int, pid: int, with_cgroup_id: bool) -> str:
        """The container id of a process; LookupError if it cannot be resolved."""
        return self.container_info(cgroup_id, pid, with_cgroup_id).container_id

    def container_info(self, cgroup_id: int, pid: int, with_cgroup_id: bool) -> ContainerInfo:
        """The container information of a process.

        Containers that are not known Kubernetes containers resolve to the
        system-process entry. Raises LookupError when no container id is found.
        """
        if with_cgroup_id:
            container_id = self._container_id_from_cgroup_id(cgroup_id)
        else:
            container_id = self.container_id_from_pid(pid)

        known = self._info_cache.get(container_id)
        if known is not None:
            return known
        info = ContainerInfo()
        self._info_cache[container_id] = info
        # an id outside Kubernetes is accounted as a system process
        if info.container_name == SYSTEM_PROCESS_NAME:
            container_id = SYSTEM_PROCESS_NAME
            self._info_cache.setdefault(container_id, info)
        return self._info_cache[container_id]

    def add_container_id_to_cache(self, pid: int, container_id: str) -> None:
        """Remember the container id of a pid (or cgroup id)."""
        self._id_cache[pid] = container_id

    def container_id_from_pid(self, pid: int) -> str:
        """Find the container id of a process from its cgroup file.

        Raises LookupError when the cgroup file cannot be read or holds no
        container id; in the latter case the fallback id is still cached.
        """
        if pid in self._id_cache:
            return self._id_cache[pid]
        path = self._path_from_pid(pid)
        self._extract_and_cache(pid, path)
        return self._id_cache[pid]

    def container_metrics(self) -> tuple[dict[str, float], dict[str, float]]:
        """Per-container CPU and memory readings from the kubelet."""
        if self.pod_lister is None:
            return {}, {}
        return self.pod_lister.list_metrics()

    def available_kubelet_metrics(self) -> list[str]:
        """Names of the metrics the kubelet provides."""
        if self.pod_lister is None:
            return []
        return list(self.pod_lister.available_metrics())

    def _extract_and_cache(self, key: int, path: str) -> None:
        try:
            container_id = extract_container_id_from_path(path, self.cgroup_version)
        except LookupError:
            self.add_container_id_to_cache(key, "")
            raise
        self.add_container_id_to_cache(key, container_id)

    def _path_from_pid(self, pid: int) -> str:
        path = Path(self.proc_root) / str(pid) / "cgroup"
        try:
            text = path.read_text()
        except OSError as err:
            raise LookupError(f"failed to open cgroup description file for pid {pid}: {err}") from err
        for line in text.splitlines():
            if "pod" in line or "containerd" in line or "crio" in line:
                return line
        raise LookupError(f"could not find cgroup description entry for pid {pid}")

    def _container_id_from_cgroup_id(self, cgroup_id: int) -> str:
        if cgroup_id in self._id_cache:
            return self._id_cache[cgroup_id]
        path = self._path_from_cgroup_id(cgroup_id)
        self._extract_and_cache(cgroup_id, path)
        return self._id_cache[cgroup_id]

    def _path_from_cgroup_id(self, cgroup_id: int) -> str:
        if cgroup_id in self._cgroup_paths:
            return self._cgroup_paths[cgroup_id]
        errors: list[OSError] = []
        for dirpath, _dirnames, _filenames in os.walk(self.cgroup_root, onerror=errors.append):
            if errors:
                break
            try:
                self._cgroup_paths[self.cgroup_id_of(dirpath)] = dirpath
            except OSError as err:
                errors.append(err)
                break
        if errors:
            raise LookupError(f"failed to find cgroup id: {errors[0]}") from errors[0]
        return self._cgroup_paths.setdefault(cgroup_id, UNKNOWN_PATH)