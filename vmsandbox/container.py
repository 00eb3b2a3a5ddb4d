"""Containers and processes kept by a sandbox."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

NULL_DEVICE = "/dev/null"

NAMESPACE_PID = "pid"
NAMESPACE_NET = "network"
NAMESPACE_MNT = "mount"
NAMESPACE_CGROUP = "cgroup"

_DROPPED_NAMESPACES = frozenset({NAMESPACE_NET, NAMESPACE_CGROUP})


@dataclass
class KuasarProcess:
    """A process of a container; its id comes from its data."""

    data: dict[str, Any]
    io_devices: list[str] = field(default_factory=list)
    id: str = field(init=False)

    def __post_init__(self) -> None:
        self.id = str(self.data.get("id", ""))


@dataclass
class KuasarContainer:
    id: str
    data: dict[str, Any]
    io_devices: list[str] = field(default_factory=list)
    processes: list[KuasarProcess] = field(default_factory=list)

    def get_data(self) -> dict[str, Any]:
        """Return a copy of the container data with its current processes."""
        data = copy.deepcopy(self.data)
        data["processes"] = [copy.deepcopy(p.data) for p in self.processes]
        return data


def strip_namespaces(spec: dict[str, Any] | None) -> None:
    """Drop network and cgroup namespaces and clear namespace paths, in place.

    The VM provides these itself, so the guest must not join host paths.
    """
    if spec is None:
        return
    linux = spec.get("linux")
    if not linux:
        return
    namespaces = [
        ns for ns in linux.get("namespaces", []) if ns.get("type") not in _DROPPED_NAMESPACES
    ]
    for ns in namespaces:
        ns["path"] = ""
    linux["namespaces"] = namespaces