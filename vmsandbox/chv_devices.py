"""Devices handed to cloud-hypervisor and its API request bodies."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import Any, ClassVar

from vmsandbox.device import SandboxError
from vmsandbox.params import PropertySet, bool_to_on_off, param_field


def _bracketed(values: Sequence[Any]) -> str:
    return "[" + ",".join(str(v) for v in values) + "]"


class _Device(PropertySet):
    """A device that sits on no bus of its own."""

    bus: ClassVar[None] = None


@dataclass(kw_only=True)
class Disk(_Device):
    path: str
    id: str
    readonly: bool | None = None
    direct: bool | None = None
    iommu: bool | None = None
    num_queues: int | None = None
    bw_refill_time: int | None = None
    ops_size: int | None = None
    ope_one_time_burst: int | None = None
    ops_refill_time: int | None = None
    pci_segment: str | None = None


@dataclass
class DiskConfig:
    """Body of a disk hot-plug request."""

    path: str
    readonly: bool
    direct: bool
    vhost_user: bool
    vhost_socket: str | None
    id: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))


@dataclass(kw_only=True)
class Console(_Device):
    id: str = param_field(ignore=True)
    file: str | None = None
    iommu: bool | None = None


@dataclass(kw_only=True)
class PhysicalDevice(_Device, params_name="device"):
    path: str
    id: str
    iommu: bool | None = None


@dataclass(kw_only=True)
class Fs(_Device):
    tag: str
    socket: str
    id: str


@dataclass(kw_only=True)
class Pmem(_Device):
    id: str
    file: str
    size: int | None = None
    iommu: bool | None = param_field(default=None, generator=bool_to_on_off)
    discard_writes: bool | None = param_field(
        default=None, key="discard_writes", generator=bool_to_on_off
    )


@dataclass(kw_only=True)
class Rng(_Device):
    id: str = param_field(ignore=True)
    src: str
    iommu: bool | None = None


@dataclass(kw_only=True)
class VirtioNetDevice(_Device, params_name="net"):
    """A network device backed by a named tap or by already opened tap fds.

    With fds the device is given ``fd`` and ``num_queues``; without them
    it is given the tap name. ``num_queues`` defaults to two per fd.
    """

    id: str
    ifname: str | None = param_field(
        default=None, key="tap", predicate=lambda dev: not dev.fds
    )
    fds: list[int] = param_field(
        default_factory=list,
        key="fd",
        predicate=lambda dev: bool(dev.fds),
        generator=_bracketed,
    )
    mac: str
    num_queues: int | None = param_field(
        default=None, key="num_queues", predicate=lambda dev: bool(dev.fds)
    )

    def __post_init__(self) -> None:
        if self.num_queues is None:
            self.num_queues = len(self.fds) * 2


@dataclass(kw_only=True)
class Vsock(_Device):
    cid: int
    socket: str
    id: str
    iommu: bool | None = None


@dataclass
class AddDeviceResponse:
    id: str
    bdf: str

    @classmethod
    def from_json(cls, text: str) -> AddDeviceResponse:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise SandboxError(f"failed to unmarshal response {text}, {exc}") from exc
        if not isinstance(data, dict):
            raise SandboxError(f"failed to unmarshal response {text}, not an object")
        values = {}
        for key in ("id", "bdf"):
            value = data.get(key)
            if not isinstance(value, str):
                raise SandboxError(
                    f"failed to unmarshal response {text}, bad field `{key}`"
                )
            values[key] = value
        return cls(**values)


@dataclass
class RemoveDeviceRequest:
    id: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))