"""Device descriptions, error types and bus slot bookkeeping for sandbox VMs."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from itertools import islice


class SandboxError(Exception):
    """Base error for sandbox operations."""


class NotFoundError(SandboxError):
    """A requested object does not exist."""


class ResourceExhaustedError(SandboxError):
    """A limited resource has no room left."""


class InvalidArgumentError(SandboxError):
    """An argument is not acceptable."""


class BusType(enum.Enum):
    PCI = "pci"
    PCIE = "pcie"
    CCW = "ccw"
    SCSI = "scsi"
    MMIO = "mmio"
    SERIAL = "serial"
    NULL = "null"


@dataclass
class Slot:
    """A bus slot; empty when no device id occupies it."""

    device_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.device_id is None


@dataclass
class Bus:
    """A bus with a fixed list of slots."""

    type: BusType = BusType.PCI
    id: str = ""
    bus_addr: str = ""
    slots: list[Slot] = field(default_factory=list)

    def empty_slot(self) -> int | None:
        """Return the first empty slot index, never slot 0."""
        # Some hypervisor versions require slot numbering to start at 1.
        for index, slot in islice(enumerate(self.slots), 1, None):
            if slot.is_empty:
                return index
        return None

    def attach(self, device_id: str) -> int:
        """Occupy the first empty slot with the device and return its index."""
        for index, slot in enumerate(self.slots):
            if slot.is_empty:
                slot.device_id = device_id
                return index
        raise ResourceExhaustedError("bus is full")

    def device_slot(self, device_id: str) -> int | None:
        """Return the index of the slot holding the device, never slot 0."""
        for index, slot in islice(enumerate(self.slots), 1, None):
            if slot.device_id == device_id:
                return index
        return None


class Transport(enum.Enum):
    PCI = "pci"
    CCW = "ccw"
    MMIO = "device"

    def to_driver(self, ty: str) -> str:
        """Return the driver name of a device type on this transport."""
        return f"{ty}-{self.value}"

    def disable_modern(self, disable: bool) -> bool | None:
        """Return the disable-modern flag where the transport supports it."""
        return disable if self is Transport.PCI else None


@dataclass
class BlockDeviceInfo:
    id: str
    path: str
    read_only: bool = False


@dataclass
class TapDeviceInfo:
    id: str
    index: int
    name: str
    mac_address: str
    fds: list[int] = field(default_factory=list)


@dataclass
class PhysicalDeviceInfo:
    id: str
    bdf: str


@dataclass
class VhostUserDeviceInfo:
    id: str
    socket_path: str
    mac_address: str
    type: str


class CharBackendType(enum.Enum):
    PIPE = "pipe"
    SOCKET = "socket"


@dataclass
class CharDeviceInfo:
    id: str
    chardev_id: str
    name: str
    backend: CharBackendType
    path: str


DeviceInfo = (
    BlockDeviceInfo
    | TapDeviceInfo
    | PhysicalDeviceInfo
    | VhostUserDeviceInfo
    | CharDeviceInfo
)