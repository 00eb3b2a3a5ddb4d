"""Network interfaces of a sandbox and how they are handed to the VM."""

from __future__ import annotations

import enum
import fcntl
import os
import struct
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from vmsandbox.address import CniIPAddress, IpNet, MacAddress
from vmsandbox.device import (
    DeviceInfo,
    InvalidArgumentError,
    PhysicalDeviceInfo,
    SandboxError,
    TapDeviceInfo,
    VhostUserDeviceInfo,
)

DEVICE_DRIVER_VFIO = "vfio-pci"

TUNSETIFF = 0x400454CA
TUNSETPERSIST = 0x400454CB

IFF_TAP = 0x0002
IFF_MULTI_QUEUE = 0x0100
IFF_NO_PI = 0x1000
IFF_VNET_HDR = 0x4000

_TUN_DEVICE = "/dev/net/tun"
_MAX_TAP_NAME_LEN = 15

_FAMILY_V4 = 0
_FAMILY_V6 = 1


class LinkKind(enum.Enum):
    UNKNOWN = ""
    BRIDGE = "bridge"
    VETH = "veth"
    VLAN = "vlan"
    VXLAN = "vxlan"
    BOND = "bond"
    IPVLAN = "ipvlan"
    MACVLAN = "macvlan"
    MACVTAP = "macvtap"
    IPTUN = "iptun"
    TUN = "tun"
    VHOST_USER = "vhostuser"
    PHYSICAL = "physical"
    TAP = "tap"
    LOOPBACK = "loopback"

    def __str__(self) -> str:
        return self.value


_SIMPLE_KINDS = {
    "bridge": LinkKind.BRIDGE,
    "tun": LinkKind.TUN,
    "veth": LinkKind.VETH,
    "bond": LinkKind.BOND,
    "ipip": LinkKind.IPTUN,
    "iptun": LinkKind.IPTUN,
}

# kinds whose first info attribute carries their value, and that attribute's name
_VALUED_KINDS = {
    "vlan": (LinkKind.VLAN, "id"),
    "vxlan": (LinkKind.VXLAN, "id"),
    "ipvlan": (LinkKind.IPVLAN, "mode"),
    "macvlan": (LinkKind.MACVLAN, "mode"),
    "macvtap": (LinkKind.MACVTAP, "mode"),
}


@dataclass(frozen=True)
class LinkType:
    """The kind of a link with the data that kind carries.

    ``value`` is the id of a vlan or vxlan and the mode of an ipvlan,
    macvlan or macvtap; ``socket_path`` belongs to vhost-user links and
    ``bdf`` and ``driver`` to physical ones.
    """

    kind: LinkKind = LinkKind.UNKNOWN
    value: int | None = None
    socket_path: str = ""
    bdf: str = ""
    driver: str = ""

    @classmethod
    def from_info_data(
        cls, kind: str, attributes: Sequence[tuple[str, Any]] = ()
    ) -> LinkType:
        """Build a link type from a link's info kind and its data attributes."""
        if kind in _SIMPLE_KINDS:
            return cls(_SIMPLE_KINDS[kind])
        if kind in _VALUED_KINDS:
            link_kind, attr_name = _VALUED_KINDS[kind]
            if attributes:
                name, value = attributes[0]
                if name == attr_name:
                    return cls(link_kind, value=value)
        return cls()

    def __str__(self) -> str:
        return str(self.kind)


def _required(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise InvalidArgumentError(f"missing field `{key}`") from None


@dataclass
class NetworkInterface:
    device: str = ""
    type: LinkType = field(default_factory=LinkType)
    index: int = 0
    name: str = ""
    cni_ip_addresses: list[CniIPAddress] = field(default_factory=list)
    ip_addresses: list[IpNet] = field(default_factory=list)
    mac_address: MacAddress = field(default_factory=MacAddress)
    mtu: int = 0
    flags: int = 0
    alias: str = ""
    pci_address: str = ""
    cni_link_type: str = ""
    vhost_user_socket: str = ""
    twin: NetworkInterface | None = None
    fds: list[int] = field(default_factory=list)
    queue: int = 0

    @classmethod
    def from_cni(cls, data: Mapping[str, Any]) -> NetworkInterface:
        """Read an interface from its CNI result form."""
        addresses = [
            CniIPAddress(address=a.get("address", ""), mask=a.get("mask", ""))
            for a in _required(data, "IPAddresses")
        ]
        return cls(
            device=data.get("device", ""),
            name=data.get("name", ""),
            cni_ip_addresses=addresses,
            mac_address=MacAddress.parse(_required(data, "hwAddr")),
            mtu=data.get("mtu", 0),
            vhost_user_socket=_required(data, "vhostUserSocket"),
        )

    def init_cni_interface(self) -> None:
        """Derive the link type and addresses from the CNI fields."""
        if self.vhost_user_socket:
            self.type = LinkType(
                LinkKind.VHOST_USER, socket_path=self.vhost_user_socket
            )
        else:
            self.type = LinkType(LinkKind.TAP)
        self.ip_addresses = [IpNet.parse(ip.cidr()) for ip in self.cni_ip_addresses]

    def to_agent_interface(self) -> dict[str, Any]:
        """Describe the interface for the guest agent, IPv4 addresses only."""
        return {
            "device": self.name,
            "name": self.name,
            "IPAddresses": [
                ip_net_to_agent(ip) for ip in self.ip_addresses if ip.ip.version == 4
            ],
            "mtu": self.mtu,
            "hwAddr": str(self.mac_address),
            "raw_flags": self.flags,
            "type": "",
        }

    def device_info(self) -> DeviceInfo | None:
        """Return the device to attach to the VM for this interface, if any."""
        device_id = f"intf-{self.index}"
        match self.type.kind:
            case LinkKind.VETH:
                if self.twin is None:
                    raise SandboxError(
                        f"no tap interface created for veth {self.name}"
                    )
                return TapDeviceInfo(
                    id=device_id,
                    index=self.index,
                    name=self.twin.name,
                    mac_address=str(self.mac_address),
                    fds=list(self.twin.fds),
                )
            case LinkKind.VHOST_USER:
                return VhostUserDeviceInfo(
                    id=device_id,
                    socket_path=self.type.socket_path,
                    mac_address=str(self.mac_address),
                    type="virtio-net-pci",
                )
            case LinkKind.PHYSICAL:
                return PhysicalDeviceInfo(id=device_id, bdf=self.type.bdf)
            case LinkKind.TAP:
                return TapDeviceInfo(
                    id=device_id,
                    index=self.index,
                    name=self.name,
                    mac_address=str(self.mac_address),
                    fds=[],
                )
            case _:
                return None


def ip_net_to_agent(ip_net: IpNet) -> dict[str, Any]:
    return {
        "family": _FAMILY_V6 if ip_net.ip.version == 6 else _FAMILY_V4,
        "address": ip_net.addr_string(),
        "mask": str(ip_net.prefix_len),
    }


def route_to_agent(route: Any) -> dict[str, Any]:
    return {
        "dest": route.dest,
        "gateway": route.gateway,
        "device": route.device,
        "source": route.source,
        "scope": route.scope,
        "family": _FAMILY_V4,
    }


def qdisc_ingress_command(name: str) -> list[str]:
    return ["tc", "qdisc", "add", "dev", name, "ingress"]


def redirect_filter_command(name: str, dest: str) -> list[str]:
    return [
        "tc", "filter", "add", "dev", name,
        "parent", "ffff:", "protocol", "all",
        "u32", "match", "u8", "0", "0",
        "action", "mirred", "egress", "redirect", "dev", dest,
    ]


def create_tap_device(tap_name: str, queue: int) -> list[int]:
    """Create a persistent multi-queue tap device and return its queue fds."""
    name = tap_name.encode()
    if len(name) > _MAX_TAP_NAME_LEN:
        raise SandboxError(f"tap name {tap_name} length should less than 15")
    queue = queue or 1
    flags = IFF_TAP | IFF_NO_PI | IFF_MULTI_QUEUE | IFF_VNET_HDR
    request = struct.pack("16sH22x", name, flags)

    fds: list[int] = []
    try:
        for _ in range(queue):
            try:
                fd = os.open(_TUN_DEVICE, os.O_RDWR | os.O_CLOEXEC)
            except OSError as exc:
                raise SandboxError(f"failed to open tun device: {exc}") from exc
            fds.append(fd)
            try:
                fcntl.ioctl(fd, TUNSETIFF, request)
            except OSError as exc:
                raise SandboxError(f"failed to do ioctl_tun_set_iff: {exc}") from exc
        try:
            fcntl.ioctl(fds[0], TUNSETPERSIST, 1)
        except OSError as exc:
            raise SandboxError(
                f"failed to do ioctl_tun_set_persist: {exc}"
            ) from exc
    except SandboxError:
        for fd in fds:
            os.close(fd)
        raise
    return fds


def _device_dir(bdf: str, sysfs_root: str | os.PathLike[str]) -> Path:
    return Path(sysfs_root) / "bus" / "pci" / "devices" / bdf


def get_pci_driver(bdf: str, sysfs_root: str | os.PathLike[str] = "/sys") -> str:
    """Return the name of the driver a PCI device is bound to."""
    target = os.readlink(_device_dir(bdf, sysfs_root) / "driver")
    name = Path(target).name
    if not name:
        raise SandboxError(f"failed to get file name from driver path {target!r}")
    return name


def bind_device_to_driver(
    driver: str, bdf: str, sysfs_root: str | os.PathLike[str] = "/sys"
) -> None:
    """Rebind a PCI device to the given driver and check that it took."""
    device_dir = _device_dir(bdf, sysfs_root)
    (device_dir / "driver_override").write_text(driver)
    unbind = device_dir / "driver" / "unbind"
    if unbind.exists():
        unbind.write_text(bdf)
    (Path(sysfs_root) / "bus" / "pci" / "drivers_probe").write_text(bdf)
    result_driver = Path(os.readlink(device_dir / "driver")).name
    if not result_driver:
        raise SandboxError(f"failed to get driver name from {device_dir / 'driver'}")
    if result_driver != driver:
        raise SandboxError(
            f"device {bdf} driver is {result_driver} after executing bind to {driver}"
        )