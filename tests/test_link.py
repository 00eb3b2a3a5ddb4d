import ipaddress
import os
from dataclasses import dataclass

import pytest

from vmsandbox.address import CniIPAddress, IpNet, MacAddress
from vmsandbox.device import (
    InvalidArgumentError,
    PhysicalDeviceInfo,
    SandboxError,
    TapDeviceInfo,
    VhostUserDeviceInfo,
)
from vmsandbox.link import (
    LinkKind,
    LinkType,
    NetworkInterface,
    bind_device_to_driver,
    create_tap_device,
    get_pci_driver,
    ip_net_to_agent,
    qdisc_ingress_command,
    redirect_filter_command,
    route_to_agent,
)

MAC = "02:00:00:00:00:01"
BDF = "0000:00:1f.0"


@dataclass
class _Route:
    dest: str
    gateway: str
    device: str
    source: str
    scope: int


def test_add_tap_device_with_long_name():
    with pytest.raises(SandboxError):
        create_tap_device("add_tap_device_with_long_name", 1)


def test_tap_name_of_sixteen_chars_rejected():
    with pytest.raises(SandboxError, match="length should less than 15"):
        create_tap_device("a" * 16, 1)


@pytest.mark.parametrize(
    "kind,expected",
    [(LinkKind.UNKNOWN, ""), (LinkKind.VHOST_USER, "vhostuser"), (LinkKind.LOOPBACK, "loopback")],
)
def test_link_type_str(kind, expected):
    assert str(LinkType(kind)) == expected


@pytest.mark.parametrize(
    "kind,attrs,expected",
    [
        ("bridge", [], LinkType(LinkKind.BRIDGE)),
        ("veth", [], LinkType(LinkKind.VETH)),
        ("vlan", [("id", 100)], LinkType(LinkKind.VLAN, value=100)),
        ("vxlan", [("id", 42)], LinkType(LinkKind.VXLAN, value=42)),
        ("macvlan", [("mode", 4)], LinkType(LinkKind.MACVLAN, value=4)),
        ("ipvlan", [("mode", 1)], LinkType(LinkKind.IPVLAN, value=1)),
        ("vlan", [("protocol", 1), ("id", 5)], LinkType()),
        ("vlan", [], LinkType()),
        ("dummy", [], LinkType()),
    ],
)
def test_from_info_data(kind, attrs, expected):
    assert LinkType.from_info_data(kind, attrs) == expected


def _cni_data(**overrides):
    data = {
        "name": "eth0",
        "IPAddresses": [
            {"address": "10.0.0.2", "mask": "24"},
            {"address": "fd00::2", "mask": "64"},
        ],
        "hwAddr": MAC,
        "mtu": 1500,
        "vhostUserSocket": "",
    }
    data.update(overrides)
    return data


def test_from_cni_reads_fields():
    intf = NetworkInterface.from_cni(_cni_data())
    assert intf.name == "eth0"
    assert intf.mtu == 1500
    assert str(intf.mac_address) == MAC
    assert intf.cni_ip_addresses[0] == CniIPAddress(address="10.0.0.2", mask="24")


def test_from_cni_missing_field():
    data = _cni_data()
    del data["hwAddr"]
    with pytest.raises(InvalidArgumentError, match="hwAddr"):
        NetworkInterface.from_cni(data)


def test_init_cni_interface_tap():
    intf = NetworkInterface.from_cni(_cni_data())
    intf.init_cni_interface()
    assert intf.type.kind is LinkKind.TAP
    assert intf.ip_addresses[0] == IpNet(ipaddress.ip_address("10.0.0.2"), 24)
    assert intf.ip_addresses[1].prefix_len == 64


def test_init_cni_interface_vhost_user():
    intf = NetworkInterface.from_cni(_cni_data(vhostUserSocket="/run/vhost.sock"))
    intf.init_cni_interface()
    assert intf.type == LinkType(LinkKind.VHOST_USER, socket_path="/run/vhost.sock")


def test_to_agent_interface_keeps_only_ipv4():
    intf = NetworkInterface.from_cni(_cni_data())
    intf.init_cni_interface()
    intf.flags = 4099
    agent = intf.to_agent_interface()
    assert agent["device"] == "eth0"
    assert agent["hwAddr"] == MAC
    assert agent["raw_flags"] == 4099
    assert agent["IPAddresses"] == [{"family": 0, "address": "10.0.0.2", "mask": "24"}]


def test_ip_net_to_agent_v6():
    result = ip_net_to_agent(IpNet.parse("fd00::1/64"))
    assert result == {"family": 1, "address": "fd00::1", "mask": "64"}


def test_route_to_agent():
    route = _Route("192.168.1.0/24", "192.168.1.1", "eth0", "", 0)
    assert route_to_agent(route) == {
        "dest": "192.168.1.0/24",
        "gateway": "192.168.1.1",
        "device": "eth0",
        "source": "",
        "scope": 0,
        "family": 0,
    }


def test_device_info_tap():
    intf = NetworkInterface(
        type=LinkType(LinkKind.TAP), index=3, name="tap0", mac_address=MacAddress.parse(MAC)
    )
    assert intf.device_info() == TapDeviceInfo("intf-3", 3, "tap0", MAC, [])


def test_device_info_veth_uses_twin():
    twin = NetworkInterface(name="tap_kuasar_2", fds=[7, 8])
    intf = NetworkInterface(
        type=LinkType(LinkKind.VETH), index=2, name="eth0",
        mac_address=MacAddress.parse(MAC), twin=twin,
    )
    assert intf.device_info() == TapDeviceInfo("intf-2", 2, "tap_kuasar_2", MAC, [7, 8])


def test_device_info_veth_without_twin():
    intf = NetworkInterface(type=LinkType(LinkKind.VETH), name="eth0")
    with pytest.raises(SandboxError, match="no tap interface created for veth eth0"):
        intf.device_info()


def test_device_info_vhost_user_and_physical():
    vhost = NetworkInterface(
        type=LinkType(LinkKind.VHOST_USER, socket_path="/s.sock"),
        index=1, mac_address=MacAddress.parse(MAC),
    )
    assert vhost.device_info() == VhostUserDeviceInfo("intf-1", "/s.sock", MAC, "virtio-net-pci")
    phys = NetworkInterface(type=LinkType(LinkKind.PHYSICAL, bdf=BDF, driver="e1000"), index=5)
    assert phys.device_info() == PhysicalDeviceInfo("intf-5", BDF)


def test_device_info_loopback_is_none():
    assert NetworkInterface(type=LinkType(LinkKind.LOOPBACK)).device_info() is None


def test_tc_commands():
    assert qdisc_ingress_command("eth0") == ["tc", "qdisc", "add", "dev", "eth0", "ingress"]
    cmd = redirect_filter_command("eth0", "tap0")
    assert cmd[:5] == ["tc", "filter", "add", "dev", "eth0"]
    assert cmd[-4:] == ["redirect", "dev", "tap0"][-4:] or cmd[-3:] == ["redirect", "dev", "tap0"]
    assert cmd[-3:] == ["redirect", "dev", "tap0"]
    assert "ffff:" in cmd


def _sysfs(tmp_path, bound_driver):
    drivers = tmp_path / "bus" / "pci" / "drivers"
    (drivers / bound_driver).mkdir(parents=True)
    device_dir = tmp_path / "bus" / "pci" / "devices" / BDF
    device_dir.mkdir(parents=True)
    os.symlink(drivers / bound_driver, device_dir / "driver")
    return device_dir


def test_get_pci_driver(tmp_path):
    _sysfs(tmp_path, "e1000")
    assert get_pci_driver(BDF, tmp_path) == "e1000"


def test_bind_device_to_driver_mismatch(tmp_path):
    _sysfs(tmp_path, "e1000")
    with pytest.raises(SandboxError, match="driver is e1000 after executing bind to vfio-pci"):
        bind_device_to_driver("vfio-pci", BDF, tmp_path)