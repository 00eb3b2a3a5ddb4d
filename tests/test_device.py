import pytest

from vmsandbox.device import (
    Bus,
    BusType,
    CharBackendType,
    CharDeviceInfo,
    ResourceExhaustedError,
    SandboxError,
    Slot,
    Transport,
)


def make_bus(n):
    return Bus(slots=[Slot() for _ in range(n)])


def test_default_bus_is_pci_and_empty():
    bus = Bus()
    assert bus.type is BusType.PCI
    assert bus.slots == []
    assert bus.empty_slot() is None


def test_empty_slot_skips_first():
    bus = make_bus(3)
    assert bus.empty_slot() == 1


def test_attach_fills_in_order_and_exhausts():
    bus = make_bus(3)
    indices = [bus.attach(f"d{i}") for i in range(3)]
    assert indices == list(range(3))
    with pytest.raises(ResourceExhaustedError, match="bus is full"):
        bus.attach("extra")


def test_device_slot_lookup():
    bus = make_bus(3)
    indices = [bus.attach(f"d{i}") for i in range(3)]
    assert bus.device_slot("d1") == indices[1]
    assert bus.device_slot("d2") == indices[2]
    # slot 0 is never reported
    assert bus.device_slot("d0") is None
    assert bus.device_slot("missing") is None


def test_empty_slot_none_when_only_first_free():
    bus = make_bus(3)
    bus.slots[1].device_id = "a"
    bus.slots[2].device_id = "b"
    assert bus.empty_slot() is None
    assert bus.slots[0].is_empty


def test_empty_slot_after_release():
    bus = make_bus(4)
    for i in range(4):
        bus.attach(f"d{i}")
    bus.slots[2].device_id = None
    assert bus.empty_slot() == bus.device_slot("d3") - 1


@pytest.mark.parametrize(
    "transport, suffix",
    [(Transport.PCI, "pci"), (Transport.CCW, "ccw"), (Transport.MMIO, "device")],
)
def test_transport_driver(transport, suffix):
    assert transport.to_driver("virtio-blk") == f"virtio-blk-{suffix}"


@pytest.mark.parametrize("flag", [True, False])
def test_disable_modern(flag):
    assert Transport.PCI.disable_modern(flag) is flag
    assert Transport.CCW.disable_modern(flag) is None
    assert Transport.MMIO.disable_modern(flag) is None


def test_error_hierarchy():
    with pytest.raises(SandboxError, match="bus is full") as excinfo:
        Bus().attach("d0")
    assert excinfo.type is ResourceExhaustedError


def test_char_device_info_backend():
    info = CharDeviceInfo("dev", "chardev1", "chardev1", CharBackendType.PIPE, "/tmp/p")
    assert info.backend is CharBackendType.PIPE
    assert info.path == "/tmp/p"