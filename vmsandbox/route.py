"""Routes read from the kernel's routing table."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from vmsandbox.address import convert_to_ip_address
from vmsandbox.device import SandboxError

RT_TABLE_MAIN = 254


class _Interface(Protocol):
    index: int
    name: str


@dataclass
class RouteMessage:
    """The parts of a routing netlink message that routes are built from."""

    table: int = RT_TABLE_MAIN
    scope: int = 0
    destination_prefix_length: int = 0
    destination: bytes = b""
    source: bytes = b""
    gateway: bytes = b""
    oif: int | None = None


@dataclass
class Route:
    device: str = ""
    source: str = ""
    # in the form "192.168.1.0/24"
    dest: str = ""
    gateway: str = ""
    scope: int = 0

    @classmethod
    def parse_from_message(
        cls, msg: RouteMessage, interfaces: Iterable[_Interface]
    ) -> Route:
        """Build a route from a main-table message, naming its device."""
        if msg.table != RT_TABLE_MAIN:
            raise SandboxError("ignore routes not in main table")
        route = cls(scope=msg.scope)
        if msg.destination:
            ip = convert_to_ip_address(msg.destination)
            route.dest = f"{ip}/{msg.destination_prefix_length}"
        if msg.source:
            route.source = str(convert_to_ip_address(msg.source))
        if msg.gateway:
            route.gateway = str(convert_to_ip_address(msg.gateway))
        if msg.oif is not None:
            intf = next((i for i in interfaces if i.index == msg.oif), None)
            if intf is None:
                raise SandboxError(f"can not find the device by index {msg.oif}")
            route.device = intf.name
        return route