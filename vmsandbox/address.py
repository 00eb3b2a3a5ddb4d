"""IP network, MAC address and CNI address values."""

from __future__ import annotations

import ipaddress
import string
from dataclasses import dataclass

from vmsandbox.device import SandboxError

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

_UNSPECIFIED = ipaddress.IPv4Address("0.0.0.0")


@dataclass
class CniIPAddress:
    family: int = 0
    address: str = ""
    mask: str = ""

    def cidr(self) -> str:
        return f"{self.address}/{self.mask}"


def _parse_u8(text: str) -> int | None:
    if text.startswith("+"):
        text = text[1:]
    if not text or not (text.isascii() and text.isdigit()):
        return None
    value = int(text)
    return value if value <= 255 else None


@dataclass(frozen=True)
class IpNet:
    """An address together with a prefix length."""

    ip: IPAddress = _UNSPECIFIED
    prefix_len: int = 32

    @classmethod
    def parse(cls, text: str) -> IpNet:
        """Parse ``addr/prefix``; unparsable parts keep 0.0.0.0 and 32."""
        parts = text.split("/")
        ip: IPAddress = _UNSPECIFIED
        prefix_len = 32
        try:
            ip = ipaddress.ip_address(parts[0])
        except ValueError:
            pass
        if len(parts) == 2:
            parsed = _parse_u8(parts[1])
            if parsed is not None:
                prefix_len = parsed
        return cls(ip, prefix_len)

    def addr_string(self) -> str:
        return str(self.ip)

    def netmask(self) -> IPAddress:
        bits = self.ip.max_prefixlen
        shift = bits - self.prefix_len
        if shift < 0:
            raise ValueError(f"prefix length {self.prefix_len} exceeds {bits} bits")
        full = (1 << bits) - 1
        mask = (full << shift) & full if shift < bits else 0
        return type(self.ip)(mask)

    def __str__(self) -> str:
        return f"{self.addr_string()}/{self.prefix_len}"


def _parse_octet(segment: str) -> int:
    if segment.startswith("+"):
        segment = segment[1:]
    if not segment or any(c not in string.hexdigits for c in segment):
        return 0
    value = int(segment, 16)
    return value if value <= 255 else 0


@dataclass(frozen=True)
class MacAddress:
    octets: bytes = b""

    @classmethod
    def parse(cls, text: str) -> MacAddress:
        """Parse colon separated hex octets; bad octets become zero."""
        return cls(bytes(_parse_octet(seg) for seg in text.split(":")))

    def __str__(self) -> str:
        return ":".join(f"{b:02x}" for b in self.octets)


def convert_to_ip_address(addr: bytes) -> IPAddress:
    """Turn 4 or 16 raw bytes into an address."""
    match len(addr):
        case 4:
            return ipaddress.IPv4Address(bytes(addr))
        case 16:
            return ipaddress.IPv6Address(bytes(addr))
        case n:
            raise SandboxError(f"ip address vec has length {n}")