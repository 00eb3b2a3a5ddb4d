"""The network of a sandbox and running work inside a network namespace."""

from __future__ import annotations

import enum
import logging
import os
import subprocess
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TypeVar

from vmsandbox.device import SandboxError
from vmsandbox.link import LinkKind, NetworkInterface, bind_device_to_driver
from vmsandbox.route import Route

T = TypeVar("T")

log = logging.getLogger(__name__)

_SELF_NETNS = "/proc/self/ns/net"

_ATTACHABLE_KINDS = frozenset(
    {
        LinkKind.VETH,
        LinkKind.VHOST_USER,
        LinkKind.PHYSICAL,
        LinkKind.TAP,
        LinkKind.LOOPBACK,
    }
)


class NetType(enum.Enum):
    TAP = enum.auto()
    MAC_VTAP = enum.auto()
    IP_VTAP = enum.auto()
    VETH_TAP = enum.auto()
    VHOST_USER = enum.auto()

    def __str__(self) -> str:
        return "vhost-user" if self is NetType.VHOST_USER else "tap"


@dataclass
class NetworkConfig:
    netns: str = ""
    sandbox_id: str = ""
    queue: int = 0


@dataclass
class Network:
    """The interfaces and routes a sandbox takes over from its namespace."""

    config: NetworkConfig
    interfaces: list[NetworkInterface] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)

    @staticmethod
    def filter_interfaces(
        interfaces: Iterable[NetworkInterface],
    ) -> list[NetworkInterface]:
        """Keep only the interfaces that can be handed to a VM."""
        return [i for i in interfaces if i.type.kind in _ATTACHABLE_KINDS]

    def destroy(self) -> None:
        """Give physical devices back to their original drivers, logging failures."""
        for intf in self.interfaces:
            if intf.type.kind is not LinkKind.PHYSICAL:
                continue
            try:
                bind_device_to_driver(intf.type.driver, intf.type.bdf)
            except (SandboxError, OSError) as exc:
                log.error(
                    "failed to recycle interface %s when destroying, err %r",
                    intf.name,
                    exc,
                )


def run_in_netns(netns: str | os.PathLike[str], func: Callable[[], T]) -> T:
    """Call ``func`` on a thread that has entered the given network namespace."""
    try:
        target = os.open(netns, os.O_RDONLY | os.O_CLOEXEC)
    except OSError as exc:
        raise SandboxError(f"failed to open netns: {exc}") from exc

    def in_netns() -> T:
        original = os.open(_SELF_NETNS, os.O_RDONLY | os.O_CLOEXEC)
        try:
            try:
                os.setns(target, os.CLONE_NEWNET)
            except OSError as exc:
                raise SandboxError(f"failed to enter netns {netns}: {exc}") from exc
            try:
                return func()
            finally:
                os.setns(original, os.CLONE_NEWNET)
        finally:
            os.close(original)

    try:
        with ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(in_netns).result()
    finally:
        os.close(target)


def execute_in_netns(netns: str, argv: Sequence[str]) -> str:
    """Run a command, inside ``netns`` when it is given, and return its stdout."""

    def run() -> subprocess.CompletedProcess[bytes]:
        return subprocess.run(list(argv), capture_output=True, check=False)

    try:
        output = run_in_netns(netns, run) if netns else run()
    except OSError as exc:
        raise SandboxError(f"failed to execute command: {exc}") from exc
    if output.returncode != 0:
        raise SandboxError(
            f"failed to execute command, command return {output.returncode}, "
            f"stdout: {output.stdout.decode(errors='replace')}, "
            f"stderr: {output.stderr.decode(errors='replace')}"
        )
    try:
        return output.stdout.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SandboxError(f"failed to execute command: {exc}") from exc