"""Connections to the guest agent over unix, vsock and hybrid vsock sockets."""

from __future__ import annotations

import socket
import time

from vmsandbox.device import SandboxError

HVSOCK_RETRY_TIMEOUT_MS = 10
TIME_SYNC_PERIOD_SECS = 60
TIME_DIFF_TOLERANCE_MS = 10
TIME_DIFF_TOLERANCE_NS = TIME_DIFF_TOLERANCE_MS * 1_000_000

_SUN_PATH_LEN = 108
_HVSOCK_READ_SIZE = 4096
_U32_MAX = 0xFFFFFFFF


def parse_socket_address(address: str) -> tuple[str, str]:
    """Split an address into its scheme and the rest.

    Supported forms are ``unix://<path>``, ``vsock://<cid>:<port>``,
    ``hvsock://<path>:<port>`` and a bare unix socket path.
    """
    for scheme in ("unix", "vsock", "hvsock"):
        prefix = f"{scheme}://"
        if address.startswith(prefix):
            return scheme, address[len(prefix):]
    return "unix", address


def _parse_u32(text: str, what: str, address: str) -> int:
    digits = text[1:] if text.startswith("+") else text
    if not digits or not (digits.isascii() and digits.isdigit()):
        raise SandboxError(f"failed to parse vsock {what} {address}: invalid digit")
    value = int(digits)
    if value > _U32_MAX:
        raise SandboxError(f"failed to parse vsock {what} {address}: number too large")
    return value


def parse_vsock_address(address: str) -> tuple[int, int]:
    """Return the context id and port of ``<cid>:<port>``."""
    parts = address.split(":")
    if len(parts) < 2:
        raise SandboxError(f"vsock address {address} should not less than 2")
    return _parse_u32(parts[0], "cid", address), _parse_u32(parts[1], "port", address)


def parse_hvsock_address(address: str) -> tuple[str, str]:
    """Return the socket path and port of ``<path>:<port>``."""
    parts = address.split(":")
    if len(parts) < 2:
        raise SandboxError(f"hvsock address {address} should not less than 2")
    return parts[0], parts[1]


def unix_sock(abstract: bool, socket_path: str) -> str | bytes:
    """Return a unix socket address, in the abstract namespace if asked."""
    if abstract:
        name = (socket_path + "\x00").encode()
        if len(name) >= _SUN_PATH_LEN:
            raise SandboxError("failed to new socket: File name too long")
        return b"\x00" + name
    if len(socket_path.encode()) >= _SUN_PATH_LEN:
        raise SandboxError("failed to new socket: File name too long")
    return socket_path


def _connect(family: int, addr, description: str) -> socket.socket:
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
    except OSError as exc:
        raise SandboxError(f"failed to create socket fd: {exc}") from exc
    try:
        sock.connect(addr)
    except OSError as exc:
        sock.close()
        raise SandboxError(f"failed to connect {description} :{exc}") from exc
    return sock


def _connect_unix(path: str) -> socket.socket:
    return _connect(socket.AF_UNIX, unix_sock(False, path), path)


def _connect_vsock(address: str) -> socket.socket:
    cid, port = parse_vsock_address(address)
    return _connect(socket.AF_VSOCK, (cid, port), f"vsock:{cid}:{port}")


def _connect_hvsock(address: str) -> socket.socket:
    path, port = parse_hvsock_address(address)
    deadline = time.monotonic() + HVSOCK_RETRY_TIMEOUT_MS / 1000

    def remaining() -> float:
        left = deadline - time.monotonic()
        if left <= 0:
            raise TimeoutError
        return left

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.settimeout(remaining())
        try:
            sock.connect(path)
        except TimeoutError:
            raise
        except OSError as exc:
            raise SandboxError(f"failed to connect {path}: {exc}") from exc
        sock.settimeout(remaining())
        try:
            sock.sendall(f"CONNECT {port}\n".encode())
        except TimeoutError:
            raise
        except OSError as exc:
            raise SandboxError(f"failed to write CONNECT to hvsock: {exc}") from exc
        sock.settimeout(remaining())
        try:
            data = sock.recv(_HVSOCK_READ_SIZE)
        except TimeoutError:
            raise
        except OSError as exc:
            raise SandboxError(f"failed to read from hvsock: {exc}") from exc
        if not data:
            raise SandboxError("stream closed")
        if "OK" not in data.decode("utf-8", errors="strict" if False else "ignore"):
            raise SandboxError("failed to connect")
    except TimeoutError:
        sock.close()
        raise SandboxError(
            f"hvsock retry {HVSOCK_RETRY_TIMEOUT_MS}ms timeout"
        ) from None
    except BaseException:
        sock.close()
        raise
    sock.settimeout(None)
    return sock


def connect_to_socket(address: str) -> socket.socket:
    """Open a connected stream socket to the agent at ``address``."""
    scheme, rest = parse_socket_address(address)
    match scheme:
        case "vsock":
            return _connect_vsock(rest)
        case "hvsock":
            return _connect_hvsock(rest)
        case _:
            return _connect_unix(rest)


def compute_clock_delta(
    client_send: int, client_arrive: int, server_arrive: int, server_send: int
) -> int:
    """Return the clock offset between host and guest in nanoseconds.

    The halving truncates toward zero.
    """
    total = (client_send - client_arrive) + (server_arrive - server_send)
    half = abs(total) // 2
    return half if total >= 0 else -half