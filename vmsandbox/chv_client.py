"""Client of the cloud-hypervisor HTTP API on its unix socket."""

from __future__ import annotations

import http.client
import logging
import os
import socket
import time

from vmsandbox.chv_devices import AddDeviceResponse, DiskConfig, RemoveDeviceRequest
from vmsandbox.device import (
    BlockDeviceInfo,
    DeviceInfo,
    InvalidArgumentError,
    SandboxError,
)

CLOUD_HYPERVISOR_START_TIMEOUT_SECS = 10

_RETRY_INTERVAL_SECS = 0.01
_API_PREFIX = "/api/v1"

log = logging.getLogger(__name__)


class _UnixHTTPConnection(http.client.HTTPConnection):
    """An HTTP connection over a unix socket, reconnecting to the same path."""

    def __init__(self, path: str, sock: socket.socket):
        super().__init__("localhost")
        self._path = path
        self.sock = sock

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self._path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


class ChClient:
    """Talks to a running cloud-hypervisor through its API socket."""

    def __init__(
        self,
        socket_path: str | os.PathLike[str],
        timeout: float = CLOUD_HYPERVISOR_START_TIMEOUT_SECS,
    ):
        path = os.fspath(socket_path)
        start = time.monotonic()
        while True:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(path)
                break
            except OSError as exc:
                sock.close()
                log.debug("failed to create client: %r", exc)
                if time.monotonic() - start > timeout:
                    log.error("failed to create client: %r", exc)
                    raise SandboxError(f"timeout connect client, {exc}") from exc
                time.sleep(_RETRY_INTERVAL_SECS)
        self._conn = _UnixHTTPConnection(path, sock)

    def __enter__(self) -> ChClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    def _put(self, command: str, body: str) -> str | None:
        """Send a PUT request and return the response body, if there is one."""
        try:
            self._conn.request(
                "PUT",
                f"{_API_PREFIX}/{command}",
                body=body,
                headers={"Content-Type": "application/json", "Accept": "*/*"},
            )
            response = self._conn.getresponse()
            data = response.read()
        except (OSError, http.client.HTTPException) as exc:
            self._conn.close()
            raise SandboxError(str(exc)) from exc
        text = data.decode("utf-8", errors="replace")
        if response.status >= 300:
            raise SandboxError(
                f"server responded with {response.status} {response.reason}: {text}"
            )
        return text or None

    def hot_attach(self, device_info: DeviceInfo) -> str:
        """Hot-plug a device and return the PCI address the VM gave it."""
        match device_info:
            case BlockDeviceInfo():
                disk_config = DiskConfig(
                    path=device_info.path,
                    readonly=device_info.read_only,
                    direct=True,
                    vhost_user=False,
                    vhost_socket=None,
                    id=device_info.id,
                )
                body = disk_config.to_json()
                try:
                    response = self._put("vm.add-disk", body)
                except SandboxError as exc:
                    raise SandboxError(f"failed to hotplug disk {body}, {exc}") from exc
                if response is None:
                    raise SandboxError("no response body from server")
                return AddDeviceResponse.from_json(response).bdf
            case _:
                raise InvalidArgumentError(
                    f"hot attaching {type(device_info).__name__} is not supported"
                )

    def hot_detach(self, device_id: str) -> None:
        """Remove a hot-plugged device by its id."""
        body = RemoveDeviceRequest(id=device_id).to_json()
        try:
            self._put("vm.remove-device", body)
        except SandboxError as exc:
            raise SandboxError(f"failed to remove device {body}, {exc}") from exc