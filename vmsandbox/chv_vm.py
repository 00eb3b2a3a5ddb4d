"""A cloud-hypervisor VM: its devices, processes and hot-plug operations."""

from __future__ import annotations

import dataclasses
import fcntl
import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from vmsandbox.chv_client import ChClient
from vmsandbox.chv_config import CloudHypervisorConfig, CloudHypervisorVMConfig
from vmsandbox.chv_devices import Console, Disk, Fs, Pmem, Rng, VirtioNetDevice, Vsock
from vmsandbox.device import (
    BlockDeviceInfo,
    BusType,
    DeviceInfo,
    InvalidArgumentError,
    NotFoundError,
    SandboxError,
    TapDeviceInfo,
)
from vmsandbox.network import run_in_netns
from vmsandbox.params import PropertySet

SHARED_DIR_SUFFIX = "shared"
VCPU_PREFIX = "vcpu"
GUEST_CID = 3
AGENT_VSOCK_PORT = 1024

# fds handed to the hypervisor are numbered from here in the child process
_FIRST_CHILD_FD = 3

log = logging.getLogger(__name__)


@dataclass
class Pids:
    vmm_pid: int | None = None
    affiliated_pids: list[int] = field(default_factory=list)


def _write_file_atomic(path: str, text: str) -> None:
    directory = os.path.dirname(path) or "."
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def _remap_fds(fds: Sequence[int]) -> Callable[[], None]:
    """Return a child hook placing ``fds`` at 3, 4, ... in order."""
    fds = list(fds)

    def remap() -> None:
        floor = _FIRST_CHILD_FD + len(fds)
        high = [fcntl.fcntl(fd, fcntl.F_DUPFD, floor) for fd in fds]
        for target, fd in enumerate(high, start=_FIRST_CHILD_FD):
            os.dup2(fd, target)
        for fd in high:
            os.close(fd)

    return remap


def _drain(stream: IO[bytes], name: str) -> None:
    with stream:
        for line in stream:
            log.debug("%s: %s", name, line.decode(errors="replace").rstrip())


class CloudHypervisorVM:
    """A VM run by cloud-hypervisor, with virtiofsd sharing its files."""

    def __init__(
        self,
        vm_id: str,
        netns: str,
        base_dir: str,
        vm_config: CloudHypervisorVMConfig,
    ):
        config = CloudHypervisorConfig.from_vm_config(vm_config)
        config.api_socket = f"{base_dir}/api.sock"
        if vm_config.common.initrd_path:
            config.initramfs = vm_config.common.initrd_path

        self.id = vm_id
        self.config = config
        self.devices: list[PropertySet] = []
        self.netns = netns
        self.base_dir = base_dir
        self.agent_socket = ""
        self.virtiofsd_config = dataclasses.replace(
            vm_config.virtiofsd,
            socket_path=f"{base_dir}/virtiofs.sock",
            shared_dir=f"{base_dir}/{SHARED_DIR_SUFFIX}",
        )
        self.client: ChClient | None = None
        self.fds: list[int] = []
        self.pids = Pids()
        self.proc_root = Path("/proc")
        self._exited = threading.Event()
        self._exit_status: tuple[int, int] | None = None

    def add_device(self, device: PropertySet) -> None:
        self.devices.append(device)

    def cmdline_params(self) -> list[str]:
        """Return the command line arguments cloud-hypervisor is started with."""
        params = self.config.to_cmdline_params("--")
        for device in self.devices:
            params.extend(device.to_cmdline_params("--"))
        # the log level is a single-hyphen option
        if self.config.debug:
            params.append("-vv")
        return params

    def _pid(self) -> int:
        if self.pids.vmm_pid is None:
            raise SandboxError("empty pid from vmm_pid")
        return self.pids.vmm_pid

    def _client(self) -> ChClient:
        if self.client is None:
            raise NotFoundError("cloud hypervisor client not inited")
        return self.client

    def _append_fd(self, fd: int) -> int:
        self.fds.append(fd)
        return len(self.fds) - 1 + _FIRST_CHILD_FD

    def _spawn(self, argv: list[str], fds: Sequence[int], what: str) -> subprocess.Popen:
        def launch() -> subprocess.Popen:
            return subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                close_fds=not fds,
                preexec_fn=_remap_fds(fds) if fds else None,
            )

        log.debug("start %s with cmdline: %r", what, argv)
        try:
            return run_in_netns(self.netns, launch) if self.netns else launch()
        except OSError as exc:
            raise SandboxError(f"failed to spawn {what} command: {exc}") from exc

    def _watch(
        self,
        proc: subprocess.Popen,
        name: str,
        pid_file: str | None = None,
        on_exit: Callable[[tuple[int, int]], None] | None = None,
    ) -> threading.Thread:
        def watch() -> None:
            if pid_file is not None:
                try:
                    _write_file_atomic(pid_file, str(proc.pid))
                except OSError as exc:
                    log.warning("failed to write pid file %s: %s", pid_file, exc)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    threading.Thread(
                        target=_drain, args=(stream, name), daemon=True
                    ).start()
            code = proc.wait()
            if code != 0:
                log.error("%s exit %s", name, code)
            if on_exit is not None:
                on_exit((code if code >= 0 else 0, time.time_ns()))

        thread = threading.Thread(target=watch, name=f"wait-{name}", daemon=True)
        thread.start()
        return thread

    def _record_exit(self, status: tuple[int, int]) -> None:
        self._exit_status = status
        self._exited.set()

    def wait_exit(self, timeout: float | None = None) -> tuple[int, int] | None:
        """Wait for the hypervisor to exit; return its exit code and time in ns."""
        if self._exited.wait(timeout):
            return self._exit_status
        return None

    def _start_virtiofsd(self) -> int:
        os.makedirs(self.virtiofsd_config.shared_dir, exist_ok=True)
        argv = [
            self.virtiofsd_config.path,
            *self.virtiofsd_config.to_cmdline_params("--"),
        ]
        proc = self._spawn(argv, (), "virtiofsd")
        self._watch(proc, "virtiofsd")
        return proc.pid

    def start(self) -> int:
        """Start virtiofsd and cloud-hypervisor, returning the hypervisor pid."""
        log.debug("start vm %s", self.id)
        os.makedirs(self.base_dir, exist_ok=True)
        virtiofsd_pid = self._start_virtiofsd()
        argv = [self.config.path, *self.cmdline_params()]
        proc = self._spawn(argv, self.fds, "cloud hypervisor")
        self._watch(
            proc,
            "cloud-hypervisor",
            pid_file=f"{self.base_dir}/pid",
            on_exit=self._record_exit,
        )
        self.client = ChClient(self.config.api_socket)
        self.pids.vmm_pid = proc.pid
        self.pids.affiliated_pids.append(virtiofsd_pid)
        return proc.pid

    def stop(self, force: bool) -> None:
        """Signal the hypervisor to exit, killing it when ``force`` is set."""
        pid = self._pid()
        if pid == 0:
            return
        try:
            os.kill(pid, signal.SIGKILL if force else signal.SIGTERM)
        except OSError as exc:
            log.debug("failed to signal %d: %s", pid, exc)

    def attach(self, device_info: DeviceInfo) -> None:
        """Add a device to be given to the VM when it starts."""
        match device_info:
            case BlockDeviceInfo():
                self.add_device(
                    Disk(
                        id=device_info.id,
                        path=device_info.path,
                        readonly=device_info.read_only,
                        direct=True,
                    )
                )
            case TapDeviceInfo():
                fd_indexes = [self._append_fd(fd) for fd in device_info.fds]
                self.add_device(
                    VirtioNetDevice(
                        id=device_info.id,
                        ifname=device_info.name,
                        mac=device_info.mac_address,
                        fds=fd_indexes,
                    )
                )
            case _:
                raise InvalidArgumentError(
                    f"attaching {type(device_info).__name__} is not supported"
                )

    def hot_attach(self, device_info: DeviceInfo) -> tuple[BusType, str]:
        addr = self._client().hot_attach(device_info)
        return BusType.PCI, addr

    def hot_detach(self, device_id: str) -> None:
        self._client().hot_detach(device_id)

    def socket_address(self) -> str:
        return self.agent_socket

    def vcpus(self) -> dict[int, int]:
        """Map each vcpu index to the thread id running it."""
        task_dir = self.proc_root / str(self._pid()) / "task"
        try:
            tasks = list(task_dir.iterdir())
        except OSError as exc:
            raise SandboxError(f"failed to get tasks {exc}") from exc
        vcpus: dict[int, int] = {}
        for task in tasks:
            try:
                comm = (task / "comm").read_text().strip()
                tid = int(task.name)
            except (OSError, ValueError):
                continue
            if not comm.startswith(VCPU_PREFIX):
                continue
            index = comm[len(VCPU_PREFIX):]
            if index.isascii() and index.isdigit():
                vcpus[int(index)] = tid
        return vcpus


def create_vm(
    vm_config: CloudHypervisorVMConfig, vm_id: str, netns: str, base_dir: str
) -> CloudHypervisorVM:
    """Build a VM with its root image, rng, vsock, console and shared fs."""
    vm = CloudHypervisorVM(vm_id, netns, base_dir, vm_config)

    if vm_config.common.image_path:
        vm.add_device(
            Pmem(id="rootfs", file=vm_config.common.image_path, discard_writes=True)
        )

    if vm_config.entropy_source:
        vm.add_device(Rng(id="rng", src=vm_config.entropy_source))

    guest_socket_path = f"{base_dir}/task.vsock"
    vm.add_device(Vsock(cid=GUEST_CID, socket=guest_socket_path, id="vsock"))
    vm.agent_socket = f"hvsock://{guest_socket_path}:{AGENT_VSOCK_PORT}"

    vm.add_device(Console(file=f"/tmp/{vm_id}-task.log", id="console"))

    if vm.virtiofsd_config.socket_path:
        vm.add_device(Fs(id="fs", socket=vm.virtiofsd_config.socket_path, tag="kuasar"))

    return vm


def apply_resources(
    vm: CloudHypervisorVM, resources: Mapping[str, Any] | None
) -> None:
    """Size the VM's cpus and memory from a container's resource limits."""
    if not resources:
        return
    period = resources.get("cpu_period", 0) or 0
    quota = resources.get("cpu_quota", 0) or 0
    if period > 0 and quota > 0:
        cpus = -(-quota // period)
        vm.config.cpus.boot = cpus
        vm.config.cpus.max = cpus
    memory = resources.get("memory_limit_in_bytes", 0) or 0
    if memory > 0:
        vm.config.memory.size = memory