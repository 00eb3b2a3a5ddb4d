import signal
import socket
import subprocess

import pytest

from vmsandbox.chv_config import (
    CloudHypervisorVMConfig,
    HypervisorCommonConfig,
    VirtiofsdConfig,
)
from vmsandbox.chv_devices import Console, Disk, Fs, Pmem, Rng, VirtioNetDevice, Vsock
from vmsandbox.chv_vm import CloudHypervisorVM, apply_resources, create_vm
from vmsandbox.device import (
    BlockDeviceInfo,
    InvalidArgumentError,
    NotFoundError,
    PhysicalDeviceInfo,
    SandboxError,
    TapDeviceInfo,
)


def _vm_config(**common):
    values = dict(vcpus=1, memory_in_mb=256, kernel_path="/kernel", image_path="/img")
    values.update(common)
    return CloudHypervisorVMConfig(common=HypervisorCommonConfig(**values))


def test_new_vm_derives_paths(tmp_path):
    base = str(tmp_path)
    config = _vm_config(initrd_path="/initrd")
    vm = CloudHypervisorVM("vm1", "", base, config)
    assert vm.config.api_socket == f"{base}/api.sock"
    assert vm.config.initramfs == "/initrd"
    assert vm.virtiofsd_config.socket_path == f"{base}/virtiofs.sock"
    assert vm.virtiofsd_config.shared_dir.startswith(f"{base}/")
    assert config.virtiofsd.socket_path == ""


def test_create_vm_devices(tmp_path):
    base = str(tmp_path)
    vm = create_vm(_vm_config(), "vm1", "", base)
    assert [type(d) for d in vm.devices] == [Pmem, Rng, Vsock, Console, Fs]
    assert vm.socket_address() == f"hvsock://{base}/task.vsock:1024"
    assert vm.devices[0].to_cmdline_params("--") == [
        "--pmem",
        "id=rootfs,file=/img,discard_writes=on",
    ]
    assert vm.devices[-1].to_cmdline_params("--") == [
        "--fs",
        f"tag=kuasar,socket={base}/virtiofs.sock,id=fs",
    ]
    assert vm.devices[3].file == "/tmp/vm1-task.log"


def test_create_vm_without_image_or_entropy(tmp_path):
    config = _vm_config(image_path="")
    config.entropy_source = ""
    vm = create_vm(config, "vm1", "", str(tmp_path))
    assert [type(d) for d in vm.devices] == [Vsock, Console, Fs]


def test_cmdline_params_includes_devices_and_debug(tmp_path):
    vm = create_vm(_vm_config(debug=True), "vm1", "", str(tmp_path))
    params = vm.cmdline_params()
    base = vm.config.to_cmdline_params("--")
    assert params[: len(base)] == base
    assert params[-1] == "-vv"
    assert "--vsock" in params


def test_attach_block(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path), _vm_config())
    vm.attach(BlockDeviceInfo(id="blk0", path="/dev/sdx", read_only=True))
    disk = vm.devices[-1]
    assert isinstance(disk, Disk)
    assert (disk.id, disk.path, disk.readonly, disk.direct) == (
        "blk0",
        "/dev/sdx",
        True,
        True,
    )


def test_attach_tap_numbers_fds(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path), _vm_config())
    vm.attach(
        TapDeviceInfo(
            id="intf-1", index=1, name="tap0", mac_address="02:00:00:00:00:01", fds=[10, 11]
        )
    )
    net = vm.devices[-1]
    assert isinstance(net, VirtioNetDevice)
    assert vm.fds == [10, 11]
    assert net.fds == [3, 4]
    assert net.to_cmdline_params("--") == [
        "--net",
        "id=intf-1,fd=[3,4],mac=02:00:00:00:00:01,num_queues=4",
    ]


def test_attach_unsupported(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path), _vm_config())
    with pytest.raises(InvalidArgumentError):
        vm.attach(PhysicalDeviceInfo(id="dev", bdf="0000:00:01.0"))


def test_hot_operations_need_client(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path), _vm_config())
    with pytest.raises(NotFoundError):
        vm.hot_attach(BlockDeviceInfo(id="blk0", path="/dev/sdx"))
    with pytest.raises(NotFoundError):
        vm.hot_detach("blk0")


def test_stop_without_pid(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path), _vm_config())
    with pytest.raises(SandboxError, match="empty pid"):
        vm.stop(True)


@pytest.mark.parametrize(
    "force, expected", [(True, -signal.SIGKILL), (False, -signal.SIGTERM)]
)
def test_stop_signals_process(tmp_path, force, expected):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path), _vm_config())
    proc = subprocess.Popen(["sleep", "30"])
    vm.pids.vmm_pid = proc.pid
    vm.stop(force)
    assert proc.wait(timeout=5) == expected


def test_apply_resources(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path), _vm_config())
    apply_resources(
        vm,
        {"cpu_period": 100000, "cpu_quota": 150000, "memory_limit_in_bytes": 1 << 29},
    )
    assert vm.config.cpus.boot == 2
    assert vm.config.cpus.max == vm.config.cpus.boot
    assert vm.config.memory.size == 1 << 29


def test_apply_no_resources_keeps_config(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path), _vm_config())
    before = (vm.config.cpus.boot, vm.config.cpus.max, vm.config.memory.size)
    apply_resources(vm, None)
    apply_resources(vm, {"cpu_period": 0, "cpu_quota": 5})
    assert (vm.config.cpus.boot, vm.config.cpus.max, vm.config.memory.size) == before


def test_vcpus_reads_task_names(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path / "vm"), _vm_config())
    vm.proc_root = tmp_path / "proc"
    tasks = {"100": "cloud-hyperviso", "101": "vcpu0", "102": "vcpu1", "103": "vcpu_x"}
    for tid, comm in tasks.items():
        task = vm.proc_root / "100" / "task" / tid
        task.mkdir(parents=True)
        (task / "comm").write_text(comm + "\n")
    vm.pids.vmm_pid = 100
    assert vm.vcpus() == {0: 101, 1: 102}


def test_vcpus_missing_process(tmp_path):
    vm = CloudHypervisorVM("vm1", "", str(tmp_path / "vm"), _vm_config())
    vm.proc_root = tmp_path / "proc"
    vm.pids.vmm_pid = 100
    with pytest.raises(SandboxError, match="failed to get tasks"):
        vm.vcpus()


def _script(path, body):
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(0o755)
    return str(path)


def test_start_launches_processes(tmp_path):
    base = tmp_path / "vm"
    base.mkdir()
    config = _vm_config()
    config.path = _script(tmp_path / "chv", "exec sleep 30")
    config.virtiofsd = VirtiofsdConfig(path=_script(tmp_path / "vfsd", "exit 0"))
    vm = create_vm(config, "vm1", "", str(base))

    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(vm.config.api_socket)
    server.listen(1)
    try:
        pid = vm.start()
        assert pid > 0
        assert vm.pids.vmm_pid == pid
        assert len(vm.pids.affiliated_pids) == 1
        assert (base / "shared").is_dir() or vm.virtiofsd_config.shared_dir
        vm.stop(True)
        status = vm.wait_exit(timeout=5)
        assert status is not None
        assert status[0] == 0
        assert status[1] > 0
        assert (base / "pid").read_text() == str(pid)
    finally:
        if vm.client is not None:
            vm.client.close()
        server.close()