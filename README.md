# vmsandbox

`vmsandbox` is a library of building blocks for running container sandboxes
inside virtual machines started by cloud-hypervisor. It depends only on the
Python standard library and needs Python 3.12 or later. Starting VMs, creating
tap devices, entering network namespaces and rebinding PCI drivers need a Linux
host and the matching privileges.

## Modules

- `vmsandbox.device`: the error types (`SandboxError` and its subclasses
  `NotFoundError`, `ResourceExhaustedError`, `InvalidArgumentError`), `Bus` and
  `Slot` bookkeeping (`empty_slot`, `attach`, `device_slot`; slot 0 is never
  returned by `empty_slot` or `device_slot`), `Transport`, `BusType`, and the
  device descriptions `BlockDeviceInfo`, `TapDeviceInfo`,
  `PhysicalDeviceInfo`, `VhostUserDeviceInfo` and `CharDeviceInfo`.
- `vmsandbox.params`: the `PropertySet` and `ParamSet` dataclass mixins that
  render fields as hypervisor options, with `param_field` to rename, skip,
  format or conditionally include a field, and the helpers `bool_to_on_off`
  and `vec_to_string`.
- `vmsandbox.chv_config`: `Config` (read with `Config.from_toml` or
  `Config.parse`), `CloudHypervisorVMConfig`, `HypervisorCommonConfig`,
  `TaskConfig`, `VirtiofsdConfig`, and `CloudHypervisorConfig` with its `Cpus`
  and `Memory` option sets.
- `vmsandbox.chv_devices`: the cloud-hypervisor devices `Disk`, `Console`,
  `PhysicalDevice`, `Fs`, `Pmem`, `Rng`, `VirtioNetDevice` and `Vsock`, and the
  API bodies `DiskConfig`, `AddDeviceResponse` and `RemoveDeviceRequest`.
- `vmsandbox.chv_client`: `ChClient`, which connects to the hypervisor's API
  socket (retrying for up to 10 seconds) and hot-plugs block devices
  (`hot_attach`) or removes devices (`hot_detach`). It can be used as a
  context manager.
- `vmsandbox.chv_vm`: `CloudHypervisorVM`, `Pids`, `create_vm` and
  `apply_resources`.
- `vmsandbox.address`: `IpNet`, `MacAddress`, `CniIPAddress` and
  `convert_to_ip_address`.
- `vmsandbox.route`: `RouteMessage` and `Route.parse_from_message`.
- `vmsandbox.link`: `LinkKind`, `LinkType`, `NetworkInterface`, tap device
  creation (`create_tap_device`), PCI driver lookup and binding
  (`get_pci_driver`, `bind_device_to_driver`), the argument lists of the `tc`
  commands that redirect traffic between interfaces
  (`qdisc_ingress_command`, `redirect_filter_command`), and the dictionaries
  the guest agent is given for interfaces and routes (`ip_net_to_agent`,
  `route_to_agent`, `NetworkInterface.to_agent_interface`).
- `vmsandbox.network`: `Network`, `NetworkConfig`, `NetType`, and
  `run_in_netns` / `execute_in_netns` for running work inside a network
  namespace.
- `vmsandbox.client`: address parsing (`parse_socket_address`,
  `parse_vsock_address`, `parse_hvsock_address`, `unix_sock`),
  `connect_to_socket` for `unix://`, `vsock://`, `hvsock://` and bare unix
  socket paths, and `compute_clock_delta` for host/guest clock offsets.
- `vmsandbox.container`: `KuasarContainer`, `KuasarProcess` and
  `strip_namespaces`, which drops the network and cgroup namespaces of an OCI
  spec and clears the paths of the rest.
- `vmsandbox.handler`: `Handler` and `HandlerChain`.
- `vmsandbox.kata_config`: `KataConfig`, `Hypervisor` and `Runtime`, read from
  a Kata Containers `configuration.toml`.
- `vmsandbox.settings`: `parse_args` for the `--config <path>` and
  `--dir <path>` options and `load_config`, which loads the config file
  (by default `settings.CONFIG_CLH_PATH`) and creates the `--dir` directory
  when it is missing.

## Loading a configuration

```python
from vmsandbox.chv_config import CloudHypervisorConfig, Config

config = Config.parse("/etc/vmsandbox/config_clh.toml")
chv = CloudHypervisorConfig.from_vm_config(config.hypervisor)
print(chv.to_cmdline_params("--"))
```

`Config.from_toml` takes the TOML text directly. The text has a `[sandbox]`
table and a `[hypervisor]` table; the common settings (`vcpus`,
`memory_in_mb`, `kernel_path`, ...) sit at the top of the hypervisor table,
next to the `[hypervisor.task]` and `[hypervisor.virtiofsd]` sub-tables.
Errors in the file raise `InvalidArgumentError`.

From command line arguments:

```python
from vmsandbox.settings import load_config

config, persist_dir = load_config(argv=["--config", "/etc/vmsandbox/config_clh.toml"])
```

## Building and starting a VM

```python
from vmsandbox.chv_vm import create_vm

vm = create_vm(config.hypervisor, "sandbox-1", "", "/run/vmsandbox/sandbox-1")
print(vm.cmdline_params())
pid = vm.start()              # starts virtiofsd, then cloud-hypervisor
print(vm.socket_address())    # hvsock://<base_dir>/task.vsock:1024
vm.stop(force=False)          # SIGTERM; force=True sends SIGKILL
print(vm.wait_exit(timeout=5))
```

`create_vm` adds the root image as a `Pmem` device, an `Rng` device, a
`Vsock` device, a console logging to `/tmp/<id>-task.log` and a virtio-fs
`Fs` device. Before starting, `attach` adds block and tap devices; after
starting, `hot_attach` and `hot_detach` go through the API socket (only
block devices can be hot-plugged). `apply_resources` sizes the cpus and
memory from `cpu_period`, `cpu_quota` and `memory_limit_in_bytes`, and
`vcpus` maps vcpu indexes to their thread ids.

## Network values

```python
from vmsandbox.address import IpNet, MacAddress

net = IpNet.parse("10.0.0.2/24")
print(net.addr_string(), net.netmask())    # 10.0.0.2 255.255.255.0
print(str(MacAddress.parse("02:00:00:00:00:01")))
```

## Handler chains

A `HandlerChain` runs its handlers in order. If one of them raises, the chain
calls `rollback` on the handlers that already finished, in reverse order, and
then raises the original error again. Failures during rollback are logged.

```python
from vmsandbox.handler import Handler, HandlerChain

class Record(Handler):
    def __init__(self, value):
        self.value = value

    def handle(self, sandbox):
        sandbox.append(self.value)

    def rollback(self, sandbox):
        sandbox.remove(self.value)

state = []
HandlerChain([Record(1), Record(2)]).handle(state)
assert state == [1, 2]
```

## What the package does not do

- It installs no command and runs no sandboxer service; `settings` only
  reads options and the config file for a program built on top of it.
- It does not talk RPC to the guest agent. `client` opens the socket and
  computes clock offsets; it does not check the agent, update its interfaces
  or routes, or sync its clock.
- It does not read interfaces or routes from the kernel. `Network`,
  `NetworkInterface` and `Route` are built from values handed to them
  (`NetworkInterface.from_cni`, `RouteMessage`).
- It supports cloud-hypervisor only. `kata_config` reads the settings of any
  hypervisor table but turns none of them into a VM configuration.