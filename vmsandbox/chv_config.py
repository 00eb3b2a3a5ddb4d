"""Configuration of cloud-hypervisor VMs and the sandboxer config file."""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from vmsandbox.device import InvalidArgumentError
from vmsandbox.params import (
    ParamSet,
    PropertySet,
    bool_to_on_off,
    param_field,
    vec_to_string,
)

DEFAULT_KERNEL_PARAMS = (
    "console=hvc0 "
    "root=/dev/pmem0p1 "
    "rootflags=data=ordered,errors=remount-ro "
    "ro rootfstype=ext4 "
    "task.sharefs_type=virtiofs"
)

DEFAULT_CLOUD_HYPERVISOR_PATH = "/usr/local/bin/cloud-hypervisor"
DEFAULT_VIRTIOFSD_PATH = "/usr/local/bin/virtiofsd"
DEFAULT_ENTROPY_SOURCE = "/dev/urandom"

_REQUIRED = object()


def _get(data: Mapping[str, Any], key: str, kind: type, default: Any = _REQUIRED) -> Any:
    """Read a typed value from a table, with a default where the field has one."""
    if key not in data:
        if default is _REQUIRED:
            raise InvalidArgumentError(f"missing field `{key}`")
        return default
    value = data[key]
    if (kind is int and isinstance(value, bool)) or not isinstance(value, kind):
        raise InvalidArgumentError(
            f"invalid type for field `{key}`: expected {kind.__name__}"
        )
    if kind is int and value < 0:
        raise InvalidArgumentError(f"invalid value for field `{key}`: {value}")
    return value


def _table(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    return _get(data, key, dict)


@dataclass
class HypervisorCommonConfig:
    """Settings shared by every hypervisor."""

    vcpus: int = 0
    memory_in_mb: int = 0
    kernel_path: str = ""
    image_path: str = ""
    initrd_path: str = ""
    kernel_params: str = ""
    debug: bool = False

    @classmethod
    def _from_dict(cls, data: Mapping[str, Any]) -> HypervisorCommonConfig:
        return cls(
            vcpus=_get(data, "vcpus", int, 0),
            memory_in_mb=_get(data, "memory_in_mb", int, 0),
            kernel_path=_get(data, "kernel_path", str, ""),
            image_path=_get(data, "image_path", str, ""),
            initrd_path=_get(data, "initrd_path", str, ""),
            kernel_params=_get(data, "kernel_params", str, ""),
            debug=_get(data, "debug", bool, False),
        )


@dataclass
class TaskConfig:
    debug: bool = False


@dataclass
class VirtiofsdConfig(ParamSet):
    path: str = param_field(default=DEFAULT_VIRTIOFSD_PATH, ignore=True)
    log_level: str = "info"
    cache: str = "never"
    thread_pool_size: int = 4
    socket_path: str = ""
    shared_dir: str = ""

    @classmethod
    def _from_dict(cls, data: Mapping[str, Any]) -> VirtiofsdConfig:
        return cls(
            path=_get(data, "path", str),
            log_level=_get(data, "log_level", str),
            cache=_get(data, "cache", str),
            thread_pool_size=_get(data, "thread_pool_size", int),
            socket_path=_get(data, "socket_path", str, ""),
            shared_dir=_get(data, "shared_dir", str, ""),
        )


@dataclass
class CloudHypervisorVMConfig:
    path: str = DEFAULT_CLOUD_HYPERVISOR_PATH
    common: HypervisorCommonConfig = field(default_factory=HypervisorCommonConfig)
    hugepages: bool = False
    entropy_source: str = DEFAULT_ENTROPY_SOURCE
    task: TaskConfig = field(default_factory=TaskConfig)
    virtiofsd: VirtiofsdConfig = field(default_factory=VirtiofsdConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CloudHypervisorVMConfig:
        """Read the ``[hypervisor]`` table; common settings sit at its top level."""
        task = _table(data, "task")
        return cls(
            path=_get(data, "path", str),
            common=HypervisorCommonConfig._from_dict(data),
            hugepages=_get(data, "hugepages", bool),
            entropy_source=_get(data, "entropy_source", str),
            task=TaskConfig(debug=_get(task, "debug", bool)),
            virtiofsd=VirtiofsdConfig._from_dict(_table(data, "virtiofsd")),
        )


@dataclass
class Cpus(PropertySet):
    boot: int = 0
    max: int | None = None
    topology: str | None = None
    affinity: list[str] = param_field(default_factory=list, generator=vec_to_string)
    features: list[str] = param_field(default_factory=list, generator=vec_to_string)


@dataclass
class Memory(PropertySet):
    size: int = 0
    shared: bool = param_field(default=False, generator=bool_to_on_off)
    hugepages: bool = param_field(default=False, generator=bool_to_on_off)
    hugepage_size: str | None = param_field(default=None, key="hugepage_size")
    prefault: bool | None = param_field(default=None, generator=bool_to_on_off)
    thp: bool | None = param_field(default=None, generator=bool_to_on_off)


@dataclass
class CloudHypervisorConfig(ParamSet):
    """The command line options cloud-hypervisor is started with."""

    path: str = param_field(default="", ignore=True)
    api_socket: str = ""
    cpus: Cpus = param_field(default_factory=Cpus)
    memory: Memory = param_field(default_factory=Memory)
    kernel: str = ""
    cmdline: str = ""
    initramfs: str | None = None
    log_file: str | None = None
    debug: bool = param_field(default=False, ignore=True)

    @classmethod
    def from_vm_config(cls, vm_config: CloudHypervisorVMConfig) -> CloudHypervisorConfig:
        common = vm_config.common
        cmdline = f"{DEFAULT_KERNEL_PARAMS} {common.kernel_params}"
        if vm_config.task.debug:
            cmdline += " task.log_level=debug"
        return cls(
            path=vm_config.path,
            api_socket="",
            cpus=Cpus(boot=common.vcpus),
            memory=Memory(
                size=common.memory_in_mb * 1024 * 1024,
                shared=True,
                hugepages=vm_config.hugepages,
            ),
            kernel=common.kernel_path,
            cmdline=cmdline,
            debug=common.debug,
        )


@dataclass
class Config:
    """The sandboxer config file: a ``[sandbox]`` and a ``[hypervisor]`` table."""

    sandbox: dict[str, Any]
    hypervisor: CloudHypervisorVMConfig

    @classmethod
    def from_toml(cls, text: str) -> Config:
        try:
            data = tomllib.loads(text)
            return cls(
                sandbox=dict(_table(data, "sandbox")),
                hypervisor=CloudHypervisorVMConfig.from_dict(_table(data, "hypervisor")),
            )
        except (tomllib.TOMLDecodeError, InvalidArgumentError) as exc:
            raise InvalidArgumentError(
                f"failed to parse kuasar sandboxer config {exc}"
            ) from exc

    @classmethod
    def parse(cls, path: str | Path) -> Config:
        return cls.from_toml(Path(path).read_text())