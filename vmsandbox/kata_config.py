"""Reading hypervisor settings from a kata-containers configuration file."""

from __future__ import annotations

import dataclasses
import tomllib
from collections.abc import Mapping
from dataclasses import MISSING, dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from vmsandbox.device import InvalidArgumentError, NotFoundError

DEFAULT_KATA_CONFIG_PATH = "/usr/share/defaults/kata-containers/configuration.toml"
KATA_CONFIG_PATH_ENV = "KATA_CONFIG_PATH"

_U32_MAX = 0xFFFFFFFF
_I32_MIN = -(2**31)
_I32_MAX = 2**31 - 1

_D = TypeVar("_D")


def _check(name: str, value: Any, kind: type, signed: bool) -> Any:
    """Check a value against the type of its field and return it."""
    if kind is bool:
        if not isinstance(value, bool):
            raise InvalidArgumentError(f"invalid type for field `{name}`: expected bool")
    elif kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgumentError(
                f"invalid type for field `{name}`: expected integer"
            )
        low, high = (_I32_MIN, _I32_MAX) if signed else (0, _U32_MAX)
        if not low <= value <= high:
            raise InvalidArgumentError(f"invalid value for field `{name}`: {value}")
    elif kind is list:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise InvalidArgumentError(
                f"invalid type for field `{name}`: expected a list of strings"
            )
        value = list(value)
    elif not isinstance(value, str):
        raise InvalidArgumentError(f"invalid type for field `{name}`: expected string")
    return value


def _read_table(
    cls: type[_D], data: Any, signed: frozenset[str] = frozenset()
) -> _D:
    """Build a dataclass from a table; fields without a default are required."""
    if not isinstance(data, Mapping):
        raise InvalidArgumentError(f"invalid type for {cls.__name__}: expected a table")
    values: dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        if f.default is not MISSING:
            default = f.default
        elif f.default_factory is not MISSING:
            default = f.default_factory()
        else:
            default = MISSING
        if f.name not in data:
            if default is MISSING:
                raise InvalidArgumentError(f"missing field `{f.name}`")
            continue
        kind = str if default is MISSING else type(default)
        values[f.name] = _check(f.name, data[f.name], kind, f.name in signed)
    return cls(**values)


@dataclass
class Runtime:
    enable_cpu_memory_hotplug: bool = False
    internetworking_model: str = ""
    disable_guest_seccomp: bool = False
    disable_hostdir_mount: bool = False
    hostdir_whitelist: list[str] = field(default_factory=list)


@dataclass
class Hypervisor:
    """One ``[hypervisor.<name>]`` table; only ``path`` and ``kernel`` are required."""

    path: str
    kernel: str
    initrd: str = ""
    image: str = ""
    firmware: str = ""
    machine_accelerators: str = ""
    cpu_features: str = ""
    kernel_params: str = ""
    machine_type: str = ""
    block_device_driver: str = ""
    entropy_source: str = ""
    shared_fs: str = ""
    virtio_fs_daemon: str = ""
    virtio_fs_cache: str = ""
    virtio_fs_extra_args: list[str] = field(default_factory=list)
    vhost_user_store_path: str = ""
    virtio_fs_cache_size: int = 0
    virtio_fs_fuse_version: str = ""
    virtio_9p_direct_io: bool = False
    virtio_9p_multidevs: str = ""
    block_device_cache_set: bool = False
    block_device_cache_direct: bool = False
    block_device_cache_noflush: bool = False
    enable_vhost_user_store: bool = False
    default_vcpus: int = 0
    default_maxvcpus: int = 0
    default_memory: int = 0
    memory_slots: int = 0
    memory_offset: int = 0
    default_bridges: int = 0
    default_root_ports: int = 0
    msize_9p: int = 0
    disable_block_device_use: bool = False
    enable_mem_prealloc: bool = False
    enable_hugepages: bool = False
    enable_swap: bool = False
    enable_debug: bool = False
    disable_nesting_checks: bool = False
    enable_iothreads: bool = False
    use_vsock: bool = False
    hotplug_vfio_on_root_bus: bool = False
    guest_hook_path: str = ""
    hypervisor_params: str = ""
    disable_image_nvdimm: bool = False
    remote_ip: str = ""
    min_port: int = 0
    max_port: int = 0
    qemu_tls: bool = False
    qemu_cacert_file: str = ""
    qemu_cert_file: str = ""
    qemu_key_file: str = ""
    qemu_crypto_path: str = ""


_HYPERVISOR_SIGNED = frozenset({"default_vcpus"})


@dataclass
class KataConfig:
    """Hypervisor tables by name and the runtime table of a kata config."""

    hypervisor: dict[str, Hypervisor] = field(default_factory=dict)
    runtime: Runtime = field(default_factory=Runtime)

    @classmethod
    def from_toml(cls, text: str) -> KataConfig:
        try:
            data = tomllib.loads(text)
            for key in ("hypervisor", "runtime"):
                if key not in data:
                    raise InvalidArgumentError(f"missing field `{key}`")
            hypervisors = data["hypervisor"]
            if not isinstance(hypervisors, Mapping):
                raise InvalidArgumentError(
                    "invalid type for field `hypervisor`: expected a table"
                )
            return cls(
                hypervisor={
                    name: _read_table(Hypervisor, table, _HYPERVISOR_SIGNED)
                    for name, table in hypervisors.items()
                },
                runtime=_read_table(Runtime, data["runtime"]),
            )
        except (tomllib.TOMLDecodeError, InvalidArgumentError) as exc:
            raise InvalidArgumentError(f"failed to parse kata config {exc}") from exc

    @classmethod
    def load(cls, path: str | Path) -> KataConfig:
        return cls.from_toml(Path(path).read_text())

    def hypervisor_config(self, name: str) -> Hypervisor:
        """Return a copy of the named hypervisor's settings."""
        try:
            found = self.hypervisor[name]
        except KeyError:
            raise NotFoundError(f"no hypervisor config of {name} in kata") from None
        return dataclasses.replace(
            found, virtio_fs_extra_args=list(found.virtio_fs_extra_args)
        )