"""Command line handling and config loading of the sandboxer."""

from __future__ import annotations

import os
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from vmsandbox.chv_config import Config
from vmsandbox.device import InvalidArgumentError, NotFoundError

NAMESPACE_PID = "pid"
NAMESPACE_NET = "network"
NAMESPACE_MNT = "mount"
NAMESPACE_CGROUP = "cgroup"

FS_SHARE_PATH = "shared_fs"

CONFIG_STRATOVIRT_PATH = "/var/lib/kuasar/config_stratovirt.toml"
CONFIG_CLH_PATH = "/var/lib/kuasar/config_clh.toml"


@dataclass
class Args:
    """Options given on the command line; later occurrences win."""

    config_path: str | None = None
    dir_path: str = ""


def parse_args(argv: Sequence[str] | None = None) -> Args:
    """Read ``--config <path>`` and ``--dir <path>`` from the arguments."""
    args = list(sys.argv[1:] if argv is None else argv)
    result = Args()
    for arg, value in zip(args, [*args[1:], None]):
        if arg not in ("--config", "--dir"):
            continue
        if value is None:
            raise InvalidArgumentError(f"option {arg} needs a value")
        if arg == "--config":
            result.config_path = value
        else:
            result.dir_path = value
    return result


def load_config(
    default_config_path: str = CONFIG_CLH_PATH, argv: Sequence[str] | None = None
) -> tuple[Config, str]:
    """Load the config file and return it with the persist directory, if any.

    The persist directory is created when it does not exist yet.
    """
    args = parse_args(argv)
    config_path = args.config_path or default_config_path
    if args.dir_path:
        os.makedirs(args.dir_path, exist_ok=True)
    path = Path(config_path)
    if not path.exists():
        raise NotFoundError(f"config file {config_path} not exist")
    return Config.parse(path), args.dir_path