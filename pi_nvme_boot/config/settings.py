"""Migration configuration.

Defaults can be overridden by a JSON settings file and then by command-line
flags. The result is an immutable :class:`MigrationConfig` handed to every
component at construction time.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from pi_nvme_boot.domain.models import BootOrder, MigrationTarget
from pi_nvme_boot.logging import LoggerFactory


log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "PI_NVME_BOOT_SETTINGS_PATH",
        "/etc/pi-nvme-boot/settings.json",
    )
)

MIN_BOOT_SIZE_MIB = 512

DEFAULT_REQUIRED_TOOLS = (
    "rpi-eeprom-update",
    "rpi-eeprom-config",
    "parted",
    "partprobe",
    "mkfs.vfat",
    "mkfs.ext4",
    "rsync",
    "blkid",
    "findmnt",
    "mount",
    "umount",
    "sync",
    "shutdown",
    "reboot",
)

# Paths are relative to the source root; the boot mount is added at runtime.
DEFAULT_COPY_EXCLUDES = (
    "/dev/*",
    "/proc/*",
    "/sys/*",
    "/tmp/*",
    "/run/*",
    "/mnt/*",
    "/media/*",
    "/lost+found",
    "/var/log/*",
)

DEFAULT_CMDLINE_CANDIDATES = ("cmdline.txt", "firmware/cmdline.txt")


@dataclass(frozen=True)
class MigrationConfig:
    target_device: str = "/dev/nvme0n1"
    source_root: str = "/"
    source_boot_mount: str = "/boot/firmware"
    mount_root: Path = Path("/mnt/nvme_root_temp")
    boot_start_mib: int = 1
    boot_size_mib: int = MIN_BOOT_SIZE_MIB
    boot_label: str = "system-boot"
    root_label: str = "rootfs"
    settle_timeout_seconds: float = 10.0
    settle_poll_seconds: float = 0.5
    boot_order: tuple[str, ...] = ("nvme", "sd", "usb", "restart")
    copy_excludes: tuple[str, ...] = DEFAULT_COPY_EXCLUDES
    required_tools: tuple[str, ...] = DEFAULT_REQUIRED_TOOLS
    cmdline_candidates: tuple[str, ...] = DEFAULT_CMDLINE_CANDIDATES
    root_mount_options: str = "defaults,noatime"
    boot_mount_options: str = "defaults"
    expected_model: str = "Raspberry Pi 5"
    mounts_file: Path = Path("/proc/mounts")
    cpuinfo_path: Path = Path("/proc/cpuinfo")
    backup_suffix: str = ".bak"
    assume_yes: bool = False

    def __post_init__(self) -> None:
        if not self.target_device:
            raise ValueError("target_device must not be empty")
        if self.boot_size_mib < MIN_BOOT_SIZE_MIB:
            raise ValueError(
                f"boot_size_mib must be at least {MIN_BOOT_SIZE_MIB} "
                f"(got {self.boot_size_mib})"
            )
        if self.boot_start_mib < 1:
            raise ValueError("boot_start_mib must be at least 1")
        if self.settle_timeout_seconds <= 0 or self.settle_poll_seconds <= 0:
            raise ValueError("settle timeout and poll interval must be positive")
        if not self.source_boot_mount.startswith("/"):
            raise ValueError("source_boot_mount must be an absolute path")
        # Fail on bad names now rather than after the clone.
        BootOrder.from_names(self.boot_order)

    @property
    def boot_end_mib(self) -> int:
        return self.boot_start_mib + self.boot_size_mib

    @property
    def target(self) -> MigrationTarget:
        return MigrationTarget.from_device(
            self.target_device,
            boot_label=self.boot_label,
            root_label=self.root_label,
        )

    @property
    def target_boot_order(self) -> BootOrder:
        return BootOrder.from_names(self.boot_order)

    @property
    def boot_mount_in_root(self) -> Path:
        """Where the destination boot partition is mounted inside the root."""
        return self.mount_root / self.source_boot_mount.lstrip("/")

    @property
    def all_copy_excludes(self) -> tuple[str, ...]:
        boot_exclude = f"{self.source_boot_mount.rstrip('/')}/*"
        if boot_exclude in self.copy_excludes:
            return self.copy_excludes
        return (*self.copy_excludes, boot_exclude)


_PATH_FIELDS = {"mount_root", "mounts_file", "cpuinfo_path"}
_TUPLE_FIELDS = {"boot_order", "copy_excludes", "required_tools", "cmdline_candidates"}


def _coerce(name: str, value: Any) -> Any:
    if name in _PATH_FIELDS and value is not None:
        return Path(value)
    if name in _TUPLE_FIELDS and isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value)
    return value


def read_settings_file(path: Path) -> dict[str, Any]:
    """Read the JSON settings file, returning {} if it is missing or invalid."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Ignoring unreadable settings file {path}: {error}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring settings file {path}: expected a JSON object")
        return {}
    return data


def load_config(path: Optional[Path] = None, **overrides: Any) -> MigrationConfig:
    """Build the configuration from defaults, the settings file and overrides.

    Overrides whose value is None are ignored so CLI flags that were not
    given do not mask the settings file.
    """
    settings_path = path or SETTINGS_PATH
    known = {item.name for item in fields(MigrationConfig)}
    values: dict[str, Any] = {}

    for key, value in read_settings_file(settings_path).items():
        if key not in known:
            log.warning(f"Ignoring unknown setting '{key}' in {settings_path}")
            continue
        values[key] = _coerce(key, value)

    for key, value in overrides.items():
        if value is None:
            continue
        if key not in known:
            raise TypeError(f"Unknown configuration option: {key}")
        values[key] = _coerce(key, value)

    return replace(MigrationConfig(), **values)
