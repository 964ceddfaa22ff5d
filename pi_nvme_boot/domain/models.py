"""Domain model for the SD card to NVMe migration.

The migration is process-oriented; these value objects describe the devices
it works on and the results each step hands to the next one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional


# ==============================================================================
# Devices
# ==============================================================================


def partition_path(device: str, number: int) -> str:
    """Partition node for a disk (nvme0n1 -> nvme0n1p1, sda -> sda1)."""
    partition_suffix = "p" if device[-1].isdigit() else ""
    return f"{device}{partition_suffix}{number}"


def parent_disk(device: str) -> str:
    """Disk that owns a partition node (nvme0n1p2 -> nvme0n1, sda2 -> sda)."""
    match = re.match(r"^(.*\d)p\d+$", device)
    if match and re.search(r"(nvme\d+n\d+|mmcblk\d+|loop\d+)$", match.group(1)):
        return match.group(1)
    if re.search(r"(nvme\d+n\d+|mmcblk\d+|loop\d+)$", device):
        return device
    return re.sub(r"\d+$", "", device)


def device_family(device: str) -> str:
    """Leading name prefix of a device node (/dev/nvme0n1p2 -> nvme)."""
    match = re.match(r"^[a-z]+", Path(device).name)
    return match.group(0) if match else ""


@dataclass(frozen=True)
class MigrationTarget:
    """The destination block device and the partitions derived from it."""

    device: str  # e.g., "/dev/nvme0n1"
    boot_partition: str  # e.g., "/dev/nvme0n1p1"
    root_partition: str  # e.g., "/dev/nvme0n1p2"
    boot_fstype: str = "vfat"
    root_fstype: str = "ext4"
    boot_label: str = "system-boot"
    root_label: str = "rootfs"

    @classmethod
    def from_device(
        cls,
        device: str,
        *,
        boot_label: str = "system-boot",
        root_label: str = "rootfs",
    ) -> MigrationTarget:
        return cls(
            device=device,
            boot_partition=partition_path(device, 1),
            root_partition=partition_path(device, 2),
            boot_label=boot_label,
            root_label=root_label,
        )

    @property
    def partitions(self) -> tuple[str, str]:
        return (self.boot_partition, self.root_partition)

    def is_same_family(self, other_device: str) -> bool:
        """True if ``other_device`` is this device, one of its partitions,
        or another device of the same kind (e.g. both NVMe)."""
        if parent_disk(other_device) == self.device:
            return True
        return device_family(other_device) == device_family(self.device)


# ==============================================================================
# Preflight
# ==============================================================================


class PreflightStatus(Enum):
    READY = "ready"
    ALREADY_MIGRATED = "already_migrated"


@dataclass(frozen=True)
class PreflightResult:
    status: PreflightStatus
    root_device: str
    warnings: tuple[str, ...] = ()

    @property
    def already_migrated(self) -> bool:
        return self.status == PreflightStatus.ALREADY_MIGRATED


# ==============================================================================
# Firmware
# ==============================================================================


class FirmwareStatus(Enum):
    """Bootloader status as reported by rpi-eeprom-update."""

    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    INDETERMINATE = "indeterminate"


class FirmwareOutcome(Enum):
    """What the firmware step decided."""

    UP_TO_DATE = "up_to_date"
    UPDATE_SKIPPED = "update_skipped"
    UPDATED = "updated"
    UPDATE_FAILED = "update_failed"  # operator chose to continue anyway
    REBOOT_REQUIRED = "reboot_required"  # tool said so; run must stop
    REBOOT_REQUESTED = "reboot_requested"  # operator asked for a defensive reboot

    @property
    def halts_run(self) -> bool:
        return self in (FirmwareOutcome.REBOOT_REQUIRED, FirmwareOutcome.REBOOT_REQUESTED)


class BootSource(Enum):
    """Boot modes understood by the Raspberry Pi bootloader BOOT_ORDER field."""

    SD_CARD_DETECT = 0x0
    SD = 0x1
    NETWORK = 0x2
    RPIBOOT = 0x3
    USB = 0x4
    BCM_USB = 0x5
    NVME = 0x6
    HTTP = 0x7
    STOP = 0xE
    RESTART = 0xF


@dataclass(frozen=True)
class BootOrder:
    """Ordered list of boot sources, first tried first.

    The EEPROM stores it as hex digits read right to left: ``0xf416`` means
    NVMe, then SD, then USB, then start over.
    """

    sources: tuple[BootSource, ...]

    @classmethod
    def from_names(cls, names: Iterable[str]) -> BootOrder:
        sources = []
        for name in names:
            key = name.strip().upper().replace("-", "_")
            try:
                sources.append(BootSource[key])
            except KeyError:
                raise ValueError(f"Unknown boot source: {name}") from None
        if not sources:
            raise ValueError("Boot order must name at least one boot source")
        return cls(tuple(sources))

    @classmethod
    def from_hex(cls, value: str) -> BootOrder:
        text = value.strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        if not text or not re.fullmatch(r"[0-9a-f]+", text):
            raise ValueError(f"Invalid BOOT_ORDER value: {value}")
        return cls(tuple(BootSource(int(digit, 16)) for digit in reversed(text)))

    def to_hex(self) -> str:
        return "0x" + "".join(f"{source.value:x}" for source in reversed(self.sources))

    @property
    def names(self) -> list[str]:
        return [source.name.lower() for source in self.sources]

    def __str__(self) -> str:
        return self.to_hex()


@dataclass(frozen=True)
class FirmwareState:
    """Bootloader status and the rpi-eeprom-update output it was read from."""

    status: FirmwareStatus
    output: str = ""


@dataclass(frozen=True)
class BootOrderResult:
    boot_order: BootOrder
    verified: bool
    observed: Optional[str] = None
    previous: Optional[BootOrder] = None


# ==============================================================================
# Clone and boot configuration
# ==============================================================================


@dataclass(frozen=True)
class ClonePaths:
    """Where the destination partitions are mounted during the run."""

    root_mount: Path
    boot_mount: Path


@dataclass(frozen=True)
class BootConfigResult:
    root_partuuid: str
    boot_partuuid: str
    fstab_path: Path
    fstab_backup: Path
    cmdline_path: Path
    cmdline_backup: Path

    @property
    def backups(self) -> list[Path]:
        return [self.fstab_backup, self.cmdline_backup]


# ==============================================================================
# Run result
# ==============================================================================


class MigrationResult(Enum):
    """How a migration run ended without a fatal error."""

    COMPLETED = "completed"
    ALREADY_MIGRATED = "already_migrated"
    REBOOT_REQUIRED = "reboot_required"
    CANCELLED = "cancelled"


@dataclass
class MigrationReport:
    """Everything the run produced, for the final summary."""

    result: MigrationResult
    preflight: Optional[PreflightResult] = None
    firmware: Optional[FirmwareOutcome] = None
    boot_config: Optional[BootConfigResult] = None
    boot_order: Optional[BootOrderResult] = None
    warnings: list[str] = field(default_factory=list)
