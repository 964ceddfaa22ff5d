"""Custom exceptions for the NVMe migration.

This module defines a hierarchy of exceptions so each migration step can fail
with a specific, reportable error.

Exception Hierarchy:
    MigrationError (base)
        ├── PreconditionError
        │   ├── NotPrivilegedError (also a builtin PermissionError)
        │   ├── DeviceNotFoundError
        │   └── MissingDependencyError
        ├── FirmwareError
        │   ├── FirmwareToolError
        │   ├── FirmwareUpdateError
        │   └── FirmwareConfigError
        ├── PartitionError
        │   └── PartitionVerificationError
        ├── FormatError
        ├── MountError
        │   └── UnmountFailedError
        ├── CopyError
        ├── BootConfigError
        │   ├── ConfigNotFoundError
        │   └── PartuuidLookupError
        └── OperationCancelled

Every error carries the captured tool ``output`` (when a tool was involved),
the ``backup_path`` usable for manual recovery (when one exists), and the
``step`` that failed, which the orchestrator fills in.

Usage:
    from pi_nvme_boot.storage.exceptions import DeviceNotFoundError

    if not Path(device).exists():
        raise DeviceNotFoundError(device)
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class MigrationError(Exception):
    """Base exception for all migration operations."""

    def __init__(
        self,
        message: str,
        *,
        output: str = "",
        backup_path: Optional[Path] = None,
    ):
        self.output = output
        self.backup_path = backup_path
        self.step: Optional[str] = None
        super().__init__(message)


class PreconditionError(MigrationError):
    """Base exception for preflight failures."""


class NotPrivilegedError(PreconditionError, PermissionError):
    """The process cannot perform block-device and firmware operations."""

    def __init__(self, euid: int):
        self.euid = euid
        super().__init__(
            f"Must be run as root (effective uid is {euid}). Please use sudo."
        )


class DeviceNotFoundError(PreconditionError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class MissingDependencyError(PreconditionError):
    """A required external tool is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(
            f"{tool} command not found. Please install the package that provides it "
            "(e.g. rpi-eeprom, parted, dosfstools, e2fsprogs, rsync, util-linux)."
        )


class FirmwareError(MigrationError):
    """Base exception for EEPROM operations."""


class FirmwareToolError(FirmwareError):
    """The EEPROM tool could not be invoked."""

    def __init__(self, tool: str, reason: str = ""):
        self.tool = tool
        msg = f"Unable to run {tool}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class FirmwareUpdateError(FirmwareError):
    """The EEPROM update ran but did not apply."""

    def __init__(self, returncode: int, output: str = ""):
        self.returncode = returncode
        super().__init__(
            f"EEPROM update failed with exit code {returncode}", output=output
        )


class FirmwareConfigError(FirmwareError):
    """The EEPROM configuration could not be read or applied."""

    def __init__(
        self,
        message: str,
        *,
        output: str = "",
        boot_order: Optional[str] = None,
        remediation: Optional[str] = None,
    ):
        self.boot_order = boot_order
        self.remediation = remediation
        super().__init__(message, output=output)


class PartitionError(MigrationError):
    """A partition table operation failed."""

    def __init__(
        self,
        device: str,
        action: str,
        output: str = "",
        message: Optional[str] = None,
    ):
        self.device = device
        self.action = action
        super().__init__(message or f"Failed to {action} on {device}", output=output)


class PartitionVerificationError(PartitionError):
    """Partition device nodes did not appear after repartitioning."""

    def __init__(self, device: str, missing: list[str], timeout: float):
        self.missing = missing
        self.timeout = timeout
        super().__init__(
            device,
            "verify partitions",
            message=(
                f"Partitions {', '.join(missing)} did not appear within "
                f"{timeout:g}s after repartitioning {device}. "
                "Check dmesg or parted output."
            ),
        )


class FormatError(MigrationError):
    """Formatting a partition failed."""

    def __init__(self, partition: str, fstype: str, output: str = ""):
        self.partition = partition
        self.fstype = fstype
        super().__init__(f"Failed to format {partition} as {fstype}", output=output)


class MountError(MigrationError):
    """Mounting a partition failed."""

    def __init__(
        self,
        device: str,
        mountpoint: Path,
        output: str = "",
        message: Optional[str] = None,
    ):
        self.device = device
        self.mountpoint = mountpoint
        super().__init__(
            message or f"Failed to mount {device} at {mountpoint}", output=output
        )


class UnmountFailedError(MountError):
    """A partition could not be unmounted."""

    def __init__(self, device: str, mountpoint: Path, output: str = ""):
        super().__init__(
            device,
            mountpoint,
            output=output,
            message=(
                f"Could not unmount {device} from {mountpoint}. "
                f"Manual unmount might be needed: umount {mountpoint}"
            ),
        )


class CopyError(MigrationError):
    """Copying files onto the destination failed."""

    def __init__(self, source: str, destination: Path, output: str = ""):
        self.source = source
        self.destination = destination
        super().__init__(
            f"Copy of {source} to {destination} failed", output=output
        )


class BootConfigError(MigrationError):
    """Base exception for boot configuration rewriting."""


class ConfigNotFoundError(BootConfigError):
    """A boot configuration file is missing from every known location."""

    def __init__(
        self,
        name: str,
        searched: list[Path],
        backup_path: Optional[Path] = None,
    ):
        self.name = name
        self.searched = searched
        locations = " or ".join(str(path) for path in searched)
        super().__init__(
            f"{name} not found at {locations}", backup_path=backup_path
        )


class PartuuidLookupError(BootConfigError):
    """A partition has no resolvable PARTUUID."""

    def __init__(self, partition: str, output: str = ""):
        self.partition = partition
        super().__init__(
            f"Could not retrieve PARTUUID for {partition}", output=output
        )


class OperationCancelled(MigrationError):
    """The operator declined to continue."""
