"""Domain models for the SD card to NVMe migration."""

from __future__ import annotations

from .models import (
    BootConfigResult,
    BootOrder,
    BootOrderResult,
    BootSource,
    ClonePaths,
    FirmwareOutcome,
    FirmwareState,
    FirmwareStatus,
    MigrationReport,
    MigrationResult,
    MigrationTarget,
    PreflightResult,
    PreflightStatus,
)


__all__ = [
    "BootConfigResult",
    "BootOrder",
    "BootOrderResult",
    "BootSource",
    "ClonePaths",
    "FirmwareOutcome",
    "FirmwareState",
    "FirmwareStatus",
    "MigrationReport",
    "MigrationResult",
    "MigrationTarget",
    "PreflightResult",
    "PreflightStatus",
]
