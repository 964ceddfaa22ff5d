"""Preflight checks before anything is written.

All checks raise specific exceptions from the exceptions module rather than
returning booleans. The one non-error outcome worth reporting, a system that
already boots from the target kind of device, comes back as a
:class:`PreflightResult` so the caller can decide what to do.

Checks, in order:
    1. Effective uid is root
    2. The device mounted at / is not already the target (or its family)
    3. The target device node exists
    4. Every required tool is on PATH
    5. The board looks like the expected model (warning only)
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from pi_nvme_boot.config.settings import MigrationConfig
from pi_nvme_boot.domain.models import PreflightResult, PreflightStatus
from pi_nvme_boot.logging import LoggerFactory
from pi_nvme_boot.storage.exceptions import (
    DeviceNotFoundError,
    MissingDependencyError,
    NotPrivilegedError,
    PreconditionError,
)
from pi_nvme_boot.system.commands import CommandRunner


log = LoggerFactory.for_preflight()


def strip_subvolume(source: str) -> str:
    """findmnt reports btrfs subvolumes as /dev/x[/@sub]; keep the device."""
    return re.sub(r"\[.*$", "", source.strip())


class PreflightInspector:
    def __init__(self, config: MigrationConfig, runner: CommandRunner):
        self.config = config
        self.runner = runner

    def inspect(self) -> PreflightResult:
        """Run every check.

        Raises:
            NotPrivilegedError: If not running as root
            DeviceNotFoundError: If the target device node does not exist
            MissingDependencyError: If a required tool is not installed
            PreconditionError: If the root device cannot be determined
        """
        target = self.config.target
        self.check_privileges()

        root_device = self.resolve_root_device()
        if target.is_same_family(root_device):
            log.info(
                f"System appears to be already booting from {root_device} "
                f"(same device family as {target.device})"
            )
            return PreflightResult(
                status=PreflightStatus.ALREADY_MIGRATED, root_device=root_device
            )
        log.info(
            f"Current root device ({root_device}) is not on {target.device}; proceeding"
        )

        self.check_device_exists(target.device)
        self.check_tools()
        warnings = tuple(self.check_model())

        log.info("Sanity checks passed")
        return PreflightResult(
            status=PreflightStatus.READY, root_device=root_device, warnings=warnings
        )

    def check_privileges(self) -> None:
        euid = os.geteuid()
        if euid != 0:
            raise NotPrivilegedError(euid)

    def resolve_root_device(self) -> str:
        if self.runner.which("findmnt") is None:
            raise MissingDependencyError("findmnt")
        result = self.runner.run(["findmnt", "-n", "-o", "SOURCE", "/"])
        source = strip_subvolume(result.stdout) if result.ok else ""
        if not source:
            raise PreconditionError(
                "Could not determine the device mounted at /", output=result.output
            )
        return source

    def check_device_exists(self, device: str) -> None:
        if not Path(device).exists():
            raise DeviceNotFoundError(device)

    def check_tools(self) -> None:
        for tool in self.config.required_tools:
            if self.runner.which(tool) is None:
                raise MissingDependencyError(tool)
            log.debug(f"Found {tool}")

    def check_model(self) -> list[str]:
        expected = self.config.expected_model
        if not expected:
            return []
        try:
            cpuinfo = self.config.cpuinfo_path.read_text(encoding="utf-8", errors="replace")
        except OSError as error:
            log.debug(f"Could not read {self.config.cpuinfo_path}: {error}")
            cpuinfo = ""
        if expected in cpuinfo:
            return []
        warning = (
            f"This might not be a {expected} (based on {self.config.cpuinfo_path}); "
            "NVMe boot may not be supported."
        )
        log.warning(warning)
        return [warning]
