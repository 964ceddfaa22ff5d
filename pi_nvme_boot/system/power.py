"""System power management operations."""

from __future__ import annotations

from pi_nvme_boot.logging import LoggerFactory
from pi_nvme_boot.system.commands import CommandResult, CommandRunner


log = LoggerFactory.for_system()


def reboot_system(runner: CommandRunner) -> CommandResult:
    """Reboot the system."""
    log.warning("Rebooting now")
    return runner.run(["reboot"])


def poweroff_system(runner: CommandRunner) -> CommandResult:
    """Power off the system."""
    log.warning("Shutting down now")
    return runner.run(["shutdown", "now"])


def sync_filesystems(runner: CommandRunner) -> CommandResult:
    """Flush pending writes to disk."""
    return runner.run(["sync"], log_output=False)
