"""Destructive repartitioning and formatting of the destination device.

Layout written to the device:
    GPT partition table
    1: boot, FAT32, 1MiB .. 1MiB + boot size (512MiB by default), boot flag set
    2: root, ext4, rest of the device

Implementation Details:
    - Uses parted for partition management and mkfs.* for filesystems
    - Unmounts anything mounted from the device first (best effort)
    - Waits a bounded settle interval for the kernel to expose the new nodes
    - A partitioned-but-unformatted device is a terminal failure; nothing is
      retried automatically

Example:
    >>> Partitioner(config, runner, confirmer).partition(config.target)
"""

from __future__ import annotations

import os
import time

from pi_nvme_boot.app.confirm import Confirmer
from pi_nvme_boot.config.settings import MigrationConfig
from pi_nvme_boot.domain.models import MigrationTarget
from pi_nvme_boot.logging import LoggerFactory
from pi_nvme_boot.storage.exceptions import (
    FormatError,
    OperationCancelled,
    PartitionError,
    PartitionVerificationError,
)
from pi_nvme_boot.storage.mount import unmount_device_partitions
from pi_nvme_boot.system.commands import CommandRunner


log = LoggerFactory.for_partition()


def format_command(partition: str, fstype: str, label: str) -> list[str]:
    """mkfs command line for a supported filesystem."""
    if fstype == "vfat":
        return ["mkfs.vfat", "-F", "32", "-n", label, partition]
    if fstype == "ext4":
        return ["mkfs.ext4", "-F", "-L", label, partition]
    raise ValueError(f"Unsupported filesystem type: {fstype}")


class Partitioner:
    def __init__(
        self,
        config: MigrationConfig,
        runner: CommandRunner,
        confirmer: Confirmer,
    ):
        self.config = config
        self.runner = runner
        self.confirmer = confirmer

    def partition(self, target: MigrationTarget) -> None:
        """Wipe ``target`` and create formatted boot and root partitions.

        Raises:
            OperationCancelled: If the operator does not confirm the wipe
            PartitionError: If parted fails
            PartitionVerificationError: If the partition nodes never appear
            FormatError: If mkfs fails
        """
        self.confirm_wipe(target)
        self.unmount_existing(target)
        self.write_partition_table(target)
        self.wait_for_partitions(target)
        self.format_partitions(target)

    def confirm_wipe(self, target: MigrationTarget) -> None:
        question = (
            f"WARNING: ALL data on {target.device} will be ERASED. "
            "Continue with formatting?"
        )
        if not self.confirmer.confirm(question):
            raise OperationCancelled(
                f"Formatting of {target.device} cancelled by operator"
            )

    def unmount_existing(self, target: MigrationTarget) -> None:
        log.info(f"Unmounting any existing partitions on {target.device}")
        failed = unmount_device_partitions(
            self.runner, target.device, self.config.mounts_file
        )
        if failed:
            log.warning(
                f"Still mounted: {', '.join(failed)}; parted may refuse to continue"
            )

    def _parted(self, target: MigrationTarget, action: str, *args: str) -> None:
        result = self.runner.run(["parted", "-s", target.device, *args])
        if not result.ok:
            raise PartitionError(target.device, action, output=result.output)

    def write_partition_table(self, target: MigrationTarget) -> None:
        start = f"{self.config.boot_start_mib}MiB"
        boundary = f"{self.config.boot_end_mib}MiB"
        log.info(f"Partitioning {target.device}")
        self._parted(target, "create GPT partition table", "mklabel", "gpt")
        self._parted(
            target,
            "create boot partition",
            "mkpart", "primary", "fat32", start, boundary,
        )
        self._parted(target, "set boot flag", "set", "1", "boot", "on")
        self._parted(
            target,
            "create root partition",
            "mkpart", "primary", "ext4", boundary, "100%",
        )
        probe = self.runner.run(["partprobe", target.device])
        if not probe.ok:
            log.warning("partprobe {} failed: {}", target.device, probe.output)

    def wait_for_partitions(self, target: MigrationTarget) -> None:
        timeout = self.config.settle_timeout_seconds
        deadline = time.monotonic() + timeout
        while True:
            missing = [node for node in target.partitions if not os.path.exists(node)]
            if not missing:
                log.info(
                    f"Partitions {target.boot_partition} and {target.root_partition} created"
                )
                return
            if time.monotonic() >= deadline:
                raise PartitionVerificationError(target.device, missing, timeout)
            time.sleep(self.config.settle_poll_seconds)

    def format_partitions(self, target: MigrationTarget) -> None:
        log.info("Formatting partitions")
        for partition, fstype, label in (
            (target.boot_partition, target.boot_fstype, target.boot_label),
            (target.root_partition, target.root_fstype, target.root_label),
        ):
            result = self.runner.run(format_command(partition, fstype, label))
            if not result.ok:
                raise FormatError(partition, fstype, output=result.output)
            log.info(f"Formatted {partition} as {fstype} (label {label})")
