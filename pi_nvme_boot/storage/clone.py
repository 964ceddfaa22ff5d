"""Copy the running system onto the destination partitions.

The root filesystem is copied file by file with rsync, preserving
permissions, ownership, ACLs, extended attributes, and hard links, and
staying on one filesystem. Pseudo-filesystems, transient directories, other
mount points, and old logs are excluded. The boot partition is copied
separately, contents only.

Mount sessions are opened on the caller's :class:`MountStack` and left
mounted: the boot configuration is rewritten on the same mounts afterwards.
"""

from __future__ import annotations

import re
import uuid
from pathlib import Path

from pi_nvme_boot.config.settings import MigrationConfig
from pi_nvme_boot.domain.models import ClonePaths, MigrationTarget
from pi_nvme_boot.logging import LoggerFactory, get_logger
from pi_nvme_boot.storage.exceptions import CopyError
from pi_nvme_boot.storage.mount import MountStack
from pi_nvme_boot.system.commands import CommandRunner


RSYNC_BASE_ARGS = ["rsync", "-axHAWX", "--numeric-ids", "--info=progress2"]
PROGRESS_PATTERN = re.compile(r"(\d{1,3})%")
PROGRESS_STEP = 10


def with_trailing_slash(path: str) -> str:
    return path if path.endswith("/") else f"{path}/"


def rsync_command(
    source: str, destination: Path, excludes: tuple[str, ...] = ()
) -> list[str]:
    command = list(RSYNC_BASE_ARGS)
    for pattern in excludes:
        command.append(f"--exclude={pattern}")
    command.extend([with_trailing_slash(source), with_trailing_slash(str(destination))])
    return command


class Cloner:
    def __init__(self, config: MigrationConfig, runner: CommandRunner):
        self.config = config
        self.runner = runner
        self.job_id = f"clone-{uuid.uuid4().hex[:8]}"
        self.log = LoggerFactory.for_clone(self.job_id)
        self.progress_log = get_logger(job_id=self.job_id, tags=["progress"], source="clone")

    def clone(self, target: MigrationTarget, mounts: MountStack) -> ClonePaths:
        """Mount the destination and copy root and boot onto it.

        Raises:
            MountError: If either partition cannot be mounted
            CopyError: If rsync fails
        """
        root_mount = self.mount_root(target, mounts)
        self.copy_root(root_mount)
        # Mounted after the root copy so rsync never writes into the vfat mount.
        boot_mount = self.mount_boot(target, mounts)
        self.copy_boot(boot_mount)
        self.log.info("System files copied")
        return ClonePaths(root_mount=root_mount, boot_mount=boot_mount)

    def mount_root(self, target: MigrationTarget, mounts: MountStack) -> Path:
        return mounts.open(target.root_partition, self.config.mount_root)

    def mount_boot(self, target: MigrationTarget, mounts: MountStack) -> Path:
        # The boot directory is part of the cloned tree; leave it behind.
        return mounts.open(
            target.boot_partition,
            self.config.boot_mount_in_root,
            remove_mountpoint=False,
        )

    def copy_root(self, root_mount: Path) -> None:
        source = self.config.source_root
        self.log.info(
            f"Copying root filesystem from {source} to {root_mount} "
            "(this may take a while)"
        )
        self._rsync(source, root_mount, self.config.all_copy_excludes)

    def copy_boot(self, boot_mount: Path) -> None:
        source = self.config.source_boot_mount
        self.log.info(f"Copying boot files from {source} to {boot_mount}")
        self._rsync(source, boot_mount)

    def _rsync(
        self, source: str, destination: Path, excludes: tuple[str, ...] = ()
    ) -> None:
        reported = [-PROGRESS_STEP]

        def on_line(line: str) -> None:
            self.progress_log.trace(line)
            match = PROGRESS_PATTERN.search(line)
            if match is None:
                return
            percent = int(match.group(1))
            if percent >= reported[0] + PROGRESS_STEP:
                reported[0] = percent - percent % PROGRESS_STEP
                self.log.info(f"Copying {source}: {percent}%")

        result = self.runner.stream(rsync_command(source, destination, excludes), on_line)
        if not result.ok:
            raise CopyError(source, destination, output=result.output)
