"""Scoped mount sessions for the destination partitions.

A :class:`MountSession` mounts one partition and guarantees the matching
unmount when its context exits, however it exits. :class:`MountStack` holds
the sessions of a whole run so the clone can stay mounted for the later
rewrite steps and still be released on success, error, or interrupt.

Example:
    with MountStack(runner) as mounts:
        root = mounts.open("/dev/nvme0n1p2", Path("/mnt/nvme_root_temp"))
        boot = mounts.open("/dev/nvme0n1p1", root / "boot/firmware",
                           remove_mountpoint=False)
        ...
    # both partitions unmounted here, boot first
"""

from __future__ import annotations

import os
from contextlib import ExitStack
from pathlib import Path
from typing import Optional

from pi_nvme_boot.logging import LoggerFactory
from pi_nvme_boot.storage.exceptions import MountError, UnmountFailedError
from pi_nvme_boot.system.commands import CommandRunner
from pi_nvme_boot.system.power import sync_filesystems


log = LoggerFactory.for_mount()


def read_mounts(mounts_file: Path = Path("/proc/mounts")) -> list[tuple[str, str]]:
    """Return (source, mountpoint) pairs from a mounts table."""
    entries: list[tuple[str, str]] = []
    try:
        with open(mounts_file, encoding="utf-8") as handle:
            for line in handle:
                parts = line.split()
                if len(parts) > 1:
                    # /proc/mounts escapes spaces as \040
                    entries.append((parts[0], parts[1].replace("\\040", " ")))
    except FileNotFoundError:
        log.debug(f"Mounts table {mounts_file} not found")
    return entries


def mounted_partitions(
    device: str, mounts_file: Path = Path("/proc/mounts")
) -> list[tuple[str, str]]:
    """Mounted partitions (or the disk itself) belonging to ``device``."""
    matches = []
    for source, mountpoint in read_mounts(mounts_file):
        suffix = source[len(device):] if source.startswith(device) else None
        if suffix is None:
            continue
        if suffix == "" or suffix.lstrip("p").isdigit():
            matches.append((source, mountpoint))
    return matches


def unmount_device_partitions(
    runner: CommandRunner,
    device: str,
    mounts_file: Path = Path("/proc/mounts"),
) -> list[str]:
    """Best-effort unmount of everything mounted from ``device``.

    Returns the mountpoints that could not be unmounted; never raises.
    """
    failed: list[str] = []
    mounts = mounted_partitions(device, mounts_file)
    if not mounts:
        log.debug(f"No mounted partitions on {device}")
        return failed
    # Deepest mountpoints first so nested mounts release cleanly.
    for source, mountpoint in sorted(mounts, key=lambda item: len(item[1]), reverse=True):
        result = runner.run(["umount", mountpoint])
        if result.ok:
            log.info(f"Unmounted {source} from {mountpoint}")
        else:
            log.warning("Could not unmount {} from {}: {}", source, mountpoint, result.output)
            failed.append(mountpoint)
    return failed


class MountSession:
    """Mount ``device`` at ``mountpoint`` for the duration of a with-block."""

    def __init__(
        self,
        runner: CommandRunner,
        device: str,
        mountpoint: Path,
        *,
        remove_mountpoint: bool = True,
    ):
        self.runner = runner
        self.device = device
        self.mountpoint = Path(mountpoint)
        self.remove_mountpoint = remove_mountpoint
        self.mounted = False
        self._created_dir = False

    def __enter__(self) -> MountSession:
        self.mount()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.unmount()
        except UnmountFailedError as error:
            if exc_type is None:
                raise
            # An error is already propagating; do not mask it.
            log.error(str(error))

    def mount(self) -> None:
        if self.mounted:
            return
        if not self.mountpoint.exists():
            self.mountpoint.mkdir(parents=True, exist_ok=True)
            self._created_dir = True
        result = self.runner.run(["mount", self.device, str(self.mountpoint)])
        if not result.ok:
            self._remove_dir()
            raise MountError(self.device, self.mountpoint, output=result.output)
        self.mounted = True
        log.info(f"Mounted {self.device} at {self.mountpoint}")

    def unmount(self) -> None:
        if not self.mounted:
            return
        result = self.runner.run(["umount", str(self.mountpoint)])
        if not result.ok:
            log.warning(
                "umount {} failed ({}); retrying with lazy unmount",
                self.mountpoint,
                result.output,
            )
            lazy = self.runner.run(["umount", "-l", str(self.mountpoint)])
            if not lazy.ok:
                raise UnmountFailedError(
                    self.device, self.mountpoint, output=lazy.output or result.output
                )
        self.mounted = False
        log.info(f"Unmounted {self.device} from {self.mountpoint}")
        self._remove_dir()

    def _remove_dir(self) -> None:
        if not (self.remove_mountpoint and self._created_dir):
            return
        try:
            os.rmdir(self.mountpoint)
        except OSError as error:
            log.debug(f"Leaving mount point {self.mountpoint} in place: {error}")
        self._created_dir = False


class MountStack:
    """All mount sessions of one run, released in reverse order."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner
        self.sessions: list[MountSession] = []
        self._stack: Optional[ExitStack] = None

    def __enter__(self) -> MountStack:
        self._stack = ExitStack()
        self._stack.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return self.release_all(exc_type, exc, tb)

    def open(
        self,
        device: str,
        mountpoint: Path,
        *,
        remove_mountpoint: bool = True,
    ) -> Path:
        if self._stack is None:
            raise RuntimeError("MountStack must be entered before opening sessions")
        session = MountSession(
            self.runner, device, mountpoint, remove_mountpoint=remove_mountpoint
        )
        self._stack.enter_context(session)
        self.sessions.append(session)
        return session.mountpoint

    @property
    def active(self) -> list[MountSession]:
        return [session for session in self.sessions if session.mounted]

    def release_all(self, exc_type=None, exc=None, tb=None) -> bool:
        """Unmount every open session, innermost first."""
        if self._stack is None:
            return False
        stack, self._stack = self._stack, None
        if self.active:
            sync_filesystems(self.runner)
        return bool(stack.__exit__(exc_type, exc, tb))
