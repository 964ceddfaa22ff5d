"""Point the cloned system at its new partitions.

Edits two files on the destination, each after copying the original to a
``.bak`` sibling:

    <root>/etc/fstab        old / and boot entries commented out, PARTUUID
                            entries for the destination appended
    <boot>/cmdline.txt      root= replaced with the destination PARTUUID,
                            rootwait added when missing

The backups are the only recovery mechanism. Each one is a byte-for-byte copy
of the file as it was just before this run edited it.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from pi_nvme_boot.boot.cmdline import KernelCommandLine
from pi_nvme_boot.boot.fstab import FstabEntry, FstabTable
from pi_nvme_boot.config.settings import MigrationConfig
from pi_nvme_boot.domain.models import BootConfigResult, ClonePaths, MigrationTarget
from pi_nvme_boot.logging import LoggerFactory
from pi_nvme_boot.storage.exceptions import ConfigNotFoundError, PartuuidLookupError
from pi_nvme_boot.system.commands import CommandRunner


log = LoggerFactory.for_boot_config()

FSTAB_HEADER = "# Entries for NVMe boot (added by pi-nvme-boot)"


def get_partuuid(runner: CommandRunner, partition: str) -> str:
    result = runner.run(["blkid", "-s", "PARTUUID", "-o", "value", partition])
    partuuid = result.stdout.strip() if result.ok else ""
    if not partuuid:
        raise PartuuidLookupError(partition, output=result.output)
    return partuuid


def backup_file(path: Path, suffix: str = ".bak") -> Path:
    """Copy ``path`` to a sibling backup, replacing any backup already there.

    A backup found on the destination was copied from the source along with
    everything else, so it does not describe the file about to be edited.
    """
    backup = path.with_name(path.name + suffix)
    if backup.exists():
        log.info(f"Replacing {backup} copied from the source")
    shutil.copy2(path, backup)
    log.info(f"Backed up {path} to {backup}")
    return backup


class BootConfigRewriter:
    def __init__(self, config: MigrationConfig, runner: CommandRunner):
        self.config = config
        self.runner = runner

    def rewrite(self, target: MigrationTarget, paths: ClonePaths) -> BootConfigResult:
        """Rewrite fstab and cmdline.txt on the mounted destination.

        Raises:
            PartuuidLookupError: If a destination partition has no PARTUUID
            ConfigNotFoundError: If fstab or cmdline.txt is missing
        """
        boot_partuuid = get_partuuid(self.runner, target.boot_partition)
        root_partuuid = get_partuuid(self.runner, target.root_partition)
        log.info(f"Destination PARTUUIDs: root={root_partuuid} boot={boot_partuuid}")

        fstab_path, fstab_backup = self.rewrite_fstab(
            paths.root_mount, target, root_partuuid, boot_partuuid
        )
        cmdline_path = self.find_cmdline(paths.boot_mount, fstab_backup)
        cmdline_backup = self.rewrite_cmdline(cmdline_path, root_partuuid)

        return BootConfigResult(
            root_partuuid=root_partuuid,
            boot_partuuid=boot_partuuid,
            fstab_path=fstab_path,
            fstab_backup=fstab_backup,
            cmdline_path=cmdline_path,
            cmdline_backup=cmdline_backup,
        )

    def rewrite_fstab(
        self,
        root_mount: Path,
        target: MigrationTarget,
        root_partuuid: str,
        boot_partuuid: str,
    ) -> tuple[Path, Path]:
        fstab_path = root_mount / "etc" / "fstab"
        if not fstab_path.is_file():
            raise ConfigNotFoundError("fstab", [fstab_path])
        backup = backup_file(fstab_path, self.config.backup_suffix)

        table = FstabTable.parse(fstab_path.read_text(encoding="utf-8"))
        edit_fstab(
            table,
            root_spec=f"PARTUUID={root_partuuid}",
            boot_spec=f"PARTUUID={boot_partuuid}",
            boot_mountpoint=self.config.source_boot_mount,
            root_fstype=target.root_fstype,
            boot_fstype=target.boot_fstype,
            root_options=self.config.root_mount_options,
            boot_options=self.config.boot_mount_options,
        )
        fstab_path.write_text(table.render(), encoding="utf-8")
        log.info("fstab updated on destination. Contents:\n{}", table.render().rstrip())
        return fstab_path, backup

    def find_cmdline(self, boot_mount: Path, fstab_backup: Path | None = None) -> Path:
        candidates = [boot_mount / name for name in self.config.cmdline_candidates]
        for candidate in candidates:
            if candidate.is_file():
                if candidate != candidates[0]:
                    log.info(f"Found cmdline.txt at alternative path: {candidate}")
                return candidate
        raise ConfigNotFoundError("cmdline.txt", candidates, backup_path=fstab_backup)

    def rewrite_cmdline(self, cmdline_path: Path, root_partuuid: str) -> Path:
        backup = backup_file(cmdline_path, self.config.backup_suffix)
        cmdline = KernelCommandLine.parse(cmdline_path.read_text(encoding="utf-8"))
        cmdline.set_first("root", f"PARTUUID={root_partuuid}")
        if cmdline.ensure_flag("rootwait"):
            log.info("Added 'rootwait' to cmdline.txt")
        cmdline_path.write_text(cmdline.render(), encoding="utf-8")
        log.info("cmdline.txt updated on destination. Contents:\n{}", cmdline.render().rstrip())
        return backup


def edit_fstab(
    table: FstabTable,
    *,
    root_spec: str,
    boot_spec: str,
    boot_mountpoint: str,
    root_fstype: str = "ext4",
    boot_fstype: str = "vfat",
    root_options: str = "defaults,noatime",
    boot_options: str = "defaults",
) -> bool:
    """Retarget / and the boot mount to the destination specs.

    Returns True if entries were appended, False if the table already
    pointed at the destination.
    """
    commented = table.comment_out(["/", boot_mountpoint], keep_specs=[root_spec, boot_spec])
    for entry in commented:
        log.info(f"Commented out fstab entry: {entry.spec} {entry.mountpoint}")

    has_root = bool(table.find(spec=root_spec, mountpoint="/"))
    has_boot = bool(table.find(spec=boot_spec, mountpoint=boot_mountpoint))
    if has_root and has_boot:
        log.info("fstab already references the destination partitions")
        return False

    table.append_comment("")
    table.append_comment(FSTAB_HEADER)
    if not has_root:
        table.append(FstabEntry(root_spec, "/", root_fstype, root_options, "0", "1"))
    if not has_boot:
        table.append(FstabEntry(boot_spec, boot_mountpoint, boot_fstype, boot_options, "0", "2"))
    return True
