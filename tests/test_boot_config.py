"""Tests for the boot package - fstab, cmdline.txt and their rewriting."""

from pathlib import Path

import pytest

from pi_nvme_boot.boot.cmdline import KernelCommandLine
from pi_nvme_boot.boot.fstab import FstabEntry, FstabTable
from pi_nvme_boot.boot.rewriter import (
    FSTAB_HEADER,
    BootConfigRewriter,
    backup_file,
    edit_fstab,
    get_partuuid,
)
from pi_nvme_boot.domain.models import ClonePaths
from pi_nvme_boot.storage.exceptions import ConfigNotFoundError, PartuuidLookupError
from tests.conftest import (
    BOOT_PARTUUID,
    ROOT_PARTUUID,
    SD_CMDLINE,
    SD_FSTAB,
    FakeRunner,
)


class TestFstabTable:
    def test_untouched_table_renders_unchanged(self):
        assert FstabTable.parse(SD_FSTAB).render() == SD_FSTAB

    def test_entries_and_find(self):
        table = FstabTable.parse(SD_FSTAB)
        assert [entry.mountpoint for entry in table.entries] == ["/proc", "/boot/firmware", "/"]
        (root,) = table.find(mountpoint="/")
        assert root.spec == "PARTUUID=6c586e13-02"
        assert root.options == "defaults,noatime"
        assert root.passno == "1"

    def test_short_entry_gets_defaults(self):
        entry = FstabEntry.parse("tmpfs /tmp tmpfs")
        assert entry.options == "defaults"
        assert entry.dump == "0"
        assert entry.passno == "0"

    def test_comment_out(self):
        table = FstabTable.parse(SD_FSTAB)
        commented = table.comment_out(["/", "/boot/firmware"])
        assert [entry.mountpoint for entry in commented] == ["/boot/firmware", "/"]
        rendered = table.render()
        assert "#PARTUUID=6c586e13-01  /boot/firmware" in rendered
        assert "#PARTUUID=6c586e13-02" in rendered
        assert [entry.mountpoint for entry in table.entries] == ["/proc"]


class TestKernelCommandLine:
    def test_replace_root(self):
        cmdline = KernelCommandLine.parse(SD_CMDLINE)
        cmdline.set_first("root", f"PARTUUID={ROOT_PARTUUID}")
        assert f"root=PARTUUID={ROOT_PARTUUID}" in cmdline.arguments
        assert cmdline.render().count("root=") == 1

    def test_only_first_root_is_replaced(self):
        cmdline = KernelCommandLine.parse("root=/dev/a root=/dev/b quiet")
        cmdline.set_first("root", "PARTUUID=x")
        assert cmdline.render() == "root=PARTUUID=x root=/dev/b quiet\n"

    def test_root_appended_when_missing(self):
        cmdline = KernelCommandLine.parse("console=tty1 quiet")
        cmdline.set_first("root", "PARTUUID=x")
        assert cmdline.render() == "console=tty1 quiet root=PARTUUID=x\n"

    def test_ensure_flag(self):
        cmdline = KernelCommandLine.parse("quiet")
        assert cmdline.ensure_flag("rootwait") is True
        assert cmdline.ensure_flag("rootwait") is False
        assert cmdline.render() == "quiet rootwait\n"

    @pytest.mark.parametrize("existing", ["rootwait", "rootwait=5", "rootwait=1000"])
    def test_ensure_flag_accepts_valued_flag(self, existing):
        """Test a flag given with a value counts as present."""
        cmdline = KernelCommandLine.parse(f"quiet {existing}")
        assert cmdline.has_flag("rootwait")
        assert cmdline.ensure_flag("rootwait") is False
        assert cmdline.render() == f"quiet {existing}\n"

    def test_has_flag_ignores_longer_names(self):
        assert not KernelCommandLine.parse("rootwaitx rootwaiting=1").has_flag("rootwait")

    def test_render_is_single_line(self):
        cmdline = KernelCommandLine.parse("console=tty1\n  quiet\n")
        assert cmdline.render() == "console=tty1 quiet\n"


class TestEditFstab:
    def edit(self, table):
        return edit_fstab(
            table,
            root_spec=f"PARTUUID={ROOT_PARTUUID}",
            boot_spec=f"PARTUUID={BOOT_PARTUUID}",
            boot_mountpoint="/boot/firmware",
        )

    def test_edit(self):
        """Test old entries are commented out and destination entries appended."""
        table = FstabTable.parse(SD_FSTAB)

        assert self.edit(table) is True

        active = table.entries
        assert [(entry.spec, entry.mountpoint, entry.passno) for entry in active] == [
            ("proc", "/proc", "0"),
            (f"PARTUUID={ROOT_PARTUUID}", "/", "1"),
            (f"PARTUUID={BOOT_PARTUUID}", "/boot/firmware", "2"),
        ]
        assert FSTAB_HEADER in table.render()
        assert active[1].options == "defaults,noatime"
        assert active[2].fstype == "vfat"

    def test_second_edit_is_a_no_op(self):
        """Test editing twice leaves one active entry per mountpoint."""
        table = FstabTable.parse(SD_FSTAB)
        self.edit(table)
        once = table.render()

        assert self.edit(FstabTable.parse(once)) is False
        table = FstabTable.parse(once)
        self.edit(table)
        assert table.render() == once


class TestHelpers:
    def test_get_partuuid(self):
        runner = FakeRunner().on("blkid", stdout="4b6d2a1c-02\n")
        assert get_partuuid(runner, "/dev/nvme0n1p2") == "4b6d2a1c-02"
        assert runner.calls == [["blkid", "-s", "PARTUUID", "-o", "value", "/dev/nvme0n1p2"]]

    @pytest.mark.parametrize("response", [{"returncode": 2}, {"stdout": "\n"}])
    def test_get_partuuid_failure(self, response):
        runner = FakeRunner().on("blkid", **response)
        with pytest.raises(PartuuidLookupError):
            get_partuuid(runner, "/dev/nvme0n1p2")

    def test_backup_file(self, tmp_path):
        path = tmp_path / "fstab"
        path.write_text("original")
        assert backup_file(path) == tmp_path / "fstab.bak"
        assert (tmp_path / "fstab.bak").read_text() == "original"

    def test_existing_backup_is_replaced(self, tmp_path):
        """Test a stale backup is replaced by the file about to be edited."""
        path = tmp_path / "fstab"
        path.write_text("current")
        (tmp_path / "fstab.bak").write_text("stale")

        backup_file(path)

        assert (tmp_path / "fstab.bak").read_text() == "current"


@pytest.fixture
def cloned(config, tmp_path):
    """A mounted clone layout with the SD card's fstab and cmdline.txt."""
    root = config.mount_root
    boot = config.boot_mount_in_root
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "fstab").write_text(SD_FSTAB)
    boot.mkdir(parents=True)
    (boot / "cmdline.txt").write_text(SD_CMDLINE)
    return ClonePaths(root_mount=root, boot_mount=boot)


@pytest.fixture
def blkid_runner(config):
    target = config.target
    runner = FakeRunner()
    runner.on("blkid", "-s", "PARTUUID", "-o", "value", target.boot_partition,
              stdout=f"{BOOT_PARTUUID}\n")
    runner.on("blkid", "-s", "PARTUUID", "-o", "value", target.root_partition,
              stdout=f"{ROOT_PARTUUID}\n")
    return runner


class TestBootConfigRewriter:
    def test_rewrite(self, config, cloned, blkid_runner):
        result = BootConfigRewriter(config, blkid_runner).rewrite(config.target, cloned)

        fstab = cloned.root_mount / "etc" / "fstab"
        cmdline = cloned.boot_mount / "cmdline.txt"
        assert result.root_partuuid == ROOT_PARTUUID
        assert result.boot_partuuid == BOOT_PARTUUID
        assert result.fstab_path == fstab
        assert result.cmdline_path == cmdline
        assert result.backups == [Path(f"{fstab}.bak"), Path(f"{cmdline}.bak")]

        assert Path(f"{fstab}.bak").read_text() == SD_FSTAB
        assert Path(f"{cmdline}.bak").read_text() == SD_CMDLINE

        new_cmdline = cmdline.read_text()
        assert f"root=PARTUUID={ROOT_PARTUUID}" in new_cmdline
        assert "root=PARTUUID=6c586e13-02" not in new_cmdline
        assert new_cmdline.rstrip().endswith("rootwait")
        assert new_cmdline.count("\n") == 1

        active = FstabTable.parse(fstab.read_text()).entries
        assert [entry.spec for entry in active if entry.mountpoint in ("/", "/boot/firmware")] == [
            f"PARTUUID={ROOT_PARTUUID}",
            f"PARTUUID={BOOT_PARTUUID}",
        ]

    def test_rewrite_twice_keeps_entries(self, config, cloned, blkid_runner):
        """Test a second rewrite changes nothing and backs up the current files."""
        rewriter = BootConfigRewriter(config, blkid_runner)
        rewriter.rewrite(config.target, cloned)
        fstab_once = (cloned.root_mount / "etc" / "fstab").read_text()
        cmdline_once = (cloned.boot_mount / "cmdline.txt").read_text()

        result = rewriter.rewrite(config.target, cloned)

        assert result.fstab_backup.read_text() == fstab_once
        assert result.cmdline_backup.read_text() == cmdline_once
        assert (cloned.root_mount / "etc" / "fstab").read_text() == fstab_once
        assert (cloned.boot_mount / "cmdline.txt").read_text() == cmdline_once

    def test_cmdline_in_firmware_subdirectory(self, config, cloned, blkid_runner):
        (cloned.boot_mount / "cmdline.txt").unlink()
        (cloned.boot_mount / "firmware").mkdir()
        (cloned.boot_mount / "firmware" / "cmdline.txt").write_text(SD_CMDLINE)

        result = BootConfigRewriter(config, blkid_runner).rewrite(config.target, cloned)

        assert result.cmdline_path == cloned.boot_mount / "firmware" / "cmdline.txt"

    def test_cmdline_missing(self, config, cloned, blkid_runner):
        """Test a missing cmdline.txt names the fstab backup for recovery."""
        (cloned.boot_mount / "cmdline.txt").unlink()

        with pytest.raises(ConfigNotFoundError) as exc_info:
            BootConfigRewriter(config, blkid_runner).rewrite(config.target, cloned)

        error = exc_info.value
        assert error.name == "cmdline.txt"
        assert error.backup_path == cloned.root_mount / "etc" / "fstab.bak"
        assert len(error.searched) == 2

    def test_fstab_missing(self, config, cloned, blkid_runner):
        (cloned.root_mount / "etc" / "fstab").unlink()

        with pytest.raises(ConfigNotFoundError) as exc_info:
            BootConfigRewriter(config, blkid_runner).rewrite(config.target, cloned)

        assert exc_info.value.name == "fstab"

    def test_partuuid_failure_writes_nothing(self, config, cloned):
        runner = FakeRunner().on("blkid", returncode=2)

        with pytest.raises(PartuuidLookupError):
            BootConfigRewriter(config, runner).rewrite(config.target, cloned)

        assert (cloned.root_mount / "etc" / "fstab").read_text() == SD_FSTAB
        assert not (cloned.root_mount / "etc" / "fstab.bak").exists()

    def test_backups_copied_from_source_are_replaced(self, config, cloned, blkid_runner):
        """Test .bak files that came over with the clone do not survive as backups."""
        (cloned.root_mount / "etc" / "fstab.bak").write_text("STALE fstab from years ago\n")
        (cloned.boot_mount / "cmdline.txt.bak").write_text("root=/dev/sda2 stale\n")

        result = BootConfigRewriter(config, blkid_runner).rewrite(config.target, cloned)

        assert result.fstab_backup.read_text() == SD_FSTAB
        assert result.cmdline_backup.read_text() == SD_CMDLINE

    def test_existing_valued_rootwait_is_kept(self, config, cloned, blkid_runner):
        cmdline = cloned.boot_mount / "cmdline.txt"
        cmdline.write_text(SD_CMDLINE.replace("quiet", "rootwait=10 quiet"))

        BootConfigRewriter(config, blkid_runner).rewrite(config.target, cloned)

        arguments = cmdline.read_text().split()
        assert [arg for arg in arguments if arg.startswith("rootwait")] == ["rootwait=10"]
