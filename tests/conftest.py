"""
Pytest configuration and shared fixtures for pi-nvme-boot tests.

This module provides a fake command runner, a scripted confirmer, and a
migration configuration rooted in a temporary directory, so every step can
run without touching real block devices or firmware.
"""

import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest
from loguru import logger

from pi_nvme_boot.app.confirm import Confirmer
from pi_nvme_boot.config.settings import MigrationConfig
from pi_nvme_boot.system.commands import CommandResult


SD_FSTAB = """proc            /proc           proc    defaults          0       0
PARTUUID=6c586e13-01  /boot/firmware  vfat    defaults          0       2
PARTUUID=6c586e13-02  /               ext4    defaults,noatime  0       1
# a swapfile is not a swap partition, no line here
"""

SD_CMDLINE = (
    "console=serial0,115200 console=tty1 root=PARTUUID=6c586e13-02 "
    "rootfstype=ext4 fsck.repair=yes quiet splash\n"
)

EEPROM_CONFIG = """[all]
BOOT_UART=1
BOOT_ORDER=0xf41
NET_INSTALL_AT_POWER_ON=1
"""

BOOT_PARTUUID = "4b6d2a1c-01"
ROOT_PARTUUID = "4b6d2a1c-02"


def result(returncode: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(args=(), returncode=returncode, stdout=stdout, stderr=stderr)


# ==============================================================================
# Fake collaborators
# ==============================================================================


class FakeRunner:
    """
    Records every command and answers from scripted responses.

    Responses are registered per argv prefix; the longest matching prefix
    wins. A prefix registered with several results hands them out in order
    and then keeps repeating the last one. Commands with no response succeed
    with empty output. mount and umount keep a table of active mounts;
    stream() feeds the scripted stdout to its callback line by line.
    """

    def __init__(self, missing_tools: Sequence[str] = ()):
        self.calls: List[List[str]] = []
        self.missing_tools = set(missing_tools)
        self.mounted: Dict[str, str] = {}
        self._responses: Dict[Tuple[str, ...], List[CommandResult]] = {}
        self._effects: Dict[Tuple[str, ...], Callable[[List[str]], None]] = {}

    def on(
        self,
        *prefix: str,
        results: Sequence[CommandResult] = (),
        effect: Optional[Callable[[List[str]], None]] = None,
        **single,
    ) -> "FakeRunner":
        if single:
            results = [result(**single)]
        if results:
            self._responses[prefix] = list(results)
        if effect is not None:
            self._effects[prefix] = effect
        return self

    def _match(self, table, args):
        best = None
        for prefix in table:
            if tuple(args[: len(prefix)]) == prefix:
                if best is None or len(prefix) > len(best):
                    best = prefix
        return best

    def run(self, args, *, log_output=True) -> CommandResult:
        args = list(args)
        self.calls.append(args)

        effect_key = self._match(self._effects, args)
        if effect_key is not None:
            self._effects[effect_key](args)

        key = self._match(self._responses, args)
        if key is None:
            response = result()
        else:
            queue = self._responses[key]
            response = queue.pop(0) if len(queue) > 1 else queue[0]

        if response.ok:
            self._track_mounts(args)
        return CommandResult(
            args=tuple(args),
            returncode=response.returncode,
            stdout=response.stdout,
            stderr=response.stderr,
        )

    def stream(self, args, on_line, *, keep_lines=50) -> CommandResult:
        response = self.run(args)
        for line in response.stdout.replace("\r", "\n").splitlines():
            if line.strip():
                on_line(line.strip())
        return response

    def _track_mounts(self, args: List[str]) -> None:
        if args[0] == "mount" and len(args) == 3:
            self.mounted[args[2]] = args[1]
        elif args[0] == "umount":
            self.mounted.pop(args[-1], None)

    def which(self, tool: str) -> Optional[str]:
        if tool in self.missing_tools:
            return None
        return f"/usr/bin/{tool}"

    def called(self, *prefix: str) -> List[List[str]]:
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]

    def commands(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeConfirmer(Confirmer):
    """Answers questions by matching a fragment of the question text."""

    def __init__(self, answers: Optional[Dict[str, bool]] = None, default: bool = True):
        self.answers = answers or {}
        self.default = default
        self.questions: List[Tuple[str, bool]] = []

    def confirm(self, question: str, *, assumable: bool = True) -> bool:
        self.questions.append((question, assumable))
        for fragment, answer in self.answers.items():
            if fragment in question:
                return answer
        return self.default

    def asked(self, fragment: str) -> bool:
        return any(fragment in question for question, _ in self.questions)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_loguru():
    """
    Auto-use fixture that restores a plain stderr sink after each test.

    setup_logging() replaces every sink, so tests that call it would
    otherwise leak file sinks into later tests.
    """
    yield
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})
    logger.add(sys.stderr, level="DEBUG")


@pytest.fixture
def log_records():
    """
    Fixture collecting every loguru record emitted during the test.

    Returns:
        List that fills with loguru record dicts.
    """
    records: list = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def as_root(monkeypatch):
    """Fixture making os.geteuid() report root."""
    monkeypatch.setattr("os.geteuid", lambda: 0)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def target_dir(tmp_path) -> Path:
    """Temporary stand-in for /dev with an NVMe disk node."""
    dev = tmp_path / "dev"
    dev.mkdir()
    (dev / "nvme0n1").touch()
    return dev


@pytest.fixture
def config(tmp_path, target_dir) -> MigrationConfig:
    """
    Fixture providing a MigrationConfig rooted in tmp_path.

    The target device is a plain file standing in for /dev/nvme0n1 and the
    settle timeout is short so verification failures return quickly.
    """
    cpuinfo = tmp_path / "cpuinfo"
    cpuinfo.write_text("Hardware\t: BCM2835\nModel\t\t: Raspberry Pi 5 Model B Rev 1.0\n")
    mounts = tmp_path / "mounts"
    mounts.write_text(
        "/dev/mmcblk0p2 / ext4 rw,noatime 0 0\n"
        "/dev/mmcblk0p1 /boot/firmware vfat rw 0 0\n"
    )
    return MigrationConfig(
        target_device=str(target_dir / "nvme0n1"),
        mount_root=tmp_path / "mnt" / "nvme_root_temp",
        settle_timeout_seconds=0.05,
        settle_poll_seconds=0.01,
        cpuinfo_path=cpuinfo,
        mounts_file=mounts,
    )


@pytest.fixture
def migration_runner(config) -> FakeRunner:
    """
    Fixture providing a FakeRunner scripted for a full, successful run.

    partprobe creates the partition nodes, the root rsync lays down an SD
    card style fstab, and the boot rsync lays down cmdline.txt.
    """
    target = config.target
    runner = FakeRunner()

    def create_partition_nodes(args):
        for node in target.partitions:
            Path(node).touch()

    def fake_rsync(args):
        destination = Path(args[-1])
        if destination == config.boot_mount_in_root:
            destination.mkdir(parents=True, exist_ok=True)
            (destination / "cmdline.txt").write_text(SD_CMDLINE)
            (destination / "config.txt").write_text("dtparam=pciex1\n")
        else:
            (destination / "etc").mkdir(parents=True, exist_ok=True)
            (destination / "etc" / "fstab").write_text(SD_FSTAB)
            (destination / "boot" / "firmware").mkdir(parents=True, exist_ok=True)

    runner.on("findmnt", stdout="/dev/mmcblk0p2\n")
    runner.on(
        "rpi-eeprom-update",
        stdout="BOOTLOADER: up-to-date\nCURRENT: Mon Jun 10 2024\nLATEST: Mon Jun 10 2024\n",
    )
    runner.on("partprobe", effect=create_partition_nodes)
    runner.on("rsync", effect=fake_rsync)
    runner.on("blkid", "-s", "PARTUUID", "-o", "value", target.boot_partition,
              stdout=f"{BOOT_PARTUUID}\n")
    runner.on("blkid", "-s", "PARTUUID", "-o", "value", target.root_partition,
              stdout=f"{ROOT_PARTUUID}\n")
    runner.on(
        "rpi-eeprom-config",
        results=[
            result(stdout=EEPROM_CONFIG),
            result(stdout=EEPROM_CONFIG.replace("0xf41\n", "0xf416\n")),
        ],
    )
    runner.on("rpi-eeprom-config", "--apply", returncode=0)
    return runner
