import argparse
import signal
import sys
from pathlib import Path

from pi_nvme_boot.__version__ import __version__
from pi_nvme_boot.app.confirm import select_confirmer
from pi_nvme_boot.app.orchestrator import MigrationOrchestrator
from pi_nvme_boot.config.settings import load_config
from pi_nvme_boot.domain.models import MigrationResult
from pi_nvme_boot.logging import LoggerFactory, setup_logging
from pi_nvme_boot.storage.exceptions import FirmwareConfigError, MigrationError
from pi_nvme_boot.system.commands import CommandRunner


EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _raise_on_sigterm(signum, frame):
    # Unwinds through the mount stack so the destination gets unmounted.
    raise SystemExit(128 + signum)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pi-nvme-boot",
        description=(
            "Move a Raspberry Pi 5 from SD card boot to NVMe boot: update the "
            "bootloader, partition and clone onto the NVMe drive, and point "
            "the boot configuration at it."
        ),
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Answer yes to the wipe and update prompts (never to reboot or power off)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Enable very verbose output, including rsync progress lines",
    )
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def report_failure(error: MigrationError) -> None:
    log = LoggerFactory.for_system()
    step = error.step or "migration"
    log.error(f"ERROR during {step}: {error}")
    if error.output:
        log.error("Tool output:\n{}", error.output)
    if isinstance(error, FirmwareConfigError) and error.remediation:
        log.error(error.remediation)
    if error.backup_path is not None:
        log.error(f"Original file backed up at {error.backup_path}")


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    log.info(f"pi-nvme-boot {__version__}")

    try:
        config = load_config(assume_yes=True if args.yes else None)
    except (TypeError, ValueError) as error:
        log.error(f"Invalid configuration: {error}")
        return EXIT_FAILURE

    runner = CommandRunner()
    orchestrator = MigrationOrchestrator(
        config, runner, select_confirmer(config.assume_yes, sys.stdin)
    )

    previous_handler = signal.signal(signal.SIGTERM, _raise_on_sigterm)
    try:
        report = orchestrator.run()
    except MigrationError as error:
        report_failure(error)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        log.warning("Interrupted; destination partitions have been unmounted")
        return EXIT_INTERRUPTED
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if report.result == MigrationResult.CANCELLED:
        log.info("Nothing further was changed")
    elif report.result == MigrationResult.REBOOT_REQUIRED:
        log.info("Re-run pi-nvme-boot after the reboot to continue")
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
