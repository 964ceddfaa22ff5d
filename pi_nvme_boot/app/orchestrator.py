"""Run the migration steps in order.

    preflight -> firmware -> partition -> clone -> boot-config -> boot-order

Each step runs to completion or raises; a fatal error stops the run before
any later step starts. The destination stays mounted from the clone until the
end of the run and is unmounted on every exit path by the MountStack.

Graceful early exits (already migrated, reboot required, operator declined)
return a MigrationReport instead of raising.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Optional

from pi_nvme_boot.app.confirm import Confirmer
from pi_nvme_boot.boot.rewriter import BootConfigRewriter
from pi_nvme_boot.config.settings import MigrationConfig
from pi_nvme_boot.domain.models import (
    BootOrderResult,
    FirmwareOutcome,
    MigrationReport,
    MigrationResult,
)
from pi_nvme_boot.firmware.boot_order import BootOrderConfigurator, remediation_hint
from pi_nvme_boot.firmware.eeprom import EepromTool
from pi_nvme_boot.firmware.updater import FirmwareUpdater
from pi_nvme_boot.logging import LoggerFactory, operation_context
from pi_nvme_boot.storage.clone import Cloner
from pi_nvme_boot.storage.exceptions import (
    FirmwareError,
    MigrationError,
    OperationCancelled,
)
from pi_nvme_boot.storage.mount import MountStack
from pi_nvme_boot.storage.partition import Partitioner
from pi_nvme_boot.storage.preflight import PreflightInspector
from pi_nvme_boot.system.commands import CommandRunner
from pi_nvme_boot.system.power import poweroff_system, reboot_system


log = LoggerFactory.for_system()


class MigrationOrchestrator:
    def __init__(
        self,
        config: MigrationConfig,
        runner: CommandRunner,
        confirmer: Confirmer,
        *,
        preflight: Optional[PreflightInspector] = None,
        firmware: Optional[FirmwareUpdater] = None,
        partitioner: Optional[Partitioner] = None,
        cloner: Optional[Cloner] = None,
        rewriter: Optional[BootConfigRewriter] = None,
        boot_order: Optional[BootOrderConfigurator] = None,
    ):
        self.config = config
        self.runner = runner
        self.confirmer = confirmer
        tool = EepromTool(runner)
        self.preflight = preflight or PreflightInspector(config, runner)
        self.firmware = firmware or FirmwareUpdater(tool, confirmer)
        self.partitioner = partitioner or Partitioner(config, runner, confirmer)
        self.cloner = cloner or Cloner(config, runner)
        self.rewriter = rewriter or BootConfigRewriter(config, runner)
        self.boot_order = boot_order or BootOrderConfigurator(tool)

    @contextmanager
    def _step(self, name: str):
        try:
            with operation_context(name):
                yield
        except MigrationError as error:
            if error.step is None:
                error.step = name
            raise

    def run(self) -> MigrationReport:
        """Run every step.

        Raises:
            MigrationError: The first fatal error, with ``step`` set
        """
        report = MigrationReport(result=MigrationResult.COMPLETED)
        try:
            self._run(report)
        except OperationCancelled as cancelled:
            log.info(f"Operation cancelled: {cancelled}")
            report.result = MigrationResult.CANCELLED
        return report

    def _run(self, report: MigrationReport) -> None:
        target = self.config.target

        with self._step("preflight"):
            report.preflight = self.preflight.inspect()
        report.warnings.extend(report.preflight.warnings)
        if report.preflight.already_migrated:
            log.info(
                f"Root is already on {report.preflight.root_device}; this tool is "
                "for moving an SD-booted system to NVMe. Nothing to do."
            )
            report.result = MigrationResult.ALREADY_MIGRATED
            return

        with self._step("firmware"):
            report.firmware = self.firmware.check_and_update()
        if report.firmware.halts_run:
            self._suspend_for_reboot(report.firmware)
            report.result = MigrationResult.REBOOT_REQUIRED
            return

        with MountStack(self.runner) as mounts:
            with self._step("partition"):
                self.partitioner.partition(target)
            with self._step("clone"):
                paths = self.cloner.clone(target, mounts)
            with self._step("boot-config"):
                report.boot_config = self.rewriter.rewrite(target, paths)
            report.boot_order = self._set_boot_order(report)
            log.info("Unmounting destination partitions")
            mounts.release_all()

        self._finish(report)

    def _suspend_for_reboot(self, outcome: FirmwareOutcome) -> None:
        if outcome == FirmwareOutcome.REBOOT_REQUESTED:
            reboot_system(self.runner)
            return
        log.warning("After rebooting (from the SD card), please re-run this command.")
        log.warning("It will then re-verify the EEPROM status and continue.")
        if self.confirmer.confirm("Reboot now?", assumable=False):
            reboot_system(self.runner)

    def _set_boot_order(self, report: MigrationReport) -> Optional[BootOrderResult]:
        boot_order = self.config.target_boot_order
        try:
            with self._step("boot-order"):
                return self.boot_order.set_boot_order(boot_order)
        except FirmwareError as error:
            # Non-fatal: fstab and cmdline.txt already point at the NVMe drive.
            log.warning(f"Boot order was not applied: {error}")
            if error.output:
                log.warning("rpi-eeprom-config output:\n{}", error.output)
            hint = getattr(error, "remediation", None) or remediation_hint(boot_order)
            log.warning(hint)
            report.warnings.append(f"Boot order not applied. {hint}")
            return None

    def _finish(self, report: MigrationReport) -> None:
        target = self.config.target
        log.success("NVMe setup completed")
        log.info(f"The system has been copied to {target.device}.")
        if report.boot_order is not None:
            log.info(
                f"The EEPROM boot order has been set to prioritize NVMe "
                f"({report.boot_order.boot_order.to_hex()})."
            )
        if report.boot_config is not None:
            for backup in report.boot_config.backups:
                log.info(f"Backup of the original file: {backup} (on {target.device})")
        log.info("Next steps:")
        log.info("1. Shut down the Raspberry Pi (e.g., sudo shutdown now).")
        log.info("2. REMOVE THE SD CARD.")
        log.info("3. Power on the Raspberry Pi. It should boot from the NVMe SSD.")
        log.info(
            "If it fails to boot, re-insert the SD card, boot from it, and check "
            "fstab and cmdline.txt on the NVMe drive against their .bak copies."
        )
        for warning in report.warnings:
            log.warning(warning)
        if self.confirmer.confirm("Shutdown now?", assumable=False):
            poweroff_system(self.runner)
