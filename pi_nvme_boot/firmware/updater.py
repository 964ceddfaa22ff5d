"""Bootloader (EEPROM) status check and update.

State handling:
    UP_TO_DATE        nothing to do
    UPDATE_AVAILABLE  offer the update; declining continues with a warning
    INDETERMINATE     warn with the full tool output, then offer the update

After an update is applied its output decides what happens next:
    "REBOOT REQUIRED"                 stop the run; re-invoke after rebooting
    "EEPROM version matching ..."     continue without a reboot
    anything else                     warn; the operator may reboot to be safe

An update that fails to apply is reported and the run only continues if the
operator says so.
"""

from __future__ import annotations

from pi_nvme_boot.app.confirm import Confirmer
from pi_nvme_boot.domain.models import FirmwareOutcome, FirmwareState, FirmwareStatus
from pi_nvme_boot.firmware.eeprom import (
    EepromTool,
    parse_status,
    reboot_required,
    version_matches,
)
from pi_nvme_boot.logging import LoggerFactory
from pi_nvme_boot.storage.exceptions import FirmwareUpdateError, OperationCancelled


log = LoggerFactory.for_firmware()


def _show(title: str, output: str) -> None:
    log.info("{} output:\n{}", title, output or "(no output)")


class FirmwareUpdater:
    def __init__(self, tool: EepromTool, confirmer: Confirmer):
        self.tool = tool
        self.confirmer = confirmer

    def check_status(self) -> FirmwareState:
        result = self.tool.query()
        return FirmwareState(status=parse_status(result.output), output=result.output)

    def check_and_update(self) -> FirmwareOutcome:
        """Query the bootloader and update it if the operator agrees.

        Raises:
            FirmwareToolError: If rpi-eeprom-update cannot be run
            OperationCancelled: If an update failed and the operator stops
        """
        log.info("Checking EEPROM status")
        state = self.check_status()
        status, output = state.status, state.output

        if status == FirmwareStatus.UP_TO_DATE:
            log.info("EEPROM bootloader is already up-to-date")
            _show("rpi-eeprom-update", output)
            return FirmwareOutcome.UP_TO_DATE

        if status == FirmwareStatus.UPDATE_AVAILABLE:
            log.warning("EEPROM bootloader update is available")
            _show("rpi-eeprom-update", output)
            question = (
                "It is recommended to update the EEPROM firmware. This runs "
                "'rpi-eeprom-update -a' and usually needs a reboot. Update now?"
            )
        else:
            log.warning(
                "Could not determine EEPROM bootloader update status from "
                "rpi-eeprom-update"
            )
            _show("rpi-eeprom-update", output)
            question = (
                "Attempt an EEPROM update anyway? This runs 'rpi-eeprom-update -a' "
                "and likely needs a reboot if changes are made."
            )

        if not self.confirmer.confirm(question):
            log.warning("EEPROM update skipped. Proceeding with the current EEPROM version.")
            log.warning("If the current EEPROM is too old, NVMe booting might not work.")
            return FirmwareOutcome.UPDATE_SKIPPED

        return self.apply_update()

    def apply_update(self) -> FirmwareOutcome:
        log.info("Applying EEPROM update with 'rpi-eeprom-update -a'")
        result = self.tool.apply_update()
        _show("rpi-eeprom-update -a", result.output)

        if not result.ok:
            error = FirmwareUpdateError(result.returncode, output=result.output)
            log.error(str(error))
            if self.confirmer.confirm(
                "The EEPROM update failed. Continue the migration with the current "
                "firmware?",
                assumable=False,
            ):
                log.warning("Continuing with the current EEPROM after a failed update")
                return FirmwareOutcome.UPDATE_FAILED
            raise OperationCancelled(
                "Migration stopped after a failed EEPROM update",
                output=result.output,
            )

        if reboot_required(result.output):
            log.warning(
                "EEPROM update has been applied/staged and a REBOOT IS REQUIRED "
                "for the changes to take effect"
            )
            return FirmwareOutcome.REBOOT_REQUIRED

        if version_matches(result.output):
            log.info("EEPROM matches the current release; no reboot needed")
            return FirmwareOutcome.UPDATED

        log.warning(
            "EEPROM update finished but its output neither said 'REBOOT REQUIRED' "
            "nor confirmed a matching version. Review the output above; if an "
            "update was made, a reboot is typically necessary."
        )
        if self.confirmer.confirm(
            "Reboot now to be safe (if you suspect an update occurred)?",
            assumable=False,
        ):
            return FirmwareOutcome.REBOOT_REQUESTED
        return FirmwareOutcome.UPDATED
