"""Make the bootloader try the NVMe device first.

Reads the EEPROM configuration, sets BOOT_ORDER, applies it, and reads it
back. A failed apply raises :class:`FirmwareConfigError` carrying the manual
remediation; a read-back mismatch is only a warning because some firmware
shows the change after the next reboot.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional

from pi_nvme_boot.domain.models import BootOrder, BootOrderResult
from pi_nvme_boot.firmware.eeprom import BOOT_ORDER_KEY, EepromConfig, EepromTool
from pi_nvme_boot.logging import LoggerFactory
from pi_nvme_boot.storage.exceptions import FirmwareConfigError


log = LoggerFactory.for_firmware()

REMEDIATION_COMMAND = "sudo rpi-eeprom-config --edit"


def remediation_hint(boot_order: BootOrder) -> str:
    return (
        f"Set it manually with '{REMEDIATION_COMMAND}' and "
        f"{BOOT_ORDER_KEY}={boot_order.to_hex()} "
        f"({', '.join(boot_order.names)})."
    )


def parse_boot_order(value: Optional[str]) -> Optional[BootOrder]:
    """BOOT_ORDER value as a BootOrder, or None if absent or unreadable."""
    if value is None:
        return None
    try:
        return BootOrder.from_hex(value)
    except ValueError:
        log.warning(f"Unrecognised {BOOT_ORDER_KEY} value: {value}")
        return None


class BootOrderConfigurator:
    def __init__(self, tool: EepromTool):
        self.tool = tool

    def read_config(self) -> EepromConfig:
        result = self.tool.read_config()
        if not result.ok:
            raise FirmwareConfigError(
                "Could not read the EEPROM configuration", output=result.output
            )
        return EepromConfig.parse(result.stdout)

    def set_boot_order(self, boot_order: BootOrder) -> BootOrderResult:
        """Apply ``boot_order`` to the EEPROM configuration.

        Raises:
            FirmwareConfigError: If the configuration cannot be read or applied
        """
        target_value = boot_order.to_hex()
        log.info(f"Configuring EEPROM boot order {target_value} ({', '.join(boot_order.names)})")

        current = self.read_config()
        original_text = current.render()
        previous = parse_boot_order(current.get(BOOT_ORDER_KEY))
        if previous is not None:
            log.info(f"Current {BOOT_ORDER_KEY}={previous} ({', '.join(previous.names)})")

        current.set(BOOT_ORDER_KEY, target_value)
        self.apply(current, original_text, boot_order)

        try:
            observed = self.read_config().get(BOOT_ORDER_KEY)
        except FirmwareConfigError as error:
            log.warning(f"Could not read back the EEPROM configuration: {error}")
            observed = None
        verified = observed is not None and observed.lower() == target_value.lower()
        if verified:
            log.info(f"EEPROM {BOOT_ORDER_KEY} successfully updated to {target_value}")
        else:
            log.warning(
                f"EEPROM {BOOT_ORDER_KEY} may not have updated yet: expected "
                f"{target_value}, got {observed}. Pending EEPROM updates may need "
                "a reboot first."
            )
        return BootOrderResult(
            boot_order=boot_order,
            verified=verified,
            observed=observed,
            previous=previous,
        )

    def apply(self, config: EepromConfig, original_text: str, boot_order: BootOrder) -> None:
        handle, name = tempfile.mkstemp(prefix="pi-nvme-boot-eeprom-", suffix=".conf")
        path = Path(name)
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(config.render())
            result = self.tool.apply_config(path)
        finally:
            path.unlink(missing_ok=True)
        if not result.ok:
            raise FirmwareConfigError(
                "Failed to apply EEPROM configuration. Original config was:\n"
                + original_text.rstrip(),
                output=result.output,
                boot_order=boot_order.to_hex(),
                remediation=remediation_hint(boot_order),
            )
        log.info(
            "EEPROM configuration applied. A reboot is usually needed for it to "
            "take full effect."
        )
