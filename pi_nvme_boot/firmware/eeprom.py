"""Thin wrappers around rpi-eeprom-update and rpi-eeprom-config.

Output parsing lives here too: the tools only report state as text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from pi_nvme_boot.domain.models import FirmwareStatus
from pi_nvme_boot.storage.exceptions import FirmwareToolError
from pi_nvme_boot.system.commands import CommandResult, CommandRunner


UPDATE_TOOL = "rpi-eeprom-update"
CONFIG_TOOL = "rpi-eeprom-config"

UP_TO_DATE_MARKER = "BOOTLOADER: up-to-date"
UPDATE_AVAILABLE_MARKER = "BOOTLOADER: update available"
REBOOT_REQUIRED_MARKER = "REBOOT REQUIRED"
VERSION_MATCH_MARKER = "EEPROM version matching current RPi OS release"

BOOT_ORDER_KEY = "BOOT_ORDER"


def parse_status(output: str) -> FirmwareStatus:
    if UP_TO_DATE_MARKER in output:
        return FirmwareStatus.UP_TO_DATE
    if UPDATE_AVAILABLE_MARKER in output:
        return FirmwareStatus.UPDATE_AVAILABLE
    return FirmwareStatus.INDETERMINATE


def reboot_required(output: str) -> bool:
    return REBOOT_REQUIRED_MARKER in output


def version_matches(output: str) -> bool:
    return VERSION_MATCH_MARKER in output


class EepromTool:
    """The bootloader tools, invoked through a CommandRunner."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def _run(self, args: list[str]) -> CommandResult:
        try:
            return self.runner.run(args)
        except OSError as error:
            raise FirmwareToolError(args[0], str(error)) from error

    def query(self) -> CommandResult:
        return self._run([UPDATE_TOOL])

    def apply_update(self) -> CommandResult:
        return self._run([UPDATE_TOOL, "-a"])

    def read_config(self) -> CommandResult:
        return self._run([CONFIG_TOOL])

    def apply_config(self, path: Path) -> CommandResult:
        return self._run([CONFIG_TOOL, "--apply", str(path)])


# ==============================================================================
# Configuration text
# ==============================================================================


_SETTING_PATTERN = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=(.*)$")


@dataclass
class ConfigSetting:
    key: str
    value: str

    def render(self) -> str:
        return f"{self.key}={self.value}"


@dataclass
class ConfigLine:
    text: str

    def render(self) -> str:
        return self.text


@dataclass
class EepromConfig:
    """The bootloader configuration as ``[section]``/comment lines and
    ``KEY=value`` settings, in file order."""

    lines: list[Union[ConfigSetting, ConfigLine]] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> EepromConfig:
        lines: list[Union[ConfigSetting, ConfigLine]] = []
        for line in text.splitlines():
            match = _SETTING_PATTERN.match(line)
            if match and not line.lstrip().startswith("#"):
                lines.append(ConfigSetting(match.group(1), match.group(2).strip()))
            else:
                lines.append(ConfigLine(line))
        return cls(lines)

    def render(self) -> str:
        text = "\n".join(line.render() for line in self.lines)
        return f"{text}\n" if text else ""

    def get(self, key: str) -> Optional[str]:
        for line in self.lines:
            if isinstance(line, ConfigSetting) and line.key == key:
                return line.value
        return None

    def set(self, key: str, value: str) -> None:
        """Replace every ``key`` setting, or append one if there is none."""
        found = False
        for line in self.lines:
            if isinstance(line, ConfigSetting) and line.key == key:
                line.value = value
                found = True
        if found:
            return
        if self.lines and self.lines[-1].render().strip():
            self.lines.append(ConfigLine(""))
        self.lines.append(ConfigSetting(key, value))
