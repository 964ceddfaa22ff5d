"""External command execution.

Every tool the migration drives (parted, mkfs.*, rsync, blkid, rpi-eeprom-*)
is invoked through :class:`CommandRunner`, which returns a
:class:`CommandResult` instead of raising on a non-zero exit. Callers decide
which failures are fatal. Tests substitute a fake runner with the same
interface.
"""

from __future__ import annotations

import shutil
import subprocess
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from pi_nvme_boot.logging import LoggerFactory, escape_braces


log = LoggerFactory.for_system()


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of one command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, the way a terminal would show them."""
        chunks = [chunk.strip() for chunk in (self.stdout, self.stderr) if chunk]
        return "\n".join(chunk for chunk in chunks if chunk)


def validate_command_args(args: Sequence[str]) -> None:
    """Validate command arguments before executing."""
    if not args or not all(isinstance(arg, str) and arg for arg in args):
        raise ValueError("Command args must be a non-empty list of strings.")


class CommandRunner:
    """Run external tools and capture their output."""

    def run(
        self,
        args: Sequence[str],
        *,
        log_output: bool = True,
    ) -> CommandResult:
        """Run a command and capture output.

        Raises:
            FileNotFoundError: If the executable does not exist
            OSError: If the executable cannot be started
        """
        validate_command_args(args)
        log.debug(
            f"Running command: {escape_braces(' '.join(args))}",
            command=args[0],
        )
        completed = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
        result = CommandResult(
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if log_output or not result.ok:
            if result.stdout.strip():
                log.debug("stdout: {}", result.stdout.strip())
            if result.stderr.strip():
                log.debug("stderr: {}", result.stderr.strip())
        log.debug(f"Command completed with return code {result.returncode}")
        return result

    def stream(
        self,
        args: Sequence[str],
        on_line: Callable[[str], None],
        *,
        keep_lines: int = 50,
    ) -> CommandResult:
        """Run a command, handing each output line to ``on_line`` as it arrives.

        stderr is merged into stdout. Carriage-return progress updates count
        as lines. Only the last ``keep_lines`` lines are kept in the result.

        Raises:
            FileNotFoundError: If the executable does not exist
            OSError: If the executable cannot be started
        """
        validate_command_args(args)
        log.debug(
            f"Streaming command: {escape_braces(' '.join(args))}",
            command=args[0],
        )
        tail: deque[str] = deque(maxlen=keep_lines)
        with subprocess.Popen(
            list(args),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        ) as process:
            for line in process.stdout:
                line = line.strip()
                if not line:
                    continue
                tail.append(line)
                on_line(line)
            returncode = process.wait()
        result = CommandResult(
            args=tuple(args), returncode=returncode, stdout="\n".join(tail)
        )
        if not result.ok:
            log.debug("output: {}", result.stdout)
        log.debug(f"Command completed with return code {result.returncode}")
        return result

    def which(self, tool: str) -> Optional[str]:
        """Resolve a tool on PATH."""
        return shutil.which(tool)
