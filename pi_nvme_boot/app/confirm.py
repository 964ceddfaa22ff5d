"""Operator confirmation prompts.

Every destructive or power-changing step asks through a Confirmer. The
implementation is chosen once at startup: interactive when a terminal is
attached, otherwise a non-interactive one that answers with a fixed default
and never blocks.
"""

from __future__ import annotations

import re
import sys
from typing import Callable, Optional, TextIO

from pi_nvme_boot.logging import LoggerFactory


log = LoggerFactory.for_system()

_YES_PATTERN = re.compile(r"^(y|yes)$", re.IGNORECASE)


class Confirmer:
    """Ask the operator a yes/no question.

    ``assumable=False`` marks questions that ``--yes`` must never answer for
    the operator (reboot, power off, continuing on an unexpected state).
    """

    def confirm(self, question: str, *, assumable: bool = True) -> bool:
        raise NotImplementedError


class InteractiveConfirmer(Confirmer):
    """Read the answer from the terminal; anything but y/yes means no."""

    def __init__(self, input_func: Callable[[str], str] = input):
        self._input = input_func

    def confirm(self, question: str, *, assumable: bool = True) -> bool:
        try:
            response = self._input(f"{question} [y/N]: ")
        except EOFError:
            log.debug(f"No answer to '{question}' (end of input); treating as no")
            return False
        answer = bool(_YES_PATTERN.match(response.strip()))
        log.debug(f"Operator answered {'yes' if answer else 'no'} to: {question}")
        return answer


class NonInteractiveConfirmer(Confirmer):
    """Answer every question without blocking.

    Without ``assume_yes`` every answer is no, which is the safe choice for
    all prompts in the migration.
    """

    def __init__(self, assume_yes: bool = False):
        self.assume_yes = assume_yes

    def confirm(self, question: str, *, assumable: bool = True) -> bool:
        answer = self.assume_yes and assumable
        log.info(f"{question} -> {'yes' if answer else 'no'} (non-interactive)")
        return answer


def select_confirmer(
    assume_yes: bool = False,
    stdin: Optional[TextIO] = None,
) -> Confirmer:
    """Pick the confirmer for this run."""
    stream = stdin if stdin is not None else sys.stdin
    interactive = stream is not None and stream.isatty()
    if assume_yes or not interactive:
        return NonInteractiveConfirmer(assume_yes=assume_yes)
    return InteractiveConfirmer()
