"""Kernel command line (cmdline.txt) editor."""

from __future__ import annotations


class KernelCommandLine:
    """The whitespace-separated arguments of a single-line cmdline.txt."""

    def __init__(self, arguments: list[str]):
        self.arguments = arguments

    @classmethod
    def parse(cls, text: str) -> KernelCommandLine:
        return cls(text.split())

    def render(self) -> str:
        return " ".join(self.arguments) + "\n"

    def has_flag(self, flag: str) -> bool:
        """True if ``flag`` is present, bare or as ``flag=value``."""
        prefix = f"{flag}="
        return any(arg == flag or arg.startswith(prefix) for arg in self.arguments)

    def set_first(self, key: str, value: str) -> None:
        """Replace the first ``key=`` argument, or append one if absent."""
        prefix = f"{key}="
        for index, argument in enumerate(self.arguments):
            if argument.startswith(prefix):
                self.arguments[index] = f"{prefix}{value}"
                return
        self.arguments.append(f"{prefix}{value}")

    def ensure_flag(self, flag: str) -> bool:
        """Append ``flag`` unless present. Returns True if it was added."""
        if self.has_flag(flag):
            return False
        self.arguments.append(flag)
        return True
