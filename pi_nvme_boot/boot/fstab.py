"""Line-oriented fstab editor.

Rows are parsed into :class:`FstabEntry` objects; comments, blank lines, and
anything unparseable are kept verbatim so serializing an untouched table
gives back the original text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Union


@dataclass
class FstabEntry:
    spec: str
    mountpoint: str
    fstype: str
    options: str = "defaults"
    dump: str = "0"
    passno: str = "0"
    raw: Optional[str] = None

    @classmethod
    def parse(cls, line: str) -> Optional[FstabEntry]:
        fields = line.split()
        if len(fields) < 3 or fields[0].startswith("#"):
            return None
        padded = fields + ["defaults", "0", "0"][len(fields) - 3:]
        return cls(*padded[:6], raw=line)

    def render(self) -> str:
        if self.raw is not None:
            return self.raw
        return (
            f"{self.spec:<40} {self.mountpoint:<15} {self.fstype:<7} "
            f"{self.options:<16} {self.dump} {self.passno}"
        )


@dataclass
class FstabComment:
    text: str

    def render(self) -> str:
        return self.text


FstabLine = Union[FstabEntry, FstabComment]


class FstabTable:
    def __init__(self, lines: Iterable[FstabLine] = ()):
        self.lines: list[FstabLine] = list(lines)

    @classmethod
    def parse(cls, text: str) -> FstabTable:
        lines: list[FstabLine] = []
        for line in text.splitlines():
            entry = FstabEntry.parse(line)
            lines.append(entry if entry is not None else FstabComment(line))
        return cls(lines)

    def render(self) -> str:
        text = "\n".join(line.render() for line in self.lines)
        return f"{text}\n" if text else ""

    @property
    def entries(self) -> list[FstabEntry]:
        return [line for line in self.lines if isinstance(line, FstabEntry)]

    def find(self, *, spec: Optional[str] = None, mountpoint: Optional[str] = None) -> list[FstabEntry]:
        return [
            entry
            for entry in self.entries
            if (spec is None or entry.spec == spec)
            and (mountpoint is None or entry.mountpoint == mountpoint)
        ]

    def comment_out(self, mountpoints: Iterable[str], keep_specs: Iterable[str] = ()) -> list[FstabEntry]:
        """Comment out active entries for ``mountpoints``, except ``keep_specs``.

        Returns the entries that were commented out.
        """
        wanted = set(mountpoints)
        keep = set(keep_specs)
        commented: list[FstabEntry] = []
        for index, line in enumerate(self.lines):
            if not isinstance(line, FstabEntry):
                continue
            if line.mountpoint in wanted and line.spec not in keep:
                self.lines[index] = FstabComment(f"#{line.render()}")
                commented.append(line)
        return commented

    def append(self, entry: FstabEntry) -> None:
        self.lines.append(entry)

    def append_comment(self, text: str) -> None:
        self.lines.append(FstabComment(text))
