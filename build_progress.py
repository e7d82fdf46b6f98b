"""Progress reporting for template clones and downloads.

``git clone`` reports transfer progress on stderr as lines such as
``Receiving objects:  42% (123/456), 1.20 MiB | 2.40 MiB/s``. These are
turned into :class:`ProgressUpdate` values so clone and download progress
read the same in the build log.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

__all__ = [
    "ProgressUpdate",
    "GitProgressParser",
    "get_progress_parser",
    "format_progress_message",
    "format_duration",
]

# Units git prints for transfer sizes and rates.
GIT_UNITS = {"bytes": 1, "KiB": 1024, "MiB": 1024**2, "GiB": 1024**3}
DISPLAY_UNITS = ("B", "KiB", "MiB", "GiB")
PROGRESS_COMMANDS = frozenset({"clone", "fetch"})


@dataclass
class ProgressUpdate:
    label: str
    percent: float | None = None
    current: int | None = None
    total: int | None = None
    size_bytes: float | None = None
    total_size_bytes: float | None = None
    speed_bytes_per_sec: float | None = None


class GitProgressParser:
    """Turn git transfer progress lines into :class:`ProgressUpdate` values."""

    _LINE_RE = re.compile(
        r"^(?:remote:\s+)?(?P<label>[A-Za-z ]+):\s+(?P<percent>\d+)%"
        r"\s+\((?P<current>[\d,]+)/(?P<total>[\d,]+)\)"
        r"(?:,\s+(?P<size>[\d.]+ \w+)\s+\|\s+(?P<speed>[\d.]+ \w+)/s)?"
    )
    _QUANTITY_RE = re.compile(r"^(?P<number>[\d.]+) (?P<unit>\w+)$")

    def prepare(self, command: list[str]) -> list[str]:
        # git only reports progress on a non-tty stderr when asked to.
        if "--progress" in command:
            return command
        return [*command[:2], "--progress", *command[2:]]

    def parse(self, text: str) -> list[ProgressUpdate]:
        match = self._LINE_RE.match(text.strip())
        if match is None:
            return []
        return [
            ProgressUpdate(
                label=match["label"].strip(),
                percent=float(match["percent"]),
                current=int(match["current"].replace(",", "")),
                total=int(match["total"].replace(",", "")),
                size_bytes=self._quantity(match["size"]),
                speed_bytes_per_sec=self._quantity(match["speed"]),
            )
        ]

    def _quantity(self, text: str | None) -> float | None:
        if not text:
            return None
        match = self._QUANTITY_RE.match(text)
        if match is None or match["unit"] not in GIT_UNITS:
            return None
        return float(match["number"]) * GIT_UNITS[match["unit"]]


def get_progress_parser(command: Sequence[str]) -> tuple[GitProgressParser | None, list[str]]:
    """Return a parser for *command*, if it reports progress, and the command to run."""

    command = list(command)
    if len(command) >= 2 and Path(command[0]).name == "git" and command[1] in PROGRESS_COMMANDS:
        parser = GitProgressParser()
        return parser, parser.prepare(command)
    return None, command


def format_progress_message(update: ProgressUpdate) -> str:
    parts = [update.label]
    if update.percent is not None:
        parts.append(f"{update.percent:.0f}%")
    if update.current is not None:
        counter = str(update.current) if update.total is None else f"{update.current}/{update.total}"
        parts.append(f"({counter})")
    if update.size_bytes is not None:
        transferred = _human_size(update.size_bytes)
        if update.total_size_bytes is not None:
            transferred += f" / {_human_size(update.total_size_bytes)}"
        parts.append(transferred)
    if update.speed_bytes_per_sec is not None:
        parts.append(f"@ {_human_size(update.speed_bytes_per_sec)}/s")
    return " ".join(parts)


def format_duration(seconds: float) -> str:
    """Render *seconds* as ``"<m>m <s>s"``."""

    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def _human_size(value: float) -> str:
    for unit in DISPLAY_UNITS[:-1]:
        if abs(value) < 1024:
            break
        value /= 1024
    else:
        unit = DISPLAY_UNITS[-1]
    if unit == "B" or abs(value) >= 10:
        return f"{value:.0f} {unit}"
    return f"{value:.1f} {unit}"
