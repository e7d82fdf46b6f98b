"""Execution helpers for external tools and HTTP downloads.

Every child process goes through :func:`run_command`, which echoes the command
line to the build log and mirrors the child's combined output line by line.
Downloads use :mod:`urllib.request` and report progress through the same
logger.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import subprocess
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from build_errors import NetworkError, ToolchainError
from build_progress import ProgressUpdate, format_progress_message, get_progress_parser

LOG = logging.getLogger("mikernel.command")

DOWNLOAD_CHUNK_SIZE = 64 * 1024

DEPENDENCY_HINTS: dict[str, str] = {
    "git": "sudo apt-get install git",
    "make": "sudo apt-get install build-essential",
    "bash": "sudo apt-get install bash",
    "ccache": "sudo apt-get install ccache",
}


@dataclass
class CommandResult:
    """Light-weight wrapper representing the output of ``run_command``."""

    args: list[str]
    returncode: int
    output: str = ""


def run_command(
    command: list[str],
    *,
    check: bool = True,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    echo: bool = True,
) -> CommandResult:
    """Run *command*, logging each output line, and return its result.

    With ``check`` a non-zero exit raises :class:`subprocess.CalledProcessError`
    carrying the captured output. ``echo=False`` keeps the output out of the log
    (used for quiet queries such as ``git rev-parse``).
    """

    parser, prepared_command = get_progress_parser(list(command))
    LOG.info("$ %s", " ".join(prepared_command))

    process = subprocess.Popen(
        prepared_command,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        text=True,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    )
    assert process.stdout is not None  # For type-checkers.

    output_lines: list[str] = []
    for raw_line in process.stdout:
        for segment in _iter_output_segments(raw_line):
            output_lines.append(segment + "\n")
            if not echo:
                continue
            updates = parser.parse(segment) if parser else []
            if updates:
                for update in updates:
                    LOG.info(format_progress_message(update))
            else:
                LOG.info(segment.rstrip())

    process.stdout.close()
    returncode = process.wait()
    output = "".join(output_lines)
    if check and returncode != 0:
        raise subprocess.CalledProcessError(returncode, prepared_command, output=output)
    return CommandResult(prepared_command, returncode, output)


def _iter_output_segments(text: str) -> list[str]:
    """Return *text* split into display lines, treating ``\\r`` as a break."""

    if not text:
        return []
    return text.replace("\r", "\n").splitlines()


def ensure_command_available(command: str, *, path: str | None = None) -> str:
    """Return the location of *command* or raise :class:`ToolchainError`."""

    location = shutil.which(command, path=path)
    if location is None:
        hint = DEPENDENCY_HINTS.get(command)
        raise ToolchainError(
            f"Required command '{command}' not found in PATH.",
            hint=f"Try: {hint}" if hint else None,
        )
    return location


def download_file(url: str, destination: Path) -> Path:
    """Download *url* to *destination*, logging progress once per second.

    The body is written to a sibling ``.part`` file and moved into place only
    once complete, so a failed download leaves any existing file untouched.
    """

    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(destination.name + ".part")
    LOG.info("Downloading %s -> %s", url, destination)

    start_time = time.monotonic()
    last_report_time = start_time
    downloaded = 0
    try:
        with contextlib.closing(urllib.request.urlopen(url)) as response:
            total_header = response.getheader("Content-Length")
            total_bytes = int(total_header) if total_header and total_header.isdigit() else None
            with partial.open("wb") as file_obj:
                while True:
                    chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    file_obj.write(chunk)
                    downloaded += len(chunk)
                    now = time.monotonic()
                    if now - last_report_time >= 1.0:
                        _log_download_progress(downloaded, total_bytes, now - start_time)
                        last_report_time = now
    except (urllib.error.URLError, OSError) as exc:
        with contextlib.suppress(OSError):
            partial.unlink()
        raise NetworkError(f"Failed to download {url}: {exc}") from exc

    os.replace(partial, destination)
    _log_download_progress(downloaded, total_bytes, time.monotonic() - start_time)
    LOG.info("Download complete: %s", destination)
    return destination


def fetch_text(url: str) -> str:
    """Return the body of *url* decoded as UTF-8."""

    LOG.info("Fetching %s", url)
    try:
        with contextlib.closing(urllib.request.urlopen(url)) as response:
            return response.read().decode("utf-8")
    except (urllib.error.URLError, OSError, UnicodeDecodeError) as exc:
        raise NetworkError(f"Failed to fetch {url}: {exc}") from exc


def _log_download_progress(downloaded: int, total_bytes: int | None, elapsed: float) -> None:
    percent = (downloaded / total_bytes) * 100 if total_bytes else None
    LOG.info(
        format_progress_message(
            ProgressUpdate(
                label="download",
                percent=percent,
                size_bytes=downloaded,
                total_size_bytes=total_bytes,
                speed_bytes_per_sec=downloaded / max(elapsed, 1e-6) if downloaded else None,
            )
        )
    )
