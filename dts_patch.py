"""MIUI device-tree adjustments for the Qualcomm vendor panels.

MIUI builds need a handful of panel tweaks in the vendor ``.dtsi`` files. The
changes are applied to the live source tree for the duration of one build pass
and undone afterwards from a backup copy, whether or not the pass succeeded.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

LOG = logging.getLogger("mikernel.dts")

DTS_SOURCE = Path("arch") / "arm64" / "boot" / "dts" / "vendor" / "qcom"
DTS_BACKUP = Path(".dts.bak")


@dataclass(frozen=True)
class Substitution:
    pattern: str
    search: str
    replace: str


def _uncomment(pattern: str, text: str) -> Substitution:
    return Substitution(pattern, f"//{text}", text)


PANEL_DIMENSIONS = (
    Substitution("dsi-panel-j1s*", "<154>", "<1537>"),
    Substitution("dsi-panel-j2*", "<154>", "<1537>"),
    Substitution("dsi-panel-j3s-37-02-0a-dsc-video.dtsi", "<155>", "<1544>"),
    Substitution("dsi-panel-j11-38-08-0a-fhd-cmd.dtsi", "<155>", "<1545>"),
    Substitution("dsi-panel-k11a-38-08-0a-dsc-cmd.dtsi", "<155>", "<1546>"),
    Substitution("dsi-panel-l11r-38-08-0a-dsc-cmd.dtsi", "<155>", "<1546>"),
    Substitution("dsi-panel-j11-38-08-0a-fhd-cmd.dtsi", "<70>", "<695>"),
    Substitution("dsi-panel-j3s-37-02-0a-dsc-video.dtsi", "<70>", "<695>"),
    Substitution("dsi-panel-k11a-38-08-0a-dsc-cmd.dtsi", "<70>", "<695>"),
    Substitution("dsi-panel-l11r-38-08-0a-dsc-cmd.dtsi", "<70>", "<695>"),
    Substitution("dsi-panel-j1s*", "<71>", "<710>"),
    Substitution("dsi-panel-j2*", "<71>", "<710>"),
)

SMART_FPS = (
    Substitution("dsi-panel*", "// mi,mdss-dsi-pan-enable-smart-fps", "mi,mdss-dsi-pan-enable-smart-fps"),
    Substitution("dsi-panel*", "// mi,mdss-dsi-smart-fps-max_framerate", "mi,mdss-dsi-smart-fps-max_framerate"),
    Substitution("dsi-panel*", "// qcom,mdss-dsi-pan-enable-smart-fps", "qcom,mdss-dsi-pan-enable-smart-fps"),
    Substitution("dsi-panel*", "qcom,mdss-dsi-qsync-min-refresh-rate", "//qcom,mdss-dsi-qsync-min-refresh-rate"),
)

REFRESH_RATES = (
    Substitution("dsi-panel-g7a-36-02-0c-dsc-video.dtsi", "120 90 60", "120 90 60 50 30"),
    Substitution("dsi-panel-g7a-37-02-0a-dsc-video.dtsi", "120 90 60", "120 90 60 50 30"),
    Substitution("dsi-panel-g7a-37-02-0b-dsc-video.dtsi", "120 90 60", "120 90 60 50 30"),
    Substitution("dsi-panel-j3s-37-02-0a-dsc-video.dtsi", "144 120 90 60", "144 120 90 60 50 48 30"),
)

BRIGHTNESS_COMMANDS = (
    _uncomment("dsi-panel-j9-38-0a-0a-fhd-video.dtsi", "39 00 00 00 00 00 03 51 03 FF"),
    _uncomment("dsi-panel-j2-p2-1-38-0c-0a-dsc-cmd.dtsi", "39 00 00 00 00 00 03 51 0D FF"),
    _uncomment("dsi-panel-j1s-42-02-0a-dsc-cmd.dtsi", "39 00 00 00 00 00 05 51 0F 8F 00 00"),
    _uncomment("dsi-panel-j1s-42-02-0a-mp-dsc-cmd.dtsi", "39 00 00 00 00 00 05 51 0F 8F 00 00"),
    _uncomment("dsi-panel-j2-mp-42-02-0b-dsc-cmd.dtsi", "39 00 00 00 00 00 05 51 0F 8F 00 00"),
    _uncomment("dsi-panel-j2-p2-1-42-02-0b-dsc-cmd.dtsi", "39 00 00 00 00 00 05 51 0F 8F 00 00"),
    _uncomment("dsi-panel-j2s-mp-42-02-0a-dsc-cmd.dtsi", "39 00 00 00 00 00 05 51 0F 8F 00 00"),
    _uncomment("dsi-panel-j2-38-0c-0a-dsc-cmd.dtsi", "39 01 00 00 00 00 03 51 00 00"),
    _uncomment("dsi-panel-j11-38-08-0a-fhd-cmd.dtsi", "39 01 00 00 00 00 03 51 03 FF"),
    _uncomment("dsi-panel-j9-38-0a-0a-fhd-video.dtsi", "39 01 00 00 00 00 03 51 03 FF"),
    _uncomment("dsi-panel-j1u-42-02-0b-dsc-cmd.dtsi", "39 01 00 00 00 00 03 51 07 FF"),
    _uncomment("dsi-panel-j2-42-02-0b-dsc-cmd.dtsi", "39 01 00 00 00 00 03 51 07 FF"),
    _uncomment("dsi-panel-j2-p1-42-02-0b-dsc-cmd.dtsi", "39 01 00 00 00 00 03 51 07 FF"),
    _uncomment("dsi-panel-j1u-42-02-0b-dsc-cmd.dtsi", "39 01 00 00 00 00 03 51 0F FF"),
    _uncomment("dsi-panel-j2-42-02-0b-dsc-cmd.dtsi", "39 01 00 00 00 00 03 51 0F FF"),
    _uncomment("dsi-panel-j2-p1-42-02-0b-dsc-cmd.dtsi", "39 01 00 00 00 00 03 51 0F FF"),
    _uncomment("dsi-panel-j1s-42-02-0a-dsc-cmd.dtsi", "39 01 00 00 00 00 05 51 07 FF 00 00"),
    _uncomment("dsi-panel-j1s-42-02-0a-mp-dsc-cmd.dtsi", "39 01 00 00 00 00 05 51 07 FF 00 00"),
    _uncomment("dsi-panel-j2-mp-42-02-0b-dsc-cmd.dtsi", "39 01 00 00 00 00 05 51 07 FF 00 00"),
    _uncomment("dsi-panel-j2-p2-1-42-02-0b-dsc-cmd.dtsi", "39 01 00 00 00 00 05 51 07 FF 00 00"),
    _uncomment("dsi-panel-j2s-mp-42-02-0a-dsc-cmd.dtsi", "39 01 00 00 00 00 05 51 07 FF 00 00"),
    _uncomment("dsi-panel-j11-38-08-0a-fhd-cmd.dtsi", "39 01 00 00 01 00 03 51 03 FF"),
    _uncomment("dsi-panel-j2-p2-1-38-0c-0a-dsc-cmd.dtsi", "39 01 00 00 11 00 03 51 03 FF"),
)

MIUI_SUBSTITUTIONS: tuple[Substitution, ...] = (
    PANEL_DIMENSIONS + SMART_FPS + REFRESH_RATES + BRIGHTNESS_COMMANDS
)


def apply_substitutions(dts_dir: Path, substitutions: Sequence[Substitution]) -> int:
    """Apply *substitutions* in order and return how many files changed."""

    changed = 0
    for substitution in substitutions:
        matches = sorted(path for path in dts_dir.glob(substitution.pattern) if path.is_file())
        if not matches:
            LOG.debug("No files match %s; skipping", substitution.pattern)
            continue
        for path in matches:
            text = path.read_text()
            updated = text.replace(substitution.search, substitution.replace)
            if updated != text:
                path.write_text(updated)
                changed += 1
    return changed


def restore_device_tree(source_root: Path) -> bool:
    """Replace the device tree with its backup, if one exists."""

    backup = source_root / DTS_BACKUP
    if not backup.is_dir():
        return False
    dts_dir = source_root / DTS_SOURCE
    if dts_dir.exists():
        shutil.rmtree(dts_dir)
    shutil.move(str(backup), str(dts_dir))
    LOG.info("Restored original device tree")
    return True


@contextlib.contextmanager
def patched_device_tree(
    source_root: Path,
    substitutions: Sequence[Substitution] = MIUI_SUBSTITUTIONS,
) -> Iterator[bool]:
    """Apply the MIUI panel tweaks for the duration of the ``with`` block.

    Yields ``True`` when the tree was patched and ``False`` when the vendor
    directory is absent.
    """

    dts_dir = source_root / DTS_SOURCE
    if (source_root / DTS_BACKUP).is_dir():
        LOG.warning("Found a device tree backup from an interrupted build; restoring it first")
        restore_device_tree(source_root)

    if not dts_dir.is_dir():
        LOG.warning("Device tree source directory not found: %s", dts_dir)
        yield False
        return

    LOG.info("Backing up device tree to %s", DTS_BACKUP)
    shutil.copytree(dts_dir, source_root / DTS_BACKUP, symlinks=True)
    try:
        changed = apply_substitutions(dts_dir, substitutions)
        LOG.info("Applied MIUI device tree changes to %d files", changed)
        yield True
    finally:
        restore_device_tree(source_root)
