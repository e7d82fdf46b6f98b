"""Packaging of the compiled kernel into a flashable AnyKernel3 zip."""

from __future__ import annotations

import contextlib
import datetime
import logging
import os
import shutil
import stat
import subprocess
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from build_errors import NetworkError, PackagingError
from build_options import BuildConfig, KsuVariant, TargetSystem
from command_runner import download_file, run_command

LOG = logging.getLogger("mikernel.package")

BOOT_DIR = Path("arch") / "arm64" / "boot"
IMAGE_NAME = "Image"
PATCHED_IMAGE_NAME = "oImage"
DTB_NAME = "dtb"

KPM_PATCH_URL = (
    "https://github.com/SukiSU-Ultra/SukiSU_KernelPatch_patch/releases/download/0.12.2/patch_linux"
)
KPM_PATCH_NAME = "patch"

ANYKERNEL_REPO = "https://github.com/liyafe1997/AnyKernel3"
ANYKERNEL_BRANCH = "kona"
ANYKERNEL_DIR = "anykernel"
ANYKERNEL_PAYLOAD_DIR = "kernels"
MIN_FREE_DISK_BYTES = 256 * 1024 * 1024

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class KpmPatchStatus(Enum):
    NOT_REQUESTED = "not-requested"
    APPLIED = "applied"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class KpmPatchResult:
    status: KpmPatchStatus
    reason: str = ""


@dataclass(frozen=True)
class BuildArtifact:
    image_path: Path
    dtb_path: Path
    archive_path: Path
    kpm_patch: KpmPatchResult


def archive_name(
    system: TargetSystem,
    device: str,
    ksu_label: str,
    revision: str,
    timestamp: datetime.datetime,
) -> str:
    return (
        f"Kernel_{system.label}_{device}_{ksu_label}_"
        f"{timestamp.strftime(TIMESTAMP_FORMAT)}_anykernel3_{revision}.zip"
    )


def require_kernel_image(build_dir: Path) -> Path:
    image = build_dir / BOOT_DIR / IMAGE_NAME
    if not image.is_file():
        raise PackagingError(f"Kernel image not found: {image}")
    LOG.info("Found kernel image: %s", image)
    return image


def kpm_patch_requested(config: BuildConfig) -> bool:
    return config.feature_flags.kpm_enabled and config.ksu_variant is KsuVariant.SUKISU_ULTRA


def apply_kpm_patch(image: Path) -> KpmPatchResult:
    """Patch *image* in place with the KPM tool, falling back to the original.

    Failures are reported through the result rather than raised.
    """

    image_dir = image.parent
    patch_tool = image_dir / KPM_PATCH_NAME
    try:
        try:
            download_file(KPM_PATCH_URL, patch_tool)
        except NetworkError as exc:
            return _degraded(f"could not download KPM patch tool: {exc}")

        patch_tool.chmod(patch_tool.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        try:
            run_command([f"./{KPM_PATCH_NAME}"], cwd=image_dir)
        except (subprocess.CalledProcessError, OSError) as exc:
            return _degraded(f"KPM patch tool failed: {exc}")

        patched = image_dir / PATCHED_IMAGE_NAME
        if not patched.is_file():
            return _degraded(f"KPM patch tool did not produce {PATCHED_IMAGE_NAME}")
        os.replace(patched, image)
    finally:
        with contextlib.suppress(FileNotFoundError):
            patch_tool.unlink()

    LOG.info("KPM patch applied")
    return KpmPatchResult(KpmPatchStatus.APPLIED)


def _degraded(reason: str) -> KpmPatchResult:
    LOG.warning("%s; using the unpatched image", reason)
    return KpmPatchResult(KpmPatchStatus.DEGRADED, reason)


def concatenate_dtbs(build_dir: Path) -> Path:
    """Join every compiled ``*.dtb`` into ``arch/arm64/boot/dtb``."""

    destination = build_dir / BOOT_DIR / DTB_NAME
    dts_dir = build_dir / BOOT_DIR / "dts"
    blobs = sorted(dts_dir.rglob("*.dtb")) if dts_dir.is_dir() else []
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("wb") as output:
        for blob in blobs:
            output.write(blob.read_bytes())
    if blobs:
        LOG.info("Generated %s from %d device tree blobs", destination, len(blobs))
    else:
        LOG.warning("No DTB files found; created empty %s", destination)
    return destination


def _ensure_sufficient_disk_space(path: Path, *, required_bytes: int = MIN_FREE_DISK_BYTES) -> None:
    usage = shutil.disk_usage(path)
    if usage.free < required_bytes:
        raise PackagingError(
            f"Insufficient disk space in {path}: "
            f"{usage.free / (1024**2):.0f} MiB available, "
            f"{required_bytes / (1024**2):.0f} MiB required"
        )


def ensure_anykernel_template(
    destination: Path,
    url: str = ANYKERNEL_REPO,
    branch: str = ANYKERNEL_BRANCH,
) -> Path:
    """Ensure a shallow clone of the packaging template exists at *destination*."""

    if destination.is_dir():
        LOG.info("Reusing existing AnyKernel3 checkout at %s", destination)
        return destination

    destination.parent.mkdir(parents=True, exist_ok=True)
    _ensure_sufficient_disk_space(destination.parent)
    LOG.info("Cloning %s (%s) into %s", url, branch, destination)
    try:
        run_command(
            ["git", "clone", url, "-b", branch, "--single-branch", "--depth=1", str(destination)]
        )
    except (subprocess.CalledProcessError, OSError) as exc:
        raise PackagingError(f"Failed to clone AnyKernel3 from {url}: {exc}") from exc
    return destination


def stage_payload(template_dir: Path, *files: Path) -> Path:
    payload_dir = template_dir / ANYKERNEL_PAYLOAD_DIR
    if payload_dir.exists():
        shutil.rmtree(payload_dir)
    payload_dir.mkdir(parents=True)
    for source in files:
        shutil.copy2(source, payload_dir / source.name)
        LOG.info("Copied %s -> %s", source, payload_dir)
    return payload_dir


def _is_excluded(relative: Path) -> bool:
    top = relative.parts[0]
    if top.startswith(".") or top == "out":
        return True
    if len(relative.parts) == 1 and relative.suffix == ".zip":
        return True
    return ".git" in relative.parts


def create_archive(template_dir: Path, archive_path: Path) -> Path:
    """Zip the template contents into *archive_path* at maximum compression."""

    files = sorted(
        path
        for path in template_dir.rglob("*")
        if path.is_file() and not _is_excluded(path.relative_to(template_dir))
    )
    LOG.info("Zipping %d files into %s", len(files), archive_path.name)
    try:
        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for path in files:
                archive.write(path, path.relative_to(template_dir).as_posix())
    except (OSError, zipfile.BadZipFile) as exc:
        with contextlib.suppress(OSError):
            archive_path.unlink()
        raise PackagingError(f"Failed to create {archive_path.name}: {exc}") from exc
    return archive_path


def package_kernel(
    config: BuildConfig,
    system: TargetSystem,
    *,
    source_root: Path,
    build_dir: Path,
    ksu_label: str,
    revision: str,
    now: datetime.datetime | None = None,
) -> BuildArtifact:
    """Turn the build output of one pass into a flashable zip."""

    image = require_kernel_image(build_dir)

    if kpm_patch_requested(config):
        kpm_result = apply_kpm_patch(image)
    else:
        kpm_result = KpmPatchResult(KpmPatchStatus.NOT_REQUESTED)

    dtb = concatenate_dtbs(build_dir)
    template_dir = ensure_anykernel_template(source_root / ANYKERNEL_DIR)
    stage_payload(template_dir, image, dtb)

    name = archive_name(system, config.device, ksu_label, revision, now or datetime.datetime.now())
    archive = create_archive(template_dir, source_root / name)
    LOG.info("Created flashable zip: %s", archive.name)
    return BuildArtifact(image_path=image, dtb_path=dtb, archive_path=archive, kpm_patch=kpm_result)
