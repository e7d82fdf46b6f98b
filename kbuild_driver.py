"""Kernel ``make`` invocations and build directory lifecycle."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Sequence

from build_errors import BuildToolError, ValidationError
from command_runner import run_command
from kernel_toolchain import BuildEnvironment

LOG = logging.getLogger("mikernel.kbuild")

DEFCONFIG_DIR = Path("arch") / "arm64" / "configs"
UNKNOWN_REVISION = "unknown"

MAKE_TEMPLATE = (
    "ARCH=arm64",
    "SUBARCH=arm64",
    "CC=clang",
    "LD=ld.lld",
    "CROSS_COMPILE=aarch64-linux-gnu-",
    "CROSS_COMPILE_ARM32=arm-linux-gnueabi-",
    "CLANG_TRIPLE=aarch64-linux-gnu-",
    "AR=llvm-ar",
    "NM=llvm-nm",
    "STRIP=llvm-strip",
    "OBJCOPY=llvm-objcopy",
    "OBJDUMP=llvm-objdump",
)

# Pinned so repeated builds report the same kernel identity.
KBUILD_IDENTITY = {
    "KBUILD_BUILD_VERSION": "1",
    "LOCALVERSION": "-g92c089fc2d37",
    "KBUILD_BUILD_USER": "Chinese",
    "KBUILD_BUILD_HOST": "root",
    "KBUILD_BUILD_TIMESTAMP": "Wed Jun 5 13:27:08 UTC 2024",
}


def resolve_revision(source_root: Path) -> str:
    """Return the 8-character HEAD hash of *source_root* or ``"unknown"``."""

    try:
        result = run_command(
            ["git", "rev-parse", "--short=8", "HEAD"],
            cwd=source_root,
            echo=False,
        )
    except (subprocess.CalledProcessError, OSError):
        return UNKNOWN_REVISION
    return result.output.strip() or UNKNOWN_REVISION


def build_directory_for(source_root: Path, device: str, revision: str) -> Path:
    return source_root.parent / f"build_{device}_{revision}"


def available_devices(source_root: Path) -> list[str]:
    config_dir = source_root / DEFCONFIG_DIR
    if not config_dir.is_dir():
        return []
    return sorted(path.name[: -len("_defconfig")] for path in config_dir.glob("*_defconfig"))


def ensure_defconfig(source_root: Path, device: str) -> Path:
    defconfig = source_root / DEFCONFIG_DIR / f"{device}_defconfig"
    if not defconfig.is_file():
        devices = available_devices(source_root)
        raise ValidationError(
            f"No configuration found for device '{device}'",
            hint=f"available devices: {', '.join(devices)}" if devices else "no *_defconfig files found",
        )
    LOG.info("Found device configuration: %s", defconfig.name)
    return defconfig


def resolve_skip_clean(build_dir: Path, skip_clean: bool) -> bool:
    """Return the effective skip-clean setting for *build_dir*."""

    if skip_clean and not build_dir.is_dir():
        LOG.warning("Build directory %s does not exist; a fresh one will be created", build_dir)
        return False
    return skip_clean


def prepare_build_directory(build_dir: Path, *, skip_clean: bool) -> None:
    if skip_clean:
        LOG.info("Reusing existing build directory %s", build_dir)
        build_dir.mkdir(parents=True, exist_ok=True)
        return
    if build_dir.exists():
        LOG.info("Removing existing build directory: %s", build_dir)
        shutil.rmtree(build_dir)
    build_dir.mkdir(parents=True, exist_ok=True)


def make_command(
    build_dir: Path,
    target: str | None = None,
    *,
    extra_args: Sequence[str] = (),
    jobs: int | None = None,
) -> list[str]:
    command = ["make", f"O={build_dir}", *MAKE_TEMPLATE, f"-j{jobs or os.cpu_count() or 1}"]
    if target:
        command.append(target)
    command.extend(extra_args)
    return command


def run_make(
    source_root: Path,
    build_dir: Path,
    env: BuildEnvironment,
    target: str | None = None,
    *,
    extra_args: Sequence[str] = (),
) -> None:
    LOG.info("Build target: %s", target or "<default>")
    try:
        run_command(
            make_command(build_dir, target, extra_args=extra_args),
            cwd=source_root,
            env=env.process_env(),
        )
    except (subprocess.CalledProcessError, OSError) as exc:
        raise BuildToolError(f"make {target or '<default>'} failed: {exc}") from exc


def run_defconfig(
    source_root: Path,
    build_dir: Path,
    device: str,
    env: BuildEnvironment,
    *,
    extra_args: Sequence[str] = (),
) -> Path:
    """Materialise ``<build_dir>/.config`` from the device defconfig."""

    run_make(source_root, build_dir, env, f"{device}_defconfig", extra_args=extra_args)
    return build_dir / ".config"


def write_build_identity(build_dir: Path, env: BuildEnvironment) -> BuildEnvironment:
    (build_dir / ".version").write_text("1\n")
    return env.with_variables(KBUILD_IDENTITY)


def run_compile(
    source_root: Path,
    build_dir: Path,
    env: BuildEnvironment,
    *,
    extra_args: Sequence[str] = (),
) -> float:
    """Run the default kernel build and return the elapsed seconds."""

    start = time.monotonic()
    run_make(source_root, build_dir, env, extra_args=extra_args)
    return time.monotonic() - start
