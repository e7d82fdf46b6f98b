#!/usr/bin/env python3
"""Android kernel build helper.

Run from the root of an arm64 kernel source tree::

    build_kernel.py <device> [--ksu VARIANT] [--additional ADDON]
                    [--system aosp|miui|all] [--noccache] [--noclean]
                    [--make-flags ...]

The helper resolves a clang toolchain, optionally integrates KernelSU, then
for each requested system (AOSP, MIUI or both) generates the device
defconfig, applies the variant configuration groups, compiles the kernel and
packages ``Image`` plus the concatenated DTBs into an AnyKernel3 zip in the
source tree. MIUI passes temporarily patch the vendor device tree.

Console output is mirrored to ``kernel_build.log`` in the source tree.
"""

from __future__ import annotations

import datetime
import logging
import os
import sys
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Mapping

from anykernel_package import BuildArtifact, KpmPatchStatus, package_kernel
from build_errors import BuildError
from build_options import (
    BuildConfig,
    TargetSystem,
    help_requested,
    parse_build_config,
    usage_text,
)
from build_progress import format_duration
from command_runner import ensure_command_available
from dts_patch import patched_device_tree
from kbuild_driver import (
    available_devices,
    build_directory_for,
    ensure_defconfig,
    prepare_build_directory,
    resolve_revision,
    resolve_skip_clean,
    run_compile,
    run_defconfig,
    write_build_identity,
)
from kernel_config import apply_config_groups, plan_config_groups
from kernel_toolchain import BuildEnvironment, create_build_environment, log_tool_versions
from kernelsu_setup import KernelSUSetup, KernelSUState, setup_kernelsu

LOG = logging.getLogger("mikernel.build")
ROOT_LOGGER = logging.getLogger("mikernel")

LOG_FILE_NAME = "kernel_build.log"
HOST_DEPENDENCIES = ["make", "git", "bash"]

LEVEL_COLOURS = {
    logging.DEBUG: "\033[0;36m",
    logging.INFO: "\033[0;34m",
    logging.WARNING: "\033[0;33m",
    logging.ERROR: "\033[0;31m",
    logging.CRITICAL: "\033[0;31m",
}
RESET_COLOUR = "\033[0m"


class ColourFormatter(logging.Formatter):
    """Formatter that tints each console record by its level."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        colour = LEVEL_COLOURS.get(record.levelno)
        if colour is None:
            return message
        return f"{colour}{message}{RESET_COLOUR}"


@dataclass(frozen=True)
class BuildContext:
    """State shared by every system pass of one run."""

    config: BuildConfig
    source_root: Path
    build_dir: Path
    revision: str
    env: BuildEnvironment
    kernelsu: KernelSUSetup = field(default_factory=lambda: KernelSUSetup(KernelSUState.DISABLED))


def setup_logging(log_path: Path | None = None) -> None:
    """Configure console logging and, when *log_path* is given, a log file."""

    ROOT_LOGGER.setLevel(logging.INFO)
    ROOT_LOGGER.handlers.clear()

    pattern = "%(asctime)s [%(levelname)s] %(message)s"
    console_handler = logging.StreamHandler()
    if getattr(console_handler.stream, "isatty", lambda: False)():
        console_handler.setFormatter(ColourFormatter(pattern))
    else:
        console_handler.setFormatter(logging.Formatter(pattern))
    console_handler.setLevel(logging.INFO)
    ROOT_LOGGER.addHandler(console_handler)

    if log_path is not None:
        file_handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(pattern))
        file_handler.setLevel(logging.INFO)
        ROOT_LOGGER.addHandler(file_handler)


def log_step(title: str) -> None:
    LOG.info("=" * 46)
    LOG.info(title)
    LOG.info("=" * 46)


def log_build_summary(context: BuildContext) -> None:
    config = context.config
    flags = config.feature_flags
    log_step("Build configuration")
    LOG.info("Device:       %s", config.device)
    LOG.info("System:       %s", config.target_system.value)
    LOG.info("KernelSU:     %s", config.ksu_variant.value if flags.kernelsu_enabled else "disabled")
    LOG.info("Additional:   %s", config.addon.value)
    LOG.info("Revision:     %s", context.revision)
    LOG.info("Build dir:    %s", context.build_dir)
    LOG.info("Toolchain:    %s", context.env.toolchain.root_path)
    LOG.info("ccache:       %s", "enabled" if config.ccache_enabled else "disabled")
    LOG.info("Skip clean:   %s", "yes" if config.skip_clean else "no")
    LOG.info("SuSFS:        %s", "enabled" if flags.susfs_enabled else "disabled")
    LOG.info("KPM:          %s", "enabled" if flags.kpm_enabled else "disabled")
    if config.make_flags:
        LOG.info("Make flags:   %s", config.make_flags)


def check_host_dependencies(env: Mapping[str, str]) -> None:
    for command in HOST_DEPENDENCIES:
        ensure_command_available(command, path=env.get("PATH"))
    LOG.info("All required host tools are available.")


def build_system(context: BuildContext, system: TargetSystem) -> BuildArtifact:
    """Configure, compile and package the kernel for one *system* pass."""

    config = context.config
    log_step(f"Building {system.label} kernel")

    config_file = run_defconfig(
        context.source_root,
        context.build_dir,
        config.device,
        context.env,
        extra_args=config.extra_make_args,
    )
    groups = plan_config_groups(config, system)
    apply_config_groups(context.source_root, config_file, groups, context.env)

    compile_env = write_build_identity(context.build_dir, context.env)
    elapsed = run_compile(
        context.source_root,
        context.build_dir,
        compile_env,
        extra_args=config.extra_make_args,
    )
    LOG.info("%s compilation finished in %s", system.label, format_duration(elapsed))

    log_step(f"Packaging {system.label} image")
    artifact = package_kernel(
        config,
        system,
        source_root=context.source_root,
        build_dir=context.build_dir,
        ksu_label=context.kernelsu.label,
        revision=context.revision,
    )
    if artifact.kpm_patch.status is KpmPatchStatus.DEGRADED:
        LOG.warning("%s build is unpatched: %s", system.label, artifact.kpm_patch.reason)
    return artifact


def build_aosp(context: BuildContext) -> BuildArtifact:
    return build_system(context, TargetSystem.AOSP)


def build_miui(context: BuildContext) -> BuildArtifact:
    prepare_build_directory(context.build_dir, skip_clean=context.config.skip_clean)
    with patched_device_tree(context.source_root):
        return build_system(context, TargetSystem.MIUI)


SYSTEM_EXECUTORS: dict[TargetSystem, Callable[[BuildContext], BuildArtifact]] = {
    TargetSystem.AOSP: build_aosp,
    TargetSystem.MIUI: build_miui,
}


def prepare_context(
    config: BuildConfig,
    source_root: Path,
    environ: Mapping[str, str],
) -> BuildContext:
    """Run every stage that precedes the per-system passes."""

    log_step("Build directory")
    revision = resolve_revision(source_root)
    build_dir = build_directory_for(source_root, config.device, revision)
    config = replace(config, skip_clean=resolve_skip_clean(build_dir, config.skip_clean))
    LOG.info("Using build directory: %s", build_dir)
    build_dir.mkdir(parents=True, exist_ok=True)

    log_step("Toolchain")
    check_host_dependencies(environ)
    env = create_build_environment(
        source_root,
        ccache_enabled=config.ccache_enabled,
        environ=environ,
    )
    log_tool_versions(env)

    log_step("Device configuration")
    ensure_defconfig(source_root, config.device)

    return BuildContext(
        config=config,
        source_root=source_root,
        build_dir=build_dir,
        revision=revision,
        env=env,
    )


def run_build(
    config: BuildConfig,
    source_root: Path,
    environ: Mapping[str, str],
) -> list[BuildArtifact]:
    started = time.monotonic()
    context = prepare_context(config, source_root, environ)
    log_build_summary(context)

    # A MIUI pass cleans the build directory itself before patching the DTS.
    if context.config.target_system.passes()[0] is not TargetSystem.MIUI:
        log_step("Workspace")
        prepare_build_directory(context.build_dir, skip_clean=context.config.skip_clean)

    log_step("KernelSU")
    kernelsu = setup_kernelsu(context.config, source_root, context.env)
    context = replace(context, kernelsu=kernelsu)

    artifacts = []
    for system in context.config.target_system.passes():
        pass_started = time.monotonic()
        artifacts.append(SYSTEM_EXECUTORS[system](context))
        LOG.info("%s build finished in %s", system.label, format_duration(time.monotonic() - pass_started))

    log_step("Build complete")
    LOG.info("Total time: %s", format_duration(time.monotonic() - started))
    for artifact in artifacts:
        LOG.info("Flashable zip: %s", artifact.archive_path)
    return artifacts


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    source_root = Path.cwd()

    setup_logging()
    if help_requested(argv):
        print(usage_text(available_devices(source_root)))
        return 0

    try:
        config = parse_build_config(argv)
    except BuildError as exc:
        LOG.error("%s", exc)
        return 1

    setup_logging(source_root / LOG_FILE_NAME)
    LOG.info("Started at %s in %s", datetime.datetime.now().isoformat(timespec="seconds"), source_root)
    try:
        run_build(config, source_root, dict(os.environ))
    except BuildError as exc:
        LOG.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
