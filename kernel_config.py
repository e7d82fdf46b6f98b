"""Declarative kernel configuration groups applied with ``scripts/config``.

Each build variant and feature switch maps to a :class:`ConfigGroup`. The
groups are planned by :func:`plan_config_groups` in a fixed order (MIUI,
manual hook, KPM, SuSFS) and applied one ``scripts/config`` call per group.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from build_errors import BuildToolError
from build_options import BuildConfig, KsuVariant, TargetSystem
from command_runner import run_command
from kernel_toolchain import BuildEnvironment

LOG = logging.getLogger("mikernel.config")

CONFIG_TOOL = Path("scripts") / "config"

ENABLE = "enable"
DISABLE = "disable"
SET_STR = "set-str"


@dataclass(frozen=True)
class ConfigDirective:
    action: str
    name: str
    value: str | None = None

    def as_args(self) -> list[str]:
        if self.action == ENABLE:
            return ["-e", self.name]
        if self.action == DISABLE:
            return ["-d", self.name]
        if self.action == SET_STR:
            return ["--set-str", self.name, self.value or ""]
        raise ValueError(f"Unknown config action: {self.action}")


@dataclass(frozen=True)
class ConfigGroup:
    name: str
    directives: tuple[ConfigDirective, ...]

    def enabled(self) -> list[str]:
        return [d.name for d in self.directives if d.action == ENABLE]

    def disabled(self) -> list[str]:
        return [d.name for d in self.directives if d.action == DISABLE]


def _enable(*names: str) -> tuple[ConfigDirective, ...]:
    return tuple(ConfigDirective(ENABLE, name) for name in names)


def _disable(*names: str) -> tuple[ConfigDirective, ...]:
    return tuple(ConfigDirective(DISABLE, name) for name in names)


MIUI_GROUP = ConfigGroup(
    "miui",
    (ConfigDirective(SET_STR, "STATIC_USERMODEHELPER_PATH", "/system/bin/micd"),)
    + _enable(
        "PERF_CRITICAL_RT_TASK",
        "SF_BINDER",
        "OVERLAY_FS",
        "MIGT",
        "MIGT_ENERGY_MODEL",
        "MIHW",
        "PACKAGE_RUNTIME_INFO",
        "BINDER_OPT",
        "KPERFEVENTS",
        "MILLET",
        "PERF_HUMANTASK",
        "XIAOMI_MIUI",
        "TASK_DELAY_ACCT",
        "MIUI_ZRAM_MEMORY_TRACKING",
        "MI_FRAGMENTION",
        "PERF_HELPER",
        "BOOTUP_RECLAIM",
        "MI_RECLAIM",
        "RTMM",
    )
    + _disable(
        "DEBUG_FS",
        "LTO_CLANG",
        "LOCALVERSION_AUTO",
        "MI_MEMORY_SYSFS",
        "CONFIG_MODULE_SIG_SHA512",
        "CONFIG_MODULE_SIG_HASH",
    ),
)

MANUAL_HOOK_OPTION = "KSU_MANUAL_HOOK"

KPM_OPTIONS = ("KPM", "KALLSYMS", "KALLSYMS_ALL")

SUSFS_CONFLICTING_OPTION = "KSU_SUSFS_ADD_SUS_MAP"

SUSFS_OPTIONS = (
    "KSU",
    "KSU_SUSFS",
    "KSU_SUSFS_HAS_MAGIC_MOUNT",
    "KSU_SUSFS_SUS_PATH",
    "KSU_SUSFS_SUS_MOUNT",
    "KSU_SUSFS_AUTO_ADD_SUS_KSU_DEFAULT_MOUNT",
    "KSU_SUSFS_AUTO_ADD_SUS_BIND_MOUNT",
    "KSU_SUSFS_SUS_KSTAT",
    "KSU_SUSFS_TRY_UMOUNT",
    "KSU_SUSFS_AUTO_ADD_TRY_UMOUNT_FOR_BIND_MOUNT",
    "KSU_SUSFS_SPOOF_UNAME",
    "KSU_SUSFS_ENABLE_LOG",
    "KSU_SUSFS_HIDE_KSU_SUSFS_SYMBOLS",
    "KSU_SUSFS_SPOOF_CMDLINE_OR_BOOTCONFIG",
    "KSU_MULTI_MANAGER_SUPPORT",
    "KSU_SUSFS_OPEN_REDIRECT",
    "KSU_SUSFS_SUS_MAP",
    "KSU_SUSFS_SUS_SU",
)

MANUAL_HOOK_ON = ConfigGroup("manual-hook", _enable(MANUAL_HOOK_OPTION))
MANUAL_HOOK_OFF = ConfigGroup("manual-hook", _disable(MANUAL_HOOK_OPTION))
KPM_ON = ConfigGroup("kpm", _enable(*KPM_OPTIONS))
KPM_OFF = ConfigGroup("kpm", _disable(*KPM_OPTIONS))
SUSFS_ON = ConfigGroup("susfs", _enable(*SUSFS_OPTIONS) + _disable(SUSFS_CONFLICTING_OPTION))
SUSFS_OFF = ConfigGroup("susfs", _disable(*SUSFS_OPTIONS, SUSFS_CONFLICTING_OPTION))


def plan_config_groups(config: BuildConfig, system: TargetSystem) -> list[ConfigGroup]:
    """Return the groups to apply for one *system* pass, in application order."""

    flags = config.feature_flags
    groups: list[ConfigGroup] = []
    if system is TargetSystem.MIUI:
        groups.append(MIUI_GROUP)
    if config.ksu_variant is KsuVariant.SUKISU_ULTRA:
        groups.append(MANUAL_HOOK_ON)
    else:
        groups.append(MANUAL_HOOK_OFF)
    groups.append(KPM_ON if flags.kpm_enabled else KPM_OFF)
    groups.append(SUSFS_ON if flags.susfs_enabled else SUSFS_OFF)
    return groups


def config_tool_command(config_file: Path, group: ConfigGroup) -> list[str]:
    command = [str(CONFIG_TOOL), "--file", str(config_file)]
    for directive in group.directives:
        command.extend(directive.as_args())
    return command


def apply_config_groups(
    source_root: Path,
    config_file: Path,
    groups: list[ConfigGroup],
    env: BuildEnvironment,
) -> None:
    """Apply *groups* to *config_file*; any tool failure aborts the build."""

    for group in groups:
        LOG.info(
            "Applying %s options (%d enabled, %d disabled)",
            group.name,
            len(group.enabled()),
            len(group.disabled()),
        )
        try:
            run_command(
                config_tool_command(config_file, group),
                cwd=source_root,
                env=env.process_env(),
            )
        except (subprocess.CalledProcessError, OSError) as exc:
            raise BuildToolError(f"Failed to apply {group.name} config options: {exc}") from exc
    LOG.info("Kernel configuration complete")
