"""Command-line option parsing for the kernel build.

The parser turns a raw argument list into an immutable :class:`BuildConfig`.
It is built on :mod:`argparse` but keeps the historical behaviour of the build
script: unknown options only produce a warning, ``--make-flags`` swallows every
remaining token and ``--help`` may appear anywhere on the command line.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from build_errors import ValidationError

LOG = logging.getLogger("mikernel.options")

HELP_FLAGS = frozenset({"--help", "-h"})
MAKE_FLAGS_OPTION = "--make-flags"


class KsuVariant(Enum):
    """KernelSU flavour to integrate, keyed by its command-line spelling."""

    NONE = "noksu"
    KSU = "ksu"
    RKSU = "rksu"
    SUKISU = "sukisu"
    SUKISU_ULTRA = "sukisu-ultra"


class Addon(Enum):
    NONE = "no"
    SUSFS = "susfs"
    KPM = "kpm"
    SUSFS_KPM = "susfs-kpm"


class TargetSystem(Enum):
    AOSP = "aosp"
    MIUI = "miui"
    ALL = "all"

    @property
    def label(self) -> str:
        return self.name

    def passes(self) -> tuple[TargetSystem, ...]:
        """Return the system passes to run, in build order."""

        if self is TargetSystem.ALL:
            return (TargetSystem.AOSP, TargetSystem.MIUI)
        return (self,)


@dataclass(frozen=True)
class FeatureFlags:
    kernelsu_enabled: bool
    susfs_enabled: bool
    kpm_enabled: bool


@dataclass(frozen=True)
class BuildConfig:
    """Validated build request. Adjustments produce a new instance."""

    device: str
    ksu_variant: KsuVariant = KsuVariant.NONE
    addon: Addon = Addon.NONE
    target_system: TargetSystem = TargetSystem.MIUI
    ccache_enabled: bool = True
    skip_clean: bool = False
    make_flags: str = ""

    @property
    def extra_make_args(self) -> tuple[str, ...]:
        return tuple(self.make_flags.split())

    @property
    def feature_flags(self) -> FeatureFlags:
        return derive_feature_flags(self.ksu_variant, self.addon)


def derive_feature_flags(ksu_variant: KsuVariant, addon: Addon) -> FeatureFlags:
    """Compute the feature switches implied by *ksu_variant* and *addon*."""

    return FeatureFlags(
        kernelsu_enabled=ksu_variant is not KsuVariant.NONE,
        susfs_enabled=addon in (Addon.SUSFS, Addon.SUSFS_KPM),
        kpm_enabled=addon in (Addon.KPM, Addon.SUSFS_KPM),
    )


class _OptionParser(argparse.ArgumentParser):
    """``ArgumentParser`` that reports problems as :class:`ValidationError`."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise ValidationError(message)


def _build_parser() -> _OptionParser:
    parser = _OptionParser(prog="build_kernel.py", add_help=False, allow_abbrev=False)
    parser.add_argument("device", nargs="?")
    parser.add_argument("--ksu", choices=[variant.value for variant in KsuVariant])
    parser.add_argument("--additional", choices=[addon.value for addon in Addon])
    parser.add_argument(
        "--system",
        choices=[system.value for system in TargetSystem],
        default=TargetSystem.MIUI.value,
    )
    parser.add_argument("--noccache", action="store_true")
    parser.add_argument("--noclean", action="store_true")
    return parser


def help_requested(argv: Sequence[str]) -> bool:
    """Return ``True`` when ``--help``/``-h`` appears before ``--make-flags``."""

    for arg in argv:
        if arg == MAKE_FLAGS_OPTION:
            return False
        if arg in HELP_FLAGS:
            return True
    return False


def _split_make_flags(argv: Sequence[str]) -> tuple[list[str], list[str] | None]:
    """Split *argv* at the first ``--make-flags``.

    Everything after it, ``--`` included, belongs to make and never reaches
    :mod:`argparse`. The tail is ``None`` when the option is absent.
    """

    args = list(argv)
    if MAKE_FLAGS_OPTION not in args:
        return args, None
    index = args.index(MAKE_FLAGS_OPTION)
    return args[:index], args[index + 1 :]


def parse_build_config(argv: Sequence[str]) -> BuildConfig:
    """Parse *argv* into a :class:`BuildConfig` or raise :class:`ValidationError`."""

    if not argv:
        raise ValidationError("No target device specified", hint="see --help")

    head, make_tail = _split_make_flags(argv)
    args, unknown = _build_parser().parse_known_args(head)
    for token in unknown:
        LOG.warning("Ignoring unknown option: %s", token)

    if not args.device or not args.device.strip():
        raise ValidationError("Target device must not be empty")

    make_flags = ""
    if make_tail is not None:
        if not make_tail:
            raise ValidationError("Option --make-flags requires a value")
        make_flags = " ".join(make_tail).strip()

    config = BuildConfig(
        device=args.device,
        ksu_variant=KsuVariant(args.ksu) if args.ksu else KsuVariant.NONE,
        addon=Addon(args.additional) if args.additional else Addon.NONE,
        target_system=TargetSystem(args.system),
        ccache_enabled=not args.noccache,
        skip_clean=args.noclean,
        make_flags=make_flags,
    )
    validate_combination(config)

    LOG.info("Target device: %s", config.device)
    LOG.info("KernelSU variant: %s", config.ksu_variant.value)
    LOG.info("Additional features: %s", config.addon.value)
    LOG.info("Target system: %s", config.target_system.value)
    if make_flags:
        LOG.info("Extra make flags: %s", make_flags)
    return config


def validate_combination(config: BuildConfig) -> None:
    """Reject option combinations that no KernelSU source can satisfy."""

    if config.ksu_variant is KsuVariant.KSU and config.feature_flags.susfs_enabled:
        raise ValidationError(
            "Official KernelSU does not support SuSFS",
            hint="use --ksu rksu, sukisu or sukisu-ultra with SuSFS",
        )


def usage_text(devices: Sequence[str] = ()) -> str:
    """Return the help text, listing *devices* that have a defconfig."""

    lines = [
        "Usage: build_kernel.py <device> [options]",
        "Options:",
        "  --ksu <type>          KernelSU type: ksu, rksu, sukisu, sukisu-ultra, noksu",
        "  --additional <addon>  Additional features: no, susfs, kpm, susfs-kpm",
        "  --system <system>     Target system: aosp, miui, all (default: miui)",
        "  --noccache            Disable ccache",
        "  --noclean             Reuse the existing build directory",
        "  --make-flags <args>   Pass every remaining argument to make",
        "  -h, --help            Show this help text",
        "",
        "Examples:",
        "  build_kernel.py alioth --ksu sukisu-ultra --additional susfs-kpm --system miui",
        "  build_kernel.py munch --ksu noksu --system aosp --noccache",
        "",
        "Available devices:",
    ]
    if devices:
        lines.extend(f"  {device}" for device in devices)
    else:
        lines.append("  (no *_defconfig found under arch/arm64/configs)")
    return "\n".join(lines)
