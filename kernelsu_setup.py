"""KernelSU integration.

Each variant is fetched from its own upstream through that project's
``kernel/setup.sh`` bootstrap script. The script is run with a ref that
depends on whether SuSFS was requested, and the result carries the label used
in the final archive name.
"""

from __future__ import annotations

import logging
import re
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from build_errors import BuildToolError, NetworkError, ValidationError
from build_options import BuildConfig, KsuVariant
from command_runner import download_file, fetch_text, run_command
from kernel_toolchain import BuildEnvironment

LOG = logging.getLogger("mikernel.kernelsu")

DISABLED_LABEL = "NoKernelSU"
SUSFS_LABEL_SUFFIX = "_SuSFS"

ULTRA_MAKEFILE_URL = "https://raw.githubusercontent.com/SukiSU-Ultra/SukiSU-Ultra/{ref}/kernel/Makefile"
ULTRA_MAKEFILE_PATH = Path("KernelSU") / "kernel" / "Makefile"
VERSION_API_KEY = "KSU_VERSION_API"
VERSION_FULL_KEY = "KSU_VERSION_FULL"
VERSION_SUFFIX = "且听风吟"


class KernelSUState(Enum):
    DISABLED = "disabled"
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"


@dataclass(frozen=True)
class KernelSUSource:
    label: str
    repository: str
    ref_selector: Callable[[bool], str]
    supports_susfs: bool = True

    @property
    def setup_url(self) -> str:
        return f"https://raw.githubusercontent.com/{self.repository}/main/kernel/setup.sh"

    def label_for(self, susfs_enabled: bool) -> str:
        return self.label + SUSFS_LABEL_SUFFIX if susfs_enabled else self.label


def _refs(plain: str, susfs: str) -> Callable[[bool], str]:
    return lambda susfs_enabled: susfs if susfs_enabled else plain


KERNELSU_SOURCES: dict[KsuVariant, KernelSUSource] = {
    KsuVariant.KSU: KernelSUSource(
        "KernelSU", "Prslc/KernelSU", _refs("non-gki", "non-gki"), supports_susfs=False
    ),
    KsuVariant.RKSU: KernelSUSource("RKSU", "rsuntk/KernelSU", _refs("main", "susfs-v1.5.5")),
    KsuVariant.SUKISU: KernelSUSource("SukiSU", "ShirkNeko/KernelSU", _refs("dev", "susfs-dev")),
    KsuVariant.SUKISU_ULTRA: KernelSUSource(
        "SukiSU-Ultra", "SukiSU-Ultra/SukiSU-Ultra", _refs("nongki", "susfs-main")
    ),
}


@dataclass
class KernelSUSetup:
    """Outcome of the KernelSU stage."""

    state: KernelSUState
    label: str = DISABLED_LABEL
    ref: str | None = None
    version: str | None = None


def setup_kernelsu(config: BuildConfig, source_root: Path, env: BuildEnvironment) -> KernelSUSetup:
    """Install the requested KernelSU variant into *source_root*.

    Raises :class:`ValidationError` for unsupported combinations before any
    download, :class:`NetworkError` when the setup script cannot be fetched and
    :class:`BuildToolError` when it fails.
    """

    if config.ksu_variant is KsuVariant.NONE:
        LOG.info("Skipping KernelSU setup")
        return KernelSUSetup(KernelSUState.DISABLED)

    source = KERNELSU_SOURCES[config.ksu_variant]
    susfs_enabled = config.feature_flags.susfs_enabled
    if susfs_enabled and not source.supports_susfs:
        raise ValidationError(f"{source.label} does not support SuSFS")

    setup = KernelSUSetup(
        KernelSUState.INSTALLING,
        label=source.label_for(susfs_enabled),
        ref=source.ref_selector(susfs_enabled),
    )
    LOG.info("Installing %s (%s)", setup.label, setup.ref)
    try:
        script = fetch_text(source.setup_url)
        _run_setup_script(script, setup.ref, source_root, env)
    except NetworkError:
        setup.state = KernelSUState.FAILED
        raise
    except (subprocess.CalledProcessError, OSError) as exc:
        setup.state = KernelSUState.FAILED
        raise BuildToolError(f"KernelSU setup script failed: {exc}") from exc

    setup.state = KernelSUState.INSTALLED
    if config.ksu_variant is KsuVariant.SUKISU_ULTRA:
        setup.version = update_ultra_version(source_root, setup.ref)
    LOG.info("KernelSU setup complete: %s", setup.label)
    return setup


def _run_setup_script(script: str, ref: str, source_root: Path, env: BuildEnvironment) -> None:
    with tempfile.TemporaryDirectory(prefix="kernelsu-setup-") as tmp_dir:
        script_path = Path(tmp_dir) / "setup.sh"
        script_path.write_text(script)
        run_command(["bash", str(script_path), ref], cwd=source_root, env=env.process_env())


def read_version_api(makefile_text: str) -> str | None:
    """Return the value assigned to ``KSU_VERSION_API`` in *makefile_text*."""

    for line in makefile_text.splitlines():
        if f"{VERSION_API_KEY} :=" in line:
            value = line.split(":=", 1)[1].strip()
            return value or None
    return None


def rewrite_version_full(makefile_text: str, version_api: str) -> str:
    return re.sub(
        rf"^([ \t]*){VERSION_FULL_KEY} :=.*$",
        lambda match: f"{match.group(1)}{VERSION_FULL_KEY} := v{version_api}-{VERSION_SUFFIX}",
        makefile_text,
        flags=re.MULTILINE,
    )


def update_ultra_version(source_root: Path, ref: str) -> str | None:
    """Refresh the SukiSU-Ultra Makefile and stamp its full version string.

    Missing upstream data only skips the rewrite.
    """

    makefile = source_root / ULTRA_MAKEFILE_PATH
    try:
        download_file(ULTRA_MAKEFILE_URL.format(ref=ref), makefile)
    except NetworkError as exc:
        LOG.warning("Skipping KernelSU version update: %s", exc)
        return None

    text = makefile.read_text()
    version_api = read_version_api(text)
    if version_api is None:
        LOG.warning("%s not found in %s; version string left unchanged", VERSION_API_KEY, makefile)
        return None

    makefile.write_text(rewrite_version_full(text, version_api))
    LOG.info("KernelSU version set to v%s", version_api)
    return version_api
