"""Cross toolchain discovery and the immutable build environment.

The resolver never touches ``os.environ``. It produces a
:class:`BuildEnvironment` value whose :meth:`BuildEnvironment.process_env`
renders the environment handed to every child process.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Sequence

from build_errors import ToolchainError
from command_runner import run_command

LOG = logging.getLogger("mikernel.toolchain")

TOOLCHAIN_ENV_VAR = "TOOLCHAIN_PATH"
CCACHE_ENV_VAR = "CCACHE_DIR"

DEFAULT_TOOLCHAIN_PATH = Path("/home/runner/ZyC-clang")
REQUIRED_TOOLS = ("clang", "clang++", "ld.lld", "llvm-ar")
SCRATCH_BIN_DIR = Path(tempfile.gettempdir()) / "kernel_build_bin"
CCACHE_WRAPPER_DIR = Path("/usr/lib/ccache")
DEFAULT_CCACHE_SUBDIR = Path(".cache") / "ccache_mikernel"

VERSION_QUERIES = (
    # (tool, lines to show, fatal on failure)
    ("clang", 3, True),
    ("ld.lld", 2, True),
    ("llvm-ar", 1, False),
)


@dataclass(frozen=True)
class ToolchainInfo:
    root_path: Path
    binaries: Mapping[str, Path] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def bin_dir(self) -> Path:
        return self.root_path / "bin"


@dataclass(frozen=True)
class BuildEnvironment:
    """Everything child processes need to find and drive the toolchain."""

    toolchain: ToolchainInfo
    base_env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    path_entries: tuple[Path, ...] = ()
    variables: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    ccache_dir: Path | None = None

    @property
    def search_path(self) -> str:
        entries = [str(entry) for entry in self.path_entries]
        inherited = self.base_env.get("PATH")
        if inherited:
            entries.append(inherited)
        return os.pathsep.join(entries)

    def process_env(self) -> dict[str, str]:
        env = dict(self.base_env)
        env.update(self.variables)
        env["PATH"] = self.search_path
        return env

    def which(self, tool: str) -> str | None:
        return shutil.which(tool, path=self.search_path)

    def with_path_entry(self, entry: Path) -> BuildEnvironment:
        """Return a copy with *entry* searched before every existing entry."""

        return replace(self, path_entries=(entry, *self.path_entries))

    def with_variables(self, variables: Mapping[str, str]) -> BuildEnvironment:
        merged = dict(self.variables)
        merged.update(variables)
        return replace(self, variables=MappingProxyType(merged))


def fallback_toolchain_paths(source_root: Path) -> list[Path]:
    return [
        DEFAULT_TOOLCHAIN_PATH,
        Path("/usr/local/ZyC-clang"),
        Path("/opt/ZyC-clang"),
        source_root / "toolchain",
        source_root.parent / "toolchain",
    ]


def _has_compiler(candidate: Path) -> bool:
    compiler = candidate / "bin" / "clang"
    return compiler.is_file() and os.access(compiler, os.X_OK)


def resolve_toolchain_root(
    override: str | None,
    source_root: Path,
    candidates: Sequence[Path] | None = None,
) -> Path:
    """Return the toolchain directory to use.

    A directory given through ``TOOLCHAIN_PATH`` wins. Otherwise the first
    candidate holding an executable ``bin/clang`` is used.
    """

    if override:
        override_path = Path(override)
        if override_path.is_dir():
            LOG.info("Using toolchain from %s: %s", TOOLCHAIN_ENV_VAR, override_path)
            return override_path
        LOG.warning("%s is not a directory: %s", TOOLCHAIN_ENV_VAR, override_path)

    if candidates is None:
        candidates = fallback_toolchain_paths(source_root)
    LOG.info("Searching for a toolchain in %d known locations", len(candidates))
    for candidate in candidates:
        if candidate.is_dir() and _has_compiler(candidate):
            LOG.info("Found toolchain: %s", candidate)
            return candidate

    raise ToolchainError(
        "No valid toolchain directory found",
        hint=f"set {TOOLCHAIN_ENV_VAR} to a clang toolchain root",
    )


def ensure_required_tools(
    env: BuildEnvironment,
    *,
    tools: Sequence[str] = REQUIRED_TOOLS,
    scratch_dir: Path = SCRATCH_BIN_DIR,
) -> BuildEnvironment:
    """Make every tool in *tools* discoverable on the environment's PATH.

    Tools missing from PATH are symlinked from the toolchain's ``bin``
    directory into *scratch_dir*, which is then searched first.
    """

    binaries: dict[str, Path] = {}
    missing: list[str] = []
    for tool in tools:
        location = env.which(tool)
        if location:
            LOG.info("Found tool: %s -> %s", tool, location)
            binaries[tool] = Path(location)
        else:
            LOG.warning("Tool not found on PATH: %s", tool)
            missing.append(tool)

    if missing:
        LOG.info("Looking for %s in %s", ", ".join(missing), env.toolchain.bin_dir)
        for tool in missing:
            target = env.toolchain.bin_dir / tool
            if not target.is_file():
                raise ToolchainError(f"Required tool not found: {tool}")
            scratch_dir.mkdir(parents=True, exist_ok=True)
            link = scratch_dir / tool
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target)
            LOG.info("Linked %s -> %s", link, target)
            binaries[tool] = link
        env = env.with_path_entry(scratch_dir)

    toolchain = replace(env.toolchain, binaries=MappingProxyType(binaries))
    return replace(env, toolchain=toolchain)


def configure_ccache(env: BuildEnvironment) -> BuildEnvironment:
    """Route compiler invocations through ccache."""

    configured = env.base_env.get(CCACHE_ENV_VAR)
    ccache_dir = Path(configured) if configured else Path.home() / DEFAULT_CCACHE_SUBDIR
    ccache_dir.mkdir(parents=True, exist_ok=True)

    env = env.with_variables(
        {
            CCACHE_ENV_VAR: str(ccache_dir),
            "CC": "ccache clang",
            "CXX": "ccache clang++",
        }
    ).with_path_entry(CCACHE_WRAPPER_DIR)
    env = replace(env, ccache_dir=ccache_dir)
    LOG.info("ccache enabled, cache directory: %s", ccache_dir)

    if env.which("ccache") is None:
        LOG.warning("ccache command not found; continuing without statistics")
    else:
        LOG.info("ccache statistics:")
        run_command(["ccache", "-s"], env=env.process_env(), check=False)
    return env


def create_build_environment(
    source_root: Path,
    *,
    ccache_enabled: bool,
    environ: Mapping[str, str],
    scratch_dir: Path = SCRATCH_BIN_DIR,
) -> BuildEnvironment:
    """Resolve the toolchain and return the environment for the whole run."""

    root = resolve_toolchain_root(environ.get(TOOLCHAIN_ENV_VAR), source_root)
    env = BuildEnvironment(
        toolchain=ToolchainInfo(root_path=root),
        base_env=MappingProxyType(dict(environ)),
        path_entries=(root / "bin",),
        variables=MappingProxyType({TOOLCHAIN_ENV_VAR: str(root)}),
    )
    env = ensure_required_tools(env, scratch_dir=scratch_dir)
    if ccache_enabled:
        env = configure_ccache(env)
    else:
        LOG.info("ccache disabled")
    return env


def log_tool_versions(env: BuildEnvironment) -> None:
    for tool, line_count, fatal in VERSION_QUERIES:
        try:
            result = run_command([tool, "--version"], env=env.process_env(), echo=False)
        except (subprocess.CalledProcessError, OSError) as exc:
            if fatal:
                raise ToolchainError(f"Unable to query {tool} version: {exc}") from exc
            LOG.warning("Unable to query %s version: %s", tool, exc)
            continue
        for line in result.output.splitlines()[:line_count]:
            LOG.info("  %s", line)
