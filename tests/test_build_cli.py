import io
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

import build_kernel
import dts_patch
from anykernel_package import BuildArtifact, KpmPatchResult, KpmPatchStatus
from build_errors import BuildToolError, ToolchainError
from build_options import Addon, BuildConfig, KsuVariant, TargetSystem
from kernel_toolchain import BuildEnvironment, ToolchainInfo
from kernelsu_setup import KernelSUSetup, KernelSUState


class BuildMainTests(unittest.TestCase):
    def test_help_prints_usage_and_exits_cleanly(self) -> None:
        output = io.StringIO()
        with mock.patch("build_kernel.setup_logging"), mock.patch(
            "build_kernel.available_devices", return_value=["alioth", "munch"]
        ), mock.patch("build_kernel.run_build") as run_mock, redirect_stdout(output):
            exit_code = build_kernel.main(["alioth", "--help"])

        self.assertEqual(0, exit_code)
        run_mock.assert_not_called()
        self.assertIn("Usage:", output.getvalue())
        self.assertIn("  munch", output.getvalue())

    def test_invalid_option_fails_before_build(self) -> None:
        with mock.patch("build_kernel.setup_logging"), mock.patch("build_kernel.run_build") as run_mock:
            with self.assertLogs(build_kernel.LOG, level="ERROR") as logs:
                exit_code = build_kernel.main(["alioth", "--ksu", "ksu", "--additional", "susfs"])

        self.assertEqual(1, exit_code)
        run_mock.assert_not_called()
        self.assertIn("SuSFS", "\n".join(logs.output))

    def test_missing_device_fails(self) -> None:
        with mock.patch("build_kernel.setup_logging"), mock.patch("build_kernel.run_build") as run_mock:
            with self.assertLogs(build_kernel.LOG, level="ERROR"):
                exit_code = build_kernel.main([])

        self.assertEqual(1, exit_code)
        run_mock.assert_not_called()

    def test_parsed_config_reaches_build(self) -> None:
        with mock.patch("build_kernel.setup_logging") as logging_mock, mock.patch(
            "build_kernel.run_build", return_value=[]
        ) as run_mock:
            exit_code = build_kernel.main(
                ["alioth", "--ksu", "sukisu-ultra", "--additional", "susfs-kpm", "--make-flags", "V=1"]
            )

        self.assertEqual(0, exit_code)
        config = run_mock.call_args.args[0]
        self.assertEqual(
            BuildConfig(
                device="alioth",
                ksu_variant=KsuVariant.SUKISU_ULTRA,
                addon=Addon.SUSFS_KPM,
                make_flags="V=1",
            ),
            config,
        )
        self.assertEqual(Path.cwd() / build_kernel.LOG_FILE_NAME, logging_mock.call_args_list[-1].args[0])

    def test_build_failure_returns_error_status(self) -> None:
        error = ToolchainError("No valid toolchain directory found")
        with mock.patch("build_kernel.setup_logging"), mock.patch("build_kernel.run_build", side_effect=error):
            with self.assertLogs(build_kernel.LOG, level="ERROR") as logs:
                exit_code = build_kernel.main(["munch"])

        self.assertEqual(1, exit_code)
        self.assertIn("No valid toolchain", "\n".join(logs.output))


class RunBuildTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.workdir = Path(self._tempdir.name)
        self.source_root = self.workdir / "kernel"
        self.source_root.mkdir()
        self.env = BuildEnvironment(toolchain=ToolchainInfo(root_path=Path("/home/runner/ZyC-clang")))

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _context(self, config: BuildConfig) -> build_kernel.BuildContext:
        return build_kernel.BuildContext(
            config=config,
            source_root=self.source_root,
            build_dir=self.workdir / f"build_{config.device}_abcd1234",
            revision="abcd1234",
            env=self.env,
        )

    def _artifact(self, name: str) -> BuildArtifact:
        return BuildArtifact(
            image_path=Path("Image"),
            dtb_path=Path("dtb"),
            archive_path=self.source_root / name,
            kpm_patch=KpmPatchResult(KpmPatchStatus.NOT_REQUESTED),
        )

    def _stage_patches(self, config: BuildConfig):
        patches = {
            "prepare_context": mock.patch("build_kernel.prepare_context", return_value=self._context(config)),
            "prepare_build_directory": mock.patch("build_kernel.prepare_build_directory"),
            "run_defconfig": mock.patch("build_kernel.run_defconfig", return_value=self.workdir / ".config"),
            "apply_config_groups": mock.patch("build_kernel.apply_config_groups"),
            "write_build_identity": mock.patch(
                "build_kernel.write_build_identity", side_effect=lambda build_dir, env: env
            ),
            "run_compile": mock.patch("build_kernel.run_compile", return_value=61.0),
            "package_kernel": mock.patch(
                "build_kernel.package_kernel", return_value=self._artifact("Kernel.zip")
            ),
        }
        started = {name: patcher.start() for name, patcher in patches.items()}
        self.addCleanup(mock.patch.stopall)
        return started

    def test_ultra_susfs_kpm_miui_build(self) -> None:
        config = BuildConfig(
            device="alioth",
            ksu_variant=KsuVariant.SUKISU_ULTRA,
            addon=Addon.SUSFS_KPM,
            target_system=TargetSystem.MIUI,
        )
        stages = self._stage_patches(config)
        kernelsu = KernelSUSetup(KernelSUState.INSTALLED, "SukiSU-Ultra_SuSFS", "susfs-main", "3.1.7")

        with mock.patch("build_kernel.setup_kernelsu", return_value=kernelsu), mock.patch(
            "build_kernel.patched_device_tree"
        ) as dts_mock:
            artifacts = build_kernel.run_build(config, self.source_root, {})

        self.assertEqual(1, len(artifacts))
        dts_mock.assert_called_once_with(self.source_root)
        groups = stages["apply_config_groups"].call_args.args[2]
        self.assertEqual(["miui", "manual-hook", "kpm", "susfs"], [group.name for group in groups])
        self.assertEqual(["KSU_MANUAL_HOOK"], groups[1].enabled())
        package_call = stages["package_kernel"].call_args
        self.assertIs(TargetSystem.MIUI, package_call.args[1])
        self.assertEqual("SukiSU-Ultra_SuSFS", package_call.kwargs["ksu_label"])
        self.assertEqual("abcd1234", package_call.kwargs["revision"])

    def test_noksu_aosp_build(self) -> None:
        config = BuildConfig(device="munch", target_system=TargetSystem.AOSP, ccache_enabled=False)
        stages = self._stage_patches(config)

        with mock.patch("build_kernel.patched_device_tree") as dts_mock, mock.patch(
            "kernelsu_setup.fetch_text"
        ) as fetch_mock:
            build_kernel.run_build(config, self.source_root, {})

        fetch_mock.assert_not_called()
        dts_mock.assert_not_called()
        groups = stages["apply_config_groups"].call_args.args[2]
        self.assertEqual(["manual-hook", "kpm", "susfs"], [group.name for group in groups])
        self.assertTrue(all(not group.enabled() for group in groups))
        package_call = stages["package_kernel"].call_args
        self.assertIs(TargetSystem.AOSP, package_call.args[1])
        self.assertEqual("NoKernelSU", package_call.kwargs["ksu_label"])

    def test_all_systems_build_aosp_then_miui(self) -> None:
        config = BuildConfig(device="alioth", target_system=TargetSystem.ALL)
        self._stage_patches(config)
        calls = []

        def executor(system: TargetSystem):
            def _run(context: build_kernel.BuildContext) -> BuildArtifact:
                calls.append(system)
                return self._artifact(f"Kernel_{system.label}.zip")

            return _run

        executors = {TargetSystem.AOSP: executor(TargetSystem.AOSP), TargetSystem.MIUI: executor(TargetSystem.MIUI)}
        with mock.patch.dict(build_kernel.SYSTEM_EXECUTORS, executors):
            artifacts = build_kernel.run_build(config, self.source_root, {})

        self.assertEqual([TargetSystem.AOSP, TargetSystem.MIUI], calls)
        self.assertEqual(
            ["Kernel_AOSP.zip", "Kernel_MIUI.zip"], [artifact.archive_path.name for artifact in artifacts]
        )

    def test_failed_miui_compile_restores_device_tree(self) -> None:
        config = BuildConfig(device="alioth", target_system=TargetSystem.MIUI)
        stages = self._stage_patches(config)
        stages["run_compile"].side_effect = BuildToolError("make <default> failed")
        panel = self.source_root / dts_patch.DTS_SOURCE / "dsi-panel-j2-38-0c-0a-dsc-cmd.dtsi"
        panel.parent.mkdir(parents=True)
        panel.write_text("width = <154>;\n")

        with self.assertRaises(BuildToolError):
            build_kernel.run_build(config, self.source_root, {})

        stages["package_kernel"].assert_not_called()
        self.assertEqual("width = <154>;\n", panel.read_text())
        self.assertFalse((self.source_root / dts_patch.DTS_BACKUP).exists())

    def test_build_directory_cleaned_once_per_pass(self) -> None:
        expected = {TargetSystem.MIUI: 1, TargetSystem.AOSP: 1, TargetSystem.ALL: 2}
        for system, count in expected.items():
            with self.subTest(system=system):
                config = BuildConfig(device="alioth", target_system=system)
                stages = self._stage_patches(config)
                with mock.patch("build_kernel.patched_device_tree"):
                    build_kernel.run_build(config, self.source_root, {})
                mock.patch.stopall()

                self.assertEqual(count, stages["prepare_build_directory"].call_count)


class PrepareContextTests(unittest.TestCase):
    def test_skip_clean_dropped_without_previous_build(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            source_root = Path(tmp_dir) / "kernel"
            source_root.mkdir()
            env = BuildEnvironment(toolchain=ToolchainInfo(root_path=Path("/tc")))
            config = BuildConfig(device="munch", skip_clean=True, ccache_enabled=False)

            with mock.patch("build_kernel.resolve_revision", return_value="unknown"), mock.patch(
                "build_kernel.check_host_dependencies"
            ), mock.patch("build_kernel.create_build_environment", return_value=env) as env_mock, mock.patch(
                "build_kernel.log_tool_versions"
            ), mock.patch("build_kernel.ensure_defconfig") as defconfig_mock:
                context = build_kernel.prepare_context(config, source_root, {"PATH": "/usr/bin"})

            self.assertEqual(Path(tmp_dir) / "build_munch_unknown", context.build_dir)
            self.assertTrue(context.build_dir.is_dir())

        self.assertFalse(context.config.skip_clean)
        self.assertEqual("unknown", context.revision)
        self.assertIs(KernelSUState.DISABLED, context.kernelsu.state)
        self.assertFalse(env_mock.call_args.kwargs["ccache_enabled"])
        defconfig_mock.assert_called_once_with(source_root, "munch")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
