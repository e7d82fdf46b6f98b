import datetime
import subprocess
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest import mock

import anykernel_package
from anykernel_package import KpmPatchStatus
from build_errors import NetworkError, PackagingError
from build_options import Addon, BuildConfig, KsuVariant, TargetSystem
from command_runner import CommandResult

TIMESTAMP = datetime.datetime(2025, 1, 31, 9, 5, 7)


class ArchiveNameTests(unittest.TestCase):
    def test_fields_in_order(self) -> None:
        name = anykernel_package.archive_name(
            TargetSystem.MIUI, "alioth", "SukiSU-Ultra_SuSFS", "abcd1234", TIMESTAMP
        )

        self.assertEqual(
            "Kernel_MIUI_alioth_SukiSU-Ultra_SuSFS_20250131_090507_anykernel3_abcd1234.zip", name
        )

    def test_aosp_without_kernelsu(self) -> None:
        name = anykernel_package.archive_name(TargetSystem.AOSP, "munch", "NoKernelSU", "unknown", TIMESTAMP)

        self.assertTrue(name.startswith("Kernel_AOSP_munch_NoKernelSU_"))
        self.assertTrue(name.endswith("_anykernel3_unknown.zip"))


class _BuildTreeTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.workdir = Path(self._tempdir.name)
        self.source_root = self.workdir / "kernel"
        self.build_dir = self.workdir / "build_alioth_abcd1234"
        self.boot_dir = self.build_dir / anykernel_package.BOOT_DIR
        self.boot_dir.mkdir(parents=True)
        self.source_root.mkdir()

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _write_image(self, content: bytes = b"kernel") -> Path:
        image = self.boot_dir / anykernel_package.IMAGE_NAME
        image.write_bytes(content)
        return image

    def _template(self) -> Path:
        template = self.source_root / anykernel_package.ANYKERNEL_DIR
        (template / "tools").mkdir(parents=True)
        (template / "anykernel.sh").write_text("#!/bin/sh\n")
        (template / "tools" / "magiskboot").write_bytes(b"\x7fELF")
        (template / ".git").mkdir()
        (template / ".git" / "HEAD").write_text("ref: refs/heads/kona\n")
        (template / ".github").mkdir()
        (template / ".github" / "workflow.yml").write_text("on: push\n")
        (template / "out").mkdir()
        (template / "out" / "old.img").write_bytes(b"old")
        (template / "previous.zip").write_bytes(b"PK")
        return template


class KpmPatchTests(_BuildTreeTestCase):
    def test_patch_replaces_image(self) -> None:
        image = self._write_image(b"original")

        def fake_download(url: str, destination: Path) -> Path:
            destination.write_bytes(b"#!/bin/sh\n")
            return destination

        def fake_run(command, **kwargs):
            (kwargs["cwd"] / anykernel_package.PATCHED_IMAGE_NAME).write_bytes(b"patched")
            return CommandResult(command, 0)

        with mock.patch("anykernel_package.download_file", side_effect=fake_download), mock.patch(
            "anykernel_package.run_command", side_effect=fake_run
        ) as run_mock:
            result = anykernel_package.apply_kpm_patch(image)

        self.assertIs(KpmPatchStatus.APPLIED, result.status)
        self.assertEqual(b"patched", image.read_bytes())
        self.assertEqual(["./patch"], run_mock.call_args.args[0])
        self.assertFalse((self.boot_dir / "patch").exists())
        self.assertFalse((self.boot_dir / anykernel_package.PATCHED_IMAGE_NAME).exists())

    def test_download_failure_keeps_original_image(self) -> None:
        image = self._write_image(b"original")

        with mock.patch("anykernel_package.download_file", side_effect=NetworkError("offline")), mock.patch(
            "anykernel_package.run_command"
        ) as run_mock:
            with self.assertLogs(anykernel_package.LOG, level="WARNING"):
                result = anykernel_package.apply_kpm_patch(image)

        run_mock.assert_not_called()
        self.assertIs(KpmPatchStatus.DEGRADED, result.status)
        self.assertIn("offline", result.reason)
        self.assertEqual(b"original", image.read_bytes())

    def test_tool_failure_keeps_original_image(self) -> None:
        image = self._write_image(b"original")

        def fake_download(url: str, destination: Path) -> Path:
            destination.write_bytes(b"")
            return destination

        with mock.patch("anykernel_package.download_file", side_effect=fake_download), mock.patch(
            "anykernel_package.run_command", side_effect=subprocess.CalledProcessError(1, ["./patch"])
        ):
            result = anykernel_package.apply_kpm_patch(image)

        self.assertIs(KpmPatchStatus.DEGRADED, result.status)
        self.assertEqual(b"original", image.read_bytes())
        self.assertFalse((self.boot_dir / "patch").exists())

    def test_only_requested_for_ultra_with_kpm(self) -> None:
        self.assertTrue(
            anykernel_package.kpm_patch_requested(
                BuildConfig("alioth", ksu_variant=KsuVariant.SUKISU_ULTRA, addon=Addon.SUSFS_KPM)
            )
        )
        self.assertFalse(
            anykernel_package.kpm_patch_requested(
                BuildConfig("alioth", ksu_variant=KsuVariant.SUKISU, addon=Addon.KPM)
            )
        )
        self.assertFalse(
            anykernel_package.kpm_patch_requested(BuildConfig("alioth", ksu_variant=KsuVariant.SUKISU_ULTRA))
        )


class DtbTests(_BuildTreeTestCase):
    def test_blobs_concatenated_in_sorted_order(self) -> None:
        vendor = self.boot_dir / "dts" / "vendor" / "qcom"
        vendor.mkdir(parents=True)
        (vendor / "b.dtb").write_bytes(b"B")
        (vendor / "a.dtb").write_bytes(b"A")
        (vendor / "a.dts").write_bytes(b"source")

        dtb = anykernel_package.concatenate_dtbs(self.build_dir)

        self.assertEqual(self.boot_dir / "dtb", dtb)
        self.assertEqual(b"AB", dtb.read_bytes())

    def test_no_blobs_gives_empty_file(self) -> None:
        with self.assertLogs(anykernel_package.LOG, level="WARNING"):
            dtb = anykernel_package.concatenate_dtbs(self.build_dir)

        self.assertEqual(b"", dtb.read_bytes())


class ArchiveTests(_BuildTreeTestCase):
    def test_archive_skips_hidden_and_output_entries(self) -> None:
        template = self._template()
        archive = anykernel_package.create_archive(template, self.workdir / "out.zip")

        with zipfile.ZipFile(archive) as zip_file:
            names = sorted(zip_file.namelist())
            compress_types = {info.compress_type for info in zip_file.infolist()}

        self.assertEqual(["anykernel.sh", "tools/magiskboot"], names)
        self.assertEqual({zipfile.ZIP_DEFLATED}, compress_types)

    def test_stage_payload_replaces_previous_kernels(self) -> None:
        template = self._template()
        stale = template / anykernel_package.ANYKERNEL_PAYLOAD_DIR / "Image"
        stale.parent.mkdir()
        stale.write_bytes(b"stale")
        image = self._write_image(b"fresh")

        payload = anykernel_package.stage_payload(template, image)

        self.assertEqual(b"fresh", (payload / "Image").read_bytes())

    def test_clone_failure_is_fatal(self) -> None:
        error = subprocess.CalledProcessError(128, ["git"])
        with mock.patch("anykernel_package.run_command", side_effect=error):
            with self.assertRaises(PackagingError):
                anykernel_package.ensure_anykernel_template(self.workdir / "anykernel")

    def test_existing_template_is_reused(self) -> None:
        template = self._template()
        with mock.patch("anykernel_package.run_command") as run_mock:
            self.assertEqual(template, anykernel_package.ensure_anykernel_template(template))

        run_mock.assert_not_called()

    def test_low_disk_space_is_fatal(self) -> None:
        usage = mock.Mock(free=1024)
        with mock.patch("anykernel_package.shutil.disk_usage", return_value=usage), mock.patch(
            "anykernel_package.run_command"
        ) as run_mock:
            with self.assertRaises(PackagingError):
                anykernel_package.ensure_anykernel_template(self.workdir / "anykernel")

        run_mock.assert_not_called()


class PackageKernelTests(_BuildTreeTestCase):
    def test_missing_image_aborts_before_kpm_and_zip(self) -> None:
        config = BuildConfig("alioth", ksu_variant=KsuVariant.SUKISU_ULTRA, addon=Addon.KPM)
        with mock.patch("anykernel_package.apply_kpm_patch") as kpm_mock:
            with self.assertRaises(PackagingError):
                anykernel_package.package_kernel(
                    config,
                    TargetSystem.MIUI,
                    source_root=self.source_root,
                    build_dir=self.build_dir,
                    ksu_label="SukiSU-Ultra",
                    revision="abcd1234",
                )

        kpm_mock.assert_not_called()
        self.assertEqual([], list(self.source_root.glob("*.zip")))

    def test_package_flow(self) -> None:
        self._template()
        self._write_image(b"kernel")
        config = BuildConfig("munch", target_system=TargetSystem.AOSP)

        with mock.patch("anykernel_package.apply_kpm_patch") as kpm_mock:
            artifact = anykernel_package.package_kernel(
                config,
                TargetSystem.AOSP,
                source_root=self.source_root,
                build_dir=self.build_dir,
                ksu_label="NoKernelSU",
                revision="unknown",
                now=TIMESTAMP,
            )

        kpm_mock.assert_not_called()
        self.assertIs(KpmPatchStatus.NOT_REQUESTED, artifact.kpm_patch.status)
        self.assertEqual(
            self.source_root / "Kernel_AOSP_munch_NoKernelSU_20250131_090507_anykernel3_unknown.zip",
            artifact.archive_path,
        )
        with zipfile.ZipFile(artifact.archive_path) as zip_file:
            self.assertEqual(b"kernel", zip_file.read("kernels/Image"))
            self.assertIn("kernels/dtb", zip_file.namelist())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
