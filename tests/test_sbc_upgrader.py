"""Tests for apt_smart.core.orchestrator — SbcUpgrader."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from apt_smart.core.escalation import FIX_BROKEN_CMD
from apt_smart.core.orchestrator import REBOOT_DELAY_SECONDS, SbcUpgrader
from tests.conftest import FakeExecutor, dpkg_list, fail, ok

SBC_UPGRADE = [
    "apt",
    "-o", "Dpkg::Options::=--force-overwrite",
    "-o", "Dpkg::Options::=--force-confdef",
    "-o", "Dpkg::Options::=--force-confold",
    "full-upgrade", "-y",
]


@pytest.fixture
def board(sysroot):
    dt = sysroot / "proc" / "device-tree"
    dt.mkdir(parents=True)
    (dt / "model").write_bytes(b"Orange Pi 5\0")
    (dt / "compatible").write_bytes(b"xunlong,orangepi-5\0rockchip,rk3588s\0rockchip,rk3588\0")
    (sysroot / "etc" / "armbian-release").write_text("BOARD=orangepi5\nVERSION=24.8.1\n")
    (sysroot / "boot" / "initrd.img-6.1.43-vendor-rk35xx").touch()
    return sysroot


@pytest.fixture
def system():
    with patch("apt_smart.core.orchestrator.is_root", return_value=True), \
         patch("apt_smart.core.orchestrator.free_kb", return_value=50_000_000), \
         patch("apt_smart.core.orchestrator.command_exists", return_value=False), \
         patch("apt_smart.core.orchestrator.kernel_release", return_value="6.1.43-vendor-rk35xx"), \
         patch("apt_smart.core.hardware.kernel_release", return_value="6.1.43-vendor-rk35xx"), \
         patch("apt_smart.core.hardware.command_exists", return_value=True), \
         patch("apt_smart.core.orchestrator.time.sleep") as sleep, \
         patch("apt_smart.core.orchestrator.CommandExecutor") as executor_cls:
        yield MagicMock(sleep=sleep, executor_cls=executor_cls)


def _executor(**kwargs):
    responses = {
        ("findmnt",): ok("/dev/mmcblk0p2"),
        ("lsb_release", "-cs"): [ok("jammy"), ok("noble")],
        ("lsb_release", "-rs"): [ok("22.04"), ok("24.04")],
    }
    responses.update(kwargs.pop("responses", {}))
    return FakeExecutor(responses, **kwargs)


def _run(system, settings, rules, root, console, executor, answer=True, **kwargs):
    system.executor_cls.return_value = executor
    upgrader = SbcUpgrader(
        settings, rules, console=console,
        confirm_callback=lambda message: answer, root=root, **kwargs,
    )
    return upgrader.run(), upgrader


class TestSbcRun:
    def test_full_run(self, system, settings, rules, board, quiet_console):
        executor = _executor()
        result, upgrader = _run(system, settings, rules, board, quiet_console, executor)

        assert result.success
        assert result.log_file.name.startswith("armbian-smart-upgrade-")
        assert [a for a in executor.streamed if "full-upgrade" in a] == [SBC_UPGRADE]

        hw_log = upgrader.context.hardware_log
        assert hw_log.parent == settings.log_dir
        assert "Board: Orange Pi 5" in hw_log.read_text()
        assert "Boot: SD Card (/dev/mmcblk0p2)" in hw_log.read_text()

    def test_backup_and_pointer(self, system, settings, rules, board, quiet_console):
        result, _ = _run(system, settings, rules, board, quiet_console, _executor())
        assert result.backup_dir.name.startswith("upgrade-backup-")
        assert (result.backup_dir / "armbian-release").exists()
        assert (result.backup_dir / "sources.list").exists()
        pointer = board / "tmp" / "last-upgrade-backup-location"
        assert pointer.read_text().strip() == str(result.backup_dir)

    def test_report(self, system, settings, rules, board, quiet_console):
        result, _ = _run(system, settings, rules, board, quiet_console, _executor())
        report = result.report_file
        assert report.parent == settings.report_dir
        assert report.name.startswith("upgrade-report-")
        text = report.read_text()
        assert "Previous Version: jammy" in text
        assert "New Version: noble" in text
        assert "SoC: RK3588" in text
        assert f"Backup location: {result.backup_dir}" in text

    def test_always_fix_broken_after_failure(self, system, settings, rules, board, quiet_console):
        executor = _executor(upgrade_results=[fail("E: Sub-process /usr/bin/dpkg returned an error code (1)"), ok()])
        result, upgrader = _run(system, settings, rules, board, quiet_console, executor)
        assert result.success
        assert executor.streamed.count(FIX_BROKEN_CMD) == 1
        assert [a for a in executor.streamed if "full-upgrade" in a] == [SBC_UPGRADE, SBC_UPGRADE]

    def test_persistent_failure_names_conflicts(self, system, settings, rules, board, quiet_console):
        executor = _executor(upgrade_results=[
            fail("dpkg: error processing package libkf5coreaddons5 (--configure)"),
        ])
        result, upgrader = _run(system, settings, rules, board, quiet_console, executor)
        assert result.exit_code == 1
        assert "KDE5-to-KDE6" in upgrader.outcome.conflict_classes
        assert result.report_file is None


class TestTransitions:
    def test_kf5_and_kf6_present(self, system, settings, rules, board, quiet_console):
        executor = _executor(responses={("dpkg", "-l"): ok(dpkg_list(
            ("ii", "libkf5coreaddons5", "5.115"),
            ("ii", "libkf6coreaddons6", "6.3"),
        ))})
        result, _ = _run(system, settings, rules, board, quiet_console, executor)
        assert result.success
        removal = [a for a in executor.streamed if a[:3] == ["apt", "remove", "-y"]]
        assert removal == [[
            "apt", "remove", "-y",
            "libkpim5akonadimime-data", "libkpim5libkleo-data", "libkf5purpose-bin",
        ]]

    def test_only_kf6(self, system, settings, rules, board, quiet_console):
        executor = _executor(responses={("dpkg", "-l"): ok(dpkg_list(
            ("ii", "libkf6coreaddons6", "6.3"),
        ))})
        _run(system, settings, rules, board, quiet_console, executor)
        assert not any(a[:2] == ["apt", "remove"] for a in executor.streamed)


class TestBootloader:
    def test_boot_script_rebuilt(self, system, settings, rules, board, quiet_console):
        (board / "boot" / "boot.cmd").write_text("setenv bootargs x\n")
        executor = _executor()
        _run(system, settings, rules, board, quiet_console, executor)
        mkimage = [a for a in executor.streamed if a[0] == "mkimage"]
        assert len(mkimage) == 1
        assert mkimage[0][-1] == str(board / "boot" / "boot.scr")

    def test_no_boot_script(self, system, settings, rules, board, quiet_console):
        executor = _executor()
        _run(system, settings, rules, board, quiet_console, executor)
        assert not any(a[0] == "mkimage" for a in executor.streamed)
        assert ["update-grub"] not in executor.streamed


class TestChecks:
    def test_package_manager_conflict_logs_processes(self, system, settings, rules, board, quiet_console):
        executor = _executor(responses={
            ("pgrep", "-x", "dpkg"): ok("77"),
            ("ps", "aux"): ok("root 77 /usr/bin/dpkg --configure -a\n"),
        })
        result, _ = _run(system, settings, rules, board, quiet_console, executor)
        assert result.exit_code == 1
        assert ["ps", "aux"] in executor.captured
        assert "dpkg --configure -a" in result.log_file.read_text()

    def test_held_packages_reported(self, system, settings, rules, board, quiet_console):
        executor = _executor(responses={("apt-mark", "showhold"): ok("linux-image-vendor-rk35xx\n")})
        result, _ = _run(system, settings, rules, board, quiet_console, executor)
        assert "1 packages are held" in result.log_file.read_text()


class TestReboot:
    def test_reboot_waits(self, system, settings, rules, board, quiet_console):
        executor = _executor()
        _run(system, settings, rules, board, quiet_console, executor)
        system.sleep.assert_called_once_with(REBOOT_DELAY_SECONDS)
        assert executor.streamed[-1] == ["reboot"]

    def test_yes_without_reboot(self, system, settings, rules, board, quiet_console):
        executor = _executor()
        system.executor_cls.return_value = executor
        SbcUpgrader(
            settings, rules, console=quiet_console, auto_confirm=True, root=board
        ).run()
        system.sleep.assert_not_called()
        assert ["reboot"] not in executor.streamed
