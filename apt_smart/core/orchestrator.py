"""Orchestrator — the phase sequence of a guided distribution upgrade."""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

import apt_smart
from apt_smart.core.environment import (
    SystemInspector,
    command_exists,
    free_kb,
    is_root,
    kernel_release,
)
from apt_smart.core.escalation import FIX_BROKEN_CMD, UpgradeEscalation
from apt_smart.core.executor import CommandExecutor
from apt_smart.core.hardware import HardwareDetector
from apt_smart.core.models import (
    CommandResult,
    HardwareFacts,
    RunContext,
    RunResult,
    UpgradeAborted,
    UpgradeOutcome,
    Variant,
)
from apt_smart.core.packages import PackageDatabase
from apt_smart.core.runlog import RunLog
from apt_smart.core.settings import Settings
from apt_smart.data.backup import APT_SOURCES, SBC_SOURCES, Backup, read_last_location
from apt_smart.data.report import render_report, write_hardware_log, write_report
from apt_smart.data.rules import Rules
from apt_smart.data.store import DataStore

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]

EXIT_INTERRUPTED = 130
REBOOT_DELAY_SECONDS = 5


class Upgrader:
    """Runs the generic upgrade: backup → update → repair → upgrade → verify."""

    variant = Variant.GENERIC
    title = "Smart Ubuntu/Armbian Distribution Upgrader"
    banner_style = "blue"
    log_prefix = "smart-upgrade"
    backup_sources = APT_SOURCES
    backup_parent = "etc/apt/sources.list.backup"
    backup_prefix = "backup"
    upgrade_message = "Attempting upgrade with conflict resolution..."

    def __init__(
        self,
        settings: Settings,
        rules: Rules,
        console: Optional[Console] = None,
        store: Optional[DataStore] = None,
        auto_confirm: bool = False,
        reboot: bool = False,
        confirm_callback: Optional[ConfirmCallback] = None,
        root: Path = Path("/"),
    ):
        self.settings = settings
        self.rules = rules
        self.profile = rules.profile(self.variant.value)
        self.console = console or Console()
        self.store = store
        self.auto_confirm = auto_confirm
        self.reboot = reboot
        self.root = Path(root)

        self.confirm_callback: ConfirmCallback
        if confirm_callback is not None:
            self.confirm_callback = confirm_callback
        elif auto_confirm:
            self.confirm_callback = lambda _: True
        else:
            self.confirm_callback = self._interactive_confirm

        self.context: Optional[RunContext] = None
        self.runlog: Optional[RunLog] = None
        self.executor: Optional[CommandExecutor] = None
        self.packages: Optional[PackageDatabase] = None
        self.inspector: Optional[SystemInspector] = None
        self.outcome: Optional[UpgradeOutcome] = None
        self._phase = "start"

    # ── Entry point ──────────────────────────────────────────────────

    def run(self) -> RunResult:
        """Execute every phase and return the run's result."""
        start_time = time.time()
        run_id = str(uuid.uuid4())

        if not is_root():
            self.console.print(
                "[red]ERROR: This script must be run as root (use sudo)[/]"
            )
            return RunResult(
                success=False,
                exit_code=1,
                run_id=run_id,
                duration_seconds=time.time() - start_time,
                error_message="Not running as root",
            )

        context = self._new_context(run_id)
        self.context = context
        self.runlog = RunLog(context.log_file, console=self.console)
        self.executor = CommandExecutor(self.runlog, self.store, run_id)
        self.packages = PackageDatabase(self.executor)
        self.inspector = SystemInspector(self.executor, root=self.root)
        self._store_call("create_run", context)

        try:
            self.run_phases()
            result = self._result(context, start_time, 0)
        except UpgradeAborted as e:
            self.runlog.error(e.message)
            result = self._result(context, start_time, e.exit_code, e.message)
        except KeyboardInterrupt:
            self.runlog.error(f"Interrupted. Check log: {context.log_file}")
            result = self._result(
                context, start_time, EXIT_INTERRUPTED, "Interrupted"
            )
        finally:
            self.runlog.close()

        self._store_call("complete_run", context, result)
        return result

    def run_phases(self) -> None:
        self.print_banner()
        self.runlog.info(f"Log file: {self.context.log_file}")
        self.pre_confirm_checks()
        self.confirm_start()
        self.backup()
        self.pre_upgrade_checks()
        self.update_package_lists()
        self.prepare_upgrade()
        self.outcome = self.smart_upgrade()
        if not self.outcome.success:
            raise UpgradeAborted(
                f"Upgrade encountered errors. Check log: {self.context.log_file}"
            )
        self.post_upgrade_cleanup()
        self.verify_system()
        self.finalize()
        self.print_completion()
        self.offer_reboot()

    # ── Phases ───────────────────────────────────────────────────────

    def print_banner(self) -> None:
        self.runlog.banner(self.title, style=self.banner_style)

    def pre_confirm_checks(self) -> None:
        """Read-only checks shown before the operator commits."""

    def confirm_start(self) -> None:
        if not self.confirm("Continue with upgrade?"):
            raise UpgradeAborted("Upgrade cancelled by user")

    def backup(self) -> None:
        self._section("Backing up APT sources", "backup")
        backup = self._create_backup()
        self.runlog.success(f"Backed up to: {backup.directory}")

    def _create_backup(self) -> Backup:
        parent = self.settings.backup_root or (self.root / self.backup_parent)
        try:
            backup = Backup.create(
                parent, f"{self.backup_prefix}-{self.context.stamp}"
            )
        except OSError as e:
            raise UpgradeAborted(f"Cannot create backup directory: {e}") from e
        backup.copy(self._rooted(self.backup_sources))
        for src, err in backup.failed:
            self.runlog.warning(f"Could not back up {src}: {err}")
        try:
            backup.write_package_list(self.packages.snapshot())
        except OSError as e:
            self.runlog.warning(f"Could not save package list: {e}")
        self.context.backup_dir = backup.directory
        return backup

    def pre_upgrade_checks(self) -> None:
        self._section("Pre-Upgrade System Checks", "checks")
        self.check_disk_space()

        self.context.codename_before = self.inspector.codename()
        self.context.release_before = self.inspector.release()
        self.describe_release("Current distribution", self.context)

        running = self.inspector.running_package_managers()
        if running:
            self.runlog.error(
                "Another package manager is running. "
                "Please wait for it to finish."
            )
            self.on_package_manager_conflict()
            raise UpgradeAborted(
                f"Package manager already running: {', '.join(running)}"
            )
        self.runlog.success("No conflicting package managers running")

    def check_disk_space(self) -> None:
        available = free_kb(str(self.root))
        if available < self.settings.min_free_kb:
            self.runlog.warning(
                f"Low disk space. Available: {available // 1024}MB, "
                f"Recommended: {self.settings.min_free_kb // 1024 // 1024}GB+"
            )
            if not self.confirm("Continue anyway?"):
                raise UpgradeAborted("Not enough free disk space")
        else:
            self.runlog.success(
                f"Disk space check passed: {available // 1024 // 1024}GB available"
            )

    def describe_release(self, label: str, context: RunContext) -> None:
        self.runlog.info(f"{label}: {context.codename_before}")

    def on_package_manager_conflict(self) -> None:
        """Hook for logging details about the running package manager."""

    def update_package_lists(self) -> None:
        self._section("Updating Package Lists", "update")
        result = self._stream(["apt", "update"])
        if result.success:
            self.runlog.success("Package lists updated successfully")
        else:
            self.runlog.warning("Some repositories may have issues")

    def prepare_upgrade(self) -> None:
        self.handle_broken_packages()
        self.handle_problematic_packages()

    def handle_broken_packages(self) -> None:
        self._section("Checking for Broken Packages", "repair")
        broken = self.packages.broken()
        if not broken:
            self.runlog.success("No broken packages found")
            return
        self.runlog.warning(
            f"Found {len(broken)} broken packages. Attempting to fix..."
        )
        result = self._stream(FIX_BROKEN_CMD)
        if result.success:
            self.runlog.success("Fixed broken packages")
        else:
            self.runlog.warning("apt --fix-broken install reported errors")

    def handle_problematic_packages(self) -> None:
        self._section("Handling Known Problematic Packages", "problematic")
        found = [
            pkg for pkg in self.rules.problematic_packages
            if self.packages.is_installed(pkg)
        ]
        if not found:
            self.runlog.success("No known problematic packages found")
            return
        for pkg in found:
            self.runlog.warning(f"Found problematic package: {pkg}")
        if not self.confirm("Remove problematic packages to continue upgrade?"):
            self.runlog.info("Keeping problematic packages")
            return
        if not self._stream(["apt", "remove", "-y", *found]).success:
            self.runlog.warning("Some problematic packages could not be removed")
        self._stream(["apt", "autoremove", "-y"])
        self.runlog.success("Removed problematic packages")

    def smart_upgrade(self) -> UpgradeOutcome:
        self._section("Starting Smart Upgrade Process", "upgrade")
        self.runlog.info(self.upgrade_message)
        escalation = UpgradeEscalation(
            self.executor,
            self.runlog,
            self.rules,
            self.profile,
            phase=self._phase,
        )
        return escalation.run()

    def post_upgrade_cleanup(self) -> None:
        self._section("Post-Upgrade Cleanup", "cleanup")
        self.runlog.info("Removing unnecessary packages...")
        self._stream(["apt", "autoremove", "-y"])
        self.runlog.info("Cleaning package cache...")
        self._stream(["apt", "autoclean"])
        self.update_bootloader()
        self.runlog.success("Cleanup completed")

    def update_bootloader(self) -> None:
        """Bootloader refresh during cleanup; the generic flow does it later."""

    def verify_system(self) -> None:
        self._section("System Verification", "verify")
        broken = self.packages.broken()
        if broken:
            self.runlog.warning(f"{len(broken)} broken packages remain")
        else:
            self.runlog.success("No broken packages")

        check = self.inspector.apt_check()
        if check.success:
            self.runlog.success("All dependencies satisfied")
        else:
            self.runlog.warning("Some dependency issues remain")
            for line in (check.output + "\n" + check.stderr).splitlines():
                if line.strip():
                    self.runlog.output(line)

        self._record_new_release()
        self.runlog.info(f"Current distribution: {self.context.codename_after}")
        self.runlog.info(f"Current kernel: {kernel_release()}")
        kernels = self.inspector.installed_kernels(self.packages)
        self.runlog.info(f"Installed kernels: {len(kernels)}")

    def finalize(self) -> None:
        self.pre_reboot_checks()

    def pre_reboot_checks(self) -> None:
        self._section("Pre-Reboot Verification", "pre-reboot")
        self.runlog.info("Checking bootloader...")
        self._update_grub()

        self.runlog.info("Checking initramfs...")
        images = self.inspector.initramfs_images()
        self.runlog.info(f"Found {len(images)} initramfs images")

        self.runlog.info("Checking critical services...")
        for service in self.rules.critical_services:
            if self.inspector.service_enabled(service):
                self.runlog.success(f"  {service} is enabled")
            else:
                self.runlog.warning(f"  {service} is not enabled")

    def print_completion(self) -> None:
        self.runlog.banner("Upgrade Process Completed!", style="green")
        self.runlog.info(f"Full log saved to: {self.context.log_file}")

    def offer_reboot(self) -> None:
        if self.auto_confirm:
            wanted = self.reboot
        else:
            wanted = self.confirm("Reboot now?")
        if not wanted:
            self.runlog.warning("Please reboot manually to complete the upgrade.")
            return
        self.runlog.success("Rebooting system...")
        self._stream(["reboot"])

    # ── Helpers ──────────────────────────────────────────────────────

    def confirm(self, message: str) -> bool:
        answer = bool(self.confirm_callback(message))
        logger.debug("Prompt %r answered %s", message, answer)
        return answer

    def _section(self, title: str, phase: str) -> None:
        self._phase = phase
        self.runlog.header(title)

    def _stream(self, argv: list[str]) -> CommandResult:
        return self.executor.stream(argv, phase=self._phase)

    def _rooted(self, paths: list[str]) -> list[str]:
        return [str(self.root / p.lstrip("/")) for p in paths]

    def _update_grub(self, best_effort: bool = False) -> None:
        if not command_exists("update-grub"):
            self.runlog.warning("update-grub not available, skipping")
            return
        result = self._stream(["update-grub"])
        if not result.success and not best_effort:
            self.runlog.warning("update-grub reported errors")

    def _record_new_release(self) -> None:
        self.context.codename_after = self.inspector.codename()
        self.context.release_after = self.inspector.release()

    def _new_context(self, run_id: str) -> RunContext:
        started = datetime.now()
        stamp = started.strftime("%Y%m%d-%H%M%S")
        return RunContext(
            run_id=run_id,
            started_at=started,
            variant=self.variant,
            log_file=self.settings.log_dir / f"{self.log_prefix}-{stamp}.log",
        )

    def _result(
        self,
        context: RunContext,
        start_time: float,
        exit_code: int,
        error: Optional[str] = None,
    ) -> RunResult:
        return RunResult(
            success=exit_code == 0,
            exit_code=exit_code,
            run_id=context.run_id,
            duration_seconds=time.time() - start_time,
            log_file=context.log_file,
            backup_dir=context.backup_dir,
            report_file=context.report_file,
            error_message=error,
        )

    def _store_call(self, method: str, *args) -> None:
        if self.store is None:
            return
        try:
            getattr(self.store, method)(*args)
        except Exception:
            logger.warning("Run history update %s failed", method, exc_info=True)

    def _interactive_confirm(self, message: str) -> bool:
        """Prompt user for confirmation."""
        from rich.prompt import Confirm

        return Confirm.ask(
            f"[yellow]{message}[/]", console=self.console, default=False
        )


class SbcUpgrader(Upgrader):
    """Hardware-aware upgrade for Armbian single-board computers."""

    variant = Variant.SBC
    title = (
        f"Smart Armbian Distribution Upgrader v{apt_smart.__version__}\n"
        "Optimized for Orange Pi, Rock Pi, and other SBCs"
    )
    banner_style = "magenta"
    log_prefix = "armbian-smart-upgrade"
    backup_sources = SBC_SOURCES
    backup_parent = "root"
    backup_prefix = "upgrade-backup"
    upgrade_message = "Attempting upgrade with automatic conflict resolution..."

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.hardware: Optional[HardwareDetector] = None
        self.facts: Optional[HardwareFacts] = None

    def run_phases(self) -> None:
        self.hardware = HardwareDetector(
            self.executor, self.rules.soc_families, root=self.root
        )
        self.context.hardware_log = (
            self.settings.log_dir / f"hardware-check-{self.context.stamp}.log"
        )
        super().run_phases()

    def _pointer(self) -> Path:
        return self.root / "tmp" / "last-upgrade-backup-location"

    # ── Hardware phases ──────────────────────────────────────────────

    def pre_confirm_checks(self) -> None:
        self.runlog.info(f"Hardware log: {self.context.hardware_log}")
        self.detect_hardware()
        self.check_armbian_specifics()
        self.check_gpu_drivers()
        self.check_plasma_desktop()

    def detect_hardware(self) -> None:
        self._section("Detecting Hardware Configuration", "hardware")
        facts = self.hardware.detect()
        self.facts = facts
        if facts.board_model == "Unknown":
            self.runlog.warning("Board: Unknown (not ARM device tree)")
        else:
            self.runlog.info(f"Board: {facts.board_model}")
        self.runlog.info(f"SoC: {facts.soc}")
        self.runlog.info(f"GPU: {facts.gpu}")
        self.runlog.info(f"Boot device: {facts.boot_device}")
        self.runlog.info(f"Boot type: {facts.boot_type}")
        try:
            write_hardware_log(self.context.hardware_log, facts)
        except OSError as e:
            self.runlog.warning(f"Cannot write hardware log: {e}")

    def check_armbian_specifics(self) -> None:
        self._section("Armbian-Specific Checks", "hardware")
        info = self.hardware.armbian()
        if info.is_armbian:
            self.runlog.success("Armbian system detected")
            self.runlog.info(f"Armbian Version: {info.version}")
            self.runlog.info(f"Armbian Board: {info.board}")
        else:
            self.runlog.warning("Not an official Armbian system")
        if info.config_tool:
            self.runlog.success("armbian-config tool available")
        else:
            self.runlog.warning("armbian-config not found")
        if info.vendor_kernel:
            self.runlog.success(f"Armbian/vendor kernel detected: {info.kernel}")
        else:
            self.runlog.info(f"INFO: Generic kernel in use: {info.kernel}")

    def check_gpu_drivers(self) -> None:
        self._section("GPU Driver Verification", "hardware")
        info = self.hardware.gpu(self.packages)
        if info.driver:
            self.runlog.success(f"GPU driver loaded: {info.driver}")
        else:
            self.runlog.warning("No Mali GPU driver detected")
        if info.dri_devices:
            self.runlog.success(f"DRI devices found: {info.dri_devices}")
        else:
            self.runlog.warning("No DRI devices found")
        if info.mesa_version:
            self.runlog.info(f"Mesa version: {info.mesa_version}")
        if info.rockchip_firmware is not None:
            self.runlog.success(f"Rockchip firmware files: {info.rockchip_firmware}")

    def check_plasma_desktop(self) -> None:
        self._section("Plasma Desktop Environment Check", "hardware")
        info = self.hardware.desktop(self.packages, self.inspector)
        if info.plasma_version is None:
            self.runlog.info("INFO: Plasma desktop not installed")
            return
        if info.plasma_major:
            self.runlog.success(
                f"Plasma {info.plasma_major} installed: {info.plasma_version}"
            )
        else:
            self.runlog.info(f"Plasma version: {info.plasma_version}")

        if info.plasma_major == 6:
            if info.kf6_present:
                self.runlog.success("KDE Frameworks 6 libraries found")
            else:
                self.runlog.warning("Plasma 6 but KF6 libraries missing")
            if info.kf5_count:
                self.runlog.warning(
                    f"{info.kf5_count} KDE Frameworks 5 packages still installed "
                    "(these may be removed after upgrade)"
                )

        if info.display_manager == "sddm":
            self.runlog.success("SDDM display manager enabled")
            if info.display_manager_active:
                self.runlog.success("SDDM is running")
            else:
                self.runlog.info("INFO: SDDM not currently running (expected in SSH)")
        elif info.display_manager == "lightdm":
            self.runlog.success("LightDM display manager enabled")
        else:
            self.runlog.warning("No display manager enabled")

        if info.wayland_sessions is not None:
            self.runlog.info(f"Wayland sessions available: {info.wayland_sessions}")
        if info.x11_sessions is not None:
            self.runlog.info(f"X11 sessions available: {info.x11_sessions}")

    # ── Upgrade phases ───────────────────────────────────────────────

    def backup(self) -> None:
        self._section("Backing Up Critical Configurations", "backup")
        backup = self._create_backup()
        backup.record_location(self._pointer())
        self.runlog.success(f"Backups saved to: {backup.directory}")

    def describe_release(self, label: str, context: RunContext) -> None:
        self.runlog.info(
            f"{label}: Ubuntu {context.release_before} ({context.codename_before})"
        )

    def on_package_manager_conflict(self) -> None:
        for line in self.inspector.package_manager_processes():
            self.runlog.output(line)

    def pre_upgrade_checks(self) -> None:
        super().pre_upgrade_checks()
        held = self.inspector.held_packages()
        if held:
            self.runlog.warning(f"{len(held)} packages are held:")
            for pkg in held:
                self.runlog.output(pkg)

    def update_package_lists(self) -> None:
        super().update_package_lists()
        self.runlog.info(f"Packages to upgrade: {self.packages.upgradable_count()}")

    def prepare_upgrade(self) -> None:
        self.handle_transitions()

    def handle_transitions(self) -> None:
        for transition in self.rules.transitions:
            self._section(f"Handling {transition.name} Transition", "transition")
            old_count = self.packages.count_matching(transition.old)
            new_count = self.packages.count_matching(transition.new)
            if old_count and new_count:
                self.runlog.warning(
                    f"Detected {transition.name} transition "
                    f"({transition.old} → {transition.new})"
                )
                self.runlog.info(
                    f"{transition.old} packages: {old_count} | "
                    f"{transition.new} packages: {new_count}"
                )
                if transition.remove:
                    self.runlog.warning("Removing conflicting packages...")
                    if not self._stream(["apt", "remove", "-y", *transition.remove]).success:
                        self.runlog.warning("Some conflicting packages were not removed")
                self.runlog.success(f"Cleaned up {transition.old} conflicts")
            elif new_count and not old_count:
                self.runlog.success(f"Clean {transition.new} installation")

    def update_bootloader(self) -> None:
        self.runlog.info("Updating bootloader...")
        boot_cmd = self.root / "boot" / "boot.cmd"
        if boot_cmd.exists():
            result = self._stream([
                "mkimage", "-C", "none", "-A", "arm64", "-T", "script",
                "-d", str(boot_cmd), str(boot_cmd.with_name("boot.scr")),
            ])
            if not result.success:
                self.runlog.warning("mkimage failed; boot.scr was not rebuilt")
        self._update_grub(best_effort=True)

    def verify_system(self) -> None:
        self._section("Post-Upgrade Verification", "verify")
        broken = self.packages.broken()
        if broken:
            self.runlog.warning(f"{len(broken)} broken packages remain")
            for entry in broken:
                self.runlog.output(
                    f"{entry.desired}{entry.status}{entry.error} "
                    f"{entry.name} {entry.version}"
                )
        else:
            self.runlog.success("No broken packages")

        self.runlog.info("Checking dependencies...")
        check = self.inspector.apt_check()
        for line in (check.output + "\n" + check.stderr).splitlines():
            if line.strip():
                self.runlog.output(line)
        if not check.success:
            self.runlog.warning("Some dependency issues remain")

        self._record_new_release()
        self.runlog.success(
            f"New distribution: Ubuntu {self.context.release_after} "
            f"({self.context.codename_after})"
        )

        self.detect_hardware()
        self.check_gpu_drivers()
        self.check_plasma_desktop()

        current = kernel_release()
        latest = self.inspector.latest_kernel(self.packages)
        self.runlog.info(f"Current kernel: {current}")
        if latest and latest != current:
            self.runlog.warning(f"Latest kernel: {latest} (will load after reboot)")

        images = self.inspector.initramfs_images()
        self.runlog.info(f"Initramfs images: {len(images)}")

    def finalize(self) -> None:
        self.create_upgrade_report()

    def create_upgrade_report(self) -> None:
        self._section("Creating Upgrade Report", "report")
        path = self.settings.report_dir / f"upgrade-report-{self.context.stamp}.txt"
        text = render_report(
            self.context,
            self.facts,
            kernel=kernel_release(),
            backup_location=read_last_location(self._pointer()),
        )
        try:
            write_report(path, text)
        except OSError as e:
            self.runlog.warning(f"Cannot write upgrade report: {e}")
            return
        self.context.report_file = path
        self.runlog.success(f"Upgrade report saved to: {path}")

    def print_completion(self) -> None:
        self.runlog.banner("Upgrade Process Completed!", style="green")
        self.runlog.info(f"Full log: {self.context.log_file}")
        self.runlog.info(f"Hardware log: {self.context.hardware_log}")
        if self.context.report_file:
            self.runlog.info(f"Upgrade report: {self.context.report_file}")

    def offer_reboot(self) -> None:
        if self.auto_confirm:
            wanted = self.reboot
        else:
            wanted = self.confirm("Reboot now to complete upgrade?")
        if not wanted:
            self.runlog.warning(
                "IMPORTANT: Please reboot manually to complete the upgrade!"
            )
            self.runlog.warning("Run: sudo reboot")
            return
        self.runlog.success(
            f"Rebooting system in {REBOOT_DELAY_SECONDS} seconds..."
        )
        self.runlog.warning("Press Ctrl+C to cancel...")
        time.sleep(REBOOT_DELAY_SECONDS)
        self._stream(["reboot"])
