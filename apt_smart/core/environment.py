"""System inspection — privileges, disk, release, package managers, kernels."""

from __future__ import annotations

import os
import platform
import shutil
from pathlib import Path
from typing import Optional

from apt_smart.core.executor import CommandExecutor
from apt_smart.core.models import CommandResult
from apt_smart.core.packages import PackageDatabase

PACKAGE_MANAGER_PROCESSES = ("apt", "apt-get", "dpkg")
DEFAULT_MIN_FREE_KB = 5_000_000


def is_root() -> bool:
    return os.geteuid() == 0


def free_kb(path: str = "/") -> int:
    """Kilobytes available to unprivileged users on ``path``'s filesystem."""
    return shutil.disk_usage(path).free // 1024


def kernel_release() -> str:
    return platform.release()


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


class SystemInspector:
    """Read-only queries the upgrade phases make about the running system."""

    def __init__(self, executor: CommandExecutor, root: Path = Path("/")):
        self.executor = executor
        self.root = Path(root)

    def codename(self) -> str:
        return self._lsb_release("-cs")

    def release(self) -> str:
        return self._lsb_release("-rs")

    def _lsb_release(self, flag: str) -> str:
        result = self.executor.capture(["lsb_release", flag])
        if result.success and result.output:
            return result.output.splitlines()[0].strip()
        return "unknown"

    def running_package_managers(self) -> list[str]:
        """Names of package-manager processes that are running right now."""
        running = []
        for name in PACKAGE_MANAGER_PROCESSES:
            if self.executor.capture(["pgrep", "-x", name]).success:
                running.append(name)
        return running

    def package_manager_processes(self) -> list[str]:
        """``ps aux`` rows mentioning apt or dpkg, for the log."""
        result = self.executor.capture(["ps", "aux"])
        return [
            line for line in result.lines
            if ("apt" in line or "dpkg" in line) and "ps aux" not in line
        ]

    def held_packages(self) -> list[str]:
        return self.executor.capture(["apt-mark", "showhold"]).lines

    def installed_kernels(self, packages: PackageDatabase) -> list[str]:
        return [
            e.name[len("linux-image-"):]
            for e in packages.installed_matching("linux-image-")
            if e.name.startswith("linux-image-")
        ]

    def latest_kernel(self, packages: PackageDatabase) -> Optional[str]:
        kernels = self.installed_kernels(packages)
        return kernels[-1] if kernels else None

    def initramfs_images(self) -> list[Path]:
        return sorted((self.root / "boot").glob("initrd.img-*"))

    def service_enabled(self, service: str) -> bool:
        return self.executor.capture(
            ["systemctl", "is-enabled", service]
        ).success

    def service_active(self, service: str) -> bool:
        return self.executor.capture(
            ["systemctl", "is-active", service]
        ).success

    def apt_check(self) -> CommandResult:
        return self.executor.capture(["apt-get", "check"])
