"""Hardware detection — board, SoC, GPU, boot medium, Armbian and desktop state."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from apt_smart.core.environment import command_exists, kernel_release
from apt_smart.core.executor import CommandExecutor
from apt_smart.core.models import HardwareFacts
from apt_smart.core.packages import PackageDatabase
from apt_smart.data.rules import SocFamily

VENDOR_KERNEL_RE = re.compile(r"rockchip|sunxi|meson|armbian")
GPU_MODULE_RE = re.compile(r"^(panfrost|panthor|mali)\S*")
_CPUINFO_MODEL_RE = re.compile(r"^Model\s*:\s*(.+)$", re.MULTILINE)


@dataclass
class ArmbianInfo:
    is_armbian: bool
    version: str = "Unknown"
    board: str = "Unknown"
    config_tool: bool = False
    kernel: str = ""
    vendor_kernel: bool = False


@dataclass
class GpuInfo:
    driver: Optional[str] = None
    dri_devices: int = 0
    mesa_version: Optional[str] = None
    rockchip_firmware: Optional[int] = None


@dataclass
class DesktopInfo:
    plasma_version: Optional[str] = None
    plasma_major: int = 0
    kf6_present: bool = False
    kf5_count: int = 0
    display_manager: Optional[str] = None
    display_manager_active: bool = False
    wayland_sessions: Optional[int] = None
    x11_sessions: Optional[int] = None


def boot_type(device: str) -> str:
    if "mmcblk" in device:
        return "SD Card" if "mmcblk0" in device else "eMMC"
    return "Other (NVMe/USB)"


def parse_release_file(text: str) -> dict[str, str]:
    """Read ``KEY=value`` lines of a shell-style release file as data."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip("'\"")
    return values


class HardwareDetector:
    """Inspects device-tree and /proc pseudo-files under ``root``."""

    def __init__(
        self,
        executor: CommandExecutor,
        soc_families: list[SocFamily],
        root: Path = Path("/"),
    ):
        self.executor = executor
        self.soc_families = soc_families
        self.root = Path(root)

    def _read(self, relpath: str) -> Optional[str]:
        path = self.root / relpath
        try:
            return path.read_bytes().replace(b"\0", b"").decode(
                "utf-8", errors="replace"
            )
        except OSError:
            return None

    def detect(self) -> HardwareFacts:
        facts = HardwareFacts(kernel=kernel_release())

        model = self._read("proc/device-tree/model")
        if model is not None:
            facts.board_model = model.strip()

        compatible = self._read("proc/device-tree/compatible") or ""
        for family in self.soc_families:
            if family.compatible in compatible:
                facts.soc = family.soc
                facts.gpu = family.gpu
                break
        else:
            cpuinfo = self._read("proc/cpuinfo") or ""
            m = _CPUINFO_MODEL_RE.search(cpuinfo)
            if m:
                facts.soc = m.group(1).strip()

        result = self.executor.capture(["findmnt", "-n", "-o", "SOURCE", "/"])
        facts.boot_device = result.output.strip() if result.success else ""
        facts.boot_type = boot_type(facts.boot_device)
        return facts

    def armbian(self) -> ArmbianInfo:
        kernel = kernel_release()
        text = self._read("etc/armbian-release")
        info = ArmbianInfo(
            is_armbian=text is not None,
            config_tool=command_exists("armbian-config"),
            kernel=kernel,
            vendor_kernel=bool(VENDOR_KERNEL_RE.search(kernel)),
        )
        if text is not None:
            values = parse_release_file(text)
            info.version = values.get("VERSION") or "Unknown"
            info.board = values.get("BOARD") or "Unknown"
        return info

    def gpu(self, packages: PackageDatabase) -> GpuInfo:
        info = GpuInfo()
        lsmod = self.executor.capture(["lsmod"])
        for line in lsmod.lines:
            m = GPU_MODULE_RE.match(line)
            if m:
                info.driver = line.split()[0]
                break

        info.dri_devices = len(list((self.root / "dev/dri").glob("card*")))

        mesa = packages.installed_matching("libgles2-mesa")
        if mesa:
            info.mesa_version = mesa[0].version

        firmware = self.root / "lib/firmware/rockchip"
        if firmware.is_dir():
            info.rockchip_firmware = sum(
                1 for p in firmware.rglob("*") if p.is_file()
            )
        return info

    def desktop(self, packages: PackageDatabase, inspector) -> DesktopInfo:
        info = DesktopInfo()
        version = packages.version_of("plasma-desktop")
        if not version:
            return info

        info.plasma_version = version
        upstream = version.split(":", 1)[-1]
        if upstream.startswith("6."):
            info.plasma_major = 6
        elif upstream.startswith("5."):
            info.plasma_major = 5

        if info.plasma_major == 6:
            info.kf6_present = packages.count_matching("libkf6") > 0
            info.kf5_count = packages.count_matching("libkf5")

        if inspector.service_enabled("sddm"):
            info.display_manager = "sddm"
            info.display_manager_active = inspector.service_active("sddm")
        elif inspector.service_enabled("lightdm"):
            info.display_manager = "lightdm"

        wayland = self.root / "usr/share/wayland-sessions"
        if wayland.is_dir():
            info.wayland_sessions = len(list(wayland.glob("*.desktop")))
        xsessions = self.root / "usr/share/xsessions"
        if xsessions.is_dir():
            info.x11_sessions = len(list(xsessions.glob("*.desktop")))
        return info
