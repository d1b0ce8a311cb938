"""Core data models for apt-smart."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class Variant(Enum):
    GENERIC = "generic"
    SBC = "sbc"


@dataclass
class CommandResult:
    argv: list[str]
    exit_code: int = 0
    output: str = ""
    stderr: str = ""
    error: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.error

    @property
    def lines(self) -> list[str]:
        return [line for line in self.output.splitlines() if line.strip()]


@dataclass
class RunContext:
    run_id: str
    started_at: datetime
    variant: Variant
    log_file: Path
    hardware_log: Optional[Path] = None
    backup_dir: Optional[Path] = None
    report_file: Optional[Path] = None
    codename_before: str = ""
    release_before: str = ""
    codename_after: str = ""
    release_after: str = ""

    @property
    def stamp(self) -> str:
        return self.started_at.strftime("%Y%m%d-%H%M%S")


@dataclass
class HardwareFacts:
    board_model: str = "Unknown"
    soc: str = "Unknown"
    gpu: str = "Unknown"
    boot_device: str = ""
    boot_type: str = "Unknown"
    kernel: str = ""

    def as_lines(self) -> list[str]:
        return [
            f"Board: {self.board_model}",
            f"SoC: {self.soc}",
            f"GPU: {self.gpu}",
            f"Boot: {self.boot_type} ({self.boot_device})",
            f"Kernel: {self.kernel}",
        ]


@dataclass
class PackageEntry:
    desired: str  # u, i, h, r, p
    status: str  # n, c, H, U, F, W, t, i
    error: str  # "" or R
    name: str
    version: str = ""
    architecture: str = ""

    @property
    def installed(self) -> bool:
        return self.desired == "i" and self.status == "i"


@dataclass
class Attempt:
    label: str
    dpkg_options: list[str]
    result: CommandResult


@dataclass
class UpgradeOutcome:
    success: bool
    attempts: list[Attempt] = field(default_factory=list)
    remediations: list[str] = field(default_factory=list)
    conflict_classes: list[str] = field(default_factory=list)


@dataclass
class RunResult:
    success: bool
    exit_code: int
    run_id: str
    duration_seconds: float
    log_file: Optional[Path] = None
    backup_dir: Optional[Path] = None
    report_file: Optional[Path] = None
    error_message: Optional[str] = None


class UpgradeAborted(Exception):
    """Stops the run with ``exit_code`` and ``message``."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
