"""Configuration backups taken before the upgrade touches anything."""

from __future__ import annotations

import glob
import logging
import shutil
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

APT_SOURCES = ["/etc/apt/sources.list", "/etc/apt/sources.list.d"]

SBC_SOURCES = APT_SOURCES + [
    "/etc/armbian-release",
    "/boot/armbianEnv.txt",
    "/boot/boot.cmd",
    "/etc/NetworkManager",
    "/etc/sddm.conf*",
]

PACKAGE_LIST_NAME = "package-list.txt"
LAST_BACKUP_POINTER = Path("/tmp/last-upgrade-backup-location")


def _expand(sources: Iterable[str]) -> list[Path]:
    paths: list[Path] = []
    for src in sources:
        if glob.has_magic(src):
            paths.extend(Path(p) for p in sorted(glob.glob(src)))
        else:
            paths.append(Path(src))
    return paths


class Backup:
    """A timestamped directory that receives copies of config files."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.copied: list[Path] = []
        self.failed: list[tuple[Path, str]] = []

    @classmethod
    def create(cls, parent: Path, name: str) -> Backup:
        directory = Path(parent) / name
        directory.mkdir(parents=True, exist_ok=True)
        return cls(directory)

    def copy(self, sources: Iterable[str]) -> list[Path]:
        """Copy each existing source in; absent sources are skipped."""
        for src in _expand(sources):
            if not src.exists():
                logger.debug("Backup source %s does not exist, skipping", src)
                continue
            dest = self.directory / src.name
            try:
                if src.is_dir():
                    shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
                else:
                    shutil.copy2(src, dest)
            except (OSError, shutil.Error) as e:
                logger.warning("Failed to back up %s: %s", src, e)
                self.failed.append((src, str(e)))
                continue
            self.copied.append(dest)
        return self.copied

    def write_package_list(self, text: str) -> Path:
        path = self.directory / PACKAGE_LIST_NAME
        path.write_text(text if text.endswith("\n") else text + "\n")
        return path

    def record_location(self, pointer: Optional[Path] = None) -> None:
        """Write this backup's path where later tooling can find it."""
        pointer = pointer or LAST_BACKUP_POINTER
        try:
            pointer.write_text(f"{self.directory}\n")
        except OSError as e:
            logger.warning("Cannot write backup pointer %s: %s", pointer, e)


def read_last_location(pointer: Optional[Path] = None) -> Optional[str]:
    pointer = pointer or LAST_BACKUP_POINTER
    try:
        return pointer.read_text().strip() or None
    except OSError:
        return None
