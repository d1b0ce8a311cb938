"""Settings resolution: CLI flag → env var → config store → default."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from apt_smart.core.environment import DEFAULT_MIN_FREE_KB

logger = logging.getLogger(__name__)

# config key -> environment variable
CONFIG_KEYS = {
    "log-dir": "APT_SMART_LOG_DIR",
    "backup-root": "APT_SMART_BACKUP_ROOT",
    "report-dir": "APT_SMART_REPORT_DIR",
    "rules-file": "APT_SMART_RULES",
    "min-free-kb": "APT_SMART_MIN_FREE_KB",
}

_NUMERIC_KEYS = {"min-free-kb"}


@dataclass
class Settings:
    log_dir: Path = Path("/var/log")
    backup_root: Optional[Path] = None  # None: the variant's own default
    report_dir: Path = Path("/root")
    rules_file: Optional[Path] = None
    min_free_kb: int = DEFAULT_MIN_FREE_KB


def validate_config(key: str, value: str) -> None:
    """Raise ValueError for unknown keys or non-numeric numeric values."""
    if key not in CONFIG_KEYS:
        raise ValueError(
            f"Unknown config key: {key}. "
            f"Valid keys: {', '.join(sorted(CONFIG_KEYS))}"
        )
    if key in _NUMERIC_KEYS:
        try:
            if int(value) < 0:
                raise ValueError
        except ValueError:
            raise ValueError(f"{key} must be a non-negative integer") from None


def _lookup(key: str, flag: Optional[object], store) -> Optional[str]:
    if flag is not None:
        return str(flag)
    env = os.environ.get(CONFIG_KEYS[key])
    if env:
        return env
    if store is not None:
        try:
            return store.get_config(key)
        except Exception:
            logger.debug("Config lookup for %s failed", key, exc_info=True)
    return None


def resolve_settings(
    store=None,
    log_dir: Optional[Path] = None,
    backup_root: Optional[Path] = None,
    report_dir: Optional[Path] = None,
    rules_file: Optional[Path] = None,
    min_free_kb: Optional[int] = None,
) -> Settings:
    settings = Settings()

    value = _lookup("log-dir", log_dir, store)
    if value:
        settings.log_dir = Path(value)
    value = _lookup("backup-root", backup_root, store)
    if value:
        settings.backup_root = Path(value)
    value = _lookup("report-dir", report_dir, store)
    if value:
        settings.report_dir = Path(value)
    value = _lookup("rules-file", rules_file, store)
    if value:
        settings.rules_file = Path(value)
    value = _lookup("min-free-kb", min_free_kb, store)
    if value:
        validate_config("min-free-kb", value)
        settings.min_free_kb = int(value)

    return settings
