"""Hardware log and end-of-run upgrade report."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from apt_smart.core.models import HardwareFacts, RunContext

_RULE = "=" * 40


def write_hardware_log(path: Path, facts: HardwareFacts) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(facts.as_lines()) + "\n")
    return path


def render_report(
    context: RunContext,
    facts: Optional[HardwareFacts],
    kernel: str,
    backup_location: Optional[str],
    when: Optional[datetime] = None,
) -> str:
    when = when or datetime.now()
    hardware = facts.as_lines() if facts else ["(not detected)"]
    lines = [
        _RULE,
        "Armbian Smart Upgrade Report",
        _RULE,
        f"Date: {when:%a %b %d %H:%M:%S %Y}",
        "",
        "Hardware:",
        *hardware,
        "",
        "Upgrade Status: Completed",
        "",
        f"Previous Version: {context.codename_before}",
        f"New Version: {context.codename_after}",
        "",
        f"Kernel: {kernel}",
        "",
        f"Full log: {context.log_file}",
        f"Hardware log: {context.hardware_log or 'N/A'}",
        f"Backup location: {backup_location or 'N/A'}",
        "",
        _RULE,
    ]
    return "\n".join(lines) + "\n"


def write_report(path: Path, text: str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path
