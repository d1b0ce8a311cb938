"""Package database queries over ``dpkg -l`` and ``apt list``."""

from __future__ import annotations

import re

from apt_smart.core.executor import CommandExecutor
from apt_smart.core.models import PackageEntry

# dpkg current-status letters for half-installed, unpacked, half-configured,
# triggers-awaited and triggers-pending
_BROKEN_STATUSES = frozenset("HUFWt")
_REINST_REQUIRED = "R"

_STATE_RE = re.compile(r"^[uihrp][ncHUFWti][R ]?$")


def parse_dpkg_list(text: str) -> list[PackageEntry]:
    """Parse the table printed by ``dpkg -l`` into entries."""
    entries: list[PackageEntry] = []
    for line in text.splitlines():
        if not line or line.startswith(("Desired=", "|", "+++")):
            continue
        parts = line.split(None, 4)
        if len(parts) < 2 or not _STATE_RE.match(parts[0]):
            continue
        state = parts[0]
        name = parts[1].split(":", 1)[0]
        entries.append(PackageEntry(
            desired=state[0],
            status=state[1],
            error=state[2].strip() if len(state) > 2 else "",
            name=name,
            version=parts[2] if len(parts) > 2 else "",
            architecture=parts[3] if len(parts) > 3 else "",
        ))
    return entries


class PackageDatabase:
    """Read-only view of the dpkg database through its CLI."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    def snapshot(self) -> str:
        return self.executor.capture(["dpkg", "-l"]).output

    def entries(self) -> list[PackageEntry]:
        return parse_dpkg_list(self.snapshot())

    def broken(self) -> list[PackageEntry]:
        return [
            e for e in self.entries()
            if e.status in _BROKEN_STATUSES or e.error == _REINST_REQUIRED
        ]

    def is_installed(self, name: str) -> bool:
        return any(e.installed and e.name == name for e in self.entries())

    def version_of(self, name: str) -> str:
        """Version of the first installed package called ``name``, or ""."""
        for e in self.entries():
            if e.name == name and e.installed:
                return e.version
        return ""

    def count_matching(self, fragment: str) -> int:
        """Number of listed packages whose name contains ``fragment``."""
        return sum(1 for e in self.entries() if fragment in e.name)

    def installed_matching(self, fragment: str) -> list[PackageEntry]:
        return [e for e in self.entries() if e.installed and fragment in e.name]

    def upgradable_count(self) -> int:
        result = self.executor.capture(["apt", "list", "--upgradable"])
        return sum(1 for line in result.lines if "upgradable" in line)
