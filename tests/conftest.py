"""Shared test fixtures for apt-smart tests."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Optional, Union

import pytest
from rich.console import Console

from apt_smart.core.models import CommandResult
from apt_smart.core.settings import Settings
from apt_smart.data.rules import Rules, load_rules
from apt_smart.data.store import DataStore

DPKG_HEADER = """\
Desired=Unknown/Install/Remove/Purge/Hold
| Status=Not/Inst/Conf-files/Unpacked/halF-conf/Half-inst/trig-aWait/Trig-pend
|/ Err?=(none)/Reinst-required (Status,Err: uppercase=bad)
||/ Name                 Version        Architecture Description
+++-====================-==============-============-=================================
"""


def dpkg_list(*rows: tuple[str, str, str]) -> str:
    """Build ``dpkg -l`` output from (state, name, version) rows."""
    body = "".join(
        f"{state:<3} {name:<20} {version:<14} arm64        package {name}\n"
        for state, name, version in rows
    )
    return DPKG_HEADER + body


Response = Union[CommandResult, list[CommandResult]]


def ok(output: str = "") -> CommandResult:
    return CommandResult(argv=[], exit_code=0, output=output)


def fail(output: str = "", exit_code: int = 100) -> CommandResult:
    return CommandResult(argv=[], exit_code=exit_code, output=output)


class FakeExecutor:
    """Stands in for CommandExecutor; replies by longest matching argv prefix.

    A list response is consumed in order and its last item repeats. Any argv
    containing ``full-upgrade`` is answered from ``upgrade_results``.
    """

    def __init__(
        self,
        responses: Optional[dict[tuple[str, ...], Response]] = None,
        upgrade_results: Optional[list[CommandResult]] = None,
    ):
        self.responses: dict[tuple[str, ...], Response] = {
            ("pgrep",): fail(exit_code=1),
            ("lsb_release", "-cs"): ok("noble"),
            ("lsb_release", "-rs"): ok("24.04"),
            ("dpkg", "-l"): ok(dpkg_list(("ii", "bash", "5.2-1"))),
        }
        self.responses.update(responses or {})
        self.upgrade_results = list(upgrade_results or [ok()])
        self.calls: list[tuple[str, list[str]]] = []

    @property
    def streamed(self) -> list[list[str]]:
        return [argv for kind, argv in self.calls if kind == "stream"]

    @property
    def captured(self) -> list[list[str]]:
        return [argv for kind, argv in self.calls if kind == "capture"]

    def _next(self, value: Response) -> CommandResult:
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value

    def _lookup(self, argv: list[str]) -> CommandResult:
        if "full-upgrade" in argv:
            reply = self._next(self.upgrade_results)
        else:
            best: Optional[tuple[str, ...]] = None
            for prefix in self.responses:
                if tuple(argv[:len(prefix)]) == prefix and (
                    best is None or len(prefix) > len(best)
                ):
                    best = prefix
            reply = self._next(self.responses[best]) if best else ok()
        return CommandResult(
            argv=list(argv),
            exit_code=reply.exit_code,
            output=reply.output,
            stderr=reply.stderr,
            error=reply.error,
        )

    def stream(self, argv: list[str], phase: str = "") -> CommandResult:
        self.calls.append(("stream", list(argv)))
        return self._lookup(argv)

    def capture(self, argv: list[str]) -> CommandResult:
        self.calls.append(("capture", list(argv)))
        return self._lookup(argv)


@pytest.fixture
def quiet_console() -> Console:
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def rules() -> Rules:
    """The packaged default rules table."""
    return load_rules()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        log_dir=tmp_path / "log",
        backup_root=tmp_path / "backups",
        report_dir=tmp_path / "reports",
        min_free_kb=1000,
    )


@pytest.fixture
def sysroot(tmp_path: Path) -> Path:
    """A fake filesystem root with APT sources in place."""
    root = tmp_path / "root"
    apt = root / "etc" / "apt"
    (apt / "sources.list.d").mkdir(parents=True)
    (apt / "sources.list").write_text("deb http://ports.ubuntu.com noble main\n")
    (apt / "sources.list.d" / "armbian.list").write_text(
        "deb http://apt.armbian.com noble main\n"
    )
    (root / "boot").mkdir()
    (root / "tmp").mkdir()
    return root


@pytest.fixture
def temp_db(tmp_path):
    """DataStore with a temporary SQLite database."""
    db_path = str(tmp_path / "test.db")
    store = DataStore(db_path=db_path)
    yield store
    store.close()
