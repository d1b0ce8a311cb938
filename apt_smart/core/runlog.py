"""Run log — colored console lines plus a plain-text log file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

logger = logging.getLogger(__name__)

_RULE = "=" * 48


class RunLog:
    """Writes every status line to the console and to the run's log file."""

    def __init__(
        self,
        log_file: Path,
        console: Optional[Console] = None,
        name: str = "apt_smart.run",
    ):
        self.log_file = Path(log_file)
        self.console = console or Console()
        self._logger = logging.getLogger(f"{name}.{self.log_file.stem}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._handler: Optional[logging.Handler] = None
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            self._handler = logging.FileHandler(self.log_file, encoding="utf-8")
            self._handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(message)s")
            )
            self._logger.addHandler(self._handler)
        except OSError as e:
            logger.warning("Cannot open log file %s: %s", self.log_file, e)

    def close(self) -> None:
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None

    def header(self, title: str) -> None:
        self.console.print()
        self.console.print(f"[blue]{_RULE}\n{escape(title)}\n{_RULE}[/]")
        self._logger.info(_RULE)
        self._logger.info(title)
        self._logger.info(_RULE)

    def banner(self, text: str, style: str = "blue") -> None:
        self.console.print(
            Panel(f"[bold]{escape(text)}[/]", border_style=style, expand=False)
        )
        for line in text.splitlines():
            self._logger.info(line)

    def info(self, message: str) -> None:
        self.console.print(f"[blue]{escape(message)}[/]")
        self._logger.info(message)

    def success(self, message: str) -> None:
        self.console.print(f"[green]✓ {escape(message)}[/]")
        self._logger.info(message)

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]WARNING: {escape(message)}[/]")
        self._logger.warning(message)

    def error(self, message: str) -> None:
        self.console.print(f"[red]ERROR: {escape(message)}[/]")
        self._logger.error(message)

    def output(self, line: str) -> None:
        """Raw command output, echoed without markup."""
        self.console.print(line, markup=False, highlight=False)
        self._logger.info(line)
