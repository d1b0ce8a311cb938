"""Command executor — runs package-manager commands and records each step."""

from __future__ import annotations

import logging
import subprocess
import time
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from apt_smart.core.models import CommandResult

if TYPE_CHECKING:
    from apt_smart.core.runlog import RunLog
    from apt_smart.data.store import DataStore

logger = logging.getLogger(__name__)

# Exit status reported when the executable could not be started
EXIT_NOT_FOUND = 127


class CommandExecutor:
    """Runs external commands synchronously, without timeouts."""

    def __init__(
        self,
        runlog: Optional[RunLog] = None,
        store: Optional[DataStore] = None,
        run_id: Optional[str] = None,
    ):
        self.runlog = runlog
        self.store = store
        self.run_id = run_id
        self._step = 0

    def stream(self, argv: list[str], phase: str = "") -> CommandResult:
        """Run ``argv``, teeing merged stdout/stderr to the run log."""
        logger.debug("Running %s", argv)
        start = time.time()
        lines: list[str] = []
        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            result = CommandResult(
                argv=list(argv),
                exit_code=EXIT_NOT_FOUND,
                error=f"Cannot run {argv[0]}: {e}",
            )
            if self.runlog:
                self.runlog.warning(result.error)
            self._record(phase, result, start)
            return result

        with proc:
            for raw in proc.stdout:
                line = raw.rstrip("\n")
                lines.append(line)
                if self.runlog:
                    self.runlog.output(line)
            exit_code = proc.wait()

        result = CommandResult(
            argv=list(argv),
            exit_code=exit_code,
            output="\n".join(lines),
        )
        self._record(phase, result, start)
        return result

    def capture(self, argv: list[str]) -> CommandResult:
        """Run a read-only query quietly and return its output."""
        try:
            proc = subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            logger.debug("Cannot run %s: %s", argv[0], e)
            return CommandResult(
                argv=list(argv),
                exit_code=EXIT_NOT_FOUND,
                error=f"Cannot run {argv[0]}: {e}",
            )
        return CommandResult(
            argv=list(argv),
            exit_code=proc.returncode,
            output=proc.stdout.strip(),
            stderr=proc.stderr.strip(),
        )

    def _record(self, phase: str, result: CommandResult, start: float) -> None:
        self._step += 1
        if self.store is None or self.run_id is None:
            return
        try:
            self.store.log_step(
                self.run_id,
                number=self._step,
                timestamp=datetime.now(),
                phase=phase,
                result=result,
                duration_ms=int((time.time() - start) * 1000),
            )
        except Exception:
            logger.warning("Failed to record step %d", self._step, exc_info=True)
