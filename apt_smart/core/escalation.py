"""Upgrade escalation — retries ``apt full-upgrade`` through a remediation ladder."""

from __future__ import annotations

import logging

from apt_smart.core.executor import CommandExecutor
from apt_smart.core.models import Attempt, UpgradeOutcome
from apt_smart.core.runlog import RunLog
from apt_smart.data.rules import FIX_BROKEN, FORCE_OVERWRITE, Profile, Rules

logger = logging.getLogger(__name__)

FIX_BROKEN_CMD = ["apt", "--fix-broken", "install", "-y"]


def upgrade_command(dpkg_options: list[str]) -> list[str]:
    argv = ["apt"]
    for opt in dpkg_options:
        argv += ["-o", f"Dpkg::Options::={opt}"]
    return argv + ["full-upgrade", "-y"]


def _with_option(options: list[str], extra: str) -> list[str]:
    return options if extra in options else options + [extra]


class UpgradeEscalation:
    """Runs the first upgrade attempt, then each matching remediation once.

    The apt exit status decides whether an attempt succeeded. Output is only
    searched to choose which remediation to try next.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        runlog: RunLog,
        rules: Rules,
        profile: Profile,
        phase: str = "upgrade",
    ):
        self.executor = executor
        self.runlog = runlog
        self.rules = rules
        self.profile = profile
        self.phase = phase

    def run(self) -> UpgradeOutcome:
        outcome = UpgradeOutcome(success=False)
        captured: list[str] = []

        base = list(self.profile.dpkg_options)
        if self._attempt("initial", base, outcome, captured):
            self.runlog.success("Upgrade completed successfully")
            return outcome

        self.runlog.warning("Initial upgrade attempt failed. Analyzing issues...")

        for remedy in self.profile.ladder:
            if not remedy.applies_to("\n".join(captured)):
                logger.debug("Remediation %s does not match", remedy.name)
                continue
            outcome.remediations.append(remedy.name)
            options = _with_option(base, "--force-overwrite")

            if remedy.action == FORCE_OVERWRITE:
                self.runlog.warning(
                    "Detected file overwrite conflicts. Applying force-overwrite..."
                )
            elif remedy.action == FIX_BROKEN:
                self.runlog.warning(
                    f"Applying {remedy.name}: fixing broken packages..."
                )
                fix = self.executor.stream(FIX_BROKEN_CMD, phase=self.phase)
                captured.append(fix.output)

            if self._attempt(remedy.name, options, outcome, captured):
                self.runlog.success(f"Upgrade completed after {remedy.name}")
                return outcome

        outcome.conflict_classes = self.rules.conflict_classes("\n".join(captured))
        if outcome.conflict_classes:
            self.runlog.warning(
                "Conflicts implicated: " + ", ".join(outcome.conflict_classes)
            )
        self.runlog.error("Upgrade failed. Manual intervention may be required.")
        self.runlog.warning(f"Check log file: {self.runlog.log_file}")
        return outcome

    def _attempt(
        self,
        label: str,
        options: list[str],
        outcome: UpgradeOutcome,
        captured: list[str],
    ) -> bool:
        result = self.executor.stream(upgrade_command(options), phase=self.phase)
        captured.append(result.output)
        outcome.attempts.append(Attempt(label=label, dpkg_options=options, result=result))
        outcome.success = result.success
        return result.success
