"""Conflict rules — the table of known problem packages and remediations.

The table is JSON. A packaged default ships next to this module; a user file
with the same shape replaces it wholesale.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).parent / "default_rules.json"

FORCE_OVERWRITE = "force-overwrite"
FIX_BROKEN = "fix-broken"
_ACTIONS = {FORCE_OVERWRITE, FIX_BROKEN}


class RulesError(ValueError):
    """The rules table is unreadable or malformed."""


@dataclass
class Remediation:
    name: str
    match: list[str]
    action: str

    def applies_to(self, output: str) -> bool:
        """True when any match string occurs in ``output``, or none are set."""
        if not self.match:
            return True
        return any(needle in output for needle in self.match)


@dataclass
class Profile:
    dpkg_options: list[str] = field(default_factory=list)
    ladder: list[Remediation] = field(default_factory=list)


@dataclass
class Transition:
    name: str
    old: str
    new: str
    remove: list[str] = field(default_factory=list)


@dataclass
class SocFamily:
    compatible: str
    soc: str
    gpu: str


@dataclass
class Rules:
    problematic_packages: list[str] = field(default_factory=list)
    conflict_patterns: dict[str, re.Pattern] = field(default_factory=dict)
    remediations: dict[str, Remediation] = field(default_factory=dict)
    profiles: dict[str, Profile] = field(default_factory=dict)
    transitions: list[Transition] = field(default_factory=list)
    critical_services: list[str] = field(default_factory=list)
    soc_families: list[SocFamily] = field(default_factory=list)
    source: Optional[Path] = None

    def profile(self, variant: str) -> Profile:
        if variant not in self.profiles:
            raise RulesError(f"No upgrade profile for {variant!r}")
        return self.profiles[variant]

    def conflict_classes(self, output: str) -> list[str]:
        """Names of the conflict patterns that occur in ``output``."""
        return [
            name for name, pattern in self.conflict_patterns.items()
            if pattern.search(output)
        ]


def load_rules(path: Optional[Union[str, Path]] = None) -> Rules:
    """Load and validate a rules table; ``None`` means the packaged default."""
    source = Path(path) if path else DEFAULT_RULES_PATH
    try:
        raw = json.loads(source.read_text(encoding="utf-8"))
    except OSError as e:
        raise RulesError(f"Cannot read rules file {source}: {e}") from e
    except json.JSONDecodeError as e:
        raise RulesError(f"Invalid JSON in {source}: {e}") from e
    rules = parse_rules(raw)
    rules.source = source
    logger.debug(
        "Loaded %d remediations and %d conflict patterns from %s",
        len(rules.remediations), len(rules.conflict_patterns), source,
    )
    return rules


def parse_rules(raw: Any) -> Rules:
    if not isinstance(raw, dict):
        raise RulesError("Rules table must be a JSON object")

    patterns: dict[str, re.Pattern] = {}
    for name, expr in _mapping(raw, "conflict_patterns").items():
        try:
            patterns[name] = re.compile(expr)
        except (re.error, TypeError) as e:
            raise RulesError(f"Bad conflict pattern {name!r}: {e}") from e

    remediations: dict[str, Remediation] = {}
    for item in _list(raw, "remediations"):
        if not isinstance(item, dict):
            raise RulesError("Remediation entries must be objects")
        try:
            name = _text(item["name"], "Remediation name")
            remedy = Remediation(
                name=name,
                match=_str_list(item.get("match", []), f"Remediation {name!r} match"),
                action=_text(item["action"], f"Remediation {name!r} action"),
            )
        except KeyError as e:
            raise RulesError(f"Remediation entry missing {e}") from e
        if remedy.action not in _ACTIONS:
            raise RulesError(
                f"Unknown action {remedy.action!r} for remediation "
                f"{remedy.name!r}. Valid actions: {', '.join(sorted(_ACTIONS))}"
            )
        remediations[remedy.name] = remedy

    profiles: dict[str, Profile] = {}
    for variant, body in _mapping(raw, "profiles").items():
        if not isinstance(body, dict):
            raise RulesError(f"Profile {variant!r} must be an object")
        ladder = []
        for step in _str_list(body.get("ladder", []), f"Profile {variant!r} ladder"):
            if step not in remediations:
                raise RulesError(
                    f"Profile {variant!r} refers to unknown remediation {step!r}"
                )
            ladder.append(remediations[step])
        profiles[variant] = Profile(
            dpkg_options=_str_list(
                body.get("dpkg_options", []), f"Profile {variant!r} dpkg_options"
            ),
            ladder=ladder,
        )

    try:
        transitions = [
            Transition(
                name=_text(t["name"], "Transition name"),
                old=_text(t["old"], "Transition old"),
                new=_text(t["new"], "Transition new"),
                remove=_str_list(t.get("remove", []), "Transition remove"),
            )
            for t in _list(raw, "transitions")
        ]
        socs = [
            SocFamily(
                compatible=_text(s["compatible"], "SoC compatible"),
                soc=_text(s["soc"], "SoC name"),
                gpu=_text(s["gpu"], "SoC gpu"),
            )
            for s in _list(raw, "soc_families")
        ]
    except (KeyError, TypeError) as e:
        raise RulesError(f"Rules entry missing {e}") from e

    return Rules(
        problematic_packages=_str_list(
            raw.get("problematic_packages", []), "'problematic_packages'"
        ),
        conflict_patterns=patterns,
        remediations=remediations,
        profiles=profiles,
        transitions=transitions,
        critical_services=_str_list(
            raw.get("critical_services", []), "'critical_services'"
        ),
        soc_families=socs,
    )


def _text(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise RulesError(f"{what} must be a string")
    return value


def _str_list(value: Any, what: str) -> list[str]:
    """``value`` as a list of strings; a bare string is rejected."""
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise RulesError(f"{what} must be a list of strings")
    return list(value)


def _list(raw: dict, key: str) -> list:
    value = raw.get(key, [])
    if not isinstance(value, list):
        raise RulesError(f"{key!r} must be a list")
    return value


def _mapping(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if not isinstance(value, dict):
        raise RulesError(f"{key!r} must be an object")
    return value
