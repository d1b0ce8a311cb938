"""Tests for apt_smart.data.rules — loading and validating the rules table."""

from __future__ import annotations

import json

import pytest

from apt_smart.data.rules import (
    DEFAULT_RULES_PATH,
    FIX_BROKEN,
    FORCE_OVERWRITE,
    Remediation,
    RulesError,
    load_rules,
    parse_rules,
)


def _minimal(**overrides):
    raw = {
        "remediations": [
            {"name": "overwrite", "match": ["trying to overwrite"], "action": "force-overwrite"},
        ],
        "profiles": {"generic": {"dpkg_options": [], "ladder": ["overwrite"]}},
    }
    raw.update(overrides)
    return raw


class TestDefaultRules:
    def test_loads_packaged_table(self):
        rules = load_rules()
        assert rules.source == DEFAULT_RULES_PATH
        assert "libqt5webengine5" in rules.problematic_packages
        assert set(rules.conflict_patterns) == {"KDE5-to-KDE6", "Qt5-to-Qt6", "wx-widgets"}
        assert rules.critical_services == ["NetworkManager", "sddm", "systemd-logind"]

    def test_generic_profile(self):
        profile = load_rules().profile("generic")
        assert profile.dpkg_options == []
        assert [r.name for r in profile.ladder] == ["file-overwrite", "unmet-dependencies"]
        assert [r.action for r in profile.ladder] == [FORCE_OVERWRITE, FIX_BROKEN]

    def test_sbc_profile(self):
        profile = load_rules().profile("sbc")
        assert profile.dpkg_options == [
            "--force-overwrite", "--force-confdef", "--force-confold",
        ]
        assert [r.name for r in profile.ladder] == ["always-fix-broken"]

    def test_kde_transition(self):
        (transition,) = load_rules().transitions
        assert (transition.old, transition.new) == ("libkf5", "libkf6")
        assert "libkf5purpose-bin" in transition.remove

    def test_soc_families(self):
        socs = {s.compatible: (s.soc, s.gpu) for s in load_rules().soc_families}
        assert socs["rk3588"] == ("RK3588", "Mali-G610")
        assert socs["rk3399"] == ("RK3399", "Mali-T860")
        assert socs["rk3568"] == ("RK3568", "Mali-G52")


class TestRemediation:
    def test_matches_any_needle(self):
        r = Remediation("deps", ["Unmet dependencies", "Depends:"], FIX_BROKEN)
        assert r.applies_to("kwin : Depends: libkf6")
        assert not r.applies_to("E: Failed to fetch")

    def test_empty_match_always_applies(self):
        assert Remediation("always", [], FIX_BROKEN).applies_to("")


class TestConflictClasses:
    def test_names_matching_patterns(self):
        rules = load_rules()
        found = rules.conflict_classes("unpacking libwx-perl ... libkpim5-mime")
        assert found == ["KDE5-to-KDE6", "wx-widgets"]

    def test_nothing_found(self):
        assert load_rules().conflict_classes("Hash Sum mismatch") == []


class TestUserRules:
    def test_user_file_replaces_default(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps(_minimal(problematic_packages=["foo"])))
        rules = load_rules(path)
        assert rules.source == path
        assert rules.problematic_packages == ["foo"]
        assert rules.conflict_patterns == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(RulesError, match="Cannot read"):
            load_rules(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{not json")
        with pytest.raises(RulesError, match="Invalid JSON"):
            load_rules(path)

    def test_unknown_action(self):
        raw = _minimal(remediations=[{"name": "x", "match": [], "action": "pray"}])
        with pytest.raises(RulesError, match="Unknown action"):
            parse_rules(raw)

    def test_ladder_refers_to_unknown_remediation(self):
        raw = _minimal(profiles={"generic": {"ladder": ["missing"]}})
        with pytest.raises(RulesError, match="unknown remediation"):
            parse_rules(raw)

    def test_bad_regex(self):
        with pytest.raises(RulesError, match="Bad conflict pattern"):
            parse_rules(_minimal(conflict_patterns={"broken": "libkf(5"}))

    def test_wrong_container_type(self):
        with pytest.raises(RulesError, match="must be a list"):
            parse_rules(_minimal(problematic_packages="libfoo"))

    def test_not_an_object(self):
        with pytest.raises(RulesError):
            parse_rules(["a", "list"])

    def test_missing_profile(self):
        with pytest.raises(RulesError, match="No upgrade profile"):
            parse_rules(_minimal()).profile("sbc")


class TestStringLists:
    def test_bare_string_match_rejected(self):
        raw = _minimal(remediations=[
            {"name": "overwrite", "match": "trying to overwrite", "action": "force-overwrite"},
        ])
        with pytest.raises(RulesError, match="match must be a list of strings"):
            parse_rules(raw)

    def test_bare_string_dpkg_options_rejected(self):
        raw = _minimal(profiles={
            "generic": {"dpkg_options": "--force-overwrite", "ladder": []},
        })
        with pytest.raises(RulesError, match="dpkg_options must be a list of strings"):
            parse_rules(raw)

    def test_bare_string_transition_remove_rejected(self):
        raw = _minimal(transitions=[
            {"name": "kf", "old": "libkf5", "new": "libkf6", "remove": "libkf5purpose-bin"},
        ])
        with pytest.raises(RulesError, match="remove must be a list of strings"):
            parse_rules(raw)

    def test_unhashable_ladder_step_rejected(self):
        raw = _minimal(profiles={"generic": {"ladder": [{"name": "overwrite"}]}})
        with pytest.raises(RulesError, match="ladder must be a list of strings"):
            parse_rules(raw)

    def test_non_string_package_rejected(self):
        with pytest.raises(RulesError, match="problematic_packages"):
            parse_rules(_minimal(problematic_packages=["libfoo", 42]))

    def test_remediation_must_be_object(self):
        with pytest.raises(RulesError, match="must be objects"):
            parse_rules(_minimal(remediations=["overwrite"]))

    def test_valid_lists_kept(self):
        rules = parse_rules(_minimal(critical_services=["sddm"]))
        assert rules.remediations["overwrite"].match == ["trying to overwrite"]
        assert not rules.remediations["overwrite"].applies_to("E: Failed to fetch")
        assert rules.critical_services == ["sddm"]
