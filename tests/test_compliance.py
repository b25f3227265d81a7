"""Tests for the compliance monitor."""

from unittest import mock

import pytest

from conftest import commit_files, write_files

from agent_safeguards.compliance import (
    BAND_COMPLIANT,
    BAND_MODERATE,
    BAND_NON_COMPLIANT,
    ComplianceMonitor,
    extract_change_set,
    fingerprint,
    score_band,
)
from agent_safeguards.git import GitRepository
from agent_safeguards.rules import ChangeSet, default_rules


def business_change(tag: str) -> ChangeSet:
    """A change-set that trips the business-logic rule."""
    text = "\n".join(f"def calculate_{i}(): pass" for i in range(10))
    return ChangeSet(added_files=[f"src/{tag}.py"], read_file=lambda path: text)


class TestScoreBand:
    @pytest.mark.parametrize("score,band", [
        (100, BAND_COMPLIANT),
        (90, BAND_COMPLIANT),
        (89, BAND_MODERATE),
        (70, BAND_MODERATE),
        (69, BAND_NON_COMPLIANT),
        (0, BAND_NON_COMPLIANT),
    ])
    def test_bands(self, score, band):
        assert score_band(score)["band"] == band


class TestExtractChangeSet:
    """Change-sets come from git history plus the working tree."""

    def test_committed_and_untracked_changes(self, git_repo):
        commit_files(git_repo, {
            "src/services/billing.py": "x = 1\n",
            "src/app.py": "def main():\n    return 2\n",
        }, "Add billing service")
        write_files(git_repo, {"src/services/draft.py": "y = 1\n"})

        change = extract_change_set(GitRepository(git_repo), git_repo, exclude=[".safeguards"])
        assert change.added_files == ["src/services/billing.py", "src/services/draft.py"]
        assert "src/app.py" in change.modified_files
        assert change.summary == "Add billing service"
        assert change.read_file("src/services/draft.py") == "y = 1\n"
        assert change.read_file("missing.py") is None

    def test_manifest_diff_lines(self, git_repo):
        commit_files(git_repo, {"package.json": '{"name": "project", "version": "1.1.0"}\n'}, "Bump")
        change = extract_change_set(GitRepository(git_repo), git_repo, manifest_files=["package.json"])
        lines = change.manifest_changes["package.json"]
        assert any(line.startswith("+") and "1.1.0" in line for line in lines)
        assert any(line.startswith("-") and "1.0.0" in line for line in lines)

    def test_fingerprint_ignores_reader(self):
        a = ChangeSet(modified_files=["a"], read_file=lambda p: "1")
        b = ChangeSet(modified_files=["a"], read_file=lambda p: "2")
        assert fingerprint(a) == fingerprint(b)


class TestComplianceMonitor:
    """Cycle evaluation, running score and suspension."""

    def make_monitor(self, store, changes, **kwargs):
        provider = mock.Mock(side_effect=changes)
        return ComplianceMonitor(store, "services", provider, default_rules(), **kwargs)

    def test_clean_change_scores_100(self, memory_store):
        monitor = self.make_monitor(memory_store, [ChangeSet(modified_files=["src/a.py"])])
        result = monitor.run_cycle()
        assert result.violations == 0
        assert result.warnings == 0
        assert monitor.score() == 100

    def test_score_accumulates(self, memory_store):
        monitor = self.make_monitor(memory_store, [
            business_change("one"),
            ChangeSet(modified_files=["src/b.py"], summary="Refactor helpers"),
        ])
        monitor.run_cycle()
        monitor.run_cycle()
        report = monitor.report()
        assert report["violations"] == 1
        assert report["warnings"] == 1
        assert report["score"] == 88
        assert report["band"] == BAND_MODERATE

    def test_unchanged_change_set_is_not_rescored(self, memory_store):
        change = business_change("one")
        monitor = self.make_monitor(memory_store, [change, change])
        assert monitor.run_cycle() is not None
        assert monitor.run_cycle() is None
        state = monitor.load_state()
        assert state["cycle"] == 2
        assert state["evaluated_cycles"] == 1
        assert state["total_violations"] == 1

    def test_empty_change_set_is_skipped(self, memory_store):
        monitor = self.make_monitor(memory_store, [ChangeSet()])
        assert monitor.run_cycle() is None
        assert monitor.cycle_results() == []

    def test_alerts_and_cycle_results_written(self, memory_store):
        monitor = self.make_monitor(memory_store, [business_change("one")])
        monitor.run_cycle()
        alerts = monitor.alerts.list_alerts()
        assert [a["issue"] for a in alerts] == ["business_logic_implementation"]
        assert alerts[0]["severity"] == "critical"
        assert monitor.cycle_results()[0].violations == 1

    def test_state_survives_restart(self, memory_store):
        self.make_monitor(memory_store, [business_change("one")]).run_cycle()
        restarted = self.make_monitor(memory_store, [business_change("one"), business_change("two")])
        assert restarted.run_cycle() is None
        assert restarted.run_cycle().cycle == 3
        assert restarted.score() == 80

    def test_repeated_critical_requests_suspension_once(self, memory_store):
        suspender = mock.Mock()
        monitor = self.make_monitor(
            memory_store,
            [business_change(str(i)) for i in range(4)],
            auto_pause=True, suspender=suspender,
        )
        monitor.run_cycle()
        suspender.assert_not_called()
        monitor.run_cycle()
        suspender.assert_called_once()
        assert suspender.call_args[0][0] == "services"
        monitor.run_cycle()
        monitor.run_cycle()
        assert suspender.call_count == 1

    def test_suspension_off_by_default(self, memory_store):
        suspender = mock.Mock()
        monitor = self.make_monitor(
            memory_store, [business_change(str(i)) for i in range(3)], suspender=suspender,
        )
        for _ in range(3):
            monitor.run_cycle()
        suspender.assert_not_called()

    def test_run_writes_final_report(self, memory_store, fake_clock):
        monitor = self.make_monitor(memory_store, [business_change("one"), business_change("one")])
        assert monitor.run(interval=15, clock=fake_clock, max_cycles=2) == 2
        report = memory_store.get_json("compliance/services/final-report.json")
        assert report["cycles"] == 2
        assert report["score"] == 90
        assert report["band"] == BAND_COMPLIANT
