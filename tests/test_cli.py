"""Unit tests for the CLI module.

This module tests the command-line interface including:
- Argument parsing
- Error handling
- Command execution against a real repository
- The main entry point and its exit codes
"""

import argparse
import json
import os
from io import StringIO
from unittest.mock import patch

import pytest

from conftest import commit_files, git

from agent_safeguards.cli import (
    cmd_agent,
    cmd_boundary_monitor,
    cmd_compliance_monitor,
    cmd_dashboard,
    cmd_experiment,
    cmd_rollback,
    create_parser,
    format_error,
)
from agent_safeguards.exceptions import RecoveryError, SafeguardError

PIPELINE_YAML = """\
phases: [RED, GREEN, REFACTOR]
agents:
  - name: schema
    phase: GREEN
  - name: services
    phase: GREEN
    depends_on: [schema]
    scope: ['src/services/**']
  - name: hooks
    phase: GREEN
    depends_on: [services]
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host SAFEGUARDS_* variables out of every test."""
    for name in list(os.environ):
        if name.startswith("SAFEGUARDS_"):
            monkeypatch.delenv(name)


@pytest.fixture
def repo(git_repo):
    commit_files(git_repo, {"agents.yaml": PIPELINE_YAML}, "Add pipeline definition")
    return git_repo


def parse(repo, *argv):
    return create_parser().parse_args(["--workspace", str(repo), *argv])


class TestCreateParser:
    """Tests for parser creation and configuration."""

    def test_parser_creation(self):
        """Test that parser is created with correct configuration."""
        parser = create_parser()
        assert parser.prog == "agent-safeguards"
        assert "Agent Safeguards CLI" in parser.description

    def test_parser_requires_subcommand(self):
        """Test that parser requires a subcommand."""
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args([])

    def test_parser_rollback_subcommand(self):
        """Test rollback positional arguments and defaults."""
        args = create_parser().parse_args(["rollback", "git", "abc123", "bad merge"])
        assert args.command == "rollback"
        assert args.action == "git"
        assert args.target == "abc123"
        assert args.reason == "bad merge"
        assert args.ref == "HEAD~1"
        assert args.dry_run is False

    def test_parser_rejects_unknown_rollback_action(self):
        """Test that only the known rollback actions are accepted."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(["rollback", "nuke"])

    def test_parser_global_options(self):
        """Test global options before the subcommand."""
        args = create_parser().parse_args(
            ["--workspace", "/tmp/ws", "--shared-dir", "/tmp/shared", "--json", "dashboard", "--health"]
        )
        assert args.workspace == "/tmp/ws"
        assert args.shared_dir == "/tmp/shared"
        assert args.json is True
        assert args.health is True

    def test_parser_safe_integrate_modes(self):
        """Test safe-integrate mode choices."""
        args = create_parser().parse_args(["safe-integrate", "services", "emergency-rollback"])
        assert args.target == "services"
        assert args.mode == "emergency-rollback"
        with pytest.raises(SystemExit):
            create_parser().parse_args(["safe-integrate", "services", "yolo"])

    def test_parser_agent_subcommand(self):
        """Test agent subcommand parsing."""
        args = create_parser().parse_args(["agent", "run", "schema", "--cycles", "3", "--no-wait"])
        assert args.action == "run"
        assert args.name == "schema"
        assert args.cycles == 3
        assert args.no_wait is True


class TestErrorFormatting:
    """Tests for error message formatting."""

    def test_format_error_safeguard_error(self):
        """Test formatting SafeguardError."""
        result = format_error(SafeguardError("Store unavailable"))
        assert result == "Error: Store unavailable"

    def test_format_error_recovery_error(self):
        """Test formatting a subclass with extra attributes."""
        result = format_error(RecoveryError("Target commit missing", level="git"))
        assert "Error: Target commit missing" in result

    def test_format_error_argument_type_error(self):
        """Test formatting ArgumentTypeError."""
        result = format_error(argparse.ArgumentTypeError("Invalid argument"))
        assert "Error: Invalid argument" in result

    def test_format_error_generic_exception(self):
        """Test formatting generic exception."""
        result = format_error(ValueError("Some value error"))
        assert "Unexpected error" in result
        assert "Some value error" in result


class TestRollbackCommand:
    """Tests for the rollback command handler."""

    @patch("sys.stdout", new_callable=StringIO)
    def test_verify_passes_with_test_command(self, mock_stdout, repo, monkeypatch):
        """Test verify with a configured passing test command."""
        monkeypatch.setenv("SAFEGUARDS_TEST_COMMAND", "true")
        assert cmd_rollback(parse(repo, "rollback", "verify")) == 0
        output = mock_stdout.getvalue()
        assert "Verification: PASSED" in output
        assert "build: skipped" in output

    @patch("sys.stdout", new_callable=StringIO)
    def test_verify_without_commands_fails(self, mock_stdout, repo):
        """Test that nothing configured is never reported as success."""
        assert cmd_rollback(parse(repo, "rollback", "verify")) == 1
        assert "UNVERIFIED" in mock_stdout.getvalue()

    @patch("sys.stderr", new_callable=StringIO)
    def test_git_requires_target(self, mock_stderr, repo):
        """Test git rollback without a target commit."""
        assert cmd_rollback(parse(repo, "rollback", "git")) == 1
        assert "Error: rollback git needs a target commit" in mock_stderr.getvalue()

    @patch("sys.stdout", new_callable=StringIO)
    def test_files_rollback(self, mock_stdout, repo):
        """Test selective rollback of a comma-separated file list."""
        commit_files(repo, {"src/app.py": "broken\n", "src/services/a.py": "a\n"}, "Agent work")
        exit_code = cmd_rollback(parse(repo, "rollback", "files", "src/app.py,src/services/a.py", "undo"))
        assert exit_code == 0
        assert (repo / "src" / "app.py").read_text() == "def main():\n    return 1\n"
        assert not (repo / "src" / "services" / "a.py").exists()
        assert "Outcome: succeeded" in mock_stdout.getvalue()

    @patch("sys.stdout", new_callable=StringIO)
    def test_smart_dry_run_changes_nothing(self, mock_stdout, repo):
        """Test that a dry run only prints the chosen strategy."""
        head = git(repo, "rev-parse", "HEAD")
        assert cmd_rollback(parse(repo, "rollback", "smart", "services", "--dry-run")) == 0
        assert "Smart rollback would use" in mock_stdout.getvalue()
        assert git(repo, "rev-parse", "HEAD") == head
        assert not (repo / ".safeguards" / "rollback").exists()

    @patch("sys.stdout", new_callable=StringIO)
    def test_list_json(self, mock_stdout, repo):
        """Test listing recovery points as JSON."""
        assert cmd_rollback(parse(repo, "--json", "rollback", "list")) == 0
        listing = json.loads(mock_stdout.getvalue())
        assert set(listing) == {"recent_commits", "snapshots", "backups", "recovery_tags", "records"}


class TestMonitorCommands:
    """Tests for the compliance and boundary monitor handlers."""

    @patch("sys.stdout", new_callable=StringIO)
    def test_compliance_once(self, mock_stdout, repo):
        """Test a single compliance cycle on a clean change."""
        assert cmd_compliance_monitor(parse(repo, "compliance-monitor", "services", "--once")) == 0
        assert "Compliance report for services" in mock_stdout.getvalue()

    @patch("sys.stdout", new_callable=StringIO)
    def test_boundary_once(self, mock_stdout, repo):
        """Test a boundary check before and after an out-of-scope edit."""
        assert cmd_boundary_monitor(parse(repo, "boundary-monitor", "--agent", "services", "--once")) == 0
        (repo / "README.md").write_text("# rewritten\n")
        assert cmd_boundary_monitor(parse(repo, "boundary-monitor", "--agent", "services", "--once")) == 1
        assert "out_of_scope_modification" in mock_stdout.getvalue()

    @patch("sys.stderr", new_callable=StringIO)
    @patch("sys.stdout", new_callable=StringIO)
    def test_baseline_twice_fails(self, mock_stdout, mock_stderr, repo):
        """Test that the baseline is never overwritten."""
        assert cmd_boundary_monitor(parse(repo, "boundary-monitor", "--baseline")) == 0
        assert cmd_boundary_monitor(parse(repo, "boundary-monitor", "--baseline")) == 1
        assert "already exists" in mock_stderr.getvalue()


class TestOtherCommands:
    """Tests for dashboard, experiment and agent handlers."""

    @patch("sys.stdout", new_callable=StringIO)
    def test_dashboard_health(self, mock_stdout, repo):
        """Test the health summary."""
        assert cmd_dashboard(parse(repo, "dashboard", "--health")) == 0
        assert "System Health: HEALTHY" in mock_stdout.getvalue()

    @patch("sys.stdout", new_callable=StringIO)
    def test_dashboard(self, mock_stdout, repo):
        """Test the full dashboard."""
        assert cmd_dashboard(parse(repo, "dashboard")) == 0
        output = mock_stdout.getvalue()
        assert "PIPELINE DASHBOARD" in output
        assert "  - schema" in output

    @patch("sys.stderr", new_callable=StringIO)
    def test_experiment_setup_requires_target(self, mock_stderr, repo):
        """Test experiment setup without a target."""
        assert cmd_experiment(parse(repo, "experiment", "setup", "trial")) == 1
        assert "needs a target" in mock_stderr.getvalue()

    @patch("sys.stdout", new_callable=StringIO)
    def test_agent_step_success(self, mock_stdout, repo, monkeypatch):
        """Test one agent attempt that reaches the target pass rate."""
        monkeypatch.setenv("SAFEGUARDS_TEST_COMMAND", "echo 'Tests:       10 passed, 10 total'")
        assert cmd_agent(parse(repo, "agent", "step", "schema")) == 0
        assert "schema: success after 1 attempt(s)" in mock_stdout.getvalue()
        assert (repo / ".safeguards" / "handoffs" / "schema-complete.md").exists()

    @patch("sys.stderr", new_callable=StringIO)
    def test_agent_without_test_command(self, mock_stderr, repo):
        """Test that an agent needs a test command."""
        assert cmd_agent(parse(repo, "agent", "step", "schema")) == 1
        assert "has no test command" in mock_stderr.getvalue()

    @patch("sys.stderr", new_callable=StringIO)
    def test_unknown_agent(self, mock_stderr, repo):
        """Test an agent missing from the pipeline definition."""
        assert cmd_agent(parse(repo, "agent", "status", "ghost")) == 1
        assert "not defined" in mock_stderr.getvalue()


class TestMainFunction:
    """Tests for the main entry point."""

    @patch("sys.exit")
    @patch("sys.stdout", new_callable=StringIO)
    def test_main_dashboard_success(self, mock_stdout, mock_exit, repo):
        """Test main function with the dashboard command."""
        from agent_safeguards.cli import main

        with patch("sys.argv", ["agent-safeguards", "--workspace", str(repo), "dashboard"]):
            main()
        mock_exit.assert_called_once_with(0)

    @patch("sys.exit")
    @patch("sys.stderr", new_callable=StringIO)
    def test_main_failed_check(self, mock_stderr, mock_exit, repo):
        """Test that a failed command maps to exit code 1."""
        from agent_safeguards.cli import main

        with patch("sys.argv", ["agent-safeguards", "--workspace", str(repo), "rollback", "git"]):
            main()
        mock_exit.assert_called_once_with(1)

    @patch("sys.exit")
    @patch("sys.stderr", new_callable=StringIO)
    def test_main_interrupted(self, mock_stderr, mock_exit, repo):
        """Test that Ctrl-C maps to exit code 130."""
        from agent_safeguards.cli import main

        argv = ["agent-safeguards", "--workspace", str(repo), "dashboard"]
        with patch("sys.argv", argv), patch("agent_safeguards.cli.cmd_dashboard", side_effect=KeyboardInterrupt):
            main()
        mock_exit.assert_called_once_with(130)
