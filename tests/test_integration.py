"""Tests for the safe-integrate workflows."""

import pytest

from agent_safeguards.config import Settings
from agent_safeguards.context import SafeguardContext
from agent_safeguards.integration import SafeIntegrator
from agent_safeguards.models import ExperimentStatus, RollbackLevel


@pytest.fixture
def context(git_repo, three_agent_pipeline, fake_clock):
    settings = Settings(workspace=str(git_repo), test_command="true")
    return SafeguardContext(settings, pipeline=three_agent_pipeline, clock=fake_clock)


@pytest.fixture
def integrator(context):
    return SafeIntegrator(context)


class TestSafeguardContext:
    def test_shared_dir_excluded_from_workspace(self, context, git_repo):
        assert context.shared == (git_repo / ".safeguards").resolve()
        assert context.exclude == [".safeguards"]

    def test_unknown_agent_gets_default_rules(self, context):
        monitor = context.compliance_monitor("ghost")
        assert monitor.agent == "ghost"
        assert len(monitor.rules) == 5


class TestSafeMode:
    def test_clean_workspace_passes(self, integrator):
        result = integrator.safe("services")
        assert result["passed"] is True
        assert result["failures"] == []
        assert result["recommendation"] is None
        assert result["verification"]["status"] == "passed"

    def test_violation_recommends_but_never_rolls_back(self, integrator, context, git_repo):
        context.boundary_monitor("services").capture_baseline()
        (git_repo / "src" / "app.py").write_text("def main():\n    return 2\n")

        result = integrator.safe("services")
        assert result["passed"] is False
        assert "1 boundary violation(s)" in result["failures"]
        assert result["recommendation"]["level"] == RollbackLevel.SNAPSHOT.value
        assert (git_repo / "src" / "app.py").read_text() == "def main():\n    return 2\n"
        assert context.rollback_engine().records() == []

    def test_unverified_is_a_failure(self, git_repo, three_agent_pipeline, fake_clock):
        context = SafeguardContext(Settings(workspace=str(git_repo)), three_agent_pipeline, fake_clock)
        result = SafeIntegrator(context).safe("services")
        assert result["passed"] is False
        assert "verification unverified" in result["failures"]


class TestOtherModes:
    def test_experiment_mode(self, integrator, context):
        experiment = integrator.experiment("services")
        assert experiment.name == "services-trial"
        assert experiment.status is ExperimentStatus.CREATED
        assert context.experiment_manager().workspace_path("services-trial").is_dir()

    def test_emergency_rollback_mode(self, integrator):
        record = integrator.emergency_rollback("services")
        assert record.level is RollbackLevel.EMERGENCY
        assert "services" in record.reason

    def test_status_mode(self, integrator):
        integrator.emergency_rollback("services")
        status = integrator.status("services")
        assert status["target"] == "services"
        assert status["agent"] is None
        assert status["compliance"]["score"] == 100
        assert status["health"]["health_status"] == "HEALTHY"
        assert len(status["rollbacks"]) == 1
