"""
safe-integrate: guarded integration workflows for one target agent.

    safe                 baseline, one boundary check, one compliance cycle, verify;
                         failure recommends a rollback plan but never applies it
    experiment           set up ``<target>-trial`` in the experiment sandbox
    emergency-rollback   emergency rollback on behalf of the target
    status               dashboard, compliance, violations and recent rollbacks
"""

import logging
from typing import Any, Dict

from .context import SafeguardContext
from .models import Experiment, RollbackRecord

logger = logging.getLogger(__name__)

__all__ = ["SafeIntegrator", "MODES"]

MODES = ("safe", "experiment", "emergency-rollback", "status")


class SafeIntegrator:
    def __init__(self, context: SafeguardContext):
        self.context = context

    def _scope(self, target: str):
        agent = self.context.agent(target)
        return agent.scope if agent else ()

    def safe(self, target: str) -> Dict[str, Any]:
        """Run every check once. ``passed`` is False if any check failed."""
        boundary = self.context.boundary_monitor(target)
        boundary.ensure_baseline()
        boundary_report = boundary.check()

        compliance = self.context.compliance_monitor(target)
        cycle = compliance.run_cycle()
        compliance_report = compliance.report()

        engine = self.context.rollback_engine()
        verification = engine.verify()

        failures = []
        if boundary_report.violations:
            failures.append(f"{len(boundary_report.violations)} boundary violation(s)")
        if cycle is not None and cycle.violations:
            failures.append(f"{cycle.violations} compliance violation(s)")
        if not verification.passed:
            failures.append(f"verification {verification.status}")

        result: Dict[str, Any] = {
            "target": target,
            "passed": not failures,
            "failures": failures,
            "boundary": boundary_report.to_dict(),
            "compliance": {
                "cycle": cycle.to_dict() if cycle else None,
                "report": compliance_report,
            },
            "verification": verification.to_dict(),
            "recommendation": None,
        }
        if failures:
            plan = engine.select_strategy(self._scope(target))
            result["recommendation"] = plan.to_dict()
            logger.error(
                f"✗ {target} is not safe to integrate: {'; '.join(failures)}. "
                f"Recommended: rollback {plan.level.value} ({plan.rationale})"
            )
        else:
            logger.info(f"✓ {target} passed all integration checks")
        return result

    def experiment(self, target: str) -> Experiment:
        return self.context.experiment_manager().setup(f"{target}-trial", target)

    def emergency_rollback(self, target: str) -> RollbackRecord:
        return self.context.rollback_engine().rollback_emergency(
            reason=f"safe-integrate emergency rollback for {target}"
        )

    def status(self, target: str) -> Dict[str, Any]:
        monitor = self.context.pipeline_monitor()
        engine = self.context.rollback_engine()
        violations = self.context.boundary_monitor(target).violations()
        return {
            "target": target,
            "dashboard": monitor.get_dashboard(),
            "health": monitor.get_system_health(),
            "agent": monitor.get_agent_status(target),
            "compliance": self.context.compliance_monitor(target).report(),
            "boundary_violations": [v for v in violations if v.get("agent") in (target, None)],
            "rollbacks": [r.to_dict() for r in engine.records()[-5:]],
        }
