"""
Compliance Monitor

Periodically scores an agent's most recent change-set against pluggable
rules (see ``rules.py``). Per agent it keeps, under ``compliance/<agent>/``:

- ``cycle-<n>.json``   ComplianceCycleResult for each evaluated cycle
- ``state.json``       running totals, so a restarted monitor resumes its score
- ``alerts/*.json``    one alert per warning or violation
- ``final-report.json`` written when the monitor stops

The monitor never touches the agent's workspace. Its only side effect on the
agent is the optional suspension hook, used when critical violations repeat.
"""

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .alerts import AlertWriter
from .git import GitRepository
from .models import ComplianceCycleResult, Severity, compliance_score, utc_now
from .rules import ChangeSet, Rule, Verdict
from .snapshots import is_excluded
from .store import KeyValueStore
from .tasks import CancellationToken, Clock, PeriodicTask

logger = logging.getLogger(__name__)

__all__ = [
    "ComplianceMonitor",
    "extract_change_set",
    "score_band",
    "BAND_COMPLIANT",
    "BAND_MODERATE",
    "BAND_NON_COMPLIANT",
]

BAND_COMPLIANT = "compliant"
BAND_MODERATE = "moderate deviation"
BAND_NON_COMPLIANT = "non-compliant"


def score_band(score: int) -> Dict[str, str]:
    """Map a score to its band and operator recommendation."""
    if score >= 90:
        return {"band": BAND_COMPLIANT, "recommendation": "Agent operating within boundaries"}
    if score >= 70:
        return {"band": BAND_MODERATE, "recommendation": "Monitor closely and review recent changes"}
    return {
        "band": BAND_NON_COMPLIANT,
        "recommendation": "Recommend suspension: immediate review or agent pause",
    }


def extract_change_set(
    git: GitRepository,
    workspace: Path,
    manifest_files: Iterable[str] = (),
    ref: str = "HEAD~1",
    exclude: Sequence[str] = (),
) -> ChangeSet:
    """Build the change-set between ``ref`` and the current working tree.

    Untracked files count as added; the agent may not have committed yet.
    """
    workspace = Path(workspace)
    changes = [(s, p) for s, p in git.diff_name_status(ref) if not is_excluded(p, exclude)]
    untracked = [p for p in git.untracked_files() if not is_excluded(p, exclude)]

    modified = sorted({p for _, p in changes} | set(untracked))
    added = sorted({p for s, p in changes if s == "A"} | set(untracked))

    manifest_changes: Dict[str, List[str]] = {}
    for manifest in manifest_files:
        if manifest not in modified:
            continue
        if manifest in untracked:
            text = (workspace / manifest).read_text(encoding="utf-8", errors="replace")
            lines = ["+" + line for line in text.splitlines()]
        else:
            lines = [
                line for line in git.diff_text(ref, [manifest]).splitlines()
                if line[:1] in ("+", "-") and not line.startswith(("+++", "---"))
            ]
        if lines:
            manifest_changes[manifest] = lines

    def read_file(path: str) -> Optional[str]:
        try:
            return (workspace / path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

    return ChangeSet(
        modified_files=modified,
        added_files=added,
        summary=git.last_commit_message(),
        manifest_changes=manifest_changes,
        read_file=read_file,
    )


def fingerprint(change: ChangeSet) -> str:
    """Stable digest of a change-set, used to avoid scoring it twice."""
    content = json.dumps(
        {
            "modified": change.modified_files,
            "added": change.added_files,
            "summary": change.summary,
            "manifests": change.manifest_changes,
        },
        sort_keys=True,
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ComplianceMonitor:
    """
    Scores one agent's changes on a fixed interval.

    Args:
        store: Shared store for results, state and alerts
        agent: Agent name
        change_provider: Returns the agent's current change-set
        rules: Rules to evaluate
        repeated_critical_threshold: Consecutive cycles with a critical
            violation before the suspension hook fires
        auto_pause: Whether the suspension hook may be called at all
        suspender: ``suspender(agent, reason)``, typically BoundaryMonitor.suspend
    """

    def __init__(
        self,
        store: KeyValueStore,
        agent: str,
        change_provider: Callable[[], ChangeSet],
        rules: Sequence[Rule],
        repeated_critical_threshold: int = 2,
        auto_pause: bool = False,
        suspender: Optional[Callable[[str, str], Any]] = None,
    ):
        self.store = store
        self.agent = agent
        self.change_provider = change_provider
        self.rules = list(rules)
        self.repeated_critical_threshold = repeated_critical_threshold
        self.auto_pause = auto_pause
        self.suspender = suspender
        self.prefix = f"compliance/{agent}"
        self.alerts = AlertWriter(store, self.prefix)

    @property
    def state_key(self) -> str:
        return f"{self.prefix}/state.json"

    def load_state(self) -> Dict[str, Any]:
        state = self.store.get_json(self.state_key) or {}
        return {
            "cycle": int(state.get("cycle", 0)),
            "evaluated_cycles": int(state.get("evaluated_cycles", 0)),
            "total_violations": int(state.get("total_violations", 0)),
            "total_warnings": int(state.get("total_warnings", 0)),
            "critical_streak": int(state.get("critical_streak", 0)),
            "last_fingerprint": state.get("last_fingerprint"),
            "suspension_requested": bool(state.get("suspension_requested", False)),
        }

    def evaluate(self, change: ChangeSet) -> List[Verdict]:
        """Run every rule; each rule sees the same change-set independently."""
        return [rule(change) for rule in self.rules]

    def run_cycle(self) -> Optional[ComplianceCycleResult]:
        """
        Evaluate the current change-set once.

        Returns:
            The cycle result, or None when the change-set was already scored.
        """
        change = self.change_provider()
        digest = fingerprint(change)

        state = self.load_state()
        cycle = state["cycle"] + 1
        if digest == state["last_fingerprint"] or change.is_empty:
            self.store.update_json(self.state_key, lambda s: s.update({"cycle": cycle}))
            logger.debug(f"{self.agent} cycle {cycle}: no new changes")
            return None

        verdicts = self.evaluate(change)
        result = ComplianceCycleResult(agent=self.agent, cycle=cycle)
        has_critical = False
        for verdict in verdicts:
            if verdict.is_violation:
                result.violations += 1
                has_critical = has_critical or verdict.severity is Severity.CRITICAL
            elif verdict.is_warning:
                result.warnings += 1
            else:
                continue
            result.findings.append(verdict.to_dict())
            self.alerts.write(
                verdict.kind.value, verdict.severity, cycle, verdict.issue,
                verdict.details, agent=self.agent,
            )

        self.store.put_json(f"{self.prefix}/cycle-{cycle}.json", result.to_dict())

        def _fold(s: Dict[str, Any]) -> None:
            s["cycle"] = cycle
            s["evaluated_cycles"] = int(s.get("evaluated_cycles", 0)) + 1
            s["total_violations"] = int(s.get("total_violations", 0)) + result.violations
            s["total_warnings"] = int(s.get("total_warnings", 0)) + result.warnings
            s["critical_streak"] = int(s.get("critical_streak", 0)) + 1 if has_critical else 0
            s["last_fingerprint"] = digest
            s["score"] = compliance_score(s["total_violations"], s["total_warnings"])
            s["updated"] = utc_now().isoformat()

        state = self.store.update_json(self.state_key, _fold)
        logger.info(
            f"{self.agent} cycle {cycle}: {result.violations} violation(s), "
            f"{result.warnings} warning(s), running score {state['score']}"
        )

        if has_critical:
            self._maybe_suspend(state)
        return result

    def _maybe_suspend(self, state: Dict[str, Any]) -> None:
        if state["critical_streak"] < self.repeated_critical_threshold:
            return
        if state.get("suspension_requested"):
            return
        reason = (
            f"{state['critical_streak']} consecutive cycles with critical violations"
        )
        if not self.auto_pause or self.suspender is None:
            logger.error(f"✗ {self.agent}: {reason}; suspension recommended (auto-pause off)")
            return
        logger.error(f"✗ {self.agent}: {reason}; requesting suspension")
        self.suspender(self.agent, reason)
        self.store.update_json(self.state_key, lambda s: s.update({"suspension_requested": True}))

    def score(self) -> int:
        state = self.load_state()
        return compliance_score(state["total_violations"], state["total_warnings"])

    def report(self) -> Dict[str, Any]:
        state = self.load_state()
        score = compliance_score(state["total_violations"], state["total_warnings"])
        return {
            "agent": self.agent,
            "cycles": state["cycle"],
            "evaluated_cycles": state["evaluated_cycles"],
            "violations": state["total_violations"],
            "warnings": state["total_warnings"],
            "score": score,
            **score_band(score),
            "timestamp": utc_now().isoformat(),
        }

    def cycle_results(self) -> List[ComplianceCycleResult]:
        results = []
        for key in self.store.list(self.prefix):
            name = key.rsplit("/", 1)[-1]
            if name.startswith("cycle-") and name.endswith(".json"):
                results.append(ComplianceCycleResult.from_dict(self.store.get_json(key)))
        return sorted(results, key=lambda r: r.cycle)

    def write_final_report(self) -> Dict[str, Any]:
        report = self.report()
        self.store.put_json(f"{self.prefix}/final-report.json", report)
        logger.info(f"Final compliance report for {self.agent}: {report['score']} ({report['band']})")
        return report

    def run(self, interval: float = 15.0, clock: Optional[Clock] = None,
            token: Optional[CancellationToken] = None, max_cycles: Optional[int] = None) -> int:
        task = PeriodicTask(
            name=f"compliance-monitor[{self.agent}]",
            interval=interval,
            action=lambda cycle: self.run_cycle(),
            clock=clock,
            token=token,
            on_stop=lambda cycles: self.write_final_report(),
        )
        return task.run(max_cycles=max_cycles)
