"""
Build/test verification.

Two users:

- RecoveryVerifier re-runs the build and test commands after a rollback and
  reports pass/fail. A check that was not configured is reported as skipped;
  success is never inferred from the absence of a failure.
- CommandTestRunner is the "run the agent's test command, return pass/fail
  counts" interface the bounded-retry runner drives.

Every command runs with an explicit timeout. A timeout is reported as exit
code 124, the same convention as coreutils ``timeout``.
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .store import KeyValueStore

logger = logging.getLogger(__name__)

__all__ = [
    "TIMEOUT_RETURNCODE",
    "run_command",
    "CheckResult",
    "VerificationResult",
    "RecoveryVerifier",
    "TestOutcome",
    "parse_test_counts",
    "CommandTestRunner",
]

TIMEOUT_RETURNCODE = 124


def run_command(cmd: str, cwd: Path, timeout: Optional[float] = None,
                input_text: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run a shell command in ``cwd``; a timeout becomes returncode 124.

    Args:
        cmd: Shell command line (project-configured, e.g. ``npm test``)
        cwd: Working directory
        timeout: Seconds before the command is killed
        input_text: Optional text fed to stdin

    Returns:
        CompletedProcess with text stdout/stderr
    """
    try:
        return subprocess.run(
            cmd,
            shell=True,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
        )
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        return subprocess.CompletedProcess(
            args=cmd,
            returncode=TIMEOUT_RETURNCODE,
            stdout=stdout,
            stderr=f"Command timed out after {timeout} seconds",
        )


@dataclass
class CheckResult:
    """Result of one verification check."""

    passed: bool
    name: str
    command: Optional[str] = None
    skipped: bool = False
    returncode: Optional[int] = None
    issues: List[str] = field(default_factory=list)
    output_tail: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "name": self.name,
            "command": self.command,
            "skipped": self.skipped,
            "returncode": self.returncode,
            "issues": self.issues,
            "output_tail": self.output_tail,
            "timestamp": self.timestamp,
        }


@dataclass
class VerificationResult:
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """True only if at least one check ran and every check that ran passed."""
        ran = [c for c in self.checks if not c.skipped]
        return bool(ran) and all(c.passed for c in ran)

    @property
    def status(self) -> str:
        if not any(not c.skipped for c in self.checks):
            return "unverified"
        return "passed" if self.passed else "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "status": self.status,
            "checks": [c.to_dict() for c in self.checks],
        }


class RecoveryVerifier:
    """Re-runs build and test validation in a workspace."""

    def __init__(self, workspace: Path, build_command: Optional[str] = None,
                 test_command: Optional[str] = None, timeout: float = 600,
                 store: Optional[KeyValueStore] = None):
        self.workspace = Path(workspace).resolve()
        self.build_command = build_command
        self.test_command = test_command
        self.timeout = timeout
        self.store = store

    def _check(self, name: str, command: Optional[str]) -> CheckResult:
        if not command:
            logger.warning(f"⚠ {name} check skipped: no command configured")
            return CheckResult(passed=False, name=name, skipped=True,
                               issues=["no command configured"])

        result = run_command(command, self.workspace, timeout=self.timeout)
        output = (result.stdout or "") + (result.stderr or "")
        check = CheckResult(
            passed=result.returncode == 0,
            name=name,
            command=command,
            returncode=result.returncode,
            output_tail="\n".join(output.splitlines()[-20:]),
        )
        if result.returncode == TIMEOUT_RETURNCODE:
            check.issues.append(f"timed out after {self.timeout}s")
        elif result.returncode != 0:
            check.issues.append(f"exited with {result.returncode}")

        if check.passed:
            logger.info(f"✓ {name} passed")
        else:
            logger.error(f"✗ {name} FAILED: {', '.join(check.issues)}")
        return check

    def verify(self) -> VerificationResult:
        result = VerificationResult(checks=[
            self._check("build", self.build_command),
            self._check("tests", self.test_command),
        ])
        if self.store is not None:
            self.store.put_json("rollback/last-verification.json", result.to_dict())
        return result


# ==============================================================================
# Test command interface
# ==============================================================================

@dataclass
class TestOutcome:
    """Pass/fail counts from one test run."""

    __test__ = False  # not a pytest test class

    passed: int = 0
    failed: int = 0
    total: int = 0
    returncode: int = 0
    timed_out: bool = False
    output: str = ""

    @property
    def pass_rate(self) -> float:
        if self.total <= 0:
            return 0.0
        return self.passed * 100.0 / self.total


_JEST_TESTS = re.compile(r"^Tests:\s+(.*)$", re.MULTILINE)
_COUNT = re.compile(r"(\d+)\s+(passed|failed|total|skipped|errors?)")


def parse_test_counts(output: str) -> Dict[str, int]:
    """
    Extract pass/fail/total counts from jest or pytest summary output.

    jest:   ``Tests:       2 failed, 40 passed, 42 total``
    pytest: ``==== 3 failed, 40 passed in 1.2s ====``
    """
    counts = {"passed": 0, "failed": 0, "total": 0}

    jest = _JEST_TESTS.findall(output)
    lines = [jest[-1]] if jest else [
        line for line in output.splitlines()
        if re.search(r"\d+\s+(passed|failed)", line)
    ][-1:]

    for line in lines:
        for number, label in _COUNT.findall(line):
            if label == "passed":
                counts["passed"] = int(number)
            elif label == "failed" or label.startswith("error"):
                counts["failed"] += int(number)
            elif label == "total":
                counts["total"] = int(number)

    if counts["total"] == 0:
        counts["total"] = counts["passed"] + counts["failed"]
    return counts


class CommandTestRunner:
    """Runs an agent's test command with a timeout and parses the counts."""

    __test__ = False  # not a pytest test class

    def __init__(self, command: str, workspace: Path, timeout: float = 600):
        self.command = command
        self.workspace = Path(workspace)
        self.timeout = timeout

    def run(self) -> TestOutcome:
        result = run_command(self.command, self.workspace, timeout=self.timeout)
        output = (result.stdout or "") + "\n" + (result.stderr or "")
        counts = parse_test_counts(output)
        outcome = TestOutcome(
            passed=counts["passed"],
            failed=counts["failed"],
            total=counts["total"],
            returncode=result.returncode,
            timed_out=result.returncode == TIMEOUT_RETURNCODE,
            output=output,
        )
        logger.info(
            f"Tests: {outcome.passed}/{outcome.total} passing"
            + (" (timed out)" if outcome.timed_out else "")
        )
        return outcome


