"""Compliance rules.

Each rule is an independent predicate ``Rule: ChangeSet -> Verdict``. The
monitor runs a list of them; nothing in the monitor knows what any individual
rule looks for, so rules can be tested alone and swapped per project.

Default rules and what they flag:

=========================  =========  ===================================
Rule                       Kind       Trigger
=========================  =========  ===================================
ModificationCountRule      warning    more changed files than a threshold
ChangeSummaryRule          warning    refactor/optimize vocabulary in summary
TestScopeRule              violation  new tests outside the declared scope
BusinessLogicRule          violation  business keyword density in new code
ManifestRule               warning    manifest edits outside an allow-list
=========================  =========  ===================================
"""

import fnmatch
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import Agent, Severity

__all__ = [
    "VerdictKind",
    "Verdict",
    "ChangeSet",
    "Rule",
    "ModificationCountRule",
    "ChangeSummaryRule",
    "TestScopeRule",
    "BusinessLogicRule",
    "ManifestRule",
    "default_rules",
    "DEFAULT_TEST_PATTERNS",
]

DEFAULT_TEST_PATTERNS = ("*.test.*", "*.spec.*", "test_*.py", "*_test.py")
SOURCE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".py")


class VerdictKind(Enum):
    PASS = "pass"
    WARNING = "warning"
    VIOLATION = "violation"


@dataclass
class Verdict:
    """Outcome of one rule against one change-set."""

    rule: str
    kind: VerdictKind = VerdictKind.PASS
    severity: Severity = Severity.LOW
    issue: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_violation(self) -> bool:
        return self.kind is VerdictKind.VIOLATION

    @property
    def is_warning(self) -> bool:
        return self.kind is VerdictKind.WARNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "issue": self.issue,
            "details": self.details,
        }


@dataclass
class ChangeSet:
    """The most recent changes an agent produced.

    Attributes:
        modified_files: Every path changed since the reference revision.
        added_files: Paths that did not exist at the reference revision.
        summary: Change summary text (the last commit message).
        manifest_changes: Manifest path -> changed diff lines (with +/- prefix).
        read_file: Returns the current text of a path, None if unreadable.
    """

    modified_files: List[str] = field(default_factory=list)
    added_files: List[str] = field(default_factory=list)
    summary: str = ""
    manifest_changes: Dict[str, List[str]] = field(default_factory=dict)
    read_file: Callable[[str], Optional[str]] = field(default=lambda path: None, repr=False)

    @property
    def is_empty(self) -> bool:
        return not (self.modified_files or self.added_files or self.manifest_changes)


def matches_any(path: str, patterns: Sequence[str]) -> bool:
    """Match a path or its basename against glob patterns."""
    name = PurePosixPath(path).name
    return any(fnmatch.fnmatch(path, p) or fnmatch.fnmatch(name, p) for p in patterns)


class Rule(ABC):
    """A single compliance heuristic."""

    name = "rule"

    @abstractmethod
    def evaluate(self, change: ChangeSet) -> Verdict:
        pass

    def __call__(self, change: ChangeSet) -> Verdict:
        return self.evaluate(change)

    def passed(self) -> Verdict:
        return Verdict(rule=self.name)


class ModificationCountRule(Rule):
    name = "modification_count"

    def __init__(self, threshold: int = 50):
        self.threshold = threshold

    def evaluate(self, change: ChangeSet) -> Verdict:
        count = len(change.modified_files)
        if count <= self.threshold:
            return self.passed()
        return Verdict(
            rule=self.name,
            kind=VerdictKind.WARNING,
            severity=Severity.MEDIUM,
            issue="high_modification_rate",
            details={"files_changed": count, "threshold": self.threshold},
        )


class ChangeSummaryRule(Rule):
    """Refactor/optimization language is suspicious unless it stays on-task."""

    name = "change_summary"

    def __init__(self, suspicious: str = r"\b(fix|refactor|improve|enhance|optimi[sz]e)",
                 allowed: str = r"(integrate|integration|path|import)"):
        self.suspicious = re.compile(suspicious, re.IGNORECASE)
        self.allowed = re.compile(allowed, re.IGNORECASE)

    def evaluate(self, change: ChangeSet) -> Verdict:
        summary = change.summary.strip()
        if not summary or not self.suspicious.search(summary) or self.allowed.search(summary):
            return self.passed()
        return Verdict(
            rule=self.name,
            kind=VerdictKind.WARNING,
            severity=Severity.LOW,
            issue="suspicious_commit_message",
            details={"message": summary.splitlines()[0][:200]},
        )


class TestScopeRule(Rule):
    """New test artifacts must fall inside the agent's declared test scope."""

    name = "test_scope"
    __test__ = False  # not a pytest test class

    def __init__(self, allowed_scope: Sequence[str] = ("*integration*",),
                 test_patterns: Sequence[str] = DEFAULT_TEST_PATTERNS):
        self.allowed_scope = tuple(allowed_scope)
        self.test_patterns = tuple(test_patterns)

    def evaluate(self, change: ChangeSet) -> Verdict:
        offending = [
            path for path in change.added_files
            if matches_any(path, self.test_patterns)
            and not any(fnmatch.fnmatch(path, p) for p in self.allowed_scope)
        ]
        if not offending:
            return self.passed()
        return Verdict(
            rule=self.name,
            kind=VerdictKind.VIOLATION,
            severity=Severity.HIGH,
            issue="unauthorized_test_creation",
            details={"files": offending, "allowed_scope": list(self.allowed_scope)},
        )


class BusinessLogicRule(Rule):
    """Keyword density of business-logic terms in new non-test source files."""

    name = "business_logic"

    def __init__(self, threshold: int = 5,
                 keywords: str = r"calculate|process|validate|transform|business|logic",
                 test_patterns: Sequence[str] = DEFAULT_TEST_PATTERNS,
                 extensions: Sequence[str] = SOURCE_EXTENSIONS):
        self.threshold = threshold
        self.keywords = re.compile(keywords, re.IGNORECASE)
        self.test_patterns = tuple(test_patterns)
        self.extensions = tuple(extensions)

    def keyword_lines(self, text: str) -> int:
        return sum(1 for line in text.splitlines() if self.keywords.search(line))

    def evaluate(self, change: ChangeSet) -> Verdict:
        dense = {}
        for path in change.added_files:
            if not path.endswith(self.extensions) or matches_any(path, self.test_patterns):
                continue
            text = change.read_file(path)
            if text is None:
                continue
            count = self.keyword_lines(text)
            if count > self.threshold:
                dense[path] = count
        if not dense:
            return self.passed()
        return Verdict(
            rule=self.name,
            kind=VerdictKind.VIOLATION,
            severity=Severity.CRITICAL,
            issue="business_logic_implementation",
            details={"files": dense, "threshold": self.threshold},
        )


class ManifestRule(Rule):
    """Dependency-manifest edits must be integration or test related."""

    name = "manifest"

    def __init__(self, allowed: str = r"integration|test"):
        self.allowed = re.compile(allowed, re.IGNORECASE)

    def evaluate(self, change: ChangeSet) -> Verdict:
        offending = {}
        for manifest, lines in change.manifest_changes.items():
            bad = [line for line in lines if line.strip("+- ") and not self.allowed.search(line)]
            if bad:
                offending[manifest] = bad[:20]
        if not offending:
            return self.passed()
        return Verdict(
            rule=self.name,
            kind=VerdictKind.WARNING,
            severity=Severity.MEDIUM,
            issue="manifest_modification",
            details={"changes": offending},
        )


def default_rules(
    agent: Optional[Agent] = None,
    modification_threshold: int = 50,
    business_keyword_threshold: int = 5,
) -> List[Rule]:
    """The standard rule set, scoped to ``agent`` when given."""
    test_scope = agent.test_scope if agent is not None else ("*integration*",)
    return [
        ModificationCountRule(modification_threshold),
        ChangeSummaryRule(),
        TestScopeRule(allowed_scope=test_scope),
        BusinessLogicRule(threshold=business_keyword_threshold),
        ManifestRule(),
    ]
