"""
Status & Handoff Coordination

The synchronization primitive everything else builds on. Agents and monitors
never talk to each other directly; they read and write small artifacts in the
shared store:

- ``status/<agent>.json``           StatusRecord, single writer (the agent)
- ``handoffs/<name>-complete.md``   HandoffMarker, write-once, presence is the signal
- ``blockers/<agent>.md``           Blocker, CRITICAL keyword triggers escalation
- ``escalations/<agent>.txt``       escalation notice for a critical blocker
- ``restart_counters/<agent>.json`` bounded-retry counter next to the status

Status writes go through the store's atomic ``put``, so a reader polling
during a write sees either the previous or the new record, never a mix.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .exceptions import RecordNotFoundError, StoreError
from .models import Blocker, BlockerSeverity, StatusRecord, utc_now
from .store import KeyValueStore

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_FRESHNESS_WINDOW",
    "StatusCoordinator",
    "status_key",
    "handoff_key",
    "blocker_key",
]

DEFAULT_FRESHNESS_WINDOW = 300.0


def status_key(agent: str) -> str:
    return f"status/{agent}.json"


def handoff_key(name: str) -> str:
    return f"handoffs/{name}-complete.md"


def blocker_key(agent: str) -> str:
    return f"blockers/{agent}.md"


def escalation_key(agent: str) -> str:
    return f"escalations/{agent}.txt"


def restart_counter_key(agent: str) -> str:
    return f"restart_counters/{agent}.json"


class StatusCoordinator:
    """
    Read/write access to agent status, handoffs and blockers.

    Stateless apart from the store, so any number of coordinators in any
    number of processes can share one store.
    """

    def __init__(self, store: KeyValueStore, freshness_window: float = DEFAULT_FRESHNESS_WINDOW):
        self.store = store
        self.freshness_window = freshness_window

    # ------------------------------------------------------------------
    # Status records
    # ------------------------------------------------------------------

    def write_status(self, agent: str, record: StatusRecord) -> None:
        """Atomically replace the agent's status record."""
        self.store.put_json(status_key(agent), record.to_dict())
        logger.debug(
            f"Status for {agent}: {record.phase} "
            f"{record.tests_passing}/{record.tests_total} {record.current_task}"
        )

    def read_status(self, agent: str) -> StatusRecord:
        """
        Read the agent's status record.

        Raises:
            RecordNotFoundError: If the agent never wrote a status.
            StoreError: If the record is unreadable.
        """
        data = self.store.get_json(status_key(agent))
        if data is None:
            raise RecordNotFoundError(
                f"No status for agent {agent}", record_type="status", record_id=agent
            )
        try:
            return StatusRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Malformed status for {agent}: {e}", key=status_key(agent))

    def find_status(self, agent: str) -> Optional[StatusRecord]:
        """Like read_status but returns None when no record exists."""
        try:
            return self.read_status(agent)
        except RecordNotFoundError:
            return None

    def list_statuses(self) -> Dict[str, StatusRecord]:
        statuses = {}
        for key in self.store.list("status"):
            if not key.endswith(".json"):
                continue
            agent = key[len("status/"):-len(".json")]
            statuses[agent] = self.read_status(agent)
        return statuses

    def is_stale(self, record: StatusRecord, now: Optional[datetime] = None) -> bool:
        """True when the record is older than the freshness window."""
        now = now or utc_now()
        return now - record.last_update > timedelta(seconds=self.freshness_window)

    # ------------------------------------------------------------------
    # Handoff markers
    # ------------------------------------------------------------------

    def mark_handoff(self, name: str, summary: str = "") -> bool:
        """
        Create the handoff marker for ``name`` exactly once.

        Returns:
            True if this call created the marker, False if it already existed.
        """
        text = f"# {name} complete\n\nCompleted: {utc_now().isoformat()}\n\n{summary}\n"
        created = self.store.create_exclusive(handoff_key(name), text.encode("utf-8"))
        if created:
            logger.info(f"✓ Handoff recorded for {name}")
        else:
            logger.debug(f"Handoff for {name} already present")
        return created

    def has_handoff(self, name: str) -> bool:
        return self.store.exists(handoff_key(name))

    def read_handoff(self, name: str) -> Optional[str]:
        """Advisory summary text; never used for control decisions."""
        return self.store.get_text(handoff_key(name))

    def list_handoffs(self) -> List[str]:
        suffix = "-complete.md"
        return [
            key[len("handoffs/"):-len(suffix)]
            for key in self.store.list("handoffs")
            if key.endswith(suffix)
        ]

    # ------------------------------------------------------------------
    # Blockers and escalation
    # ------------------------------------------------------------------

    def report_blocker(self, agent: str, reason: str, critical: bool = False) -> Blocker:
        blocker = Blocker(
            agent=agent,
            reason=reason,
            severity=BlockerSeverity.CRITICAL if critical else BlockerSeverity.NORMAL,
        )
        self.store.put_text(blocker_key(agent), blocker.to_markdown())
        log = logger.error if critical else logger.warning
        log(f"⚠ Blocker reported by {agent}: {reason}")
        return blocker

    def clear_blocker(self, agent: str) -> bool:
        self.store.delete(escalation_key(agent))
        return self.store.delete(blocker_key(agent))

    def list_blockers(self) -> List[Blocker]:
        blockers = []
        for key in self.store.list("blockers"):
            if not key.endswith(".md"):
                continue
            agent = key[len("blockers/"):-len(".md")]
            text = self.store.get_text(key) or ""
            blockers.append(Blocker.from_markdown(agent, text))
        return blockers

    def escalate_critical_blockers(self) -> List[str]:
        """
        Write one escalation notice per critical blocker.

        Returns:
            Agents escalated by this call (already escalated ones are skipped).
        """
        escalated = []
        for blocker in self.list_blockers():
            if not blocker.is_critical:
                continue
            notice = (
                f"CRITICAL blocker escalated at {utc_now().isoformat()}\n"
                f"Agent: {blocker.agent}\n\n{blocker.reason}\n"
            )
            if self.store.create_exclusive(escalation_key(blocker.agent), notice.encode("utf-8")):
                logger.error(f"✗ Escalating critical blocker from {blocker.agent}")
                escalated.append(blocker.agent)
        return escalated

    # ------------------------------------------------------------------
    # Restart counters
    # ------------------------------------------------------------------

    def read_restart_counter(self, agent: str) -> Dict[str, Any]:
        data = self.store.get_json(restart_counter_key(agent)) or {}
        return {
            "count": int(data.get("count", 0)),
            "state": data.get("state", "pending"),
            "updated": data.get("updated"),
        }

    def write_restart_counter(self, agent: str, count: int, state: str) -> None:
        self.store.put_json(
            restart_counter_key(agent),
            {"count": count, "state": state, "updated": utc_now().isoformat()},
        )

    def reset_restart_counter(self, agent: str) -> None:
        self.store.delete(restart_counter_key(agent))
        logger.info(f"Restart counter reset for {agent}")

