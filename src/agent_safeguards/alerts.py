"""Alert artifacts: one JSON document per detected violation or warning."""

import json
import logging
from typing import Any, Dict, List, Optional

from .models import Severity, utc_now
from .store import KeyValueStore

logger = logging.getLogger(__name__)

__all__ = ["AlertWriter"]


class AlertWriter:
    """Writes alert artifacts under ``<prefix>/alerts/``.

    Alerts are never overwritten; a second alert for the same issue in the
    same cycle gets a numeric suffix.
    """

    def __init__(self, store: KeyValueStore, prefix: str):
        self.store = store
        self.prefix = prefix.rstrip("/")

    def write(
        self,
        alert_type: str,
        severity: Severity,
        cycle: int,
        issue: str,
        details: Optional[Dict[str, Any]] = None,
        agent: Optional[str] = None,
    ) -> str:
        """Write one alert and return its key."""
        alert = {
            "type": alert_type,
            "severity": severity.value,
            "cycle": cycle,
            "issue": issue,
            "details": details or {},
            "timestamp": utc_now().isoformat(),
        }
        if agent:
            alert["agent"] = agent
        payload = json.dumps(alert, indent=2, sort_keys=True).encode("utf-8")

        base = f"{self.prefix}/alerts/{issue}-cycle-{cycle}"
        key = f"{base}.json"
        suffix = 1
        while not self.store.create_exclusive(key, payload):
            suffix += 1
            key = f"{base}-{suffix}.json"

        log = logger.error if severity in (Severity.HIGH, Severity.CRITICAL) else logger.warning
        log(f"⚠ {alert_type.upper()} [{severity.value}] {issue} (cycle {cycle})")
        return key

    def list_alerts(self) -> List[Dict[str, Any]]:
        alerts = []
        for key in self.store.list(f"{self.prefix}/alerts"):
            data = self.store.get_json(key)
            if data is not None:
                alerts.append(data)
        return sorted(alerts, key=lambda a: (a.get("cycle", 0), a.get("timestamp", "")))
