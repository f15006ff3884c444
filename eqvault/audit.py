"""
EQVault - Privacy Audit Log
Records every consent and privacy-gate decision so they stay observable.

Writes to a local JSON file (~/.eqvault/audit.json). Entries carry
counts and reasons only, never metrics, insights or pattern text.
"""

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .config import get_eqvault_dir

logger = structlog.get_logger(__name__)


def get_audit_path() -> Path:
    """Get path to audit log file."""
    return get_eqvault_dir() / "audit.json"


# Event vocabulary
CONSENT_REFUSED = "consent_refused"
SYNC_COMPLETED = "sync_completed"
SYNC_DEFERRED = "sync_deferred"
SYNC_FAILED = "sync_failed"
SYNC_CANCELLED = "sync_cancelled"
AGGREGATION_REFUSED = "aggregation_refused"
VALUE_REFUSED = "value_refused"
RESEARCH_JOINED = "research_joined"
RESEARCH_WITHDRAWN = "research_withdrawn"

REFUSAL_EVENTS = (CONSENT_REFUSED, AGGREGATION_REFUSED, VALUE_REFUSED)


@dataclass
class AuditEntry:
    """A single audit log entry."""
    event: str
    timestamp: str
    component: str  # 'sync', 'aggregator', 'value'
    outcome: str    # 'refused', 'completed', 'deferred', 'failed', 'cancelled', 'joined', 'withdrawn'
    detail: Optional[str] = None
    count: Optional[int] = None


class PrivacyAuditLog:
    """
    Local, append-only record of privacy decisions.

    Use cases:
    - Show the user exactly when data left the device, and how much
    - Prove that refusals happened instead of silent fallbacks
    """

    # Maximum entries to keep in the log
    MAX_ENTRIES = 1000

    def __init__(self, audit_path: Optional[Path] = None):
        self.audit_path = audit_path or get_audit_path()
        self._load_entries()

    def _load_entries(self) -> None:
        """Load entries from disk."""
        if self.audit_path.exists():
            try:
                with open(self.audit_path, "r") as f:
                    data = json.load(f)
                    self.entries: List[Dict[str, Any]] = data.get("entries", [])
            except (json.JSONDecodeError, KeyError, AttributeError):
                logger.warning("audit_log_unreadable", path=str(self.audit_path))
                self.entries = []
        else:
            self.entries = []

    def _save_entries(self) -> None:
        """Save entries to disk."""
        # Trim to MAX_ENTRIES (keep most recent)
        if len(self.entries) > self.MAX_ENTRIES:
            self.entries = self.entries[-self.MAX_ENTRIES:]

        data = {
            "entries": self.entries,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "total_count": len(self.entries),
        }

        with open(self.audit_path, "w") as f:
            json.dump(data, f, indent=2)

    def log_event(
        self,
        event: str,
        component: str,
        outcome: str,
        detail: Optional[str] = None,
        count: Optional[int] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            event=event,
            timestamp=datetime.now(timezone.utc).isoformat(),
            component=component,
            outcome=outcome,
            detail=detail,
            count=count,
        )
        self.entries.append(asdict(entry))
        self._save_entries()
        return entry

    def get_recent_events(self, count: int = 10) -> List[Dict[str, Any]]:
        """Get the N most recent events."""
        return self.entries[-count:]

    def get_events(self, event: str) -> List[Dict[str, Any]]:
        return [e for e in self.entries if e["event"] == event]

    def get_stats(self) -> Dict[str, Any]:
        """Get audit statistics."""
        if not self.entries:
            return {
                "total_events": 0,
                "refusals": 0,
                "syncs_completed": 0,
                "items_synced": 0,
            }

        completed = self.get_events(SYNC_COMPLETED)
        return {
            "total_events": len(self.entries),
            "refusals": sum(1 for e in self.entries if e["event"] in REFUSAL_EVENTS),
            "syncs_completed": len(completed),
            "items_synced": sum(e.get("count") or 0 for e in completed),
            "oldest_entry": self.entries[0]["timestamp"],
            "newest_entry": self.entries[-1]["timestamp"],
        }


# Singleton instance
_audit_log: Optional[PrivacyAuditLog] = None


def get_audit_log() -> PrivacyAuditLog:
    """Get the singleton PrivacyAuditLog instance."""
    global _audit_log
    if _audit_log is None:
        _audit_log = PrivacyAuditLog()
    return _audit_log
