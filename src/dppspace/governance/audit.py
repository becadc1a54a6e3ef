"""
Audit Log

Tamper-evident, hash-chained record of every negotiation transition and
every enforcement decision. Any modification of a recorded entry breaks
the chain and is detected by ``verify_integrity``.
"""

from datetime import datetime
from typing import Any, ClassVar, Optional
import hashlib
import json
import uuid

from pydantic import BaseModel, Field

from dppspace.contracts.models import Clock, utcnow

EVENT_TRANSITION = "negotiation_transition"
EVENT_ACCESS_DECISION = "access_decision"
EVENT_POLICY_CONFLICT = "policy_conflict"


class AuditEntry(BaseModel):
    """
    Single audit log entry.

    Every entry is:
    - Timestamped
    - Keyed by negotiation and/or agreement id
    - Chained to previous entry via hash
    """

    entry_id: str = Field(default_factory=lambda: f"audit_{uuid.uuid4().hex[:16]}")
    timestamp: datetime = Field(default_factory=utcnow)

    event_type: str
    party: str

    negotiation_id: Optional[str] = None
    agreement_id: Optional[str] = None

    # Transitions
    from_state: Optional[str] = None
    to_state: Optional[str] = None

    # Enforcement
    decision: Optional[str] = None

    reason: str = ""
    data: dict[str, Any] = Field(default_factory=dict)

    # Chaining
    previous_hash: str = Field(default="")
    entry_hash: str = Field(default="")

    def compute_hash(self) -> str:
        """Compute the SHA-256 hash of this entry's canonical fields."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "party": self.party,
            "negotiation_id": self.negotiation_id,
            "agreement_id": self.agreement_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "decision": self.decision,
            "reason": self.reason,
            "data": self.data,
            "previous_hash": self.previous_hash,
        }
        canonical = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    def verify_hash(self) -> bool:
        return self.entry_hash == self.compute_hash()

    # ── CloudEvents v1.0 ──────────────────────────────────

    _CE_TYPE_MAP: ClassVar[dict[str, str]] = {
        EVENT_TRANSITION: "io.dppspace.negotiation.transition",
        EVENT_ACCESS_DECISION: "io.dppspace.access.decision",
        EVENT_POLICY_CONFLICT: "io.dppspace.policy.conflict",
    }

    def to_cloudevent(self) -> dict[str, Any]:
        """Serialize this entry as a CloudEvents v1.0 JSON envelope."""
        ce_type = self._CE_TYPE_MAP.get(self.event_type, f"io.dppspace.{self.event_type}")
        return {
            "specversion": "1.0",
            "id": self.entry_id,
            "type": ce_type,
            "source": self.party,
            "subject": self.agreement_id or self.negotiation_id,
            "time": self.timestamp.isoformat(),
            "datacontenttype": "application/json",
            "data": {
                "negotiation_id": self.negotiation_id,
                "agreement_id": self.agreement_id,
                "from_state": self.from_state,
                "to_state": self.to_state,
                "decision": self.decision,
                "reason": self.reason,
                **self.data,
            },
            "dppspaceentryhash": self.entry_hash,
            "dppspaceprevioushash": self.previous_hash,
        }


class AuditLog:
    """
    Append-only audit sink for one party.

    Features:
    - Hash-chained entries
    - Offline verification
    - Filtering by negotiation, agreement, type and time window
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow
        self._entries: list[AuditEntry] = []
        self._index: dict[str, AuditEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def log(
        self,
        event_type: str,
        party: str,
        negotiation_id: Optional[str] = None,
        agreement_id: Optional[str] = None,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        decision: Optional[str] = None,
        reason: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append an entry to the chain.

        Args:
            event_type: Category of the event.
            party: Party recording the event.
            negotiation_id: Negotiation the event belongs to, if any.
            agreement_id: Agreement the event belongs to, if any.
            from_state: Previous negotiation state for transitions.
            to_state: New negotiation state for transitions.
            decision: Enforcement outcome for access decisions.
            reason: Human-readable explanation.
            data: Additional structured context (no secrets).

        Returns:
            The created ``AuditEntry`` with computed hash.
        """
        entry = AuditEntry(
            timestamp=self._clock(),
            event_type=event_type,
            party=party,
            negotiation_id=negotiation_id,
            agreement_id=agreement_id,
            from_state=from_state,
            to_state=to_state,
            decision=decision,
            reason=reason,
            data=data or {},
        )
        if self._entries:
            entry.previous_hash = self._entries[-1].entry_hash
        entry.entry_hash = entry.compute_hash()

        self._entries.append(entry)
        self._index[entry.entry_id] = entry
        return entry

    def record_transition(
        self,
        party: str,
        negotiation_id: str,
        from_state: str,
        to_state: str,
        reason: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        return self.log(
            EVENT_TRANSITION,
            party,
            negotiation_id=negotiation_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            data=data,
        )

    def record_decision(
        self,
        party: str,
        agreement_id: str,
        decision: str,
        reason: str,
        data: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        return self.log(
            EVENT_ACCESS_DECISION,
            party,
            agreement_id=agreement_id,
            decision=decision,
            reason=reason,
            data=data,
        )

    def record_conflict(
        self,
        party: str,
        negotiation_id: str,
        reason: str,
        data: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        return self.log(
            EVENT_POLICY_CONFLICT,
            party,
            negotiation_id=negotiation_id,
            reason=reason,
            data=data,
        )

    def get_entry(self, entry_id: str) -> Optional[AuditEntry]:
        return self._index.get(entry_id)

    def query(
        self,
        negotiation_id: Optional[str] = None,
        agreement_id: Optional[str] = None,
        event_type: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[AuditEntry]:
        """Query entries; all filters combine with AND. Most recent last."""
        results = self._entries

        if negotiation_id:
            results = [e for e in results if e.negotiation_id == negotiation_id]
        if agreement_id:
            results = [e for e in results if e.agreement_id == agreement_id]
        if event_type:
            results = [e for e in results if e.event_type == event_type]
        if start_time:
            results = [e for e in results if e.timestamp >= start_time]
        if end_time:
            results = [e for e in results if e.timestamp <= end_time]

        return results[-limit:]

    def verify_integrity(self) -> tuple[bool, Optional[str]]:
        """Verify every entry hash and every chain link.

        Returns:
            ``(is_valid, error_message)``; the message is ``None`` when intact.
        """
        previous_hash = ""
        for i, entry in enumerate(self._entries):
            if not entry.verify_hash():
                return False, f"Entry {i} hash mismatch"
            if entry.previous_hash != previous_hash:
                return False, f"Entry {i} chain broken"
            previous_hash = entry.entry_hash
        return True, None

    def head_hash(self) -> Optional[str]:
        return self._entries[-1].entry_hash if self._entries else None

    def export(self) -> dict[str, Any]:
        """Export the whole log for external verification."""
        return {
            "exported_at": self._clock().isoformat(),
            "head_hash": self.head_hash(),
            "entry_count": len(self._entries),
            "entries": [e.model_dump(mode="json") for e in self._entries],
        }

    def export_cloudevents(self) -> list[dict[str, Any]]:
        return [e.to_cloudevent() for e in self._entries]
