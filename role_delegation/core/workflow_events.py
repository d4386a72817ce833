"""
Append-only event log entries for the delegation ledger.
Following Single Responsibility Principle - handles event representation only.

Every handoff attempt and task lifecycle change is recorded as a LedgerEvent.
Delegation records and task ownership are projections of this log.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Any


class EventKind(Enum):
    """Kinds of ledger events"""
    TASK_CREATED = "task_created"
    DELEGATED = "delegated"                        # Accepted handoff, opens a record
    DELEGATION_COMPLETED = "delegation_completed"  # Destination finished, closes a record
    DELEGATION_REJECTED = "delegation_rejected"    # Destination refused, ownership returns
    TRANSITION_REJECTED = "transition_rejected"    # Edge exists but its checks failed
    TASK_COMPLETED = "task_completed"
    TASK_WITHDRAWN = "task_withdrawn"


@dataclass(frozen=True)
class LedgerEvent:
    """
    A single immutable ledger event.

    ``sequence`` is assigned by the store on append and is strictly
    increasing across the whole log.
    """
    kind: EventKind
    task_id: str
    timestamp: datetime
    sequence: int = 0
    from_role: Optional[str] = None
    to_role: Optional[str] = None
    record_id: Optional[str] = None
    success: Optional[bool] = None
    redelegation_count: int = 0
    reason: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "kind": self.kind.value,
            "task_id": self.task_id,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
            "from_role": self.from_role,
            "to_role": self.to_role,
            "record_id": self.record_id,
            "success": self.success,
            "redelegation_count": self.redelegation_count,
            "reason": self.reason,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEvent':
        """Create from dictionary"""
        return cls(
            kind=EventKind(data["kind"]),
            task_id=data["task_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            sequence=data.get("sequence", 0),
            from_role=data.get("from_role"),
            to_role=data.get("to_role"),
            record_id=data.get("record_id"),
            success=data.get("success"),
            redelegation_count=data.get("redelegation_count", 0),
            reason=data.get("reason", ""),
            metadata=data.get("metadata", {}),
        )

