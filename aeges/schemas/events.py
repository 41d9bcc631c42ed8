"""
Event definitions.

One EventKind per lifecycle transition. Payloads are plain JSON-able dicts.
"""

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

from aeges.ids import EVENT_PREFIX, generate_id


class EventKind(StrEnum):
    # Analysis events
    ANALYSIS_COMPLETED = "analysis.completed"
    THREAT_DETECTED = "threat.detected"
    PROVIDER_FAILED = "provider.failed"

    # Containment events
    CONTAINMENT_ACTIVATED = "containment.activated"
    CONTAINMENT_ESCALATED = "containment.escalated"
    CONTAINMENT_PROPAGATED = "containment.propagated"
    CONTAINMENT_EXPIRED = "containment.expired"
    CONTAINMENT_RECOVERY_PENDING = "containment.recovery_pending"
    CONTAINMENT_REVERTED = "containment.reverted"
    CONTAINMENT_RECOVERED = "containment.recovered"

    # Recovery events
    RECOVERY_INITIATED = "recovery.initiated"
    RECOVERY_VERIFICATION = "recovery.verification"
    RECOVERY_APPROVAL = "recovery.approval"
    RECOVERY_COMPLETED = "recovery.completed"
    RECOVERY_REJECTED = "recovery.rejected"
    RECOVERY_EXPIRED = "recovery.expired"


class Event(BaseModel):
    """Base event."""
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: generate_id(EVENT_PREFIX, 6))
    kind: EventKind
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
