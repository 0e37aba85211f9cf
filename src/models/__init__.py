# Database Models
from src.models.base import Base, TimestampMixin, UTCDateTime
from src.models.escalation_policy import AlertSeverity, EscalationPolicy, EscalationStep
from src.models.escalation_run import (
    DispatchStatus,
    EscalationEvent,
    EscalationRun,
    RunStatus,
)
from src.models.handoff import HandoffNotification
from src.models.rotation import OncallOverride, OncallRotation

__all__ = [
    "AlertSeverity",
    "Base",
    "DispatchStatus",
    "EscalationEvent",
    "EscalationPolicy",
    "EscalationRun",
    "EscalationStep",
    "HandoffNotification",
    "OncallOverride",
    "OncallRotation",
    "RunStatus",
    "TimestampMixin",
    "UTCDateTime",
]
