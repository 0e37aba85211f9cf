# Business Logic Services
from src.services.clock import Clock, ManualClock, SchedulerClock
from src.services.escalation_engine import EscalationEngine
from src.services.notification_dispatcher import (
    DispatchResult,
    LoggingDispatcher,
    NotificationDispatcher,
    Recipient,
    WebhookDispatcher,
)
from src.services.scheduler import (
    get_dispatcher,
    get_escalation_engine,
    get_scheduler,
    start_scheduler,
    stop_scheduler,
)

__all__ = [
    "Clock",
    "ManualClock",
    "SchedulerClock",
    "EscalationEngine",
    "DispatchResult",
    "LoggingDispatcher",
    "NotificationDispatcher",
    "Recipient",
    "WebhookDispatcher",
    "get_dispatcher",
    "get_escalation_engine",
    "get_scheduler",
    "start_scheduler",
    "stop_scheduler",
]
