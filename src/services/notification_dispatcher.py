"""Notification dispatcher collaborators.

The escalation engine and handoff notifier hand a resolved recipient set
and a payload to a ``NotificationDispatcher``; how a channel id becomes an
email, a Slack post or an SMS is the dispatcher's business. Dispatchers
dedup on the idempotency key and own their retry policy.
"""

from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from src.config import Settings
from src.core.exceptions import DispatchError
from src.logging_config import get_logger
from src.models.escalation_run import DispatchStatus

logger = get_logger(__name__)

RECIPIENT_CHANNEL = "channel"
RECIPIENT_USER = "user"


@dataclass(frozen=True)
class Recipient:
    """A notification target: a channel id or an on-call user id."""

    kind: str
    id: str

    @classmethod
    def channel(cls, channel_id: str) -> "Recipient":
        return cls(RECIPIENT_CHANNEL, channel_id)

    @classmethod
    def user(cls, user_id: str) -> "Recipient":
        return cls(RECIPIENT_USER, user_id)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "id": self.id}

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass
class DispatchResult:
    """Per-recipient delivery outcome."""

    results: dict[Recipient, bool] = field(default_factory=dict)

    @property
    def failed(self) -> list[Recipient]:
        return [recipient for recipient, ok in self.results.items() if not ok]

    @property
    def status(self) -> DispatchStatus:
        if not self.results:
            return DispatchStatus.SKIPPED
        failed = len(self.failed)
        if failed == 0:
            return DispatchStatus.SENT
        if failed == len(self.results):
            return DispatchStatus.FAILED
        return DispatchStatus.PARTIAL


class NotificationDispatcher(Protocol):
    async def send(
        self,
        idempotency_key: str,
        recipients: Sequence[Recipient],
        payload: dict[str, Any],
    ) -> DispatchResult: ...


class LoggingDispatcher:
    """Writes notifications to the log instead of delivering them.

    Used when no webhook is configured. Repeated keys are logged once;
    only the most recent ``max_keys`` keys are remembered.
    """

    def __init__(self, max_keys: int = 10_000) -> None:
        self.max_keys = max_keys
        self._seen: OrderedDict[str, DispatchResult] = OrderedDict()

    async def send(
        self,
        idempotency_key: str,
        recipients: Sequence[Recipient],
        payload: dict[str, Any],
    ) -> DispatchResult:
        if idempotency_key in self._seen:
            logger.debug("Duplicate notification suppressed", idempotency_key=idempotency_key)
            return self._seen[idempotency_key]

        logger.info(
            "Notification",
            idempotency_key=idempotency_key,
            recipients=[str(r) for r in recipients],
            kind=payload.get("kind"),
            message=payload.get("message"),
        )
        result = DispatchResult({recipient: True for recipient in recipients})
        self._seen[idempotency_key] = result
        if len(self._seen) > self.max_keys:
            self._seen.popitem(last=False)
        return result


class WebhookDispatcher:
    """Posts notifications to an HTTP endpoint.

    The body carries the recipients and payload; the idempotency key is
    sent both in the body and as the ``Idempotency-Key`` header so the
    receiver can dedup retries. A ``results`` list in the response, of
    ``{"kind", "id", "success"}`` objects, reports per-recipient outcomes;
    without it every recipient counts as delivered.
    """

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    async def send(
        self,
        idempotency_key: str,
        recipients: Sequence[Recipient],
        payload: dict[str, Any],
    ) -> DispatchResult:
        """Post one notification.

        Raises:
            DispatchError: On transport errors or a non-2xx response.
        """
        body = {
            "idempotency_key": idempotency_key,
            "recipients": [recipient.to_dict() for recipient in recipients],
            "payload": payload,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    json=body,
                    headers={"Idempotency-Key": idempotency_key},
                )
        except httpx.HTTPError as e:
            raise DispatchError(f"Webhook request failed: {e}") from e

        if not response.is_success:
            raise DispatchError(
                f"Webhook rejected notification: {response.status_code} {response.text}"
            )

        results = {recipient: True for recipient in recipients}
        try:
            data = response.json()
        except ValueError:
            data = None
        reported = data.get("results") if isinstance(data, dict) else None
        if isinstance(reported, list):
            for entry in reported:
                recipient = Recipient(str(entry.get("kind")), str(entry.get("id")))
                if recipient in results:
                    results[recipient] = bool(entry.get("success"))

        return DispatchResult(results)


def build_dispatcher(settings: Settings) -> NotificationDispatcher:
    """Webhook dispatcher when a URL is configured, logging otherwise."""
    if settings.dispatcher_webhook_url:
        logger.info("Using webhook notification dispatcher")
        return WebhookDispatcher(
            settings.dispatcher_webhook_url,
            timeout=settings.dispatcher_timeout_seconds,
        )
    logger.info("No dispatcher webhook configured, notifications are logged only")
    return LoggingDispatcher()
