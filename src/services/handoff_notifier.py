"""Shift handoff notifications.

On every tick, each active rotation's next shift boundary is checked; a
boundary entering the rotation's advance-notice window
(``handoff_notification_minutes``) is announced once to the rotation's
handoff channels and to the incoming and outgoing participants.

Ticks are discrete, so "entering the window" means
``0 < shift_start - now <= window``: the first tick inside the window
notifies, later ticks find the (rotation_id, shift_start) record and
stay quiet.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import DispatchError, InvalidConfigError
from src.logging_config import get_logger
from src.models.base import utcnow
from src.models.handoff import HandoffNotification
from src.models.rotation import OncallRotation
from src.services.notification_dispatcher import NotificationDispatcher, Recipient
from src.services.override_layer import list_overrides
from src.services.rotation_resolver import (
    Assignment,
    current_assignment,
    is_schedulable,
    upcoming_assignments,
)
from src.services.rotation_service import get_rotation, list_rotations

logger = get_logger(__name__)


def handoff_key(rotation_id: uuid.UUID, shift_start: datetime) -> str:
    return f"handoff:{rotation_id}:{shift_start.isoformat()}"


def build_handoff_message(
    rotation: OncallRotation,
    incoming: Assignment,
    outgoing_user_id: str | None,
) -> str:
    """Build the handoff notice text.

    Args:
        rotation: Rotation changing hands.
        incoming: The upcoming shift.
        outgoing_user_id: Participant whose shift is ending.

    Returns:
        Formatted message string.
    """
    starts = incoming.shift_start.strftime("%Y-%m-%d %H:%M UTC")
    lines = [
        f"On-call handoff for {rotation.name} at {starts}.",
        f"Incoming: {incoming.participant}",
    ]
    if outgoing_user_id and outgoing_user_id != incoming.participant:
        lines.append(f"Outgoing: {outgoing_user_id}")
    if incoming.is_override:
        lines.append("The incoming shift is covered by an override.")
    return "\n".join(lines)


def build_handoff_payload(
    rotation: OncallRotation,
    incoming: Assignment,
    outgoing_user_id: str | None,
) -> dict[str, Any]:
    return {
        "kind": "handoff",
        "rotation_id": str(rotation.id),
        "rotation_name": rotation.name,
        "shift_start": incoming.shift_start.isoformat(),
        "shift_end": incoming.shift_end.isoformat(),
        "incoming_user_id": incoming.participant,
        "outgoing_user_id": outgoing_user_id,
        "message": build_handoff_message(rotation, incoming, outgoing_user_id),
    }


def _handoff_recipients(
    rotation: OncallRotation,
    incoming_user_id: str | None,
    outgoing_user_id: str | None,
) -> list[Recipient]:
    recipients = [Recipient.channel(channel) for channel in rotation.handoff_channels or []]
    for user_id in (incoming_user_id, outgoing_user_id):
        if user_id:
            recipients.append(Recipient.user(user_id))
    return list(dict.fromkeys(recipients))


async def _next_handoff(
    db: AsyncSession,
    rotation: OncallRotation,
    now: datetime,
) -> tuple[Assignment | None, str | None]:
    """The next boundary with overrides applied, and who holds the current shift."""
    overrides = await list_overrides(db, rotation.id, since=now)
    incoming = next(iter(upcoming_assignments(rotation, now, 1, overrides)), None)
    outgoing = current_assignment(rotation, now, overrides)
    return incoming, outgoing.participant


async def _emit(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    rotation: OncallRotation,
    incoming: Assignment,
    outgoing_user_id: str | None,
    now: datetime,
    manual: bool,
) -> HandoffNotification | None:
    """Record the boundary, then notify.

    Returns:
        The record, or None if this boundary was already announced.
    """
    record = HandoffNotification(
        rotation_id=rotation.id,
        shift_start=incoming.shift_start,
        shift_end=incoming.shift_end,
        incoming_user_id=incoming.participant,
        outgoing_user_id=outgoing_user_id,
        manual=manual,
        notified_at=now,
    )
    rotation_id = rotation.id
    db.add(record)
    rotation.last_handoff_start = incoming.shift_start
    rotation.last_handoff_notification_at = now

    try:
        await db.commit()
    except IntegrityError:
        # Another tick or worker already announced this boundary
        await db.rollback()
        logger.debug(
            "Handoff already notified",
            rotation_id=str(rotation_id),
            shift_start=incoming.shift_start.isoformat(),
        )
        return None

    recipients = _handoff_recipients(rotation, incoming.participant, outgoing_user_id)
    key = handoff_key(rotation.id, incoming.shift_start)
    if not recipients:
        logger.warning("Handoff has no recipients", rotation_id=str(rotation.id))
        return record

    try:
        result = await dispatcher.send(
            key,
            recipients,
            build_handoff_payload(rotation, incoming, outgoing_user_id),
        )
    except DispatchError as e:
        logger.warning(
            "Handoff notification dispatch failed",
            rotation_id=str(rotation.id),
            idempotency_key=key,
            error=str(e),
        )
        return record

    logger.info(
        "Handoff notification sent",
        rotation_id=str(rotation.id),
        shift_start=incoming.shift_start.isoformat(),
        incoming_user_id=incoming.participant,
        outgoing_user_id=outgoing_user_id,
        manual=manual,
        failed=[str(r) for r in result.failed],
    )
    return record


async def check_rotation_handoff(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    rotation: OncallRotation,
    now: datetime,
) -> HandoffNotification | None:
    """Announce the rotation's next boundary if it is inside the notice window.

    Returns:
        The new record, or None if nothing was sent on this tick.
    """
    if not is_schedulable(rotation):
        return None

    incoming, outgoing_user_id = await _next_handoff(db, rotation, now)
    if incoming is None:
        return None

    lead = incoming.shift_start - now
    window = timedelta(minutes=rotation.handoff_notification_minutes)
    if not timedelta(0) < lead <= window:
        return None

    return await _emit(db, dispatcher, rotation, incoming, outgoing_user_id, now, manual=False)


async def check_handoffs(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    now: datetime | None = None,
) -> int:
    """Run one handoff tick over every active rotation.

    Returns:
        Number of handoff notifications emitted.
    """
    now = now or utcnow()
    rotation_ids = [rotation.id for rotation in await list_rotations(db, active_only=True)]

    sent = 0
    for rotation_id in rotation_ids:
        # Re-fetch: a rollback for an earlier rotation expires loaded rows
        rotation = await db.get(OncallRotation, rotation_id)
        if rotation is None or not rotation.active:
            continue
        try:
            if await check_rotation_handoff(db, dispatcher, rotation, now) is not None:
                sent += 1
        except Exception as e:
            await db.rollback()
            logger.error(
                "Handoff check failed for rotation",
                rotation_id=str(rotation_id),
                error=str(e),
            )

    if sent:
        logger.info("Handoff check completed", notified=sent, rotations=len(rotation_ids))
    return sent


async def notify_handoff(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    rotation_id: uuid.UUID,
    now: datetime | None = None,
) -> HandoffNotification | None:
    """Announce a rotation's next boundary right away, regardless of window.

    Shares the dedup record with the periodic check, so a boundary is
    still announced at most once.

    Returns:
        The new record, or None if the boundary was already announced.

    Raises:
        RotationNotFoundError: If no rotation has this ID.
        InvalidConfigError: If the rotation is inactive or has no participants.
    """
    now = now or utcnow()
    rotation = await get_rotation(db, rotation_id)
    if not is_schedulable(rotation):
        msg = f"Rotation {rotation_id} is inactive or has no participants"
        raise InvalidConfigError(msg)

    incoming, outgoing_user_id = await _next_handoff(db, rotation, now)
    if incoming is None:
        return None
    return await _emit(db, dispatcher, rotation, incoming, outgoing_user_id, now, manual=True)
