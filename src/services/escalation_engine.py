"""Alert escalation engine.

Drives a triggered alert through its escalation policy: executes the
first step at once, then on every acknowledgment timeout moves to the
next step whose delay (measured from run start) has elapsed, until the
alert is acknowledged, resolved, or the steps run out.

Ordering guarantees:
- Every mutation of a run (start, acknowledge, resolve, timeout) holds the
  alert's lock and re-reads the row, so a concurrent ack and timeout
  serialize and the loser sees the winner's status.
- Run state and ``next_fire_at`` are committed before the Clock callback
  is armed. A crash in between leaves a persisted deadline that the
  recovery scan re-arms or fires.
- A step is recorded as an EscalationEvent in the same commit that moves
  the run past it; the (run, step) unique constraint turns a duplicate
  execution by another worker into a no-op.
- Dispatch happens after the commit in a background task; its outcome is
  logged and recorded on the event but never changes run state.
"""

import asyncio
import uuid
import warnings
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.exceptions import (
    ConflictError,
    DispatchError,
    InvalidConfigError,
    NoRecipientsWarning,
    PolicyNotFoundError,
    RunNotFoundError,
)
from src.database import get_session_maker
from src.logging_config import bind_alert_id, get_logger
from src.models.escalation_policy import AlertSeverity, EscalationPolicy, EscalationStep
from src.models.escalation_run import (
    DispatchStatus,
    EscalationEvent,
    EscalationRun,
    RunStatus,
)
from src.models.rotation import OncallRotation
from src.services import escalation_run_store as run_store
from src.services.clock import Clock
from src.services.notification_dispatcher import NotificationDispatcher, Recipient
from src.services.rotation_service import resolve_assignment

logger = get_logger(__name__)


@dataclass
class PendingDispatch:
    """A recorded step waiting to be handed to the dispatcher."""

    event_id: uuid.UUID
    alert_id: str
    step_number: int
    idempotency_key: str
    recipients: list[Recipient]
    payload: dict[str, Any]


def step_due_at(run: EscalationRun, step: EscalationStep) -> datetime:
    """When a step becomes eligible: run start plus the step's delay."""
    return run.started_at + timedelta(minutes=step.delay_minutes)


def build_escalation_message(
    run: EscalationRun,
    step: EscalationStep,
    policy_name: str,
) -> str:
    """Human-readable text for a step notification.

    Args:
        run: The escalation run.
        step: Step being executed.
        policy_name: Name of the policy, for context.

    Returns:
        Formatted message string.
    """
    severity = run.severity.value.upper()
    if run.current_step_index == 0:
        return (
            f"[{severity}] Alert {run.alert_id} triggered.\n"
            f"Escalation policy: {policy_name}\n"
            f"Please acknowledge within {run.ack_timeout_minutes} minutes."
        )
    return (
        f"[{severity}] Alert {run.alert_id} has not been acknowledged.\n"
        f"Escalation policy: {policy_name} (step {step.step_number})\n"
        f"Please acknowledge within {run.ack_timeout_minutes} minutes."
    )


def build_escalation_payload(
    run: EscalationRun,
    step: EscalationStep,
    policy_name: str,
) -> dict[str, Any]:
    return {
        "kind": "escalation",
        "alert_id": run.alert_id,
        "run_id": str(run.id),
        "policy_id": str(run.policy_id),
        "severity": run.severity.value,
        "step_number": step.step_number,
        "message": build_escalation_message(run, step, policy_name),
    }


@dataclass
class _AlertLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class EscalationEngine:
    """The escalation state machine.

    Args:
        clock: Time source and timer scheduler.
        dispatcher: Notification delivery collaborator.
        session_factory: Opens sessions for timer callbacks and dispatch
            bookkeeping. Defaults to the application's session maker.
    """

    def __init__(
        self,
        clock: Clock,
        dispatcher: NotificationDispatcher,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.clock = clock
        self.dispatcher = dispatcher
        self._session_factory = session_factory
        self._locks: dict[str, _AlertLock] = {}
        self._tasks: set[asyncio.Task] = set()

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_maker()

    @asynccontextmanager
    async def _lock(self, alert_id: str) -> AsyncIterator[None]:
        """Serialize mutations of one alert's run.

        The entry is dropped once no caller holds or waits on it, so only
        alerts with an operation in progress keep a lock.
        """
        entry = self._locks.get(alert_id)
        if entry is None:
            entry = self._locks[alert_id] = _AlertLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[alert_id]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(
        self,
        db: AsyncSession,
        alert_id: str,
        policy_id: uuid.UUID,
        severity: AlertSeverity,
    ) -> EscalationRun:
        """Start escalating an alert.

        Triggering an alert that already has an active run under the same
        policy and severity returns that run. A resolved run that was
        never closed is archived and a new run starts.

        Raises:
            PolicyNotFoundError: If the policy does not exist.
            InvalidConfigError: If the policy is inactive.
            ConflictError: If the alert has an active run under a different
                policy or severity.
        """
        with bind_alert_id(alert_id):
            async with self._lock(alert_id):
                policy = await db.get(EscalationPolicy, policy_id)
                if policy is None:
                    raise PolicyNotFoundError(policy_id)
                if not policy.active:
                    msg = f"Escalation policy {policy_id} is inactive"
                    raise InvalidConfigError(msg)

                now = self.clock.now()
                existing = await run_store.get_active_run(db, alert_id, for_update=True)
                if existing is not None:
                    if existing.status != RunStatus.RESOLVED:
                        return self._reuse_or_conflict(existing, policy_id, severity)
                    existing.archived_at = now
                    await db.flush()
                    logger.info("Archived resolved escalation run", run_id=str(existing.id))

                run = await run_store.create_run(
                    db,
                    alert_id=alert_id,
                    policy_id=policy_id,
                    severity=severity,
                    ack_timeout_minutes=policy.effective_ack_timeout(severity),
                    started_at=now,
                )
                if run is None:
                    existing = await run_store.get_active_run(db, alert_id)
                    if existing is None:
                        msg = f"Escalation run for alert {alert_id} could not be created"
                        raise ConflictError(msg)
                    return self._reuse_or_conflict(existing, policy_id, severity)

                logger.info(
                    "Escalation run started",
                    run_id=str(run.id),
                    policy_id=str(policy_id),
                    severity=severity.value,
                    ack_timeout_minutes=run.ack_timeout_minutes,
                )

                pending = await self._walk(db, run, policy, now, from_index=0)
                if not await self._commit_transition(db, run):
                    return await run_store.get_active_run(db, alert_id)
                self._arm(run)
                self._spawn_dispatch(pending)
                return run

    def _reuse_or_conflict(
        self,
        existing: EscalationRun,
        policy_id: uuid.UUID,
        severity: AlertSeverity,
    ) -> EscalationRun:
        if existing.policy_id == policy_id and existing.severity == severity:
            logger.debug("Escalation already running", status=existing.status.value)
            return existing
        msg = (
            f"Alert {existing.alert_id} already has an active escalation run "
            f"under policy {existing.policy_id} ({existing.severity.value})"
        )
        raise ConflictError(msg)

    async def acknowledge(
        self,
        db: AsyncSession,
        alert_id: str,
    ) -> EscalationRun | None:
        """Acknowledge an alert, stopping further escalation.

        Idempotent: acknowledging an alert without an escalating run is
        a successful no-op.

        Returns:
            The alert's run, if it has one.
        """
        with bind_alert_id(alert_id):
            async with self._lock(alert_id):
                run = await run_store.get_active_run(db, alert_id, for_update=True)
                if run is None or not run.status.is_escalating:
                    logger.debug(
                        "Acknowledge ignored",
                        status=run.status.value if run else None,
                    )
                    return run

                run.status = RunStatus.ACKNOWLEDGED
                run.acknowledged_at = self.clock.now()
                run.next_fire_at = None
                await db.commit()
                self.clock.cancel(run.timer_key)

                logger.info(
                    "Escalation acknowledged",
                    run_id=str(run.id),
                    step_index=run.current_step_index,
                )
                return run

    async def resolve(
        self,
        db: AsyncSession,
        alert_id: str,
    ) -> EscalationRun | None:
        """Resolve an alert's run from any state; already resolved is a no-op.

        Returns:
            The alert's run, if it has one.
        """
        with bind_alert_id(alert_id):
            async with self._lock(alert_id):
                run = await run_store.get_active_run(db, alert_id, for_update=True)
                if run is None or run.status == RunStatus.RESOLVED:
                    return run

                previous = run.status
                run.status = RunStatus.RESOLVED
                run.resolved_at = self.clock.now()
                run.next_fire_at = None
                await db.commit()
                self.clock.cancel(run.timer_key)

                logger.info(
                    "Escalation resolved",
                    run_id=str(run.id),
                    previous_status=previous.value,
                )
                return run

    async def close_alert(
        self,
        db: AsyncSession,
        alert_id: str,
    ) -> EscalationRun | None:
        """Archive the alert's run; resolves it first if still open.

        Returns:
            The archived run, or None if the alert had no active run.
        """
        with bind_alert_id(alert_id):
            async with self._lock(alert_id):
                run = await run_store.get_active_run(db, alert_id, for_update=True)
                if run is None:
                    return None

                now = self.clock.now()
                if run.status != RunStatus.RESOLVED:
                    run.status = RunStatus.RESOLVED
                    run.resolved_at = now
                    run.next_fire_at = None
                run.archived_at = now
                await db.commit()
                self.clock.cancel(run.timer_key)

                logger.info("Escalation run archived", run_id=str(run.id))
                return run

    async def on_ack_timeout(
        self,
        db: AsyncSession,
        alert_id: str,
        scheduled_for: datetime | None = None,
    ) -> EscalationRun | None:
        """Handle a fired ack-timeout (or step-delay) deadline.

        Safe to call any number of times: a run that is not escalating,
        or whose persisted deadline is unset or still in the future, is
        left untouched.

        Args:
            db: Database session.
            alert_id: Alert whose timer fired.
            scheduled_for: The deadline the timer was armed for, if known.

        Returns:
            The alert's run after the transition, if it has one.
        """
        with bind_alert_id(alert_id):
            async with self._lock(alert_id):
                run = await run_store.get_active_run(db, alert_id, for_update=True)
                if run is None:
                    return None

                now = self.clock.now()

                if run.status == RunStatus.ACKNOWLEDGED:
                    await self._fire_in_flight_step(db, run, scheduled_for)
                    return await run_store.get_active_run(db, alert_id)

                if not run.status.is_escalating:
                    logger.debug("Stale escalation timer", status=run.status.value)
                    return run

                if run.next_fire_at is None or run.next_fire_at > now:
                    logger.debug(
                        "Escalation timer not due",
                        next_fire_at=run.next_fire_at.isoformat() if run.next_fire_at else None,
                    )
                    return run

                policy = await db.get(EscalationPolicy, run.policy_id)
                if policy is None:
                    logger.warning(
                        "Escalation policy deleted during run",
                        run_id=str(run.id),
                        policy_id=str(run.policy_id),
                    )
                    timer_key = run.timer_key
                    self._exhaust(run, now)
                    committed = await self._commit_transition(db, run)
                    self.clock.cancel(timer_key)
                    return run if committed else await run_store.get_active_run(db, alert_id)

                if run.status == RunStatus.AWAITING_ACK:
                    from_index = run.current_step_index + 1
                else:
                    from_index = run.current_step_index

                pending = await self._walk(db, run, policy, now, from_index)
                if not await self._commit_transition(db, run):
                    return await run_store.get_active_run(db, alert_id)
                if run.next_fire_at is None:
                    self.clock.cancel(run.timer_key)
                else:
                    self._arm(run)
                self._spawn_dispatch(pending)
                return run

    async def recover(self, db: AsyncSession) -> dict[str, int]:
        """Re-arm timers for every persisted escalating run.

        Runs whose deadline already passed fire immediately; the others
        get a callback at exactly their deadline. Repeating the scan is
        harmless.

        Returns:
            Counts of runs fired, armed and failed.
        """
        runs = await run_store.list_active_awaiting_ack(db)
        now = self.clock.now()
        due = []
        armed = 0

        for run in runs:
            if run.next_fire_at <= now:
                due.append(run.alert_id)
            else:
                self._arm(run)
                armed += 1

        fired = 0
        failed = 0
        for alert_id in due:
            try:
                await self.on_ack_timeout(db, alert_id)
                fired += 1
            except Exception as e:
                # Deadline stays persisted; the next scan retries
                await db.rollback()
                logger.error(
                    "Failed to fire overdue escalation",
                    alert_id=alert_id,
                    error=str(e),
                )
                failed += 1

        if runs:
            logger.info(
                "Escalation recovery scan completed",
                fired=fired,
                armed=armed,
                failed=failed,
            )
        return {"fired": fired, "armed": armed, "failed": failed}

    async def get_run(self, db: AsyncSession, alert_id: str) -> EscalationRun:
        """The alert's active run.

        Raises:
            RunNotFoundError: If the alert has no active run.
        """
        run = await run_store.get_active_run(db, alert_id)
        if run is None:
            raise RunNotFoundError(alert_id)
        return run

    async def get_timeline(self, db: AsyncSession, alert_id: str) -> list[EscalationEvent]:
        return await run_store.list_events(db, alert_id)

    async def drain(self) -> None:
        """Wait for every in-flight dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _walk(
        self,
        db: AsyncSession,
        run: EscalationRun,
        policy: EscalationPolicy,
        now: datetime,
        from_index: int,
    ) -> list[PendingDispatch]:
        """Move the run forward from ``from_index``, mutating it in place.

        Stops at the first step that is either not yet due (re-armed at
        its due time) or executed (armed for its ack timeout). Steps
        reached by ack timeout with ``notify_on_ack_timeout`` off are
        passed over silently. Running out of steps exhausts the run.
        """
        steps = policy.ordered_steps()
        index = from_index
        pending: list[PendingDispatch] = []

        while True:
            if index >= len(steps):
                self._exhaust(run, now)
                return pending

            step = steps[index]
            run.current_step_index = index
            due_at = step_due_at(run, step)

            if due_at > now:
                run.status = RunStatus.NOTIFYING if index == 0 else RunStatus.ESCALATING
                run.next_fire_at = due_at
                logger.info(
                    "Waiting for escalation step delay",
                    step_number=step.step_number,
                    due_at=due_at.isoformat(),
                )
                return pending

            if index > 0 and not step.notify_on_ack_timeout:
                logger.info(
                    "Escalation step passed without notifying",
                    step_number=step.step_number,
                )
                index += 1
                continue

            dispatch = await self._execute_step(db, run, step, policy.name, now)
            if dispatch is not None:
                pending.append(dispatch)
            run.status = RunStatus.AWAITING_ACK
            run.next_fire_at = now + timedelta(minutes=run.ack_timeout_minutes)
            return pending

    def _exhaust(self, run: EscalationRun, now: datetime) -> None:
        run.status = RunStatus.EXHAUSTED
        run.exhausted_at = now
        run.next_fire_at = None
        logger.warning(
            "Escalation policy exhausted without acknowledgment",
            run_id=str(run.id),
            step_index=run.current_step_index,
        )

    async def _resolve_recipients(
        self,
        db: AsyncSession,
        step: EscalationStep,
        at: datetime,
    ) -> list[Recipient]:
        """Channels of the step plus the on-call user of its rotation."""
        recipients = [Recipient.channel(channel) for channel in step.channels or []]

        if step.oncall_rotation_id is not None:
            rotation = await db.get(OncallRotation, step.oncall_rotation_id)
            if rotation is None:
                logger.warning(
                    "Escalation step references missing rotation",
                    step_number=step.step_number,
                    rotation_id=str(step.oncall_rotation_id),
                )
            else:
                assignment = await resolve_assignment(db, rotation, at)
                if assignment.participant is not None:
                    recipients.append(Recipient.user(assignment.participant))

        return list(dict.fromkeys(recipients))

    async def _execute_step(
        self,
        db: AsyncSession,
        run: EscalationRun,
        step: EscalationStep,
        policy_name: str,
        now: datetime,
    ) -> PendingDispatch | None:
        """Record a step and prepare its dispatch.

        Returns:
            The dispatch to send once the transition commits, or None when
            the step resolved to nobody.
        """
        recipients = await self._resolve_recipients(db, step, now)
        warning = None
        if not recipients:
            warning = "NoRecipientsWarning: step resolved to zero recipients"
            warnings.warn(
                f"Escalation step {step.step_number} of alert {run.alert_id} "
                f"resolved to zero recipients",
                NoRecipientsWarning,
                stacklevel=2,
            )
            logger.warning(
                "Escalation step has no recipients",
                run_id=str(run.id),
                step_number=step.step_number,
            )

        event = run_store.build_step_event(
            run,
            step.step_number,
            [recipient.to_dict() for recipient in recipients],
            triggered_at=now,
            warning=warning,
        )
        db.add(event)

        logger.info(
            "Escalation step executed",
            run_id=str(run.id),
            step_number=step.step_number,
            recipients=len(recipients),
        )

        if not recipients:
            return None
        return PendingDispatch(
            event_id=event.id,
            alert_id=run.alert_id,
            step_number=step.step_number,
            idempotency_key=event.idempotency_key,
            recipients=recipients,
            payload=build_escalation_payload(run, step, policy_name),
        )

    async def _fire_in_flight_step(
        self,
        db: AsyncSession,
        run: EscalationRun,
        scheduled_for: datetime | None,
    ) -> None:
        """Timer that was already due when the ack landed.

        The step it would have executed still goes out if that step opts
        out of ``skip_if_acknowledged``. Run status is not changed.
        """
        if (
            scheduled_for is None
            or run.acknowledged_at is None
            or scheduled_for > run.acknowledged_at
        ):
            logger.debug("Stale escalation timer", status=run.status.value)
            return

        policy = await db.get(EscalationPolicy, run.policy_id)
        if policy is None:
            return
        steps = policy.ordered_steps()
        if run.current_step_index >= len(steps):
            return

        executed = await db.scalar(
            select(EscalationEvent.id).where(
                EscalationEvent.run_id == run.id,
                EscalationEvent.step_number == steps[run.current_step_index].step_number,
            )
        )
        index = run.current_step_index + 1 if executed is not None else run.current_step_index
        if index >= len(steps):
            return

        step = steps[index]
        if step.skip_if_acknowledged or step_due_at(run, step) > scheduled_for:
            logger.info(
                "Skipped in-flight escalation step after acknowledgment",
                step_number=step.step_number,
            )
            return
        if index > 0 and not step.notify_on_ack_timeout:
            return

        run.current_step_index = index
        dispatch = await self._execute_step(db, run, step, policy.name, self.clock.now())
        if await self._commit_transition(db, run):
            self._spawn_dispatch([dispatch] if dispatch else [])

    async def _commit_transition(self, db: AsyncSession, run: EscalationRun) -> bool:
        """Commit run state and step events together.

        Returns:
            False if another worker already executed one of the steps.
            The rollback expires ``run``; callers must re-read it.
        """
        alert_id = run.alert_id
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(
                "Escalation step already executed by another worker",
                alert_id=alert_id,
            )
            return False

        logger.debug(
            "Escalation run transitioned",
            status=run.status.value,
            step_index=run.current_step_index,
            next_fire_at=run.next_fire_at.isoformat() if run.next_fire_at else None,
        )
        return True

    # ------------------------------------------------------------------
    # Timers and dispatch
    # ------------------------------------------------------------------

    def _arm(self, run: EscalationRun) -> None:
        if run.next_fire_at is None:
            return
        self.clock.schedule_at(
            run.next_fire_at,
            self._fire,
            run.alert_id,
            run.next_fire_at,
            key=run.timer_key,
        )

    async def _fire(self, alert_id: str, scheduled_for: datetime) -> None:
        """Clock callback: runs the timeout in its own session."""
        async with self._sessions()() as db:
            try:
                await self.on_ack_timeout(db, alert_id, scheduled_for)
            except Exception as e:
                # Deadline stays persisted; the recovery scan retries
                logger.error(
                    "Escalation timer failed",
                    alert_id=alert_id,
                    error=str(e),
                )

    def _spawn_dispatch(self, pending: Sequence[PendingDispatch]) -> None:
        for dispatch in pending:
            task = asyncio.create_task(self._dispatch(dispatch))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, dispatch: PendingDispatch) -> None:
        warning = None
        try:
            result = await self.dispatcher.send(
                dispatch.idempotency_key,
                dispatch.recipients,
                dispatch.payload,
            )
            status = result.status
            if result.failed:
                warning = "Delivery failed for: " + ", ".join(str(r) for r in result.failed)
        except DispatchError as e:
            status = DispatchStatus.FAILED
            warning = str(e)
        except Exception as e:
            status = DispatchStatus.FAILED
            warning = f"Unexpected dispatcher error: {e}"

        if status == DispatchStatus.SENT:
            logger.info(
                "Escalation notification dispatched",
                alert_id=dispatch.alert_id,
                step_number=dispatch.step_number,
                idempotency_key=dispatch.idempotency_key,
            )
        else:
            logger.warning(
                "Escalation notification not fully delivered",
                alert_id=dispatch.alert_id,
                step_number=dispatch.step_number,
                idempotency_key=dispatch.idempotency_key,
                status=status.value,
                error=warning,
            )

        try:
            async with self._sessions()() as db:
                await run_store.update_dispatch_status(db, dispatch.event_id, status, warning)
        except Exception as e:
            logger.error(
                "Failed to record dispatch outcome",
                alert_id=dispatch.alert_id,
                step_number=dispatch.step_number,
                error=str(e),
            )
