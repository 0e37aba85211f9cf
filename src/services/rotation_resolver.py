"""Rotation schedule resolution.

Pure functions mapping a rotation definition and an instant to the
participant responsible for it. Nothing here touches the database or
mutates the rotation; callers pass in the overrides they loaded.

Shift boundaries are computed in the rotation's local wall-clock time:
boundary ``k`` is ``start_anchor`` (as local time) plus
``k * shift_duration_minutes``, converted back to UTC. A 09:00 handoff
therefore stays at 09:00 local across daylight-saving transitions, and
the shift spanning a transition is an hour longer or shorter in real
time. When a boundary lands in a spring-forward gap it is resolved with
the pre-transition offset; one in a repeated (fall-back) hour takes
the anchor's side of that transition. A boundary that collapses onto
the next one yields an empty shift that is never current and is skipped by
``upcoming_assignments``.
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from src.models.rotation import OncallOverride, OncallRotation
from src.services.override_layer import select_active_override


@dataclass(frozen=True)
class Assignment:
    """Who is responsible for a rotation over a window of time."""

    participant: str | None
    shift_start: datetime | None
    shift_end: datetime | None
    is_override: bool = False
    shift_index: int | None = None


NO_ASSIGNMENT = Assignment(participant=None, shift_start=None, shift_end=None)


def is_schedulable(rotation: OncallRotation) -> bool:
    """Whether the rotation can produce a participant at all."""
    return bool(rotation.active and rotation.participants)


def _zone(rotation: OncallRotation) -> ZoneInfo:
    return ZoneInfo(rotation.timezone)


def _anchor_wall(rotation: OncallRotation, zone: ZoneInfo) -> datetime:
    return rotation.start_anchor.astimezone(zone).replace(tzinfo=None)


def _localize(wall: datetime, zone: ZoneInfo, fold: int) -> datetime:
    """UTC instant of naive local ``wall`` in ``zone``.

    A wall time repeated by a fall-back transition takes ``fold``, the
    anchor's side of that transition. Skipped wall times always use
    fold 0 (the pre-transition offset).
    """
    first = wall.replace(tzinfo=zone, fold=0)
    second = wall.replace(tzinfo=zone, fold=1)
    if fold and first.utcoffset() > second.utcoffset():
        return second.astimezone(UTC)
    return first.astimezone(UTC)


def shift_boundary(rotation: OncallRotation, index: int) -> datetime:
    """UTC instant at which shift ``index`` starts (index may be negative)."""
    zone = _zone(rotation)
    anchor = _anchor_wall(rotation, zone)
    wall = anchor + index * timedelta(minutes=rotation.shift_duration_minutes)
    return _localize(wall, zone, anchor.fold)


def shift_index_at(rotation: OncallRotation, at: datetime) -> int:
    """Index of the shift containing ``at``.

    Floor division keeps the index correct before ``start_anchor``
    (negative elapsed time maps to negative indices, never truncated
    toward zero).
    """
    zone = _zone(rotation)
    duration = timedelta(minutes=rotation.shift_duration_minutes)
    elapsed = at.astimezone(zone).replace(tzinfo=None) - _anchor_wall(rotation, zone)
    index = elapsed // duration

    # Local wall time is ambiguous around DST transitions; settle on the
    # shift whose real [start, end) contains ``at``.
    while shift_boundary(rotation, index) > at:
        index -= 1
    while shift_boundary(rotation, index + 1) <= at:
        index += 1
    return index


def participant_for_index(rotation: OncallRotation, index: int) -> str | None:
    """Participant holding shift ``index``; Python's modulo is non-negative."""
    if not is_schedulable(rotation):
        return None
    participants = rotation.participants
    return participants[index % len(participants)]


def computed_assignment(rotation: OncallRotation, at: datetime) -> Assignment:
    """The rotation's own participant at ``at``, ignoring overrides."""
    if not is_schedulable(rotation):
        return NO_ASSIGNMENT
    index = shift_index_at(rotation, at)
    return Assignment(
        participant=participant_for_index(rotation, index),
        shift_start=shift_boundary(rotation, index),
        shift_end=shift_boundary(rotation, index + 1),
        shift_index=index,
    )


def current_assignment(
    rotation: OncallRotation,
    at: datetime,
    overrides: Sequence[OncallOverride] = (),
) -> Assignment:
    """Who is on call for ``rotation`` at ``at``.

    An override covering ``at`` replaces the computed participant; its
    window is reported as the shift. Inactive rotations and rotations
    without participants resolve to no participant.
    """
    computed = computed_assignment(rotation, at)
    if computed.participant is None:
        return computed

    override = select_active_override(overrides, rotation.id, at)
    if override is None:
        return computed

    return Assignment(
        participant=override.user_id,
        shift_start=override.starts_at,
        shift_end=override.ends_at,
        is_override=True,
        shift_index=computed.shift_index,
    )


class UpcomingAssignments:
    """Lazy, finite, restartable sequence of the next ``count`` shifts.

    Shifts start strictly after ``start``. Each element is computed when
    iterated; iterating again starts over from ``start``. An override
    covering a shift's start replaces that shift's participant.
    """

    def __init__(
        self,
        rotation: OncallRotation,
        start: datetime,
        count: int,
        overrides: Sequence[OncallOverride] = (),
    ):
        self.rotation = rotation
        self.start = start
        self.count = max(count, 0)
        self.overrides = tuple(overrides)

    def __iter__(self) -> Iterator[Assignment]:
        if not is_schedulable(self.rotation) or self.count == 0:
            return

        index = shift_index_at(self.rotation, self.start)
        shift_end = shift_boundary(self.rotation, index + 1)
        produced = 0
        while produced < self.count:
            index += 1
            shift_start = shift_end
            shift_end = shift_boundary(self.rotation, index + 1)
            if shift_end <= shift_start:
                continue

            participant = participant_for_index(self.rotation, index)
            override = select_active_override(
                self.overrides, self.rotation.id, shift_start
            )
            yield Assignment(
                participant=override.user_id if override else participant,
                shift_start=shift_start,
                shift_end=shift_end,
                is_override=override is not None,
                shift_index=index,
            )
            produced += 1

    def __repr__(self) -> str:
        return (
            f"<UpcomingAssignments(rotation={self.rotation.id}, "
            f"from={self.start.isoformat()}, count={self.count})>"
        )


def upcoming_assignments(
    rotation: OncallRotation,
    start: datetime,
    count: int,
    overrides: Sequence[OncallOverride] = (),
) -> UpcomingAssignments:
    """Next ``count`` shifts of ``rotation`` starting after ``start``."""
    return UpcomingAssignments(rotation, start, count, overrides)


def shifts_between(
    rotation: OncallRotation,
    start: datetime,
    end: datetime,
) -> Iterator[Assignment]:
    """Computed shifts overlapping ``[start, end)``, in order."""
    if not is_schedulable(rotation) or end <= start:
        return

    yield computed_assignment(rotation, start)

    # DST transitions can shorten a shift; pad for a few of them
    duration = timedelta(minutes=rotation.shift_duration_minutes)
    bound = (end - start) // duration + 4
    for shift in upcoming_assignments(rotation, start, count=bound):
        if shift.shift_start >= end:
            return
        yield shift
