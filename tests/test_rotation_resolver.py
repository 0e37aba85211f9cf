"""Tests for rotation schedule resolution."""

from datetime import UTC, datetime, timedelta

from factories import make_override, make_rotation

from conftest import T0
from src.services.override_layer import select_active_override
from src.services.rotation_resolver import (
    current_assignment,
    shift_boundary,
    shift_index_at,
    shifts_between,
    upcoming_assignments,
)


class TestCurrentAssignment:
    """Tests for computing who is on call at an instant."""

    def test_cycles_through_participants(self):
        """Each 8h shift goes to the next participant, wrapping around."""
        rotation = make_rotation()

        assert current_assignment(rotation, T0).participant == "p0"
        assert current_assignment(rotation, T0 + timedelta(hours=8)).participant == "p1"
        assert current_assignment(rotation, T0 + timedelta(hours=16)).participant == "p2"
        assert current_assignment(rotation, T0 + timedelta(hours=24)).participant == "p0"

    def test_reports_shift_window(self):
        rotation = make_rotation()

        assignment = current_assignment(rotation, T0 + timedelta(hours=9, minutes=30))

        assert assignment.shift_start == T0 + timedelta(hours=8)
        assert assignment.shift_end == T0 + timedelta(hours=16)
        assert assignment.is_override is False
        assert assignment.shift_index == 1

    def test_shift_end_is_exclusive(self):
        rotation = make_rotation()

        just_before = T0 + timedelta(hours=8) - timedelta(microseconds=1)

        assert current_assignment(rotation, just_before).participant == "p0"

    def test_before_anchor_uses_non_negative_modulo(self):
        """One minute before the anchor belongs to shift -1, i.e. the last participant."""
        rotation = make_rotation()

        assignment = current_assignment(rotation, T0 - timedelta(minutes=1))

        assert assignment.participant == "p2"
        assert assignment.shift_index == -1
        assert assignment.shift_start == T0 - timedelta(hours=8)
        assert assignment.shift_end == T0

    def test_far_before_anchor(self):
        rotation = make_rotation()

        # 4 shifts back: index -4 -> participants[-4 % 3] == participants[2]
        assignment = current_assignment(rotation, T0 - timedelta(hours=31))

        assert assignment.shift_index == -4
        assert assignment.participant == "p2"

    def test_inactive_rotation_has_no_participant(self):
        rotation = make_rotation(active=False)

        assignment = current_assignment(rotation, T0)

        assert assignment.participant is None
        assert assignment.shift_start is None

    def test_rotation_without_participants_has_no_participant(self):
        rotation = make_rotation(participants=[])

        assert current_assignment(rotation, T0).participant is None

    def test_duplicate_participants_take_turns(self):
        rotation = make_rotation(participants=["alice", "bob", "alice"])

        assert current_assignment(rotation, T0 + timedelta(hours=16)).participant == "alice"


class TestOverrides:
    """Tests for overrides taking precedence over the computed participant."""

    def test_override_replaces_participant(self):
        rotation = make_rotation()
        override = make_override(
            rotation,
            "sub",
            T0 + timedelta(hours=1),
            T0 + timedelta(hours=3),
        )

        assignment = current_assignment(rotation, T0 + timedelta(hours=2), [override])

        assert assignment.participant == "sub"
        assert assignment.is_override is True
        assert assignment.shift_start == override.starts_at
        assert assignment.shift_end == override.ends_at

    def test_override_window_is_half_open(self):
        rotation = make_rotation()
        override = make_override(rotation, "sub", T0, T0 + timedelta(hours=1))

        assert current_assignment(rotation, T0, [override]).participant == "sub"
        at_end = current_assignment(rotation, T0 + timedelta(hours=1), [override])
        assert at_end.participant == "p0"
        assert at_end.is_override is False

    def test_most_recently_created_override_wins(self):
        rotation = make_rotation()
        older = make_override(
            rotation, "first", T0, T0 + timedelta(hours=4), created_at=T0
        )
        newer = make_override(
            rotation,
            "second",
            T0 + timedelta(hours=1),
            T0 + timedelta(hours=2),
            created_at=T0 + timedelta(minutes=5),
        )

        at = T0 + timedelta(hours=1, minutes=30)

        assert current_assignment(rotation, at, [newer, older]).participant == "second"
        # Outside the newer window the older one still applies
        later = T0 + timedelta(hours=3)
        assert current_assignment(rotation, later, [newer, older]).participant == "first"

    def test_override_for_other_rotation_is_ignored(self):
        rotation = make_rotation()
        other = make_rotation()
        override = make_override(other, "sub", T0, T0 + timedelta(hours=1))

        assert select_active_override([override], rotation.id, T0) is None
        assert current_assignment(rotation, T0, [override]).participant == "p0"

    def test_override_on_inactive_rotation_does_not_apply(self):
        rotation = make_rotation(active=False)
        override = make_override(rotation, "sub", T0, T0 + timedelta(hours=1))

        assert current_assignment(rotation, T0, [override]).participant is None


class TestDaylightSaving:
    """Boundaries follow local wall-clock time across DST transitions."""

    def test_daily_handoff_stays_at_local_time_across_spring_forward(self):
        # 09:00 EST == 14:00Z; after 2024-03-10 09:00 EDT == 13:00Z
        anchor = datetime(2024, 3, 9, 14, 0, tzinfo=UTC)
        rotation = make_rotation(
            participants=["a", "b"],
            shift_duration_minutes=1440,
            timezone="America/New_York",
            start_anchor=anchor,
        )

        assert shift_boundary(rotation, 1) == datetime(2024, 3, 10, 13, 0, tzinfo=UTC)
        assert shift_boundary(rotation, 2) == datetime(2024, 3, 11, 13, 0, tzinfo=UTC)

        # The transition day's shift is 23 real hours long
        late = datetime(2024, 3, 10, 12, 59, tzinfo=UTC)
        assert current_assignment(rotation, late).participant == "a"
        boundary = datetime(2024, 3, 10, 13, 0, tzinfo=UTC)
        assert current_assignment(rotation, boundary).participant == "b"

    def test_fall_back_shift_is_longer(self):
        # 09:00 EDT == 13:00Z; after 2024-11-03 09:00 EST == 14:00Z
        anchor = datetime(2024, 11, 2, 13, 0, tzinfo=UTC)
        rotation = make_rotation(
            participants=["a", "b"],
            shift_duration_minutes=1440,
            timezone="America/New_York",
            start_anchor=anchor,
        )

        boundary = shift_boundary(rotation, 1)

        assert boundary == datetime(2024, 11, 3, 14, 0, tzinfo=UTC)
        assert boundary - anchor == timedelta(hours=25)
        assert shift_index_at(rotation, datetime(2024, 11, 3, 13, 30, tzinfo=UTC)) == 0

    def test_index_is_consistent_with_boundaries(self):
        anchor = datetime(2024, 3, 1, 7, 0, tzinfo=UTC)
        rotation = make_rotation(
            shift_duration_minutes=360,
            timezone="Europe/Berlin",
            start_anchor=anchor,
        )

        at = anchor
        # Spans the 2024-03-31 transition
        for _ in range(500):
            index = shift_index_at(rotation, at)
            assert shift_boundary(rotation, index) <= at < shift_boundary(rotation, index + 1)
            at += timedelta(minutes=97)


class TestUpcomingAssignments:
    """Tests for the lazy upcoming-shift sequence."""

    def test_starts_strictly_after_from(self):
        rotation = make_rotation()

        upcoming = list(upcoming_assignments(rotation, T0, 3))

        assert [a.shift_start for a in upcoming] == [
            T0 + timedelta(hours=8),
            T0 + timedelta(hours=16),
            T0 + timedelta(hours=24),
        ]
        assert [a.participant for a in upcoming] == ["p1", "p2", "p0"]

    def test_is_restartable(self):
        rotation = make_rotation()
        upcoming = upcoming_assignments(rotation, T0 + timedelta(hours=1), 4)

        assert list(upcoming) == list(upcoming)
        assert len(list(upcoming)) == 4

    def test_is_lazy(self):
        """A huge count costs nothing until iterated."""
        rotation = make_rotation()
        upcoming = iter(upcoming_assignments(rotation, T0, 10**9))

        first = next(upcoming)

        assert first.shift_start == T0 + timedelta(hours=8)

    def test_empty_for_unschedulable_rotation(self):
        assert list(upcoming_assignments(make_rotation(active=False), T0, 3)) == []
        assert list(upcoming_assignments(make_rotation(participants=[]), T0, 3)) == []
        assert list(upcoming_assignments(make_rotation(), T0, 0)) == []

    def test_override_covering_shift_start_applies(self):
        rotation = make_rotation()
        override = make_override(
            rotation,
            "sub",
            T0 + timedelta(hours=7),
            T0 + timedelta(hours=9),
        )

        upcoming = list(upcoming_assignments(rotation, T0, 2, [override]))

        assert upcoming[0].participant == "sub"
        assert upcoming[0].is_override is True
        assert upcoming[1].participant == "p2"


class TestShiftsBetween:
    def test_covers_horizon(self):
        rotation = make_rotation()

        shifts = list(shifts_between(rotation, T0 + timedelta(hours=2), T0 + timedelta(days=1)))

        assert [s.shift_start for s in shifts] == [
            T0,
            T0 + timedelta(hours=8),
            T0 + timedelta(hours=16),
        ]

    def test_empty_horizon(self):
        rotation = make_rotation()

        assert list(shifts_between(rotation, T0, T0)) == []

    def test_anchor_in_repeated_hour_keeps_its_side(self):
        # 2023-11-05 01:30 EST (second 01:30) == 06:30Z; a year of daily
        # shifts later 2024-11-03 01:30 is repeated again
        anchor = datetime(2023, 11, 5, 6, 30, tzinfo=UTC)
        rotation = make_rotation(
            participants=["a", "b"],
            shift_duration_minutes=1440,
            timezone="America/New_York",
            start_anchor=anchor,
        )

        assert shift_boundary(rotation, 0) == anchor
        assert shift_boundary(rotation, 1) == datetime(2023, 11, 6, 6, 30, tzinfo=UTC)
        assert shift_boundary(rotation, 364) == datetime(2024, 11, 3, 6, 30, tzinfo=UTC)

    def test_anchor_in_first_repeated_hour(self):
        # 2024-11-03 01:30 EDT (first 01:30) == 05:30Z
        anchor = datetime(2024, 11, 3, 5, 30, tzinfo=UTC)
        rotation = make_rotation(
            shift_duration_minutes=60,
            timezone="America/New_York",
            start_anchor=anchor,
        )

        assert shift_boundary(rotation, 0) == anchor
        assert shift_boundary(rotation, -1) == datetime(2024, 11, 3, 4, 30, tzinfo=UTC)
        assert shift_index_at(rotation, anchor) == 0
