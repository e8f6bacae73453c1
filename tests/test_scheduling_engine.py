"""
Tests for the scheduling engine.

Tests cover:
- The availability grid (working days/hours, busy marking, range clipping, time zones)
- Slot scoring and reasoning
- Ranking suggestions (preferred times, deadlines, full days, prep time)
- MeetingRequest parsing
- Auto-scheduling, including a conflict appearing between ranking and commit
"""

from datetime import timedelta, timezone

import pytest

from conftest import MONDAY, TUESDAY, at
from models import create_event, create_task, fetch_events_in_range, get_event, set_preference
from services import scheduling_engine
from services.commitments import Commitment, CommitmentKind, TimeSlot
from services.preferences import PREFERENCE_KEY, SchedulingPreferences
from services.scheduling_engine import (
    MeetingRequest,
    Priority,
    SuggestedSlot,
    auto_schedule_meeting,
    find_optimal_meeting_times,
    generate_available_slots,
    generate_slot_reasoning,
    score_time_slot,
)

WEDNESDAY = MONDAY + timedelta(days=2)
FRIDAY = MONDAY + timedelta(days=4)


def tuesday_request(**overrides):
    fields = dict(
        title="Planning",
        duration_minutes=30,
        priority=Priority.HIGH,
        preferred_times=[at(TUESDAY, 10)],
    )
    fields.update(overrides)
    return MeetingRequest(**fields)


class TestAvailabilityGrid:
    def test_only_working_days_and_hours(self, app, user_id):
        slots = generate_available_slots(user_id, MONDAY - timedelta(days=2), MONDAY + timedelta(days=1))

        assert len(slots) == 16
        assert slots[0].start == at(MONDAY, 9)
        assert slots[-1].end == at(MONDAY, 17)
        assert all(slot.available for slot in slots)
        assert all(slot.duration_minutes == 30 for slot in slots)

    def test_busy_slots_are_marked(self, app, user_id):
        create_event(user_id, "Standup", at(MONDAY, 10), at(MONDAY, 11), status="confirmed")
        create_task(user_id, "Focus block", scheduled_start=at(MONDAY, 13), scheduled_end=at(MONDAY, 13, 30))

        slots = generate_available_slots(user_id, at(MONDAY, 0), at(MONDAY, 23))

        busy = [slot.start for slot in slots if not slot.available]
        assert busy == [at(MONDAY, 10), at(MONDAY, 10, 30), at(MONDAY, 13)]

    def test_slots_stay_inside_the_range(self, app, user_id):
        slots = generate_available_slots(user_id, at(MONDAY, 12, 15), at(MONDAY, 15))

        assert [slot.start for slot in slots] == [
            at(MONDAY, 12, 30),
            at(MONDAY, 13),
            at(MONDAY, 13, 30),
            at(MONDAY, 14),
            at(MONDAY, 14, 30),
        ]

    def test_longer_slots_do_not_overrun_the_day(self, app, user_id):
        slots = generate_available_slots(user_id, at(MONDAY, 0), at(MONDAY, 23), slot_duration_minutes=90)

        assert len(slots) == 5
        assert slots[-1].end == at(MONDAY, 16, 30)

    def test_working_hours_follow_the_user_time_zone(self, app, user_id):
        set_preference(user_id, PREFERENCE_KEY, {"timeZone": "America/New_York"})

        slots = generate_available_slots(user_id, at(MONDAY, 0), at(TUESDAY, 6))

        # 09:00-17:00 EST is 14:00-22:00 UTC; Sunday evening local is skipped
        assert len(slots) == 16
        assert slots[0].start == at(MONDAY, 14)
        assert slots[0].start.tzinfo == timezone.utc
        assert slots[-1].end == at(MONDAY, 22)

    def test_rejects_bad_duration(self, app, user_id):
        with pytest.raises(ValueError):
            generate_available_slots(user_id, at(MONDAY, 0), at(MONDAY, 23), slot_duration_minutes=0)


class TestScoring:
    def test_best_case_is_capped_at_one(self):
        slot = TimeSlot(at(TUESDAY, 10), at(TUESDAY, 10, 30))
        assert score_time_slot(slot, tuesday_request(), SchedulingPreferences(), []) == 1.0

    def test_late_friday_low_priority(self):
        slot = TimeSlot(at(FRIDAY, 16), at(FRIDAY, 16, 30))
        request = MeetingRequest("Retro", 60, priority=Priority.LOW)

        assert score_time_slot(slot, request, SchedulingPreferences(), []) == pytest.approx(0.6)

    def test_back_to_back_penalty(self):
        slot = TimeSlot(at(WEDNESDAY, 13), at(WEDNESDAY, 13, 30))
        request = MeetingRequest("1:1", 60)
        earlier = [Commitment(1, CommitmentKind.EVENT, "Lunch", at(WEDNESDAY, 12), at(WEDNESDAY, 13))]

        penalised = score_time_slot(slot, request, SchedulingPreferences(), earlier)
        relaxed = score_time_slot(slot, request, SchedulingPreferences(avoid_back_to_back=False), earlier)

        assert penalised == pytest.approx(0.8)
        assert relaxed == 1.0

    def test_preferred_time_window_is_strict(self):
        slot = TimeSlot(at(WEDNESDAY, 12), at(WEDNESDAY, 12, 30))
        exactly_two_hours = MeetingRequest("x", 60, priority=Priority.LOW, preferred_times=[at(WEDNESDAY, 10)])
        just_inside = MeetingRequest(
            "x", 60, priority=Priority.LOW, preferred_times=[at(WEDNESDAY, 10, 1)]
        )

        prefs = SchedulingPreferences()
        assert score_time_slot(slot, exactly_two_hours, prefs, []) == pytest.approx(0.9)
        assert score_time_slot(slot, just_inside, prefs, []) == 1.0

    def test_reasoning(self):
        slot = TimeSlot(at(TUESDAY, 10), at(TUESDAY, 10, 30))
        reasoning = generate_slot_reasoning(slot, tuesday_request(), SchedulingPreferences(), 0.95)

        assert reasoning == (
            "optimal morning time, high availability, priority meeting accommodation, Tuesday scheduling"
        )


class TestFindOptimalMeetingTimes:
    def test_preferred_tuesday_slot_ranks_first(self, app, user_id):
        suggestions = find_optimal_meeting_times(user_id, tuesday_request(), now=at(MONDAY, 8))

        assert len(suggestions) == 10
        assert suggestions[0].start == at(TUESDAY, 10)
        assert suggestions[0].end == at(TUESDAY, 10, 30)
        assert suggestions[0].confidence >= 0.9
        confidences = [s.confidence for s in suggestions]
        assert confidences == sorted(confidences, reverse=True)

    def test_busy_slots_are_never_suggested(self, app, user_id):
        create_event(user_id, "Blocked", at(TUESDAY, 9), at(TUESDAY, 12), status="confirmed")

        suggestions = find_optimal_meeting_times(user_id, tuesday_request(), now=at(MONDAY, 8))

        for suggestion in suggestions:
            assert not (suggestion.start < at(TUESDAY, 12) and suggestion.end > at(TUESDAY, 9))

    def test_deadline_truncates_the_window(self, app, user_id):
        request = MeetingRequest("Quick sync", 30, deadline=at(MONDAY, 12))

        suggestions = find_optimal_meeting_times(user_id, request, now=at(MONDAY, 8))

        assert len(suggestions) == 6
        assert all(s.end <= at(MONDAY, 12) for s in suggestions)

    def test_past_deadline_yields_nothing(self, app, user_id):
        request = MeetingRequest("Too late", 30, deadline=at(MONDAY, 7))
        assert find_optimal_meeting_times(user_id, request, now=at(MONDAY, 8)) == []

    def test_full_days_are_skipped(self, app, user_id):
        set_preference(user_id, PREFERENCE_KEY, {"maxMeetingsPerDay": 2})
        create_event(user_id, "One", at(MONDAY, 9), at(MONDAY, 9, 30), status="confirmed")
        create_event(user_id, "Two", at(MONDAY, 16), at(MONDAY, 16, 30), status="confirmed")

        suggestions = find_optimal_meeting_times(
            user_id, MeetingRequest("Catch-up", 30), search_days=2, now=at(MONDAY, 8)
        )

        assert suggestions
        assert all(s.start.date() == TUESDAY.date() for s in suggestions)

    def test_prep_time_window(self, app, user_id):
        request = tuesday_request(requires_prep=True, prep_time_minutes=15)

        best = find_optimal_meeting_times(user_id, request, now=at(MONDAY, 8))[0]

        assert best.prep_end == best.start
        assert best.prep_start == best.start - timedelta(minutes=15)
        assert best.to_dict()["prep_time"] == {
            "start": at(TUESDAY, 9, 45).isoformat(),
            "end": at(TUESDAY, 10).isoformat(),
        }

    def test_no_prep_window_unless_requested(self, app, user_id):
        best = find_optimal_meeting_times(user_id, tuesday_request(prep_time_minutes=15), now=at(MONDAY, 8))[0]
        assert best.to_dict()["prep_time"] is None


class TestMeetingRequestPayload:
    def test_camel_case_payload(self):
        request = MeetingRequest.from_payload({
            "title": "  Roadmap  ",
            "duration": "45",
            "priority": "high",
            "preferredTimes": ["2030-01-08T10:00:00Z"],
            "deadline": "2030-01-10T17:00:00+00:00",
            "attendees": ["a@example.com"],
            "requiresPrep": True,
            "prepTime": 10,
        })

        assert request.title == "Roadmap"
        assert request.duration_minutes == 45
        assert request.priority == Priority.HIGH
        assert request.preferred_times == [at(TUESDAY, 10)]
        assert request.deadline == at(MONDAY + timedelta(days=3), 17)
        assert request.requires_prep is True
        assert request.prep_time_minutes == 10

    def test_snake_case_payload(self):
        request = MeetingRequest.from_payload({"title": "Sync", "duration_minutes": 30})
        assert request.duration_minutes == 30
        assert request.priority == Priority.MEDIUM
        assert request.preferred_times == []

    @pytest.mark.parametrize(
        "payload, message",
        [
            ({"duration": 30}, "title is required"),
            ({"title": "x", "duration": "soon"}, "whole number of minutes"),
            ({"title": "x", "duration": 0}, "must be positive"),
            ({"title": "x", "duration": 30, "priority": "urgent"}, "Priority must be"),
            ({"title": "x", "duration": 30, "deadline": "next week"}, "ISO-8601"),
            ({"title": "x", "duration": 30, "prepTime": -5}, "must not be negative"),
            ({"title": "x", "duration": 30, "attendees": "a@example.com"}, "Attendees must be a list"),
        ],
    )
    def test_invalid_payloads(self, payload, message):
        with pytest.raises(ValueError, match=message):
            MeetingRequest.from_payload(payload)


class TestAutoSchedule:
    def test_books_the_best_slot(self, app, user_id):
        request = tuesday_request(description="Q3 planning", attendees=["a@example.com"])

        result = auto_schedule_meeting(user_id, request, now=at(MONDAY, 8))

        assert result["success"] is True
        assert result["suggested_slot"].start == at(TUESDAY, 10)
        event = get_event(user_id, result["event_id"])
        assert event["title"] == "Planning"
        assert event["ai_generated"] is True
        assert event["status"] == "pending"
        assert event["confidence_score"] == pytest.approx(result["suggested_slot"].confidence)
        assert event["start_time"] == at(TUESDAY, 10).isoformat()
        assert event["attendees"] == [{"email": "a@example.com"}]

    def test_conflict_appearing_after_ranking_blocks_booking(self, app, user_id, monkeypatch):
        slot = SuggestedSlot(at(TUESDAY, 10), at(TUESDAY, 10, 30), 0.95, "optimal morning time")
        monkeypatch.setattr(scheduling_engine, "find_optimal_meeting_times", lambda *a, **kw: [slot])
        create_event(user_id, "Booked meanwhile", at(TUESDAY, 10), at(TUESDAY, 10, 30), status="confirmed")

        result = auto_schedule_meeting(user_id, tuesday_request(), now=at(MONDAY, 8))

        assert result["success"] is False
        assert result["suggested_slot"] is slot
        assert result["conflicts"]
        assert slot.conflicts == ['Direct time conflict with "Booked meanwhile"']
        assert len(fetch_events_in_range(user_id, at(TUESDAY, 0), at(TUESDAY, 23))) == 1

    def test_no_slots_is_a_plain_failure(self, app, user_id):
        request = MeetingRequest("Too late", 30, deadline=at(MONDAY, 7))
        assert auto_schedule_meeting(user_id, request, now=at(MONDAY, 8)) == {"success": False}

    def test_unexpected_error_is_contained(self, app, user_id, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(scheduling_engine, "find_optimal_meeting_times", explode)

        assert auto_schedule_meeting(user_id, tuesday_request()) == {"success": False}
