from datetime import date

import pytest

import events


def rsvp_event(**overrides):
    event = {"status": "upcoming", "requires_rsvp": True, "rsvp_deadline": "2026-05-01", "max_attendees": 10}
    event.update(overrides)
    return event


def test_rsvp_accepted_before_deadline_with_room():
    assert events.rsvp_refusal(rsvp_event(), going_count=9, today=date(2026, 5, 1)) is None


@pytest.mark.parametrize(
    "event,going,status,message",
    [
        (rsvp_event(status="cancelled"), 0, "attending", "cancelled"),
        (rsvp_event(requires_rsvp=False), 0, "attending", "does not require"),
        (rsvp_event(rsvp_deadline="2026-04-01"), 0, "attending", "deadline"),
        (rsvp_event(), 10, "attending", "full"),
    ],
)
def test_rsvp_refusals(event, going, status, message):
    assert message in events.rsvp_refusal(event, going_count=going, today=date(2026, 4, 15), status=status)


def test_full_event_still_accepts_declines():
    assert events.rsvp_refusal(rsvp_event(), going_count=12, today=date(2026, 4, 15), status="not_attending") is None


def test_summarize_rsvps_counts_guests_and_response_rate():
    rsvps = [
        {"status": "attending", "guests": 2},
        {"status": "attending", "guests": 0},
        {"status": "maybe", "guests": 4},
        {"status": "pending", "guests": 0},
        {"status": "pending", "guests": 0},
        {"status": "not_attending", "guests": 0},
    ]
    summary = events.summarize_rsvps(rsvps)
    assert summary["total"] == 6
    assert summary["attending"] == 2
    assert summary["pending"] == 2
    assert summary["total_guests"] == 2
    assert summary["expected_attendance"] == 4
    assert summary["response_rate"] == 66.7


def test_summarize_rsvps_empty():
    assert events.summarize_rsvps([])["response_rate"] == 0.0


def test_clean_event_fields_validates_and_serializes():
    cleaned = events._clean_event_fields({
        "event_type": "Sports", "audience": "class", "target_class_ids": ["3", 4], "start_date": "2026-06-01",
        "max_attendees": "25", "created_by": 99,
    })
    assert cleaned["event_type"] == "sports"
    assert cleaned["target_class_ids"] == "[3, 4]"
    assert cleaned["start_date"] == date(2026, 6, 1)
    assert cleaned["max_attendees"] == 25
    assert "created_by" not in cleaned


@pytest.mark.parametrize(
    "fields",
    [{"event_type": "party"}, {"audience": "everyone"}, {"max_attendees": 0}, {"start_date": "01/06/2026"}],
)
def test_clean_event_fields_rejects_bad_values(fields):
    with pytest.raises(ValueError):
        events._clean_event_fields(fields)


def test_end_date_before_start_rejected():
    with pytest.raises(ValueError, match="before start"):
        events.create_event(1, "Sports Day", "sports", "2026-06-02", "2026-06-01", notify=False)


def test_class_event_needs_target_classes():
    with pytest.raises(ValueError, match="class"):
        events.create_event(1, "PTA", "parent_meeting", "2026-06-02", audience="class", notify=False)


def test_cancel_requires_reason():
    with pytest.raises(ValueError, match="reason"):
        events.cancel_event(1, 2, " ")
