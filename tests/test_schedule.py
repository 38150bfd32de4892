"""Tests for pickup readiness and slot generation."""

from datetime import date, datetime, timezone

import pytest

from artisan_checkout.delivery.schedule import PickupScheduleResolver
from artisan_checkout.errors import ScheduleUnavailable
from artisan_checkout.models import FulfillmentType, LeadTimeUnit

from conftest import make_line

# Monday
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

SCHEDULE = {
    "monday": {"enabled": True, "open": "09:00", "close": "18:00"},
    "tuesday": {"enabled": False},
    "wednesday": {"enabled": True, "open": "10:00", "close": "15:00"},
}


@pytest.fixture
def resolver():
    return PickupScheduleResolver(clock=lambda: NOW)


def made_to_order(lead_time, unit=LeadTimeUnit.DAYS):
    return make_line(
        "seller-1",
        "20.00",
        fulfillment_type=FulfillmentType.MADE_TO_ORDER,
        lead_time=lead_time,
        lead_time_unit=unit,
    )


class TestEarliestAvailableDate:
    def test_ready_to_ship_is_today(self, resolver):
        assert resolver.earliest_available_date([make_line("seller-1", "5.00")]) == date(2026, 3, 2)

    def test_empty_cart_is_today(self, resolver):
        assert resolver.earliest_available_date([]) == date(2026, 3, 2)

    @pytest.mark.parametrize(
        ("lead_time", "unit", "expected"),
        [
            (30, LeadTimeUnit.HOURS, date(2026, 3, 3)),
            (3, LeadTimeUnit.DAYS, date(2026, 3, 5)),
            (1, LeadTimeUnit.WEEKS, date(2026, 3, 9)),
        ],
    )
    def test_made_to_order_lead_time(self, resolver, lead_time, unit, expected):
        assert resolver.earliest_available_date([made_to_order(lead_time, unit)]) == expected

    def test_ready_and_made_to_order_mix(self, resolver):
        lines = [make_line("seller-1", "5.00"), made_to_order(2)]
        assert resolver.earliest_available_date(lines) == date(2026, 3, 4)

    def test_latest_line_wins(self, resolver):
        lines = [
            make_line("seller-1", "5.00"),
            made_to_order(3),
            make_line(
                "seller-1",
                "9.00",
                product_id="scheduled",
                fulfillment_type=FulfillmentType.SCHEDULED_ORDER,
                next_available_date=date(2026, 3, 10),
            ),
        ]
        assert resolver.earliest_available_date(lines) == date(2026, 3, 10)


class TestGenerateSlots:
    def test_windows_limited_to_opening_hours(self, resolver):
        slots = resolver.generate_slots(SCHEDULE, days_ahead=7)

        monday = [s for s in slots if s.pickup_date == date(2026, 3, 2)]
        wednesday = [s for s in slots if s.pickup_date == date(2026, 3, 4)]
        assert [s.slot_id for s in monday] == ["morning", "afternoon", "evening"]
        assert [s.slot_id for s in wednesday] == ["afternoon"]
        assert len(slots) == 4

    def test_lead_time_moves_start(self, resolver):
        slots = resolver.generate_slots(SCHEDULE, [made_to_order(2)], days_ahead=7)

        assert min(s.pickup_date for s in slots) == date(2026, 3, 4)
        assert {s.pickup_date for s in slots} == {date(2026, 3, 4), date(2026, 3, 9)}

    def test_malformed_day_is_skipped(self, resolver):
        schedule = {**SCHEDULE, "tuesday": {"enabled": True, "open": "nine o'clock"}}
        slots = resolver.generate_slots(schedule, days_ahead=7)
        assert len(slots) == 4

    def test_custom_time_slots(self, resolver):
        schedule = {
            "monday": {
                "enabled": True,
                "time_slots": [{"value": "lunch", "label": "Lunch", "start": "12:00", "end": "13:00"}],
            }
        }
        slots = resolver.generate_slots(schedule, days_ahead=1)
        assert [s.slot_id for s in slots] == ["lunch"]
        assert slots[0].full_label == "Mon Mar 02 - Lunch"

    def test_no_schedule_means_no_slots(self, resolver):
        assert resolver.generate_slots({}, days_ahead=7) == []
        assert resolver.generate_slots(None, days_ahead=7) == []


class TestValidateSelection:
    def test_valid_slot(self, resolver):
        slot = resolver.validate_selection(date(2026, 3, 4), "afternoon", SCHEDULE)
        assert slot.start == "12:00"
        assert slot.end == "15:00"

    def test_before_items_are_ready(self, resolver):
        with pytest.raises(ScheduleUnavailable) as exc_info:
            resolver.validate_selection(date(2026, 3, 2), "morning", SCHEDULE, [made_to_order(2)], now=NOW)
        assert exc_info.value.field == "pickup_date"

    def test_closed_day(self, resolver):
        with pytest.raises(ScheduleUnavailable) as exc_info:
            resolver.validate_selection(date(2026, 3, 3), "morning", SCHEDULE)
        assert exc_info.value.field == "pickup_date"
        assert "Tuesday" in exc_info.value.message

    def test_window_outside_opening_hours(self, resolver):
        with pytest.raises(ScheduleUnavailable) as exc_info:
            resolver.validate_selection(date(2026, 3, 4), "morning", SCHEDULE)
        assert exc_info.value.field == "pickup_slot"
