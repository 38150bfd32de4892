"""Pickup availability and time-slot resolution.

A multi-item order cannot be collected before its slowest item is ready, so
the earliest pickup date is the latest readiness date across the lines.
Bookable slots are then generated from the seller's weekly schedule, one
day at a time; a malformed day is skipped without aborting the scan.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError

from artisan_checkout.errors import ScheduleUnavailable
from artisan_checkout.models import (
    DEFAULT_TIME_WINDOWS,
    CartLine,
    DaySchedule,
    FulfillmentType,
    LeadTimeUnit,
    PickupSlot,
    PickupTimeWindow,
    utcnow,
)

logger = structlog.get_logger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def add_lead_time(start: datetime, lead_time: int, unit: LeadTimeUnit) -> datetime:
    if unit is LeadTimeUnit.HOURS:
        return start + timedelta(hours=lead_time)
    if unit is LeadTimeUnit.WEEKS:
        return start + timedelta(weeks=lead_time)
    return start + timedelta(days=lead_time)


def window_within_hours(window: PickupTimeWindow, open_time: str | None, close_time: str | None) -> bool:
    """A window is bookable if it lies fully inside opening hours.

    Days without opening hours accept every window.
    """
    if not open_time or not close_time:
        return True
    return window.start >= open_time and window.end <= close_time


class PickupScheduleResolver:
    """Computes pickup readiness dates and bookable slots."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def line_available_date(self, line: CartLine, now: datetime | None = None) -> date:
        now = now or self._clock()
        today = now.date()
        if line.fulfillment_type is FulfillmentType.MADE_TO_ORDER:
            if line.lead_time:
                return add_lead_time(now, line.lead_time, line.lead_time_unit).date()
            return today
        if line.fulfillment_type is FulfillmentType.SCHEDULED_ORDER:
            return line.next_available_date or today
        return today

    def earliest_available_date(self, lines: Iterable[CartLine], now: datetime | None = None) -> date:
        """Latest readiness date across *lines*; today for an empty cart."""
        now = now or self._clock()
        earliest = now.date()
        for line in lines:
            available = self.line_available_date(line, now)
            if available > earliest:
                earliest = available
        return earliest

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    def day_schedule(self, schedule: Mapping[str, Any] | None, day: date) -> DaySchedule | None:
        """Parse the schedule entry for *day*'s weekday, ``None`` if unusable."""
        if not schedule:
            return None
        weekday = WEEKDAYS[day.weekday()]
        raw = schedule.get(weekday)
        if raw is None:
            return None
        if isinstance(raw, DaySchedule):
            return raw
        try:
            return DaySchedule.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "pickup_schedule_day_malformed",
                weekday=weekday,
                errors=exc.error_count(),
            )
            return None

    def slots_for_day(self, schedule: Mapping[str, Any] | None, day: date) -> list[PickupSlot]:
        day_schedule = self.day_schedule(schedule, day)
        if day_schedule is None or not day_schedule.enabled:
            return []
        windows = day_schedule.time_slots if day_schedule.time_slots is not None else DEFAULT_TIME_WINDOWS
        return [
            PickupSlot(
                pickup_date=day,
                slot_id=window.value,
                label=window.label,
                start=window.start,
                end=window.end,
            )
            for window in windows
            if window_within_hours(window, day_schedule.open, day_schedule.close)
        ]

    def generate_slots(
        self,
        schedule: Mapping[str, Any] | None,
        lines: Iterable[CartLine] = (),
        days_ahead: int = 7,
        now: datetime | None = None,
    ) -> list[PickupSlot]:
        """Enumerate bookable pickup slots for the next *days_ahead* days.

        The walk starts at the later of today and the earliest date every
        line is ready.
        """
        now = now or self._clock()
        start = max(now.date(), self.earliest_available_date(lines, now))

        slots: list[PickupSlot] = []
        for offset in range(days_ahead):
            slots.extend(self.slots_for_day(schedule, start + timedelta(days=offset)))

        logger.debug(
            "pickup_slots_generated",
            start=start.isoformat(),
            days_ahead=days_ahead,
            slots=len(slots),
        )
        return slots

    def validate_selection(
        self,
        day: date,
        slot_id: str,
        schedule: Mapping[str, Any] | None,
        lines: Iterable[CartLine] | None = None,
        now: datetime | None = None,
    ) -> PickupSlot:
        """Return the slot if it can be booked, else raise ScheduleUnavailable."""
        if lines is not None:
            earliest = self.earliest_available_date(lines, now)
            if day < earliest:
                raise ScheduleUnavailable(
                    f"Order is not ready for pickup until {earliest.isoformat()}",
                    field="pickup_date",
                )

        day_schedule = self.day_schedule(schedule, day)
        if day_schedule is None or not day_schedule.enabled:
            raise ScheduleUnavailable(
                f"Seller is not available for pickup on {WEEKDAYS[day.weekday()].title()}",
                field="pickup_date",
            )

        for slot in self.slots_for_day(schedule, day):
            if slot.slot_id == slot_id:
                return slot
        raise ScheduleUnavailable(
            f"Time slot '{slot_id}' is not available on {day.isoformat()}",
            field="pickup_slot",
        )
