"""Slot tiling, overlap tests and the cross-provider availability merge."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from bookbridge.models import (
    AvailabilitySlot,
    BusinessHours,
    CalendarEvent,
    CalendarProviderName,
    SlotSource,
    UnifiedAvailabilitySlot,
    coerce_zoneinfo,
)

DEFAULT_SLOT_MINUTES = 30

SlotT = TypeVar("SlotT", bound=AvailabilitySlot)

_WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def overlaps(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime,
) -> bool:
    """Half-open interval overlap: touching boundaries do not conflict."""
    return start_a < end_b and start_b < end_a


def generate_time_slots(
    time_min: datetime,
    time_max: datetime,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
) -> list[tuple[datetime, datetime]]:
    """Tile ``[time_min, time_max)`` with contiguous fixed-duration windows.

    Windows all have the same length, so the last one may extend past
    ``time_max`` when the range is not a multiple of ``slot_minutes``.
    """
    if slot_minutes <= 0:
        raise ValueError("slot_minutes must be positive")
    start = time_min.astimezone(UTC)
    end = time_max.astimezone(UTC)
    step = timedelta(minutes=slot_minutes)

    windows: list[tuple[datetime, datetime]] = []
    current = start
    while current < end:
        windows.append((current, current + step))
        current += step
    return windows


def mark_availability(
    windows: Sequence[tuple[datetime, datetime]],
    events: Iterable[CalendarEvent],
    *,
    provider: CalendarProviderName,
    calendar_id: str,
    staff_member: str | None = None,
) -> list[AvailabilitySlot]:
    """Mark each window unavailable if any time-blocking event overlaps it."""
    blocking = [
        (event.start_at.astimezone(UTC), event.end_at.astimezone(UTC))
        for event in events
        if event.blocks_time
    ]
    slots: list[AvailabilitySlot] = []
    for start, end in windows:
        conflict = any(overlaps(start, end, ev_start, ev_end) for ev_start, ev_end in blocking)
        slots.append(
            AvailabilitySlot(
                start=start,
                end=end,
                available=not conflict,
                provider=provider,
                calendar_id=calendar_id,
                staff_member=staff_member,
            )
        )
    return slots


def window_is_free(
    slots: Iterable[AvailabilitySlot],
    start: datetime,
    end: datetime,
) -> bool | None:
    """Whether every slot overlapping ``[start, end)`` is available.

    Returns ``None`` when no slot covers the window at all (no data).
    """
    covering = [slot for slot in slots if overlaps(slot.start, slot.end, start, end)]
    if not covering:
        return None
    return all(slot.available for slot in covering)


def _source_sort_key(source: SlotSource) -> tuple[str, str, str]:
    return (source.provider.value, source.calendar_id, source.staff_member or "")


def merge_availability_slots(slots: Iterable[AvailabilitySlot]) -> list[UnifiedAvailabilitySlot]:
    """Merge per-calendar slots keyed by exact ``(start, end)``.

    A merged slot is available only if every contributing slot is available.
    The representative provider/calendar is chosen from the sorted sources
    (first blocking source when unavailable), so the result does not depend on
    the order slots arrive in.
    """
    grouped: dict[tuple[datetime, datetime], list[SlotSource]] = defaultdict(list)
    for slot in slots:
        grouped[(slot.start.astimezone(UTC), slot.end.astimezone(UTC))].append(
            SlotSource(
                provider=slot.provider,
                calendar_id=slot.calendar_id,
                staff_member=slot.staff_member,
                available=slot.available,
            )
        )

    merged: list[UnifiedAvailabilitySlot] = []
    for (start, end), sources in grouped.items():
        ordered = sorted(sources, key=_source_sort_key)
        available = all(source.available for source in ordered)
        representative = ordered[0]
        if not available:
            representative = next(source for source in ordered if not source.available)
        merged.append(
            UnifiedAvailabilitySlot(
                start=start,
                end=end,
                available=available,
                provider=representative.provider,
                calendar_id=representative.calendar_id,
                staff_member=representative.staff_member,
                sources=ordered,
            )
        )

    merged.sort(key=lambda slot: (slot.start, slot.end))
    return merged


def within_business_hours(
    start: datetime,
    end: datetime,
    business_hours: dict[str, BusinessHours],
    timezone: str,
) -> bool:
    """Whether ``[start, end)`` fits inside the configured opening hours.

    An empty mapping means no restriction. A weekday missing from a non-empty
    mapping, or marked unavailable, is closed.
    """
    if not business_hours:
        return True
    tz = coerce_zoneinfo(timezone)
    local_start = start.astimezone(tz)
    local_end = end.astimezone(tz)
    if local_end.date() != local_start.date() and not (
        local_end.date() == local_start.date() + timedelta(days=1)
        and local_end.hour == 0
        and local_end.minute == 0
    ):
        return False

    hours = business_hours.get(_WEEKDAY_NAMES[local_start.weekday()])
    if hours is None or not hours.available:
        return False

    open_minutes, close_minutes = hours.minutes_range()
    start_minutes = local_start.hour * 60 + local_start.minute
    end_minutes = start_minutes + int((local_end - local_start).total_seconds() // 60)
    return open_minutes <= start_minutes and end_minutes <= close_minutes


def select_alternatives(
    slots: Sequence[SlotT],
    *,
    duration: timedelta,
    limit: int,
    business_hours: dict[str, BusinessHours] | None = None,
    timezone: str = "UTC",
) -> list[SlotT]:
    """Pick up to *limit* available slots where a booking of *duration* fits.

    A slot qualifies when it and the slots that follow it are available for
    the whole duration without gaps.
    """
    if limit <= 0:
        return []
    ordered = sorted(slots, key=lambda slot: slot.start)
    by_start = {slot.start: slot for slot in ordered}

    picked: list[SlotT] = []
    for slot in ordered:
        if not slot.available:
            continue
        start = slot.start
        end = start + duration
        if not _run_is_free(by_start, start, end):
            continue
        if business_hours and not within_business_hours(start, end, business_hours, timezone):
            continue
        picked.append(slot)
        if len(picked) >= limit:
            break
    return picked


def _run_is_free(
    by_start: dict[datetime, AvailabilitySlot],
    start: datetime,
    end: datetime,
) -> bool:
    cursor = start
    while cursor < end:
        slot = by_start.get(cursor)
        if slot is None or not slot.available:
            return False
        cursor = slot.end
    return True
