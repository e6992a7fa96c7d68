# booking/slot_generation.py
#
# Turns a doctor's availability windows into bookable time slots.
#
# A window is either weekly (day_of_week) or a one-off date. Each window is cut
# into consecutive slots of slot_duration_mins, starting at start_time; a slot
# that would run past end_time is not offered. Times are wall-clock times in
# the doctor's own timezone.

import logging
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.db.models import Q
from django.utils import timezone

from .models import Availability
from .slot_locking import active_locks, blocking_appointments, intervals_overlap, overlapping

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 31


def doctor_timezone(doctor):
    try:
        return ZoneInfo(doctor.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r for doctor %s, using UTC", doctor.timezone, doctor.pk)
        return ZoneInfo("UTC")


def windows_for_date(doctor, day):
    """Active windows that apply to `day`: weekly ones for its weekday plus date-specific ones."""
    return Availability.objects.filter(doctor=doctor, is_active=True).filter(
        Q(date__isnull=True, day_of_week=day.weekday()) | Q(date=day)
    ).order_by("start_time")


def iter_window_slots(window, day, tz):
    """Yield (start, end) aware datetimes for every full slot in the window."""
    step = timedelta(minutes=window.slot_duration_mins)
    current = datetime.combine(day, window.start_time, tzinfo=tz)
    end = datetime.combine(day, window.end_time, tzinfo=tz)
    while current + step <= end:
        yield current, current + step
        current += step


def generate_available_slots(doctor, day, user=None):
    """
    Slots for one date:
        {"date": "YYYY-MM-DD", "slots": [{"start": "HH:MM", "end": "HH:MM", "available": bool}]}

    A slot is unavailable when it has already started, overlaps a blocking
    appointment, or overlaps somebody else's unexpired lock. Locks held by
    `user` do not make a slot unavailable for that user.
    """
    result = {"date": day.isoformat(), "slots": []}

    windows = list(windows_for_date(doctor, day))
    if not windows:
        return result

    tz = doctor_timezone(doctor)
    day_start = datetime.combine(day, time.min, tzinfo=tz)
    day_end = day_start + timedelta(days=1)
    now = timezone.now()

    busy = list(
        overlapping(blocking_appointments(doctor, now), day_start, day_end)
        .values_list("start_at", "end_at")
    )
    locks = overlapping(active_locks(doctor, now), day_start, day_end)
    if user is not None and user.is_authenticated:
        locks = locks.exclude(locked_by=user)
    busy.extend(locks.values_list("start_at", "end_at"))

    slots = {}
    for window in windows:
        for start, end in iter_window_slots(window, day, tz):
            key = start.strftime("%H:%M")
            if key in slots:
                continue
            taken = start < now or any(
                intervals_overlap(start, end, busy_start, busy_end) for busy_start, busy_end in busy
            )
            slots[key] = {"start": key, "end": end.strftime("%H:%M"), "available": not taken}

    result["slots"] = [slots[key] for key in sorted(slots)]
    return result


def get_doctor_availability(doctor, start_date, end_date, user=None):
    """generate_available_slots() for every day in [start_date, end_date]."""
    if end_date < start_date:
        raise ValueError("end_date must not be before start_date")
    if (end_date - start_date).days >= MAX_RANGE_DAYS:
        raise ValueError(f"Date range cannot exceed {MAX_RANGE_DAYS} days")

    days = (end_date - start_date).days + 1
    return [
        generate_available_slots(doctor, start_date + timedelta(days=offset), user=user)
        for offset in range(days)
    ]


def fits_availability(doctor, start_at, end_at):
    """True when [start_at, end_at) lies inside one active window on its local date."""
    tz = doctor_timezone(doctor)
    local_start = start_at.astimezone(tz)
    local_end = end_at.astimezone(tz)
    day = local_start.date()

    for window in windows_for_date(doctor, day):
        window_start = datetime.combine(day, window.start_time, tzinfo=tz)
        window_end = datetime.combine(day, window.end_time, tzinfo=tz)
        if window_start <= local_start and local_end <= window_end:
            return True
    return False
