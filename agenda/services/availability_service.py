"""
Availability Service

Computes bookable start instants for one professional on one day from
business hours, slot interval, lunch break, minimum lead time, closed dates,
closed time ranges and the appointments already on the books.

compute_available_slots() is pure and never raises: malformed settings
degrade to the default calendar or to an empty day. AvailabilityService adds
the store reads and the write-time re-check used by booking.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .. import config
from ..exceptions import SlotConflictError
from ..models.records import (
    Appointment,
    AppointmentStatus,
    CalendarSettings,
    ClosedDate,
    ClosedTimeSlot,
)
from .record_store import AppointmentFilters, ProfessionalScopedStore

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

Interval = Tuple[datetime, datetime]


def business_timezone(name: str = None) -> ZoneInfo:
    return ZoneInfo(name or config.AGENDA_TIMEZONE)


def _overlaps(start: datetime, end: datetime, other: Interval) -> bool:
    """Half-open [start, end) against [other_start, other_end)."""
    return start < other[1] and other[0] < end


def _local(target_date: date, clock: time, tz) -> datetime:
    return datetime.combine(target_date, clock).replace(tzinfo=tz)


def _generate_time_slots(
    target_date: date,
    open_time: time,
    close_time: time,
    interval_minutes: int,
    duration_minutes: int,
    tz,
) -> List[datetime]:
    """
    Candidate starts from opening time stepping by the slot interval.

    A candidate is kept only while start + duration still fits before closing.
    """
    slots = []
    current = _local(target_date, open_time, tz)
    close_dt = _local(target_date, close_time, tz)
    step = timedelta(minutes=interval_minutes)
    duration = timedelta(minutes=duration_minutes)

    while current + duration <= close_dt:
        slots.append(current)
        current += step

    return slots


def _resolve_settings(settings: Optional[CalendarSettings]) -> Optional[CalendarSettings]:
    """Fill gaps in stored settings from the default calendar."""
    default = CalendarSettings.default(
        settings.owner_id if settings else "",
        settings.professional_id if settings else None,
    )
    if settings is None:
        return default

    updates = {}
    if settings.open_time is None:
        updates["open_time"] = default.open_time
    if settings.close_time is None:
        updates["close_time"] = default.close_time
    if settings.slot_interval_minutes <= 0:
        updates["slot_interval_minutes"] = default.slot_interval_minutes
    if not settings.active_weekdays:
        updates["active_weekdays"] = default.active_weekdays
    if settings.min_lead_minutes < 0:
        updates["min_lead_minutes"] = 0
    return settings.model_copy(update=updates) if updates else settings


def compute_available_slots(
    target_date: date,
    duration_minutes: int,
    existing: Iterable[Appointment],
    settings: Optional[CalendarSettings],
    closed_dates: Iterable[ClosedDate],
    closed_slots: Iterable[ClosedTimeSlot],
    now: datetime,
    tz=None,
    professional_id: str = None,
) -> List[datetime]:
    """
    Ordered bookable start instants for target_date.

    Args:
        target_date: Day to compute, in the business timezone
        duration_minutes: Service duration; non-positive values use the default
        existing: Appointments already booked for the professional on that day
        settings: Calendar settings, None falls back to the default calendar
        closed_dates: Whole-day closures
        closed_slots: Partial-day closures
        now: Current instant (timezone-aware)
        tz: Business timezone (defaults to AGENDA_TIMEZONE)
        professional_id: When given, appointments of other professionals are ignored

    Returns:
        Timezone-aware start instants, ascending. Empty when the day is closed,
        inactive, or nothing clears the lead time.
    """
    tz = tz or business_timezone()
    settings = _resolve_settings(settings)

    if not duration_minutes or duration_minutes <= 0:
        duration_minutes = config.DEFAULT_SERVICE_DURATION_MINUTES
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    if any(closed.date == target_date for closed in closed_dates):
        return []
    if WEEKDAY_NAMES[target_date.weekday()] not in settings.active_weekdays:
        return []
    if settings.close_time <= settings.open_time:
        logger.warning(
            f"Calendar closes before it opens ({settings.open_time}-{settings.close_time}), no slots"
        )
        return []

    blocked: List[Interval] = []

    if settings.lunch_start and settings.lunch_end and settings.lunch_start < settings.lunch_end:
        blocked.append((
            _local(target_date, settings.lunch_start, tz),
            _local(target_date, settings.lunch_end, tz),
        ))

    for appointment in existing:
        if appointment.status == AppointmentStatus.CANCELADO:
            continue
        if professional_id and appointment.professional_id not in (None, professional_id):
            continue
        start = appointment.scheduled_at
        blocked.append((start, start + timedelta(minutes=appointment.duration_minutes)))

    for closed in closed_slots:
        if closed.date != target_date or closed.end_time <= closed.start_time:
            continue
        blocked.append((
            _local(target_date, closed.start_time, tz),
            _local(target_date, closed.end_time, tz),
        ))

    earliest = now + timedelta(minutes=settings.min_lead_minutes)
    duration = timedelta(minutes=duration_minutes)

    available = []
    for start in _generate_time_slots(
        target_date,
        settings.open_time,
        settings.close_time,
        settings.slot_interval_minutes,
        duration_minutes,
        tz,
    ):
        if start < earliest:
            continue
        end = start + duration
        if any(_overlaps(start, end, interval) for interval in blocked):
            continue
        available.append(start)

    return available


class AvailabilityService:
    """Reads calendar data through the scoped store and computes slots."""

    def __init__(self, store: ProfessionalScopedStore, tz=None):
        self.store = store
        self.tz = tz or business_timezone()

    def _day_bounds(self, target_date: date) -> Interval:
        start = _local(target_date, time.min, self.tz)
        return start, start + timedelta(days=1)

    async def get_available_slots(
        self,
        target_date: date,
        professional_id: str = None,
        duration_minutes: int = None,
        service_id: str = None,
        now: datetime = None,
    ) -> List[datetime]:
        """Fetch the day's data and compute bookable starts."""
        now = now or datetime.now(timezone.utc)

        if duration_minutes is None and service_id:
            service = await self.store.get_service(service_id)
            duration_minutes = service.duration_minutes if service else None

        settings = await self.store.get_calendar_settings(professional_id)
        if settings is None:
            logger.info(
                f"No calendar settings for professional {professional_id}, using default calendar"
            )

        closed_dates = await self.store.list_closed_dates(professional_id, target_date, target_date)
        closed_slots = await self.store.list_closed_time_slots(professional_id, target_date)

        day_start, day_end = self._day_bounds(target_date)
        existing = await self.store.list_appointments(AppointmentFilters(
            professional_id=professional_id,
            start=day_start,
            end=day_end,
            exclude_statuses=[AppointmentStatus.CANCELADO],
        ))

        slots = compute_available_slots(
            target_date,
            duration_minutes,
            existing,
            settings,
            closed_dates,
            closed_slots,
            now,
            self.tz,
            professional_id=professional_id,
        )
        logger.debug(f"{len(slots)} slots for {professional_id} on {target_date}")
        return slots

    async def ensure_slot_available(
        self,
        start: datetime,
        professional_id: str = None,
        duration_minutes: int = None,
        service_id: str = None,
        now: datetime = None,
    ) -> None:
        """
        Re-evaluate availability at write time.

        Raises:
            SlotConflictError: start is no longer in the fresh slot sequence
        """
        target_date = start.astimezone(self.tz).date()
        slots = await self.get_available_slots(
            target_date,
            professional_id=professional_id,
            duration_minutes=duration_minutes,
            service_id=service_id,
            now=now,
        )
        if start not in slots:
            logger.warning(f"Slot {start.isoformat()} for {professional_id} is taken or closed")
            raise SlotConflictError(professional_id, start)
