"""
Dashboard Service

Read side for the professional dashboard and the client's own bookings.
Every refresh runs the janitor first (best effort), then rebuilds the booking
views from the store. If the store read fails the last good view is returned
marked stale instead of an error.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .. import config
from ..exceptions import AgendaError
from ..models.records import Appointment, AppointmentStatus
from .availability_service import business_timezone
from .lifecycle_janitor import LifecycleJanitor
from .package_aggregator import PACKAGE_SIZE, package_key
from .record_store import AppointmentFilters, ProfessionalScopedStore
from .status_reconciliation import BookingView, build_booking_views

logger = logging.getLogger(__name__)


@dataclass
class DashboardSnapshot:
    views: List[BookingView] = field(default_factory=list)
    refreshed_at: Optional[datetime] = None
    stale: bool = False
    error: Optional[str] = None


class DashboardService:
    """Booking views for one professional."""

    def __init__(
        self,
        store: ProfessionalScopedStore,
        janitor: LifecycleJanitor = None,
        lookback_days: int = None,
        tz=None,
        clock: Callable[[], datetime] = None,
    ):
        self.store = store
        self.janitor = janitor
        self.lookback_days = lookback_days if lookback_days is not None else config.HISTORY_LOOKBACK_DAYS
        self.tz = tz or business_timezone()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_good: Optional[DashboardSnapshot] = None

    def _window_start(self, now: datetime) -> datetime:
        today = now.astimezone(self.tz).date()
        return datetime.combine(today, time.min).replace(tzinfo=self.tz) - timedelta(days=self.lookback_days)

    async def refresh(
        self,
        client_email_contains: str = None,
        include_cancelled: bool = False,
        collapse_packages: bool = False,
    ) -> DashboardSnapshot:
        """
        Run the janitor, then read the lookback window and derive statuses.

        Args:
            client_email_contains: Optional case-insensitive email search
            include_cancelled: Cancelled rows are hidden by default. They are still
                read so packages with a cancelled session aggregate whole
            collapse_packages: One row per package instead of one per session
        """
        now = self._clock()

        if self.janitor is not None:
            try:
                await self.janitor.run(now)
            except Exception as e:
                logger.error(f"Janitor failed before dashboard refresh: {e}")

        filters = AppointmentFilters(
            start=self._window_start(now),
            client_email_contains=client_email_contains,
        )

        try:
            appointments = await self.store.list_appointments(filters)
            appointments = await self._complete_packages(appointments)
            payments = await self.store.list_payments(a.id for a in appointments)
        except AgendaError as e:
            logger.warning(f"Dashboard read failed for {self.store.owner_id}, keeping last view: {e}")
            previous = self._last_good or DashboardSnapshot()
            return DashboardSnapshot(
                views=list(previous.views),
                refreshed_at=previous.refreshed_at,
                stale=True,
                error=str(e),
            )

        views = build_booking_views(appointments, payments, collapse_packages=collapse_packages)
        if not include_cancelled:
            views = [v for v in views if v.display_status != AppointmentStatus.CANCELADO]

        snapshot = DashboardSnapshot(
            views=views,
            refreshed_at=now,
        )
        self._last_good = snapshot
        return snapshot

    async def _complete_packages(self, appointments: List[Appointment]) -> List[Appointment]:
        """Fetch package sessions that fall outside the read window."""
        counts: Dict[str, int] = {}
        for appointment in appointments:
            key = package_key(appointment)
            if key is not None:
                counts[key] = counts.get(key, 0) + 1

        seen = {a.id for a in appointments}
        completed = list(appointments)
        for appointment in appointments:
            key = package_key(appointment)
            if key is None or counts[key] >= PACKAGE_SIZE:
                continue
            # One lookup per package
            counts[key] = PACKAGE_SIZE
            for member in await self.store.list_package_members(appointment):
                if member.id not in seen:
                    seen.add(member.id)
                    completed.append(member)
        return completed

    async def client_bookings(self, client_id: str = None, client_email: str = None) -> List[BookingView]:
        """A client's own bookings, packages collapsed into one row each."""
        if not client_id and not client_email:
            raise ValueError("client_id or client_email is required")

        appointments = await self.store.list_appointments(AppointmentFilters(
            client_id=client_id,
            client_email_contains=None if client_id else client_email,
        ))
        if client_email and not client_id:
            # ilike is a substring match; the client list wants the exact address
            appointments = [
                a for a in appointments if (a.client_email or "").lower() == client_email.lower()
            ]
        payments = await self.store.list_payments(a.id for a in appointments)
        return build_booking_views(appointments, payments, collapse_packages=True)
