"""
Lifecycle Janitor

Best-effort cleanup for one professional, run on dashboard load and
periodically:

1. delete appointments (payments first) scheduled before the retention
   cutoff, keeping confirmado/concluido history. A package session is only
   deleted together with the other three, so a package never loses rows;
2. cancel pendente appointments whose payments are all pendente and expired.

Neither pass ever touches a confirmado or concluido appointment. Failures are
logged and counted, never raised to the read path.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .. import config
from ..models.records import AppointmentStatus, Payment, PaymentStatus
from .availability_service import business_timezone
from .locks import AppointmentLocks, get_appointment_locks
from .package_aggregator import PACKAGE_SIZE, package_key
from .record_store import AppointmentFilters, ProfessionalScopedStore

logger = logging.getLogger(__name__)

PROTECTED_STATUSES = (AppointmentStatus.CONFIRMADO, AppointmentStatus.CONCLUIDO)


@dataclass
class JanitorPolicy:
    """
    past_retention_days: days kept before today; 0 deletes everything before
        the start of today
    enabled: when False, run() does nothing
    """
    past_retention_days: int = 0
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "JanitorPolicy":
        return cls(
            past_retention_days=max(config.PAST_APPOINTMENT_RETENTION_DAYS, 0),
            enabled=config.JANITOR_ENABLED,
        )


def payments_expired(payments: List[Payment], now: datetime) -> bool:
    """True when there is at least one payment and every one is pendente and expired."""
    return bool(payments) and all(
        p.status == PaymentStatus.PENDENTE and p.is_expired(now) for p in payments
    )


class LifecycleJanitor:
    """Cleanup passes scoped to one professional."""

    def __init__(
        self,
        store: ProfessionalScopedStore,
        policy: JanitorPolicy = None,
        locks: AppointmentLocks = None,
        tz=None,
        clock: Callable[[], datetime] = None,
    ):
        self.store = store
        self.policy = policy or JanitorPolicy.from_env()
        self.locks = locks or get_appointment_locks()
        self.tz = tz or business_timezone()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def retention_cutoff(self, now: datetime) -> datetime:
        today = now.astimezone(self.tz).date()
        start_of_today = datetime.combine(today, time.min).replace(tzinfo=self.tz)
        return start_of_today - timedelta(days=self.policy.past_retention_days)

    async def run(self, now: datetime = None) -> Dict[str, Any]:
        """
        Run both passes.

        Returns:
            Dictionary with cleanup statistics
        """
        now = now or self._clock()
        stats = {
            "owner_id": self.store.owner_id,
            "deleted_appointments": 0,
            "deleted_payments": 0,
            "cancelled_appointments": 0,
            "errors": 0,
            "start_time": now.isoformat(),
        }

        if not self.policy.enabled:
            stats["skipped"] = True
            return stats

        try:
            deleted, deleted_payments = await self.purge_past(now)
            stats["deleted_appointments"] = deleted
            stats["deleted_payments"] = deleted_payments
        except Exception as e:
            logger.error(f"Janitor purge failed for {self.store.owner_id}: {e}")
            stats["errors"] += 1

        try:
            stats["cancelled_appointments"] = await self.cancel_expired(now)
        except Exception as e:
            logger.error(f"Janitor expiry pass failed for {self.store.owner_id}: {e}")
            stats["errors"] += 1

        if stats["deleted_appointments"] or stats["cancelled_appointments"]:
            logger.info(
                f"Janitor for {self.store.owner_id}: deleted {stats['deleted_appointments']}, "
                f"cancelled {stats['cancelled_appointments']}, {stats['errors']} errors"
            )
        return stats

    async def purge_past(self, now: datetime):
        """Delete rows scheduled before the cutoff. Returns (appointments, payments) deleted."""
        cutoff = self.retention_cutoff(now)
        stale = await self.store.list_appointments(AppointmentFilters(
            end=cutoff,
            exclude_statuses=list(PROTECTED_STATUSES),
        ))
        stale = [a for a in stale if a.status not in PROTECTED_STATUSES]
        ids = await self._purgeable_ids(stale)
        if not ids:
            return 0, 0

        deleted_payments = await self.store.delete_payments(ids)
        deleted = await self.store.delete_appointments(ids)
        logger.debug(f"Purged {deleted} appointments scheduled before {cutoff.isoformat()}")
        return deleted, deleted_payments

    async def _purgeable_ids(self, stale) -> List[str]:
        """Ids to delete, leaving out sessions of packages that still have live rows."""
        stale_ids = {a.id for a in stale}
        members_by_key: Dict[str, list] = {}
        ids = []
        for appointment in stale:
            key = package_key(appointment)
            if key is None:
                ids.append(appointment.id)
                continue
            if key not in members_by_key:
                members_by_key[key] = await self.store.list_package_members(appointment)
            members = members_by_key[key]
            if len(members) != PACKAGE_SIZE or all(m.id in stale_ids for m in members):
                ids.append(appointment.id)
            else:
                logger.debug(f"Keeping past session {appointment.id}: package {key} is still active")
        return ids

    async def cancel_expired(self, now: datetime) -> int:
        """Cancel pendente appointments whose every payment expired unpaid."""
        pending = await self.store.list_appointments(
            AppointmentFilters(statuses=[AppointmentStatus.PENDENTE])
        )
        pending = [a for a in pending if a.status == AppointmentStatus.PENDENTE]
        if not pending:
            return 0

        payments = await self.store.list_payments(a.id for a in pending)
        by_appointment: Dict[str, List[Payment]] = {}
        for payment in payments:
            by_appointment.setdefault(payment.appointment_id, []).append(payment)

        cancelled = 0
        for appointment in pending:
            if not payments_expired(by_appointment.get(appointment.id, []), now):
                continue

            async with self.locks.acquire(appointment.id):
                # Re-read right before writing: a confirmation may have landed meanwhile
                fresh = await self.store.list_payments([appointment.id])
                if not payments_expired(fresh, now):
                    logger.info(f"Appointment {appointment.id} changed since read, not cancelling")
                    continue
                updated = await self.store.update_appointment_status(
                    [appointment.id],
                    AppointmentStatus.CANCELADO,
                    only_if_status=AppointmentStatus.PENDENTE,
                )
            if updated:
                cancelled += 1
                logger.info(f"Cancelled appointment {appointment.id}: PIX payment expired")
        return cancelled


class JanitorScheduler:
    """Runs registered janitors periodically on an AsyncIOScheduler."""

    def __init__(self, janitors: List[LifecycleJanitor] = None, interval_minutes: int = None):
        self.janitors: List[LifecycleJanitor] = list(janitors or [])
        self.interval_minutes = interval_minutes or config.JANITOR_INTERVAL_MINUTES
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False

    def register(self, janitor: LifecycleJanitor) -> None:
        self.janitors.append(janitor)

    async def run_all(self) -> List[Dict[str, Any]]:
        results = []
        for janitor in list(self.janitors):
            results.append(await janitor.run())
        return results

    def start(self, run_on_start: bool = True) -> None:
        """Start the scheduled job (must be called with a running event loop)."""
        if self.is_running:
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.run_all,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="lifecycle_janitor",
            name="Appointment Lifecycle Janitor",
            misfire_grace_time=60,
            coalesce=True,
            max_instances=1,
        )
        if run_on_start:
            self.scheduler.add_job(
                self.run_all,
                trigger="date",
                run_date=datetime.now(timezone.utc) + timedelta(seconds=10),
                id="lifecycle_janitor_startup",
                name="Appointment Lifecycle Janitor (Startup)",
            )

        self.scheduler.start()
        self.is_running = True
        logger.info(f"Lifecycle janitor started (runs every {self.interval_minutes} minutes)")

    def stop(self) -> None:
        if self.is_running and self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            self.is_running = False
            logger.info("Lifecycle janitor stopped")
