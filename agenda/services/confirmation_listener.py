"""
Confirmation Listener

Detects payment confirmation through two channels at once:

- a fixed-interval poll asking the provider about pending payments
- realtime UPDATE events on the payments and appointments tables

Both channels funnel into one serialized confirm step that writes the
confirmation first and then notifies the caller, once per appointment (or
package) per watch session. Duplicate deliveries are discarded.

Lifetime is explicit: start() returns a WatchHandle, and once it is stopped
no poll task, confirm task or realtime subscription is left running.
"""

import asyncio
import inspect
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .. import config
from ..exceptions import AgendaError
from ..models.records import AppointmentStatus, Payment, PaymentStatus
from .package_aggregator import package_key
from .payment_orchestrator import PaymentOrchestrator
from .record_store import (
    APPOINTMENTS_TABLE,
    PAYMENTS_TABLE,
    AppointmentFilters,
    ChangeEvent,
    ProfessionalScopedStore,
)

logger = logging.getLogger(__name__)


class WatchState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    CONFIRMED = "confirmed"
    ENDED = "ended"


# Check outcomes that end a single-appointment watch without a confirmation
UNPAID_END_STATUSES = ("expired", "rejected")


def payment_watch_status(payments: Iterable[Payment], now: datetime) -> str:
    """
    Summary shown on a payment screen: pago, rejeitado, expirado or pendente.

    Any pago payment wins; otherwise the newest payment decides.
    """
    payments = list(payments)
    if any(p.status == PaymentStatus.PAGO for p in payments):
        return "pago"
    if not payments:
        return "pendente"
    newest = max(payments, key=lambda p: (p.created_at is not None, p.created_at or now))
    if newest.status == PaymentStatus.REJEITADO:
        return "rejeitado"
    if newest.is_expired(now):
        return "expirado"
    return "pendente"


class WatchHandle:
    """Stops one watch session. Usable as an async context manager."""

    def __init__(self, listener: "ConfirmationListener", session: int):
        self._listener = listener
        self._session = session

    @property
    def active(self) -> bool:
        return self._listener._session == self._session and self._listener.state != WatchState.IDLE

    async def stop(self) -> None:
        await self._listener._stop_session(self._session)

    async def __aenter__(self) -> "WatchHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


class ConfirmationListener:
    """
    Watches for payment confirmation.

    With appointment_id set the listener serves a single booking screen: the
    first confirmation moves it to CONFIRMED and tears down its poll and
    subscriptions. An expired or rejected payment moves it to ENDED the same
    way, with the outcome kept in last_check_status. A missing payment keeps
    the poll running, since the charge may be created after the watch starts. Without it, every pending appointment of the professional
    is watched until stop().

    on_confirmed(appointment_id, source) may be sync or async.
    """

    def __init__(
        self,
        store: ProfessionalScopedStore,
        orchestrator: PaymentOrchestrator,
        on_confirmed: Callable[[str, str], Any],
        appointment_id: Optional[str] = None,
        poll_interval: float = None,
        min_check_interval: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.on_confirmed = on_confirmed
        self.appointment_id = appointment_id
        self.poll_interval = (
            poll_interval if poll_interval is not None else config.PAYMENT_POLL_INTERVAL_SECONDS
        )
        self.min_check_interval = (
            min_check_interval if min_check_interval is not None else config.PAYMENT_POLL_DEBOUNCE_SECONDS
        )
        self._clock = clock

        self._state = WatchState.IDLE
        self._session = 0
        self._confirmed_keys: Set[str] = set()
        self._watch_ids: Set[str] = set()
        self._confirm_lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None
        self._pending_tasks: Set[asyncio.Task] = set()
        self._subscriptions: List[Any] = []
        self._check_in_flight = False
        self._last_check_started: Optional[float] = None
        self.last_error: Optional[Exception] = None
        self.last_check_status: Optional[str] = None
        self.stats: Dict[str, int] = {"polls": 0, "skipped_polls": 0, "realtime_events": 0, "confirmations": 0}

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def live_tasks(self) -> int:
        """Tasks still owned by this listener (0 after stop)."""
        tasks = list(self._pending_tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
        return sum(1 for task in tasks if not task.done())

    @property
    def live_subscriptions(self) -> int:
        return len(self._subscriptions)

    async def start(self) -> WatchHandle:
        """Begin a watch session. A running session is returned as is."""
        if self._state == WatchState.WATCHING:
            return WatchHandle(self, self._session)
        if self._state in (WatchState.CONFIRMED, WatchState.ENDED):
            await self._teardown()

        self._session += 1
        session = self._session
        self._confirmed_keys = set()
        self._watch_ids = set()
        self._last_check_started = None
        self.last_error = None
        self.last_check_status = None

        if self.appointment_id:
            await self._load_watch_ids()

        self._state = WatchState.WATCHING

        for table in (PAYMENTS_TABLE, APPOINTMENTS_TABLE):
            try:
                subscription = await self.store.subscribe(
                    table, lambda change, s=session: self._on_change(change, s)
                )
            except Exception as e:
                # Polling still covers confirmation without the realtime channel
                logger.error(f"Realtime subscription on {table} failed, relying on polling: {e}")
                self.last_error = e
                continue
            self._subscriptions.append(subscription)

        self._poll_task = asyncio.create_task(self._poll_loop(session))
        logger.info(
            f"Watching payments for {self.appointment_id or 'owner ' + self.store.owner_id} "
            f"(session {session})"
        )
        return WatchHandle(self, session)

    async def stop(self) -> None:
        await self._stop_session(self._session)

    async def _stop_session(self, session: int) -> None:
        if session != self._session:
            return
        await self._teardown()
        self._state = WatchState.IDLE

    async def _load_watch_ids(self) -> None:
        appointment = await self.store.get_appointment(self.appointment_id)
        if appointment is None:
            self._watch_ids = {self.appointment_id}
            return
        members = await self.orchestrator.resolve_members(appointment)
        self._watch_ids = {m.id for m in members}

    async def _teardown(self) -> None:
        """Cancel every task and close every subscription this listener owns."""
        current = asyncio.current_task()
        tasks = [t for t in [self._poll_task, *self._pending_tasks] if t is not None and t is not current]
        # The poll task may be the caller; it exits on its own once the state changes
        if self._poll_task is not current:
            self._poll_task = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending_tasks = {t for t in self._pending_tasks if t is current}

        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                await subscription.close()
            except Exception as e:
                logger.warning(f"Error closing realtime subscription: {e}")

    # ------------------------------------------------------------------
    # Realtime channel
    # ------------------------------------------------------------------

    def _on_change(self, change: ChangeEvent, session: int) -> None:
        if session != self._session or self._state != WatchState.WATCHING:
            return
        if change.event_type.upper() != "UPDATE":
            return

        record = change.record or {}
        status = str(record.get("status", "")).lower()
        old_status = str((change.old_record or {}).get("status", "")).lower()

        if change.table == PAYMENTS_TABLE and status == PaymentStatus.PAGO.value:
            appointment_id = record.get("appointment_id")
        elif change.table == APPOINTMENTS_TABLE and status == AppointmentStatus.CONFIRMADO.value:
            appointment_id = record.get("id")
        else:
            return

        if not appointment_id or old_status == status:
            return
        if self._watch_ids and appointment_id not in self._watch_ids:
            return

        self.stats["realtime_events"] += 1
        task = asyncio.create_task(self._confirm(appointment_id, "realtime", session))
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    # ------------------------------------------------------------------
    # Polling channel
    # ------------------------------------------------------------------

    async def _poll_loop(self, session: int) -> None:
        while session == self._session and self._state == WatchState.WATCHING:
            try:
                await self._poll_once(session)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error in payment poll: {e}", exc_info=True)
                self.last_error = e
            if session != self._session or self._state != WatchState.WATCHING:
                break
            await asyncio.sleep(self.poll_interval)

    async def check_now(self) -> bool:
        """Run one check immediately (debounced like the poll). Returns whether it ran."""
        if self._state != WatchState.WATCHING:
            return False
        return await self._poll_once(self._session)

    async def _poll_once(self, session: int) -> bool:
        now = self._clock()
        if self._check_in_flight or (
            self._last_check_started is not None
            and now - self._last_check_started < self.min_check_interval
        ):
            self.stats["skipped_polls"] += 1
            logger.debug("Skipping payment check, previous one is recent or still running")
            return False

        self._check_in_flight = True
        self._last_check_started = now
        self.stats["polls"] += 1
        try:
            for appointment_id in await self._appointments_to_check():
                if session != self._session or self._state != WatchState.WATCHING:
                    break
                try:
                    check = await self.orchestrator.check_with_provider(appointment_id)
                except AgendaError as e:
                    logger.warning(f"Payment check for {appointment_id} failed: {e}")
                    self.last_error = e
                    continue
                self.last_check_status = check.status
                if check.confirmed:
                    await self._confirm(appointment_id, "poll", session, already_applied=True)
                elif self.appointment_id and check.status in UNPAID_END_STATUSES:
                    await self._end_unpaid(appointment_id, check.status, session)
        except AgendaError as e:
            logger.warning(f"Could not list appointments to check: {e}")
            self.last_error = e
        finally:
            self._check_in_flight = False
        return True

    async def _appointments_to_check(self) -> List[str]:
        if self.appointment_id:
            return [self.appointment_id]

        pending = await self.store.list_appointments(
            AppointmentFilters(statuses=[AppointmentStatus.PENDENTE])
        )
        ids, seen = [], set()
        for appointment in pending:
            key = package_key(appointment) or appointment.id
            if key in seen or key in self._confirmed_keys:
                continue
            seen.add(key)
            ids.append(appointment.id)
        return ids

    async def _end_unpaid(self, appointment_id: str, status: str, session: int) -> None:
        async with self._confirm_lock:
            # A confirmation that got the lock first wins
            if session != self._session or self._state != WatchState.WATCHING:
                return
            self._state = WatchState.ENDED
        logger.info(f"Stopped watching {appointment_id}: payment {status}")
        await self._teardown()

    # ------------------------------------------------------------------
    # Confirm step (shared by both channels)
    # ------------------------------------------------------------------

    async def _confirm(
        self, appointment_id: str, source: str, session: int, already_applied: bool = False
    ) -> bool:
        async with self._confirm_lock:
            if session != self._session or self._state != WatchState.WATCHING:
                return False

            try:
                appointment = await self.store.get_appointment(appointment_id)
            except AgendaError as e:
                logger.warning(f"Could not read {appointment_id} to confirm it: {e}")
                self.last_error = e
                return False
            key = (package_key(appointment) if appointment else None) or appointment_id

            if key in self._confirmed_keys:
                logger.debug(f"Duplicate {source} confirmation for {appointment_id} ignored")
                return False

            if not already_applied:
                try:
                    await self.orchestrator.apply_confirmation(appointment_id)
                except AgendaError as e:
                    # Not marked: the next signal retries the write
                    logger.warning(f"Could not apply {source} confirmation for {appointment_id}: {e}")
                    self.last_error = e
                    return False

            self._confirmed_keys.add(key)
            self.stats["confirmations"] += 1
            if self.appointment_id:
                self._state = WatchState.CONFIRMED
            logger.info(f"Payment confirmed for {appointment_id} via {source}")

            try:
                result = self.on_confirmed(appointment_id, source)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"on_confirmed callback failed for {appointment_id}: {e}", exc_info=True)

        if self.appointment_id and self._session == session:
            await self._teardown()
        return True
