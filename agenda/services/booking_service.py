"""
Booking Service

Creates appointments and packages with a write-time availability re-check,
and applies the professional's manual transitions (complete, cancel, remove
a package session). Terminal statuses are final.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import AppointmentNotFoundError, InvalidTransitionError, SlotConflictError
from ..models.records import Appointment, AppointmentStatus, Service
from .availability_service import AvailabilityService
from .package_aggregator import PACKAGE_SIZE, format_package_notes, new_package_token
from .record_store import ProfessionalScopedStore

logger = logging.getLogger(__name__)


class BookingService:
    """Write side of the booking flow for one professional."""

    def __init__(
        self,
        store: ProfessionalScopedStore,
        availability: AvailabilityService = None,
        clock: Callable[[], datetime] = None,
        write_package_id: bool = False,
    ):
        """
        Args:
            store: Scoped store of the professional
            availability: Availability service used for the write-time re-check
            clock: Returns the current instant
            write_package_id: Also store the token in the package_id column
                (only when the table has one)
        """
        self.store = store
        self.availability = availability or AvailabilityService(store)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.write_package_id = write_package_id

    async def _get_service(self, service_id: str) -> Service:
        service = await self.store.get_service(service_id)
        if service is None:
            raise ValueError(f"Unknown service {service_id}")
        return service

    def _row(
        self,
        service: Service,
        scheduled_at: datetime,
        status: AppointmentStatus,
        value: Decimal,
        client_id: Optional[str],
        client_email: Optional[str],
        professional_id: Optional[str],
        notes: Optional[str],
        now: datetime,
    ) -> Dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "client_id": client_id,
            "client_email": client_email,
            "service_id": service.id,
            "professional_id": professional_id,
            "scheduled_at": scheduled_at.isoformat(),
            "status": status.value,
            "value": str(value),
            "value_paid": "0.00",
            "notes": notes,
            "created_at": now.isoformat(),
        }

    def _to_model(self, row: Dict[str, Any], row_id: str, duration: int) -> Appointment:
        return Appointment.model_validate(
            {**row, "id": row_id, "owner_id": self.store.owner_id, "duration_minutes": duration}
        )

    async def book_appointment(
        self,
        service_id: str,
        scheduled_at: datetime,
        client_id: str = None,
        client_email: str = None,
        professional_id: str = None,
        notes: str = None,
        direct: bool = False,
        value: Decimal = None,
    ) -> Appointment:
        """
        Book a single appointment.

        Client bookings start as pendente (awaiting PIX); direct bookings from
        the dashboard start as agendado.

        Raises:
            SlotConflictError: the slot was taken since availability was read
        """
        now = self._clock()
        service = await self._get_service(service_id)

        await self.availability.ensure_slot_available(
            scheduled_at,
            professional_id=professional_id,
            duration_minutes=service.duration_minutes,
            now=now,
        )

        status = AppointmentStatus.AGENDADO if direct else AppointmentStatus.PENDENTE
        row = self._row(
            service,
            scheduled_at,
            status,
            value if value is not None else service.price,
            client_id,
            client_email,
            professional_id,
            notes,
            now,
        )
        appointment_id = await self.store.insert_appointment(row)
        logger.info(f"Booked {appointment_id} at {scheduled_at.isoformat()} ({status.value})")
        return self._to_model(row, appointment_id, service.duration_minutes)

    async def book_package(
        self,
        service_id: str,
        starts: List[datetime],
        client_id: str = None,
        client_email: str = None,
        professional_id: str = None,
        notes: str = None,
    ) -> List[Appointment]:
        """
        Book the four sessions of a monthly package in one insert.

        Each session costs price / 4; the last one absorbs rounding so the
        sessions add up to the package price.
        """
        if len(starts) != PACKAGE_SIZE or len(set(starts)) != PACKAGE_SIZE:
            raise ValueError(f"A package needs {PACKAGE_SIZE} distinct session times")

        now = self._clock()
        service = await self._get_service(service_id)
        duration = timedelta(minutes=service.duration_minutes)
        starts = sorted(starts)

        for earlier, later in zip(starts, starts[1:]):
            if earlier + duration > later:
                raise SlotConflictError(professional_id, later, "Package sessions overlap each other")

        for start in starts:
            await self.availability.ensure_slot_available(
                start,
                professional_id=professional_id,
                duration_minutes=service.duration_minutes,
                now=now,
            )

        token = new_package_token(now)
        session_value = (service.price / PACKAGE_SIZE).quantize(Decimal("0.01"))
        values = [session_value] * (PACKAGE_SIZE - 1)
        values.append(service.price - session_value * (PACKAGE_SIZE - 1))

        rows = []
        for session, (start, value) in enumerate(zip(starts, values), start=1):
            row = self._row(
                service,
                start,
                AppointmentStatus.PENDENTE,
                value,
                client_id,
                client_email,
                professional_id,
                format_package_notes(notes, token, session),
                now,
            )
            if self.write_package_id:
                row["package_id"] = token
            rows.append(row)

        ids = await self.store.insert_appointments(rows)
        logger.info(f"Booked package {token} with sessions {', '.join(ids)}")
        return [self._to_model(row, row_id, service.duration_minutes) for row, row_id in zip(rows, ids)]

    async def _transition(self, appointment_id: str, target: AppointmentStatus) -> Appointment:
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        if appointment.is_terminal:
            raise InvalidTransitionError(appointment_id, appointment.status.value, target.value)

        updated = await self.store.update_appointment_status(
            [appointment_id], target, only_if_status=appointment.status
        )
        if not updated:
            fresh = await self.store.get_appointment(appointment_id)
            current = fresh.status.value if fresh else "deleted"
            raise InvalidTransitionError(appointment_id, current, target.value)

        logger.info(f"Appointment {appointment_id}: {appointment.status.value} -> {target.value}")
        return appointment.model_copy(update={"status": target})

    async def complete_appointment(self, appointment_id: str) -> Appointment:
        return await self._transition(appointment_id, AppointmentStatus.CONCLUIDO)

    async def cancel_appointment(self, appointment_id: str) -> Appointment:
        return await self._transition(appointment_id, AppointmentStatus.CANCELADO)

    async def remove_package_session(self, appointment_id: str) -> Dict[str, Any]:
        """
        Remove one session from the dashboard.

        While every session of the package is still pendente the whole package
        is deleted (payments first); otherwise only this session is cancelled.
        """
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)

        members = await self.store.list_package_members(appointment)
        if len(members) == PACKAGE_SIZE and all(
            m.status == AppointmentStatus.PENDENTE for m in members
        ):
            ids = [m.id for m in members]
            await self.store.delete_payments(ids)
            await self.store.delete_appointments(ids)
            logger.info(f"Deleted unpaid package of {appointment_id} ({len(ids)} sessions)")
            return {"action": "deleted", "appointment_ids": ids}

        await self.cancel_appointment(appointment_id)
        return {"action": "cancelled", "appointment_ids": [appointment_id]}
