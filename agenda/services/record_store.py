"""
Record Store Adapter

Typed queries and mutations over the appointment/payment table set, plus a
realtime change feed. The core never talks to this layer directly: it goes
through ProfessionalScopedStore, which bakes the owner id into every call.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

import httpx
from postgrest.exceptions import APIError
from pydantic import ValidationError

from ..exceptions import RecordStoreError, SlotConflictError
from ..models.records import (
    Appointment,
    AppointmentStatus,
    CalendarSettings,
    ClosedDate,
    ClosedTimeSlot,
    Payment,
    PaymentStatus,
    Service,
)
from .package_aggregator import PACKAGE_SIZE, package_key, parse_package_token

logger = logging.getLogger(__name__)

APPOINTMENTS_TABLE = "appointments"
PAYMENTS_TABLE = "payments"
SERVICES_TABLE = "services"
CALENDAR_SETTINGS_TABLE = "calendar_settings"
CLOSED_DATES_TABLE = "calendar_closed_dates"
CLOSED_TIME_SLOTS_TABLE = "calendar_closed_time_slots"

# Embeds the booked service so each appointment blocks its real duration
APPOINTMENT_SELECT = "*, services(duration_minutes)"


@dataclass
class AppointmentFilters:
    """Filters for list_appointments. Date range is half-open [start, end)."""
    statuses: Optional[Sequence[AppointmentStatus]] = None
    exclude_statuses: Optional[Sequence[AppointmentStatus]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    client_email_contains: Optional[str] = None
    professional_id: Optional[str] = None
    client_id: Optional[str] = None
    notes_contains: Optional[str] = None
    package_id: Optional[str] = None
    ids: Optional[Sequence[str]] = None

    def matches(self, appointment: Appointment) -> bool:
        """In-memory evaluation of the same filters (used for realtime rows and fakes)."""
        if self.statuses is not None and appointment.status not in self.statuses:
            return False
        if self.exclude_statuses and appointment.status in self.exclude_statuses:
            return False
        if self.start is not None and appointment.scheduled_at < self.start:
            return False
        if self.end is not None and appointment.scheduled_at >= self.end:
            return False
        if self.client_email_contains:
            email = (appointment.client_email or "").lower()
            if self.client_email_contains.lower() not in email:
                return False
        if self.professional_id and appointment.professional_id != self.professional_id:
            return False
        if self.client_id and appointment.client_id != self.client_id:
            return False
        if self.notes_contains and self.notes_contains not in (appointment.notes or ""):
            return False
        if self.package_id and appointment.package_id != self.package_id:
            return False
        if self.ids is not None and appointment.id not in self.ids:
            return False
        return True


@dataclass
class ChangeEvent:
    """One realtime change delivered by a subscription."""
    table: str
    event_type: str
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)


class Subscription(Protocol):
    async def close(self) -> None: ...


class RecordStore(Protocol):
    """Operations the core consumes from a relational store."""

    async def list_appointments(
        self, owner_id: str, filters: Optional[AppointmentFilters] = None
    ) -> List[Appointment]: ...

    async def list_payments(self, owner_id: str, appointment_ids: Iterable[str]) -> List[Payment]: ...

    async def insert_appointment(self, fields: Dict[str, Any]) -> str: ...

    async def insert_appointments(self, rows: List[Dict[str, Any]]) -> List[str]: ...

    async def update_appointment_status(
        self,
        owner_id: str,
        ids: Sequence[str],
        status: AppointmentStatus,
        only_if_status: Optional[AppointmentStatus] = None,
        value_paid=None,
    ) -> List[str]: ...

    async def delete_appointments(self, owner_id: str, ids: Sequence[str]) -> int: ...

    async def insert_payment(self, fields: Dict[str, Any]) -> str: ...

    async def update_payment_status(
        self,
        owner_id: str,
        payment_id: str,
        status: PaymentStatus,
        only_if_status: Optional[PaymentStatus] = None,
    ) -> bool: ...

    async def delete_payments(self, owner_id: str, appointment_ids: Sequence[str]) -> int: ...

    async def get_calendar_settings(
        self, owner_id: str, professional_id: Optional[str]
    ) -> Optional[CalendarSettings]: ...

    async def list_closed_dates(
        self, owner_id: str, professional_id: Optional[str], start: date, end: date
    ) -> List[ClosedDate]: ...

    async def list_closed_time_slots(
        self, owner_id: str, professional_id: Optional[str], target_date: date
    ) -> List[ClosedTimeSlot]: ...

    async def get_service(self, owner_id: str, service_id: str) -> Optional[Service]: ...

    async def subscribe(
        self,
        owner_id: str,
        table: str,
        on_change: Callable[[ChangeEvent], None],
        event: str = "UPDATE",
    ) -> Subscription: ...


def _parse_rows(model, rows: Iterable[Dict[str, Any]], table: str) -> list:
    """Validate rows, skipping (and logging) the ones that cannot be read."""
    parsed = []
    for row in rows or []:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {table} row {row.get('id')}: {e.error_count()} errors")
    return parsed


def _appointment_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the embedded service (when selected) into duration_minutes."""
    service = row.get("services")
    if isinstance(service, dict) and service.get("duration_minutes") and not row.get("duration_minutes"):
        row = {**row, "duration_minutes": service["duration_minutes"]}
    return row


def _status_value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


class _RealtimeSubscription:
    def __init__(self, client, channel):
        self._client = client
        self._channel = channel

    async def close(self) -> None:
        if self._channel is None:
            return
        channel, self._channel = self._channel, None
        await self._client.remove_channel(channel)


class SupabaseRecordStore:
    """RecordStore over the async supabase-py client."""

    def __init__(self, client, schema: str = "public", appointment_select: str = APPOINTMENT_SELECT):
        """
        Args:
            client: supabase AsyncClient (see agenda.database.get_async_client)
            schema: Schema holding the tables
            appointment_select: Select clause for appointments; "*" skips the
                service embed and every row falls back to the default duration
        """
        self.client = client
        self.schema = schema
        self.appointment_select = appointment_select

    def _table(self, name: str):
        return self.client.schema(self.schema).table(name)

    async def _execute(self, operation: str, query):
        try:
            return await query.execute()
        except APIError as e:
            if e.code == "23505" or "duplicate key" in str(e).lower():
                raise SlotConflictError(message=f"Unique constraint hit during {operation}") from e
            logger.error(f"Store error during {operation}: {e}")
            raise RecordStoreError(operation, e) from e
        except httpx.HTTPError as e:
            logger.error(f"Store unreachable during {operation}: {e}")
            raise RecordStoreError(operation, e) from e

    async def list_appointments(self, owner_id, filters=None):
        filters = filters or AppointmentFilters()
        query = self._table(APPOINTMENTS_TABLE).select(self.appointment_select).eq("owner_id", owner_id)

        if filters.statuses is not None:
            query = query.in_("status", [_status_value(s) for s in filters.statuses])
        if filters.exclude_statuses:
            query = query.not_.in_("status", [_status_value(s) for s in filters.exclude_statuses])
        if filters.start is not None:
            query = query.gte("scheduled_at", filters.start.isoformat())
        if filters.end is not None:
            query = query.lt("scheduled_at", filters.end.isoformat())
        if filters.client_email_contains:
            query = query.ilike("client_email", f"%{filters.client_email_contains}%")
        if filters.professional_id:
            query = query.eq("professional_id", filters.professional_id)
        if filters.client_id:
            query = query.eq("client_id", filters.client_id)
        if filters.notes_contains:
            query = query.like("notes", f"%{filters.notes_contains}%")
        if filters.package_id:
            query = query.eq("package_id", filters.package_id)
        if filters.ids is not None:
            query = query.in_("id", list(filters.ids))

        result = await self._execute("list_appointments", query.order("scheduled_at"))
        rows = [_appointment_row(row) for row in result.data or []]
        return _parse_rows(Appointment, rows, APPOINTMENTS_TABLE)

    async def list_payments(self, owner_id, appointment_ids):
        ids = list(appointment_ids)
        if not ids:
            return []
        query = (
            self._table(PAYMENTS_TABLE)
            .select("*")
            .eq("owner_id", owner_id)
            .in_("appointment_id", ids)
            .order("created_at", desc=True)
        )
        result = await self._execute("list_payments", query)
        return _parse_rows(Payment, result.data, PAYMENTS_TABLE)

    async def insert_appointment(self, fields):
        ids = await self.insert_appointments([fields])
        return ids[0]

    async def insert_appointments(self, rows):
        result = await self._execute(
            "insert_appointments", self._table(APPOINTMENTS_TABLE).insert(rows)
        )
        if not result.data or len(result.data) != len(rows):
            raise RecordStoreError("insert_appointments", ValueError("insert returned no rows"))
        return [row["id"] for row in result.data]

    async def update_appointment_status(
        self, owner_id, ids, status, only_if_status=None, value_paid=None
    ):
        if not ids:
            return []
        update = {"status": _status_value(status)}
        if value_paid is not None:
            update["value_paid"] = str(value_paid)
        query = (
            self._table(APPOINTMENTS_TABLE)
            .update(update)
            .eq("owner_id", owner_id)
            .in_("id", list(ids))
        )
        if only_if_status is not None:
            query = query.eq("status", _status_value(only_if_status))
        result = await self._execute("update_appointment_status", query)
        return [row["id"] for row in result.data or []]

    async def delete_appointments(self, owner_id, ids):
        if not ids:
            return 0
        query = self._table(APPOINTMENTS_TABLE).delete().eq("owner_id", owner_id).in_("id", list(ids))
        result = await self._execute("delete_appointments", query)
        return len(result.data or [])

    async def insert_payment(self, fields):
        result = await self._execute("insert_payment", self._table(PAYMENTS_TABLE).insert(fields))
        if not result.data:
            raise RecordStoreError("insert_payment", ValueError("insert returned no rows"))
        return result.data[0]["id"]

    async def update_payment_status(self, owner_id, payment_id, status, only_if_status=None):
        query = (
            self._table(PAYMENTS_TABLE)
            .update({"status": _status_value(status)})
            .eq("owner_id", owner_id)
            .eq("id", payment_id)
        )
        if only_if_status is not None:
            query = query.eq("status", _status_value(only_if_status))
        result = await self._execute("update_payment_status", query)
        return bool(result.data)

    async def delete_payments(self, owner_id, appointment_ids):
        if not appointment_ids:
            return 0
        query = (
            self._table(PAYMENTS_TABLE)
            .delete()
            .eq("owner_id", owner_id)
            .in_("appointment_id", list(appointment_ids))
        )
        result = await self._execute("delete_payments", query)
        return len(result.data or [])

    async def get_calendar_settings(self, owner_id, professional_id):
        query = self._table(CALENDAR_SETTINGS_TABLE).select("*").eq("owner_id", owner_id)
        if professional_id:
            query = query.eq("professional_id", professional_id)
        result = await self._execute("get_calendar_settings", query.limit(1))
        settings = _parse_rows(CalendarSettings, result.data, CALENDAR_SETTINGS_TABLE)
        return settings[0] if settings else None

    async def list_closed_dates(self, owner_id, professional_id, start, end):
        query = (
            self._table(CLOSED_DATES_TABLE)
            .select("*")
            .eq("owner_id", owner_id)
            .gte("date", start.isoformat())
            .lte("date", end.isoformat())
        )
        if professional_id:
            query = query.eq("professional_id", professional_id)
        result = await self._execute("list_closed_dates", query)
        return _parse_rows(ClosedDate, result.data, CLOSED_DATES_TABLE)

    async def list_closed_time_slots(self, owner_id, professional_id, target_date):
        query = (
            self._table(CLOSED_TIME_SLOTS_TABLE)
            .select("*")
            .eq("owner_id", owner_id)
            .eq("date", target_date.isoformat())
        )
        if professional_id:
            query = query.eq("professional_id", professional_id)
        result = await self._execute("list_closed_time_slots", query)
        return _parse_rows(ClosedTimeSlot, result.data, CLOSED_TIME_SLOTS_TABLE)

    async def get_service(self, owner_id, service_id):
        query = self._table(SERVICES_TABLE).select("*").eq("owner_id", owner_id).eq("id", service_id)
        result = await self._execute("get_service", query.limit(1))
        services = _parse_rows(Service, result.data, SERVICES_TABLE)
        return services[0] if services else None

    async def subscribe(self, owner_id, table, on_change, event="UPDATE"):
        def _deliver(payload):
            data = payload.get("data", payload) if isinstance(payload, dict) else {}
            on_change(ChangeEvent(
                table=table,
                event_type=data.get("type") or event,
                record=data.get("record") or data.get("new") or {},
                old_record=data.get("old_record") or data.get("old") or {},
            ))

        channel = self.client.channel(f"{table}-{owner_id}")
        channel.on_postgres_changes(
            event,
            schema=self.schema,
            table=table,
            filter=f"owner_id=eq.{owner_id}",
            callback=_deliver,
        )
        await channel.subscribe()
        logger.info(f"Subscribed to {event} on {table} for owner {owner_id}")
        return _RealtimeSubscription(self.client, channel)


class ProfessionalScopedStore:
    """
    Capability object bound to one owning professional.

    Every read is filtered by owner id and rows belonging to another owner are
    dropped even if the backing store returned them. Every insert is stamped
    with the owner id.
    """

    def __init__(self, store: RecordStore, owner_id: str):
        if not owner_id:
            raise ValueError("owner_id is required")
        self._store = store
        self.owner_id = owner_id

    def _own(self, records):
        kept = [r for r in records if r.owner_id == self.owner_id]
        if len(kept) != len(records):
            logger.warning(
                f"Dropped {len(records) - len(kept)} rows outside owner {self.owner_id}"
            )
        return kept

    def _stamp(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        owner = fields.get("owner_id")
        if owner and owner != self.owner_id:
            raise ValueError(f"Refusing to write a row for owner {owner}")
        return {**fields, "owner_id": self.owner_id}

    async def list_appointments(self, filters: AppointmentFilters = None) -> List[Appointment]:
        return self._own(await self._store.list_appointments(self.owner_id, filters))

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        rows = await self.list_appointments(AppointmentFilters(ids=[appointment_id]))
        return rows[0] if rows else None

    async def list_package_members(self, appointment: Appointment) -> List[Appointment]:
        """
        Every session of appointment's package, ordered by scheduled time.

        Returns [appointment] when it is not part of a package or the package
        does not resolve to exactly four rows.
        """
        key = package_key(appointment)
        if key is None:
            return [appointment]

        if appointment.package_id:
            filters = AppointmentFilters(package_id=appointment.package_id)
        else:
            filters = AppointmentFilters(notes_contains=parse_package_token(appointment.notes))
        members = [a for a in await self.list_appointments(filters) if package_key(a) == key]

        if len(members) != PACKAGE_SIZE:
            logger.warning(
                f"Package {key} of appointment {appointment.id} has {len(members)} rows, "
                f"treating it as a single appointment"
            )
            return [appointment]
        return sorted(members, key=lambda a: a.scheduled_at)

    async def list_payments(self, appointment_ids: Iterable[str]) -> List[Payment]:
        return self._own(await self._store.list_payments(self.owner_id, list(appointment_ids)))

    async def insert_appointment(self, fields: Dict[str, Any]) -> str:
        return await self._store.insert_appointment(self._stamp(fields))

    async def insert_appointments(self, rows: List[Dict[str, Any]]) -> List[str]:
        return await self._store.insert_appointments([self._stamp(row) for row in rows])

    async def update_appointment_status(self, ids, status, only_if_status=None, value_paid=None):
        return await self._store.update_appointment_status(
            self.owner_id, list(ids), status, only_if_status=only_if_status, value_paid=value_paid
        )

    async def delete_appointments(self, ids) -> int:
        return await self._store.delete_appointments(self.owner_id, list(ids))

    async def insert_payment(self, fields: Dict[str, Any]) -> str:
        return await self._store.insert_payment(self._stamp(fields))

    async def update_payment_status(self, payment_id, status, only_if_status=None) -> bool:
        return await self._store.update_payment_status(
            self.owner_id, payment_id, status, only_if_status=only_if_status
        )

    async def delete_payments(self, appointment_ids) -> int:
        return await self._store.delete_payments(self.owner_id, list(appointment_ids))

    async def get_calendar_settings(self, professional_id=None) -> Optional[CalendarSettings]:
        settings = await self._store.get_calendar_settings(self.owner_id, professional_id)
        if settings is not None and settings.owner_id != self.owner_id:
            logger.warning(f"Ignoring calendar settings of owner {settings.owner_id}")
            return None
        return settings

    async def list_closed_dates(self, professional_id, start, end) -> List[ClosedDate]:
        return self._own(await self._store.list_closed_dates(self.owner_id, professional_id, start, end))

    async def list_closed_time_slots(self, professional_id, target_date) -> List[ClosedTimeSlot]:
        return self._own(
            await self._store.list_closed_time_slots(self.owner_id, professional_id, target_date)
        )

    async def get_service(self, service_id: str) -> Optional[Service]:
        service = await self._store.get_service(self.owner_id, service_id)
        if service is not None and service.owner_id != self.owner_id:
            return None
        return service

    async def subscribe(self, table: str, on_change, event: str = "UPDATE") -> Subscription:
        def _scoped(change: ChangeEvent):
            owner = change.record.get("owner_id")
            if owner is not None and owner != self.owner_id:
                logger.warning(f"Dropped realtime event on {table} for owner {owner}")
                return
            on_change(change)

        return await self._store.subscribe(self.owner_id, table, _scoped, event=event)
