"""
Tests for the Supabase record store and the professional-scoped capability
"""

from unittest.mock import AsyncMock, MagicMock, Mock

import httpx
import pytest
from postgrest.exceptions import APIError

from agenda.exceptions import RecordStoreError, SlotConflictError
from agenda.models.records import AppointmentStatus
from agenda.services.availability_service import compute_available_slots
from agenda.services.record_store import (
    AppointmentFilters,
    ProfessionalScopedStore,
    SupabaseRecordStore,
)
from tests.fakes import OTHER_OWNER_ID, OWNER_ID
from tests.fixtures import (
    BEFORE_MONDAY,
    MONDAY,
    TZ,
    at,
    create_test_appointment,
    create_test_settings,
)

CHAIN_METHODS = (
    "select", "eq", "in_", "gte", "lt", "lte", "ilike", "like", "order", "limit",
    "insert", "update", "delete",
)


def make_client(data=None, error=None):
    """Supabase client mock whose query builder chains onto itself"""
    query = MagicMock()
    for name in CHAIN_METHODS:
        getattr(query, name).return_value = query
    query.not_ = query
    if error is not None:
        query.execute = AsyncMock(side_effect=error)
    else:
        query.execute = AsyncMock(return_value=Mock(data=data))

    client = MagicMock()
    client.schema.return_value.table.return_value = query
    client.remove_channel = AsyncMock()
    return client, query


def appointment_row(**kwargs):
    row = {
        "id": "a-1",
        "owner_id": OWNER_ID,
        "scheduled_at": "2030-03-04T13:00:00+00:00",
        "status": "pendente",
        "value": 100,
    }
    row.update(kwargs)
    return row


class TestSupabaseRecordStore:

    async def test_list_appointments_is_owner_filtered(self):
        client, query = make_client([appointment_row()])
        store = SupabaseRecordStore(client)

        appointments = await store.list_appointments(OWNER_ID)

        client.schema.assert_called_with("public")
        client.schema.return_value.table.assert_called_with("appointments")
        query.eq.assert_any_call("owner_id", OWNER_ID)
        query.order.assert_called_with("scheduled_at")
        assert [a.id for a in appointments] == ["a-1"]

    async def test_filters_are_translated(self):
        client, query = make_client([])
        store = SupabaseRecordStore(client)

        await store.list_appointments(OWNER_ID, AppointmentFilters(
            statuses=[AppointmentStatus.PENDENTE],
            exclude_statuses=[AppointmentStatus.CANCELADO],
            start=at(0),
            client_email_contains="ana",
            notes_contains="PMT1",
        ))

        query.in_.assert_any_call("status", ["pendente"])
        query.in_.assert_any_call("status", ["cancelado"])
        query.gte.assert_called_with("scheduled_at", at(0).isoformat())
        query.ilike.assert_called_with("client_email", "%ana%")
        query.like.assert_called_with("notes", "%PMT1%")

    async def test_malformed_rows_are_skipped(self):
        client, _ = make_client([appointment_row(), {"id": "broken", "owner_id": OWNER_ID}])

        appointments = await SupabaseRecordStore(client).list_appointments(OWNER_ID)

        assert [a.id for a in appointments] == ["a-1"]

    async def test_embedded_service_duration(self):
        client, query = make_client([appointment_row(services={"duration_minutes": 60})])

        appointments = await SupabaseRecordStore(client).list_appointments(OWNER_ID)

        query.select.assert_called_with("*, services(duration_minutes)")
        assert appointments[0].duration_minutes == 60

    async def test_joined_duration_blocks_following_slot(self):
        # 10:00 local booking of a 60-minute service
        client, _ = make_client([appointment_row(
            scheduled_at=at(10).isoformat(),
            professional_id="pro-1",
            services={"duration_minutes": 60},
        )])
        existing = await SupabaseRecordStore(client).list_appointments(OWNER_ID)

        slots = compute_available_slots(
            MONDAY, 30, existing, create_test_settings(), [], [], BEFORE_MONDAY, TZ,
            professional_id="pro-1",
        )

        assert at(10) not in slots
        assert at(10, 30) not in slots
        assert slots == [at(9), at(9, 30), at(11), at(11, 30)]

    async def test_unique_violation_is_slot_conflict(self):
        error = APIError({"message": "duplicate key value violates unique constraint", "code": "23505"})
        client, _ = make_client(error=error)

        with pytest.raises(SlotConflictError):
            await SupabaseRecordStore(client).insert_appointment(appointment_row())

    async def test_api_error_is_store_error(self):
        client, _ = make_client(error=APIError({"message": "permission denied", "code": "42501"}))

        with pytest.raises(RecordStoreError) as exc_info:
            await SupabaseRecordStore(client).list_payments(OWNER_ID, ["a-1"])

        assert exc_info.value.operation == "list_payments"
        assert exc_info.value.retryable

    async def test_network_error_is_store_error(self):
        client, _ = make_client(error=httpx.ConnectError("down"))

        with pytest.raises(RecordStoreError):
            await SupabaseRecordStore(client).list_appointments(OWNER_ID)

    async def test_empty_id_lists_skip_the_query(self):
        client, query = make_client([])
        store = SupabaseRecordStore(client)

        assert await store.list_payments(OWNER_ID, []) == []
        assert await store.delete_appointments(OWNER_ID, []) == 0
        query.execute.assert_not_awaited()

    async def test_compare_and_set_update(self):
        client, query = make_client([{"id": "a-1"}])

        updated = await SupabaseRecordStore(client).update_appointment_status(
            OWNER_ID, ["a-1"], AppointmentStatus.CONFIRMADO,
            only_if_status=AppointmentStatus.PENDENTE, value_paid="50.00",
        )

        assert updated == ["a-1"]
        query.update.assert_called_with({"status": "confirmado", "value_paid": "50.00"})
        query.eq.assert_any_call("status", "pendente")

    async def test_lost_compare_and_set(self):
        client, _ = make_client([])

        changed = await SupabaseRecordStore(client).update_payment_status(
            OWNER_ID, "p-1", "pago", only_if_status="pendente"
        )

        assert changed is False

    async def test_subscribe_and_close(self):
        client, _ = make_client()
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        client.channel.return_value = channel
        events = []

        subscription = await SupabaseRecordStore(client).subscribe(OWNER_ID, "payments", events.append)

        kwargs = channel.on_postgres_changes.call_args.kwargs
        assert channel.on_postgres_changes.call_args.args == ("UPDATE",)
        assert kwargs["table"] == "payments"
        assert kwargs["filter"] == f"owner_id=eq.{OWNER_ID}"

        kwargs["callback"]({"data": {
            "type": "UPDATE",
            "record": {"id": "p-1", "status": "pago"},
            "old_record": {"id": "p-1", "status": "pendente"},
        }})
        assert events[0].record["status"] == "pago"
        assert events[0].old_record["status"] == "pendente"

        await subscription.close()
        await subscription.close()
        client.remove_channel.assert_awaited_once_with(channel)


class TestProfessionalScopedStore:

    def test_requires_owner(self):
        with pytest.raises(ValueError):
            ProfessionalScopedStore(Mock(), "")

    async def test_foreign_rows_are_dropped(self):
        backing = Mock()
        backing.list_appointments = AsyncMock(return_value=[
            create_test_appointment(id="mine"),
            create_test_appointment(id="theirs", owner_id=OTHER_OWNER_ID),
        ])
        scoped = ProfessionalScopedStore(backing, OWNER_ID)

        appointments = await scoped.list_appointments()

        assert [a.id for a in appointments] == ["mine"]
        backing.list_appointments.assert_awaited_once_with(OWNER_ID, None)

    async def test_inserts_are_stamped(self):
        backing = Mock()
        backing.insert_payment = AsyncMock(return_value="p-1")
        scoped = ProfessionalScopedStore(backing, OWNER_ID)

        await scoped.insert_payment({"appointment_id": "a-1"})

        backing.insert_payment.assert_awaited_once_with({"appointment_id": "a-1", "owner_id": OWNER_ID})

    async def test_foreign_insert_is_refused(self):
        scoped = ProfessionalScopedStore(Mock(), OWNER_ID)

        with pytest.raises(ValueError):
            await scoped.insert_appointment({"owner_id": OTHER_OWNER_ID})

    async def test_foreign_settings_are_ignored(self):
        backing = Mock()
        backing.get_calendar_settings = AsyncMock(return_value=create_test_settings(owner_id=OTHER_OWNER_ID))

        assert await ProfessionalScopedStore(backing, OWNER_ID).get_calendar_settings() is None

    async def test_foreign_realtime_events_are_dropped(self, store, scoped):
        events = []
        await scoped.subscribe("payments", events.append)

        # Bypass the backing store's own owner filter
        for _, _, callback, _ in store.subscribers:
            callback(Mock(record={"owner_id": OTHER_OWNER_ID}))
            callback(Mock(record={"owner_id": OWNER_ID}))

        assert len(events) == 1

    async def test_package_members(self, store, scoped):
        members = store.add_package()

        resolved = await scoped.list_package_members(members[3])

        assert [m.id for m in resolved] == [m.id for m in members]

    async def test_incomplete_package_is_single(self, store, scoped):
        members = store.add_package()
        del store.appointments[members[0].id]

        resolved = await scoped.list_package_members(members[1])

        assert [m.id for m in resolved] == [members[1].id]

    async def test_explicit_package_id(self, store, scoped):
        rows = [store.add_appointment(package_id="pkg-1", scheduled_at=at(9 + n)) for n in range(4)]

        resolved = await scoped.list_package_members(rows[0])

        assert [m.id for m in resolved] == [r.id for r in rows]
