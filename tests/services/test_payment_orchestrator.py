"""
Tests for PIX charge creation and confirmation
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from agenda.exceptions import (
    AppointmentNotFoundError,
    InvalidPaymentRequestError,
    PaymentConfigurationError,
    ProviderUnavailableError,
)
from agenda.models.records import AppointmentStatus, PaymentStatus
from agenda.services.payment_orchestrator import default_idempotency_key
from tests.conftest import FIXED_NOW


class TestRequestPayment:
    """Charge creation"""

    async def test_advance_payment_for_single_appointment(self, store, orchestrator, provider):
        appointment = store.add_appointment(value="100.00")

        payment = await orchestrator.request_payment_for(appointment.id)

        assert payment.value == Decimal("50.00")
        assert payment.percentage == Decimal("50.00")
        assert payment.status == PaymentStatus.PENDENTE
        assert payment.expires_at == FIXED_NOW + timedelta(minutes=30)
        assert payment.pix_payload.startswith("00020126")
        assert provider.charges[0]["amount"] == Decimal("50.00")
        assert provider.charges[0]["correlation_id"] == appointment.id
        assert store.payment(payment.id).appointment_id == appointment.id

    async def test_appointment_status_is_untouched(self, store, orchestrator):
        appointment = store.add_appointment()

        await orchestrator.request_payment_for(appointment.id)

        assert store.appointment(appointment.id).status == AppointmentStatus.PENDENTE

    async def test_explicit_percentage(self, store, orchestrator):
        appointment = store.add_appointment(value="80.00")

        payment = await orchestrator.request_payment_for(appointment.id, percentage=100)

        assert payment.value == Decimal("80.00")

    async def test_package_charges_full_total_without_expiry(self, store, orchestrator, provider):
        members = store.add_package(value="50.00")

        payment = await orchestrator.request_payment_for(members[2].id, percentage=30)

        assert payment.value == Decimal("200.00")
        assert payment.percentage == Decimal("100.00")
        assert payment.expires_at is None
        assert payment.appointment_id == members[0].id
        assert provider.charges[0]["expires_at"] is None

    async def test_package_with_cancelled_session_keeps_total(self, store, orchestrator):
        members = store.add_package(statuses=["cancelado", "pendente", "pendente", "pendente"])

        payment = await orchestrator.request_payment_for(members[1].id)

        assert payment.value == Decimal("200.00")
        assert payment.appointment_id == members[1].id

    @pytest.mark.parametrize("error", [
        ProviderUnavailableError("down"),
        PaymentConfigurationError(),
    ])
    async def test_provider_failure_writes_nothing(self, store, orchestrator, provider, error):
        appointment = store.add_appointment()
        provider.fail_with = error

        with pytest.raises(type(error)):
            await orchestrator.request_payment_for(appointment.id)

        assert store.payments == {}

    @pytest.mark.parametrize("status", ["cancelado", "concluido"])
    async def test_terminal_appointment_is_refused(self, store, orchestrator, provider, status):
        appointment = store.add_appointment(status=status)

        with pytest.raises(InvalidPaymentRequestError):
            await orchestrator.request_payment_for(appointment.id)

        assert provider.charges == []

    @pytest.mark.parametrize("percentage", [0, -10, 150])
    async def test_percentage_out_of_range(self, store, orchestrator, percentage):
        appointment = store.add_appointment()

        with pytest.raises(InvalidPaymentRequestError):
            await orchestrator.request_payment_for(appointment.id, percentage=percentage)

    async def test_zero_value_is_refused(self, store, orchestrator):
        appointment = store.add_appointment(value="0")

        with pytest.raises(InvalidPaymentRequestError):
            await orchestrator.request_payment_for(appointment.id)

    async def test_already_paid_is_refused(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        store.add_payment(appointment_id=appointment.id, status="pago")

        with pytest.raises(InvalidPaymentRequestError):
            await orchestrator.request_payment_for(appointment.id)

        assert provider.charges == []

    async def test_retry_with_same_key_returns_stored_payment(self, store, orchestrator):
        appointment = store.add_appointment()

        first = await orchestrator.request_payment_for(appointment.id, idempotency_key="key-1")
        second = await orchestrator.request_payment_for(appointment.id, idempotency_key="key-1")

        assert second.id == first.id
        assert len(store.payments) == 1

    async def test_concurrent_requests_create_one_charge(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        create_pix_charge = provider.create_pix_charge

        async def slow_charge(*args, **kwargs):
            await asyncio.sleep(0)
            return await create_pix_charge(*args, **kwargs)

        provider.create_pix_charge = slow_charge

        first, second = await asyncio.gather(
            orchestrator.request_payment_for(appointment.id),
            orchestrator.request_payment_for(appointment.id),
        )

        assert first.id == second.id
        assert len(provider.charges) == 1
        assert len(store.payments) == 1

    async def test_pending_charge_is_reused(self, store, orchestrator, provider):
        appointment = store.add_appointment(value="100.00")
        pending = store.add_payment(
            appointment_id=appointment.id, value="50.00", percentage="50",
            expires_at=FIXED_NOW + timedelta(minutes=10),
        )

        payment = await orchestrator.request_payment_for(appointment.id)

        assert payment.id == pending.id
        assert provider.charges == []

    async def test_other_percentage_gets_a_new_charge(self, store, orchestrator, provider):
        appointment = store.add_appointment(value="100.00")
        store.add_payment(
            appointment_id=appointment.id, value="50.00", percentage="50",
            expires_at=FIXED_NOW + timedelta(minutes=10),
        )

        payment = await orchestrator.request_payment_for(appointment.id, percentage=100)

        assert payment.value == Decimal("100.00")
        assert len(provider.charges) == 1

    async def test_expired_charge_is_replaced(self, store, orchestrator, provider):
        appointment = store.add_appointment(value="100.00")
        expired = store.add_payment(
            appointment_id=appointment.id, value="50.00", percentage="50",
            expires_at=FIXED_NOW - timedelta(minutes=1),
        )

        payment = await orchestrator.request_payment_for(appointment.id)

        assert payment.id != expired.id
        assert provider.charges[0]["idempotency_key"] == default_idempotency_key(
            appointment.id, Decimal("50.00"), Decimal("50.00"), 1
        )

    async def test_default_key_is_stable_across_retries(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        first = await orchestrator.request_payment_for(appointment.id)
        # The row never made it to the store
        del store.payments[first.id]

        second = await orchestrator.request_payment_for(appointment.id)

        assert len(provider.charges) == 1
        assert second.provider_reference == first.provider_reference
        assert provider.charges[0]["idempotency_key"] == default_idempotency_key(
            appointment.id, Decimal("50.00"), Decimal("50.00"), 0
        )

    async def test_unknown_appointment(self, orchestrator):
        with pytest.raises(AppointmentNotFoundError):
            await orchestrator.request_payment_for("missing")

    async def test_other_owner_appointment_is_invisible(self, store, orchestrator):
        appointment = store.add_appointment(owner_id="owner-2")

        with pytest.raises(AppointmentNotFoundError):
            await orchestrator.request_payment_for(appointment.id)


class TestApplyConfirmation:

    async def test_marks_payment_and_appointment(self, store, orchestrator):
        appointment = store.add_appointment(value="100.00")
        payment = store.add_payment(appointment_id=appointment.id, value="50.00")

        changed = await orchestrator.apply_confirmation(appointment.id)

        assert changed is True
        assert store.payment(payment.id).status == PaymentStatus.PAGO
        stored = store.appointment(appointment.id)
        assert stored.status == AppointmentStatus.CONFIRMADO
        assert stored.value_paid == Decimal("50.00")

    async def test_is_idempotent(self, store, orchestrator):
        appointment = store.add_appointment()
        store.add_payment(appointment_id=appointment.id)
        await orchestrator.apply_confirmation(appointment.id)
        calls = len(store.calls)

        changed = await orchestrator.apply_confirmation(appointment.id)

        assert changed is False
        assert "update_payment_status" not in store.calls[calls:]
        assert "update_appointment_status" not in store.calls[calls:]

    async def test_newest_pending_payment_is_flipped(self, store, orchestrator):
        appointment = store.add_appointment()
        older = store.add_payment(appointment_id=appointment.id)
        newer = store.add_payment(appointment_id=appointment.id)

        await orchestrator.apply_confirmation(appointment.id)

        assert store.payment(newer.id).status == PaymentStatus.PAGO
        assert store.payment(older.id).status == PaymentStatus.PENDENTE

    async def test_package_confirms_every_active_session(self, store, orchestrator):
        members = store.add_package(statuses=["pendente", "cancelado", "pendente", "agendado"])
        store.add_payment(appointment_id=members[0].id, value="200.00", percentage="100")

        await orchestrator.apply_confirmation(members[3].id)

        statuses = [store.appointment(m.id).status.value for m in members]
        assert statuses == ["confirmado", "cancelado", "confirmado", "confirmado"]
        assert store.appointment(members[2].id).value_paid == Decimal("50.00")
        assert store.appointment(members[1].id).value_paid == Decimal("0.00")

    async def test_without_payment_changes_nothing(self, store, orchestrator):
        appointment = store.add_appointment()

        assert await orchestrator.apply_confirmation(appointment.id) is False
        assert store.appointment(appointment.id).status == AppointmentStatus.PENDENTE

    async def test_terminal_appointment_is_never_moved(self, store, orchestrator):
        appointment = store.add_appointment(status="cancelado")
        store.add_payment(appointment_id=appointment.id)

        await orchestrator.apply_confirmation(appointment.id)

        assert store.appointment(appointment.id).status == AppointmentStatus.CANCELADO

    async def test_concurrent_confirmations_write_once(self, store, orchestrator):
        appointment = store.add_appointment()
        store.add_payment(appointment_id=appointment.id)

        results = await asyncio.gather(
            orchestrator.apply_confirmation(appointment.id),
            orchestrator.apply_confirmation(appointment.id),
        )

        assert sorted(results) == [False, True]
        assert store.calls.count("update_payment_status") == 1
        assert store.calls.count("update_appointment_status") == 1


class TestCheckWithProvider:

    async def test_confirmed_by_provider(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        payment = await orchestrator.request_payment_for(appointment.id)
        provider.confirm(appointment.id)

        check = await orchestrator.check_with_provider(appointment.id)

        assert check.confirmed
        assert check.applied
        assert check.payment_id == payment.id
        assert store.appointment(appointment.id).status == AppointmentStatus.CONFIRMADO

    async def test_still_pending(self, store, orchestrator):
        appointment = store.add_appointment()
        await orchestrator.request_payment_for(appointment.id)

        check = await orchestrator.check_with_provider(appointment.id)

        assert check.status == "pending"
        assert not check.confirmed
        assert store.appointment(appointment.id).status == AppointmentStatus.PENDENTE

    async def test_rejected_marks_payment(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        payment = await orchestrator.request_payment_for(appointment.id)
        provider.reject(appointment.id)

        check = await orchestrator.check_with_provider(appointment.id)

        assert check.status == "rejected"
        assert store.payment(payment.id).status == PaymentStatus.REJEITADO
        assert store.appointment(appointment.id).status == AppointmentStatus.PENDENTE

    async def test_expired_payment_is_not_sent_to_provider(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        store.add_payment(appointment_id=appointment.id, expires_at=FIXED_NOW - timedelta(minutes=1))

        check = await orchestrator.check_with_provider(appointment.id)

        assert check.status == "expired"
        assert provider.check_calls == []

    async def test_no_payment(self, store, orchestrator):
        appointment = store.add_appointment()

        check = await orchestrator.check_with_provider(appointment.id)

        assert check.status == "not_found"

    async def test_already_paid_catches_up_appointment(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        store.add_payment(appointment_id=appointment.id, status="pago")

        check = await orchestrator.check_with_provider(appointment.id)

        assert check.confirmed
        assert provider.check_calls == []
        assert store.appointment(appointment.id).status == AppointmentStatus.CONFIRMADO

    async def test_package_is_checked_through_its_anchor(self, store, orchestrator, provider):
        members = store.add_package()
        await orchestrator.request_payment_for(members[0].id)
        provider.confirm(members[0].id)

        check = await orchestrator.check_with_provider(members[3].id)

        assert check.confirmed
        assert provider.check_calls == [members[0].id]
        assert all(store.appointment(m.id).status == AppointmentStatus.CONFIRMADO for m in members)


class TestProviderNotification:

    async def test_approved_charge_confirms(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        payment = await orchestrator.request_payment_for(appointment.id)
        provider.confirm(appointment.id)

        assert await orchestrator.handle_provider_notification(payment.provider_reference) is True
        assert store.payment(payment.id).status == PaymentStatus.PAGO

    async def test_pending_charge_is_ignored(self, store, orchestrator):
        appointment = store.add_appointment()
        payment = await orchestrator.request_payment_for(appointment.id)

        assert await orchestrator.handle_provider_notification(payment.provider_reference) is False
        assert store.payment(payment.id).status == PaymentStatus.PENDENTE

    async def test_charge_for_unknown_appointment(self, store, orchestrator, provider):
        appointment = store.add_appointment()
        payment = await orchestrator.request_payment_for(appointment.id)
        provider.confirm(appointment.id)
        del store.appointments[appointment.id]

        assert await orchestrator.handle_provider_notification(payment.provider_reference) is False
