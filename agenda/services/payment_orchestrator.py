"""
Payment Orchestrator

Only writer of new payment rows. Requests a PIX charge from the provider,
persists it as a pending payment, and applies confirmations (from polling,
realtime or provider webhooks) to the payment and appointment rows.

The appointment's raw status is left alone until a payment becomes pago.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Union

from .. import config
from ..exceptions import AppointmentNotFoundError, InvalidPaymentRequestError
from ..models.records import Appointment, AppointmentStatus, Payment, PaymentStatus, to_money
from ..resilience import with_retry
from .locks import AppointmentLocks, get_appointment_locks
from .package_aggregator import PackageAggregate, package_key
from .pix_provider import PaymentProvider, ProviderPaymentStatus, ProviderStatus
from .record_store import ProfessionalScopedStore

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass
class PaymentCheck:
    """Outcome of asking the provider about an appointment's pending payment."""
    status: str  # confirmed | pending | rejected | expired | not_found
    applied: bool = False
    payment_id: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status == ProviderStatus.CONFIRMED.value


def _newest_first(payments: List[Payment]) -> List[Payment]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(payments, key=lambda p: p.created_at or epoch, reverse=True)


def default_idempotency_key(anchor_id: str, amount: Decimal, percent: Decimal, attempt: int) -> str:
    """Stable provider key for the `attempt`-th charge of an appointment or package."""
    digest = hashlib.sha256(f"{amount}:{percent}".encode()).hexdigest()[:12]
    return f"pix-{anchor_id}-{attempt}-{digest}"


def find_reusable_payment(
    payments: List[Payment], amount: Decimal, percent: Decimal, now: datetime
) -> Optional[Payment]:
    """Newest pending, unexpired payment charging `amount` at `percent`, if any."""
    for payment in _newest_first(payments):
        if (
            payment.status == PaymentStatus.PENDENTE
            and not payment.is_expired(now)
            and payment.value == amount
            and payment.percentage == percent
        ):
            return payment
    return None


class PaymentOrchestrator:
    """Drives PIX charges and confirmations for one professional."""

    def __init__(
        self,
        store: ProfessionalScopedStore,
        provider: PaymentProvider,
        locks: AppointmentLocks = None,
        expiry_minutes: int = None,
        default_percentage: int = None,
        clock: Callable[[], datetime] = None,
    ):
        self.store = store
        self.provider = provider
        self.locks = locks or get_appointment_locks()
        self.expiry_minutes = expiry_minutes if expiry_minutes is not None else config.PIX_EXPIRY_MINUTES
        self.default_percentage = (
            default_percentage if default_percentage is not None else config.DEFAULT_ADVANCE_PERCENTAGE
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Package resolution
    # ------------------------------------------------------------------

    async def resolve_members(self, appointment: Appointment) -> List[Appointment]:
        """All sessions of appointment's package, or [appointment] when it is not a valid package."""
        return await self.store.list_package_members(appointment)

    async def load_target(self, appointment_id: str) -> Union[Appointment, PackageAggregate]:
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        members = await self.resolve_members(appointment)
        if len(members) == 1:
            return appointment
        payments = await self.store.list_payments(m.id for m in members)
        return PackageAggregate(token=package_key(appointment), members=members, payments=payments)

    # ------------------------------------------------------------------
    # Charge creation
    # ------------------------------------------------------------------

    async def request_payment(
        self,
        target: Union[Appointment, PackageAggregate],
        percentage: Optional[Union[int, Decimal]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Payment:
        """
        Create a PIX charge and persist it as a pending payment.

        Args:
            target: A single appointment or a package aggregate
            percentage: Advance percentage for a single appointment
                (defaults to DEFAULT_ADVANCE_PERCENTAGE, ignored for packages)
            idempotency_key: Forwarded to the provider; derived from the anchor,
                amount and attempt number when omitted, so a retried request
                reuses the same provider charge

        Returns:
            The pending payment row
            (an unexpired pending payment for the same amount is returned as is)

        Raises:
            InvalidPaymentRequestError: terminal, already paid, or nothing to charge
            ProviderUnavailableError: provider unreachable or no PIX code (nothing written)
            PaymentConfigurationError: credentials missing or rejected (nothing written)
        """
        now = self._clock()

        if isinstance(target, PackageAggregate):
            members = target.members
            anchor = target.representative
            if target.active_count == 0:
                raise InvalidPaymentRequestError(anchor.id, "package has no active sessions")
            amount = target.total_value
            percent = HUNDRED
            expires_at = None
            description = f"Pacote mensal {target.token}"
        else:
            members = [target]
            anchor = target
            if target.is_terminal:
                raise InvalidPaymentRequestError(target.id, f"appointment is {target.status.value}")
            percent = to_money(percentage if percentage is not None else self.default_percentage)
            if percent <= 0 or percent > HUNDRED:
                raise InvalidPaymentRequestError(target.id, f"percentage {percent} out of range")
            amount = (target.value * percent / HUNDRED).quantize(Decimal("0.01"))
            expires_at = now + timedelta(minutes=self.expiry_minutes)
            description = f"Agendamento {target.id}"

        if amount <= 0:
            raise InvalidPaymentRequestError(anchor.id, "nothing to charge")

        async with self.locks.acquire(package_key(anchor) or anchor.id):
            existing = await self.store.list_payments(m.id for m in members)
            if any(p.status == PaymentStatus.PAGO for p in existing):
                raise InvalidPaymentRequestError(anchor.id, "already paid")

            reusable = find_reusable_payment(existing, amount, percent, now)
            if reusable is not None:
                logger.info(f"Reusing pending payment {reusable.id} for {anchor.id}")
                return reusable

            if idempotency_key is None:
                idempotency_key = default_idempotency_key(anchor.id, amount, percent, len(existing))

            # Provider first: a failure here leaves no row behind
            charge = await self.provider.create_pix_charge(
                amount,
                description,
                anchor.id,
                idempotency_key=idempotency_key,
                expires_at=expires_at,
            )

            for payment in existing:
                if payment.provider_reference == charge.provider_reference:
                    logger.info(
                        f"Charge {charge.provider_reference} already stored as payment {payment.id}"
                    )
                    return payment

            return await self._store_charge(anchor, charge, amount, percent, expires_at, now)

    async def _store_charge(self, anchor, charge, amount, percent, expires_at, now) -> Payment:
        fields = {
            "id": str(uuid.uuid4()),
            "appointment_id": anchor.id,
            "value": str(amount),
            "percentage": str(percent),
            "status": PaymentStatus.PENDENTE.value,
            "provider_reference": charge.provider_reference,
            "pix_payload": charge.pix_payload,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "created_at": now.isoformat(),
        }
        payment_id = await self.store.insert_payment(fields)
        logger.info(
            f"Pending payment {payment_id} for {anchor.id}: {amount} ({percent}%), "
            f"expires {expires_at.isoformat() if expires_at else 'never'}"
        )
        return Payment.model_validate({**fields, "id": payment_id, "owner_id": self.store.owner_id})

    async def request_payment_for(
        self,
        appointment_id: str,
        percentage: Optional[Union[int, Decimal]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Payment:
        """request_payment() for an appointment id, resolving its package."""
        target = await self.load_target(appointment_id)
        return await self.request_payment(target, percentage, idempotency_key=idempotency_key)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def apply_confirmation(self, appointment_id: str) -> bool:
        """
        Record that the appointment (or its package) has been paid.

        Flips the newest pending payment to pago unless one is already pago,
        then moves every non-terminal member to confirmado with value_paid.
        Safe to call any number of times.

        Returns:
            Whether anything was written
        """
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)

        async with self.locks.acquire(package_key(appointment) or appointment_id):
            # Re-read under the lock: a concurrent confirmation may have moved the row
            appointment = await self.store.get_appointment(appointment_id)
            if appointment is None:
                raise AppointmentNotFoundError(appointment_id)
            members = await self.resolve_members(appointment)
            member_ids = [m.id for m in members]
            payments = await self.store.list_payments(member_ids)
            changed = False

            if not any(p.status == PaymentStatus.PAGO for p in payments):
                pending = [p for p in _newest_first(payments) if p.status == PaymentStatus.PENDENTE]
                if not pending:
                    logger.warning(f"Confirmation for {appointment_id} without a payment to mark as paid")
                    return False
                changed = await self.store.update_payment_status(
                    pending[0].id, PaymentStatus.PAGO, only_if_status=PaymentStatus.PENDENTE
                )
                if changed:
                    logger.info(f"Payment {pending[0].id} marked as pago")
                payments = await self.store.list_payments(member_ids)
                if not any(p.status == PaymentStatus.PAGO for p in payments):
                    logger.warning(f"Payment {pending[0].id} changed concurrently, not confirming")
                    return changed

            paid_total = sum((p.value for p in payments if p.status == PaymentStatus.PAGO), Decimal("0.00"))
            is_package = len(members) > 1

            for member in members:
                if member.is_terminal or member.status == AppointmentStatus.CONFIRMADO:
                    continue
                value_paid = member.value if is_package else paid_total
                updated = await self.store.update_appointment_status(
                    [member.id],
                    AppointmentStatus.CONFIRMADO,
                    only_if_status=member.status,
                    value_paid=value_paid,
                )
                if updated:
                    changed = True
                    logger.info(f"Appointment {member.id} confirmed ({member.status.value} -> confirmado)")

            return changed

    async def check_with_provider(self, appointment_id: str) -> PaymentCheck:
        """Ask the provider about the newest pending payment and apply a confirmation."""
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)

        members = await self.resolve_members(appointment)
        payments = _newest_first(await self.store.list_payments(m.id for m in members))

        paid = [p for p in payments if p.status == PaymentStatus.PAGO]
        if paid:
            # Paid elsewhere (webhook, realtime); make sure the appointment rows caught up
            applied = await self.apply_confirmation(appointment_id)
            return PaymentCheck(ProviderStatus.CONFIRMED.value, applied, paid[0].id)

        pending = [p for p in payments if p.status == PaymentStatus.PENDENTE]
        if not pending:
            return PaymentCheck("not_found")

        payment = pending[0]
        if payment.is_expired(self._clock()):
            return PaymentCheck("expired", payment_id=payment.id)

        result: ProviderPaymentStatus = await self.provider.check_payment_status(
            payment.appointment_id or appointment_id, expected_amount=payment.value
        )

        if result.status == ProviderStatus.CONFIRMED:
            applied = await self.apply_confirmation(appointment_id)
            return PaymentCheck(result.status.value, applied, payment.id)

        if result.status == ProviderStatus.REJECTED:
            await self.store.update_payment_status(
                payment.id, PaymentStatus.REJEITADO, only_if_status=PaymentStatus.PENDENTE
            )
            logger.info(f"Payment {payment.id} rejected by provider")
            return PaymentCheck(result.status.value, True, payment.id)

        return PaymentCheck(result.status.value, payment_id=payment.id)

    @with_retry(max_attempts=3, delay=0.5)
    async def handle_provider_notification(self, provider_reference: str) -> bool:
        """
        Apply a provider webhook for one charge.

        Returns:
            Whether the notification confirmed a payment of this professional
        """
        result = await self.provider.get_payment(provider_reference)
        if result.status != ProviderStatus.CONFIRMED:
            logger.info(f"Provider notification for {provider_reference}: {result.status.value}")
            return False
        if not result.correlation_id:
            logger.warning(f"Approved charge {provider_reference} has no external_reference")
            return False

        try:
            await self.apply_confirmation(result.correlation_id)
        except AppointmentNotFoundError:
            logger.warning(
                f"Approved charge {provider_reference} references unknown appointment "
                f"{result.correlation_id}"
            )
            return False
        return True
