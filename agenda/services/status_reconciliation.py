"""
Status Reconciliation

Display status is derived on every read from the raw appointment status and
the payment rows, never trusted from the raw column alone. Precedence, highest
first:

    1. raw concluido                          -> concluido
    2. raw cancelado                          -> cancelado
    3. any payment pago                       -> agendado (confirmado for packages)
    4. raw confirmado                         -> agendado
    5. any payment pendente                   -> pendente
    6. no payments                            -> raw status, confirmado read as agendado

Nothing in this module writes to the store or raises on bad input.
"""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.records import Appointment, AppointmentStatus, Payment, PaymentStatus
from .package_aggregator import PackageAggregate, aggregate_packages

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def derive_display_status(appointment: Appointment, payments: Iterable[Payment]) -> AppointmentStatus:
    """Display status for a single (non-package) appointment."""
    payments = list(payments)
    raw = appointment.status

    if raw == AppointmentStatus.CONCLUIDO:
        return AppointmentStatus.CONCLUIDO
    if raw == AppointmentStatus.CANCELADO:
        return AppointmentStatus.CANCELADO
    if any(p.status == PaymentStatus.PAGO for p in payments):
        return AppointmentStatus.AGENDADO
    if raw == AppointmentStatus.CONFIRMADO:
        return AppointmentStatus.AGENDADO
    if any(p.status == PaymentStatus.PENDENTE for p in payments):
        return AppointmentStatus.PENDENTE
    # No payments, or only rejected ones; confirmado was normalized above
    return raw


def derive_package_member_status(member: Appointment, package: PackageAggregate) -> AppointmentStatus:
    """Status of one session row when the dashboard lists sessions individually."""
    if member.is_terminal:
        return member.status
    if package.has_paid_payment or member.status == AppointmentStatus.CONFIRMADO:
        return AppointmentStatus.AGENDADO
    if package.has_pending_payment:
        return AppointmentStatus.PENDENTE
    return AppointmentStatus.AGENDADO


def percent_paid(appointment: Appointment, payments: Iterable[Payment]) -> Decimal:
    """Share of the charged value covered by pago payments, 0-100 with 2 decimals."""
    if appointment.value <= 0:
        return Decimal("0.00")
    paid = sum((p.value for p in payments if p.status == PaymentStatus.PAGO), Decimal("0.00"))
    percent = min(paid / appointment.value * HUNDRED, HUNDRED)
    return percent.quantize(Decimal("0.01"))


def package_percent_paid(package: PackageAggregate) -> Decimal:
    if package.display_status in (AppointmentStatus.CONFIRMADO, AppointmentStatus.CONCLUIDO):
        return Decimal("100.00")
    return Decimal("0.00")


class BookingView(BaseModel):
    """One row of the read model: a single appointment or a whole package."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    appointment: Appointment = Field(..., description="Appointment, or package representative")
    display_status: AppointmentStatus = Field(..., description="Derived status")
    percent_paid: Decimal = Field(Decimal("0.00"), description="0-100")
    is_package: bool = Field(False, description="Whether this row stands for a package")
    package: Optional[PackageAggregate] = Field(None, description="Package aggregate, when is_package")
    payments: List[Payment] = Field(default_factory=list)

    @property
    def scheduled_at(self) -> datetime:
        return self.appointment.scheduled_at

    @property
    def total_value(self) -> Decimal:
        return self.package.total_value if self.package else self.appointment.value


def group_payments(
    payments: Iterable[Payment], appointment_ids: Iterable[str]
) -> Dict[str, List[Payment]]:
    """Payments keyed by appointment id; dangling payments are dropped."""
    known = set(appointment_ids)
    grouped: Dict[str, List[Payment]] = defaultdict(list)
    for payment in payments:
        if payment.appointment_id not in known:
            logger.debug(
                f"Ignoring payment {payment.id} for unknown appointment {payment.appointment_id}"
            )
            continue
        grouped[payment.appointment_id].append(payment)
    return grouped


def view_for_appointment(appointment: Appointment, payments: List[Payment]) -> BookingView:
    return BookingView(
        appointment=appointment,
        display_status=derive_display_status(appointment, payments),
        percent_paid=percent_paid(appointment, payments),
        payments=payments,
    )


def view_for_package(package: PackageAggregate) -> BookingView:
    return BookingView(
        appointment=package.representative,
        display_status=package.display_status,
        percent_paid=package_percent_paid(package),
        is_package=True,
        package=package,
        payments=package.payments,
    )


def build_booking_views(
    appointments: Iterable[Appointment],
    payments: Iterable[Payment],
    collapse_packages: bool = True,
) -> List[BookingView]:
    """
    Aggregate packages and derive statuses for a set of rows.

    Args:
        appointments: Rows for one professional
        payments: Payments for those rows (others are ignored)
        collapse_packages: One row per package when True; one row per session
            (with the member-level status) otherwise

    Returns:
        Views ordered by scheduled time
    """
    appointments = list(appointments)
    grouped = group_payments(payments, (a.id for a in appointments))
    packages, standalone = aggregate_packages(appointments, grouped)

    views = [view_for_appointment(a, grouped.get(a.id, [])) for a in standalone]

    for package in packages:
        if not package.is_listed:
            continue
        if collapse_packages:
            views.append(view_for_package(package))
            continue
        for member in package.members:
            views.append(BookingView(
                appointment=member,
                display_status=derive_package_member_status(member, package),
                percent_paid=package_percent_paid(package),
                is_package=True,
                package=package,
                payments=grouped.get(member.id, []),
            ))

    views.sort(key=lambda view: view.scheduled_at)
    return views
