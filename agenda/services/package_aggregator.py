"""
Package Aggregator

A monthly package is four appointment rows booked together. Membership is an
explicit package_id when the row has one, otherwise a token in the notes:

    "<notes> - PACOTE MENSAL PMT1712345678901 - Sessão 2/4"

A token that does not resolve to exactly four rows is a data inconsistency:
its rows come back as ordinary appointments, never dropped.
"""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.records import Appointment, AppointmentStatus, Payment, PaymentStatus

logger = logging.getLogger(__name__)

PACKAGE_SIZE = 4
PACKAGE_LABEL = "PACOTE MENSAL"

_TOKEN_RE = re.compile(r"\bPMT\d+\b")
_SESSION_RE = re.compile(r"Sess[aã]o\s+(\d+)\s*/\s*(\d+)", re.IGNORECASE)


def parse_package_token(notes: Optional[str]) -> Optional[str]:
    """Return the PMT token in a notes field, or None."""
    if not notes:
        return None
    match = _TOKEN_RE.search(notes)
    return match.group(0) if match else None


def parse_session_number(notes: Optional[str]) -> Optional[int]:
    if not notes:
        return None
    match = _SESSION_RE.search(notes)
    return int(match.group(1)) if match else None


def package_key(appointment: Appointment) -> Optional[str]:
    """Explicit package_id wins over the token parsed from notes."""
    return appointment.package_id or parse_package_token(appointment.notes)


def new_package_token(now: datetime) -> str:
    return f"PMT{int(now.timestamp() * 1000)}"


def format_package_notes(notes: Optional[str], token: str, session: int) -> str:
    """Notes for session `session` of a package, in the grammar parse_package_token reads."""
    base = f"{notes} - " if notes else ""
    return f"{base}{PACKAGE_LABEL} {token} - Sessão {session}/{PACKAGE_SIZE}"


@dataclass
class PackageAggregate:
    """Virtual booking for four package sessions."""
    token: str
    members: List[Appointment]
    payments: List[Payment] = field(default_factory=list)

    @property
    def representative(self) -> Appointment:
        for member in self.members:
            if not member.is_terminal:
                return member
        return self.members[0]

    @property
    def total_value(self) -> Decimal:
        # Cancelled sessions still count towards the historical total
        return sum((m.value for m in self.members), Decimal("0.00"))

    @property
    def total_paid(self) -> Decimal:
        return sum((p.value for p in self.payments if p.status == PaymentStatus.PAGO), Decimal("0.00"))

    @property
    def cancelled_count(self) -> int:
        return sum(1 for m in self.members if m.status == AppointmentStatus.CANCELADO)

    @property
    def completed_count(self) -> int:
        return sum(1 for m in self.members if m.status == AppointmentStatus.CONCLUIDO)

    @property
    def active_count(self) -> int:
        return sum(1 for m in self.members if not m.is_terminal)

    @property
    def member_ids(self) -> List[str]:
        return [m.id for m in self.members]

    @property
    def scheduled_at(self) -> datetime:
        return self.representative.scheduled_at

    @property
    def has_paid_payment(self) -> bool:
        return any(p.status == PaymentStatus.PAGO for p in self.payments)

    @property
    def has_pending_payment(self) -> bool:
        return any(p.status == PaymentStatus.PENDENTE for p in self.payments)

    @property
    def display_status(self) -> AppointmentStatus:
        """Best available signal across the four sessions."""
        # Terminal states win over payments, as for a single appointment
        if self.cancelled_count == len(self.members):
            return AppointmentStatus.CANCELADO
        if all(
            m.status == AppointmentStatus.CONCLUIDO
            for m in self.members
            if m.status != AppointmentStatus.CANCELADO
        ):
            return AppointmentStatus.CONCLUIDO
        if self.has_paid_payment:
            return AppointmentStatus.CONFIRMADO
        if any(m.status == AppointmentStatus.CONFIRMADO for m in self.members):
            return AppointmentStatus.CONFIRMADO
        if self.has_pending_payment:
            return AppointmentStatus.PENDENTE
        return AppointmentStatus.AGENDADO

    @property
    def is_listed(self) -> bool:
        return self.active_count > 0 or self.cancelled_count > 0 or self.completed_count > 0


def _member_order(appointment: Appointment):
    session = parse_session_number(appointment.notes)
    return (session if session is not None else PACKAGE_SIZE + 1, appointment.scheduled_at)


def aggregate_packages(
    appointments: Iterable[Appointment],
    payments_by_appointment: Dict[str, List[Payment]] = None,
) -> Tuple[List[PackageAggregate], List[Appointment]]:
    """
    Split appointments into package aggregates and standalone appointments.

    Args:
        appointments: One professional's rows, including cancelled/completed
        payments_by_appointment: Payments keyed by appointment id

    Returns:
        (packages, standalone) with input order preserved for standalone rows
    """
    payments_by_appointment = payments_by_appointment or {}
    groups: "OrderedDict[str, List[Appointment]]" = OrderedDict()
    standalone: List[Appointment] = []

    for appointment in appointments:
        key = package_key(appointment)
        if key is None:
            standalone.append(appointment)
        else:
            groups.setdefault(key, []).append(appointment)

    packages: List[PackageAggregate] = []
    for token, members in groups.items():
        if len(members) != PACKAGE_SIZE:
            logger.warning(
                f"Package {token} has {len(members)} rows instead of {PACKAGE_SIZE}, "
                f"showing them as individual appointments"
            )
            standalone.extend(members)
            continue

        members = sorted(members, key=_member_order)
        payments = [p for m in members for p in payments_by_appointment.get(m.id, [])]
        packages.append(PackageAggregate(token=token, members=members, payments=payments))

    return packages, standalone


def find_package(
    appointment: Appointment,
    appointments: Iterable[Appointment],
) -> Optional[List[Appointment]]:
    """Members of appointment's package among `appointments`, or None if it is not a valid package."""
    key = package_key(appointment)
    if key is None:
        return None
    members = [a for a in appointments if package_key(a) == key]
    if len(members) != PACKAGE_SIZE:
        logger.warning(f"Package {key} resolves to {len(members)} rows, treating as single appointment")
        return None
    return sorted(members, key=_member_order)
