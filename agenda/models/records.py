"""
Pydantic models for stored records.

Field names match the store's column names so rows can be validated straight
from query results. Status columns never fail validation: an unknown value is
read as ``pendente``.
"""

import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .. import config

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce a stored number to a cent-quantized Decimal (None/garbage -> 0)."""
    if value is None:
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(CENTS)
    except (ArithmeticError, ValueError):
        logger.warning(f"Unparseable money value {value!r}, using 0")
        return Decimal("0.00")


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes coming from the store are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AppointmentStatus(str, Enum):
    """Raw appointment status as stored."""
    PENDENTE = "pendente"
    CONFIRMADO = "confirmado"
    AGENDADO = "agendado"
    CONCLUIDO = "concluido"
    CANCELADO = "cancelado"

    @classmethod
    def parse(cls, value) -> "AppointmentStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.debug(f"Unknown appointment status {value!r}, treating as pendente")
            return cls.PENDENTE

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({AppointmentStatus.CONCLUIDO, AppointmentStatus.CANCELADO})


class PaymentStatus(str, Enum):
    """Payment status as stored."""
    PENDENTE = "pendente"
    PAGO = "pago"
    REJEITADO = "rejeitado"

    @classmethod
    def parse(cls, value) -> "PaymentStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.debug(f"Unknown payment status {value!r}, treating as pendente")
            return cls.PENDENTE


class Record(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Appointment(Record):
    """One stored appointment row."""
    id: str = Field(..., description="Appointment identifier")
    owner_id: str = Field(..., description="Owning professional")
    client_id: Optional[str] = Field(None, description="Client reference")
    client_email: Optional[str] = Field(None, description="Free-text client email")
    service_id: Optional[str] = Field(None, description="Service booked")
    professional_id: Optional[str] = Field(None, description="Professional attending")
    scheduled_at: datetime = Field(..., description="Scheduled instant")
    status: AppointmentStatus = Field(AppointmentStatus.PENDENTE, description="Raw status")
    value: Decimal = Field(Decimal("0.00"), description="Charged value")
    value_paid: Decimal = Field(Decimal("0.00"), description="Paid-to-date value")
    notes: Optional[str] = Field(None, description="Free text, may carry a package token")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    duration_minutes: int = Field(
        config.DEFAULT_SERVICE_DURATION_MINUTES,
        description="Service duration, joined from the service when available",
    )
    package_id: Optional[str] = Field(None, description="Explicit package id, when stored")

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value):
        return AppointmentStatus.parse(value)

    @field_validator("value", "value_paid", mode="before")
    @classmethod
    def _parse_money(cls, value):
        return to_money(value)

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _parse_duration(cls, value):
        try:
            minutes = int(value)
        except (TypeError, ValueError):
            return config.DEFAULT_SERVICE_DURATION_MINUTES
        return minutes if minutes > 0 else config.DEFAULT_SERVICE_DURATION_MINUTES

    @field_validator("scheduled_at", "created_at")
    @classmethod
    def _aware(cls, value):
        return ensure_aware(value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Payment(Record):
    """One stored payment row. Several may exist per appointment (retries)."""
    id: str = Field(..., description="Payment identifier")
    appointment_id: Optional[str] = Field(None, description="Appointment back-reference")
    owner_id: str = Field(..., description="Owning professional")
    value: Decimal = Field(Decimal("0.00"), description="Charged value")
    percentage: Decimal = Field(Decimal("100"), description="Percentage of the total")
    status: PaymentStatus = Field(PaymentStatus.PENDENTE, description="Payment status")
    provider_reference: Optional[str] = Field(None, description="Provider reference code")
    pix_payload: Optional[str] = Field(None, description="PIX copy-and-paste payload")
    expires_at: Optional[datetime] = Field(None, description="Expiry, None for packages")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value):
        return PaymentStatus.parse(value)

    @field_validator("value", mode="before")
    @classmethod
    def _parse_money(cls, value):
        return to_money(value)

    @field_validator("percentage", mode="before")
    @classmethod
    def _parse_percentage(cls, value):
        return to_money(value) if value is not None else Decimal("100")

    @field_validator("expires_at", "created_at")
    @classmethod
    def _aware(cls, value):
        return ensure_aware(value)

    def is_expired(self, now: datetime) -> bool:
        """A payment without expiry never expires."""
        return self.expires_at is not None and self.expires_at <= now


def _parse_clock(value) -> Optional[time]:
    if value is None or isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value)[:8])
    except ValueError:
        logger.warning(f"Unparseable time of day {value!r}")
        return None


class CalendarSettings(Record):
    """Business hours for one professional."""
    owner_id: str
    professional_id: Optional[str] = None
    open_time: Optional[time] = Field(None, description="Opening time")
    close_time: Optional[time] = Field(None, description="Closing time")
    slot_interval_minutes: int = Field(config.DEFAULT_SLOT_INTERVAL_MINUTES, description="Step between slots")
    lunch_start: Optional[time] = None
    lunch_end: Optional[time] = None
    min_lead_minutes: int = Field(0, description="Minimum notice before a booking")
    active_weekdays: List[str] = Field(default_factory=list, description="English weekday names")

    @field_validator("open_time", "close_time", "lunch_start", "lunch_end", mode="before")
    @classmethod
    def _parse_times(cls, value):
        return _parse_clock(value)

    @field_validator("slot_interval_minutes", "min_lead_minutes", mode="before")
    @classmethod
    def _parse_minutes(cls, value):
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    @field_validator("active_weekdays", mode="before")
    @classmethod
    def _parse_weekdays(cls, value):
        if not value:
            return []
        return [str(day).strip().lower() for day in value]

    @classmethod
    def default(cls, owner_id: str, professional_id: str = None) -> "CalendarSettings":
        """08:00-18:00, 30-minute slots, Monday to Friday, no lunch, no lead time."""
        return cls(
            owner_id=owner_id,
            professional_id=professional_id,
            open_time=config.DEFAULT_OPEN_TIME,
            close_time=config.DEFAULT_CLOSE_TIME,
            slot_interval_minutes=config.DEFAULT_SLOT_INTERVAL_MINUTES,
            active_weekdays=list(config.DEFAULT_ACTIVE_WEEKDAYS),
        )


class ClosedDate(Record):
    owner_id: str
    professional_id: Optional[str] = None
    date: date
    reason: Optional[str] = None


class ClosedTimeSlot(Record):
    owner_id: str
    professional_id: Optional[str] = None
    date: date
    start_time: time
    end_time: time
    reason: Optional[str] = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _parse_times(cls, value):
        return _parse_clock(value)


class Client(Record):
    """Clients are scoped to a professional."""
    id: str
    owner_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    professional_id: Optional[str] = None


class Service(Record):
    id: str
    owner_id: str
    name: str
    price: Decimal = Decimal("0.00")
    duration_minutes: int = config.DEFAULT_SERVICE_DURATION_MINUTES
    is_package: bool = False

    @field_validator("price", mode="before")
    @classmethod
    def _parse_money(cls, value):
        return to_money(value)
