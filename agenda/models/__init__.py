"""Data models for the booking core."""
from agenda.models.records import (
    Appointment,
    AppointmentStatus,
    CalendarSettings,
    Client,
    ClosedDate,
    ClosedTimeSlot,
    Payment,
    PaymentStatus,
    Service,
    TERMINAL_STATUSES,
)

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "CalendarSettings",
    "Client",
    "ClosedDate",
    "ClosedTimeSlot",
    "Payment",
    "PaymentStatus",
    "Service",
    "TERMINAL_STATUSES",
]
