"""
Custom exceptions for the booking core.

Only I/O-performing components raise these. Availability, aggregation and
status reconciliation degrade to safe defaults instead of raising.
"""


class AgendaError(Exception):
    """Base class for booking core errors."""

    retryable = False


class ProviderUnavailableError(AgendaError):
    """Raised when the payment provider cannot be reached or returns no PIX payload."""

    retryable = True

    def __init__(self, message: str = None, status_code: int = None):
        self.status_code = status_code
        super().__init__(message or "Payment provider unavailable, try again")


class PaymentConfigurationError(AgendaError):
    """Raised when provider credentials are missing or rejected."""

    def __init__(self, message: str = None):
        super().__init__(
            message or "Payment provider credentials are missing or invalid"
        )


class SlotConflictError(AgendaError):
    """Raised when a slot was taken between reading availability and writing the booking."""

    def __init__(self, professional_id: str = None, start=None, message: str = None):
        self.professional_id = professional_id
        self.start = start
        self.message = message or f"Slot {start} is no longer available"
        super().__init__(self.message)


class InvalidPaymentRequestError(AgendaError):
    """Raised when a payment is requested for an appointment that cannot take one."""

    def __init__(self, appointment_id: str, reason: str):
        self.appointment_id = appointment_id
        self.reason = reason
        super().__init__(f"Cannot request payment for {appointment_id}: {reason}")


class InvalidTransitionError(AgendaError):
    """Raised when an appointment is moved out of a terminal status."""

    def __init__(self, appointment_id: str, current: str, target: str):
        self.appointment_id = appointment_id
        self.current = current
        self.target = target
        super().__init__(
            f"Appointment {appointment_id} cannot go from {current} to {target}"
        )


class AppointmentNotFoundError(AgendaError):
    """Raised when an appointment does not exist in the professional's scope."""

    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found")


class RecordStoreError(AgendaError):
    """Raised when the record store rejects or fails a query."""

    retryable = True

    def __init__(self, operation: str, cause: Exception = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Record store failed during {operation}: {cause}")
