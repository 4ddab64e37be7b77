"""
Test fixtures for the booking core
"""

import uuid
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from agenda.models.records import Appointment, CalendarSettings, Payment

# Sample test data
TEST_OWNER_ID = 'owner-1'
TEST_PROFESSIONAL_ID = 'pro-1'
TEST_EMAIL = 'ana@example.com'
TZ = ZoneInfo('America/Sao_Paulo')

# 2030-03-04 is a Monday, 2030-03-09 a Saturday
MONDAY = date(2030, 3, 4)
SATURDAY = date(2030, 3, 9)
BEFORE_MONDAY = datetime(2030, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(hour, minute=0, day=MONDAY):
    """Local business time on `day` as an aware datetime"""
    return datetime.combine(day, time(hour, minute)).replace(tzinfo=TZ)


# Fixture functions
def create_test_appointment(**kwargs):
    """Create a test appointment"""
    return Appointment.model_validate({
        'id': kwargs.get('id', str(uuid.uuid4())),
        'owner_id': kwargs.get('owner_id', TEST_OWNER_ID),
        'client_id': kwargs.get('client_id'),
        'client_email': kwargs.get('client_email', TEST_EMAIL),
        'service_id': kwargs.get('service_id'),
        'professional_id': kwargs.get('professional_id', TEST_PROFESSIONAL_ID),
        'scheduled_at': kwargs.get('scheduled_at', at(10)),
        'status': kwargs.get('status', 'pendente'),
        'value': kwargs.get('value', '100.00'),
        'value_paid': kwargs.get('value_paid', '0.00'),
        'notes': kwargs.get('notes'),
        'duration_minutes': kwargs.get('duration_minutes', 30),
        'package_id': kwargs.get('package_id'),
    })


def create_test_payment(appointment_id, **kwargs):
    """Create a test payment"""
    return Payment.model_validate({
        'id': kwargs.get('id', str(uuid.uuid4())),
        'appointment_id': appointment_id,
        'owner_id': kwargs.get('owner_id', TEST_OWNER_ID),
        'value': kwargs.get('value', '50.00'),
        'percentage': kwargs.get('percentage', '50'),
        'status': kwargs.get('status', 'pendente'),
        'provider_reference': kwargs.get('provider_reference'),
        'expires_at': kwargs.get('expires_at'),
        'created_at': kwargs.get('created_at', BEFORE_MONDAY),
    })


def create_test_settings(**kwargs):
    """Create calendar settings: 09:00-12:00, 30-minute slots, weekdays"""
    return CalendarSettings.model_validate({
        'owner_id': kwargs.get('owner_id', TEST_OWNER_ID),
        'professional_id': kwargs.get('professional_id', TEST_PROFESSIONAL_ID),
        'open_time': kwargs.get('open_time', '09:00'),
        'close_time': kwargs.get('close_time', '12:00'),
        'slot_interval_minutes': kwargs.get('slot_interval_minutes', 30),
        'lunch_start': kwargs.get('lunch_start'),
        'lunch_end': kwargs.get('lunch_end'),
        'min_lead_minutes': kwargs.get('min_lead_minutes', 0),
        'active_weekdays': kwargs.get(
            'active_weekdays', ['monday', 'tuesday', 'wednesday', 'thursday', 'friday']
        ),
    })


def create_test_package(token='PMT123', statuses=None, **kwargs):
    """Four package sessions one week apart, tagged with `token` in the notes"""
    statuses = statuses or ['pendente'] * 4
    days = [date(2030, 3, 4), date(2030, 3, 11), date(2030, 3, 18), date(2030, 3, 25)]
    return [
        create_test_appointment(
            scheduled_at=at(10, day=day),
            status=status,
            value=kwargs.get('value', '50.00'),
            notes=f"PACOTE MENSAL {token} - Sessão {n}/4",
        )
        for n, (day, status) in enumerate(zip(days, statuses), start=1)
    ]
