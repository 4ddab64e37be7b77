"""
Tests for the HTTP surface with the store and provider swapped for fakes
"""

from datetime import date

import pytest
from fastapi.testclient import TestClient

from agenda.api.app_factory import create_app
from agenda.api.dependencies import get_payment_provider, get_record_store
from agenda.exceptions import PaymentConfigurationError, ProviderUnavailableError
from agenda.models.records import AppointmentStatus, PaymentStatus
from tests.fakes import OWNER_ID, PROFESSIONAL_ID, FakePaymentProvider, FakeRecordStore
from tests.fixtures import at


@pytest.fixture
def store():
    store = FakeRecordStore()
    store.add_settings(open_time='09:00', close_time='12:00')
    store.add_service(id='svc-1', price='100.00', duration_minutes=30)
    return store


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def client(store, provider):
    app = create_app()
    app.dependency_overrides[get_record_store] = lambda: store
    app.dependency_overrides[get_payment_provider] = lambda: provider
    return TestClient(app)


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.json()['status'] == 'ok'
        assert 'payment_provider' in response.json()['circuits']


class TestAvailabilityApi:

    def test_slots(self, client, store):
        store.add_appointment(scheduled_at=at(10))

        response = client.get('/availability', params={
            'owner_id': OWNER_ID, 'date': '2030-03-04', 'professional_id': PROFESSIONAL_ID,
        })

        assert response.status_code == 200
        slots = response.json()['slots']
        assert at(10).isoformat() not in slots
        assert slots[0] == at(9).isoformat()

    def test_owner_is_required(self, client):
        response = client.get('/availability', params={'date': '2030-03-04'})

        assert response.status_code == 422


class TestBookingApi:

    def test_book_appointment(self, client, store):
        response = client.post('/appointments', json={
            'owner_id': OWNER_ID,
            'service_id': 'svc-1',
            'scheduled_at': at(10).isoformat(),
            'professional_id': PROFESSIONAL_ID,
            'client_email': 'ana@example.com',
        })

        assert response.status_code == 201
        body = response.json()
        assert body['status'] == 'pendente'
        assert body['appointment_id'] in store.appointments

    def test_taken_slot(self, client, store):
        store.add_appointment(scheduled_at=at(10))

        response = client.post('/appointments', json={
            'owner_id': OWNER_ID,
            'service_id': 'svc-1',
            'scheduled_at': at(10).isoformat(),
            'professional_id': PROFESSIONAL_ID,
        })

        assert response.status_code == 409
        assert response.json()['error'] == 'slot_taken'

    def test_unknown_service(self, client):
        response = client.post('/appointments', json={
            'owner_id': OWNER_ID,
            'service_id': 'missing',
            'scheduled_at': at(10).isoformat(),
        })

        assert response.status_code == 422
        assert response.json()['error'] == 'invalid_request'

    def test_book_package(self, client, store):
        starts = [at(10, day=date(2030, 3, day)).isoformat() for day in (4, 11, 18, 25)]

        response = client.post('/packages', json={
            'owner_id': OWNER_ID,
            'service_id': 'svc-1',
            'starts': starts,
            'professional_id': PROFESSIONAL_ID,
        })

        assert response.status_code == 201
        assert len(response.json()['appointment_ids']) == 4
        assert len(store.appointments) == 4


class TestPaymentsApi:

    def test_request_pix(self, client, store):
        appointment = store.add_appointment(value='100.00')

        response = client.post('/payments/pix', json={
            'owner_id': OWNER_ID, 'appointment_id': appointment.id, 'percentage': 50,
        })

        assert response.status_code == 201
        body = response.json()
        assert body['value'] == '50.00'
        assert body['pix_payload']
        assert body['expires_at'] is not None
        assert store.payment(body['payment_id']).status == PaymentStatus.PENDENTE

    @pytest.mark.parametrize('error, status_code, action', [
        (ProviderUnavailableError('down'), 503, 'retry'),
        (PaymentConfigurationError(), 409, 'configure_provider'),
    ])
    def test_provider_errors(self, client, store, provider, error, status_code, action):
        appointment = store.add_appointment()
        provider.fail_with = error

        response = client.post('/payments/pix', json={'owner_id': OWNER_ID, 'appointment_id': appointment.id})

        assert response.status_code == status_code
        assert response.json()['error'] == action
        assert response.json()['retryable'] is error.retryable
        assert store.payments == {}

    def test_cancelled_appointment(self, client, store):
        appointment = store.add_appointment(status='cancelado')

        response = client.post('/payments/pix', json={'owner_id': OWNER_ID, 'appointment_id': appointment.id})

        assert response.status_code == 422

    def test_unknown_appointment(self, client):
        response = client.post('/payments/missing/check', params={'owner_id': OWNER_ID})

        assert response.status_code == 404

    def test_check_confirms(self, client, store, provider):
        appointment = store.add_appointment()
        client.post('/payments/pix', json={'owner_id': OWNER_ID, 'appointment_id': appointment.id})
        provider.confirm(appointment.id)

        response = client.post(f'/payments/{appointment.id}/check', params={'owner_id': OWNER_ID})

        assert response.json()['status'] == 'confirmed'
        assert store.appointment(appointment.id).status == AppointmentStatus.CONFIRMADO


class TestWebhookApi:

    def test_other_notification_types_are_ignored(self, client):
        response = client.post(
            '/webhooks/mercado-pago', params={'owner_id': OWNER_ID}, json={'type': 'merchant_order'}
        )

        assert response.json() == {'status': 'ignored'}

    def test_payment_notification_confirms(self, client, store, provider):
        appointment = store.add_appointment()
        payment = client.post(
            '/payments/pix', json={'owner_id': OWNER_ID, 'appointment_id': appointment.id}
        ).json()
        provider.confirm(appointment.id)

        response = client.post('/webhooks/mercado-pago', params={'owner_id': OWNER_ID}, json={
            'type': 'payment', 'data': {'id': payment['provider_reference']},
        })

        assert response.json() == {'status': 'ok', 'confirmed': True}
        assert store.payment(payment['payment_id']).status == PaymentStatus.PAGO


class TestDashboardApi:

    def test_dashboard(self, client, store):
        appointment = store.add_appointment()
        store.add_payment(appointment_id=appointment.id, status='pago')

        response = client.get('/dashboard', params={'owner_id': OWNER_ID})

        assert response.status_code == 200
        body = response.json()
        assert body['stale'] is False
        assert body['bookings'][0]['status'] == 'agendado'
        assert body['bookings'][0]['raw_status'] == 'pendente'

    def test_client_bookings_need_identifier(self, client):
        response = client.get('/clients/bookings', params={'owner_id': OWNER_ID})

        assert response.status_code == 422

    def test_client_bookings(self, client, store):
        store.add_package()
        for row in store.appointments.values():
            row['client_email'] = 'ana@example.com'

        response = client.get('/clients/bookings', params={'owner_id': OWNER_ID, 'client_email': 'ana@example.com'})

        bookings = response.json()['bookings']
        assert len(bookings) == 1
        assert bookings[0]['is_package'] is True
        assert len(bookings[0]['package']['appointment_ids']) == 4
