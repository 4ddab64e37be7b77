"""
Shared fixtures: an in-memory store scoped to one professional, a fake PIX
provider and an orchestrator wired to both.
"""

from datetime import datetime, timezone

import pytest

from agenda.services.locks import AppointmentLocks
from agenda.services.payment_orchestrator import PaymentOrchestrator
from agenda.services.record_store import ProfessionalScopedStore
from tests.fakes import OWNER_ID, FakePaymentProvider, FakeRecordStore

FIXED_NOW = datetime(2030, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    """Backing in-memory store"""
    return FakeRecordStore()


@pytest.fixture
def scoped(store):
    """Store scoped to the test professional"""
    return ProfessionalScopedStore(store, OWNER_ID)


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def locks():
    return AppointmentLocks()


@pytest.fixture
def orchestrator(scoped, provider, locks):
    return PaymentOrchestrator(
        scoped,
        provider,
        locks=locks,
        expiry_minutes=30,
        default_percentage=50,
        clock=lambda: FIXED_NOW,
    )
