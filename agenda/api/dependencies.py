"""
FastAPI dependencies.

Tests swap these through app.dependency_overrides.
"""

from .. import config
from ..database import get_async_client
from ..services.pix_provider import MercadoPagoPixProvider, PaymentProvider
from ..services.record_store import ProfessionalScopedStore, RecordStore, SupabaseRecordStore


async def get_record_store() -> RecordStore:
    client = await get_async_client()
    return SupabaseRecordStore(client, schema=config.SUPABASE_SCHEMA)


def get_payment_provider() -> PaymentProvider:
    return MercadoPagoPixProvider()


def scoped_store(store: RecordStore, owner_id: str) -> ProfessionalScopedStore:
    return ProfessionalScopedStore(store, owner_id)


