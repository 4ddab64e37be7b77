"""
Booking core HTTP routes

Thin layer over the services: availability, booking, PIX charges, payment
checks, the Mercado Pago webhook and the dashboard read model. Errors are
mapped to responses by the handlers registered in app_factory.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from ..services.availability_service import AvailabilityService
from ..services.booking_service import BookingService
from ..services.dashboard_service import DashboardService
from ..services.lifecycle_janitor import LifecycleJanitor
from ..services.payment_orchestrator import PaymentOrchestrator
from ..services.pix_provider import PaymentProvider
from ..services.record_store import RecordStore
from ..services.status_reconciliation import BookingView
from .dependencies import get_payment_provider, get_record_store, scoped_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["booking"])


class BookAppointmentRequest(BaseModel):
    owner_id: str = Field(..., description="Owning professional")
    service_id: str = Field(..., description="Service to book")
    scheduled_at: datetime = Field(..., description="Slot start (timezone-aware)")
    professional_id: Optional[str] = Field(None, description="Professional attending")
    client_id: Optional[str] = Field(None, description="Client reference")
    client_email: Optional[str] = Field(None, description="Client email")
    notes: Optional[str] = None
    direct: bool = Field(False, description="Dashboard booking, skips the PIX step")


class BookPackageRequest(BaseModel):
    owner_id: str
    service_id: str
    starts: List[datetime] = Field(..., min_length=4, max_length=4, description="The four session starts")
    professional_id: Optional[str] = None
    client_id: Optional[str] = None
    client_email: Optional[str] = None
    notes: Optional[str] = None


class PixRequest(BaseModel):
    owner_id: str = Field(..., description="Owning professional")
    appointment_id: str = Field(..., description="Appointment (or any package session)")
    percentage: Optional[Decimal] = Field(None, description="Advance percentage, single appointments only")
    idempotency_key: Optional[str] = Field(None, description="Reuse to retry the same charge")


def _view_payload(view: BookingView) -> Dict[str, Any]:
    payload = {
        "appointment_id": view.appointment.id,
        "scheduled_at": view.scheduled_at.isoformat(),
        "status": view.display_status.value,
        "raw_status": view.appointment.status.value,
        "percent_paid": str(view.percent_paid),
        "value": str(view.total_value),
        "client_email": view.appointment.client_email,
        "is_package": view.is_package,
    }
    if view.package is not None:
        payload["package"] = {
            "token": view.package.token,
            "appointment_ids": view.package.member_ids,
            "cancelled": view.package.cancelled_count,
            "completed": view.package.completed_count,
            "active": view.package.active_count,
        }
    return payload


@router.get("/availability")
async def get_availability(
    owner_id: str = Query(..., min_length=1, description="Owning professional"),
    target_date: date = Query(..., alias="date"),
    professional_id: Optional[str] = None,
    duration_minutes: Optional[int] = Query(None, gt=0),
    service_id: Optional[str] = None,
    store: RecordStore = Depends(get_record_store),
):
    service = AvailabilityService(scoped_store(store, owner_id))
    slots = await service.get_available_slots(
        target_date,
        professional_id=professional_id,
        duration_minutes=duration_minutes,
        service_id=service_id,
    )
    return {"date": target_date.isoformat(), "slots": [slot.isoformat() for slot in slots]}


@router.post("/appointments", status_code=201)
async def book_appointment(
    request: BookAppointmentRequest,
    store: RecordStore = Depends(get_record_store),
):
    booking = BookingService(scoped_store(store, request.owner_id))
    appointment = await booking.book_appointment(
        request.service_id,
        request.scheduled_at,
        client_id=request.client_id,
        client_email=request.client_email,
        professional_id=request.professional_id,
        notes=request.notes,
        direct=request.direct,
    )
    return {"appointment_id": appointment.id, "status": appointment.status.value}


@router.post("/packages", status_code=201)
async def book_package(
    request: BookPackageRequest,
    store: RecordStore = Depends(get_record_store),
):
    booking = BookingService(scoped_store(store, request.owner_id))
    sessions = await booking.book_package(
        request.service_id,
        request.starts,
        client_id=request.client_id,
        client_email=request.client_email,
        professional_id=request.professional_id,
        notes=request.notes,
    )
    return {"appointment_ids": [s.id for s in sessions], "status": sessions[0].status.value}


@router.post("/payments/pix", status_code=201)
async def request_pix(
    request: PixRequest,
    store: RecordStore = Depends(get_record_store),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    orchestrator = PaymentOrchestrator(scoped_store(store, request.owner_id), provider)
    payment = await orchestrator.request_payment_for(
        request.appointment_id,
        percentage=request.percentage,
        idempotency_key=request.idempotency_key,
    )
    return {
        "payment_id": payment.id,
        "appointment_id": payment.appointment_id,
        "value": str(payment.value),
        "percentage": str(payment.percentage),
        "pix_payload": payment.pix_payload,
        "provider_reference": payment.provider_reference,
        "expires_at": payment.expires_at.isoformat() if payment.expires_at else None,
    }


@router.post("/payments/{appointment_id}/check")
async def check_payment(
    appointment_id: str,
    owner_id: str = Query(..., min_length=1, description="Owning professional"),
    store: RecordStore = Depends(get_record_store),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    orchestrator = PaymentOrchestrator(scoped_store(store, owner_id), provider)
    check = await orchestrator.check_with_provider(appointment_id)
    return {"status": check.status, "applied": check.applied, "payment_id": check.payment_id}


@router.post("/webhooks/mercado-pago")
async def mercado_pago_webhook(
    owner_id: str = Query(..., min_length=1, description="Owning professional"),
    payload: Dict[str, Any] = Body(...),
    store: RecordStore = Depends(get_record_store),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    if payload.get("type") != "payment":
        logger.info(f"Ignoring Mercado Pago notification of type {payload.get('type')!r}")
        return {"status": "ignored"}

    provider_reference = str((payload.get("data") or {}).get("id") or "")
    if not provider_reference:
        logger.warning("Mercado Pago payment notification without data.id")
        return {"status": "ignored"}

    orchestrator = PaymentOrchestrator(scoped_store(store, owner_id), provider)
    confirmed = await orchestrator.handle_provider_notification(provider_reference)
    return {"status": "ok", "confirmed": confirmed}


@router.get("/dashboard")
async def dashboard(
    owner_id: str = Query(..., min_length=1, description="Owning professional"),
    client_email: Optional[str] = None,
    store: RecordStore = Depends(get_record_store),
):
    scoped = scoped_store(store, owner_id)
    service = DashboardService(scoped, janitor=LifecycleJanitor(scoped))
    snapshot = await service.refresh(client_email_contains=client_email)
    return {
        "stale": snapshot.stale,
        "refreshed_at": snapshot.refreshed_at.isoformat() if snapshot.refreshed_at else None,
        "bookings": [_view_payload(view) for view in snapshot.views],
    }


@router.get("/clients/bookings")
async def client_bookings(
    owner_id: str = Query(..., min_length=1, description="Owning professional"),
    client_id: Optional[str] = None,
    client_email: Optional[str] = None,
    store: RecordStore = Depends(get_record_store),
):
    service = DashboardService(scoped_store(store, owner_id))
    views = await service.client_bookings(client_id=client_id, client_email=client_email)
    return {"bookings": [_view_payload(view) for view in views]}
