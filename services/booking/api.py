# ============================================================
# Booking API Router
# ------------------------------------------------------------
# Expose les endpoints REST : disponibilité, devis, création et
# transitions des réservations, validation de codes de remise,
# webhook du processeur de paiement, vue comptable.
# L'acteur est transmis par la passerelle (X-Actor-Role / X-Actor-Id).
# ============================================================
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlmodel import Session

from availability import AvailabilityResolver
from config import DEFAULT_COMPANY_ID
from consumer import handle_payment_event, message_id_for
from db import get_session, with_store_retry
from discounts import DiscountValidator
from errors import BookingNotFoundError, PermissionDeniedError
from ledger import FinancialLedger
from lifecycle import Actor, ActorRole, BookingLifecycle, BookingRequest
from models import BookingStatus
from pricing import ExtraSelection, PricingEngine
from publisher import booking_payload, publish_event, publish_transition
from repository import BookingRepository, CatalogRepository
from schemas import (
    BookingCreate,
    CancelRequest,
    CompleteRequest,
    DiscountCheck,
    PaymentEvent,
    QuoteRequest,
    StartRequest,
    TransitionRequest,
)
from timeutil import to_local, to_utc

router = APIRouter()

STAFF_ROLES = (ActorRole.SUPER_ADMIN, ActorRole.RENT_ADMIN, ActorRole.EMPLOYEE)
ADMIN_ROLES = (ActorRole.SUPER_ADMIN, ActorRole.RENT_ADMIN)


# Dépendance FastAPI : l'acteur de la requête (jamais "system" depuis l'extérieur)
def get_actor(x_actor_role: str = Header(default="customer"),
              x_actor_id: Optional[str] = Header(default=None)) -> Actor:
    try:
        role = ActorRole(x_actor_role)
    except ValueError:
        raise PermissionDeniedError(f"unknown role {x_actor_role}")
    if role == ActorRole.SYSTEM:
        raise PermissionDeniedError("the system role is internal")
    return Actor(role, x_actor_id)


def require_role(actor: Actor, roles):
    if actor.role not in roles:
        raise PermissionDeniedError(f"{actor.role.value} may not perform this operation")


def money_view(value):
    return float(value) if value is not None else None


def quote_view(q) -> dict:
    return {
        "category_id": q.category_id,
        "rental_days": q.rental_days,
        "daily_rate": money_view(q.daily_rate),
        "base": money_view(q.base),
        "extras_total": money_view(q.extras_total),
        "discount_amount": money_view(q.discount_amount),
        "total": money_view(q.total),
        "discount_code": q.discount_code,
        "discount_reason": q.discount_reason,
        "discount_message": q.discount_message,
        "extras": [
            {
                "extra_id": line.extra_id,
                "name": line.name,
                "quantity": line.quantity,
                "unit_price": money_view(line.unit_price),
                "pricing_mode": line.pricing_mode.value,
                "total": money_view(line.total),
            }
            for line in q.lines
        ],
    }


# réponse "human-friendly" avec des dates en timezone locale
def booking_view(b, repo: BookingRepository, with_history: bool = False) -> dict:
    view = {
        "id": b.id,
        "reference": b.reference,
        "company_id": b.company_id,
        "customer_id": b.customer_id,
        "category_id": b.category_id,
        "vehicle_id": b.vehicle_id,
        "pickup_location_id": b.pickup_location_id,
        "return_location_id": b.return_location_id,
        "pickup_at": to_local(b.pickup_at),
        "return_at": to_local(b.return_at),
        "status": b.status.value,
        "source": b.source.value,
        "rental_days": b.rental_days,
        "daily_rate": money_view(b.daily_rate),
        "base_price": money_view(b.base_price),
        "extras_total": money_view(b.extras_total),
        "discount_code": b.discount_code,
        "discount_amount": money_view(b.discount_amount),
        "total_price": money_view(b.total_price),
        "additional_charges": money_view(b.additional_charges),
        "is_paid": b.is_paid,
        "paid_at": to_local(b.paid_at),
        "hold_expires_at": to_local(b.hold_expires_at),
        "cancellation_reason": b.cancellation_reason,
        "created_at": to_local(b.created_at),
        "extras": [
            {
                "extra_id": e.extra_id,
                "extra_name": e.extra_name,
                "quantity": e.quantity,
                "unit_price": money_view(e.unit_price),
                "total_price": money_view(e.total_price),
                "pricing_mode": e.pricing_mode.value,
            }
            for e in repo.extras(b.id)
        ],
    }
    if with_history:
        view["history"] = [
            {
                "from": h.from_status,
                "to": h.to_status,
                "actor_role": h.actor_role,
                "actor_id": h.actor_id,
                "reason": h.reason,
                "at": to_local(h.created_at),
            }
            for h in repo.history(b.id)
        ]
    return view


def extras_of(body: QuoteRequest):
    return [ExtraSelection(extra_id=e.extra_id, quantity=e.quantity) for e in body.extras]


# ------------------------------------------------------------
# GET /v1/availability - Unités libres d'une catégorie
# ------------------------------------------------------------
@router.get("/v1/availability")
def get_availability(category_id: str, pickup_at: datetime, return_at: datetime,
                     location_id: Optional[str] = None, s: Session = Depends(get_session)):
    resolver = AvailabilityResolver(CatalogRepository(s), BookingRepository(s))
    result = with_store_retry(
        lambda: resolver.resolve(category_id, to_utc(pickup_at), to_utc(return_at), location_id=location_id),
        s,
    )
    return {
        "category_id": result.category_id,
        "capacity": result.capacity,
        "available_count": result.available_count,
        "is_available": result.is_available,
    }


# ------------------------------------------------------------
# POST /v1/quotes - Devis (aucune écriture)
# ------------------------------------------------------------
@router.post("/v1/quotes")
def create_quote(body: QuoteRequest, s: Session = Depends(get_session)):
    engine = PricingEngine(CatalogRepository(s))
    quote = with_store_retry(lambda: engine.price(
        body.company_id, body.category_id, to_utc(body.pickup_at), to_utc(body.return_at),
        extras=extras_of(body), discount_code=body.discount_code,
    ), s)
    return quote_view(quote)


# ------------------------------------------------------------
# POST /v1/bookings - Créer une réservation (hold pending)
# ------------------------------------------------------------
# Jamais relancée automatiquement : un échec de la base est
# remonté tel quel pour éviter une double réservation.
# ------------------------------------------------------------
@router.post("/v1/bookings", status_code=201)
def create_booking(body: BookingCreate, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    lifecycle = BookingLifecycle(s)
    b = lifecycle.create_booking(BookingRequest(
        company_id=body.company_id,
        customer_id=body.customer_id,
        category_id=body.category_id,
        pickup_location_id=body.pickup_location_id,
        return_location_id=body.return_location_id,
        pickup_at=to_utc(body.pickup_at),
        return_at=to_utc(body.return_at),
        extras=extras_of(body),
        discount_code=body.discount_code,
        source=body.source,
        notes=body.notes,
    ), actor=actor)
    publish_event("BookingCreated", booking_payload(b, holdExpiresAt=to_local(b.hold_expires_at)))
    return booking_view(b, lifecycle.bookings)


@router.get("/v1/bookings/by-reference/{reference}")
def get_booking_by_reference(reference: str, s: Session = Depends(get_session)):
    repo = BookingRepository(s)
    b = repo.get_by_reference(reference)
    if not b:
        raise BookingNotFoundError(f"booking {reference} not found")
    return booking_view(b, repo)


@router.get("/v1/bookings/{booking_id}")
def get_booking(booking_id: int, s: Session = Depends(get_session)):
    repo = BookingRepository(s)
    b = repo.get(booking_id)
    if not b:
        raise BookingNotFoundError(f"booking {booking_id} not found")
    return booking_view(b, repo, with_history=True)


# ------------------------------------------------------------
# POST /v1/bookings/{id}/transition - Changement de statut
# ------------------------------------------------------------
@router.post("/v1/bookings/{booking_id}/transition")
def transition_booking(booking_id: int, body: TransitionRequest, actor: Actor = Depends(get_actor),
                       s: Session = Depends(get_session)):
    lifecycle = BookingLifecycle(s)
    before = lifecycle.get(booking_id).status
    b = lifecycle.transition(
        booking_id, body.status, actor, reason=body.reason, vehicle_id=body.vehicle_id,
        additional_charges=body.additional_charges, charges_description=body.charges_description,
    )
    if b.status != before:
        publish_transition(b, actor=actor.role.value, reason=body.reason)
    return booking_view(b, lifecycle.bookings)


@router.post("/v1/bookings/{booking_id}/confirm")
def confirm_booking(booking_id: int, actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    return transition_booking(booking_id, TransitionRequest(status=BookingStatus.CONFIRMED), actor, s)


@router.post("/v1/bookings/{booking_id}/start")
def start_booking(booking_id: int, body: Optional[StartRequest] = None, actor: Actor = Depends(get_actor),
                  s: Session = Depends(get_session)):
    body = body or StartRequest()
    return transition_booking(
        booking_id, TransitionRequest(status=BookingStatus.IN_PROGRESS, vehicle_id=body.vehicle_id), actor, s)


@router.post("/v1/bookings/{booking_id}/complete")
def complete_booking(booking_id: int, body: Optional[CompleteRequest] = None,
                     actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    body = body or CompleteRequest()
    return transition_booking(booking_id, TransitionRequest(
        status=BookingStatus.COMPLETED,
        additional_charges=body.additional_charges,
        charges_description=body.charges_description,
    ), actor, s)


@router.post("/v1/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: int, body: Optional[CancelRequest] = None, actor: Actor = Depends(get_actor),
                   s: Session = Depends(get_session)):
    body = body or CancelRequest()
    return transition_booking(
        booking_id, TransitionRequest(status=BookingStatus.CANCELLED, reason=body.reason), actor, s)


# ------------------------------------------------------------
# POST /v1/discounts/validate - Vérifier un code (sans l'utiliser)
# ------------------------------------------------------------
@router.post("/v1/discounts/validate")
def validate_discount(body: DiscountCheck, s: Session = Depends(get_session)):
    result = DiscountValidator(CatalogRepository(s)).validate(
        body.code, body.company_id, body.subtotal,
        category_id=body.category_id, rental_days=body.rental_days,
    )
    return {
        "valid": result.valid,
        "code": result.code,
        "amount": money_view(result.amount),
        "discount_type": result.discount_type.value if result.discount_type else None,
        "reason": result.reason,
        "message": result.message,
    }


# ------------------------------------------------------------
# POST /v1/payments/webhook - Le processeur signale un paiement
# ------------------------------------------------------------
@router.post("/v1/payments/webhook")
def payment_webhook(event: PaymentEvent, s: Session = Depends(get_session)):
    msg = {"type": event.type, "messageId": event.messageId, "payload": event.payload}
    outcome = handle_payment_event(s, event.type, event.payload, message_id_for(msg))
    return {"outcome": outcome}


@router.post("/v1/holds/expire")
def expire_holds(actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    require_role(actor, ADMIN_ROLES)
    expired = BookingLifecycle(s).expire_holds()
    for b in expired:
        publish_transition(b, reason=b.cancellation_reason)
    return {"expired": [b.id for b in expired]}


# ------------------------------------------------------------
# GET /v1/ledger/summary - Vue comptable sur [start, end)
# ------------------------------------------------------------
@router.get("/v1/ledger/summary")
def ledger_summary(start: datetime, end: datetime, company_id: str = DEFAULT_COMPANY_ID,
                   actor: Actor = Depends(get_actor), s: Session = Depends(get_session)):
    require_role(actor, STAFF_ROLES)
    summary = with_store_retry(
        lambda: FinancialLedger(BookingRepository(s)).summary(company_id, to_utc(start), to_utc(end)),
        s,
    )
    return {
        "start": to_local(summary.start),
        "end": to_local(summary.end),
        "revenue": money_view(summary.revenue),
        "revenue_change": summary.revenue_change,
        "bookings_count": summary.bookings_count,
        "average_booking_value": money_view(summary.average_booking_value),
        "pending_payments": money_view(summary.pending_payments),
        "pending_payments_count": summary.pending_payments_count,
        "discount_total": money_view(summary.discount_total),
        "by_category": [
            {"category_id": c.category_id, "amount": money_view(c.amount), "percentage": c.percentage}
            for c in summary.by_category
        ],
        "by_status": summary.by_status,
    }
