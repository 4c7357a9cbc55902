# ============================================================
# schemas.py - Corps de requête de l'API (SQLModel sans table)
# ============================================================
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel

from config import DEFAULT_COMPANY_ID
from models import BookingSource, BookingStatus


class ExtraSelectionIn(SQLModel):
    extra_id: str
    quantity: int = Field(default=1, ge=1)


class QuoteRequest(SQLModel):
    company_id: str = DEFAULT_COMPANY_ID
    category_id: str
    pickup_at: datetime
    return_at: datetime
    extras: List[ExtraSelectionIn] = []
    discount_code: Optional[str] = None


class BookingCreate(QuoteRequest):
    customer_id: str
    pickup_location_id: str
    return_location_id: str
    source: BookingSource = BookingSource.WEB
    notes: Optional[str] = None


class TransitionRequest(SQLModel):
    status: BookingStatus
    reason: Optional[str] = None
    vehicle_id: Optional[str] = None
    additional_charges: Optional[Decimal] = None
    charges_description: Optional[str] = None


class CancelRequest(SQLModel):
    reason: Optional[str] = None


class StartRequest(SQLModel):
    vehicle_id: Optional[str] = None


class CompleteRequest(SQLModel):
    additional_charges: Optional[Decimal] = None
    charges_description: Optional[str] = None


class DiscountCheck(SQLModel):
    code: str
    company_id: str = DEFAULT_COMPANY_ID
    subtotal: Decimal
    category_id: Optional[str] = None
    rental_days: Optional[int] = None


# même enveloppe que les messages RabbitMQ : {"type", "messageId", "payload"}
class PaymentEvent(SQLModel):
    type: str
    messageId: Optional[str] = None
    payload: Dict[str, Any] = {}
