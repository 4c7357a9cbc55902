# ============================================================
# models.py - Modèles de données SQLModel (Booking Service)
# ------------------------------------------------------------
# Tables lues par le moteur (flotte, tarifs, remises, extras,
# clients) et tables qu'il écrit lui-même :
#   1. Booking / BookingExtra : la réservation et ses extras
#   2. BookingStatusChange : historique des transitions
#   3. ProcessedMessage : messages RabbitMQ / webhooks déjà traités
# ============================================================
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel

from timeutil import utcnow


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# statuts qui occupent du stock
ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS)
TERMINAL_STATUSES = (BookingStatus.COMPLETED, BookingStatus.CANCELLED)


class UnitState(str, Enum):
    AVAILABLE = "available"
    RENTED = "rented"
    MAINTENANCE = "maintenance"
    INACTIVE = "inactive"


class ExtraPricingMode(str, Enum):
    PER_DAY = "per_day"
    PER_BOOKING = "per_booking"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class BookingSource(str, Enum):
    WEB = "web"
    MANUAL = "manual"
    PHONE = "phone"


# Les enums sont stockés par valeur ("in_progress") pour rester
# compatibles avec les vues de reporting existantes
def enum_column(enum_cls, **kwargs):
    return Column(
        SAEnum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=20,
        ),
        **kwargs,
    )


def money(**kwargs):
    return Field(max_digits=10, decimal_places=2, **kwargs)


# ------------------------------------------------------------
# Flotte (propriété de l'administration, lecture seule ici)
# ------------------------------------------------------------
class VehicleCategory(SQLModel, table=True):
    id: str = Field(primary_key=True)
    company_id: str = Field(index=True)
    name: str
    code: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class InventoryUnit(SQLModel, table=True):
    id: str = Field(primary_key=True)
    category_id: str = Field(foreign_key="vehiclecategory.id", index=True)
    plate: Optional[str] = None
    location_id: Optional[str] = Field(default=None, index=True)
    state: UnitState = Field(
        default=UnitState.AVAILABLE,
        sa_column=enum_column(UnitState, nullable=False),
    )


class Customer(SQLModel, table=True):
    id: str = Field(primary_key=True)
    company_id: str = Field(index=True)
    name: str
    email: Optional[str] = None
    is_active: bool = True


class Extra(SQLModel, table=True):
    id: str = Field(primary_key=True)
    company_id: str = Field(index=True)
    name: str
    price: Decimal = money(default=Decimal("0.00"))
    pricing_mode: ExtraPricingMode = Field(
        default=ExtraPricingMode.PER_DAY,
        sa_column=enum_column(ExtraPricingMode, nullable=False),
    )
    max_quantity: int = 1
    is_active: bool = True
    show_on_web: bool = True


# ------------------------------------------------------------
# Tarifs : une règle par catégorie et période, avec des paliers
# optionnels par durée (min_days..max_days)
# ------------------------------------------------------------
class RateRule(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True)
    category_id: str = Field(foreign_key="vehiclecategory.id", index=True)
    name: str = ""
    valid_from: Optional[date] = None   # None = pas de borne (tarif général)
    valid_until: Optional[date] = None
    price_per_day: Decimal = money()
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class RateTier(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    rule_id: int = Field(foreign_key="raterule.id", index=True)
    min_days: int = 1
    max_days: Optional[int] = None
    daily_price: Decimal = money()


class DiscountCode(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("company_id", "code"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: str = Field(index=True)
    code: str = Field(index=True)       # toujours en majuscules
    description: Optional[str] = None
    discount_type: DiscountType = Field(
        default=DiscountType.PERCENTAGE,
        sa_column=enum_column(DiscountType, nullable=False),
    )
    discount_value: Decimal = money()
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_uses: Optional[int] = None      # None = illimité
    current_uses: int = 0
    min_amount: Optional[Decimal] = money(default=None)
    min_days: Optional[int] = None
    category_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


# ------------------------------------------------------------
# Booking
# ------------------------------------------------------------
# Cycle de vie : pending -> confirmed -> in_progress -> completed
# avec annulation possible (voir lifecycle.py). Le flag is_paid
# est indépendant du statut.
# ------------------------------------------------------------
class Booking(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    reference: Optional[str] = Field(default=None, index=True, unique=True)
    company_id: str = Field(index=True)
    customer_id: str = Field(index=True)
    category_id: str = Field(foreign_key="vehiclecategory.id", index=True)
    vehicle_id: Optional[str] = None
    pickup_location_id: str
    return_location_id: str
    pickup_at: datetime = Field(index=True)
    return_at: datetime = Field(index=True)
    status: BookingStatus = Field(
        default=BookingStatus.PENDING,
        sa_column=enum_column(BookingStatus, nullable=False, index=True),
    )
    source: BookingSource = Field(
        default=BookingSource.WEB,
        sa_column=enum_column(BookingSource, nullable=False),
    )

    rental_days: int = 1
    daily_rate: Decimal = money(default=Decimal("0.00"))
    base_price: Decimal = money(default=Decimal("0.00"))
    extras_total: Decimal = money(default=Decimal("0.00"))
    discount_code: Optional[str] = None
    discount_amount: Decimal = money(default=Decimal("0.00"))
    total_price: Decimal = money(default=Decimal("0.00"))
    discount_applied: bool = False      # usage du code déjà compté
    additional_charges: Decimal = money(default=Decimal("0.00"))
    additional_charges_description: Optional[str] = None

    is_paid: bool = False
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None

    hold_expires_at: Optional[datetime] = Field(default=None, index=True)
    confirmed_at: Optional[datetime] = None
    pickup_completed_at: Optional[datetime] = None
    return_completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BookingExtra(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(foreign_key="booking.id", index=True)
    position: int = 0
    extra_id: str
    extra_name: str
    quantity: int = 1
    unit_price: Decimal = money()
    total_price: Decimal = money()
    pricing_mode: ExtraPricingMode = Field(
        default=ExtraPricingMode.PER_DAY,
        sa_column=enum_column(ExtraPricingMode, nullable=False),
    )


class BookingStatusChange(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(foreign_key="booking.id", index=True)
    from_status: Optional[str] = None
    to_status: str
    actor_role: str
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ProcessedMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(index=True, unique=True)
    processed_at: datetime = Field(default_factory=utcnow)
