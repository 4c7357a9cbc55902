# ============================================================
# lifecycle.py - Cycle de vie des réservations
# ------------------------------------------------------------
# Seul point d'écriture des Booking :
#   - create_booking : réserve + crée en une section critique
#   - transition     : applique la table des transitions
#   - expire_holds   : annule les pending dont le hold a expiré
#
#   pending ──> confirmed ──> in_progress ──> completed
#      │            │              │
#      └────────────┴──> cancelled <┘ (override admin, raison obligatoire)
# ============================================================
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from availability import AvailabilityResolver, check_range
from config import BOOKING_PREFIX, HOLD_MINUTES, PAST_GRACE_MINUTES
from errors import (
    AvailabilityConflictError,
    BookingNotFoundError,
    InvalidTransitionError,
    PermissionDeniedError,
    TerminalStateError,
    UnknownCategoryError,
    UnknownCustomerError,
    ValidationError,
)
from models import (
    TERMINAL_STATUSES,
    Booking,
    BookingExtra,
    BookingSource,
    BookingStatus,
    UnitState,
)
from money import ZERO, quantize
from pricing import ExtraSelection, PricingEngine
from repository import BookingRepository, CatalogRepository, reservation_lock
from timeutil import utcnow

logger = logging.getLogger(__name__)

HOLD_EXPIRED_REASON = "hold expired"


class ActorRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    RENT_ADMIN = "rent_admin"
    EMPLOYEE = "employee"
    CUSTOMER = "customer"
    SYSTEM = "system"


@dataclass(frozen=True)
class Transition:
    source: BookingStatus
    target: BookingStatus
    trigger: str
    override: bool = False


PENDING = BookingStatus.PENDING
CONFIRMED = BookingStatus.CONFIRMED
IN_PROGRESS = BookingStatus.IN_PROGRESS
COMPLETED = BookingStatus.COMPLETED
CANCELLED = BookingStatus.CANCELLED

TRANSITIONS = {
    (t.source, t.target): t
    for t in (
        Transition(PENDING, CONFIRMED, "confirm"),
        Transition(PENDING, CANCELLED, "cancel"),
        Transition(CONFIRMED, IN_PROGRESS, "start"),
        Transition(CONFIRMED, CANCELLED, "cancel"),
        Transition(IN_PROGRESS, COMPLETED, "complete"),
        Transition(IN_PROGRESS, CANCELLED, "override", override=True),
    )
}

ROLE_PERMISSIONS = {
    ActorRole.SUPER_ADMIN: frozenset(TRANSITIONS),
    ActorRole.RENT_ADMIN: frozenset(TRANSITIONS),
    ActorRole.EMPLOYEE: frozenset(k for k, t in TRANSITIONS.items() if not t.override),
    ActorRole.CUSTOMER: frozenset({(PENDING, CONFIRMED), (PENDING, CANCELLED), (CONFIRMED, CANCELLED)}),
    ActorRole.SYSTEM: frozenset({(PENDING, CONFIRMED), (PENDING, CANCELLED)}),
}


# Qui agit : passé explicitement par l'appelant (en-têtes de la
# passerelle, consumer de paiement, sweeper)
@dataclass(frozen=True)
class Actor:
    role: ActorRole
    id: Optional[str] = None

    def allows(self, transition: Transition, booking: Booking) -> bool:
        if (transition.source, transition.target) not in ROLE_PERMISSIONS[self.role]:
            return False
        if self.role == ActorRole.CUSTOMER:
            return booking.customer_id == self.id
        return True


SYSTEM_ACTOR = Actor(ActorRole.SYSTEM, "system")


@dataclass
class BookingRequest:
    company_id: str
    customer_id: str
    category_id: str
    pickup_location_id: str
    return_location_id: str
    pickup_at: datetime
    return_at: datetime
    extras: List[ExtraSelection] = field(default_factory=list)
    discount_code: Optional[str] = None
    source: BookingSource = BookingSource.WEB
    notes: Optional[str] = None


class BookingLifecycle:
    def __init__(self, session, pricing: Optional[PricingEngine] = None, hold_minutes: int = HOLD_MINUTES,
                 grace_minutes: int = PAST_GRACE_MINUTES, booking_prefix: str = BOOKING_PREFIX):
        self.session = session
        self.catalog = CatalogRepository(session)
        self.bookings = BookingRepository(session)
        self.availability = AvailabilityResolver(self.catalog, self.bookings, grace_minutes)
        self.pricing = pricing or PricingEngine(self.catalog)
        self.hold_minutes = hold_minutes
        self.grace_minutes = grace_minutes
        self.booking_prefix = booking_prefix

    def get(self, booking_id: int) -> Booking:
        b = self.bookings.get(booking_id)
        if b is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        return b

    # ------------------------------------------------------------
    # Création : validation + prix hors verrou, puis
    # expiration des holds / contrôle / insertion / commit sous verrou
    # ------------------------------------------------------------
    def create_booking(self, req: BookingRequest, actor: Actor = SYSTEM_ACTOR,
                       now: Optional[datetime] = None) -> Booking:
        now = now or utcnow()
        check_range(req.pickup_at, req.return_at, now, self.grace_minutes)
        if not req.pickup_location_id or not req.return_location_id:
            raise ValidationError("pickup and return locations are required")
        if actor.role == ActorRole.CUSTOMER and actor.id != req.customer_id:
            raise PermissionDeniedError("customers can only book for themselves")

        category = self.availability.require_category(req.category_id)
        if category.company_id != req.company_id:
            raise UnknownCategoryError(f"unknown vehicle category {req.category_id}")
        customer = self.catalog.get_customer(req.customer_id)
        if customer is None or not customer.is_active or customer.company_id != req.company_id:
            raise UnknownCustomerError(f"unknown customer {req.customer_id}")

        quote = self.pricing.price(req.company_id, req.category_id, req.pickup_at, req.return_at,
                                   extras=req.extras, discount_code=req.discount_code, now=now)
        lines = [
            BookingExtra(position=i, extra_id=line.extra_id, extra_name=line.name, quantity=line.quantity,
                         unit_price=line.unit_price, total_price=line.total, pricing_mode=line.pricing_mode)
            for i, line in enumerate(quote.lines)
        ]

        with reservation_lock(self.session, req.category_id):
            for stale in self.bookings.expired_holds(now, category_id=req.category_id):
                self._apply(stale, CANCELLED, SYSTEM_ACTOR, HOLD_EXPIRED_REASON, now)

            result = self.availability.count(req.category_id, req.pickup_at, req.return_at, now,
                                             location_id=req.pickup_location_id)
            if not result.is_available:
                raise AvailabilityConflictError("no vehicle left in this category for these dates")

            b = Booking(
                company_id=req.company_id,
                customer_id=req.customer_id,
                category_id=req.category_id,
                pickup_location_id=req.pickup_location_id,
                return_location_id=req.return_location_id,
                pickup_at=req.pickup_at,
                return_at=req.return_at,
                status=BookingStatus.PENDING,
                source=req.source,
                rental_days=quote.rental_days,
                daily_rate=quote.daily_rate,
                base_price=quote.base,
                extras_total=quote.extras_total,
                discount_code=quote.discount_code if quote.discount_reason is None else None,
                discount_amount=quote.discount_amount,
                total_price=quote.total,
                hold_expires_at=now + timedelta(minutes=self.hold_minutes),
                notes=req.notes,
                created_at=now,
                updated_at=now,
            )
            self.bookings.add(b, lines, actor_role=actor.role.value, actor_id=actor.id)
            b.reference = f"{self.booking_prefix}-{now.year}-{b.id:05d}"
            self.session.commit()

        self.session.refresh(b)
        logger.info("booking %s created (%s, %s units left before hold)", b.reference,
                    b.category_id, result.available_count)
        return b

    # ------------------------------------------------------------
    # Transitions : l'état est relu sous le verrou de la catégorie
    # ------------------------------------------------------------
    def transition(self, booking_id: int, target, actor: Actor, reason: Optional[str] = None,
                   now: Optional[datetime] = None, **details) -> Booking:
        now = now or utcnow()
        target = BookingStatus(target)
        b = self.get(booking_id)

        with reservation_lock(self.session, b.category_id):
            self.session.refresh(b)
            # confirmation rejouée (webhook relivré) : rien à faire
            if b.status == BookingStatus.CONFIRMED and target == BookingStatus.CONFIRMED:
                if not actor.allows(TRANSITIONS[(PENDING, CONFIRMED)], b):
                    raise PermissionDeniedError(f"{actor.role.value} may not confirm this booking")
                self.session.commit()
                return b
            if b.status in TERMINAL_STATUSES:
                raise TerminalStateError(f"booking {b.reference} is already {b.status.value}")
            t = TRANSITIONS.get((b.status, target))
            if t is None:
                raise InvalidTransitionError(f"cannot go from {b.status.value} to {target.value}")
            if not actor.allows(t, b):
                raise PermissionDeniedError(f"{actor.role.value} may not {t.trigger} this booking")
            if t.override and not (reason and reason.strip()):
                raise ValidationError("a reason is required to cancel a rental in progress")

            self._apply(b, target, actor, reason, now, **details)
            self.session.commit()

        self.session.refresh(b)
        logger.info("booking %s -> %s by %s", b.reference, b.status.value, actor.role.value)
        return b

    def confirm(self, booking_id: int, actor: Actor = SYSTEM_ACTOR, now=None):
        return self.transition(booking_id, CONFIRMED, actor, now=now)

    def start(self, booking_id: int, actor: Actor, vehicle_id: Optional[str] = None, now=None):
        return self.transition(booking_id, IN_PROGRESS, actor, now=now, vehicle_id=vehicle_id)

    def complete(self, booking_id: int, actor: Actor, additional_charges=None,
                 charges_description: Optional[str] = None, now=None):
        return self.transition(booking_id, COMPLETED, actor, now=now, additional_charges=additional_charges,
                               charges_description=charges_description)

    def cancel(self, booking_id: int, actor: Actor, reason: Optional[str] = None, now=None):
        return self.transition(booking_id, CANCELLED, actor, reason=reason, now=now)

    # verrou déjà pris par l'appelant
    def _apply(self, b: Booking, target: BookingStatus, actor: Actor, reason: Optional[str],
               now: datetime, vehicle_id: Optional[str] = None, additional_charges=None,
               charges_description: Optional[str] = None):
        source = b.status
        if target == CONFIRMED:
            self._confirm(b, now)
        elif target == IN_PROGRESS:
            self._start(b, now, vehicle_id)
        elif target == COMPLETED:
            self._complete(b, now, additional_charges, charges_description)
        elif target == CANCELLED:
            self._cancel(b, now, reason)

        b.status = target
        self.bookings.touch(b)
        self.bookings.record_change(b, source, actor.role.value, actor.id, reason)

    def _confirm(self, b: Booking, now: datetime):
        result = self.availability.count(b.category_id, b.pickup_at, b.return_at, now,
                                         location_id=b.pickup_location_id, exclude_id=b.id)
        if not result.is_available:
            raise AvailabilityConflictError("this vehicle is no longer available, please search again")
        # un seul incrément par réservation, même si la confirmation est rejouée
        if b.discount_code and not b.discount_applied:
            if not self.catalog.increment_discount_usage(b.company_id, b.discount_code):
                logger.warning("discount %s reached its cap before %s was confirmed", b.discount_code, b.reference)
            b.discount_applied = True
        b.confirmed_at = now
        b.hold_expires_at = None

    def _start(self, b: Booking, now: datetime, vehicle_id: Optional[str]):
        if now < b.pickup_at:
            logger.warning("booking %s picked up before its pickup time %s", b.reference, b.pickup_at)
        if vehicle_id:
            unit = self.catalog.get_unit(vehicle_id)
            if unit is None or unit.category_id != b.category_id:
                raise ValidationError(f"vehicle {vehicle_id} does not belong to category {b.category_id}")
            if unit.state != UnitState.AVAILABLE:
                raise ValidationError(f"vehicle {vehicle_id} is {unit.state.value}")
            unit.state = UnitState.RENTED
            self.session.add(unit)
            b.vehicle_id = unit.id
        b.pickup_completed_at = now

    def _complete(self, b: Booking, now: datetime, additional_charges, charges_description):
        if additional_charges is not None:
            charges = quantize(additional_charges)
            if charges < ZERO:
                raise ValidationError("additional charges must not be negative")
            b.additional_charges = charges
            b.additional_charges_description = charges_description
        self._release_unit(b)
        b.return_completed_at = now

    def _cancel(self, b: Booking, now: datetime, reason: Optional[str]):
        self._release_unit(b)
        b.cancelled_at = now
        b.cancellation_reason = reason
        b.hold_expires_at = None

    def _release_unit(self, b: Booking):
        if not b.vehicle_id:
            return
        unit = self.catalog.get_unit(b.vehicle_id)
        if unit is not None and unit.state == UnitState.RENTED:
            unit.state = UnitState.AVAILABLE
            self.session.add(unit)

    # ------------------------------------------------------------
    # Paiement : flag indépendant du statut
    # ------------------------------------------------------------
    def mark_paid(self, booking_id: int, method: Optional[str] = None, reference: Optional[str] = None,
                  now: Optional[datetime] = None) -> Booking:
        b = self.get(booking_id)
        if not b.is_paid:
            b.is_paid = True
            b.paid_at = now or utcnow()
            b.payment_method = method or b.payment_method
            b.payment_reference = reference or b.payment_reference
            self.bookings.touch(b)
            self.session.commit()
            self.session.refresh(b)
        return b

    def mark_unpaid(self, booking_id: int) -> Booking:
        b = self.get(booking_id)
        if b.is_paid:
            b.is_paid = False
            b.paid_at = None
            self.bookings.touch(b)
            self.session.commit()
            self.session.refresh(b)
        return b

    # ------------------------------------------------------------
    # Expiration des holds (sweeper) : rejouable sans effet
    # ------------------------------------------------------------
    def expire_holds(self, now: Optional[datetime] = None) -> List[Booking]:
        now = now or utcnow()
        expired = []
        for candidate in self.bookings.expired_holds(now):
            with reservation_lock(self.session, candidate.category_id):
                self.session.refresh(candidate)
                still_held = (
                    candidate.status == BookingStatus.PENDING
                    and candidate.hold_expires_at is not None
                    and candidate.hold_expires_at <= now
                )
                if still_held:
                    self._apply(candidate, CANCELLED, SYSTEM_ACTOR, HOLD_EXPIRED_REASON, now)
                self.session.commit()
            if still_held:
                logger.info("hold of booking %s expired", candidate.reference)
                expired.append(candidate)
        return expired
