# ============================================================
# repository.py - Accès aux données Booking
# ------------------------------------------------------------
# Ce module implémente le design pattern "Repository" :
#   - CatalogRepository : flotte, clients, extras, tarifs, remises
#     (tables gérées par l'administration, lues par le moteur)
#   - BookingRepository : réservations, extras réservés, historique
# ainsi que le verrou de réservation par catégorie.
# ============================================================
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from models import (
    ACTIVE_STATUSES,
    Booking,
    BookingExtra,
    BookingStatus,
    BookingStatusChange,
    Customer,
    DiscountCode,
    Extra,
    InventoryUnit,
    RateRule,
    RateTier,
    UnitState,
    VehicleCategory,
)
from timeutil import utcnow


class CatalogRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_category(self, category_id: str):
        return self.session.exec(
            select(VehicleCategory).where(VehicleCategory.id == category_id)
        ).first()

    def get_customer(self, customer_id: str):
        return self.session.exec(select(Customer).where(Customer.id == customer_id)).first()

    def get_unit(self, unit_id: str):
        return self.session.exec(select(InventoryUnit).where(InventoryUnit.id == unit_id)).first()

    def get_extras(self, extra_ids):
        if not extra_ids:
            return {}
        rows = self.session.exec(select(Extra).where(Extra.id.in_(list(extra_ids)))).all()
        return {e.id: e for e in rows}

    # Capacité = unités de la catégorie qui ne sont pas inactives.
    # Si location_id est donné : unités stationnées là (ou sans station)
    def count_capacity(self, category_id: str, location_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(InventoryUnit).where(
            InventoryUnit.category_id == category_id,
            InventoryUnit.state != UnitState.INACTIVE,
        )
        if location_id is not None:
            stmt = stmt.where(
                or_(InventoryUnit.location_id == location_id, InventoryUnit.location_id.is_(None))
            )
        return self.session.exec(stmt).one()

    def rate_rules(self, company_id: str, category_id: str):
        return self.session.exec(
            select(RateRule).where(
                RateRule.company_id == company_id,
                RateRule.category_id == category_id,
                RateRule.is_active == True,  # noqa: E712
            )
        ).all()

    def rate_tiers(self, rule_id: int):
        return self.session.exec(
            select(RateTier).where(RateTier.rule_id == rule_id).order_by(RateTier.min_days)
        ).all()

    def get_discount(self, company_id: str, code: str):
        return self.session.exec(
            select(DiscountCode).where(
                DiscountCode.company_id == company_id,
                DiscountCode.code == code,
            )
        ).first()

    # Incrément atomique côté base : jamais au-delà de max_uses.
    # Retourne False si le plafond est déjà atteint.
    def increment_discount_usage(self, company_id: str, code: str) -> bool:
        stmt = (
            update(DiscountCode)
            .where(
                DiscountCode.company_id == company_id,
                DiscountCode.code == code,
                or_(DiscountCode.max_uses.is_(None), DiscountCode.current_uses < DiscountCode.max_uses),
            )
            .values(current_uses=DiscountCode.current_uses + 1)
        )
        result = self.session.connection().execute(stmt)
        return result.rowcount == 1


class BookingRepository:
    def __init__(self, session: Session):
        self.session = session

    # ajoute la réservation, ses extras et la première ligne d'historique.
    # Le commit reste à la charge de l'appelant (section critique).
    def add(self, b: Booking, extras=(), actor_role: str = "system", actor_id: Optional[str] = None):
        self.session.add(b)
        self.session.flush()
        for line in extras:
            line.booking_id = b.id
            self.session.add(line)
        self.session.add(BookingStatusChange(
            booking_id=b.id, from_status=None, to_status=b.status.value,
            actor_role=actor_role, actor_id=actor_id,
        ))
        return b

    def get(self, booking_id: int):
        return self.session.exec(select(Booking).where(Booking.id == booking_id)).first()

    def get_by_reference(self, reference: str):
        return self.session.exec(select(Booking).where(Booking.reference == reference)).first()

    def extras(self, booking_id: int):
        return self.session.exec(
            select(BookingExtra).where(BookingExtra.booking_id == booking_id).order_by(BookingExtra.position)
        ).all()

    def history(self, booking_id: int):
        return self.session.exec(
            select(BookingStatusChange)
            .where(BookingStatusChange.booking_id == booking_id)
            .order_by(BookingStatusChange.id)
        ).all()

    def record_change(self, b: Booking, from_status: BookingStatus, actor_role: str,
                      actor_id: Optional[str] = None, reason: Optional[str] = None):
        self.session.add(BookingStatusChange(
            booking_id=b.id, from_status=from_status.value, to_status=b.status.value,
            actor_role=actor_role, actor_id=actor_id, reason=reason,
        ))

    # Nombre de réservations actives qui chevauchent [start, end).
    # Intervalle semi-ouvert : un retour à 10h ne gêne pas un départ à 10h.
    # Les holds pending expirés ne comptent plus.
    def count_overlapping(self, category_id: str, start: datetime, end: datetime, now: datetime,
                          location_id: Optional[str] = None, exclude_id: Optional[int] = None) -> int:
        stmt = select(func.count()).select_from(Booking).where(
            Booking.category_id == category_id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.pickup_at < end,
            start < Booking.return_at,
            or_(
                Booking.status != BookingStatus.PENDING,
                Booking.hold_expires_at.is_(None),
                Booking.hold_expires_at > now,
            ),
        )
        if location_id is not None:
            stmt = stmt.where(Booking.pickup_location_id == location_id)
        if exclude_id is not None:
            stmt = stmt.where(Booking.id != exclude_id)
        return self.session.exec(stmt).one()

    def expired_holds(self, now: datetime, category_id: Optional[str] = None):
        stmt = select(Booking).where(
            Booking.status == BookingStatus.PENDING,
            Booking.hold_expires_at.is_not(None),
            Booking.hold_expires_at <= now,
        )
        if category_id is not None:
            stmt = stmt.where(Booking.category_id == category_id)
        return self.session.exec(stmt.order_by(Booking.id)).all()

    def created_between(self, company_id: str, start: datetime, end: datetime):
        return self.session.exec(
            select(Booking).where(
                Booking.company_id == company_id,
                Booking.created_at >= start,
                Booking.created_at < end,
            )
        ).all()

    def touch(self, b: Booking):
        b.updated_at = utcnow()
        self.session.add(b)


# ------------------------------------------------------------
# Section critique par catégorie
# ------------------------------------------------------------
# Verrou local au process (threads) + SELECT ... FOR UPDATE sur la
# ligne de la catégorie : plusieurs process sur PostgreSQL sont
# eux aussi sérialisés. Le commit doit se faire dans le bloc.
# ------------------------------------------------------------
_category_locks = {}
_registry_lock = threading.Lock()


def _lock_for(category_id: str) -> threading.Lock:
    with _registry_lock:
        lock = _category_locks.get(category_id)
        if lock is None:
            lock = _category_locks[category_id] = threading.Lock()
        return lock


@contextmanager
def reservation_lock(session: Session, category_id: str):
    lock = _lock_for(category_id)
    with lock:
        try:
            session.exec(
                select(VehicleCategory).where(VehicleCategory.id == category_id).with_for_update()
            ).first()
            yield
        except Exception:
            session.rollback()
            raise
