# ============================================================
# availability.py - Disponibilité d'une catégorie sur une période
# ------------------------------------------------------------
# disponible = capacité - réservations actives qui chevauchent,
# plancher à 0. Lecture seule : aucun verrou, aucune écriture.
# ============================================================
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config import PAST_GRACE_MINUTES
from errors import InvalidRangeError, UnknownCategoryError
from repository import BookingRepository, CatalogRepository
from timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Availability:
    category_id: str
    capacity: int
    overlapping: int
    available_count: int

    @property
    def is_available(self) -> bool:
        return self.available_count > 0


def check_range(pickup: datetime, ret: datetime, now: datetime, grace_minutes: int = PAST_GRACE_MINUTES):
    if pickup >= ret:
        raise InvalidRangeError("pickup must be before return")
    if pickup < now - timedelta(minutes=grace_minutes):
        raise InvalidRangeError("pickup date is in the past")


class AvailabilityResolver:
    def __init__(self, catalog: CatalogRepository, bookings: BookingRepository,
                 grace_minutes: int = PAST_GRACE_MINUTES):
        self.catalog = catalog
        self.bookings = bookings
        self.grace_minutes = grace_minutes

    def require_category(self, category_id: str):
        category = self.catalog.get_category(category_id)
        if category is None or not category.is_active:
            raise UnknownCategoryError(f"unknown vehicle category {category_id}")
        return category

    # Pool de la catégorie, puis pool de la station si demandé :
    # on garde le plus petit des deux
    def count(self, category_id: str, pickup: datetime, ret: datetime, now: datetime,
              location_id: Optional[str] = None, exclude_id: Optional[int] = None) -> Availability:
        capacity = self.catalog.count_capacity(category_id)
        overlapping = self.bookings.count_overlapping(category_id, pickup, ret, now, exclude_id=exclude_id)
        available = max(0, capacity - overlapping)

        if location_id is not None:
            local_capacity = self.catalog.count_capacity(category_id, location_id)
            local_overlapping = self.bookings.count_overlapping(
                category_id, pickup, ret, now, location_id=location_id, exclude_id=exclude_id)
            available = min(available, max(0, local_capacity - local_overlapping))

        return Availability(category_id=category_id, capacity=capacity,
                            overlapping=overlapping, available_count=available)

    def resolve(self, category_id: str, pickup: datetime, ret: datetime,
                location_id: Optional[str] = None, now: Optional[datetime] = None) -> Availability:
        now = now or utcnow()
        check_range(pickup, ret, now, self.grace_minutes)
        self.require_category(category_id)
        result = self.count(category_id, pickup, ret, now, location_id=location_id)
        logger.debug("availability %s %s..%s -> %s", category_id, pickup, ret, result)
        return result
