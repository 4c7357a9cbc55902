# ============================================================
# ledger.py - Vue comptable (lecture seule)
# ------------------------------------------------------------
# Agrège les réservations créées sur [start, end) : chiffre
# d'affaires encaissé, paiements en attente, remises accordées,
# répartition par catégorie et par statut. Ne modifie rien.
# ============================================================
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List

from models import Booking, BookingStatus
from money import ZERO, quantize
from repository import BookingRepository

UNPAID_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED)


@dataclass
class CategoryRevenue:
    category_id: str
    amount: Decimal
    percentage: int


@dataclass
class LedgerSummary:
    start: datetime
    end: datetime
    revenue: Decimal
    revenue_change: int
    bookings_count: int
    average_booking_value: Decimal
    pending_payments: Decimal
    pending_payments_count: int
    discount_total: Decimal
    by_category: List[CategoryRevenue] = field(default_factory=list)
    by_status: Dict[str, int] = field(default_factory=dict)


def booking_amount(b: Booking) -> Decimal:
    return quantize(b.total_price) + quantize(b.additional_charges or ZERO)


def paid_revenue(bookings) -> Decimal:
    return sum(
        (booking_amount(b) for b in bookings if b.is_paid and b.status != BookingStatus.CANCELLED),
        ZERO,
    )


# Variation en % par rapport à la période précédente
def percent_change(current: Decimal, previous: Decimal) -> int:
    if previous == 0:
        return 100 if current > 0 else 0
    return int(round((current - previous) / previous * 100))


class FinancialLedger:
    def __init__(self, bookings: BookingRepository):
        self.bookings = bookings

    def summary(self, company_id: str, start: datetime, end: datetime) -> LedgerSummary:
        rows = self.bookings.created_between(company_id, start, end)
        previous = self.bookings.created_between(company_id, start - (end - start), start)

        live = [b for b in rows if b.status != BookingStatus.CANCELLED]
        revenue = paid_revenue(rows)
        unpaid = [b for b in rows if not b.is_paid and b.status in UNPAID_STATUSES]

        per_category = defaultdict(lambda: ZERO)
        for b in live:
            if b.is_paid:
                per_category[b.category_id] += booking_amount(b)
        by_category = [
            CategoryRevenue(
                category_id=cid,
                amount=amount,
                percentage=int(round(amount / revenue * 100)) if revenue > 0 else 0,
            )
            for cid, amount in sorted(per_category.items(), key=lambda kv: kv[1], reverse=True)
        ]

        return LedgerSummary(
            start=start,
            end=end,
            revenue=quantize(revenue),
            revenue_change=percent_change(revenue, paid_revenue(previous)),
            bookings_count=len(live),
            average_booking_value=quantize(revenue / len(live)) if live else ZERO,
            pending_payments=quantize(sum((booking_amount(b) for b in unpaid), ZERO)),
            pending_payments_count=len(unpaid),
            discount_total=quantize(sum((quantize(b.discount_amount) for b in live), ZERO)),
            by_category=by_category,
            by_status=dict(Counter(b.status.value for b in rows)),
        )
