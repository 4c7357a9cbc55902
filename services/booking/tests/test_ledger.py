from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import COMPANY, NOW
from ledger import FinancialLedger, percent_change
from models import BookingStatus
from repository import BookingRepository

START = NOW - timedelta(days=1)
END = NOW + timedelta(days=1)


@pytest.fixture
def ledger(session):
    return FinancialLedger(BookingRepository(session))


def test_summary_over_period(ledger, seed):
    seed.category("eco", units=5)
    seed.category("suv", units=5)
    seed.booking(BookingStatus.COMPLETED, total_price=Decimal("200.00"), is_paid=True,
                 additional_charges=Decimal("20.00"), discount_amount=Decimal("10.00"))
    seed.booking(BookingStatus.CONFIRMED, category_id="suv", total_price=Decimal("180.00"), is_paid=True)
    seed.booking(BookingStatus.CONFIRMED, total_price=Decimal("90.00"))
    seed.booking(BookingStatus.PENDING, total_price=Decimal("70.00"))
    seed.booking(BookingStatus.CANCELLED, total_price=Decimal("500.00"), is_paid=True)
    # hors période
    seed.booking(BookingStatus.COMPLETED, total_price=Decimal("999.00"), is_paid=True,
                 created_at=END + timedelta(hours=1))

    summary = ledger.summary(COMPANY, START, END)

    assert summary.revenue == Decimal("400.00")
    assert summary.bookings_count == 4
    assert summary.average_booking_value == Decimal("100.00")
    assert summary.pending_payments == Decimal("90.00")
    assert summary.pending_payments_count == 1
    assert summary.discount_total == Decimal("10.00")
    assert [(c.category_id, c.amount, c.percentage) for c in summary.by_category] == [
        ("eco", Decimal("220.00"), 55),
        ("suv", Decimal("180.00"), 45),
    ]
    assert summary.by_status == {"completed": 1, "confirmed": 2, "pending": 1, "cancelled": 1}


def test_revenue_change_against_previous_period(ledger, seed):
    seed.category("eco", units=5)
    seed.booking(BookingStatus.COMPLETED, total_price=Decimal("100.00"), is_paid=True,
                 created_at=START - timedelta(hours=12))
    seed.booking(BookingStatus.COMPLETED, total_price=Decimal("150.00"), is_paid=True)

    assert ledger.summary(COMPANY, START, END).revenue_change == 50


def test_empty_period(ledger):
    summary = ledger.summary(COMPANY, START, END)
    assert summary.revenue == Decimal("0.00")
    assert summary.average_booking_value == Decimal("0.00")
    assert summary.by_category == []
    assert summary.revenue_change == 0


@pytest.mark.parametrize("current, previous, expected", [
    (Decimal("150"), Decimal("100"), 50),
    (Decimal("50"), Decimal("100"), -50),
    (Decimal("10"), Decimal("0"), 100),
    (Decimal("0"), Decimal("0"), 0),
])
def test_percent_change(current, previous, expected):
    assert percent_change(current, previous) == expected
