from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW, booking_request, day
from errors import (
    AvailabilityConflictError,
    BookingNotFoundError,
    InvalidTransitionError,
    PermissionDeniedError,
    TerminalStateError,
    UnknownCustomerError,
    ValidationError,
)
from lifecycle import HOLD_EXPIRED_REASON, SYSTEM_ACTOR, TRANSITIONS, Actor, ActorRole, BookingLifecycle
from models import TERMINAL_STATUSES, BookingStatus, UnitState
from pricing import ExtraSelection
from repository import BookingRepository, CatalogRepository

ADMIN = Actor(ActorRole.SUPER_ADMIN, "admin-1")
RENT_ADMIN = Actor(ActorRole.RENT_ADMIN, "manager-1")
EMPLOYEE = Actor(ActorRole.EMPLOYEE, "desk-1")
CUSTOMER = Actor(ActorRole.CUSTOMER, "cust-1")
OTHER_CUSTOMER = Actor(ActorRole.CUSTOMER, "cust-2")


@pytest.fixture
def lifecycle(session, fleet):
    return BookingLifecycle(session)


def statuses(session, booking_id):
    return [h.to_status for h in BookingRepository(session).history(booking_id)]


# ------------------------------------------------------------
# Création
# ------------------------------------------------------------
def test_create_booking_holds_inventory(lifecycle, session):
    b = lifecycle.create_booking(booking_request(), actor=CUSTOMER, now=NOW)

    assert b.status == BookingStatus.PENDING
    assert b.reference == f"ALK-2030-{b.id:05d}"
    assert b.hold_expires_at == NOW + timedelta(minutes=30)
    assert b.rental_days == 2
    assert b.total_price == Decimal("100.00")
    assert statuses(session, b.id) == ["pending"]

    with pytest.raises(AvailabilityConflictError):
        lifecycle.create_booking(booking_request(customer_id="cust-2"), now=NOW)


def test_create_booking_keeps_extras_and_discount(lifecycle, fleet, session):
    fleet.extra("gps", "10.00")
    fleet.discount("SUMMER10", "10")
    b = lifecycle.create_booking(
        booking_request(ret=day(5), extras=[ExtraSelection("gps")], discount_code="summer10"), now=NOW)
    assert b.discount_code == "SUMMER10"
    assert b.total_price == Decimal("216.00")
    lines = BookingRepository(session).extras(b.id)
    assert [(e.extra_id, e.total_price) for e in lines] == [("gps", Decimal("40.00"))]


def test_invalid_code_is_not_stored(lifecycle):
    b = lifecycle.create_booking(booking_request(discount_code="NOPE"), now=NOW)
    assert b.discount_code is None
    assert b.discount_amount == Decimal("0.00")


def test_create_booking_rejections(lifecycle):
    with pytest.raises(PermissionDeniedError):
        lifecycle.create_booking(booking_request(customer_id="cust-2"), actor=CUSTOMER, now=NOW)
    with pytest.raises(UnknownCustomerError):
        lifecycle.create_booking(booking_request(customer_id="ghost"), now=NOW)
    with pytest.raises(ValidationError):
        lifecycle.create_booking(booking_request(location_id=""), now=NOW)


def test_adjacent_bookings_share_a_unit(lifecycle):
    lifecycle.create_booking(booking_request(pickup=day(1), ret=day(3)), now=NOW)
    b = lifecycle.create_booking(booking_request(pickup=day(3), ret=day(5), customer_id="cust-2"), now=NOW)
    assert b.status == BookingStatus.PENDING


# ------------------------------------------------------------
# Table des transitions
# ------------------------------------------------------------
@pytest.mark.parametrize("target", list(BookingStatus))
@pytest.mark.parametrize("source", list(BookingStatus))
def test_transition_table_is_exhaustive(lifecycle, fleet, source, target):
    b = fleet.booking(source)

    def attempt():
        return lifecycle.transition(b.id, target, ADMIN, reason="ops request", now=NOW)

    if source in TERMINAL_STATUSES:
        with pytest.raises(TerminalStateError):
            attempt()
    elif source == target == BookingStatus.CONFIRMED:
        assert attempt().status == BookingStatus.CONFIRMED
    elif (source, target) in TRANSITIONS:
        assert attempt().status == target
    else:
        with pytest.raises(InvalidTransitionError):
            attempt()


def test_unknown_booking(lifecycle):
    with pytest.raises(BookingNotFoundError):
        lifecycle.confirm(999)


# ------------------------------------------------------------
# Permissions
# ------------------------------------------------------------
def test_only_admins_override_a_running_rental(lifecycle, fleet, session):
    b = fleet.booking(BookingStatus.IN_PROGRESS)

    with pytest.raises(PermissionDeniedError):
        lifecycle.cancel(b.id, EMPLOYEE, reason="vehicle damaged", now=NOW)
    with pytest.raises(ValidationError):
        lifecycle.cancel(b.id, RENT_ADMIN, reason="  ", now=NOW)

    b = lifecycle.cancel(b.id, RENT_ADMIN, reason="vehicle damaged", now=NOW)
    assert b.status == BookingStatus.CANCELLED
    assert b.cancellation_reason == "vehicle damaged"
    last = BookingRepository(session).history(b.id)[-1]
    assert (last.from_status, last.to_status, last.actor_role, last.reason) == (
        "in_progress", "cancelled", "rent_admin", "vehicle damaged")


def test_customer_permissions(lifecycle, fleet):
    own = fleet.booking(BookingStatus.CONFIRMED, customer_id="cust-1")

    with pytest.raises(PermissionDeniedError):
        lifecycle.start(own.id, CUSTOMER, now=NOW)
    with pytest.raises(PermissionDeniedError):
        lifecycle.cancel(own.id, OTHER_CUSTOMER, now=NOW)
    assert lifecycle.cancel(own.id, CUSTOMER, reason="plans changed", now=NOW).status == BookingStatus.CANCELLED


def test_repeated_confirm_still_checks_the_actor(lifecycle, fleet):
    b = fleet.booking(BookingStatus.CONFIRMED, customer_id="cust-1")
    with pytest.raises(PermissionDeniedError):
        lifecycle.confirm(b.id, OTHER_CUSTOMER, now=NOW)
    assert lifecycle.confirm(b.id, CUSTOMER, now=NOW).status == BookingStatus.CONFIRMED


def test_system_actor_cannot_cancel_confirmed(lifecycle, fleet):
    b = fleet.booking(BookingStatus.CONFIRMED)
    with pytest.raises(PermissionDeniedError):
        lifecycle.cancel(b.id, SYSTEM_ACTOR, now=NOW)


def test_employee_runs_the_desk(lifecycle, fleet):
    b = fleet.booking(BookingStatus.CONFIRMED)
    b = lifecycle.start(b.id, EMPLOYEE, now=day(1))
    b = lifecycle.complete(b.id, EMPLOYEE, now=day(3))
    assert b.status == BookingStatus.COMPLETED
    assert b.return_completed_at == day(3)


# ------------------------------------------------------------
# Confirmation et remises
# ------------------------------------------------------------
def test_confirm_twice_counts_the_discount_once(lifecycle, fleet, session):
    dc = fleet.discount("SUMMER10", "10", max_uses=5)
    b = lifecycle.create_booking(booking_request(discount_code="SUMMER10"), now=NOW)

    lifecycle.confirm(b.id, now=NOW + timedelta(minutes=5))
    b = lifecycle.confirm(b.id, now=NOW + timedelta(minutes=6))

    session.refresh(dc)
    assert dc.current_uses == 1
    assert b.discount_applied
    assert b.hold_expires_at is None
    assert statuses(session, b.id) == ["pending", "confirmed"]


def test_cap_reached_before_confirm_still_confirms(lifecycle, fleet, session):
    fleet.unit("eco-2")
    dc = fleet.discount("LAST1", "10", max_uses=1)
    first = lifecycle.create_booking(booking_request(discount_code="LAST1"), now=NOW)
    second = lifecycle.create_booking(booking_request(discount_code="LAST1", customer_id="cust-2"), now=NOW)

    lifecycle.confirm(first.id, now=NOW)
    second = lifecycle.confirm(second.id, now=NOW)

    session.refresh(dc)
    assert dc.current_uses == 1
    assert second.status == BookingStatus.CONFIRMED
    assert second.discount_amount == Decimal("10.00")


def test_confirm_rechecks_availability(lifecycle, fleet):
    held = fleet.booking(BookingStatus.PENDING)
    # une réservation manuelle a pris la dernière unité entre-temps
    fleet.booking(BookingStatus.CONFIRMED, customer_id="cust-2")

    with pytest.raises(AvailabilityConflictError):
        lifecycle.confirm(held.id, now=NOW)
    assert lifecycle.get(held.id).status == BookingStatus.PENDING


# ------------------------------------------------------------
# Prise en charge / retour du véhicule
# ------------------------------------------------------------
def test_start_and_complete_move_the_unit(lifecycle, fleet, session):
    b = fleet.booking(BookingStatus.CONFIRMED)
    catalog = CatalogRepository(session)

    b = lifecycle.start(b.id, EMPLOYEE, vehicle_id="eco-1", now=day(1))
    assert b.vehicle_id == "eco-1"
    assert catalog.get_unit("eco-1").state == UnitState.RENTED

    b = lifecycle.complete(b.id, EMPLOYEE, additional_charges="30", charges_description="fuel", now=day(3))
    assert b.additional_charges == Decimal("30.00")
    assert b.additional_charges_description == "fuel"
    assert catalog.get_unit("eco-1").state == UnitState.AVAILABLE


def test_start_rejects_foreign_or_busy_unit(lifecycle, fleet):
    fleet.category("van", units=1)
    fleet.unit("eco-shop", state=UnitState.MAINTENANCE)
    b = fleet.booking(BookingStatus.CONFIRMED)

    for vehicle_id in ("van-1", "eco-shop", "ghost"):
        with pytest.raises(ValidationError):
            lifecycle.start(b.id, EMPLOYEE, vehicle_id=vehicle_id, now=day(1))
    assert lifecycle.get(b.id).status == BookingStatus.CONFIRMED


def test_negative_charges_are_rejected(lifecycle, fleet):
    b = fleet.booking(BookingStatus.IN_PROGRESS)
    with pytest.raises(ValidationError):
        lifecycle.complete(b.id, EMPLOYEE, additional_charges="-5", now=day(3))


# ------------------------------------------------------------
# Expiration des holds
# ------------------------------------------------------------
def test_unconfirmed_hold_expires_and_frees_capacity(lifecycle, session):
    b = lifecycle.create_booking(booking_request(), now=NOW)
    with pytest.raises(AvailabilityConflictError):
        lifecycle.create_booking(booking_request(customer_id="cust-2"), now=NOW + timedelta(minutes=10))

    later = NOW + timedelta(minutes=31)
    assert [x.id for x in lifecycle.expire_holds(later)] == [b.id]
    assert lifecycle.expire_holds(later) == []

    b = lifecycle.get(b.id)
    assert b.status == BookingStatus.CANCELLED
    assert b.cancellation_reason == HOLD_EXPIRED_REASON
    assert statuses(session, b.id) == ["pending", "cancelled"]

    again = lifecycle.create_booking(booking_request(customer_id="cust-2"), now=later)
    assert again.status == BookingStatus.PENDING


def test_create_expires_stale_holds_inline(lifecycle):
    stale = lifecycle.create_booking(booking_request(), now=NOW)
    fresh = lifecycle.create_booking(booking_request(customer_id="cust-2"), now=NOW + timedelta(minutes=45))
    assert fresh.status == BookingStatus.PENDING
    assert lifecycle.get(stale.id).status == BookingStatus.CANCELLED


def test_confirmed_bookings_are_not_swept(lifecycle):
    b = lifecycle.create_booking(booking_request(), now=NOW)
    lifecycle.confirm(b.id, now=NOW + timedelta(minutes=5))
    assert lifecycle.expire_holds(NOW + timedelta(hours=2)) == []


def test_payment_flag_is_independent_of_status(lifecycle):
    b = lifecycle.create_booking(booking_request(), now=NOW)
    b = lifecycle.mark_paid(b.id, method="card", reference="pi_123", now=NOW)
    assert b.is_paid and b.status == BookingStatus.PENDING
    assert b.payment_reference == "pi_123"
    b = lifecycle.mark_unpaid(b.id)
    assert not b.is_paid and b.paid_at is None
