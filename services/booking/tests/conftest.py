import os

# à positionner avant le premier import des modules du service
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EVENTS_ENABLED"] = "false"
os.environ["CONSUMER_ENABLED"] = "false"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["LOCAL_TZ"] = "UTC"

from datetime import datetime, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

import models  # noqa: E402
from db import make_engine  # noqa: E402
from lifecycle import BookingRequest  # noqa: E402

NOW = datetime(2030, 6, 1, 9, 0)
COMPANY = "acme"


def day(n: int, hour: int = 10) -> datetime:
    """Day n of the test calendar (day 1 = 2030-06-02) at the given hour."""
    return datetime(2030, 6, 1, hour) + timedelta(days=n)


class Seeder:
    def __init__(self, session: Session):
        self.s = session

    def _save(self, obj):
        self.s.add(obj)
        self.s.commit()
        self.s.refresh(obj)
        return obj

    def category(self, category_id="eco", units=1, location_id=None, company_id=COMPANY):
        cat = self._save(models.VehicleCategory(id=category_id, company_id=company_id, name=category_id.title()))
        for i in range(units):
            self._save(models.InventoryUnit(id=f"{category_id}-{i + 1}", category_id=category_id,
                                            plate=f"{category_id.upper()}-{i + 1:03d}", location_id=location_id))
        return cat

    def unit(self, unit_id, category_id="eco", location_id=None, state=models.UnitState.AVAILABLE):
        return self._save(models.InventoryUnit(id=unit_id, category_id=category_id,
                                               location_id=location_id, state=state))

    def customer(self, customer_id="cust-1", company_id=COMPANY):
        return self._save(models.Customer(id=customer_id, company_id=company_id, name="Ana Costa",
                                          email=f"{customer_id}@example.com"))

    def rate(self, category_id="eco", price="50.00", valid_from=None, valid_until=None, name="general",
             created_at=None, company_id=COMPANY):
        rule = models.RateRule(company_id=company_id, category_id=category_id, name=name,
                               valid_from=valid_from, valid_until=valid_until, price_per_day=Decimal(price))
        if created_at is not None:
            rule.created_at = created_at
        return self._save(rule)

    def tier(self, rule, min_days, max_days, price):
        return self._save(models.RateTier(rule_id=rule.id, min_days=min_days, max_days=max_days,
                                          daily_price=Decimal(price)))

    def extra(self, extra_id="gps", price="10.00", mode=models.ExtraPricingMode.PER_DAY, max_quantity=1,
              company_id=COMPANY, is_active=True):
        return self._save(models.Extra(id=extra_id, company_id=company_id, name=extra_id.upper(),
                                       price=Decimal(price), pricing_mode=mode, max_quantity=max_quantity,
                                       is_active=is_active))

    def discount(self, code="SUMMER10", value="10", discount_type=models.DiscountType.PERCENTAGE,
                 company_id=COMPANY, **kwargs):
        return self._save(models.DiscountCode(company_id=company_id, code=code, discount_type=discount_type,
                                              discount_value=Decimal(value), **kwargs))

    def booking(self, status=models.BookingStatus.CONFIRMED, pickup=None, ret=None, category_id="eco",
                customer_id="cust-1", location_id="lis", **kwargs):
        pickup = pickup or day(1)
        ret = ret or day(3)
        if status == models.BookingStatus.PENDING:
            kwargs.setdefault("hold_expires_at", NOW + timedelta(minutes=30))
        b = models.Booking(company_id=COMPANY, customer_id=customer_id, category_id=category_id,
                           pickup_location_id=location_id, return_location_id=location_id,
                           pickup_at=pickup, return_at=ret, status=status,
                           total_price=kwargs.pop("total_price", Decimal("100.00")),
                           created_at=kwargs.pop("created_at", NOW), **kwargs)
        b = self._save(b)
        b.reference = f"ALK-2030-{b.id:05d}"
        return self._save(b)


def booking_request(pickup=None, ret=None, category_id="eco", customer_id="cust-1", location_id="lis",
                    **kwargs) -> BookingRequest:
    return BookingRequest(
        company_id=COMPANY,
        customer_id=customer_id,
        category_id=category_id,
        pickup_location_id=location_id,
        return_location_id=location_id,
        pickup_at=pickup or day(1),
        return_at=ret or day(3),
        **kwargs,
    )


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    SQLModel.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def seed(session):
    return Seeder(session)


# Flotte minimale : une catégorie "eco" d'une unité, un client, un tarif général à 50/jour
@pytest.fixture
def fleet(seed):
    seed.category("eco", units=1)
    seed.customer("cust-1")
    seed.customer("cust-2")
    seed.rate("eco", "50.00")
    return seed


@pytest.fixture
def events(monkeypatch):
    """Captures published events instead of talking to RabbitMQ."""
    import api
    import consumer
    import sweeper

    published = []

    def fake_publish(event_type, payload):
        published.append((event_type, payload))

    def fake_transition(b, **extra):
        import publisher
        event_type = publisher.EVENT_BY_STATUS.get(b.status)
        if event_type:
            published.append((event_type, publisher.booking_payload(b, **extra)))

    for mod in (api, consumer):
        monkeypatch.setattr(mod, "publish_event", fake_publish)
    for mod in (api, consumer, sweeper):
        monkeypatch.setattr(mod, "publish_transition", fake_transition)
    return published
