# ============================================================
# pricing.py - Calcul du prix d'une location
# ------------------------------------------------------------
#   base     = prix/jour (règle tarifaire) x jours
#   extras   = par jour : prix x jours x qté ; par location : prix x qté
#   remise   = validateur de codes sur base + extras (0 si invalide)
#   total    = base + extras - remise, jamais négatif
# Fonction pure : aucune écriture, peut être rappelée à chaque
# modification du panier.
# ============================================================
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from discounts import DiscountValidator
from errors import InvalidRangeError, UnknownCategoryError, ValidationError
from models import ExtraPricingMode
from money import ZERO, quantize
from rates import RateCalendar, rental_days
from repository import CatalogRepository


@dataclass(frozen=True)
class ExtraSelection:
    extra_id: str
    quantity: int = 1


@dataclass
class ExtraLine:
    extra_id: str
    name: str
    quantity: int
    unit_price: Decimal
    pricing_mode: ExtraPricingMode
    total: Decimal


@dataclass
class PriceBreakdown:
    category_id: str
    rental_days: int
    daily_rate: Decimal
    base: Decimal
    extras_total: Decimal
    discount_amount: Decimal
    total: Decimal
    lines: List[ExtraLine] = field(default_factory=list)
    rate_rule_id: Optional[int] = None
    discount_code: Optional[str] = None
    discount_reason: Optional[str] = None
    discount_message: Optional[str] = None

    @property
    def subtotal(self) -> Decimal:
        return self.base + self.extras_total


class PricingEngine:
    def __init__(self, catalog: CatalogRepository, rates: Optional[RateCalendar] = None,
                 discounts: Optional[DiscountValidator] = None):
        self.catalog = catalog
        self.rates = rates or RateCalendar(catalog)
        self.discounts = discounts or DiscountValidator(catalog)

    def price_extras(self, company_id: str, selections: Iterable[ExtraSelection], days: int) -> List[ExtraLine]:
        selections = list(selections)
        extras = self.catalog.get_extras({s.extra_id for s in selections})
        lines = []
        for sel in selections:
            extra = extras.get(sel.extra_id)
            if extra is None or not extra.is_active or extra.company_id != company_id:
                raise ValidationError(f"unknown extra {sel.extra_id}")
            if sel.quantity < 1 or sel.quantity > extra.max_quantity:
                raise ValidationError(f"quantity for '{extra.name}' must be between 1 and {extra.max_quantity}")
            unit_price = quantize(extra.price)
            if extra.pricing_mode == ExtraPricingMode.PER_DAY:
                total = unit_price * days * sel.quantity
            else:
                total = unit_price * sel.quantity
            lines.append(ExtraLine(
                extra_id=extra.id, name=extra.name, quantity=sel.quantity,
                unit_price=unit_price, pricing_mode=extra.pricing_mode, total=quantize(total),
            ))
        return lines

    def price(self, company_id: str, category_id: str, pickup: datetime, ret: datetime,
              extras: Iterable[ExtraSelection] = (), discount_code: Optional[str] = None,
              now: Optional[datetime] = None) -> PriceBreakdown:
        if pickup >= ret:
            raise InvalidRangeError("pickup must be before return")
        category = self.catalog.get_category(category_id)
        if category is None or not category.is_active:
            raise UnknownCategoryError(f"unknown vehicle category {category_id}")

        days = rental_days(pickup, ret)
        applied = self.rates.resolve(company_id, category_id, pickup, ret)
        daily = quantize(applied.daily_price)
        base = quantize(daily * days)
        lines = self.price_extras(company_id, extras, days)
        extras_total = quantize(sum((line.total for line in lines), ZERO))
        subtotal = base + extras_total

        breakdown = PriceBreakdown(
            category_id=category_id, rental_days=days, daily_rate=daily, base=base,
            extras_total=extras_total, discount_amount=ZERO, total=subtotal,
            lines=lines, rate_rule_id=applied.rule.id,
        )

        if discount_code and discount_code.strip():
            result = self.discounts.validate(discount_code, company_id, subtotal,
                                             category_id=category_id, rental_days=days, now=now)
            breakdown.discount_code = result.code
            if result.valid:
                breakdown.discount_amount = result.amount
            else:
                breakdown.discount_reason = result.reason
                breakdown.discount_message = result.message

        breakdown.total = quantize(max(subtotal - breakdown.discount_amount, ZERO))
        return breakdown
