# ============================================================
# discounts.py - Validation des codes de remise
# ------------------------------------------------------------
# Un code invalide est un résultat normal (valid=False + raison),
# jamais une exception pour l'appelant. Seule une entrée mal
# formée (code vide, sous-total négatif) lève ValidationError.
# L'usage du code n'est PAS incrémenté ici (voir lifecycle.py).
# ============================================================
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from errors import DiscountInvalidError, ValidationError
from models import DiscountCode, DiscountType
from money import ZERO, as_decimal, quantize
from repository import CatalogRepository
from timeutil import utcnow

NOT_FOUND = "not_found"
INACTIVE = "inactive"
NOT_STARTED = "not_started"
EXPIRED = "expired"
EXHAUSTED = "exhausted"
BELOW_MINIMUM = "below_minimum"
TOO_SHORT = "too_short"
CATEGORY_NOT_ELIGIBLE = "category_not_eligible"


def normalize_code(code: str) -> str:
    return code.strip().upper()


@dataclass
class DiscountResult:
    valid: bool
    amount: Decimal = ZERO
    reason: Optional[str] = None
    message: Optional[str] = None
    code: Optional[str] = None
    discount_type: Optional[DiscountType] = None


def compute_amount(dc: DiscountCode, subtotal: Decimal) -> Decimal:
    if dc.discount_type == DiscountType.PERCENTAGE:
        amount = subtotal * as_decimal(dc.discount_value) / Decimal(100)
    else:
        amount = as_decimal(dc.discount_value)
    return quantize(min(max(amount, Decimal(0)), subtotal))


def check_rules(dc: DiscountCode, subtotal: Decimal, now: datetime,
                category_id: Optional[str] = None, rental_days: Optional[int] = None):
    if not dc.is_active:
        raise DiscountInvalidError(INACTIVE, "this code is no longer active")
    if dc.valid_from is not None and now < dc.valid_from:
        raise DiscountInvalidError(NOT_STARTED, "this code is not valid yet")
    if dc.valid_until is not None and now > dc.valid_until:
        raise DiscountInvalidError(EXPIRED, "this code has expired")
    if dc.max_uses is not None and dc.current_uses >= dc.max_uses:
        raise DiscountInvalidError(EXHAUSTED, "this code has reached its usage limit")
    if dc.min_amount is not None and subtotal < as_decimal(dc.min_amount):
        raise DiscountInvalidError(BELOW_MINIMUM, f"minimum booking value is {quantize(dc.min_amount)}")
    if dc.min_days is not None and rental_days is not None and rental_days < dc.min_days:
        raise DiscountInvalidError(TOO_SHORT, f"minimum rental is {dc.min_days} days")
    if dc.category_ids and category_id is not None and category_id not in dc.category_ids:
        raise DiscountInvalidError(CATEGORY_NOT_ELIGIBLE, "this code does not apply to this vehicle category")


class DiscountValidator:
    def __init__(self, catalog: CatalogRepository):
        self.catalog = catalog

    def validate(self, code: str, scope: str, subtotal, category_id: Optional[str] = None,
                 rental_days: Optional[int] = None, now: Optional[datetime] = None) -> DiscountResult:
        if code is None or not code.strip():
            raise ValidationError("discount code must not be blank")
        subtotal = as_decimal(subtotal)
        if subtotal < 0:
            raise ValidationError("subtotal must not be negative")

        code = normalize_code(code)
        now = now or utcnow()
        try:
            dc = self.catalog.get_discount(scope, code)
            if dc is None:
                raise DiscountInvalidError(NOT_FOUND, "unknown discount code")
            check_rules(dc, subtotal, now, category_id=category_id, rental_days=rental_days)
        except DiscountInvalidError as e:
            return DiscountResult(valid=False, reason=e.reason, message=e.message, code=code)

        return DiscountResult(
            valid=True,
            amount=compute_amount(dc, subtotal),
            code=code,
            discount_type=dc.discount_type,
        )
