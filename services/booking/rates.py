# ============================================================
# rates.py - Calendrier tarifaire
# ------------------------------------------------------------
# Une règle s'applique si elle est active, pour la catégorie, et
# si sa période couvre les dates de départ et de retour (borne
# absente = ouverte). Plusieurs règles peuvent se chevaucher :
# la politique de choix est remplaçable (voir most_specific_rule).
# ============================================================
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from errors import NoApplicableRateError
from models import RateRule, RateTier
from money import as_decimal
from repository import CatalogRepository

ONE_DAY = timedelta(days=1)


# Durée facturée : jours entamés arrondis au supérieur, minimum 1
def rental_days(pickup: datetime, ret: datetime) -> int:
    return max(1, math.ceil((ret - pickup) / ONE_DAY))


def covers(rule: RateRule, start: date, end: date) -> bool:
    if rule.valid_from is not None and rule.valid_from > start:
        return False
    if rule.valid_until is not None and rule.valid_until < end:
        return False
    return True


def _window_days(rule: RateRule) -> float:
    if rule.valid_from is None or rule.valid_until is None:
        return math.inf
    return (rule.valid_until - rule.valid_from).days


# Politique par défaut : la période la plus courte gagne,
# puis la règle la plus récente
def most_specific_rule(candidates: List[RateRule]) -> Optional[RateRule]:
    if not candidates:
        return None
    return sorted(candidates, key=lambda r: (_window_days(r), -r.created_at.timestamp()))[0]


@dataclass
class AppliedRate:
    rule: RateRule
    daily_price: Decimal
    tier: Optional[RateTier] = None


class RateCalendar:
    def __init__(self, catalog: CatalogRepository,
                 policy: Callable[[List[RateRule]], Optional[RateRule]] = most_specific_rule):
        self.catalog = catalog
        self.policy = policy

    def applicable_rules(self, company_id: str, category_id: str, pickup: datetime, ret: datetime):
        rules = self.catalog.rate_rules(company_id, category_id)
        return [r for r in rules if covers(r, pickup.date(), ret.date())]

    def resolve(self, company_id: str, category_id: str, pickup: datetime, ret: datetime) -> AppliedRate:
        rule = self.policy(self.applicable_rules(company_id, category_id, pickup, ret))
        if rule is None:
            raise NoApplicableRateError(f"no rate configured for category {category_id} on these dates")

        days = rental_days(pickup, ret)
        tiers = self.catalog.rate_tiers(rule.id)
        if not tiers:
            return AppliedRate(rule=rule, daily_price=as_decimal(rule.price_per_day))

        for tier in tiers:
            if tier.min_days <= days and (tier.max_days is None or days <= tier.max_days):
                return AppliedRate(rule=rule, daily_price=as_decimal(tier.daily_price), tier=tier)
        raise NoApplicableRateError(f"rate '{rule.name}' has no price band for {days} days")
