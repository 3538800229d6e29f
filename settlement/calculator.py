"""
Commission and cashback arithmetic.

Pure functions only: nothing here reads storage or the clock. Amounts are
whole currency units, floor-truncated and never negative.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Optional, Union

from .config import SpecialAccessScope
from .models import Package, UserAccount

HUNDRED = Decimal("100")
DEFAULT_COMMISSION_PERCENT = Decimal("58")
CASHBACK_PERCENT = Decimal("10")


@dataclass(frozen=True)
class DefaultSource:
    """Commission percentage taken from the purchased package."""

    package_id: str
    percent: Decimal


@dataclass(frozen=True)
class OverrideSource:
    """Commission percentage taken from the referrer's special access grant."""

    package_id: Optional[str]
    percent: Decimal


CommissionSource = Union[DefaultSource, OverrideSource]


@dataclass(frozen=True)
class SettlementAmounts:
    commission: Decimal
    cashback: Decimal
    percent: Decimal
    source: Optional[CommissionSource] = None


def clamp_percent(value: Decimal) -> Decimal:
    return min(max(Decimal(value), Decimal("0")), HUNDRED)


def _floor(value: Decimal) -> Decimal:
    return value.to_integral_value(rounding=ROUND_FLOOR)


def resolve_commission_source(
    referrer: Optional[UserAccount],
    package: Package,
    scope: SpecialAccessScope = SpecialAccessScope.ANY,
    default_percent: Decimal = DEFAULT_COMMISSION_PERCENT,
) -> CommissionSource:
    """An active override wins over the package default.

    With ``SpecialAccessScope.ANY`` any active override applies, whatever was
    purchased. With ``SpecialAccessScope.PACKAGE`` it applies only when the
    grant's package is the one being settled.
    """
    grant = referrer.special_access if referrer else None
    if grant is not None and grant.active and grant.commission_percent is not None:
        if scope == SpecialAccessScope.ANY or grant.package_id == package.id:
            return OverrideSource(grant.package_id, clamp_percent(grant.commission_percent))

    percent = package.commission_percent
    if percent is None or percent <= 0:
        percent = default_percent
    return DefaultSource(package.id, clamp_percent(percent))


def effective_commission_percent(
    referrer: Optional[UserAccount],
    package: Package,
    scope: SpecialAccessScope = SpecialAccessScope.ANY,
    default_percent: Decimal = DEFAULT_COMMISSION_PERCENT,
) -> Decimal:
    return resolve_commission_source(referrer, package, scope, default_percent).percent


def calculate_commission(price: Decimal, percent: Decimal) -> Decimal:
    if price <= 0:
        return Decimal("0")
    return max(_floor(Decimal(price) * clamp_percent(percent) / HUNDRED), Decimal("0"))


def calculate_cashback(price: Decimal, percent: Decimal = CASHBACK_PERCENT) -> Decimal:
    return calculate_commission(price, percent)


def calculate_settlement(
    price: Decimal,
    referrer: Optional[UserAccount],
    package: Package,
    scope: SpecialAccessScope = SpecialAccessScope.ANY,
    default_percent: Decimal = DEFAULT_COMMISSION_PERCENT,
    cashback_percent: Decimal = CASHBACK_PERCENT,
) -> SettlementAmounts:
    """Amounts owed for one order. Both are zero without a referrer."""
    if referrer is None or price <= 0:
        return SettlementAmounts(Decimal("0"), Decimal("0"), Decimal("0"))

    source = resolve_commission_source(referrer, package, scope, default_percent)
    return SettlementAmounts(
        commission=calculate_commission(price, source.percent),
        cashback=calculate_cashback(price, cashback_percent),
        percent=source.percent,
        source=source,
    )
