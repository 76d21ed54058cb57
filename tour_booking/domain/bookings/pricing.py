"""
Tour pricing

Group price tables are lists of tiers such as::

    [{"groupSize": "1-3", "price": 50}, {"groupSize": 4, "price": 180, "perPerson": False}]

``groupSize`` is either an exact guest count or an inclusive "min-max" range.
Tiers are scanned in table order and the first match wins.
"""

import logging
from typing import Any, Iterable, Optional, Union

logger = logging.getLogger(__name__)


def _tier_value(tier: Any, name: str, default=None):
    if isinstance(tier, dict):
        return tier.get(name, default)
    return getattr(tier, name, default)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def tier_matches(group_size: Union[int, str, None], guests: int) -> bool:
    """Check whether a tier's groupSize covers the guest count"""
    if group_size is None or isinstance(group_size, bool):
        return False

    if isinstance(group_size, int):
        return group_size == guests

    if isinstance(group_size, str):
        size = group_size.strip()
        if "-" in size:
            low, _, high = size.partition("-")
            try:
                return int(low) <= guests <= int(high)
            except ValueError:
                return False
        if size.isdigit():
            return int(size) == guests

    return False


def find_tier(tiers: Optional[Iterable[Any]], guests: int):
    """Return the first tier matching the guest count, or None"""
    for tier in tiers or []:
        if tier_matches(_tier_value(tier, "groupSize"), guests):
            return tier
    return None


def calculate_price(
    tiers: Optional[Iterable[Any]], guests: int, fallback: Any = None
) -> float:
    """
    Price a tour for a number of guests.

    Args:
        tiers: Group price table (dicts or objects with groupSize/price/perPerson)
        guests: Guest count
        fallback: Item's own price used when no tier matches

    Returns:
        Tier price times guests for per-person tiers, the flat tier price otherwise.
        With no matching tier the numeric fallback is used, else 0. Never raises.
    """
    tier = find_tier(tiers, guests)

    if tier is None:
        fallback_price = _as_number(fallback)
        if fallback_price is None:
            logger.warning(f"⚠️ No price tier for {guests} guest(s) and no fallback price, using 0")
            return 0.0
        return round(fallback_price, 2)

    price = _as_number(_tier_value(tier, "price")) or 0.0
    if _tier_value(tier, "perPerson", True) is not False:
        price *= guests

    return round(price, 2)
