from decimal import Decimal
from typing import Optional

from .accounts import quantize
from .errors import NotFoundError
from .models import PriceQuote


def calculate_price(storage, base_price: Decimal, mentor_group_id: str, country_id: Optional[str] = None) -> PriceQuote:
    """Base lesson price scaled by country and mentor group multipliers; a missing factor counts as 1.0."""
    group = storage.get("pricing_groups", mentor_group_id)
    if group is None:
        raise NotFoundError(f"Pricing group {mentor_group_id} not found")
    country = storage.get("pricing_countries", country_id) if country_id else None

    group_multiplier = Decimal(group.get("multiplier") or "1.0")
    country_multiplier = Decimal(country.get("multiplier") or "1.0") if country else Decimal("1.0")
    return PriceQuote(
        mentor_group_id=mentor_group_id,
        country_id=country_id,
        base_price=base_price,
        country_multiplier=country_multiplier,
        group_multiplier=group_multiplier,
        price=quantize(base_price * country_multiplier * group_multiplier),
    )
