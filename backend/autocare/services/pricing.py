from typing import Dict, Optional

from autocare.models import PriceBreakdown
from autocare.services.errors import MarketplaceValidationError

GST_PERCENT = 18
PROMO_CODES: Dict[str, int] = {
    "FIRST20": 20,
    "WASH10": 10,
    "MECHANIC15": 15,
}


def calculate_price(base_price: int, promo_code: Optional[str] = None) -> PriceBreakdown:
    """Price breakdown in paise; discount and tax are floored to whole paise."""
    if int(base_price) < 0:
        raise MarketplaceValidationError("Base price cannot be negative")
    code = (promo_code or "").strip().upper() or None
    if code not in PROMO_CODES:
        # Unrecognized codes price as if none was given.
        code = None
    percent = PROMO_CODES[code] if code else 0
    discount = int(base_price) * percent // 100
    subtotal = int(base_price) - discount
    taxes = subtotal * GST_PERCENT // 100
    return PriceBreakdown(
        base_price=int(base_price),
        discount=discount,
        subtotal=subtotal,
        taxes=taxes,
        total=subtotal + taxes,
        promo_code=code,
    )
