import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from autocare.services.errors import MarketplaceValidationError
from autocare.services.pricing import calculate_price


def test_gst_without_promo():
    price = calculate_price(49900)
    assert (price.discount, price.subtotal, price.taxes, price.total) == (0, 49900, 8982, 58882)
    assert price.promo_code is None


def test_promo_code_is_case_insensitive_and_floored():
    price = calculate_price(49999, "first20")
    assert price.promo_code == "FIRST20"
    assert price.discount == 9999
    assert price.subtotal == 40000
    assert price.taxes == 7200
    assert price.total == 47200


def test_unknown_promo_gives_no_discount():
    price = calculate_price(49900, "FREE100")
    assert price.promo_code is None
    assert (price.discount, price.total) == (0, 58882)


def test_negative_price_is_rejected():
    with pytest.raises(MarketplaceValidationError):
        calculate_price(-1)
