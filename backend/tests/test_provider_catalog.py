import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import ANDHERI, BANDRA, PUNE, add_provider
from autocare.models import Coordinate
from autocare.services.errors import (
    InvalidTransitionError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from autocare.services.provider_catalog import CASE_INSENSITIVE_CONTAINS, DEMO_PROVIDERS, ProviderCatalog

ORIGIN = Coordinate(latitude=ANDHERI[0], longitude=ANDHERI[1])


def test_new_provider_starts_pending(stores):
    provider = add_provider(stores, approve=False)
    assert provider.id.startswith("prv_")
    assert provider.approval_status == "pending"
    assert provider.service_prices == {"basic_wash": 49900}


def test_register_rejects_bad_input(stores):
    with pytest.raises(MarketplaceValidationError):
        add_provider(stores, kind="carwash")
    with pytest.raises(MarketplaceValidationError):
        add_provider(stores, prices={"basic_wash": 0})
    with pytest.raises(MarketplaceValidationError):
        add_provider(stores, at=(95.0, 72.0))


def test_matching_skips_unapproved_and_out_of_radius(stores):
    near = add_provider(stores, name="Near", at=BANDRA)
    add_provider(stores, name="Pending", at=BANDRA, approve=False)
    add_provider(stores, name="Far", at=PUNE)
    add_provider(stores, name="Other service", at=BANDRA, prices={"general_service": 149900})

    matches = stores.catalog.find_providers("basic_wash", ORIGIN, radius_km=20)
    assert [m.provider.id for m in matches] == [near.id]
    assert all(m.distance_km <= 20 for m in matches)
    assert all(m.provider.approval_status == "approved" for m in matches)


def test_rejected_provider_is_never_matched(stores):
    provider = add_provider(stores, approve=False)
    stores.catalog.decide_approval(provider_id=provider.id, decision="rejected")
    assert stores.catalog.find_providers("basic_wash", ORIGIN, radius_km=500) == []


def test_distance_sort_is_non_decreasing(stores):
    add_provider(stores, name="Bandra", at=BANDRA)
    add_provider(stores, name="Andheri", at=ANDHERI)
    add_provider(stores, name="Thane", at=(19.2183, 72.9781))

    matches = stores.catalog.find_providers("basic_wash", ORIGIN, radius_km=50)
    distances = [m.distance_km for m in matches]
    assert len(distances) == 3
    assert distances == sorted(distances)
    assert matches[0].provider.name == "Andheri"


def test_price_sort_and_match_price(stores):
    add_provider(stores, name="Pricey", prices={"basic_wash": 69900})
    add_provider(stores, name="Cheap", prices={"basic_wash": 19900})

    matches = stores.catalog.find_providers("basic_wash", ORIGIN, sort_key="price")
    assert [m.provider.name for m in matches] == ["Cheap", "Pricey"]
    assert matches[0].price == 19900


def test_contains_policy_matches_partial_service_ids(stores):
    add_provider(stores, prices={"Premium_Wash": 59900, "basic_wash": 29900})

    assert stores.catalog.find_providers("wash", ORIGIN) == []
    matches = stores.catalog.find_providers("WASH", ORIGIN, policy=CASE_INSENSITIVE_CONTAINS)
    assert len(matches) == 1
    assert matches[0].price == 29900


def test_find_providers_validates_query(stores):
    with pytest.raises(MarketplaceValidationError):
        stores.catalog.find_providers("basic_wash", ORIGIN, radius_km=0)
    with pytest.raises(MarketplaceValidationError):
        stores.catalog.find_providers("basic_wash", Coordinate(latitude=float("nan"), longitude=72.0))
    with pytest.raises(MarketplaceValidationError):
        stores.catalog.find_providers("basic_wash", ORIGIN, sort_key="name")
    with pytest.raises(MarketplaceValidationError):
        stores.catalog.find_providers("basic_wash", ORIGIN, policy="fuzzy")


def test_owner_only_edits(stores):
    provider = add_provider(stores, owner="usr_owner")
    with pytest.raises(MarketplacePermissionError):
        stores.catalog.set_service_price(
            provider_id=provider.id, actor_user_id="usr_intruder", service_id="basic_wash", price=100
        )

    updated = stores.catalog.set_service_price(
        provider_id=provider.id, actor_user_id="usr_owner", service_id="premium_wash", price=59900
    )
    assert updated.service_prices == {"basic_wash": 49900, "premium_wash": 59900}

    updated = stores.catalog.remove_service(provider_id=provider.id, actor_user_id="usr_owner", service_id="basic_wash")
    assert updated.service_prices == {"premium_wash": 59900}

    moved = stores.catalog.update_location(
        provider_id=provider.id, actor_user_id="usr_owner", latitude=PUNE[0], longitude=PUNE[1]
    )
    assert moved.latitude == PUNE[0]


def test_approval_is_decided_once(stores):
    provider = add_provider(stores)
    with pytest.raises(InvalidTransitionError):
        stores.catalog.decide_approval(provider_id=provider.id, decision="rejected")


def test_demo_seed_is_idempotent(stores):
    seeded = ProviderCatalog(stores.db, seed_demo=True)
    ProviderCatalog(stores.db, seed_demo=True)
    providers = seeded.list_providers(approval_status="approved")
    assert len(providers) == len(DEMO_PROVIDERS)
    assert seeded.count_by_status()["approved"] == len(DEMO_PROVIDERS)
