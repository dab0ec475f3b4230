import os
import sys
import threading
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import add_order, add_provider
from autocare.services.notification_dispatcher import NotificationDispatcher
from autocare.services.quote_ledger import QuoteLedger
from autocare.services.errors import (
    AlreadyDecidedError,
    DuplicateQuoteError,
    InvalidStateError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)


def _quote(stores, order, provider, price=49900, owner="usr_owner"):
    return stores.ledger.submit_quote(
        order_id=order.id,
        provider_id=provider.id,
        price=price,
        duration_minutes=45,
        actor_user_id=owner,
    )


def _three_quotes(stores):
    providers = [add_provider(stores, owner=f"usr_owner_{idx}", name=f"Shop {idx}") for idx in range(3)]
    order = add_order(stores)
    quotes = [
        _quote(stores, order, provider, price=40000 + idx * 1000, owner=f"usr_owner_{idx}")
        for idx, provider in enumerate(providers)
    ]
    return order, providers, quotes


def test_accept_one_of_three(stores):
    order, providers, quotes = _three_quotes(stores)

    accepted = stores.ledger.accept_quote(quotes[1].id, actor_user_id=order.customer_id)

    assert accepted.status == "accepted"
    statuses = {q.id: q.status for q in stores.ledger.list_quotes(order.id)}
    assert statuses == {quotes[0].id: "rejected", quotes[1].id: "accepted", quotes[2].id: "rejected"}
    confirmed = stores.lifecycle.get_order(order.id)
    assert confirmed.status == "confirmed"
    assert confirmed.selected_provider_id == providers[1].id
    assert confirmed.total_amount == quotes[1].quoted_price
    assert confirmed.version == order.version + 1


def test_concurrent_accepts_have_one_winner(stores):
    order, _providers, quotes = _three_quotes(stores)
    barrier = threading.Barrier(2)
    results = {}

    def accept(quote_id):
        barrier.wait()
        try:
            results[quote_id] = stores.ledger.accept_quote(quote_id, actor_user_id=order.customer_id)
        except AlreadyDecidedError as exc:
            results[quote_id] = exc

    threads = [threading.Thread(target=accept, args=(q.id,)) for q in quotes[:2]]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    outcomes = list(results.values())
    assert sum(1 for item in outcomes if isinstance(item, AlreadyDecidedError)) == 1
    assert sum(1 for item in outcomes if not isinstance(item, Exception)) == 1
    accepted = [q for q in stores.ledger.list_quotes(order.id) if q.status == "accepted"]
    assert len(accepted) == 1


def test_accept_on_confirmed_order_leaves_it_untouched(stores):
    order, _providers, quotes = _three_quotes(stores)
    stores.ledger.accept_quote(quotes[0].id, actor_user_id=order.customer_id)
    before = stores.lifecycle.get_order(order.id)

    with pytest.raises(InvalidStateError):
        stores.ledger.accept_quote(quotes[2].id, actor_user_id=order.customer_id)

    after = stores.lifecycle.get_order(order.id)
    assert after.version == before.version
    assert after.selected_provider_id == before.selected_provider_id


def test_only_customer_can_accept(stores):
    order, _providers, quotes = _three_quotes(stores)
    with pytest.raises(MarketplacePermissionError):
        stores.ledger.accept_quote(quotes[0].id, actor_user_id="usr_someone_else")


def test_idempotent_accept_replay(stores):
    order, _providers, quotes = _three_quotes(stores)
    first = stores.ledger.accept_quote(quotes[0].id, actor_user_id=order.customer_id, idempotency_key="key-1")
    replay = stores.ledger.accept_quote(quotes[0].id, actor_user_id=order.customer_id, idempotency_key="key-1")

    assert replay == first
    assert stores.lifecycle.get_order(order.id).version == order.version + 1
    with pytest.raises(MarketplaceValidationError):
        stores.ledger.accept_quote(quotes[1].id, actor_user_id=order.customer_id, idempotency_key="key-1")


def test_duplicate_quote_is_refused(stores):
    provider = add_provider(stores)
    order = add_order(stores)
    _quote(stores, order, provider)
    with pytest.raises(DuplicateQuoteError):
        _quote(stores, order, provider, price=39900)


def test_requote_after_rejection_is_allowed(stores):
    provider = add_provider(stores)
    order = add_order(stores)
    first = _quote(stores, order, provider)
    stores.ledger.reject_quote(first.id, actor_user_id=order.customer_id)

    second = _quote(stores, order, provider, price=39900)
    assert second.status == "pending"


def test_quote_rules(stores):
    approved = add_provider(stores, owner="usr_owner")
    pending = add_provider(stores, owner="usr_owner", name="New Shop", approve=False)
    outsider = add_provider(stores, owner="usr_other", name="Outsider")
    order = add_order(stores, invited=[approved.id])

    with pytest.raises(MarketplaceValidationError):
        _quote(stores, order, approved, price=0)
    with pytest.raises(InvalidStateError):
        _quote(stores, order, pending)
    with pytest.raises(MarketplacePermissionError):
        _quote(stores, order, outsider, owner="usr_other")
    with pytest.raises(MarketplacePermissionError):
        _quote(stores, order, approved, owner="usr_other")


def test_quote_events_and_notifications(stores):
    seen = []
    stores.events.subscribe("quotes", seen.append)
    order, _providers, quotes = _three_quotes(stores)
    stores.ledger.accept_quote(quotes[0].id, actor_user_id=order.customer_id)

    kinds = [event.kind for event in seen]
    assert kinds[:3] == ["QuoteSubmitted"] * 3
    assert kinds[3:] == ["QuoteAccepted", "QuoteRejected", "QuoteRejected"]
    inbox = stores.dispatcher.list_for_recipient("customer", order.customer_id)
    assert len(inbox) == 3


def test_list_quotes_by_price(stores):
    order, _providers, quotes = _three_quotes(stores)
    ordered = stores.ledger.list_quotes(order.id, order_by="price")
    assert [q.quoted_price for q in ordered] == sorted(q.quoted_price for q in quotes)
    with pytest.raises(MarketplaceValidationError):
        stores.ledger.list_quotes(order.id, order_by="rating")


def test_expire_stale_quotes(stores):
    order, _providers, quotes = _three_quotes(stores)
    later = datetime.now(timezone.utc) + timedelta(minutes=90)

    assert stores.ledger.expire_stale_quotes(max_age_minutes=120, now=later) == []
    expired = stores.ledger.expire_stale_quotes(max_age_minutes=60, now=later)

    assert {q.id for q in expired} == {q.id for q in quotes}
    assert all(q.status == "rejected" for q in stores.ledger.list_quotes(order.id))
    assert stores.ledger.expire_stale_quotes(max_age_minutes=0) == []


def test_idempotency_keys_are_scoped_to_the_customer(stores):
    provider = add_provider(stores)
    first_order = add_order(stores, customer="usr_first")
    second_order = add_order(stores, customer="usr_second")
    first_quote = _quote(stores, first_order, provider)
    second_quote = _quote(stores, second_order, provider)

    stores.ledger.accept_quote(first_quote.id, actor_user_id="usr_first", idempotency_key="checkout-1")
    accepted = stores.ledger.accept_quote(second_quote.id, actor_user_id="usr_second", idempotency_key="checkout-1")

    assert accepted.status == "accepted"
    assert stores.lifecycle.get_order(second_order.id).status == "confirmed"


def test_replay_by_another_user_is_refused(stores):
    order, _providers, quotes = _three_quotes(stores)
    stores.ledger.accept_quote(quotes[0].id, actor_user_id=order.customer_id, idempotency_key="key-1")

    with pytest.raises(MarketplacePermissionError):
        stores.ledger.accept_quote(quotes[0].id, actor_user_id="usr_someone_else", idempotency_key="key-1")


class StoreCheckingSender:
    """Pretends to push, and checks meanwhile that another thread can still read the store."""

    def __init__(self, catalog, provider_id):
        self.catalog = catalog
        self.provider_id = provider_id
        self.reads_finished = []

    def send(self, tokens, title, body, data):
        reader = threading.Thread(target=lambda: self.catalog.get_provider(self.provider_id))
        reader.start()
        reader.join(timeout=2)
        self.reads_finished.append(not reader.is_alive())
        reader.join()
        return []


def test_push_runs_after_the_store_lock_is_released(stores):
    provider = add_provider(stores)
    order = add_order(stores)
    sender = StoreCheckingSender(stores.catalog, provider.id)
    dispatcher = NotificationDispatcher(sender=sender, owner_resolver=stores.catalog.owner_of)
    dispatcher.register_device_token(order.customer_id, "device-a")
    ledger = QuoteLedger(
        stores.db, catalog=stores.catalog, lifecycle=stores.lifecycle, dispatcher=dispatcher, events=stores.events
    )

    ledger.submit_quote(order_id=order.id, provider_id=provider.id, price=49900, duration_minutes=45)

    assert sender.reads_finished == [True]
