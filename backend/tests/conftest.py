import os
import sys
import tempfile
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The app singletons read these at import time, so they are set before any test module imports autocare.
os.environ["MARKETPLACE_DB_PATH"] = os.path.join(tempfile.mkdtemp(prefix="autocare-tests-"), "marketplace.sqlite3")
os.environ["SEED_DEMO_PROVIDERS"] = "false"
os.environ["ADMIN_EMAILS"] = "admin@autocare.test"
os.environ["FIREBASE_CREDENTIALS_PATH"] = ""

from autocare.models import OrderLocation
from autocare.services.database import Database
from autocare.services.events import SubscriptionManager
from autocare.services.identity import IdentityService
from autocare.services.notification_dispatcher import NotificationDispatcher
from autocare.services.order_lifecycle import OrderLifecycle
from autocare.services.provider_catalog import ProviderCatalog
from autocare.services.push_sender import PushSender
from autocare.services.quote_ledger import QuoteLedger

ANDHERI = (19.1197, 72.8468)
BANDRA = (19.0596, 72.8295)
PUNE = (18.5204, 73.8567)


@pytest.fixture
def stores(tmp_path):
    db = Database(db_path=str(tmp_path / "marketplace.sqlite3"))
    events = SubscriptionManager()
    catalog = ProviderCatalog(db)
    dispatcher = NotificationDispatcher(sender=PushSender(), owner_resolver=catalog.owner_of)
    lifecycle = OrderLifecycle(db, catalog=catalog, dispatcher=dispatcher, events=events)
    ledger = QuoteLedger(db, catalog=catalog, lifecycle=lifecycle, dispatcher=dispatcher, events=events)
    identity = IdentityService(db, events=events, admin_emails={"admin@autocare.test"})
    return SimpleNamespace(
        db=db,
        events=events,
        catalog=catalog,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        ledger=ledger,
        identity=identity,
    )


def add_provider(stores, owner="usr_owner", name="Shine Auto", at=BANDRA, prices=None, approve=True, kind="company"):
    provider = stores.catalog.register_provider(
        owner_user_id=owner,
        name=name,
        kind=kind,
        city="Mumbai",
        latitude=at[0],
        longitude=at[1],
        service_prices=prices if prices is not None else {"basic_wash": 49900},
    )
    if approve:
        provider = stores.catalog.decide_approval(provider_id=provider.id, decision="approved")
    return provider


def add_order(stores, customer="usr_customer", service_type="basic_wash", invited=None):
    return stores.lifecycle.create_order(
        customer_id=customer,
        service_type=service_type,
        location=OrderLocation(latitude=ANDHERI[0], longitude=ANDHERI[1], address="12 Link Road", city="Mumbai"),
        scheduled_date="2026-11-02",
        scheduled_time="10:30",
        vehicle_description="White Honda City",
        invited_provider_ids=invited,
    )
