import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from autocare.models import Order, Quote
from autocare.services.database import Database, database, utc_now_iso
from autocare.services.errors import (
    AlreadyDecidedError,
    DuplicateQuoteError,
    InvalidStateError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from autocare.services.events import (
    QUOTE_ACCEPTED,
    QUOTE_REJECTED,
    QUOTE_SUBMITTED,
    SubscriptionManager,
    subscription_manager,
)
from autocare.services.notification_dispatcher import NotificationDispatcher, notification_dispatcher
from autocare.services.order_lifecycle import OrderLifecycle, order_lifecycle, row_to_dict
from autocare.services.provider_catalog import ProviderCatalog, provider_catalog

logger = logging.getLogger(__name__)

QUOTE_ORDERINGS = {
    "submitted": "created_at ASC, rowid ASC",
    "price": "quoted_price ASC, created_at ASC, rowid ASC",
}


def _read_quote_ttl(default: int = 1440) -> int:
    raw = os.getenv("QUOTE_TTL_MINUTES", str(default))
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


QUOTE_TTL_MINUTES = _read_quote_ttl()


def _format_amount(amount: int) -> str:
    return f"₹{amount / 100:.0f}"


class QuoteLedger:
    """Quotes per order, with at most one accepted quote per order."""

    def __init__(
        self,
        db: Database,
        catalog: ProviderCatalog,
        lifecycle: OrderLifecycle,
        dispatcher: NotificationDispatcher,
        events: SubscriptionManager,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.events = events

    def _row_to_quote(self, row: sqlite3.Row) -> Quote:
        return Quote(
            id=row["id"],
            order_id=row["order_id"],
            provider_id=row["provider_id"],
            quoted_price=int(row["quoted_price"]),
            estimated_duration_minutes=int(row["estimated_duration_minutes"]),
            notes=row["notes"] or "",
            status=row["status"],
            created_at=row["created_at"],
            decided_at=row["decided_at"],
        )

    def _fetch_row(self, conn: sqlite3.Connection, quote_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Quote not found")
        return row

    def submit_quote(
        self,
        *,
        order_id: str,
        provider_id: str,
        price: int,
        duration_minutes: int,
        notes: str = "",
        actor_user_id: Optional[str] = None,
    ) -> Quote:
        if int(price) <= 0:
            raise MarketplaceValidationError("Quoted price must be greater than 0")
        if int(duration_minutes) <= 0:
            raise MarketplaceValidationError("Estimated duration must be greater than 0")

        quote_id = f"qte_{uuid4().hex[:10]}"
        with self.db.transaction() as tx:
            order_row = tx.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            if not order_row:
                raise MarketplaceNotFoundError("Order not found")
            provider_row = tx.execute(
                "SELECT owner_user_id, approval_status FROM providers WHERE id = ?", (provider_id,)
            ).fetchone()
            if not provider_row:
                raise MarketplaceNotFoundError("Provider not found")
            if actor_user_id is not None and provider_row["owner_user_id"] != actor_user_id:
                raise MarketplacePermissionError("Only the provider owner can quote for this provider")
            if provider_row["approval_status"] != "approved":
                raise InvalidStateError("Provider is not approved to quote")
            if order_row["status"] != "pending":
                raise InvalidStateError(f"Order is {order_row['status']}; quotes are only taken while pending")
            if self.lifecycle.has_declined(tx.conn, order_id, provider_id):
                raise InvalidStateError("Provider already declined this order")
            invited = self.lifecycle.invited_providers(tx.conn, order_id)
            if invited and provider_id not in invited:
                raise MarketplacePermissionError("Provider was not invited to quote on this order")
            duplicate = tx.execute(
                "SELECT id FROM quotes WHERE order_id = ? AND provider_id = ? AND status != 'rejected'",
                (order_id, provider_id),
            ).fetchone()
            if duplicate:
                raise DuplicateQuoteError("Provider already has an open quote on this order")

            tx.execute(
                """
                INSERT INTO quotes (
                    id, order_id, provider_id, quoted_price, estimated_duration_minutes, notes, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)
                """,
                (quote_id, order_id, provider_id, int(price), int(duration_minutes), notes.strip(), utc_now_iso()),
            )
            quote = self._row_to_quote(self._fetch_row(tx.conn, quote_id))
            customer_id = str(order_row["customer_id"])

            tx.on_commit(lambda: self.events.publish(QUOTE_SUBMITTED, "quotes", quote.id, quote.model_dump()))
            tx.after_release(
                lambda: self.dispatcher.notify(
                    "customer",
                    customer_id,
                    "New quote received",
                    f"A provider quoted {_format_amount(quote.quoted_price)} "
                    f"({quote.estimated_duration_minutes} min) for your order.",
                    order_id,
                )
            )
        logger.info("Quote %s submitted by %s on order %s", quote_id, provider_id, order_id)
        return quote

    def accept_quote(
        self,
        quote_id: str,
        actor_user_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Quote:
        """Accept one quote, reject its pending siblings and confirm the order, all in one transaction.

        Replaying ``idempotency_key`` after a success returns the accepted quote
        without touching the store again, so a caller that lost the response can
        retry safely. Keys are scoped to the accepting customer.
        """
        key = (idempotency_key or "").strip() or None
        with self.db.transaction() as tx:
            quote_row = self._fetch_row(tx.conn, quote_id)
            order_row = tx.execute("SELECT * FROM orders WHERE id = ?", (quote_row["order_id"],)).fetchone()
            if not order_row:
                raise MarketplaceNotFoundError("Order not found")
            if actor_user_id is not None and order_row["customer_id"] != actor_user_id:
                raise MarketplacePermissionError("Only the ordering customer can accept a quote")
            key_owner = actor_user_id or str(order_row["customer_id"])
            if key:
                seen = tx.execute(
                    "SELECT operation, entity_id FROM idempotency_keys WHERE key = ? AND actor_id = ?",
                    (key, key_owner),
                ).fetchone()
                if seen:
                    if seen["operation"] != "accept_quote" or seen["entity_id"] != quote_id:
                        raise MarketplaceValidationError("Idempotency key was already used for a different request")
                    return self._row_to_quote(quote_row)

            winner = tx.execute(
                "SELECT id FROM quotes WHERE order_id = ? AND status = 'accepted'", (quote_row["order_id"],)
            ).fetchone()
            if winner:
                raise AlreadyDecidedError(f"Order {order_row['id']} already has an accepted quote")
            if quote_row["status"] != "pending":
                raise InvalidStateError(f"Quote is {quote_row['status']}")
            if order_row["status"] != "pending":
                raise InvalidStateError(f"Order is {order_row['status']}; quotes can only be accepted while pending")

            now_iso = utc_now_iso()
            tx.execute(
                "UPDATE quotes SET status = 'accepted', decided_at = ? WHERE id = ? AND status = 'pending'",
                (now_iso, quote_id),
            )
            siblings = tx.execute(
                """
                SELECT * FROM quotes
                WHERE order_id = ? AND status = 'pending' AND id != ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (quote_row["order_id"], quote_id),
            ).fetchall()
            tx.execute(
                """
                UPDATE quotes SET status = 'rejected', decided_at = ?
                WHERE order_id = ? AND status = 'pending' AND id != ?
                """,
                (now_iso, quote_row["order_id"], quote_id),
            )
            order = self.lifecycle.confirm_with_quote(
                tx,
                order_row,
                provider_id=str(quote_row["provider_id"]),
                amount=int(quote_row["quoted_price"]),
                actor_id=actor_user_id or str(order_row["customer_id"]),
            )
            if key:
                tx.execute(
                    """
                    INSERT INTO idempotency_keys (key, actor_id, operation, entity_id, created_at)
                    VALUES (?, ?, 'accept_quote', ?, ?)
                    """,
                    (key, key_owner, quote_id, now_iso),
                )
            accepted = self._row_to_quote(self._fetch_row(tx.conn, quote_id))
            rejected = [dict(row_to_dict(row), status="rejected", decided_at=now_iso) for row in siblings]
            tx.on_commit(lambda: self._publish_acceptance(accepted, rejected))
            tx.after_release(lambda: self._notify_acceptance(accepted, rejected, order))
        logger.info("Quote %s accepted; order %s confirmed", quote_id, order.id)
        return accepted

    def _publish_acceptance(self, accepted: Quote, rejected: List[Dict[str, Any]]) -> None:
        self.events.publish(QUOTE_ACCEPTED, "quotes", accepted.id, accepted.model_dump())
        for quote in rejected:
            self.events.publish(QUOTE_REJECTED, "quotes", quote["id"], quote)

    def _notify_acceptance(self, accepted: Quote, rejected: List[Dict[str, Any]], order: Order) -> None:
        self.dispatcher.notify(
            "provider",
            accepted.provider_id,
            "Quote accepted",
            f"Your quote of {_format_amount(accepted.quoted_price)} was accepted. "
            f"Service is scheduled for {order.scheduled_date} {order.scheduled_time}.",
            order.id,
        )
        for quote in rejected:
            self.dispatcher.notify(
                "provider",
                quote["provider_id"],
                "Quote not selected",
                "The customer chose another provider for this order.",
                order.id,
            )

    def reject_quote(self, quote_id: str, actor_user_id: Optional[str] = None) -> Quote:
        with self.db.transaction() as tx:
            quote_row = self._fetch_row(tx.conn, quote_id)
            order_row = tx.execute("SELECT customer_id FROM orders WHERE id = ?", (quote_row["order_id"],)).fetchone()
            if not order_row:
                raise MarketplaceNotFoundError("Order not found")
            if actor_user_id is not None and order_row["customer_id"] != actor_user_id:
                raise MarketplacePermissionError("Only the ordering customer can reject a quote")
            if quote_row["status"] != "pending":
                raise InvalidStateError(f"Quote is {quote_row['status']}")
            tx.execute(
                "UPDATE quotes SET status = 'rejected', decided_at = ? WHERE id = ? AND status = 'pending'",
                (utc_now_iso(), quote_id),
            )
            quote = self._row_to_quote(self._fetch_row(tx.conn, quote_id))

            tx.on_commit(lambda: self.events.publish(QUOTE_REJECTED, "quotes", quote.id, quote.model_dump()))
            tx.after_release(
                lambda: self.dispatcher.notify(
                    "provider", quote.provider_id, "Quote declined", "The customer declined your quote.", quote.order_id
                )
            )
        return quote

    def get_quote(self, quote_id: str) -> Quote:
        with self.db.read() as conn:
            return self._row_to_quote(self._fetch_row(conn, quote_id))

    def list_quotes(self, order_id: str, order_by: str = "submitted") -> List[Quote]:
        ordering = QUOTE_ORDERINGS.get(order_by)
        if ordering is None:
            raise MarketplaceValidationError("Invalid ordering. Allowed: submitted, price")
        with self.db.read() as conn:
            if not conn.execute("SELECT 1 FROM orders WHERE id = ?", (order_id,)).fetchone():
                raise MarketplaceNotFoundError("Order not found")
            rows = conn.execute(f"SELECT * FROM quotes WHERE order_id = ? ORDER BY {ordering}", (order_id,)).fetchall()
        return [self._row_to_quote(row) for row in rows]

    def quotes_for_provider(self, provider_id: str) -> List[Quote]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM quotes WHERE provider_id = ? ORDER BY created_at DESC, rowid DESC", (provider_id,)
            ).fetchall()
        return [self._row_to_quote(row) for row in rows]

    def expire_stale_quotes(self, max_age_minutes: Optional[int] = None, now: Optional[datetime] = None) -> List[Quote]:
        """Reject pending quotes older than ``max_age_minutes``; 0 disables the sweep."""
        ttl = QUOTE_TTL_MINUTES if max_age_minutes is None else max_age_minutes
        if ttl <= 0:
            return []
        cutoff = ((now or datetime.now(timezone.utc)) - timedelta(minutes=ttl)).isoformat()
        with self.db.transaction() as tx:
            rows = tx.execute(
                "SELECT * FROM quotes WHERE status = 'pending' AND created_at < ? ORDER BY created_at ASC, rowid ASC",
                (cutoff,),
            ).fetchall()
            if not rows:
                return []
            now_iso = utc_now_iso()
            tx.execute(
                "UPDATE quotes SET status = 'rejected', decided_at = ? WHERE status = 'pending' AND created_at < ?",
                (now_iso, cutoff),
            )
            expired = [
                self._row_to_quote(row).model_copy(update={"status": "rejected", "decided_at": now_iso}) for row in rows
            ]

            def publish() -> None:
                for quote in expired:
                    self.events.publish(QUOTE_REJECTED, "quotes", quote.id, quote.model_dump())

            def notify() -> None:
                for quote in expired:
                    self.dispatcher.notify(
                        "provider",
                        quote.provider_id,
                        "Quote expired",
                        f"Your quote was not answered within {ttl} minutes and has expired.",
                        quote.order_id,
                    )

            tx.on_commit(publish)
            tx.after_release(notify)
        logger.info("Expired %d stale quote(s)", len(expired))
        return expired


quote_ledger = QuoteLedger(
    database,
    catalog=provider_catalog,
    lifecycle=order_lifecycle,
    dispatcher=notification_dispatcher,
    events=subscription_manager,
)
