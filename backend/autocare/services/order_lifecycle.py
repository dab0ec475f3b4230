import logging
import sqlite3
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from autocare.models import Feedback, Order, OrderLocation, OrderStatusChange
from autocare.services.database import Database, Transaction, database, utc_now_iso
from autocare.services.errors import (
    AlreadyDecidedError,
    InvalidStateError,
    InvalidTransitionError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from autocare.services.events import (
    ORDER_CREATED,
    ORDER_PAYMENT_RECORDED,
    ORDER_STATUS_CHANGED,
    QUOTE_REJECTED,
    SubscriptionManager,
    subscription_manager,
)
from autocare.services.geo import is_valid_coordinate
from autocare.services.notification_dispatcher import NotificationDispatcher, notification_dispatcher
from autocare.services.provider_catalog import ProviderCatalog, provider_catalog

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"confirmed", "rejected", "cancelled"},
    "confirmed": {"in_progress", "cancelled"},
    "in_progress": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
    "rejected": set(),
}

ORDER_STATUSES = set(ORDER_TRANSITIONS)
TERMINAL_STATUSES = {status for status, targets in ORDER_TRANSITIONS.items() if not targets}
BOUND_STATUSES = {"confirmed", "in_progress", "completed"}
PAYABLE_STATUSES = BOUND_STATUSES

SYSTEM_ACTOR = "system"


def row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys()}


class OrderLifecycle:
    """Order state machine: pending -> confirmed -> in_progress -> completed, plus cancel/reject."""

    def __init__(
        self,
        db: Database,
        catalog: ProviderCatalog,
        dispatcher: NotificationDispatcher,
        events: SubscriptionManager,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.events = events

    def _row_to_order(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Order:
        invitations = conn.execute(
            "SELECT provider_id FROM order_invitations WHERE order_id = ? ORDER BY created_at ASC, rowid ASC",
            (row["id"],),
        ).fetchall()
        return Order(
            id=row["id"],
            customer_id=row["customer_id"],
            service_type=row["service_type"],
            location=OrderLocation(
                latitude=row["latitude"],
                longitude=row["longitude"],
                address=row["address"],
                city=row["city"],
            ),
            scheduled_date=row["scheduled_date"],
            scheduled_time=row["scheduled_time"],
            vehicle_description=row["vehicle_description"],
            special_instructions=row["special_instructions"],
            invited_provider_ids=[str(item["provider_id"]) for item in invitations],
            status=row["status"],
            selected_provider_id=row["selected_provider_id"],
            total_amount=int(row["total_amount"]),
            payment_status=row["payment_status"],
            payment_id=row["payment_id"],
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_row(self, conn: sqlite3.Connection, order_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Order not found")
        return row

    def fetch_order(self, conn: sqlite3.Connection, order_id: str) -> Order:
        return self._row_to_order(conn, self._fetch_row(conn, order_id))

    def _parse_iso_date(self, value: str) -> date:
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise MarketplaceValidationError("Invalid scheduled_date. Expected YYYY-MM-DD") from exc

    def _parse_time(self, value: str) -> str:
        try:
            parsed = datetime.strptime(value.strip(), "%H:%M")
        except ValueError as exc:
            raise MarketplaceValidationError("Invalid scheduled_time. Expected HH:MM") from exc
        return parsed.strftime("%H:%M")

    def _record_history(
        self, tx: Transaction, order_id: str, actor_id: str, from_status: str, to_status: str, note: str
    ) -> None:
        tx.execute(
            """
            INSERT INTO order_status_history (id, order_id, actor_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"osh_{uuid4().hex[:10]}", order_id, actor_id, from_status, to_status, note, utc_now_iso()),
        )

    def _publish_status_change(self, order: Order, from_status: str) -> None:
        row = order.model_dump()
        row["from_status"] = from_status
        self.events.publish(ORDER_STATUS_CHANGED, "orders", order.id, row)

    def _apply_transition(
        self,
        tx: Transaction,
        row: sqlite3.Row,
        next_status: str,
        *,
        actor_id: str,
        note: str = "",
        changes: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """Move one order along the state machine with a compare-and-swap on its version."""
        current_status = str(row["status"])
        if next_status not in ORDER_STATUSES:
            raise MarketplaceValidationError(f"Unknown order status: {next_status}")
        if next_status not in ORDER_TRANSITIONS[current_status]:
            raise InvalidTransitionError(f"Invalid status transition: {current_status} -> {next_status}")

        assignments = {"status": next_status, **(changes or {})}
        columns = ", ".join(f"{column} = ?" for column in assignments)
        cursor = tx.execute(
            f"UPDATE orders SET {columns}, version = version + 1, updated_at = ? WHERE id = ? AND version = ?",
            (*assignments.values(), utc_now_iso(), row["id"], row["version"]),
        )
        if cursor.rowcount != 1:
            if next_status == "confirmed":
                raise AlreadyDecidedError("Order was confirmed by a concurrent request")
            raise InvalidStateError("Order changed concurrently; reload it and retry")
        self._record_history(tx, row["id"], actor_id, current_status, next_status, note)
        order = self.fetch_order(tx.conn, row["id"])
        tx.on_commit(lambda: self._publish_status_change(order, current_status))
        logger.info("Order %s %s -> %s by %s", row["id"], current_status, next_status, actor_id)
        return order

    def _reject_pending_quotes(self, tx: Transaction, order_id: str) -> List[Dict[str, Any]]:
        rows = tx.execute(
            "SELECT * FROM quotes WHERE order_id = ? AND status = 'pending' ORDER BY created_at ASC, rowid ASC",
            (order_id,),
        ).fetchall()
        if not rows:
            return []
        now_iso = utc_now_iso()
        tx.execute(
            "UPDATE quotes SET status = 'rejected', decided_at = ? WHERE order_id = ? AND status = 'pending'",
            (now_iso, order_id),
        )
        rejected = []
        for row in rows:
            quote = dict(row_to_dict(row), status="rejected", decided_at=now_iso)
            rejected.append(quote)
        return rejected

    def _announce_rejected_quotes(
        self, tx: Transaction, quotes: List[Dict[str, Any]], title: str, message: str
    ) -> None:
        def publish() -> None:
            for quote in quotes:
                self.events.publish(QUOTE_REJECTED, "quotes", quote["id"], quote)

        def notify() -> None:
            for quote in quotes:
                self.dispatcher.notify("provider", quote["provider_id"], title, message, quote["order_id"])

        tx.on_commit(publish)
        tx.after_release(notify)

    def create_order(
        self,
        *,
        customer_id: str,
        service_type: str,
        location: OrderLocation,
        scheduled_date: str,
        scheduled_time: str,
        vehicle_description: str,
        special_instructions: str = "",
        invited_provider_ids: Optional[List[str]] = None,
    ) -> Order:
        if not service_type.strip():
            raise MarketplaceValidationError("Service type is required")
        if not location.address.strip():
            raise MarketplaceValidationError("Address is required")
        if not location.city.strip():
            raise MarketplaceValidationError("City is required")
        if (location.latitude is not None or location.longitude is not None) and not is_valid_coordinate(
            location.latitude, location.longitude
        ):
            raise MarketplaceValidationError("Both latitude and longitude are required and must be in range")
        if not vehicle_description.strip():
            raise MarketplaceValidationError("Vehicle description is required")
        cleaned_date = self._parse_iso_date(scheduled_date).isoformat()
        cleaned_time = self._parse_time(scheduled_time)
        invited = list(dict.fromkeys(pid.strip() for pid in (invited_provider_ids or []) if pid.strip()))

        order_id = f"ord_{uuid4().hex[:10]}"
        now_iso = utc_now_iso()
        with self.db.transaction() as tx:
            for provider_id in invited:
                provider_row = tx.execute(
                    "SELECT approval_status FROM providers WHERE id = ?", (provider_id,)
                ).fetchone()
                if not provider_row:
                    raise MarketplaceNotFoundError(f"Provider {provider_id} not found")
                if provider_row["approval_status"] != "approved":
                    raise InvalidStateError(f"Provider {provider_id} is not approved")
            tx.execute(
                """
                INSERT INTO orders (
                    id, customer_id, service_type, latitude, longitude, address, city,
                    scheduled_date, scheduled_time, vehicle_description, special_instructions,
                    status, selected_provider_id, total_amount, payment_status, payment_id,
                    version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, 0, 'unpaid', NULL, 1, ?, ?)
                """,
                (
                    order_id,
                    customer_id,
                    service_type.strip(),
                    location.latitude,
                    location.longitude,
                    location.address.strip(),
                    location.city.strip(),
                    cleaned_date,
                    cleaned_time,
                    vehicle_description.strip(),
                    special_instructions.strip(),
                    now_iso,
                    now_iso,
                ),
            )
            for provider_id in invited:
                tx.execute(
                    "INSERT INTO order_invitations (order_id, provider_id, created_at) VALUES (?, ?, ?)",
                    (order_id, provider_id, now_iso),
                )
            order = self.fetch_order(tx.conn, order_id)

            tx.on_commit(lambda: self.events.publish(ORDER_CREATED, "orders", order.id, order.model_dump()))

            def notify_invitees() -> None:
                for provider_id in order.invited_provider_ids:
                    self.dispatcher.notify(
                        "provider",
                        provider_id,
                        "New service request",
                        f"{order.service_type.replace('_', ' ')} in {order.location.city} on "
                        f"{order.scheduled_date} {order.scheduled_time}",
                        order.id,
                    )

            tx.after_release(notify_invitees)
        logger.info("Order %s created by %s", order_id, customer_id)
        return order

    def get_order(self, order_id: str) -> Order:
        with self.db.read() as conn:
            return self.fetch_order(conn, order_id)

    def list_orders(
        self,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Order]:
        if status is not None and status not in ORDER_STATUSES:
            raise MarketplaceValidationError(f"Unknown order status: {status}")
        clauses: List[str] = []
        params: List[Any] = []
        if customer_id:
            clauses.append("customer_id = ?")
            params.append(customer_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.read() as conn:
            rows = conn.execute(
                f"SELECT * FROM orders {where} ORDER BY created_at DESC, rowid DESC", tuple(params)
            ).fetchall()
            orders = [self._row_to_order(conn, row) for row in rows]
            if provider_id is None:
                return orders
            quoted = {
                str(row["order_id"])
                for row in conn.execute(
                    "SELECT DISTINCT order_id FROM quotes WHERE provider_id = ?", (provider_id,)
                ).fetchall()
            }
            declined = {
                str(row["order_id"])
                for row in conn.execute(
                    "SELECT order_id FROM order_declines WHERE provider_id = ?", (provider_id,)
                ).fetchall()
            }
        provider = self.catalog.get_provider(provider_id)
        visible: List[Order] = []
        for order in orders:
            if (
                provider_id in order.invited_provider_ids
                or order.selected_provider_id == provider_id
                or order.id in quoted
                or (
                    order.status == "pending"
                    and not order.invited_provider_ids
                    and order.id not in declined
                    and provider.approval_status == "approved"
                    and self.catalog.offers_service(provider, order.service_type)
                )
            ):
                visible.append(order)
        return visible

    def transition(self, order_id: str, next_status: str, *, actor_id: str, note: str = "") -> Order:
        """Apply a raw state-machine transition. Confirmation only happens through quote acceptance."""
        if next_status == "confirmed":
            raise InvalidTransitionError("Orders are confirmed by accepting a quote")
        with self.db.transaction() as tx:
            row = self._fetch_row(tx.conn, order_id)
            changes: Dict[str, Any] = {}
            if next_status == "cancelled":
                # The binding survives in the status history only.
                changes["selected_provider_id"] = None
                if row["selected_provider_id"]:
                    note = f"{note} (released provider {row['selected_provider_id']})".strip()
            order = self._apply_transition(tx, row, next_status, actor_id=actor_id, note=note, changes=changes)
            rejected_quotes: List[Dict[str, Any]] = []
            if next_status in {"cancelled", "rejected"}:
                rejected_quotes = self._reject_pending_quotes(tx, order_id)
            if rejected_quotes:
                self._announce_rejected_quotes(
                    tx, rejected_quotes, "Quote closed", f"Order {order_id} is no longer accepting quotes."
                )
        return order

    def confirm_with_quote(
        self, tx: Transaction, row: sqlite3.Row, *, provider_id: str, amount: int, actor_id: str
    ) -> Order:
        """Pending -> confirmed inside the caller's quote-acceptance transaction."""
        return self._apply_transition(
            tx,
            row,
            "confirmed",
            actor_id=actor_id,
            note=f"Quote accepted from {provider_id}",
            changes={"selected_provider_id": provider_id, "total_amount": amount},
        )

    def _assert_selected_provider_owner(self, order: Order, actor_user_id: str) -> None:
        if not order.selected_provider_id:
            raise InvalidStateError("Order has no selected provider yet")
        if self.catalog.owner_of(order.selected_provider_id) != actor_user_id:
            raise MarketplacePermissionError("Only the selected provider can update this order")

    def start_service(self, order_id: str, actor_user_id: str) -> Order:
        order = self.get_order(order_id)
        self._assert_selected_provider_owner(order, actor_user_id)
        updated = self.transition(order_id, "in_progress", actor_id=actor_user_id, note="Service started")
        self.dispatcher.notify(
            "customer", updated.customer_id, "Service started", f"Work on order {updated.id} has started.", updated.id
        )
        return updated

    def complete_service(self, order_id: str, actor_user_id: str) -> Order:
        order = self.get_order(order_id)
        self._assert_selected_provider_owner(order, actor_user_id)
        updated = self.transition(order_id, "completed", actor_id=actor_user_id, note="Service completed")
        self.dispatcher.notify(
            "customer",
            updated.customer_id,
            "How did we do?",
            f"Order {updated.id} is complete. Rate your service to help other customers.",
            updated.id,
        )
        return updated

    def cancel_order(self, order_id: str, actor_user_id: str, *, is_admin: bool = False, reason: str = "") -> Order:
        order = self.get_order(order_id)
        if not is_admin and order.customer_id != actor_user_id:
            raise MarketplacePermissionError("Only the customer or an admin can cancel this order")
        updated = self.transition(order_id, "cancelled", actor_id=actor_user_id, note=reason.strip())
        if order.selected_provider_id:
            self.dispatcher.notify(
                "provider",
                order.selected_provider_id,
                "Order cancelled",
                f"Order {order.id} was cancelled{': ' + reason.strip() if reason.strip() else '.'}",
                order.id,
            )
        if is_admin and order.customer_id != actor_user_id:
            self.dispatcher.notify(
                "customer", order.customer_id, "Order cancelled", f"Order {order.id} was cancelled by support.", order.id
            )
        return updated

    def decline_order(
        self,
        order_id: str,
        actor_user_id: str,
        *,
        provider_id: Optional[str] = None,
        is_admin: bool = False,
        reason: str = "",
    ) -> Order:
        """Record a provider declining without quoting; the order is rejected once nobody is left to quote."""
        if provider_id is None:
            if not is_admin:
                raise MarketplaceValidationError("provider_id is required")
            order = self.transition(order_id, "rejected", actor_id=actor_user_id, note=reason.strip() or "Rejected by admin")
            self.dispatcher.notify("customer", order.customer_id, "Order rejected", f"Order {order.id} was rejected.", order.id)
            return order

        if not is_admin and self.catalog.owner_of(provider_id) != actor_user_id:
            raise MarketplacePermissionError("Only the provider owner can decline for this provider")
        with self.db.transaction() as tx:
            row = self._fetch_row(tx.conn, order_id)
            if row["status"] != "pending":
                raise InvalidTransitionError(f"Invalid status transition: {row['status']} -> rejected")
            invited = self.invited_providers(tx.conn, order_id)
            if invited and provider_id not in invited:
                raise MarketplacePermissionError("Provider was not invited to this order")
            if self.has_declined(tx.conn, order_id, provider_id):
                raise InvalidStateError("Provider already declined this order")
            open_quote = tx.execute(
                "SELECT 1 FROM quotes WHERE order_id = ? AND provider_id = ? AND status = 'pending'",
                (order_id, provider_id),
            ).fetchone()
            if open_quote:
                raise InvalidStateError("Provider has an open quote on this order")
            tx.execute(
                "INSERT INTO order_declines (order_id, provider_id, reason, created_at) VALUES (?, ?, ?, ?)",
                (order_id, provider_id, reason.strip(), utc_now_iso()),
            )
            declined = {
                str(item["provider_id"])
                for item in tx.execute(
                    "SELECT provider_id FROM order_declines WHERE order_id = ?", (order_id,)
                ).fetchall()
            }
            # Open orders (no invitations) stay pending for other providers.
            if invited and invited <= declined:
                order = self._apply_transition(
                    tx, row, "rejected", actor_id=actor_user_id, note="All invited providers declined"
                )
                rejected_quotes = self._reject_pending_quotes(tx, order_id)

                self._announce_rejected_quotes(
                    tx, rejected_quotes, "Quote closed", f"Order {order_id} is no longer accepting quotes."
                )
                tx.after_release(
                    lambda: self.dispatcher.notify(
                        "customer",
                        order.customer_id,
                        "No provider available",
                        f"Every provider you invited declined order {order.id}.",
                        order.id,
                    )
                )
            else:
                order = self.fetch_order(tx.conn, order_id)
        logger.info("Provider %s declined order %s", provider_id, order_id)
        return order

    def invited_providers(self, conn: sqlite3.Connection, order_id: str) -> Set[str]:
        rows = conn.execute("SELECT provider_id FROM order_invitations WHERE order_id = ?", (order_id,)).fetchall()
        return {str(row["provider_id"]) for row in rows}

    def has_declined(self, conn: sqlite3.Connection, order_id: str, provider_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM order_declines WHERE order_id = ? AND provider_id = ?",
            (order_id, provider_id),
        ).fetchone()
        return row is not None

    def record_payment(self, order_id: str, customer_id: str, payment_id: str) -> Order:
        cleaned = payment_id.strip()
        if not cleaned:
            raise MarketplaceValidationError("payment_id is required")
        with self.db.transaction() as tx:
            row = self._fetch_row(tx.conn, order_id)
            if row["customer_id"] != customer_id:
                raise MarketplacePermissionError("Only the ordering customer can settle payment")
            if row["payment_status"] == "paid":
                if row["payment_id"] == cleaned:
                    return self.fetch_order(tx.conn, order_id)
                raise InvalidStateError("Order already settled with a different payment")
            if row["status"] not in PAYABLE_STATUSES:
                raise InvalidStateError(f"Order is {row['status']}; only confirmed orders can be paid")
            tx.execute(
                """
                UPDATE orders SET payment_status = 'paid', payment_id = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (cleaned, utc_now_iso(), order_id, row["version"]),
            )
            order = self.fetch_order(tx.conn, order_id)

            tx.on_commit(lambda: self.events.publish(ORDER_PAYMENT_RECORDED, "orders", order.id, order.model_dump()))
            if order.selected_provider_id:
                tx.after_release(
                    lambda: self.dispatcher.notify(
                        "provider",
                        order.selected_provider_id,
                        "Payment received",
                        f"Payment for order {order.id} has been settled.",
                        order.id,
                    )
                )
        logger.info("Order %s paid with %s", order_id, cleaned)
        return order

    def submit_feedback(self, order_id: str, customer_id: str, rating: int, comment: str = "") -> Feedback:
        if not 1 <= int(rating) <= 5:
            raise MarketplaceValidationError("Rating must be between 1 and 5")
        now_iso = utc_now_iso()
        with self.db.transaction() as tx:
            row = self._fetch_row(tx.conn, order_id)
            if row["customer_id"] != customer_id:
                raise MarketplacePermissionError("Only the ordering customer can leave feedback")
            if row["status"] != "completed":
                raise InvalidStateError("Feedback is only accepted for completed orders")
            existing = tx.execute("SELECT 1 FROM feedback WHERE order_id = ?", (order_id,)).fetchone()
            if existing:
                raise InvalidStateError("Feedback already submitted for this order")
            provider_id = str(row["selected_provider_id"])
            tx.execute(
                """
                INSERT INTO feedback (order_id, customer_id, provider_id, rating, comment, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (order_id, customer_id, provider_id, int(rating), comment.strip(), now_iso),
            )
            self.catalog.apply_rating(tx, provider_id, int(rating))
        return Feedback(
            order_id=order_id,
            customer_id=customer_id,
            provider_id=provider_id,
            rating=int(rating),
            comment=comment.strip(),
            created_at=now_iso,
        )

    def status_history(self, order_id: str) -> List[OrderStatusChange]:
        with self.db.read() as conn:
            self._fetch_row(conn, order_id)
            rows = conn.execute(
                "SELECT * FROM order_status_history WHERE order_id = ? ORDER BY created_at ASC, rowid ASC",
                (order_id,),
            ).fetchall()
        return [OrderStatusChange(**row_to_dict(row)) for row in rows]

    def stats(self) -> Dict[str, Any]:
        counts = {status: 0 for status in sorted(ORDER_STATUSES)}
        with self.db.read() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS total FROM orders GROUP BY status").fetchall():
                counts[str(row["status"])] = int(row["total"])
            revenue = conn.execute(
                "SELECT COALESCE(SUM(total_amount), 0) AS total FROM orders WHERE status = 'completed'"
            ).fetchone()["total"]
            paid = conn.execute("SELECT COUNT(*) AS total FROM orders WHERE payment_status = 'paid'").fetchone()["total"]
        return {"orders_by_status": counts, "completed_revenue": int(revenue), "paid_orders": int(paid)}


order_lifecycle = OrderLifecycle(
    database,
    catalog=provider_catalog,
    dispatcher=notification_dispatcher,
    events=subscription_manager,
)
