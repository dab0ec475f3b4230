import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from autocare.services.database import utc_now_iso

logger = logging.getLogger(__name__)

ORDER_CREATED = "OrderCreated"
QUOTE_SUBMITTED = "QuoteSubmitted"
QUOTE_ACCEPTED = "QuoteAccepted"
QUOTE_REJECTED = "QuoteRejected"
ORDER_STATUS_CHANGED = "OrderStatusChanged"
ORDER_PAYMENT_RECORDED = "OrderPaymentRecorded"
SESSION_CHANGED = "SessionChanged"

ChannelKey = Tuple[str, Optional[str], Optional[str]]


@dataclass(frozen=True)
class ChangeEvent:
    sequence: int
    kind: str
    table: str
    entity_id: str
    row: Dict[str, Any]
    created_at: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "kind": self.kind,
            "table": self.table,
            "entity_id": self.entity_id,
            "row": self.row,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Subscription:
    id: str
    key: ChannelKey


@dataclass
class _Channel:
    key: ChannelKey
    handlers: Dict[str, Callable[[ChangeEvent], None]] = field(default_factory=dict)

    def matches(self, table: str, row: Dict[str, Any]) -> bool:
        channel_table, column, value = self.key
        if channel_table != table:
            return False
        if column is None:
            return True
        return str(row.get(column)) == value


class SubscriptionManager:
    """Owns change channels keyed by (table, column, value) and fans events out to local handlers.

    Subscribers asking for the same key share one channel; the channel is torn
    down when its last handler unsubscribes.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._channels: Dict[ChannelKey, _Channel] = {}
        self._sequence = 0

    def subscribe(
        self,
        table: str,
        handler: Callable[[ChangeEvent], None],
        column: Optional[str] = None,
        value: Optional[Any] = None,
    ) -> Subscription:
        if (column is None) != (value is None):
            raise ValueError("column and value must be given together")
        key: ChannelKey = (table, column, None if value is None else str(value))
        subscription = Subscription(id=f"sub_{uuid4().hex[:10]}", key=key)
        with self._lock:
            channel = self._channels.get(key)
            if channel is None:
                channel = _Channel(key=key)
                self._channels[key] = channel
                logger.debug("Opened channel %s", key)
            channel.handlers[subscription.id] = handler
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            channel = self._channels.get(subscription.key)
            if channel is None:
                return
            channel.handlers.pop(subscription.id, None)
            if not channel.handlers:
                del self._channels[subscription.key]
                logger.debug("Closed channel %s", subscription.key)

    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def handler_count(self, table: str, column: Optional[str] = None, value: Optional[Any] = None) -> int:
        key: ChannelKey = (table, column, None if value is None else str(value))
        with self._lock:
            channel = self._channels.get(key)
            return len(channel.handlers) if channel else 0

    def publish(self, kind: str, table: str, entity_id: str, row: Dict[str, Any]) -> ChangeEvent:
        with self._lock:
            self._sequence += 1
            event = ChangeEvent(
                sequence=self._sequence,
                kind=kind,
                table=table,
                entity_id=entity_id,
                row=dict(row),
                created_at=utc_now_iso(),
            )
            handlers: List[Callable[[ChangeEvent], None]] = []
            for channel in self._channels.values():
                if channel.matches(table, row):
                    handlers.extend(channel.handlers.values())
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s %s", kind, entity_id)
        return event


subscription_manager = SubscriptionManager()
