import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from autocare.models import NotificationRecord
from autocare.services.provider_catalog import provider_catalog
from autocare.services.push_sender import PushSender, push_sender

logger = logging.getLogger(__name__)

MAX_LISTED = 100
# Oldest records fall off past this many.
MAX_RETAINED = 1000


class NotificationDispatcher:
    """Fire-and-forget notifications to customers and providers.

    ``notify`` never raises: a failure to record or push is logged and the
    state change that triggered it stands.
    """

    def __init__(self, sender: PushSender, owner_resolver: Callable[[str], Optional[str]]):
        self._lock = Lock()
        self._sender = sender
        self._owner_resolver = owner_resolver
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> None:
        if not device_token.strip():
            return
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(device_token.strip())

    def _account_for(self, recipient_type: str, recipient_id: str) -> Optional[str]:
        if recipient_type == "customer":
            return recipient_id
        return self._owner_resolver(recipient_id)

    def notify(
        self,
        recipient_type: str,
        recipient_id: str,
        title: str,
        message: str,
        related_order_id: Optional[str] = None,
    ) -> Optional[NotificationRecord]:
        try:
            record = NotificationRecord(
                id=f"ntf_{uuid4().hex[:10]}",
                recipient_type=recipient_type,  # type: ignore[arg-type]
                recipient_id=recipient_id,
                title=title,
                message=message,
                related_order_id=related_order_id,
                is_read=False,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            with self._lock:
                self._notifications.insert(0, record)
                del self._notifications[MAX_RETAINED:]
        except Exception:
            logger.exception("Failed to record notification for %s %s", recipient_type, recipient_id)
            return None
        self._push(record)
        return record

    def _push(self, record: NotificationRecord) -> None:
        try:
            account_id = self._account_for(record.recipient_type, record.recipient_id)
            if not account_id:
                return
            with self._lock:
                tokens = list(self._device_tokens.get(account_id, set()))
            stale_tokens = self._sender.send(
                tokens=tokens,
                title=record.title,
                body=record.message,
                data={
                    "notification_id": record.id,
                    "related_order_id": record.related_order_id or "",
                },
            )
        except Exception:
            logger.exception("Push delivery failed for notification %s", record.id)
            return
        if stale_tokens:
            with self._lock:
                current = self._device_tokens.get(account_id, set())
                for token in stale_tokens:
                    current.discard(token)

    def list_for_recipient(
        self,
        recipient_type: str,
        recipient_id: str,
        unread_only: bool = False,
    ) -> List[NotificationRecord]:
        with self._lock:
            rows = [
                n for n in self._notifications if n.recipient_type == recipient_type and n.recipient_id == recipient_id
            ]
        if unread_only:
            rows = [n for n in rows if not n.is_read]
        return rows[:MAX_LISTED]

    def get(self, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            return next((n for n in self._notifications if n.id == notification_id), None)

    def mark_read(self, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id:
                    updated = row.model_copy(update={"is_read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_dispatcher = NotificationDispatcher(sender=push_sender, owner_resolver=provider_catalog.owner_of)
