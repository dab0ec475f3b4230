from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from autocare.auth import SessionContext, require_session
from autocare.models import DeviceTokenRegisterRequest, NotificationRecord
from autocare.services.notification_dispatcher import notification_dispatcher
from autocare.services.provider_catalog import provider_catalog

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _owns_recipient(session: SessionContext, recipient_type: str, recipient_id: str) -> bool:
    if recipient_type == "customer":
        return recipient_id == session.user_id
    return provider_catalog.owner_of(recipient_id) == session.user_id


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    provider_id: Optional[str] = Query(default=None),
    unread_only: bool = Query(default=False),
    session: SessionContext = Depends(require_session),
):
    if provider_id is None:
        return notification_dispatcher.list_for_recipient("customer", session.user_id, unread_only=unread_only)
    if not _owns_recipient(session, "provider", provider_id):
        raise HTTPException(status_code=403, detail="Only the provider owner can read its notifications")
    return notification_dispatcher.list_for_recipient("provider", provider_id, unread_only=unread_only)


@router.post("/register-device", response_model=dict)
def register_device(payload: DeviceTokenRegisterRequest, session: SessionContext = Depends(require_session)):
    notification_dispatcher.register_device_token(user_id=session.user_id, device_token=payload.device_token)
    return {"status": "ok"}


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(notification_id: str, session: SessionContext = Depends(require_session)):
    record = notification_dispatcher.get(notification_id)
    if not record or not _owns_recipient(session, record.recipient_type, record.recipient_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    updated = notification_dispatcher.mark_read(notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated
