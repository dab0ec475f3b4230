import json
import queue
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from autocare.auth import SessionContext, require_session
from autocare.http_errors import raise_http_error
from autocare.routers.orders import assert_can_view
from autocare.services.errors import MarketplaceError
from autocare.services.events import ChangeEvent, subscription_manager
from autocare.services.order_lifecycle import order_lifecycle
from autocare.services.provider_catalog import provider_catalog

router = APIRouter(prefix="/events", tags=["events"])

STREAM_TABLES = {"orders", "quotes", "sessions"}


def _assert_can_stream(table: str, column: Optional[str], value: Optional[str], session: SessionContext) -> None:
    """Non-admins only get the rows the REST routes would show them."""
    if session.is_admin:
        return
    if column is None or value is None:
        raise HTTPException(status_code=403, detail="Only admins can stream a whole table")
    if table == "sessions":
        if column == "user_id" and value == session.user_id:
            return
        raise HTTPException(status_code=403, detail="Sessions can only be streamed for the signed-in user")
    if table == "orders":
        if column == "customer_id" and value == session.user_id:
            return
        if column == "id":
            assert_can_view(order_lifecycle.get_order(value), session)
            return
    if table == "quotes":
        if column == "order_id" and order_lifecycle.get_order(value).customer_id == session.user_id:
            return
        if column == "provider_id" and provider_catalog.owner_of(value) == session.user_id:
            return
    raise HTTPException(status_code=403, detail="Not allowed to stream these rows")


@router.get("/stream")
def stream_events(
    table: str = Query(...),
    column: Optional[str] = Query(default=None),
    value: Optional[str] = Query(default=None),
    max_events: int = Query(default=100, ge=1, le=1000),
    timeout_seconds: float = Query(default=30.0, gt=0, le=300),
    session: SessionContext = Depends(require_session),
):
    if table not in STREAM_TABLES:
        raise HTTPException(status_code=400, detail=f"Unknown table. Allowed: {', '.join(sorted(STREAM_TABLES))}")
    if (column is None) != (value is None):
        raise HTTPException(status_code=400, detail="column and value must be given together")
    try:
        _assert_can_stream(table, column, value, session)
    except MarketplaceError as exc:
        raise_http_error(exc)

    inbox: "queue.Queue[ChangeEvent]" = queue.Queue()
    subscription = subscription_manager.subscribe(table, inbox.put, column=column, value=value)

    def event_generator():
        deadline = time.monotonic() + timeout_seconds
        sent = 0
        try:
            while sent < max_events:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    event = inbox.get(timeout=remaining)
                except queue.Empty:
                    break
                yield f"data: {json.dumps(event.as_dict(), default=str)}\n\n"
                sent += 1
        finally:
            subscription_manager.unsubscribe(subscription)
        yield "data: [DONE]\n\n"

    return StreamingResponse(event_generator(), media_type="text/event-stream")
