from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from autocare.auth import SessionContext, require_session
from autocare.http_errors import raise_http_error
from autocare.models import Quote
from autocare.services.errors import MarketplaceError
from autocare.services.order_lifecycle import order_lifecycle
from autocare.services.provider_catalog import provider_catalog
from autocare.services.quote_ledger import quote_ledger

router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.get("/{quote_id}", response_model=Quote)
def get_quote(quote_id: str, session: SessionContext = Depends(require_session)):
    try:
        quote = quote_ledger.get_quote(quote_id)
        order = order_lifecycle.get_order(quote.order_id)
        if (
            not session.is_admin
            and order.customer_id != session.user_id
            and provider_catalog.owner_of(quote.provider_id) != session.user_id
        ):
            raise HTTPException(status_code=403, detail="Not allowed to view this quote")
        return quote
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{quote_id}/accept", response_model=Quote)
def accept_quote(
    quote_id: str,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    session: SessionContext = Depends(require_session),
):
    try:
        return quote_ledger.accept_quote(quote_id, actor_user_id=session.user_id, idempotency_key=idempotency_key)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{quote_id}/reject", response_model=Quote)
def reject_quote(quote_id: str, session: SessionContext = Depends(require_session)):
    try:
        return quote_ledger.reject_quote(quote_id, actor_user_id=session.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
