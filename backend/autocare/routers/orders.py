from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from autocare.auth import SessionContext, require_session
from autocare.http_errors import raise_http_error
from autocare.models import (
    Feedback,
    FeedbackRequest,
    Order,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderDeclineRequest,
    OrderStatusChange,
    PaymentRecordRequest,
    PriceBreakdown,
    Quote,
    QuoteSubmitRequest,
)
from autocare.services.errors import InvalidStateError, MarketplaceError
from autocare.services.order_lifecycle import order_lifecycle
from autocare.services.pricing import calculate_price
from autocare.services.provider_catalog import provider_catalog
from autocare.services.quote_ledger import quote_ledger

router = APIRouter(prefix="/orders", tags=["orders"])


def assert_can_view(order: Order, session: SessionContext) -> None:
    if session.is_admin or order.customer_id == session.user_id:
        return
    for provider in provider_catalog.providers_for_owner(session.user_id):
        if any(item.id == order.id for item in order_lifecycle.list_orders(provider_id=provider.id)):
            return
    raise HTTPException(status_code=403, detail="Not allowed to view this order")


def _assert_customer(order: Order, session: SessionContext) -> None:
    if order.customer_id != session.user_id and not session.is_admin:
        raise HTTPException(status_code=403, detail="Only the ordering customer can do this")


@router.post("", response_model=Order)
def create_order(payload: OrderCreateRequest, session: SessionContext = Depends(require_session)):
    try:
        return order_lifecycle.create_order(
            customer_id=session.user_id,
            service_type=payload.service_type,
            location=payload.location,
            scheduled_date=payload.scheduled_date,
            scheduled_time=payload.scheduled_time,
            vehicle_description=payload.vehicle_description,
            special_instructions=payload.special_instructions,
            invited_provider_ids=payload.invited_provider_ids,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("", response_model=list[Order])
def list_orders(
    status: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    session: SessionContext = Depends(require_session),
):
    try:
        quote_ledger.expire_stale_quotes()
        if provider_id:
            if provider_catalog.get_provider(provider_id).owner_user_id != session.user_id:
                raise HTTPException(status_code=403, detail="Only the provider owner can list its orders")
            return order_lifecycle.list_orders(provider_id=provider_id, status=status)
        return order_lifecycle.list_orders(customer_id=session.user_id, status=status)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{order_id}", response_model=Order)
def get_order(order_id: str, session: SessionContext = Depends(require_session)):
    try:
        order = order_lifecycle.get_order(order_id)
        assert_can_view(order, session)
        return order
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{order_id}/history", response_model=list[OrderStatusChange])
def order_history(order_id: str, session: SessionContext = Depends(require_session)):
    try:
        assert_can_view(order_lifecycle.get_order(order_id), session)
        return order_lifecycle.status_history(order_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{order_id}/start", response_model=Order)
def start_service(order_id: str, session: SessionContext = Depends(require_session)):
    try:
        return order_lifecycle.start_service(order_id, actor_user_id=session.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{order_id}/complete", response_model=Order)
def complete_service(order_id: str, session: SessionContext = Depends(require_session)):
    try:
        return order_lifecycle.complete_service(order_id, actor_user_id=session.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{order_id}/cancel", response_model=Order)
def cancel_order(order_id: str, payload: OrderCancelRequest, session: SessionContext = Depends(require_session)):
    try:
        return order_lifecycle.cancel_order(
            order_id, actor_user_id=session.user_id, is_admin=session.is_admin, reason=payload.reason
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{order_id}/decline", response_model=Order)
def decline_order(order_id: str, payload: OrderDeclineRequest, session: SessionContext = Depends(require_session)):
    try:
        return order_lifecycle.decline_order(
            order_id,
            actor_user_id=session.user_id,
            provider_id=payload.provider_id,
            is_admin=session.is_admin,
            reason=payload.reason,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{order_id}/payment", response_model=Order)
def record_payment(order_id: str, payload: PaymentRecordRequest, session: SessionContext = Depends(require_session)):
    try:
        return order_lifecycle.record_payment(order_id, customer_id=session.user_id, payment_id=payload.payment_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{order_id}/feedback", response_model=Feedback)
def submit_feedback(order_id: str, payload: FeedbackRequest, session: SessionContext = Depends(require_session)):
    try:
        return order_lifecycle.submit_feedback(
            order_id, customer_id=session.user_id, rating=payload.rating, comment=payload.comment
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{order_id}/pricing", response_model=PriceBreakdown)
def order_pricing(
    order_id: str,
    promo_code: Optional[str] = Query(default=None),
    quote_id: Optional[str] = Query(default=None),
    session: SessionContext = Depends(require_session),
):
    try:
        order = order_lifecycle.get_order(order_id)
        _assert_customer(order, session)
        if quote_id:
            quote = quote_ledger.get_quote(quote_id)
            if quote.order_id != order.id:
                raise HTTPException(status_code=400, detail="Quote does not belong to this order")
            base_price = quote.quoted_price
        elif order.selected_provider_id:
            base_price = order.total_amount
        else:
            raise InvalidStateError("Order has no accepted quote yet; pass quote_id to price a quote")
        return calculate_price(base_price, promo_code)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{order_id}/quotes", response_model=list[Quote])
def list_order_quotes(
    order_id: str,
    order_by: str = Query(default="submitted"),
    session: SessionContext = Depends(require_session),
):
    try:
        quote_ledger.expire_stale_quotes()
        order = order_lifecycle.get_order(order_id)
        quotes = quote_ledger.list_quotes(order_id, order_by=order_by)
        if session.is_admin or order.customer_id == session.user_id:
            return quotes
        owned = {provider.id for provider in provider_catalog.providers_for_owner(session.user_id)}
        return [quote for quote in quotes if quote.provider_id in owned]
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{order_id}/quotes", response_model=Quote)
def submit_quote(order_id: str, payload: QuoteSubmitRequest, session: SessionContext = Depends(require_session)):
    try:
        return quote_ledger.submit_quote(
            order_id=order_id,
            provider_id=payload.provider_id,
            price=payload.quoted_price,
            duration_minutes=payload.estimated_duration_minutes,
            notes=payload.notes,
            actor_user_id=session.user_id,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
