from typing import Optional

from fastapi import APIRouter, Depends, Query

from autocare.auth import SessionContext, require_admin
from autocare.http_errors import raise_http_error
from autocare.models import AdminStats, ApprovalDecisionRequest, Order, OrderCancelRequest, Provider
from autocare.services.errors import MarketplaceError
from autocare.services.notification_dispatcher import notification_dispatcher
from autocare.services.order_lifecycle import order_lifecycle
from autocare.services.provider_catalog import provider_catalog

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/providers", response_model=list[Provider])
def list_providers(
    approval_status: Optional[str] = Query(default=None),
    _admin: SessionContext = Depends(require_admin),
):
    try:
        return provider_catalog.list_providers(approval_status=approval_status)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/providers/{provider_id}/approval", response_model=Provider)
def decide_approval(
    provider_id: str,
    payload: ApprovalDecisionRequest,
    _admin: SessionContext = Depends(require_admin),
):
    try:
        provider = provider_catalog.decide_approval(provider_id=provider_id, decision=payload.decision)
    except MarketplaceError as exc:
        raise_http_error(exc)
    notification_dispatcher.notify(
        "provider",
        provider.id,
        "Listing approved" if provider.approval_status == "approved" else "Listing rejected",
        f"{provider.name} was {provider.approval_status} by the marketplace team.",
    )
    return provider


@router.get("/orders", response_model=list[Order])
def list_orders(
    status: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    _admin: SessionContext = Depends(require_admin),
):
    try:
        return order_lifecycle.list_orders(customer_id=customer_id, status=status)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/orders/{order_id}/cancel", response_model=Order)
def cancel_order(order_id: str, payload: OrderCancelRequest, admin: SessionContext = Depends(require_admin)):
    try:
        return order_lifecycle.cancel_order(order_id, actor_user_id=admin.user_id, is_admin=True, reason=payload.reason)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/stats", response_model=AdminStats)
def stats(_admin: SessionContext = Depends(require_admin)):
    order_stats = order_lifecycle.stats()
    return AdminStats(providers_by_status=provider_catalog.count_by_status(), **order_stats)
