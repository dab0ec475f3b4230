from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from autocare.auth import SessionContext, optional_session, require_session
from autocare.http_errors import raise_http_error
from autocare.models import (
    Coordinate,
    LocationUpdateRequest,
    Provider,
    ProviderMatch,
    ProviderRegisterRequest,
    Quote,
    ServicePriceRequest,
)
from autocare.services.errors import MarketplaceError
from autocare.services.provider_catalog import provider_catalog
from autocare.services.quote_ledger import quote_ledger

router = APIRouter(prefix="/providers", tags=["providers"])


@router.post("", response_model=Provider)
def register_provider(payload: ProviderRegisterRequest, session: SessionContext = Depends(require_session)):
    if session.role not in {"provider", "admin"}:
        raise HTTPException(status_code=403, detail="Only provider accounts can register a listing")
    try:
        return provider_catalog.register_provider(
            owner_user_id=session.user_id,
            name=payload.name,
            kind=payload.kind,
            city=payload.city,
            latitude=payload.latitude,
            longitude=payload.longitude,
            service_prices=payload.service_prices,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/search", response_model=list[ProviderMatch])
def search_providers(
    service_type: str = Query(...),
    latitude: float = Query(...),
    longitude: float = Query(...),
    radius_km: Optional[float] = Query(default=None),
    sort: str = Query(default="distance"),
    policy: Optional[str] = Query(default=None),
    _session: Optional[SessionContext] = Depends(optional_session),
):
    try:
        return provider_catalog.find_providers(
            service_type=service_type,
            origin=Coordinate(latitude=latitude, longitude=longitude),
            radius_km=radius_km,
            sort_key=sort,
            policy=policy,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/mine", response_model=list[Provider])
def my_providers(session: SessionContext = Depends(require_session)):
    return provider_catalog.providers_for_owner(session.user_id)


@router.get("/{provider_id}", response_model=Provider)
def get_provider(provider_id: str, _session: Optional[SessionContext] = Depends(optional_session)):
    try:
        return provider_catalog.get_provider(provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.put("/{provider_id}/services/{service_id}", response_model=Provider)
def set_service_price(
    provider_id: str,
    service_id: str,
    payload: ServicePriceRequest,
    session: SessionContext = Depends(require_session),
):
    try:
        return provider_catalog.set_service_price(
            provider_id=provider_id, actor_user_id=session.user_id, service_id=service_id, price=payload.price
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.delete("/{provider_id}/services/{service_id}", response_model=Provider)
def remove_service(provider_id: str, service_id: str, session: SessionContext = Depends(require_session)):
    try:
        return provider_catalog.remove_service(
            provider_id=provider_id, actor_user_id=session.user_id, service_id=service_id
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/{provider_id}/location", response_model=Provider)
def update_location(
    provider_id: str,
    payload: LocationUpdateRequest,
    session: SessionContext = Depends(require_session),
):
    try:
        return provider_catalog.update_location(
            provider_id=provider_id,
            actor_user_id=session.user_id,
            latitude=payload.latitude,
            longitude=payload.longitude,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/{provider_id}/quotes", response_model=list[Quote])
def provider_quotes(provider_id: str, session: SessionContext = Depends(require_session)):
    try:
        provider = provider_catalog.get_provider(provider_id)
        if provider.owner_user_id != session.user_id and not session.is_admin:
            raise HTTPException(status_code=403, detail="Only the provider owner can list its quotes")
        quote_ledger.expire_stale_quotes()
        return quote_ledger.quotes_for_provider(provider_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
