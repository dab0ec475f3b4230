from fastapi import HTTPException

from autocare.services.errors import (
    AuthenticationError,
    DuplicateQuoteError,
    InvalidStateError,
    InvalidTransitionError,
    MarketplaceError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    UpstreamUnavailableError,
)


def raise_http_error(exc: MarketplaceError) -> None:
    if isinstance(exc, MarketplaceNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, MarketplacePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, AuthenticationError):
        raise HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, (InvalidTransitionError, InvalidStateError, DuplicateQuoteError)):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, UpstreamUnavailableError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
