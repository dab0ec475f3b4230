from fastapi import APIRouter, Depends

from autocare.auth import SessionContext, require_session
from autocare.http_errors import raise_http_error
from autocare.models import (
    Account,
    AuthLoginRequest,
    AuthLoginResponse,
    AuthMeResponse,
    ConfirmEmailRequest,
    PasswordResetConfirmRequest,
    PasswordResetRequest,
    SignUpRequest,
    SignUpResponse,
)
from autocare.services.errors import MarketplaceError
from autocare.services.identity import identity_service

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/signup", response_model=SignUpResponse)
def signup(payload: SignUpRequest):
    try:
        account, token, expires_at, _confirmation = identity_service.sign_up(
            email=payload.email,
            password=payload.password,
            full_name=payload.full_name,
            phone=payload.phone,
            role=payload.role,
        )
    except MarketplaceError as exc:
        raise_http_error(exc)
    return SignUpResponse(
        account=account,
        confirmation_required=token is None,
        access_token=token,
        expires_at=expires_at,
    )


@router.post("/confirm", response_model=Account)
def confirm(payload: ConfirmEmailRequest):
    try:
        return identity_service.confirm_email(payload.token)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    try:
        account, token, expires_at = identity_service.sign_in(payload.email, payload.password)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return AuthLoginResponse(access_token=token, user_id=account.id, role=account.role, expires_at=expires_at)


@router.post("/logout", response_model=dict)
def logout(session: SessionContext = Depends(require_session)):
    try:
        identity_service.sign_out(session.token)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return {"status": "ok"}


@router.post("/password-reset", response_model=dict)
def password_reset(payload: PasswordResetRequest):
    try:
        identity_service.request_password_reset(payload.email)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return {"status": "ok"}


@router.post("/password-reset/confirm", response_model=Account)
def password_reset_confirm(payload: PasswordResetConfirmRequest):
    try:
        return identity_service.confirm_password_reset(payload.token, payload.new_password)
    except MarketplaceError as exc:
        raise_http_error(exc)


@router.get("/me", response_model=AuthMeResponse)
def me(session: SessionContext = Depends(require_session)):
    try:
        account = identity_service.get_account(session.user_id)
    except MarketplaceError as exc:
        raise_http_error(exc)
    return AuthMeResponse(user_id=session.user_id, role=session.role, account=account)
