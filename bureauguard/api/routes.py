from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from bureauguard.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutResponse,
    SessionResponse,
    TokenResponse,
)
from bureauguard.logging import get_logger
from bureauguard.service.errors import AuthenticationError
from bureauguard.service.network import client_origin
from bureauguard.service.runtime import get_runtime
from bureauguard.service.tokens import TokenClaims, TokenGrant

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return token


async def get_claims(token: str = Depends(bearer_token)) -> TokenClaims:
    """Whitelist-checked claims for the calling token."""
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.tokens.verify, token)


def _token_response(grant: TokenGrant) -> TokenResponse:
    return TokenResponse(
        token=grant.token,
        type=grant.token_type,
        issued_at=grant.issued_at,
        expires_at=grant.expires_at,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account/origin is blocked
        429: If blocked and blocks are configured to be revealed
    """
    runtime = get_runtime()
    origin = client_origin(request, runtime.settings.trust_proxy_headers)
    grant = await asyncio.to_thread(
        runtime.login.login,
        body.email,
        body.password,
        origin,
        remember_me=body.remember_me,
    )
    return Envelope(status="ok", data=_token_response(grant))


@router.post("/auth/token-refresh", response_model=Envelope, tags=["auth"])
async def token_refresh(token: str = Depends(bearer_token)):
    """Exchange a live or recently expired token for a new one; the old one is revoked."""
    runtime = get_runtime()
    grant = await asyncio.to_thread(runtime.tokens.refresh, token)
    return Envelope(status="ok", data=_token_response(grant))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(token: str = Depends(bearer_token)):
    runtime = get_runtime()
    revoked = await asyncio.to_thread(runtime.tokens.revoke, token)
    return Envelope(status="ok", data=LogoutResponse(revoked=revoked))


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(claims: TokenClaims = Depends(get_claims)):
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=claims.user_id,
            type=claims.token_type,
            expires_at=claims.expires_at,
        ),
    )
