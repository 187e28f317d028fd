"""
OAuth helpers for the claim handshake: signed state, authorize URL, code exchange.
The state is a short-lived HS256 JWT bound to the resource being claimed, so any service
instance can verify it without shared session storage.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx
import jwt

from db_server.config import (
    CLAIM_CLIENT_ID,
    CLAIM_CLIENT_SECRET,
    CLAIM_STATE_SECRET,
    CLAIM_STATE_TTL_SECONDS,
    IDP_TIMEOUT_SECONDS,
    IDP_URL,
)

logger = logging.getLogger(__name__)

_STATE_AUDIENCE = "claim-db"
# Random per process when unset: states then only verify on the instance that issued them
_state_secret = CLAIM_STATE_SECRET or secrets.token_urlsafe(32)


class InvalidStateError(Exception):
    pass


class TokenExchangeError(Exception):
    """Non-2xx (or transport failure) from the identity provider's token endpoint."""

    def __init__(self, status: int | None, body: str):
        super().__init__(f"Token exchange failed - Status: {status}, Response: {body}")
        self.status = status
        self.body = body


def issue_state(resource_id: str, ttl_seconds: int = CLAIM_STATE_TTL_SECONDS) -> str:
    """Opaque CSRF value for the authorize redirect, bound to resource_id."""
    now = datetime.now(timezone.utc)
    payload = {
        "aud": _STATE_AUDIENCE,
        "rid": resource_id,
        "nonce": secrets.token_urlsafe(16),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
    }
    token = jwt.encode(payload, _state_secret, algorithm="HS256")
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def verify_state(state: str, resource_id: str) -> None:
    """Raise InvalidStateError unless state was issued by us for resource_id and has not expired."""
    try:
        claims = jwt.decode(state, _state_secret, algorithms=["HS256"], audience=_STATE_AUDIENCE)
    except jwt.ExpiredSignatureError as e:
        raise InvalidStateError("The claim link has expired.") from e
    except jwt.InvalidTokenError as e:
        raise InvalidStateError("The state parameter could not be verified.") from e
    if claims.get("rid") != resource_id:
        raise InvalidStateError("The state parameter was issued for a different database.")


def build_authorize_url(*, idp_url: str, client_id: str, redirect_uri: str, scope: str, state: str) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scope,
        "state": state,
    }
    return f"{idp_url}/authorize?{urlencode(params)}"


def exchange_code_for_token(code: str, redirect_uri: str) -> str:
    """authorization_code grant. Returns the access token or raises TokenExchangeError."""
    try:
        r = httpx.post(
            f"{IDP_URL}/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": CLAIM_CLIENT_ID,
                "client_secret": CLAIM_CLIENT_SECRET,
            },
            headers={"Accept": "application/json"},
            timeout=IDP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as e:
        raise TokenExchangeError(None, str(e)) from e

    if r.status_code != 200:
        raise TokenExchangeError(r.status_code, r.text)
    try:
        data = r.json()
    except ValueError as e:
        raise TokenExchangeError(r.status_code, r.text) from e
    access_token = data.get("access_token") if isinstance(data, dict) else None
    if not access_token:
        raise TokenExchangeError(r.status_code, "Token response has no access_token")
    return access_token
