import base64
import hashlib
import logging
import secrets
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from common.config import settings

logger = logging.getLogger(__name__)


class OAuthError(RuntimeError):
    action = "OAuth request"

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{self.action} failed ({status_code}): {message}")
        self.status_code = status_code


class OAuthRefreshError(OAuthError):
    action = "Token refresh"


class OAuthExchangeError(OAuthError):
    action = "Authorization code exchange"


def _endpoint(name: str) -> str:
    tenant = (settings.MICROSOFT_TENANT_ID or "common").strip()
    return f"{settings.GRAPH_AUTH_BASE.rstrip('/')}/{tenant}/oauth2/v2.0/{name}"


def _token_url() -> str:
    return _endpoint("token")


def _client_id() -> str:
    if not settings.MICROSOFT_CLIENT_ID:
        raise RuntimeError("MICROSOFT_CLIENT_ID not configured")
    return settings.MICROSOFT_CLIENT_ID


def _client_credentials() -> Dict[str, str]:
    if not settings.MICROSOFT_CLIENT_ID or not settings.MICROSOFT_CLIENT_SECRET:
        raise RuntimeError("MICROSOFT_CLIENT_ID / MICROSOFT_CLIENT_SECRET not configured")
    return {
        "client_id": settings.MICROSOFT_CLIENT_ID,
        "client_secret": settings.MICROSOFT_CLIENT_SECRET,
    }


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def create_pkce_pair() -> Tuple[str, str]:
    """Return ``(verifier, challenge)`` for the S256 method."""
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


def create_oauth_state() -> str:
    return _b64url(secrets.token_bytes(16))


def build_authorize_url(
    redirect_uri: str,
    state: str,
    code_challenge: str,
    login_hint: Optional[str] = None,
) -> str:
    params = {
        "client_id": _client_id(),
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "response_mode": "query",
        "scope": " ".join(settings.graph_scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "prompt": "consent",
    }
    if login_hint:
        params["login_hint"] = login_hint
    return f"{_endpoint('authorize')}?{urlencode(params)}"


async def _post_token_request(data: Dict[str, str], error_cls, default_message: str) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=settings.GRAPH_TIMEOUT_SECONDS) as client:
        resp = await client.post(_token_url(), data=data)
    if resp.status_code >= 400:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        message = body.get("error_description") or body.get("error") or default_message
        raise error_cls(resp.status_code, message)
    payload = resp.json()
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise error_cls(resp.status_code, "Token response missing access_token")
    return payload


async def exchange_authorization_code(code: str, code_verifier: str, redirect_uri: str) -> Dict[str, Any]:
    """Redeem the code returned to the OAuth callback for access and refresh tokens."""
    data = {
        **_client_credentials(),
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "code_verifier": code_verifier,
        "scope": " ".join(settings.graph_scopes),
    }
    return await _post_token_request(data, OAuthExchangeError, "Failed to exchange authorization code")


async def refresh_access_token(refresh_token: str) -> Dict[str, Any]:
    """Exchange a refresh token for a new access token.

    The response may carry a rotated ``refresh_token``; callers must persist it.
    """
    data = {
        **_client_credentials(),
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "scope": " ".join(settings.graph_scopes),
    }
    return await _post_token_request(data, OAuthRefreshError, "Failed to refresh access token")
