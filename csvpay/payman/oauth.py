from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from csvpay.config import settings
from csvpay.payman.errors import PaymanError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int


def authorize_url(state: str = "") -> str:
    params = {
        "client_id": settings.payman_client_id,
        "redirect_uri": settings.payman_redirect_uri,
        "response_type": "code",
        "scope": " ".join(settings.payman_scopes),
    }
    if state:
        params["state"] = state
    return f"{settings.payman_base_url.rstrip('/')}/oauth/authorize?{urlencode(params)}"


def extract_code(text: str) -> Optional[str]:
    """Accept a bare authorization code or the full redirect URL carrying ``?code=``."""
    raw = (text or "").strip()
    if not raw:
        return None
    if "code=" in raw:
        query = urlparse(raw).query if "?" in raw else raw
        values = parse_qs(query).get("code")
        return values[0].strip() if values and values[0].strip() else None
    if "://" in raw or any(ch.isspace() for ch in raw):
        return None
    return raw


async def exchange_code(
    code: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> TokenResponse:
    """Exchange an authorization code for a bearer token (client credentials via HTTP Basic)."""
    url = f"{settings.payman_base_url.rstrip('/')}/api/oauth2/token"
    auth = httpx.BasicAuth(settings.payman_client_id, settings.payman_client_secret)
    timeout = httpx.Timeout(30.0, connect=10.0)
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            resp = await client.post(
                url,
                json={"grant_type": "authorization_code", "code": code},
                auth=auth,
                headers={"accept": "application/json"},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning("token exchange rejected: HTTP %s", e.response.status_code)
            raise PaymanError("Token exchange failed", status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            logger.warning("token exchange transport error: %s", e)
            raise PaymanError(f"Token exchange failed: {e}") from e

    try:
        data = resp.json()
    except ValueError as e:
        raise PaymanError("Token exchange returned invalid JSON") from e
    token = (data.get("access_token") or data.get("accessToken")) if isinstance(data, dict) else None
    if not token:
        raise PaymanError("No access token received")
    expires_raw = data.get("expires_in") or data.get("expiresIn") or settings.payman_token_ttl_seconds
    try:
        expires_in = int(expires_raw)
    except (TypeError, ValueError):
        expires_in = settings.payman_token_ttl_seconds
    logger.info("Payman token acquired")
    return TokenResponse(access_token=str(token), expires_in=expires_in)
