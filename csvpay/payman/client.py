from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx

from csvpay.config import settings
from csvpay.payman.errors import InvalidCredential, PaymanError

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response from agent"


def _parts_text(parts: Any) -> List[str]:
    out: List[str] = []
    if not isinstance(parts, list):
        return out
    for part in parts:
        if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"].strip():
            out.append(part["text"])
    return out


def _result_text(result: Dict[str, Any]) -> str:
    """Flatten a tasks/send result into the agent's reply text."""
    texts: List[str] = []
    for artifact in result.get("artifacts") or []:
        if isinstance(artifact, dict):
            texts.extend(_parts_text(artifact.get("parts")))
    if texts:
        return "\n".join(texts)
    status = result.get("status") or {}
    message = status.get("message") if isinstance(status, dict) else None
    if isinstance(message, dict):
        texts = _parts_text(message.get("parts"))
    return "\n".join(texts)


def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip()[:500]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        for key in ("error_description", "message", "error"):
            if data.get(key):
                return str(data[key])
    return resp.text.strip()[:500]


class PaymanClient:
    """Bearer-token client for the Payman agent.

    ``ask`` sends one natural-language command and returns the agent's reply
    text. A payment command is not idempotent, so every ``ask`` issues exactly
    one HTTP request and never retries.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        client_id: str = "",
        expires_in: int = 3600,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.access_token = access_token
        self.expires_in = expires_in
        self._session_id = uuid.uuid4().hex
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    @classmethod
    def with_token(
        cls,
        access_token: Optional[str],
        *,
        client_id: str = "",
        base_url: Optional[str] = None,
        expires_in: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "PaymanClient":
        token = (access_token or "").strip()
        if not token or any(ch.isspace() for ch in token):
            raise InvalidCredential("Malformed Payman access token")
        return cls(
            base_url or settings.payman_base_url,
            token,
            client_id=client_id or settings.payman_client_id,
            expires_in=expires_in if expires_in is not None else settings.payman_token_ttl_seconds,
            timeout=settings.payman_timeout_seconds,
            transport=transport,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "accept": "application/json",
            "Authorization": f"Bearer {self.access_token}",
        }

    async def ask(self, command: str) -> str:
        url = f"{self.base_url}/api/a2a/tasks/send"
        payload = {
            "jsonrpc": "2.0",
            "id": uuid.uuid4().hex,
            "method": "tasks/send",
            "params": {
                "id": uuid.uuid4().hex,
                "sessionId": self._session_id,
                "message": {"role": "user", "parts": [{"type": "text", "text": command}]},
            },
        }
        try:
            resp = await self._client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.warning("Payman ask timed out: %s", e)
            raise PaymanError(f"Request to Payman timed out: {e}") from e
        except httpx.TransportError as e:
            logger.warning("Payman transport error: %s", e)
            raise PaymanError(f"Could not reach Payman: {e}") from e

        # 403 is a missing scope or policy refusal; the token itself is still good
        if resp.status_code == 401:
            raise InvalidCredential(
                _error_text(resp) or "Payman rejected the access token",
                status_code=resp.status_code,
            )
        if resp.is_error:
            raise PaymanError(
                _error_text(resp) or f"Payman returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise PaymanError("Invalid JSON response from Payman") from e
        if not isinstance(body, dict):
            raise PaymanError("Unexpected response from Payman")

        err = body.get("error")
        if err:
            message = err.get("message") if isinstance(err, dict) else None
            raise PaymanError(str(message or err))

        result = body.get("result") or {}
        if not isinstance(result, dict):
            return str(result)
        text = _result_text(result)
        status = result.get("status")
        state = str(status.get("state") or "").lower() if isinstance(status, dict) else ""
        if state == "failed":
            raise PaymanError(text or "Payman task failed")
        return text or NO_RESPONSE_TEXT

    async def aclose(self) -> None:
        await self._client.aclose()


def get_client(access_token: str, *, expires_in: Optional[int] = None) -> PaymanClient:
    return PaymanClient.with_token(access_token, expires_in=expires_in)
