"""
Hosted credentials: short-lived Deepgram tokens minted by the copilot backend.

POST {BACKEND_BASE_URL}/api/deepgram/token -> {"access_token": "...", "expires_in": 30}
The token is only valid for opening a connection, so one is fetched per channel
open. A None result (or any error) makes that channel's open fail.
"""
from __future__ import annotations

import logging

import httpx

from copilot.config import get_settings
from copilot.errors import CredentialError

logger = logging.getLogger(__name__)


class HostedTokenProvider:
    """Async callable returning a fresh access token, or None when the backend has none."""

    def __init__(
        self,
        base_url: str | None = None,
        auth_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._url = (base_url or settings.BACKEND_BASE_URL).rstrip("/") + "/api/deepgram/token"
        self._auth_token = auth_token
        self._timeout = timeout if timeout is not None else settings.BACKEND_TIMEOUT_SEC
        self._transport = transport

    async def __call__(self) -> str | None:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(self._url, json={}, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        token = (data or {}).get("access_token")
        if not token:
            logger.warning("Token endpoint returned no access_token")
            return None
        logger.debug("Fetched hosted token (expires in %ss)", data.get("expires_in"))
        return str(token)


async def resolve_token(credential_provider) -> str:
    """Call the provider; None or an exception is a CredentialError."""
    try:
        token = await credential_provider()
    except Exception as e:
        raise CredentialError(f"credential fetch failed: {e}") from e
    if not token:
        raise CredentialError("credential provider returned no token")
    return token
