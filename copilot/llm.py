"""
Text generation via Cloudflare Workers AI (callout suggestions, meeting notes).

Same endpoint and auth for every caller: CLOUDFLARE_ACCOUNT_ID / CLOUDFLARE_API_TOKEN,
model LLM_CF_MODEL. Workers AI returns {"result": {"response": "..."}} or a bare
{"response": "..."}; both are accepted. Models often wrap JSON in a markdown fence
or add a preamble, so extract_json_object() is lenient.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from copilot.config import Settings, get_settings
from copilot.errors import LLMUnavailableError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def _cloudflare_auth(settings: Settings) -> tuple[str, str]:
    account_id = (settings.CLOUDFLARE_ACCOUNT_ID or "").strip()
    token = (settings.CLOUDFLARE_API_TOKEN or "").strip()
    return account_id, token


def llm_configured(settings: Settings | None = None) -> bool:
    account_id, token = _cloudflare_auth(settings or get_settings())
    return bool(account_id and token)


def _response_text(data: Any) -> str:
    result = data.get("result", data) if isinstance(data, dict) else data
    if isinstance(result, dict):
        content = result.get("response", "") or ""
    elif isinstance(result, str):
        content = result
    else:
        content = ""
    if not isinstance(content, str):
        # some models return already-parsed JSON in "response"
        content = json.dumps(content)
    return content.strip()


class WorkersAIClient:
    """Thin async client for one Workers AI text model."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    @property
    def configured(self) -> bool:
        return llm_configured(self._settings)

    async def run_chat(
        self,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float = 0.3,
    ) -> str:
        """
        Send messages, return the assistant text.
        Raises LLMUnavailableError when credentials are missing; httpx.HTTPStatusError on API errors.
        """
        account_id, token = _cloudflare_auth(self._settings)
        if not account_id or not token:
            raise LLMUnavailableError("CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN are required")

        model = self._settings.LLM_CF_MODEL
        url = f"https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/run/{model}"
        payload = {"messages": messages, "max_tokens": max_tokens, "temperature": temperature}
        logger.debug("LLM request: model=%s, max_tokens=%s, messages=%s", model, max_tokens, len(messages))

        async with httpx.AsyncClient(timeout=self._settings.LLM_TIMEOUT_SEC, transport=self._transport) as client:
            resp = await client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
            resp.raise_for_status()
            data = resp.json()
        return _response_text(data)


def extract_json_object(raw: str) -> dict[str, Any]:
    """Parse a JSON object from model output (markdown fence and preamble tolerated)."""
    text = raw.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    match = _OBJECT_RE.search(text)
    if match:
        text = match.group(0)
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data
