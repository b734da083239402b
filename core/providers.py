# core/providers.py
"""Provider adapters: one uniform ``complete(prompt)`` capability per vendor.

Each adapter owns its wire format and converts every failure into a
:class:`core.errors.ProviderError` before it leaves this module.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from config import settings

from core.errors import ProviderError

logger = structlog.get_logger(__name__)

JSON_ONLY_SYSTEM_MESSAGE = (
    "Return strict JSON only with keys: "
    "npc_text,intent,time_cost_seconds,suggested_state_effects."
)

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
)


@dataclass(frozen=True)
class ProviderResult:
    provider: str
    text: str


def classify_transport_error(
    exc: httpx.HTTPError, provider: str | None = None
) -> ProviderError:
    """Map an httpx failure onto the closed set of transport reasons."""
    message = str(exc).lower()
    if isinstance(exc, httpx.HTTPStatusError):
        return ProviderError.from_status(
            exc.response.status_code,
            provider=provider,
            detail=exc.response.text[:200],
        )
    if isinstance(exc, httpx.TimeoutException):
        reason = "transport_timeout"
    elif isinstance(exc, httpx.ConnectError):
        if any(marker in message for marker in _DNS_MARKERS):
            reason = "transport_dns_not_found"
        elif "reset" in message:
            reason = "transport_conn_reset"
        else:
            reason = "transport_fetch_failed"
    elif isinstance(exc, httpx.RemoteProtocolError):
        reason = "transport_terminated"
    elif isinstance(exc, (httpx.ReadError, httpx.WriteError)):
        reason = "transport_conn_reset"
    elif isinstance(exc, httpx.TransportError):
        reason = "transport_fetch_failed"
    else:
        reason = "unknown_error"
    return ProviderError.transport(reason, provider=provider, detail=str(exc)[:200])


class ProviderAdapter:
    """Uniform completion capability. Subclasses implement one vendor."""

    provider_id: str = "provider"

    def is_configured(self) -> bool:
        return False

    async def complete(self, prompt: str) -> ProviderResult:  # pragma: no cover
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpProviderAdapter(ProviderAdapter):
    """Shared httpx plumbing for JSON-over-HTTP providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        api_base: str,
        *,
        timeout: float = settings.LLM_FETCH_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _missing_key_error(self) -> ProviderError:
        return ProviderError(
            f"{self.provider_id}_key_missing",
            kind="permanent",
            provider=self.provider_id,
        )

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(
                url, json=payload, headers=headers, params=params
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, self.provider_id) from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                "invalid_json_body",
                kind="permanent",
                provider=self.provider_id,
                detail=response.text[:200],
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(
                "invalid_json_body", kind="permanent", provider=self.provider_id
            )
        return data


class OpenAIChatAdapter(HttpProviderAdapter):
    """OpenAI-compatible ``/chat/completions`` endpoint."""

    provider_id = "openai"

    def __init__(
        self,
        api_key: str = settings.OPENAI_API_KEY,
        model: str = settings.OPENAI_MODEL,
        api_base: str = settings.OPENAI_API_BASE,
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, model, api_base, **kwargs)

    async def complete(self, prompt: str) -> ProviderResult:
        if not self.is_configured():
            raise self._missing_key_error()
        payload = {
            "model": self.model,
            "temperature": settings.TEMPERATURE_OPENAI,
            "max_tokens": settings.MAX_REPLY_TOKENS,
            "messages": [
                {"role": "system", "content": JSON_ONLY_SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        data = await self._post_json(
            f"{self.api_base}/chat/completions", payload, headers=headers
        )
        choices = data.get("choices") or []
        text = ""
        if choices and isinstance(choices[0], dict):
            text = (choices[0].get("message") or {}).get("content") or ""
        return ProviderResult(provider=self.provider_id, text=text)


class GeminiAdapter(HttpProviderAdapter):
    """Gemini ``generateContent`` endpoint."""

    provider_id = "gemini"

    def __init__(
        self,
        api_key: str = settings.GEMINI_API_KEY,
        model: str = settings.GEMINI_MODEL,
        api_base: str = settings.GEMINI_API_BASE,
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key, model, api_base, **kwargs)

    async def complete(self, prompt: str) -> ProviderResult:
        if not self.is_configured():
            raise self._missing_key_error()
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": settings.TEMPERATURE_GEMINI,
                "maxOutputTokens": settings.MAX_REPLY_TOKENS,
            },
        }
        data = await self._post_json(
            f"{self.api_base}/models/{self.model}:generateContent",
            payload,
            params={"key": self.api_key},
        )
        parts: list[str] = []
        for candidate in data.get("candidates") or []:
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                parts.append(part.get("text") or "")
        return ProviderResult(provider=self.provider_id, text="\n".join(parts).strip())


def default_adapters() -> list[ProviderAdapter]:
    return [OpenAIChatAdapter(), GeminiAdapter()]
