# core/model_router.py
"""Ordered provider failover with bounded retries on transient errors."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog
from config import settings

from core.errors import ProviderError
from core.providers import ProviderAdapter, ProviderResult

logger = structlog.get_logger(__name__)


class ModelRouter:
    """Try adapters in priority order, primary first."""

    def __init__(
        self,
        adapters: Sequence[ProviderAdapter],
        *,
        primary: str = settings.PRIMARY_PROVIDER,
        transient_retries: int = settings.LLM_TRANSIENT_RETRIES,
        call_timeout: float = settings.LLM_FETCH_TIMEOUT_SECONDS,
        backoff_base: float = settings.LLM_RETRY_BACKOFF_BASE_SECONDS,
        backoff_ceiling: float = settings.LLM_RETRY_BACKOFF_CEILING_SECONDS,
    ) -> None:
        self.adapters = list(adapters)
        self.primary = primary
        self.transient_retries = max(0, transient_retries)
        self.call_timeout = call_timeout
        self.backoff_base = backoff_base
        self.backoff_ceiling = backoff_ceiling

    def provider_order(self, critical_path: bool = False) -> list[ProviderAdapter]:
        """Primary adapter first. Non-critical calls only get the primary."""
        ordered = sorted(
            self.adapters, key=lambda adapter: adapter.provider_id != self.primary
        )
        return ordered if critical_path else ordered[:1]

    def backoff_seconds(self, attempt: int) -> float:
        return min(self.backoff_ceiling, self.backoff_base * (2**attempt))

    async def _call_once(self, adapter: ProviderAdapter, prompt: str) -> ProviderResult:
        try:
            return await asyncio.wait_for(adapter.complete(prompt), self.call_timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError.transport(
                "transport_timeout", provider=adapter.provider_id
            ) from exc
        except ProviderError:
            raise
        except Exception as exc:
            logger.error(
                "Unclassified provider failure",
                provider=adapter.provider_id,
                exc_info=True,
            )
            raise ProviderError(
                "unknown_error", provider=adapter.provider_id, detail=str(exc)[:200]
            ) from exc

    async def _call_with_retries(
        self, adapter: ProviderAdapter, prompt: str
    ) -> ProviderResult:
        attempt = 0
        while True:
            try:
                return await self._call_once(adapter, prompt)
            except ProviderError as exc:
                if not exc.is_transient or attempt >= self.transient_retries:
                    raise
                delay = self.backoff_seconds(attempt)
                logger.info(
                    "Retrying provider after transient failure",
                    provider=adapter.provider_id,
                    reason=exc.reason,
                    attempt=attempt + 1,
                    delay=delay,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def route(
        self, prompt: str, *, fast_path: bool = False, critical_path: bool = False
    ) -> ProviderResult:
        """Return the first successful completion or raise the first error seen."""
        first_error: ProviderError | None = None
        for adapter in self.provider_order(critical_path):
            if not adapter.is_configured():
                logger.debug("Skipping unconfigured provider", provider=adapter.provider_id)
                continue
            try:
                if fast_path:
                    return await self._call_once(adapter, prompt)
                return await self._call_with_retries(adapter, prompt)
            except ProviderError as exc:
                logger.warning(
                    "Provider failed",
                    provider=adapter.provider_id,
                    reason=exc.reason,
                    kind=exc.kind,
                )
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
        raise ProviderError("no_provider_available", kind="permanent")

    async def aclose(self) -> None:
        for adapter in self.adapters:
            await adapter.aclose()
