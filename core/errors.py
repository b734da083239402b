# core/errors.py
"""Exception types raised inside the generation pipeline."""

from __future__ import annotations

from typing import Literal

ErrorKind = Literal["quota", "transient", "permanent", "unknown"]

TRANSIENT_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

TRANSIENT_TRANSPORT_REASONS = frozenset(
    {
        "transport_timeout",
        "transport_terminated",
        "transport_fetch_failed",
        "transport_conn_reset",
        "transport_dns_not_found",
    }
)


class PipelineError(Exception):
    """Base class for errors raised by pipeline components."""


class ProviderError(PipelineError):
    """A classified failure from a provider adapter or the router."""

    def __init__(
        self,
        reason: str,
        *,
        kind: ErrorKind = "unknown",
        status: int | None = None,
        provider: str | None = None,
        detail: str = "",
    ) -> None:
        super().__init__(f"{provider or 'provider'}: {reason}")
        self.reason = reason
        self.kind = kind
        self.status = status
        self.provider = provider
        self.detail = detail

    @property
    def is_transient(self) -> bool:
        return self.kind in ("transient", "quota")

    @property
    def is_quota(self) -> bool:
        return self.kind == "quota"

    @classmethod
    def from_status(
        cls, status: int, *, provider: str | None = None, detail: str = ""
    ) -> ProviderError:
        if status == 429:
            return cls("quota_429", kind="quota", status=status, provider=provider, detail=detail)
        kind: ErrorKind = "transient" if status in TRANSIENT_STATUSES else "permanent"
        return cls(f"http_{status}", kind=kind, status=status, provider=provider, detail=detail)

    @classmethod
    def transport(
        cls, reason: str, *, provider: str | None = None, detail: str = ""
    ) -> ProviderError:
        kind: ErrorKind = (
            "transient" if reason in TRANSIENT_TRANSPORT_REASONS else "unknown"
        )
        return cls(reason, kind=kind, provider=provider, detail=detail)
