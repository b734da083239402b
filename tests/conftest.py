# tests/conftest.py
import asyncio
import os
import sys

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Placeholder keys so both default adapters count as configured
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("ENABLE_RICH_LOGGING", "false")

import pytest  # noqa: E402
from core.model_router import ModelRouter  # noqa: E402
from core.providers import ProviderAdapter, ProviderResult  # noqa: E402
from orchestration.dialogue_orchestrator import DialogueOrchestrator  # noqa: E402


class FakeAdapter(ProviderAdapter):
    """Scripted provider. Replies are strings or exceptions, the last one repeats."""

    def __init__(self, provider_id, replies, *, configured=True, delay=0.0):
        self.provider_id = provider_id
        self.replies = list(replies)
        self.configured = configured
        self.delay = delay
        self.calls: list[str] = []
        self.closed = False

    def is_configured(self) -> bool:
        return self.configured

    async def complete(self, prompt: str) -> ProviderResult:
        self.calls.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies[min(len(self.calls), len(self.replies)) - 1]
        if isinstance(reply, BaseException):
            raise reply
        return ProviderResult(provider=self.provider_id, text=reply)

    async def aclose(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_router():
    def _make(*adapters, **kwargs):
        kwargs.setdefault("primary", adapters[0].provider_id)
        kwargs.setdefault("transient_retries", 0)
        kwargs.setdefault("call_timeout", 5.0)
        kwargs.setdefault("backoff_base", 0.0)
        kwargs.setdefault("backoff_ceiling", 0.0)
        return ModelRouter(list(adapters), **kwargs)

    return _make


@pytest.fixture
def make_orchestrator(tmp_path, make_router):
    def _make(*adapters, router_kwargs=None, **kwargs):
        kwargs.setdefault(
            "interaction_log_path", str(tmp_path / "logs" / "interaction_log.jsonl")
        )
        kwargs.setdefault(
            "correction_log_path", str(tmp_path / "training" / "corrections.jsonl")
        )
        kwargs.setdefault("throttle_seconds", 0.0)
        return DialogueOrchestrator(make_router(*adapters, **(router_kwargs or {})), **kwargs)

    return _make
