"""Shared fixtures: config factory and a scriptable fake backend."""

import asyncio
import time
from dataclasses import dataclass, field

import pytest

from ccchat.config.schema import Config
from ccchat.errors import BackendError
from ccchat.providers.base import BackendProvider, BackendResponse

OWNER = "+10000000000"
ALLOWED = "+10000000001"
STRANGER = "+19999999999"


def _make_config(**overrides) -> Config:
    values = {
        "account": OWNER,
        "api_url": "http://127.0.0.1:8080",
        "allowed": f"{OWNER},{ALLOWED}",
        "model": "sonnet",
        "debounce_ms": 0,
        "chunk_delay_ms": 0,
        "echo_ttl_secs": None,
    }
    values.update(overrides)
    return Config(**values)


@dataclass
class BackendCall:
    prompt: str
    session_id: str
    model: str
    budget: float
    resume: bool
    started_at: float
    finished_at: float = 0.0


@dataclass
class FakeProvider(BackendProvider):
    """Backend stand-in that records calls and replies ``reply:<prompt>``."""

    delay: float = 0.0
    cost: float | None = 0.01
    fail_with: str | None = None
    reply: str | None = None
    calls: list[BackendCall] = field(default_factory=list)

    async def invoke(self, prompt, session_id, model, budget, *, resume=False):
        call = BackendCall(prompt, session_id, model, budget, resume, time.monotonic())
        self.calls.append(call)
        if self.delay:
            await asyncio.sleep(self.delay)
        call.finished_at = time.monotonic()
        if self.fail_with:
            raise BackendError(self.fail_with)
        content = self.reply if self.reply is not None else f"reply:{prompt}"
        return BackendResponse(content=content, cost_usd=self.cost)


@pytest.fixture
def make_config():
    """Factory for test configs; keyword overrides replace the defaults."""
    return _make_config


@pytest.fixture
def config() -> Config:
    return _make_config()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
