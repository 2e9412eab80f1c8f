"""Shared fixtures: settings, scripted provider client, provider payloads."""
from __future__ import annotations

from collections import Counter
from unittest.mock import AsyncMock

import httpx
import pytest

from brandlens.config import Settings
from brandlens.providers import ProviderClient

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


def payload(text: str, tokens: int = 42, model: str = "openai/gpt-4o", **extra) -> dict:
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": text}}],
        "usage": {"total_tokens": tokens},
        **extra,
    }


def status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", OPENROUTER_URL)
    return httpx.HTTPStatusError(
        f"HTTP {code}", request=request, response=httpx.Response(code, request=request),
    )


class ScriptedClient(ProviderClient):
    """Provider client whose transport replays a per-provider script.

    Each script entry is either a payload dict (returned) or an exception
    (raised).  Everything above the transport, including retries and
    response validation, runs for real.
    """

    def __init__(self, script: dict[str, list], settings: Settings, sleep=None):
        super().__init__(settings=settings, sleep=sleep or AsyncMock())
        self.script = {k: list(v) for k, v in script.items()}
        self.calls: Counter[str] = Counter()

    async def _send(self, prompt_text, provider, model):
        self.calls[provider.provider_id] += 1
        outcome = self.script[provider.provider_id].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome


@pytest.fixture()
def settings() -> Settings:
    return Settings(openrouter_api_key="test-key", anthropic_api_key="test-key")


@pytest.fixture()
def make_payload():
    return payload


@pytest.fixture()
def make_status_error():
    return status_error


@pytest.fixture()
def scripted_client(settings):
    def _build(script: dict[str, list], sleep=None) -> ScriptedClient:
        return ScriptedClient(script, settings, sleep=sleep)
    return _build
