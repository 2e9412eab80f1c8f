"""Provider client: one prompt, one LLM, bounded retries.

Every provider is reached through the same chat-completions shape.  The
default backend is the OpenAI SDK pointed at OpenRouter (or any other
OpenAI-compatible base URL); ``backend="anthropic"`` talks to the Anthropic
API natively and normalises the reply into the same payload shape so the
citation extractor never needs to know which SDK produced it.

SDK-level retries are switched off.  :meth:`ProviderClient.invoke` owns the
whole retry budget: ``max_retries`` extra attempts after the first, with
exponential backoff ``backoff_base * 2**k`` (2s, 4s, 8s by default).
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import anthropic
import httpx
import openai

from brandlens.config import Settings, get_settings
from brandlens.schemas import ProviderConfig

log = logging.getLogger(__name__)


class ProviderError(Exception):
    """A single provider attempt failed."""
    retryable = False

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


class RetryableProviderError(ProviderError):
    """Transient failure: rate limit, 5xx, timeout, network, error-shaped body."""
    retryable = True


class FatalProviderError(ProviderError):
    """Failure that another attempt cannot fix."""


class ProviderCallError(ProviderError):
    """Terminal failure after the retry budget was spent (or a fatal error)."""

    def __init__(self, provider_id: str, reason: str, last_cause: Exception | None, attempts: int):
        detail = str(last_cause) if last_cause else reason
        super().__init__(reason, f"{provider_id} call failed after {attempts} attempt(s): {detail}")
        self.provider_id = provider_id
        self.last_cause = last_cause
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a helpful AI assistant providing comprehensive answers to user questions.

IMPORTANT: When providing information about companies, brands, products, or \
services, include relevant citations and links whenever possible so users can \
verify information and access additional resources.

Guidelines for citations:
1. Include hyperlinks to official websites, documentation, or authoritative sources
2. Use markdown link format: [link text](https://example.com)
3. Provide citations for company websites, product documentation, reviews, \
pricing information, and news articles

If you cannot provide specific links, say that the information is based on \
your training data and suggest where current information can be found.

Be thorough, accurate, and helpful in your responses.
"""

FREQUENCY_PENALTY = 0.3
PRESENCE_PENALTY = 0.3

# Provider error text that sometimes arrives as a 200 response body.
ERROR_PHRASES = ("rate limit", "too many requests", "unauthorized", "forbidden", "error:")
SHORT_BODY_CHARS = 200


@dataclass
class ProviderResponse:
    text: str
    payload: dict[str, Any] = field(default_factory=dict)
    latency_ms: int = 0
    tokens_used: int = 0
    model: str = ""


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def classify_error(exc: BaseException) -> ProviderError:
    """Map an SDK/transport exception onto the engine's error taxonomy."""
    if isinstance(exc, ProviderError):
        return exc

    timeouts = (openai.APITimeoutError, anthropic.APITimeoutError, httpx.TimeoutException, TimeoutError)
    if isinstance(exc, timeouts):
        return RetryableProviderError("timeout", str(exc) or "request timed out")

    status = _status_code(exc)
    if status is not None:
        if status == 429:
            return RetryableProviderError("rate_limited", str(exc))
        if status >= 500:
            return RetryableProviderError("server_error", str(exc))
        if status in (401, 403):
            return FatalProviderError("unauthorized", str(exc))
        if 400 <= status < 500:
            return FatalProviderError("bad_request", str(exc))

    connection = (openai.APIConnectionError, anthropic.APIConnectionError, httpx.TransportError, ConnectionError)
    if isinstance(exc, connection):
        return RetryableProviderError("network", str(exc))
    if isinstance(exc, OSError):
        return RetryableProviderError("network", str(exc))

    return FatalProviderError("unexpected", f"{type(exc).__name__}: {exc}")


def looks_like_error_body(text: str) -> bool:
    """True when a reply body is really provider error text."""
    lowered = text.strip().lower()
    if any(lowered.startswith(p) for p in ERROR_PHRASES):
        return True
    return len(lowered) < SHORT_BODY_CHARS and any(p in lowered for p in ERROR_PHRASES)


def parse_payload(payload: dict[str, Any]) -> tuple[str, int]:
    """Pull ``(text, total_tokens)`` out of a chat-completions payload."""
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not choices or not isinstance(choices, list):
        raise FatalProviderError("malformed_response", "response has no choices")
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        raise FatalProviderError("malformed_response", "first choice has no message")
    content = message.get("content")
    if not isinstance(content, str) or not content.strip():
        raise FatalProviderError("malformed_response", "message content is empty")
    if looks_like_error_body(content):
        raise RetryableProviderError("error_body", f"provider returned error text: {content[:200]}")
    usage = payload.get("usage") or {}
    tokens = usage.get("total_tokens") or 0
    return content, int(tokens)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def resolve_model(provider: ProviderConfig, settings: Settings) -> str:
    """Model id for ``provider``; native ids only on the Anthropic backend."""
    model = provider.model or settings.model_for(provider.provider_id, provider.backend)
    if provider.backend == "anthropic":
        return model.removeprefix("anthropic/")
    return model


class ProviderClient:
    """Async client that sends one prompt to one provider with retry handling."""

    def __init__(
        self,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.settings = settings or get_settings()
        self._sleep = sleep or asyncio.sleep
        self._clients: dict[str, Any] = {}

    def _client_for(self, backend: str) -> Any:
        if backend in self._clients:
            return self._clients[backend]
        s = self.settings
        if backend == "anthropic":
            if not s.anthropic_api_key:
                raise FatalProviderError("configuration", "ANTHROPIC_API_KEY is not set")
            client = anthropic.AsyncAnthropic(api_key=s.anthropic_api_key, max_retries=0)
        elif backend == "openai":
            if not s.openrouter_api_key:
                raise FatalProviderError("configuration", "OPENROUTER_API_KEY is not set")
            client = openai.AsyncOpenAI(
                api_key=s.openrouter_api_key,
                base_url=s.openrouter_base_url,
                max_retries=0,
            )
        else:
            raise FatalProviderError("configuration", f"Unknown provider backend: {backend!r}")
        self._clients[backend] = client
        return client

    async def _send(self, prompt_text: str, provider: ProviderConfig, model: str) -> dict[str, Any]:
        """Perform one HTTP round trip and return a chat-completions shaped dict."""
        s = self.settings
        client = self._client_for(provider.backend)
        if provider.backend == "anthropic":
            response = await client.messages.create(
                model=model,
                max_tokens=s.max_tokens,
                temperature=s.temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt_text}],
            )
            text = "".join(getattr(b, "text", "") for b in response.content)
            usage = response.usage
            return {
                "model": response.model,
                "choices": [{"message": {"role": "assistant", "content": text}}],
                "usage": {"total_tokens": (usage.input_tokens or 0) + (usage.output_tokens or 0)},
            }

        response = await client.chat.completions.create(
            model=model,
            temperature=s.temperature,
            top_p=s.top_p,
            max_tokens=s.max_tokens,
            frequency_penalty=FREQUENCY_PENALTY,
            presence_penalty=PRESENCE_PENALTY,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt_text},
            ],
        )
        return response.model_dump()

    def backoff_delay(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-based)."""
        return self.settings.backoff_base * (2 ** retry_index)

    async def invoke(self, prompt_text: str, provider: ProviderConfig) -> ProviderResponse:
        """Send ``prompt_text`` to ``provider``; retry transient failures.

        Raises :class:`ProviderCallError` once the budget is spent, or
        immediately (``attempts=1`` on the first try) for a fatal error.
        """
        s = self.settings
        model = resolve_model(provider, s)
        attempts = 0
        last_error: ProviderError | None = None

        while True:
            attempts += 1
            started = time.monotonic()
            try:
                payload = await asyncio.wait_for(
                    self._send(prompt_text, provider, model), timeout=s.request_timeout,
                )
                text, tokens = parse_payload(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = classify_error(exc)
            else:
                latency_ms = int((time.monotonic() - started) * 1000)
                if attempts > 1:
                    log.info(
                        "%s responded after %d retries in %dms", provider.provider_id, attempts - 1, latency_ms,
                    )
                else:
                    log.debug("%s responded in %dms (%d tokens)", provider.provider_id, latency_ms, tokens)
                return ProviderResponse(
                    text=text,
                    payload=payload,
                    latency_ms=latency_ms,
                    tokens_used=tokens,
                    model=str(payload.get("model") or model),
                )

            if not last_error.retryable or attempts > s.max_retries:
                log.warning(
                    "%s failed (%s) after %d attempt(s): %s",
                    provider.provider_id, last_error.reason, attempts, last_error,
                )
                raise ProviderCallError(provider.provider_id, last_error.reason, last_error, attempts)

            delay = self.backoff_delay(attempts - 1)
            log.warning(
                "%s %s, retrying in %.1fs (attempt %d/%d)",
                provider.provider_id, last_error.reason, delay, attempts + 1, s.max_retries + 1,
            )
            await self._sleep(delay)
