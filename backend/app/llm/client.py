"""Completion clients for policy question answering.

Security: Reads API key from settings only, never hardcoded.
Provides deterministic fallback when no key present for testing.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Protocol

import httpx
from openai import AsyncOpenAI, RateLimitError

from backend.app.config import Settings
from backend.app.embeddings.breaker import ProviderQuotaExceeded, QuotaBreaker

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Sorry, the service is temporarily unavailable."


class CompletionClient(Protocol):
    """Protocol for completion client implementations."""

    async def complete(self, prompt: str) -> str:
        """Generate a completion for the prompt."""
        ...


class LocalModelError(Exception):
    """Local model endpoint failed or returned nothing usable."""

    pass


def build_policy_prompt(question: str, context: str) -> str:
    """Prompt grounding the answer in retrieved policy blocks."""
    if context:
        context_section = f"Relevant company policies:\n\n{context}"
    else:
        context_section = "No company policy matched this question."

    return (
        "You are an HR assistant answering employee questions about company policy.\n"
        "Answer only from the policies below. If they do not cover the question, say so "
        "and suggest contacting HR. Cite policy titles when you rely on them.\n\n"
        f"{context_section}\n\n"
        f"Question: {question}\n"
        "Answer:"
    )


class DeterministicStubClient:
    """Deterministic stub client for testing (no API key required)."""

    async def complete(self, prompt: str) -> str:
        """Echo the policy titles found in the prompt."""
        titles = [
            line.removeprefix("Policy: ").strip()
            for line in prompt.splitlines()
            if line.startswith("Policy: ")
        ]
        if not titles:
            return "No matching policy was found. Please contact HR for guidance."
        return (
            f"See the following policies: {', '.join(titles)}.\n\n"
            "*This is a stub response generated without LLM synthesis.*"
        )


class OpenAICompletionClient:
    """OpenAI-backed completion client."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout_sec: float = 30.0):
        """Initialize OpenAI client.

        Args:
            api_key: OpenAI API key (read from environment)
            model: Model name to use (default: gpt-4o-mini for cost efficiency)
            timeout_sec: Per-request timeout; a slow call fails over to the local model
        """
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout_sec)
        self.model = model

    async def complete(self, prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.7,
                max_tokens=1000,
            )
        except RateLimitError as e:
            raise ProviderQuotaExceeded(str(e)) from e

        text = response.choices[0].message.content or ""
        if not text.strip():
            raise ValueError("OpenAI returned empty response")
        return text


class LocalModelClient:
    """Local LLM over an Ollama-style /api/generate endpoint."""

    def __init__(
        self,
        endpoint: str = "http://localhost:11434/api/generate",
        model: str = "llama3",
        timeout_sec: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint
        self.model = model
        self.timeout_sec = timeout_sec
        self._transport = transport

    async def complete(self, prompt: str) -> str:
        body = {
            "model": self.model,
            "prompt": prompt,
            "stream": True,
            "options": {"num_predict": 256, "temperature": 0.7},
        }
        async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport) as client:
            response = await client.post(self.endpoint, json=body)

        if response.status_code != 200:
            raise LocalModelError(f"Local LLM responded with {response.status_code}")

        text = parse_streamed_response(response.text)
        if not text:
            raise LocalModelError("Failed to parse local model response")
        return text


def parse_streamed_response(raw: str) -> str:
    """Join `response`/`content` fields of newline-delimited JSON until `done`."""
    parts: list[str] = []
    for line in raw.strip().splitlines():
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        parts.append(obj.get("response") or "")
        parts.append(obj.get("content") or "")
        if obj.get("done"):
            break
    return "".join(parts)


class FallbackCompletionClient:
    """Hosted model first, local model while the quota breaker is open."""

    def __init__(
        self,
        primary: CompletionClient,
        fallback: CompletionClient,
        breaker: QuotaBreaker,
    ):
        self.primary = primary
        self.fallback = fallback
        self.breaker = breaker

    async def complete(self, prompt: str) -> str:
        if self.breaker.is_open(datetime.now(timezone.utc)):
            return await self._fallback(prompt)

        try:
            text = await self.primary.complete(prompt)
        except ProviderQuotaExceeded as e:
            self.breaker.record_quota_exhausted(datetime.now(timezone.utc))
            logger.warning(f"Completion quota exhausted, using local model until reset: {e}")
            return await self._fallback(prompt)
        except Exception as e:
            self.breaker.record_failure(datetime.now(timezone.utc))
            logger.error(f"Completion call failed: {e}")
            return await self._fallback(prompt)

        self.breaker.record_success()
        return text

    async def _fallback(self, prompt: str) -> str:
        try:
            return await self.fallback.complete(prompt)
        except Exception as e:
            logger.error(f"Local model fallback failed: {e}")
            return UNAVAILABLE_MESSAGE


def get_completion_client(settings: Settings, breaker: QuotaBreaker) -> CompletionClient:
    """Factory function to get appropriate completion client based on config.

    Returns:
        FallbackCompletionClient over OpenAI and the local model if an API key
        is configured, DeterministicStubClient otherwise
    """
    api_key = settings.openai_api_key

    if api_key and api_key.get_secret_value():
        logger.info("Using OpenAI client with local model fallback")
        return FallbackCompletionClient(
            primary=OpenAICompletionClient(
                api_key=api_key.get_secret_value(),
                model=settings.completion_model,
                timeout_sec=settings.completion_timeout_ms / 1000.0,
            ),
            fallback=LocalModelClient(
                endpoint=settings.local_llm_endpoint,
                model=settings.local_model_name,
                timeout_sec=settings.completion_timeout_ms / 1000.0,
            ),
            breaker=breaker,
        )
    else:
        logger.warning("No OpenAI API key configured, using deterministic stub client")
        return DeterministicStubClient()
