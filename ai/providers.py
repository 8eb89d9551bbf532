"""Completion providers for generative selection.

A provider is a thin HTTP client that turns a (system, user) prompt pair into
raw completion text. Prompt building and output validation live in
``ai.selector``.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from be.config import SelectorSettings
from be.errors import ProviderError

logger = logging.getLogger(__name__)


class CompletionProvider(Protocol):
    """Text-generation capability."""

    @property
    def name(self) -> str:
        ...

    async def complete(self, system: str, user: str, *, timeout: float) -> str:
        ...


class OpenRouterProvider:
    """OpenRouter chat completions client for a single model."""

    def __init__(
        self,
        model: str,
        config: SelectorSettings,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.config = config
        self._client = client

    @property
    def name(self) -> str:
        return self.model

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.config.site_url,
            "X-Title": self.config.app_name,
        }

    async def _post(self, client: httpx.AsyncClient, body: dict[str, Any], timeout: float) -> dict[str, Any]:
        response = await client.post(
            f"{self.config.base_url.rstrip('/')}/chat/completions",
            headers=self._headers(),
            json=body,
            timeout=timeout,
        )
        response.raise_for_status()
        return response.json()

    async def complete(self, system: str, user: str, *, timeout: float) -> str:
        """Request a JSON completion.

        Args:
            system: System prompt
            user: User prompt
            timeout: Seconds allowed for this request

        Returns:
            Message content of the first choice

        Raises:
            ProviderError: On HTTP errors, timeouts, or empty content
        """
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
        }

        try:
            if self._client is not None:
                data = await self._post(self._client, body, timeout)
            else:
                async with httpx.AsyncClient() as client:
                    data = await self._post(client, body, timeout)
        except httpx.TimeoutException as e:
            raise ProviderError(self.model, f"timed out after {timeout:.1f}s") from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.model, f"HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(self.model, str(e) or type(e).__name__) from e

        usage = data.get("usage") or {}
        logger.info(
            f"LLM usage: {self.model} | "
            f"{usage.get('prompt_tokens', 0)}+{usage.get('completion_tokens', 0)} tokens"
        )

        choices = data.get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else None
        if not content or not str(content).strip():
            raise ProviderError(self.model, "empty completion")
        return str(content)


def build_provider_chain(
    config: SelectorSettings,
    client: httpx.AsyncClient | None = None,
) -> list[CompletionProvider]:
    """One provider per configured model, in order; empty without an API key."""
    if not config.api_key:
        logger.info("No selector API key configured; generative selection disabled")
        return []
    chain: list[CompletionProvider] = [OpenRouterProvider(model, config, client) for model in config.models]
    logger.info(f"Generative provider chain: {' -> '.join(p.name for p in chain)}")
    return chain
