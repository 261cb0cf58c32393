"""Language-model collaborator: OpenAI and Anthropic providers behind one client.

The client owns the per-run call budget, the per-call timeout and the single
primary -> secondary fallback. Extractors only ever see `complete` and
`analyze_image`.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from extractors.prompts import SYSTEM_PROMPT, VISION_SYSTEM_PROMPT
from utils.error_handling import LLMBudgetExceededError, LLMError
from utils.logger import log_extraction_event

logger = logging.getLogger(__name__)


class OpenAIProvider:
    """Chat-completions provider."""

    name = "openai"

    def __init__(self, config: Dict[str, Any]) -> None:
        self._client = AsyncOpenAI(api_key=config.get("api_key"))
        self.model = config.get("model", "gpt-4o-mini")
        self.vision_model = config.get("vision_model", "gpt-4o")

    async def complete(
        self, prompt: str, *, max_tokens: int, temperature: float, system_prompt: Optional[str]
    ) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt or SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return response.choices[0].message.content or ""

    async def analyze_image(self, image: bytes, prompt: str, *, max_tokens: int) -> str:
        encoded = base64.b64encode(image).decode("ascii")
        response = await self._client.chat.completions.create(
            model=self.vision_model,
            messages=[
                {"role": "system", "content": VISION_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/jpeg;base64,{encoded}", "detail": "high"},
                        },
                    ],
                },
            ],
            max_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""


class AnthropicProvider:
    """Messages-API provider."""

    name = "anthropic"

    def __init__(self, config: Dict[str, Any]) -> None:
        self._client = AsyncAnthropic(api_key=config.get("api_key"))
        self.model = config.get("model", "claude-sonnet-4-5")

    @staticmethod
    def _text(response: Any) -> str:
        return "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "text") == "text"
        )

    async def complete(
        self, prompt: str, *, max_tokens: int, temperature: float, system_prompt: Optional[str]
    ) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt or SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        return self._text(response)

    async def analyze_image(self, image: bytes, prompt: str, *, max_tokens: int) -> str:
        encoded = base64.standard_b64encode(image).decode("utf-8")
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            system=VISION_SYSTEM_PROMPT,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": encoded}},
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
        )
        return self._text(response)


PROVIDERS = {
    OpenAIProvider.name: OpenAIProvider,
    AnthropicProvider.name: AnthropicProvider,
}


class LLMClient:
    """Primary provider with a one-shot fallback, a timeout and a call budget."""

    def __init__(
        self,
        primary: Any,
        fallback: Optional[Any] = None,
        *,
        timeout_seconds: float = 45.0,
        max_calls_per_run: int = 50,
    ) -> None:
        if fallback is primary:
            fallback = None
        self.primary = primary
        self.fallback = fallback
        self.timeout_seconds = timeout_seconds
        self.max_calls = max_calls_per_run
        self.calls_made = 0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> Optional["LLMClient"]:
        """Build providers that have an API key; None when there are none."""
        providers: Dict[str, Any] = {}
        for name, provider_cls in PROVIDERS.items():
            section = config.get(name, {}) or {}
            if not section.get("api_key"):
                continue
            try:
                providers[name] = provider_cls(section)
            except Exception as exc:  # noqa: BLE001 - SDK constructor errors vary
                logger.warning(f"Failed to initialise {name} provider: {exc}")

        if not providers:
            logger.warning("No LLM provider configured; vision and LLM healing are disabled")
            return None

        primary_name = config.get("provider", "openai")
        primary = providers.get(primary_name) or next(iter(providers.values()))
        fallback = providers.get(config.get("fallback_provider", "anthropic"))

        logger.info(
            f"LLM client initialised with primary={primary.name}, "
            f"fallback={fallback.name if fallback and fallback is not primary else 'none'}"
        )
        return cls(
            primary,
            fallback,
            timeout_seconds=config.get("timeout_seconds", 45.0),
            max_calls_per_run=config.get("max_calls_per_run", 50),
        )

    @property
    def remaining_calls(self) -> int:
        return max(0, self.max_calls - self.calls_made)

    def reset_budget(self) -> None:
        self.calls_made = 0

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int = 2000,
        temperature: float = 0.2,
        system_prompt: Optional[str] = None,
    ) -> str:
        return await self._call(
            "complete",
            lambda provider: provider.complete(
                prompt, max_tokens=max_tokens, temperature=temperature, system_prompt=system_prompt
            ),
        )

    async def analyze_image(self, image: bytes, prompt: str, *, max_tokens: int = 4000) -> str:
        return await self._call(
            "analyze_image",
            lambda provider: provider.analyze_image(image, prompt, max_tokens=max_tokens),
        )

    async def _call(self, operation: str, invoke) -> str:
        try:
            return await self._attempt(self.primary, operation, invoke)
        except LLMBudgetExceededError:
            raise
        except Exception as primary_exc:  # noqa: BLE001 - any provider failure triggers fallback
            logger.warning(f"Primary LLM ({self.primary.name}) {operation} failed: {primary_exc}")
            if self.fallback is None:
                raise LLMError(
                    f"{operation} failed: {primary_exc}", {"provider": self.primary.name}
                ) from primary_exc

        logger.info(f"Trying fallback LLM provider ({self.fallback.name})")
        try:
            return await self._attempt(self.fallback, operation, invoke)
        except LLMBudgetExceededError:
            raise
        except Exception as fallback_exc:  # noqa: BLE001
            logger.error(f"Fallback LLM ({self.fallback.name}) also failed: {fallback_exc}")
            raise LLMError(
                f"{operation} failed on both providers: {fallback_exc}",
                {"provider": self.fallback.name},
            ) from fallback_exc

    async def _attempt(self, provider: Any, operation: str, invoke) -> str:
        if self.calls_made >= self.max_calls:
            raise LLMBudgetExceededError(
                f"LLM call budget of {self.max_calls} exhausted",
                {"operation": operation},
            )
        self.calls_made += 1
        log_extraction_event(
            "llm",
            {"provider": provider.name, "operation": operation, "calls_made": self.calls_made},
            level="DEBUG",
        )
        try:
            return await asyncio.wait_for(invoke(provider), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise LLMError(
                f"{provider.name} {operation} timed out after {self.timeout_seconds}s",
                {"provider": provider.name},
            ) from exc
