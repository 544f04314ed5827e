"""Language-model client used by the loop.

Supports two providers:
- vLLM (local OpenAI-compatible API)
- OpenRouter (cloud API with many models)

The loop only depends on the ``LLMClient`` protocol; ``PydanticAIClient`` is
the production implementation on top of pydantic-ai.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from pydantic_ai import Agent
from pydantic_ai.messages import ModelMessage, ModelRequest, ModelResponse, TextPart, UserPromptPart
from pydantic_ai.models import Model
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.models.openrouter import OpenRouterModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.providers.openrouter import OpenRouterProvider

from agentloop.config import (
    OPENROUTER_API_KEY,
    PROVIDER_DEFAULT,
    VLLM_API_KEY,
    VLLM_BASE_URL,
    get_model_name,
)
from agentloop.core.state import HistoryMessage

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    text: str
    usage: dict[str, int] = field(default_factory=dict)


class LLMClient(Protocol):
    model_name: str

    async def invoke(
        self,
        prompt: str,
        history: Sequence[HistoryMessage],
        *,
        timeout: float | None = None,
        stop_sequences: Sequence[str] = (),
    ) -> LLMResponse: ...


def build_vllm_model(
    model_name: str | None = None,
    base_url: str | None = None,
    api_key: str | None = None,
) -> OpenAIChatModel:
    """Build vLLM model instance (OpenAI-compatible local API).

    Args:
        model_name: Model identifier (e.g., 'openai/gpt-oss-120b')
        base_url: vLLM API base URL (default: http://localhost:8000/v1)
        api_key: API key (usually not needed for vLLM)

    Returns:
        Configured OpenAIChatModel instance for vLLM

    """
    provider = OpenAIProvider(
        base_url=base_url or VLLM_BASE_URL,
        api_key=api_key or VLLM_API_KEY,
    )
    return OpenAIChatModel(
        model_name=model_name or get_model_name("vllm"),
        provider=provider,
    )


def build_openrouter_model(
    model_name: str | None = None,
    api_key: str | None = None,
) -> OpenRouterModel:
    """Build OpenRouter model instance."""
    return OpenRouterModel(
        model_name=model_name or get_model_name("openrouter"),
        provider=OpenRouterProvider(api_key=api_key or OPENROUTER_API_KEY),
    )


def resolve_provider(provider: str | None = None, api_key: str | None = None) -> str:
    """Pick the provider, falling back to vLLM when OpenRouter has no key."""
    provider = provider or PROVIDER_DEFAULT
    if provider == "openrouter" and not (api_key or OPENROUTER_API_KEY):
        logger.warning("OpenRouter requested but OPENROUTER_API_KEY is not set; using vLLM")
        provider = "vllm"
    return provider


def build_model(
    model_name: str | None = None,
    api_key: str | None = None,
    provider: str | None = None,
) -> OpenAIChatModel | OpenRouterModel:
    """Build model instance based on provider ('vllm' or 'openrouter')."""
    provider = resolve_provider(provider, api_key)
    if provider == "openrouter":
        logger.info("Building OpenRouter model: %s", model_name or get_model_name("openrouter"))
        return build_openrouter_model(model_name, api_key)
    logger.info("Building vLLM model: %s", model_name or get_model_name("vllm"))
    return build_vllm_model(model_name)


def to_model_messages(history: Sequence[HistoryMessage]) -> tuple[str, list[ModelMessage]]:
    """Split loop history into (system instructions, pydantic-ai messages)."""
    system_parts = []
    messages: list[ModelMessage] = []
    for message in history:
        if message.role == "system":
            system_parts.append(message.content)
        elif message.role == "assistant":
            messages.append(ModelResponse(parts=[TextPart(content=message.content)]))
        else:
            messages.append(ModelRequest(parts=[UserPromptPart(content=message.content)]))
    return "\n\n".join(system_parts), messages


class PydanticAIClient:
    """LLMClient backed by a pydantic-ai model, without tools.

    Usage:
        client = PydanticAIClient(build_model(provider="vllm"))
        response = await client.invoke("Hi", history, timeout=60)
        print(response.text, response.usage)
    """

    def __init__(
        self,
        model: Model | None = None,
        model_name: str | None = None,
        provider: str | None = None,
    ):
        self.provider = resolve_provider(provider)
        self.model_name = model_name or get_model_name(self.provider)
        self.model = model if model is not None else build_model(self.model_name, provider=self.provider)

    def switch_model(self, model_name: str) -> None:
        """Rebuild the model for the configured provider."""
        logger.info("Switching model %s -> %s", self.model_name, model_name)
        self.model = build_model(model_name, provider=self.provider)
        self.model_name = model_name

    async def invoke(
        self,
        prompt: str,
        history: Sequence[HistoryMessage],
        *,
        timeout: float | None = None,
        stop_sequences: Sequence[str] = (),
    ) -> LLMResponse:
        instructions, messages = to_model_messages(history)
        agent = Agent(self.model, instructions=instructions or None, output_type=str)

        settings: dict[str, Any] = {}
        if timeout:
            settings["timeout"] = timeout
        if stop_sequences:
            settings["stop_sequences"] = list(stop_sequences)

        run = agent.run(prompt, message_history=messages or None, model_settings=settings or None)
        result = await (asyncio.wait_for(run, timeout) if timeout else run)

        usage = result.usage()
        return LLMResponse(
            text=result.output,
            usage={
                "input_tokens": usage.input_tokens or 0,
                "output_tokens": usage.output_tokens or 0,
            },
        )
