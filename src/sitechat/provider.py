from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from sitechat.models import ProviderEvent, Usage
from sitechat.tool import Tool


@runtime_checkable
class LLMProvider(Protocol):
    name: str

    def stream_step(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> AsyncIterator[ProviderEvent]:
        """Stream one model call.

        Yields ``text-delta`` events as they arrive, then one ``tool-call`` event
        per requested tool, then a single ``finish`` event carrying the
        normalized finish reason and the call's usage.
        """
        ...

    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> tuple[str, Usage]:
        """Non-streaming message creation (used for chat summaries)."""
        ...

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        """Convert Tool protocol objects to the internal tool schema."""
        ...


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from sitechat.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from sitechat.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
