from typing import Protocol, runtime_checkable

SUPPORTED_PROVIDERS = ("anthropic",)


@runtime_checkable
class SummaryProvider(Protocol):
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        """Single non-streaming completion; returns the concatenated text blocks."""
        ...


def create_provider(provider_name: str, api_key: str) -> SummaryProvider:
    name = provider_name.strip().lower()
    if name == "anthropic":
        from conversation_history.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    supported = ", ".join(repr(p) for p in SUPPORTED_PROVIDERS)
    raise ValueError(f"Unknown summary provider {provider_name!r} (supported: {supported})")
