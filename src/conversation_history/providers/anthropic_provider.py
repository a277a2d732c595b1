import anthropic
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

_MAX_ATTEMPTS = 5

_TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        f"Summary request failed with {type(exc).__name__ if exc else 'unknown error'}; "
        f"retry {retry_state.attempt_number}/{_MAX_ATTEMPTS} in {delay:.0f}s"
    )


class AnthropicProvider:
    """Summary provider backed by the Messages API."""

    def __init__(self, api_key: str, client: anthropic.AsyncAnthropic | None = None):
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        wait=wait_exponential(multiplier=10, min=10, max=320),
        stop=stop_after_attempt(_MAX_ATTEMPTS),
        before_sleep=_log_retry,
        reraise=True,
    )
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        response = await self._client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=messages,
        )
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                f"Summary call on {model}: {len(messages)} messages, "
                f"{usage.input_tokens:,} in / {usage.output_tokens:,} out"
            )
        if getattr(response, "stop_reason", None) == "max_tokens":
            logger.warning(f"Summary hit max_tokens={max_tokens} and may be truncated")

        return "\n".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
