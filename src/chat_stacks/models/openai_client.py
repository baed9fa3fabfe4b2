"""OpenAI-compatible oracle client used by the CLI."""

from __future__ import annotations

from openai import APIError, APITimeoutError, AsyncOpenAI, BadRequestError, RateLimitError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from chat_stacks.models.oracle import OracleError


class OpenAIOracleClient:
    """Text-completion oracle backed by OpenAI chat completions."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.0,
        max_retries: int = 4,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url or None)
        self._model = model
        self._temperature = temperature
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._request_count = 0
        self._retry_count = 0
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._total_tokens = 0

    def _is_retryable_openai_error(self, exc: BaseException) -> bool:
        """Return whether an OpenAI exception should trigger retry/backoff."""

        if isinstance(exc, (RateLimitError, APITimeoutError)):
            return True
        if isinstance(exc, BadRequestError):
            return False
        return isinstance(exc, APIError)

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        timeout_ms: int,
    ) -> str:
        """Create a chat completion with retry/backoff and return its text."""

        response = None
        attempt_count = 0
        wait_strategy = wait_exponential(
            multiplier=self._backoff_seconds,
            min=self._backoff_seconds,
            max=max(self._backoff_seconds, self._backoff_seconds * 8),
        ) + wait_random(0.0, 0.25)
        retryer = AsyncRetrying(
            retry=retry_if_exception(self._is_retryable_openai_error),
            wait=wait_strategy,
            stop=stop_after_attempt(max(1, self._max_retries)),
            reraise=True,
        )

        async for attempt in retryer:
            with attempt:
                attempt_count += 1
                response = await self._client.chat.completions.create(
                    model=self._model,
                    temperature=self._temperature,
                    max_tokens=max_tokens,
                    timeout=timeout_ms / 1000,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                )

        if response is None:
            raise OracleError("OpenAI response missing after retries.")

        usage = getattr(response, "usage", None)
        self._request_count += 1
        self._retry_count += max(0, attempt_count - 1)
        self._prompt_tokens += int(getattr(usage, "prompt_tokens", 0) or 0)
        self._completion_tokens += int(getattr(usage, "completion_tokens", 0) or 0)
        self._total_tokens += int(getattr(usage, "total_tokens", 0) or 0)

        content = response.choices[0].message.content
        if not content:
            raise OracleError("Model returned empty content.")
        return content

    def metrics_snapshot(self) -> dict:
        """Return cumulative request/usage metrics for this client instance."""

        return {
            "request_count": self._request_count,
            "retry_count": self._retry_count,
            "prompt_tokens": self._prompt_tokens,
            "completion_tokens": self._completion_tokens,
            "total_tokens": self._total_tokens,
            "model": self._model,
        }
