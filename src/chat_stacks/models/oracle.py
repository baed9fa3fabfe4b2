"""Classification oracle contract and call helper."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from chat_stacks.parsing import parse_json_object

logger = logging.getLogger(__name__)


class OracleError(RuntimeError):
    """Raised when an oracle call fails or times out."""


class ClassificationOracle(Protocol):
    """Protocol for text-completion services used as a classification oracle."""

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        timeout_ms: int,
    ) -> str:
        """Return raw completion text for the given prompts."""


async def ask_oracle(
    oracle: ClassificationOracle,
    *,
    system_prompt: str,
    user_prompt: str,
    max_tokens: int,
    timeout_ms: int,
) -> str:
    """Call the oracle under a hard timeout, normalizing every failure to OracleError."""

    try:
        return await asyncio.wait_for(
            oracle.complete(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                max_tokens=max_tokens,
                timeout_ms=timeout_ms,
            ),
            timeout=timeout_ms / 1000,
        )
    except TimeoutError as exc:
        raise OracleError(f"Oracle call timed out after {timeout_ms} ms.") from exc
    except OracleError:
        raise
    except Exception as exc:
        raise OracleError(f"Oracle call failed: {exc}") from exc


async def ask_oracle_json(
    oracle: ClassificationOracle,
    *,
    system_prompt: str,
    user_prompt: str,
    max_tokens: int,
    timeout_ms: int,
) -> dict[str, Any]:
    """Call the oracle and decode the JSON object in its reply.

    Raises OracleError for transport failures and OracleResponseParseError for
    replies that cannot be repaired into a JSON object.
    """

    text = await ask_oracle(
        oracle,
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        max_tokens=max_tokens,
        timeout_ms=timeout_ms,
    )
    logger.debug("Oracle reply (%d chars): %.200s", len(text), text)
    return parse_json_object(text)
