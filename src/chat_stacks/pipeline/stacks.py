"""Greedy, order-dependent assignment of validated units to topical stacks."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from chat_stacks.models import ClassificationOracle, OracleError, ask_oracle_json
from chat_stacks.parsing import OracleResponseParseError
from chat_stacks.prompts import STACK_ASSIGNMENT_SYSTEM_PROMPT, build_stack_assignment_user_prompt
from chat_stacks.schemas import Stack, Unit

logger = logging.getLogger(__name__)

DEFAULT_STACK_TITLE = "Untitled"
PARSE_ERROR_STACK_TITLE = "Parse Error Stack"
UNCLASSIFIED_STACK_TITLE = "Unclassified Stack"


class _StackDecisionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str | None = None
    stack_index: int | None = None
    title: str | None = None
    summary: str | None = None


@dataclass(frozen=True)
class StackDecision:
    """Record of where one unit went."""

    unit_index: int
    stack_id: str
    action: Literal["join", "create", "fallback"]
    reason: str = ""


@dataclass
class StackAssignmentResult:
    """Output of `assign_stacks`."""

    stacks: list[Stack]
    decisions: list[StackDecision] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


def _new_stack(unit: Unit, *, title: str, summary: str) -> Stack:
    return Stack(
        id=str(uuid.uuid4()),
        title=title,
        summary=summary,
        messages=sorted(unit.messages, key=lambda item: item.created_at),
        unit_indices=[unit.index],
    )


async def assign_unit_to_stack(
    unit: Unit,
    stacks: list[Stack],
    oracle: ClassificationOracle,
    *,
    max_tokens: int = 300,
    timeout_ms: int = 120_000,
    errors: list[dict] | None = None,
) -> StackDecision:
    """Join `unit` to an existing stack or create one. Mutates `stacks` in place."""

    try:
        payload = await ask_oracle_json(
            oracle,
            system_prompt=STACK_ASSIGNMENT_SYSTEM_PROMPT,
            user_prompt=build_stack_assignment_user_prompt(unit=unit, stacks=stacks),
            max_tokens=max_tokens,
            timeout_ms=timeout_ms,
        )
        parsed = _StackDecisionPayload.model_validate(payload)
    except (OracleResponseParseError, ValidationError, OracleError) as exc:
        title = UNCLASSIFIED_STACK_TITLE if isinstance(exc, OracleError) else PARSE_ERROR_STACK_TITLE
        logger.warning("Stack assignment failed for unit %d: %s", unit.index, exc)
        if errors is not None:
            errors.append(
                {
                    "stage": "stacks",
                    "unit_index": unit.index,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            )
        stack = _new_stack(unit, title=title, summary=f"Fallback: {type(exc).__name__}")
        stacks.append(stack)
        return StackDecision(unit_index=unit.index, stack_id=stack.id, action="fallback", reason=str(exc))

    action = (parsed.action or "create").strip().lower()
    title = (parsed.title or "").strip()
    summary = (parsed.summary or "").strip()
    if action == "join" and parsed.stack_index is not None and 1 <= parsed.stack_index <= len(stacks):
        stack = stacks[parsed.stack_index - 1]
        stack.messages = sorted([*stack.messages, *unit.messages], key=lambda item: item.created_at)
        stack.unit_indices.append(unit.index)
        if title:
            stack.title = title
        if summary:
            stack.summary = summary
        logger.debug("Unit %d joined stack %d.", unit.index, parsed.stack_index)
        return StackDecision(unit_index=unit.index, stack_id=stack.id, action="join")

    stack = _new_stack(unit, title=title or DEFAULT_STACK_TITLE, summary=summary)
    stacks.append(stack)
    logger.debug("Unit %d created stack %d.", unit.index, len(stacks))
    return StackDecision(unit_index=unit.index, stack_id=stack.id, action="create")


async def assign_stacks(
    units: Sequence[Unit],
    oracle: ClassificationOracle,
    *,
    max_tokens: int = 300,
    timeout_ms: int = 120_000,
    call_delay_seconds: float = 0.05,
    progress_callback: Callable[[int, int], None] | None = None,
) -> StackAssignmentResult:
    """Assign units to stacks one at a time, in order, without revisiting decisions."""

    stacks: list[Stack] = []
    decisions: list[StackDecision] = []
    errors: list[dict] = []
    total = len(units)

    for position, unit in enumerate(units):
        decisions.append(
            await assign_unit_to_stack(
                unit,
                stacks,
                oracle,
                max_tokens=max_tokens,
                timeout_ms=timeout_ms,
                errors=errors,
            )
        )
        if progress_callback is not None:
            progress_callback(position + 1, total)
        if call_delay_seconds > 0 and position < total - 1:
            await asyncio.sleep(call_delay_seconds)

    logger.info("Assigned %d units to %d stacks (%d errors).", total, len(stacks), len(errors))
    return StackAssignmentResult(stacks=stacks, decisions=decisions, errors=errors)
