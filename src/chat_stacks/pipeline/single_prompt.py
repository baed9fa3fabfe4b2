"""Segmentation of a whole message set with one bulk oracle call."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, ValidationError

from chat_stacks.models import ClassificationOracle, OracleError, ask_oracle_json
from chat_stacks.parsing import OracleResponseParseError
from chat_stacks.pipeline.segmentation import (
    ConversationState,
    SegmentationError,
    SegmentationResult,
    summarize_content,
)
from chat_stacks.prompts import SINGLE_PROMPT_SYSTEM_PROMPT, build_single_prompt_user_prompt
from chat_stacks.schemas import Annotation, AnnotationMethod, Message, SpeechAct

logger = logging.getLogger(__name__)

TOKENS_PER_MESSAGE = 150
MIN_BULK_TOKENS = 4000
MAX_BULK_TOKENS = 64000


class _StackGroup(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    summary: str | None = None
    message_ids: list[str] | None = None


class _SinglePromptPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stacks: list[_StackGroup] | None = None


def bulk_max_tokens(message_count: int) -> int:
    """Output budget for the bulk call, scaled by message count."""

    return max(MIN_BULK_TOKENS, min(MAX_BULK_TOKENS, TOKENS_PER_MESSAGE * message_count))


def _state_for(conversations: dict[str, ConversationState], conversation_id: str) -> ConversationState:
    state = conversations.get(conversation_id)
    if state is None:
        state = ConversationState(conversation_id=conversation_id)
        conversations[conversation_id] = state
    return state


async def segment_messages_single_prompt(
    messages: Sequence[Message],
    oracle: ClassificationOracle,
    *,
    timeout_ms: int = 300_000,
) -> SegmentationResult:
    """Ask the oracle to group all messages at once, then build segments from its stacks.

    Each returned stack becomes one segment per conversation it touches. Unknown ids
    are ignored and a message listed twice stays in its first stack. Messages the
    oracle leaves out, or every message when the call fails, get a segment of their own.
    """

    seen_ids: set[str] = set()
    for message in messages:
        if message.id in seen_ids:
            raise SegmentationError(f"Duplicate message id {message.id!r}.")
        seen_ids.add(message.id)

    ordered = sorted(messages, key=lambda item: item.created_at)
    by_id = {message.id: message for message in ordered}
    conversations: dict[str, ConversationState] = {}
    placed: dict[str, Annotation] = {}
    errors: list[dict] = []

    groups: list[_StackGroup] = []
    if ordered:
        try:
            payload = await ask_oracle_json(
                oracle,
                system_prompt=SINGLE_PROMPT_SYSTEM_PROMPT,
                user_prompt=build_single_prompt_user_prompt(ordered),
                max_tokens=bulk_max_tokens(len(ordered)),
                timeout_ms=timeout_ms,
            )
            groups = _SinglePromptPayload.model_validate(payload).stacks or []
        except (OracleError, OracleResponseParseError, ValidationError) as exc:
            logger.warning("Single-prompt grouping failed, every message stands alone: %s", exc)
            errors.append(
                {
                    "stage": "single_prompt",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            )

    for group in groups:
        member_ids = dict.fromkeys(
            message_id
            for message_id in group.message_ids or []
            if message_id in by_id and message_id not in placed
        )
        members = sorted((by_id[message_id] for message_id in member_ids), key=lambda item: item.created_at)
        by_conversation: dict[str, list[Message]] = {}
        for message in members:
            by_conversation.setdefault(message.conversation_id, []).append(message)

        title = (group.title or "").strip()
        summary = (group.summary or "").strip()
        for conversation_id, conversation_messages in by_conversation.items():
            state = _state_for(conversations, conversation_id)
            segment = state.create_segment(conversation_messages[0])
            segment.title = title
            if summary:
                segment.summary = summary
            for position, message in enumerate(conversation_messages):
                annotation = Annotation(
                    message_id=message.id,
                    conversation_id=conversation_id,
                    attaches_to=conversation_messages[position - 1].id if position else None,
                    segment_id=segment.id,
                    role=SpeechAct.INITIATES if position == 0 else SpeechAct.DEVELOPS,
                    confidence=1.0,
                    method=AnnotationMethod.ORACLE,
                    reasoning=f"Grouped into stack: {title or 'Untitled'}",
                    annotated_at=message.created_at,
                )
                placed[message.id] = annotation

    omitted = 0
    for message in ordered:
        if message.id in placed:
            continue
        omitted += 1
        state = _state_for(conversations, message.conversation_id)
        segment = state.create_segment(message)
        segment.title = summarize_content(message.content)
        placed[message.id] = Annotation(
            message_id=message.id,
            conversation_id=message.conversation_id,
            attaches_to=None,
            segment_id=segment.id,
            role=SpeechAct.INITIATES,
            confidence=0.0,
            method=AnnotationMethod.ORACLE,
            reasoning="Not assigned to any stack",
            annotated_at=message.created_at,
        )

    annotations: list[Annotation] = []
    for message in ordered:
        annotation = placed[message.id]
        conversations[message.conversation_id].apply(message, annotation)
        annotations.append(annotation)

    if omitted and not errors:
        logger.info("Oracle left %d messages ungrouped; each got its own segment.", omitted)
    result = SegmentationResult(conversations=conversations, annotations=annotations, errors=errors)
    logger.info(
        "Single-prompt segmentation: %d messages into %d segments.",
        len(ordered),
        len(result.segments),
    )
    return result
