"""Per-message online segmentation into open-ended conversation segments."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from chat_stacks.config import StrategyConfig
from chat_stacks.models import ClassificationOracle, OracleError, ask_oracle_json
from chat_stacks.parsing import OracleResponseParseError
from chat_stacks.prompts import (
    NEW_SEGMENT_LABEL,
    PREVIOUS_TOPIC_SYSTEM_PROMPT,
    SEGMENTATION_SYSTEM_PROMPT,
    build_hybrid_prompt,
    build_previous_centric_prompt,
    build_segment_centric_prompt,
    segment_label,
    segment_label_index,
)
from chat_stacks.schemas import (
    Annotation,
    AnnotationMethod,
    Message,
    Segment,
    SegmentStatus,
    SpeechAct,
)

logger = logging.getLogger(__name__)

SUMMARY_PREVIEW_CHARS = 50
INVALID_REFERENCE_ATTACH_PENALTY = 0.7
INVALID_REFERENCE_NEW_PENALTY = 0.5
DEFAULT_CONFIDENCE = 0.5

_MEMBER_GROUP_MENTION = re.compile(r"<!member_group:[^|>]*\|([^>]*)>")


class InvalidReferenceError(LookupError):
    """Raised when an oracle names a segment label or id that does not exist."""


class SegmentationError(ValueError):
    """Raised when segmentation input or configuration is invalid."""


def summarize_content(content: str) -> str:
    """Return the short preview used as a new segment's summary."""

    text = _MEMBER_GROUP_MENTION.sub(r"@\1", content or "").strip()
    if len(text) > SUMMARY_PREVIEW_CHARS:
        return text[:SUMMARY_PREVIEW_CHARS] + "..."
    return text


@dataclass
class ConversationState:
    """Segments and processed history for one conversation, indexed by id."""

    conversation_id: str
    active_segments: list[Segment] = field(default_factory=list)
    history: list[Message] = field(default_factory=list)
    segment_by_id: dict[str, Segment] = field(default_factory=dict, repr=False)
    segment_id_by_message: dict[str, str] = field(default_factory=dict, repr=False)
    message_by_id: dict[str, Message] = field(default_factory=dict, repr=False)

    def find_segment(self, segment_id: str) -> Segment | None:
        return self.segment_by_id.get(segment_id)

    def segment_for_message(self, message_id: str) -> Segment | None:
        segment_id = self.segment_id_by_message.get(message_id)
        return self.segment_by_id.get(segment_id) if segment_id else None

    def find_message(self, message_id: str) -> Message | None:
        return self.message_by_id.get(message_id)

    def label_for(self, segment: Segment | None) -> str | None:
        if segment is None:
            return None
        for index, candidate in enumerate(self.active_segments):
            if candidate.id == segment.id:
                return segment_label(index)
        return None

    def resolve_label(self, target: str) -> Segment:
        """Map a letter label or a full segment id to a segment."""

        text = (target or "").strip()
        segment = self.segment_by_id.get(text)
        if segment is not None:
            return segment
        index = segment_label_index(text)
        if index is not None and 0 <= index < len(self.active_segments):
            return self.active_segments[index]
        raise InvalidReferenceError(f"Unknown segment reference {target!r}.")

    def recent_messages(self, window: int) -> list[Message]:
        return self.history[-window:]

    def create_segment(self, message: Message) -> Segment:
        segment = Segment(
            id=str(uuid.uuid4()),
            conversation_id=self.conversation_id,
            summary=summarize_content(message.content),
            created_at=message.created_at,
            last_activity_at=message.created_at,
        )
        self.active_segments.append(segment)
        self.segment_by_id[segment.id] = segment
        return segment

    def apply(self, message: Message, annotation: Annotation) -> None:
        """Record a message and its annotation. Re-applying the same message is a no-op."""

        if message.id not in self.message_by_id:
            self.history.append(message)
            self.message_by_id[message.id] = message

        segment = self.segment_by_id[annotation.segment_id]
        if message.id in segment.message_ids:
            return
        segment.message_ids.append(message.id)
        segment.messages.append(message)
        self.segment_id_by_message[message.id] = segment.id
        if message.created_at > segment.last_activity_at:
            segment.last_activity_at = message.created_at
        if message.author not in segment.participants:
            segment.participants.append(message.author)
        if annotation.role == SpeechAct.RESOLVES:
            segment.status = SegmentStatus.RESOLVED


@dataclass(frozen=True)
class ClassificationDecision:
    """Normalized oracle reply for one message."""

    target: str | None
    continues_previous: bool | None
    role: SpeechAct
    confidence: float
    reasoning: str = ""
    attaches_to: str | None = None


@dataclass
class SegmentationResult:
    """Output of a segmentation run."""

    conversations: dict[str, ConversationState]
    annotations: list[Annotation]
    errors: list[dict] = field(default_factory=list)

    @property
    def segments(self) -> list[Segment]:
        return [
            segment
            for state in self.conversations.values()
            for segment in state.active_segments
        ]

    def annotation_for(self, message_id: str) -> Annotation | None:
        for annotation in self.annotations:
            if annotation.message_id == message_id:
                return annotation
        return None


def _coerce_role(raw: Any) -> str | None:
    if isinstance(raw, dict):
        for key in ("type", "role", "act"):
            if isinstance(raw.get(key), str):
                return raw[key]
        return None
    if isinstance(raw, str):
        return raw
    return None


def _coerce_confidence(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if value != value:
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, value))


def normalize_classification(
    payload: dict[str, Any],
    *,
    default_role: SpeechAct | None = None,
) -> ClassificationDecision:
    """Turn a loosely shaped oracle reply into a `ClassificationDecision`.

    The target may arrive as `conversation` or `segment`; the role as `role`,
    `speech_act` or `speechAct`, either a string or an object holding it under
    `type`, `role` or `act`. Confidence is clamped to [0, 1].
    """

    target = payload.get("conversation")
    if target is None:
        target = payload.get("segment")
    if target is not None and not isinstance(target, str):
        target = str(target)

    continues = payload.get("continues_previous", payload.get("continuesPrevious"))
    if not isinstance(continues, bool):
        continues = None

    if not target and continues is None:
        raise OracleResponseParseError(f"Classification is missing a target: {payload!r}")

    raw_role = None
    for key in ("role", "speech_act", "speechAct"):
        if key in payload:
            raw_role = _coerce_role(payload[key])
            break
    if raw_role is None:
        if default_role is None:
            raise OracleResponseParseError(f"Classification is missing a role: {payload!r}")
        role = default_role
    else:
        try:
            role = SpeechAct(raw_role.strip().upper())
        except ValueError as exc:
            raise OracleResponseParseError(f"Unknown speech act {raw_role!r}.") from exc

    attaches_to = payload.get("attachesTo", payload.get("attaches_to"))
    if not isinstance(attaches_to, str) or attaches_to.strip().lower() in {"", "null", "none"}:
        attaches_to = None

    return ClassificationDecision(
        target=target or None,
        continues_previous=continues,
        role=role,
        confidence=_coerce_confidence(payload.get("confidence", DEFAULT_CONFIDENCE)),
        reasoning=str(payload.get("reasoning") or ""),
        attaches_to=attaches_to,
    )


def check_structural_signals(state: ConversationState, message: Message) -> Annotation | None:
    """Annotate emoji reactions without consulting the oracle."""

    if not message.is_reaction or not message.reacted_to_id:
        return None
    segment = state.segment_for_message(message.reacted_to_id) or state.create_segment(message)
    return Annotation(
        message_id=message.id,
        conversation_id=message.conversation_id,
        attaches_to=message.reacted_to_id,
        segment_id=segment.id,
        role=SpeechAct.REACTS,
        confidence=1.0,
        method=AnnotationMethod.STRUCTURAL,
        reasoning="Emoji reaction",
        annotated_at=message.created_at,
    )


def find_reference(
    state: ConversationState,
    message: Message,
    recent_messages: Sequence[Message],
) -> tuple[Message | None, Segment | None]:
    """Return the message and segment a new message most plausibly continues.

    Thread replies reference their thread root, found through the id index over
    the whole conversation. Other messages reference the immediately preceding one.
    """

    if message.thread_id:
        root = state.find_message(message.thread_id)
        if root is not None:
            return root, state.segment_for_message(root.id)
    if not recent_messages:
        return None, None
    previous = recent_messages[-1]
    return previous, state.segment_for_message(previous.id)


def _resolve_attachment(
    state: ConversationState,
    segment: Segment,
    proposed: str | None,
) -> str | None:
    if proposed:
        if proposed in state.message_by_id:
            return proposed
        for member_id in reversed(segment.message_ids):
            if member_id.startswith(proposed):
                return member_id
    return segment.message_ids[-1] if segment.message_ids else None


def _annotation(
    message: Message,
    segment: Segment,
    *,
    role: SpeechAct,
    confidence: float,
    reasoning: str,
    attaches_to: str | None,
) -> Annotation:
    return Annotation(
        message_id=message.id,
        conversation_id=message.conversation_id,
        attaches_to=attaches_to,
        segment_id=segment.id,
        role=role,
        confidence=confidence,
        method=AnnotationMethod.ORACLE,
        reasoning=reasoning,
        annotated_at=message.created_at,
    )


def _build_prompt(
    state: ConversationState,
    message: Message,
    *,
    config: StrategyConfig,
    recent: list[Message],
    reference_message: Message | None,
    reference_segment: Segment | None,
) -> tuple[str, str]:
    previous_message = recent[-1] if recent else None
    previous_segment = state.segment_for_message(previous_message.id) if previous_message else None

    if config.strategy == "previous-centric":
        return PREVIOUS_TOPIC_SYSTEM_PROMPT, build_previous_centric_prompt(
            message=message,
            reference_message=reference_message,
            reference_segment=reference_segment,
            reference_label=state.label_for(reference_segment),
            recent_messages=recent,
            is_thread_reply=bool(message.thread_id),
        )
    if config.strategy == "hybrid":
        return SEGMENTATION_SYSTEM_PROMPT, build_hybrid_prompt(
            message=message,
            segments=state.active_segments,
            recent_messages=recent,
            previous_message=previous_message,
            reference_segment=reference_segment,
            previous_segment_label=state.label_for(previous_segment),
            staleness_threshold_minutes=config.staleness_threshold_minutes,
            max_segments_to_show=config.max_segments_to_show,
            prefer_previous_message=config.prefer_previous_message,
        )
    return SEGMENTATION_SYSTEM_PROMPT, build_segment_centric_prompt(
        message=message,
        segments=state.active_segments,
        recent_messages=recent,
        previous_message=previous_message,
        previous_segment_label=state.label_for(previous_segment),
    )


def resolve_decision(
    state: ConversationState,
    message: Message,
    decision: ClassificationDecision,
    *,
    strategy: str,
    reference_message: Message | None,
    reference_segment: Segment | None,
) -> Annotation:
    """Turn a normalized decision into an annotation, creating a segment when needed."""

    if strategy == "previous-centric":
        continues = decision.continues_previous
        if continues is None:
            continues = (decision.target or "").strip().upper() != NEW_SEGMENT_LABEL
        if continues and reference_segment is not None:
            return _annotation(
                message,
                reference_segment,
                role=decision.role,
                confidence=decision.confidence,
                reasoning=decision.reasoning,
                attaches_to=reference_message.id if reference_message is not None else None,
            )
        return _annotation(
            message,
            state.create_segment(message),
            role=decision.role,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            attaches_to=None,
        )

    target = (decision.target or NEW_SEGMENT_LABEL).strip()
    if target.upper() == NEW_SEGMENT_LABEL:
        return _annotation(
            message,
            state.create_segment(message),
            role=decision.role,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            attaches_to=None,
        )

    try:
        segment = state.resolve_label(target)
    except InvalidReferenceError:
        logger.debug("Message %s named unknown segment %r.", message.id, target)
        if decision.role != SpeechAct.INITIATES and state.active_segments:
            segment = state.active_segments[-1]
            return _annotation(
                message,
                segment,
                role=decision.role,
                confidence=decision.confidence * INVALID_REFERENCE_ATTACH_PENALTY,
                reasoning=(
                    f"{decision.reasoning} (invalid segment {target!r}, attached to most "
                    "recent segment)"
                ).strip(),
                attaches_to=_resolve_attachment(state, segment, None),
            )
        return _annotation(
            message,
            state.create_segment(message),
            role=decision.role,
            confidence=decision.confidence * INVALID_REFERENCE_NEW_PENALTY,
            reasoning=f"{decision.reasoning} (invalid segment {target!r}, started new segment)".strip(),
            attaches_to=None,
        )

    return _annotation(
        message,
        segment,
        role=decision.role,
        confidence=decision.confidence,
        reasoning=decision.reasoning,
        attaches_to=_resolve_attachment(state, segment, decision.attaches_to),
    )


async def classify_message(
    state: ConversationState,
    message: Message,
    oracle: ClassificationOracle,
    *,
    config: StrategyConfig,
    max_tokens: int = 200,
    timeout_ms: int = 120_000,
    errors: list[dict] | None = None,
) -> Annotation:
    """Ask the oracle where a message belongs. Failures start a new segment at zero confidence."""

    recent = state.recent_messages(config.recent_window_size)
    reference_message, reference_segment = find_reference(state, message, recent)
    system_prompt, user_prompt = _build_prompt(
        state,
        message,
        config=config,
        recent=recent,
        reference_message=reference_message,
        reference_segment=reference_segment,
    )

    try:
        payload = await ask_oracle_json(
            oracle,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            max_tokens=max_tokens,
            timeout_ms=timeout_ms,
        )
        decision = normalize_classification(
            payload,
            default_role=SpeechAct.INITIATES if config.strategy == "previous-centric" else None,
        )
    except (OracleError, OracleResponseParseError) as exc:
        logger.warning("Classification failed for message %s: %s", message.id, exc)
        if errors is not None:
            errors.append(
                {
                    "stage": "segmentation",
                    "message_id": message.id,
                    "conversation_id": message.conversation_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            )
        return Annotation(
            message_id=message.id,
            conversation_id=message.conversation_id,
            attaches_to=None,
            segment_id=state.create_segment(message).id,
            role=SpeechAct.INITIATES,
            confidence=0.0,
            method=AnnotationMethod.ORACLE,
            reasoning=f"Fallback due to classification error: {exc}",
            annotated_at=message.created_at,
        )

    annotation = resolve_decision(
        state,
        message,
        decision,
        strategy=config.strategy,
        reference_message=reference_message,
        reference_segment=reference_segment,
    )
    logger.debug(
        "Message %s -> segment %s (%s, %.2f).",
        message.id,
        annotation.segment_id,
        annotation.role,
        annotation.confidence,
    )
    return annotation


def _check_unique_ids(messages: Sequence[Message]) -> None:
    seen: set[str] = set()
    for message in messages:
        if message.id in seen:
            raise SegmentationError(f"Duplicate message id {message.id!r}.")
        seen.add(message.id)


async def segment_messages(
    messages: Sequence[Message],
    oracle: ClassificationOracle,
    *,
    config: StrategyConfig | None = None,
    max_tokens: int = 200,
    timeout_ms: int = 120_000,
    call_delay_seconds: float = 0.05,
    progress_callback: Callable[[int, int], None] | None = None,
) -> SegmentationResult:
    """Annotate every message in time order, growing per-conversation segments."""

    config = config or StrategyConfig()
    if config.strategy == "single-prompt":
        raise SegmentationError(
            "The single-prompt strategy runs through segment_messages_single_prompt."
        )
    _check_unique_ids(messages)

    ordered = sorted(messages, key=lambda item: item.created_at)
    conversations: dict[str, ConversationState] = {}
    annotations: list[Annotation] = []
    errors: list[dict] = []
    oracle_calls = 0

    for position, message in enumerate(ordered, start=1):
        state = conversations.get(message.conversation_id)
        if state is None:
            state = ConversationState(conversation_id=message.conversation_id)
            conversations[message.conversation_id] = state

        annotation = check_structural_signals(state, message)
        if annotation is None:
            if oracle_calls and call_delay_seconds > 0:
                await asyncio.sleep(call_delay_seconds)
            annotation = await classify_message(
                state,
                message,
                oracle,
                config=config,
                max_tokens=max_tokens,
                timeout_ms=timeout_ms,
                errors=errors,
            )
            oracle_calls += 1

        state.apply(message, annotation)
        annotations.append(annotation)
        if progress_callback is not None:
            progress_callback(position, len(ordered))

    result = SegmentationResult(conversations=conversations, annotations=annotations, errors=errors)
    logger.info(
        "Segmented %d messages into %d segments across %d conversations (%d oracle calls, %d errors).",
        len(ordered),
        len(result.segments),
        len(conversations),
        oracle_calls,
        len(errors),
    )
    return result
