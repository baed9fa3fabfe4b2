"""Tests for the per-message segment state machine."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from chat_stacks.config import StrategyConfig
from chat_stacks.models import OracleError
from chat_stacks.parsing import OracleResponseParseError
from chat_stacks.pipeline.segmentation import (
    ConversationState,
    InvalidReferenceError,
    SegmentationError,
    normalize_classification,
    segment_messages,
    summarize_content,
)
from chat_stacks.prompts import PREVIOUS_TOPIC_SYSTEM_PROMPT, segment_label, segment_label_index
from chat_stacks.schemas import (
    Annotation,
    AnnotationMethod,
    Message,
    SegmentStatus,
    SpeechAct,
)

_BASE = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


class _ScriptedOracle:
    def __init__(self, replies: list) -> None:
        self._replies = list(replies)
        self.calls: list[dict] = []

    async def complete(self, *, system_prompt: str, user_prompt: str, max_tokens: int, timeout_ms: int) -> str:
        self.calls.append({"system_prompt": system_prompt, "user_prompt": user_prompt})
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)


class _FailingOracle:
    def __init__(self) -> None:
        self.call_count = 0

    async def complete(self, **kwargs) -> str:
        self.call_count += 1
        raise OracleError("service unavailable")


def _message(
    message_id: str,
    *,
    minutes: float,
    content: str = "a message",
    author: str = "alice",
    conversation_id: str = "general",
    thread_id: str | None = None,
    reacted_to_id: str | None = None,
) -> Message:
    return Message(
        id=message_id,
        created_at=_BASE + timedelta(minutes=minutes),
        content=content,
        author=author,
        conversation_id=conversation_id,
        conversation_name=conversation_id,
        thread_id=thread_id,
        is_reaction=reacted_to_id is not None,
        reacted_to_id=reacted_to_id,
    )


def _segment(messages, oracle, **config):
    return asyncio.run(
        segment_messages(
            messages,
            oracle,
            config=StrategyConfig(**config),
            call_delay_seconds=0,
        )
    )


_NEW = {"conversation": "NEW", "role": "INITIATES", "confidence": 0.9, "reasoning": "new topic"}


class TestStructuralReactions:
    def test_reaction_joins_target_segment_without_oracle_call(self):
        oracle = _ScriptedOracle([_NEW])
        messages = [
            _message("m1", minutes=0, content="deploy is broken"),
            _message("r1", minutes=1, content=":eyes:", author="bob", reacted_to_id="m1"),
        ]

        result = _segment(messages, oracle)

        assert len(oracle.calls) == 1
        reaction = result.annotation_for("r1")
        assert reaction.role == SpeechAct.REACTS
        assert reaction.method == AnnotationMethod.STRUCTURAL
        assert reaction.confidence == 1.0
        assert reaction.reasoning == "Emoji reaction"
        assert reaction.attaches_to == "m1"
        assert reaction.segment_id == result.annotation_for("m1").segment_id
        assert result.segments[0].participants == ["alice", "bob"]

    def test_reaction_to_unknown_message_creates_segment(self):
        oracle = _ScriptedOracle([])
        result = _segment(
            [_message("r1", minutes=0, content=":+1:", reacted_to_id="missing")],
            oracle,
        )

        assert oracle.calls == []
        assert len(result.segments) == 1
        assert result.annotations[0].method == AnnotationMethod.STRUCTURAL


class TestSegmentCentric:
    def test_label_match_attaches_at_full_confidence(self):
        oracle = _ScriptedOracle(
            [
                _NEW,
                {"conversation": "A", "role": "DEVELOPS", "confidence": 0.8, "reasoning": "same bug"},
            ]
        )
        result = _segment(
            [
                _message("m1", minutes=0, content="deploy is broken"),
                _message("m2", minutes=1, content="logs attached", author="bob"),
            ],
            oracle,
        )

        first, second = result.annotations
        assert second.segment_id == first.segment_id
        assert second.confidence == pytest.approx(0.8)
        assert second.attaches_to == "m1"
        assert second.method == AnnotationMethod.ORACLE
        assert "[A]" in oracle.calls[1]["user_prompt"]

    def test_invalid_label_attaches_to_most_recent_segment_with_penalty(self):
        oracle = _ScriptedOracle(
            [
                _NEW,
                _NEW,
                {"conversation": "Z", "role": "RESPONDS", "confidence": 1.0},
            ]
        )
        result = _segment(
            [
                _message("m1", minutes=0),
                _message("m2", minutes=1),
                _message("m3", minutes=2),
            ],
            oracle,
        )

        second_segment = result.annotation_for("m2").segment_id
        third = result.annotation_for("m3")
        assert third.segment_id == second_segment
        assert third.confidence == pytest.approx(0.7)
        assert "invalid segment" in third.reasoning

    def test_invalid_label_with_initiates_starts_new_segment_with_penalty(self):
        oracle = _ScriptedOracle(
            [_NEW, {"conversation": "Q", "role": "INITIATES", "confidence": 0.8}]
        )
        result = _segment([_message("m1", minutes=0), _message("m2", minutes=1)], oracle)

        assert len(result.segments) == 2
        assert result.annotation_for("m2").confidence == pytest.approx(0.4)

    def test_resolves_marks_segment_resolved(self):
        oracle = _ScriptedOracle(
            [_NEW, {"conversation": "A", "role": "RESOLVES", "confidence": 0.95}]
        )
        result = _segment(
            [_message("m1", minutes=0), _message("m2", minutes=5, content="fixed, closing")],
            oracle,
        )

        segment = result.segments[0]
        assert segment.status == SegmentStatus.RESOLVED
        assert segment.last_activity_at == _BASE + timedelta(minutes=5)
        assert segment.message_ids == ["m1", "m2"]

    def test_conversations_are_segmented_independently(self):
        oracle = _ScriptedOracle([_NEW, _NEW])
        result = _segment(
            [
                _message("m1", minutes=0, conversation_id="general"),
                _message("m2", minutes=1, conversation_id="random"),
            ],
            oracle,
        )

        assert set(result.conversations) == {"general", "random"}
        assert "general" not in oracle.calls[1]["user_prompt"].split("NEW MESSAGE")[0]


class TestPreviousCentric:
    def test_continuation_attaches_to_previous_message_segment(self):
        oracle = _ScriptedOracle(
            [
                {"continues_previous": False, "segment": "NEW", "role": "INITIATES"},
                {"continues_previous": True, "segment": "A", "role": "DEVELOPS", "confidence": 0.9},
                {"continues_previous": False, "segment": "NEW"},
            ]
        )
        result = _segment(
            [
                _message("m1", minutes=0),
                _message("m2", minutes=1),
                _message("m3", minutes=2),
            ],
            oracle,
            strategy="previous-centric",
        )

        first, second, third = result.annotations
        assert second.segment_id == first.segment_id
        assert second.attaches_to == "m1"
        assert third.segment_id != first.segment_id
        assert third.role == SpeechAct.INITIATES
        assert all(call["system_prompt"] == PREVIOUS_TOPIC_SYSTEM_PROMPT for call in oracle.calls)

    def test_thread_reply_references_thread_root(self):
        oracle = _ScriptedOracle(
            [
                {"continues_previous": False, "segment": "NEW", "role": "INITIATES"},
                {"continues_previous": False, "segment": "NEW", "role": "INITIATES"},
                {"continues_previous": True, "segment": "A", "role": "RESPONDS", "confidence": 0.9},
            ]
        )
        result = _segment(
            [
                _message("root", minutes=0, content="checkout test is flaky"),
                _message("other", minutes=5, content="lunch?"),
                _message("reply", minutes=120, content="it is a race", thread_id="root"),
            ],
            oracle,
            strategy="previous-centric",
        )

        reply = result.annotation_for("reply")
        assert reply.segment_id == result.annotation_for("root").segment_id
        assert reply.attaches_to == "root"
        assert "THREAD REPLY" in oracle.calls[2]["user_prompt"]


def test_hybrid_hides_stale_segments():
    oracle = _ScriptedOracle(
        [
            _NEW,
            _NEW,
            {"conversation": "B", "role": "DEVELOPS", "confidence": 0.9},
        ]
    )
    result = _segment(
        [
            _message("m1", minutes=0, content="old topic about invoices"),
            _message("m2", minutes=60, content="fresh topic about deploys"),
            _message("m3", minutes=62, content="deploy finished"),
        ],
        oracle,
        strategy="hybrid",
        staleness_threshold_minutes=30,
    )

    prompt = oracle.calls[2]["user_prompt"]
    assert "invoices" not in prompt
    assert "[B]" in prompt
    assert result.annotation_for("m3").segment_id == result.annotation_for("m2").segment_id


def test_always_failing_oracle_degrades_to_singleton_segments():
    oracle = _FailingOracle()
    messages = [_message(f"m{index}", minutes=index) for index in range(4)]
    messages.append(_message("r", minutes=10, reacted_to_id="m0"))

    result = _segment(messages, oracle)

    assert oracle.call_count == 4
    assert len(result.annotations) == 5
    assert len(result.segments) == 4
    assert len(result.errors) == 4
    for annotation in result.annotations[:4]:
        assert annotation.role == SpeechAct.INITIATES
        assert annotation.confidence == 0.0
        assert annotation.reasoning.startswith("Fallback due to classification error")
    assert result.annotation_for("r").segment_id == result.annotation_for("m0").segment_id


def test_unparseable_reply_is_treated_as_failure():
    oracle = _ScriptedOracle(["I think it belongs to A"])
    result = _segment([_message("m1", minutes=0)], oracle)
    assert result.errors[0]["error_type"] == "OracleResponseParseError"
    assert result.annotations[0].confidence == 0.0


def test_single_prompt_strategy_is_rejected():
    with pytest.raises(SegmentationError):
        _segment([_message("m1", minutes=0)], _ScriptedOracle([]), strategy="single-prompt")


def test_duplicate_message_ids_are_rejected():
    with pytest.raises(SegmentationError, match="Duplicate"):
        _segment([_message("m1", minutes=0), _message("m1", minutes=1)], _ScriptedOracle([]))


class TestNormalizeClassification:
    def test_accepts_object_speech_act_and_clamps_confidence(self):
        decision = normalize_classification(
            {"segment": "b", "speechAct": {"type": "responds"}, "confidence": 3}
        )
        assert decision.target == "b"
        assert decision.role == SpeechAct.RESPONDS
        assert decision.confidence == 1.0

    def test_defaults_confidence_when_unusable(self):
        decision = normalize_classification(
            {"conversation": "A", "speech_act": "develops", "confidence": "high"}
        )
        assert decision.confidence == 0.5

    def test_null_attachment_is_dropped(self):
        decision = normalize_classification(
            {"conversation": "A", "role": "DEVELOPS", "attachesTo": "null"}
        )
        assert decision.attaches_to is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"role": "DEVELOPS"},
            {"conversation": "A"},
            {"conversation": "A", "role": "SHOUTS"},
        ],
    )
    def test_missing_or_unknown_fields_raise(self, payload):
        with pytest.raises(OracleResponseParseError):
            normalize_classification(payload)

    def test_default_role_fills_missing_role(self):
        decision = normalize_classification(
            {"continues_previous": True}, default_role=SpeechAct.INITIATES
        )
        assert decision.role == SpeechAct.INITIATES
        assert decision.continues_previous is True


class TestConversationState:
    def test_apply_is_idempotent(self):
        state = ConversationState(conversation_id="general")
        message = _message("m1", minutes=0)
        segment = state.create_segment(message)
        annotation = Annotation(
            message_id="m1",
            conversation_id="general",
            segment_id=segment.id,
            role=SpeechAct.INITIATES,
            confidence=1.0,
            method=AnnotationMethod.ORACLE,
            annotated_at=message.created_at,
        )

        state.apply(message, annotation)
        state.apply(message, annotation)

        assert segment.message_ids == ["m1"]
        assert len(state.history) == 1
        assert state.segment_for_message("m1") is segment

    def test_resolve_label_accepts_letters_and_ids(self):
        state = ConversationState(conversation_id="general")
        first = state.create_segment(_message("m1", minutes=0))
        second = state.create_segment(_message("m2", minutes=1))

        assert state.resolve_label("a") is first
        assert state.resolve_label(" B ") is second
        assert state.resolve_label(second.id) is second
        with pytest.raises(InvalidReferenceError):
            state.resolve_label("C")


def test_segment_labels_are_spreadsheet_style():
    assert [segment_label(index) for index in (0, 25, 26, 27, 701, 702)] == [
        "A",
        "Z",
        "AA",
        "AB",
        "ZZ",
        "AAA",
    ]
    assert segment_label_index("AB") == 27
    assert segment_label_index("7") is None


def test_summary_rewrites_group_mentions_and_truncates():
    summary = summarize_content(
        "<!member_group:S123|platform-team> please look at the failing deploy job on main today"
    )
    assert summary.startswith("@platform-team please")
    assert summary.endswith("...")
    assert len(summary) == 53
