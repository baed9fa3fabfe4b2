"""Tests for the single-prompt segmentation strategy."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

from chat_stacks.models import OracleError
from chat_stacks.pipeline.single_prompt import bulk_max_tokens, segment_messages_single_prompt
from chat_stacks.schemas import AnnotationMethod, Message, SpeechAct

_BASE = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


class _BulkOracle:
    def __init__(self, reply) -> None:
        self._reply = reply
        self.max_tokens: list[int] = []

    async def complete(self, *, system_prompt: str, user_prompt: str, max_tokens: int, timeout_ms: int) -> str:
        self.max_tokens.append(max_tokens)
        if isinstance(self._reply, Exception):
            raise self._reply
        return json.dumps(self._reply)


def _message(message_id: str, minutes: float, conversation_id: str = "general") -> Message:
    return Message(
        id=message_id,
        created_at=_BASE + timedelta(minutes=minutes),
        content=f"content {message_id}",
        author="alice",
        conversation_id=conversation_id,
    )


def test_bulk_token_budget_is_clamped():
    assert bulk_max_tokens(1) == 4000
    assert bulk_max_tokens(100) == 15000
    assert bulk_max_tokens(10_000) == 64000


def test_stacks_become_segments_per_conversation():
    messages = [
        _message("m1", 0),
        _message("m2", 1),
        _message("m3", 2, conversation_id="random"),
        _message("m4", 3),
    ]
    oracle = _BulkOracle(
        {
            "stacks": [
                {"title": "Deploys", "summary": "Deploy talk", "message_ids": ["m2", "m1", "m3", "ghost"]},
                {"title": "Dupes", "summary": "", "message_ids": ["m1"]},
            ]
        }
    )

    result = asyncio.run(segment_messages_single_prompt(messages, oracle))

    assert oracle.max_tokens == [4000]
    assert len(result.annotations) == 4
    general_deploys = result.annotation_for("m1").segment_id
    assert result.annotation_for("m2").segment_id == general_deploys
    assert result.annotation_for("m3").segment_id != general_deploys

    first = result.annotation_for("m1")
    assert first.role == SpeechAct.INITIATES
    assert first.confidence == 1.0
    assert first.method == AnnotationMethod.ORACLE
    assert first.reasoning == "Grouped into stack: Deploys"
    assert result.annotation_for("m2").role == SpeechAct.DEVELOPS
    assert result.annotation_for("m2").attaches_to == "m1"

    leftover = result.annotation_for("m4")
    assert leftover.confidence == 0.0
    assert leftover.role == SpeechAct.INITIATES

    titles = sorted(segment.title for segment in result.segments)
    assert titles == ["Deploys", "Deploys", "content m4"]


def test_null_group_fields_are_tolerated():
    messages = [_message("m1", 0), _message("m2", 1), _message("m3", 2)]
    oracle = _BulkOracle(
        {
            "stacks": [
                {"title": None, "summary": None, "message_ids": ["m1", "m2"]},
                {"title": "Empty", "summary": "", "message_ids": None},
            ]
        }
    )

    result = asyncio.run(segment_messages_single_prompt(messages, oracle))

    assert result.errors == []
    assert result.annotation_for("m1").segment_id == result.annotation_for("m2").segment_id
    assert result.annotation_for("m1").reasoning == "Grouped into stack: Untitled"
    assert result.annotation_for("m1").confidence == 1.0
    assert result.annotation_for("m3").confidence == 0.0
    assert len(result.segments) == 2


def test_failure_gives_every_message_its_own_segment():
    messages = [_message(f"m{index}", index) for index in range(3)]
    result = asyncio.run(
        segment_messages_single_prompt(messages, _BulkOracle(OracleError("timed out")))
    )

    assert len(result.segments) == 3
    assert all(annotation.confidence == 0.0 for annotation in result.annotations)
    assert result.errors[0]["stage"] == "single_prompt"


def test_empty_input_makes_no_call():
    oracle = _BulkOracle({"stacks": []})
    result = asyncio.run(segment_messages_single_prompt([], oracle))
    assert oracle.max_tokens == []
    assert result.annotations == []
