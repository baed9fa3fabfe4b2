"""Tests for stack and segment export payloads."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from chat_stacks.schemas import (
    Annotation,
    AnnotationMethod,
    Message,
    Segment,
    SegmentStatus,
    SpeechAct,
    Stack,
)
from chat_stacks.viz import build_segment_export, build_stack_export, derive_segment_status

_BASE = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)


def _message(message_id: str, minutes: float, author: str = "alice") -> Message:
    return Message(
        id=message_id,
        created_at=_BASE + timedelta(minutes=minutes),
        content=f"text {message_id}",
        author=author,
        conversation_id="general",
        thread_id="m1" if message_id != "m1" else None,
    )


def _segment(status: SegmentStatus = SegmentStatus.OPEN) -> Segment:
    messages = [_message("m1", 0), _message("m2", 10, author="bob")]
    return Segment(
        id="seg-1",
        conversation_id="general",
        message_ids=["m1", "m2"],
        status=status,
        summary="text m1",
        participants=["alice", "bob"],
        created_at=messages[0].created_at,
        last_activity_at=messages[-1].created_at,
        messages=messages,
    )


def test_derive_segment_status():
    segment = _segment()
    fresh = _BASE + timedelta(minutes=20)
    old = _BASE + timedelta(minutes=90)

    assert derive_segment_status(segment, now=fresh, stale_after_minutes=30) == SegmentStatus.OPEN
    assert derive_segment_status(segment, now=old, stale_after_minutes=30) == SegmentStatus.STALE
    resolved = _segment(SegmentStatus.RESOLVED)
    assert derive_segment_status(resolved, now=old, stale_after_minutes=30) == SegmentStatus.RESOLVED


def test_segment_export_uses_camel_case_and_annotations():
    annotation = Annotation(
        message_id="m2",
        conversation_id="general",
        attaches_to="m1",
        segment_id="seg-1",
        role=SpeechAct.RESPONDS,
        confidence=0.8,
        method=AnnotationMethod.ORACLE,
        reasoning="answers the question",
        annotated_at=_BASE + timedelta(minutes=10),
    )

    payload = build_segment_export(
        [_segment()],
        [annotation],
        now=_BASE + timedelta(hours=2),
        stale_after_minutes=30,
    )

    row = payload["segments"][0]
    assert row["status"] == "STALE"
    assert row["messageIds"] == ["m1", "m2"]
    assert row["title"] == "text m1"
    assert row["lastActivityAt"] == "2024-05-01T09:10:00+00:00"
    first, second = row["messages"]
    assert first["annotation"] is None
    assert second["threadId"] == "m1"
    assert second["annotation"] == {
        "speechAct": "RESPONDS",
        "confidence": 0.8,
        "reasoning": "answers the question",
    }


def test_segment_export_keeps_stored_status_without_clock():
    payload = build_segment_export([_segment()], [])
    assert payload["segments"][0]["status"] == "OPEN"


def test_stack_export_shape():
    stack = Stack(
        id="stack-1",
        title="Deploys",
        summary="Deploy talk",
        messages=[_message("m1", 0), _message("m2", 1, author="bob")],
    )

    payload = build_stack_export([stack])

    row = payload["stacks"][0]
    assert set(row) == {"id", "title", "summary", "messageIds", "messages", "participants", "status"}
    assert row["participants"] == ["alice", "bob"]
    assert row["status"] == "OPEN"
    assert row["messages"][0]["createdAt"] == "2024-05-01T09:00:00+00:00"
    assert [message["annotation"] for message in row["messages"]] == [None, None]


def test_stack_export_takes_only_stacks():
    with pytest.raises(TypeError):
        build_stack_export([], annotations={})
