"""Export payload builders for stacks and segments."""

from __future__ import annotations

from datetime import datetime

from chat_stacks.schemas import Annotation, Message, Segment, SegmentStatus, Stack


def derive_segment_status(
    segment: Segment,
    *,
    now: datetime,
    stale_after_minutes: float,
) -> SegmentStatus:
    """Return the display status of a segment.

    Resolved segments stay resolved. Open segments whose last activity is older
    than `stale_after_minutes` are shown as stale; the stored status is untouched.
    """

    if segment.status != SegmentStatus.OPEN:
        return segment.status
    age_minutes = (now - segment.last_activity_at).total_seconds() / 60
    if age_minutes > stale_after_minutes:
        return SegmentStatus.STALE
    return SegmentStatus.OPEN


def _message_row(message: Message, annotation: Annotation | None) -> dict:
    return {
        "id": message.id,
        "author": message.author,
        "content": message.content,
        "createdAt": message.created_at.isoformat(),
        "threadId": message.thread_id,
        "annotation": (
            {
                "speechAct": annotation.role.value,
                "confidence": annotation.confidence,
                "reasoning": annotation.reasoning,
            }
            if annotation is not None
            else None
        ),
    }


def build_stack_export(stacks: list[Stack]) -> dict:
    """Build the `{"stacks": [...]}` export payload.

    Stacks carry no per-message annotations, so every message row has `annotation: None`.
    """

    return {
        "stacks": [
            {
                "id": stack.id,
                "title": stack.title,
                "summary": stack.summary,
                "messageIds": [message.id for message in stack.messages],
                "messages": [_message_row(message, None) for message in stack.messages],
                "participants": stack.participants,
                "status": SegmentStatus.OPEN.value,
            }
            for stack in stacks
        ]
    }


def build_segment_export(
    segments: list[Segment],
    annotations: list[Annotation],
    *,
    now: datetime | None = None,
    stale_after_minutes: float | None = None,
) -> dict:
    """Build the `{"segments": [...]}` export payload.

    Segment status is derived for display when both `now` and
    `stale_after_minutes` are given.
    """

    annotation_by_id = {annotation.message_id: annotation for annotation in annotations}
    rows: list[dict] = []
    for segment in segments:
        if now is not None and stale_after_minutes is not None:
            status = derive_segment_status(
                segment,
                now=now,
                stale_after_minutes=stale_after_minutes,
            )
        else:
            status = segment.status
        rows.append(
            {
                "id": segment.id,
                "conversationId": segment.conversation_id,
                "title": segment.title or segment.summary,
                "summary": segment.summary,
                "messageIds": list(segment.message_ids),
                "messages": [
                    _message_row(message, annotation_by_id.get(message.id))
                    for message in segment.messages
                ],
                "participants": list(segment.participants),
                "status": status.value,
                "createdAt": segment.created_at.isoformat(),
                "lastActivityAt": segment.last_activity_at.isoformat(),
            }
        )
    return {"segments": rows}
