"""Core data schemas for chat message grouping."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """A single normalized chat message."""

    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime
    content: str
    author: str
    conversation_id: str
    conversation_name: str = ""
    thread_id: str | None = None
    author_id: str = ""
    is_reaction: bool = False
    reacted_to_id: str | None = None


class Unit(BaseModel):
    """A contiguous, heuristically coherent run of messages."""

    id: str
    index: int
    messages: list[Message]
    authors: list[str]
    conversation_id: str
    conversation_name: str
    start_time: datetime
    end_time: datetime

    @property
    def message_ids(self) -> list[str]:
        return [message.id for message in self.messages]


class ValidatedUnit(Unit):
    """A unit after oracle-assisted split/merge correction."""

    original_index: int | None = None
    merged_from: list[int] | None = None
    split_from: int | None = None
    split_range: tuple[int, int] | None = None

    def provenance(self) -> list[int]:
        """Return the atomic unit indices this unit was built from."""

        if self.merged_from:
            return list(self.merged_from)
        if self.split_from is not None:
            return [self.split_from]
        if self.original_index is not None:
            return [self.original_index]
        return []


class Stack(BaseModel):
    """A topic-level cluster of validated units."""

    id: str
    title: str
    summary: str
    messages: list[Message] = Field(default_factory=list)
    unit_indices: list[int] = Field(default_factory=list)

    @property
    def participants(self) -> list[str]:
        return list(dict.fromkeys(message.author for message in self.messages))


class SegmentStatus(StrEnum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"
    STALE = "STALE"


class SpeechAct(StrEnum):
    INITIATES = "INITIATES"
    DEVELOPS = "DEVELOPS"
    RESPONDS = "RESPONDS"
    RESOLVES = "RESOLVES"
    REACTS = "REACTS"


class AnnotationMethod(StrEnum):
    STRUCTURAL = "STRUCTURAL"
    ORACLE = "ORACLE"


class Segment(BaseModel):
    """An open-ended topical cluster inside one conversation."""

    id: str
    conversation_id: str
    message_ids: list[str] = Field(default_factory=list)
    status: SegmentStatus = SegmentStatus.OPEN
    summary: str = ""
    title: str = ""
    participants: list[str] = Field(default_factory=list)
    created_at: datetime
    last_activity_at: datetime
    messages: list[Message] = Field(default_factory=list)


class Annotation(BaseModel):
    """How one message attaches to the segment structure."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    conversation_id: str
    attaches_to: str | None = None
    segment_id: str
    role: SpeechAct
    confidence: float = Field(ge=0.0, le=1.0)
    method: AnnotationMethod
    reasoning: str = ""
    annotated_at: datetime
