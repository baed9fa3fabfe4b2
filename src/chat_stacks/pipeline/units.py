"""Deterministic atomic unit construction."""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Sequence

from chat_stacks.schemas import Message, Unit

logger = logging.getLogger(__name__)

SAME_AUTHOR_WINDOW_MINUTES = 2.0
SAME_CONVERSATION_WINDOW_MINUTES = 1.0
CONTINUATION_WINDOW_MINUTES = 3.0
REPLY_WINDOW_MINUTES = 1440.0
REOPEN_LOOKBACK_UNITS = 5

_ACKNOWLEDGMENT = re.compile(
    r"^(yeah|yea|ya|yep|yes|no|nope|ok|okay|k|kk|sure|agreed|exactly|right|true|lol|haha|hmm"
    r"|ah|oh|nice|cool|great|thanks|ty|thx|\+1|\^|this|same|def|definitely|totally|yup|nah"
    r"|word|bet|facts|fr|real|tru|omg|wow|ooh|ahh)$"
)
_VERY_SHORT = re.compile(r"^.{1,10}$", re.DOTALL)

_REPLY_PHRASES = (
    re.compile(r"^(yeah|yea|ya|yep|yes|exactly|right|agreed|sure|definitely|totally|same|this|that|true)$"),
    re.compile(r"^(no|nope|nah|not really|disagree)$"),
    re.compile(r"^(ok|okay|k|kk|got it|makes sense|understood)$"),
    re.compile(r"^(thanks|thank you|ty|thx|appreciate it)$"),
    re.compile(r"^(cool|nice|great|awesome|love it)$"),
)
_SHORT_REPLY_PREFIX = re.compile(r"^(yeah|yes|no|ok|yep|exactly|right|same|this|that|true|sure|agreed)")
_REPLY_OPENER = re.compile(
    r"^(yeah|yea|ya|yep|yes|no|nope|ok|okay|right|exactly|sure|agreed|definitely|totally|yup|nah)"
    r"\s*[-,:;]?\s*"
)
_WORD = re.compile(r"\b[a-z]{3,}\b")


def _normalized(content: str) -> str:
    return (content or "").lower().strip()


def is_continuation_signal(message: Message) -> bool:
    """Return whether a message is a short acknowledgment likely continuing the exchange."""

    content = _normalized(message.content)
    return bool(_ACKNOWLEDGMENT.match(content) or _VERY_SHORT.match(content))


def is_reply_like(message: Message, other: Message) -> bool:
    """Heuristically decide whether `message` reads as a reply to `other`."""

    content = _normalized(message.content)
    other_content = _normalized(other.content)

    is_short_reply = any(pattern.match(content) for pattern in _REPLY_PHRASES) or (
        len(content) <= 20 and bool(_SHORT_REPLY_PREFIX.match(content))
    )
    starts_with_reply = bool(_REPLY_OPENER.match(content))
    references_other = (
        "this" in content
        or "that" in content
        or "same" in content
        or (len(other_content) > 0 and len(content) < len(other_content) * 0.3)
    )

    shared_words = set(_WORD.findall(content)) & set(_WORD.findall(other_content))
    is_semantic_continuation = (
        len(content) <= 50 and bool(shared_words) and any(len(word) >= 4 for word in shared_words)
    )
    is_short_elaboration = (
        len(other_content) > 20 and len(content) <= 30 and len(content) < len(other_content) * 0.5
    )

    return (
        is_short_reply
        or starts_with_reply
        or references_other
        or is_semantic_continuation
        or is_short_elaboration
    )


def _minutes_between(later: Message, earlier: Message) -> float:
    return (later.created_at - earlier.created_at).total_seconds() / 60


def _shares_thread(message: Message, members: Sequence[Message]) -> bool:
    """Return whether `message` replies into a thread represented in `members`."""

    if not message.thread_id:
        return False
    return any(
        member.thread_id == message.thread_id or member.id == message.thread_id
        for member in members
    )


def build_unit(messages: list[Message], index: int) -> Unit:
    """Create a unit record from a non-empty message run."""

    if not messages:
        raise ValueError("A unit needs at least one message.")
    first = messages[0]
    return Unit(
        id=str(uuid.uuid4()),
        index=index,
        messages=list(messages),
        authors=list(dict.fromkeys(message.author for message in messages)),
        conversation_id=first.conversation_id,
        conversation_name=first.conversation_name or "DM",
        start_time=first.created_at,
        end_time=messages[-1].created_at,
    )


def should_extend(message: Message, current: Sequence[Message]) -> bool:
    """Apply the grouping rules, in priority order, to an open run of messages."""

    previous = current[-1]
    first = current[0]
    time_diff = _minutes_between(message, previous)
    time_diff_from_first = _minutes_between(message, first)
    same_conversation = message.conversation_id == previous.conversation_id
    same_author = message.author == previous.author

    if message.thread_id and (
        message.thread_id == previous.thread_id or _shares_thread(message, current)
    ):
        return True
    if same_author and same_conversation and time_diff < SAME_AUTHOR_WINDOW_MINUTES:
        return True
    if same_conversation and time_diff < SAME_CONVERSATION_WINDOW_MINUTES:
        return True
    if is_continuation_signal(message) and same_conversation and time_diff < CONTINUATION_WINDOW_MINUTES:
        return True
    if same_conversation:
        replies_to_last = is_reply_like(message, previous)
        replies_to_first = len(current) > 1 and is_reply_like(message, first)
        if replies_to_last or replies_to_first:
            relevant_diff = time_diff if replies_to_last else time_diff_from_first
            return relevant_diff < REPLY_WINDOW_MINUTES
    return False


def build_atomic_units(messages: Sequence[Message]) -> list[Unit]:
    """Group chronologically sorted messages into atomic units with one pass.

    A message that matches no rule but replies into a thread held by one of the
    last few closed units is appended to that unit, leaving the open run untouched,
    so interrupted threads stay together.
    """

    ordered = sorted(messages, key=lambda item: item.created_at)
    units: list[Unit] = []
    current: list[Message] = []

    for message in ordered:
        if not current:
            current = [message]
            continue

        if should_extend(message, current):
            current.append(message)
            continue

        reopened = False
        if message.thread_id and units:
            lookback_start = max(0, len(units) - REOPEN_LOOKBACK_UNITS)
            for unit_index in range(len(units) - 1, lookback_start - 1, -1):
                unit = units[unit_index]
                if _shares_thread(message, unit.messages):
                    units[unit_index] = build_unit([*unit.messages, message], unit_index)
                    logger.debug(
                        "Reopened unit %d for thread reply %s.", unit_index, message.id
                    )
                    reopened = True
                    break

        if not reopened:
            units.append(build_unit(current, len(units)))
            current = [message]

    if current:
        units.append(build_unit(current, len(units)))

    logger.info("Built %d atomic units from %d messages.", len(units), len(ordered))
    return units
