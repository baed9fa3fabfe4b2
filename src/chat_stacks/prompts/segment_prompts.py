"""Prompts for per-message online segmentation."""

from __future__ import annotations

import json
from datetime import datetime

from chat_stacks.schemas import Message, Segment, SegmentStatus

NEW_SEGMENT_LABEL = "NEW"

SEGMENTATION_SYSTEM_PROMPT = """You are a conversation analyst for a workplace chat platform. Your task is to determine how each new message relates to ongoing conversations in a channel.

A channel can have multiple simultaneous conversations. Messages belong to the same conversation when they discuss the SAME SPECIFIC TOPIC or issue.

TEMPORAL PROXIMITY IS CRITICAL:
- Messages sent within SECONDS or MINUTES of the previous message are VERY LIKELY continuations of the same conversation
- If the previous message was just sent (< 5 minutes ago), STRONGLY prefer attaching to that message's segment
- Brief reactions like "lol", "nice", "W" sent immediately after another message are almost ALWAYS reactions to that message
- Older/stale segments (last activity hours or days ago) require STRONG semantic match to attach new messages
- When in doubt between a recent segment and an old one, prefer the RECENT one

WHEN TO CREATE A NEW TOPIC (use "NEW"):
- A new bug report, error, or issue being raised
- A new PR/code review announcement
- A new question unrelated to existing topics
- A new feature discussion or announcement
- Any message discussing a DIFFERENT subject than existing segments
- Even if in the same thread, a different issue = new topic

IMPORTANT: Thread replies can contain MULTIPLE TOPICS.
- Do NOT assume all messages in a thread belong to the same segment.
- Analyze the CONTENT - if it discusses a different issue, it's a NEW topic.

RESOLUTION SIGNALS (use RESOLVES role):
- "Fixed", "Done", "Resolved", "Completed"
- "You can close this", "Close this out", "This is done"
- "LGTM", "Approved", "Merged"
- "Thanks, that worked", acknowledgement that issue is solved
- Final confirmations or sign-offs

ROLE DEFINITIONS:
- INITIATES: Starts a new topic (new bug, new PR, new question, new feature discussion)
- DEVELOPS: Adds information to the SAME topic (more details, elaboration, follow-up)
- RESPONDS: Directly answers a question about the SAME topic
- RESOLVES: Closes out a conversation (fix confirmed, PR merged, issue closed, "close this out")
- REACTS: Brief reaction without substance (emoji-like responses, "nice", "lol", "W")

Respond with JSON only.
"""

PREVIOUS_TOPIC_SYSTEM_PROMPT = """You are analyzing chat messages to determine if they continue a previous TOPIC or start a new topic.

A TOPIC is a conversation about a SPECIFIC ISSUE or subject. You will be shown:
1. The previous topic's summary
2. The full message history from that topic
3. The new message to classify

CRITICAL RULES:

1. SAME TOPIC = SAME SPECIFIC ISSUE
   - Topics are NOT about keyword overlap! Two messages mentioning "DMs" could be totally different issues.
   - Ask: "Is this message about THE SAME SPECIFIC ISSUE as the previous topic?"
   - Example: "PR #323 review" vs "PR #324 review" = DIFFERENT topics (different PRs)

2. THREAD REPLIES: If marked as a THREAD REPLY, ALMOST ALWAYS attach to the thread's topic.
   - Questions, tangents, reactions within a thread = same topic
   - Only use NEW if COMPLETELY UNRELATED to the thread

3. NON-THREAD MESSAGES: Evaluate if it's the SAME SPECIFIC ISSUE as the previous topic.
   - New bug reports, new PRs, new questions = likely NEW topic
   - Reactions/follow-ups to the immediately previous message = likely same topic

4. EXPLICIT REFERENCE INDICATORS:
   - "^" or "^ same" or "^^ this" = ALWAYS refers to the IMMEDIATELY PREVIOUS message's topic
   - "+1" or "agreed" without context = reaction to immediately previous message
   - These should attach to the PREVIOUS topic shown, not jump to other topics

Respond with JSON only.
"""

SINGLE_PROMPT_SYSTEM_PROMPT = """You are given a list of chat messages in JSON format. Each message has text content and metadata (timestamp, author, channel, thread id).
Group these messages into semantically related groups called "stacks". Each stack represents a coherent topic, task, project, question, or cluster of messages that belong together.

Rules:
1. Semantic coherence: messages in the same stack must be related by topic, goal, task, or intent.
2. Minimal overlap: a message belongs in only one stack.
3. Distinct topics: different tasks or topics go in different stacks.
4. Human readable: titles are short and descriptive; summaries explain why the messages belong together.
5. Complete coverage: every input message id must appear in exactly one stack.

Return strict JSON with exactly this shape:
{
  "stacks": [
    {"title": "<short title>", "summary": "<one or two sentences>", "message_ids": ["<id>", "..."]}
  ]
}
"""

_ROLE_CHOICES = '"INITIATES" | "DEVELOPS" | "RESPONDS" | "RESOLVES" | "REACTS"'


def segment_label(index: int) -> str:
    """Return the spreadsheet-style label for a segment position (A, B, ..., Z, AA, ...)."""

    if index < 0:
        raise ValueError(f"Segment index must be non-negative, got {index}.")
    label = ""
    value = index + 1
    while value:
        value, remainder = divmod(value - 1, 26)
        label = chr(65 + remainder) + label
    return label


def segment_label_index(label: str) -> int | None:
    """Invert `segment_label`; return None when the text is not a letter label."""

    text = label.strip().upper()
    if not text or not text.isascii() or not text.isalpha():
        return None
    value = 0
    for char in text:
        value = value * 26 + (ord(char) - 64)
    return value - 1


def format_time_gap(later: datetime | None, earlier: datetime | None) -> str:
    """Render the gap between two timestamps, e.g. `5 minutes` or `2 days`."""

    if later is None or earlier is None:
        return "unknown"
    delta_seconds = (later - earlier).total_seconds()
    if delta_seconds < 0:
        return "before"

    seconds = int(delta_seconds)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days} day{'s' if days > 1 else ''}"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''}"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def _short_id(message_id: str) -> str:
    return message_id[:8]


def _segment_recent_messages(segment: Segment, recent_messages: list[Message]) -> list[Message]:
    member_ids = set(segment.message_ids)
    return [message for message in recent_messages if message.id in member_ids]


def _thread_messages(message: Message, recent_messages: list[Message], limit: int) -> list[Message]:
    if not message.thread_id:
        return []
    related = [
        item
        for item in recent_messages
        if item.thread_id == message.thread_id or item.id == message.thread_id
    ]
    return related[-limit:]


def build_segment_centric_prompt(
    *,
    message: Message,
    segments: list[Segment],
    recent_messages: list[Message],
    previous_message: Message | None,
    previous_segment_label: str | None,
) -> str:
    """List every active segment and ask which one the message belongs to."""

    blocks: list[str] = []
    for index, segment in enumerate(segments):
        shown = _segment_recent_messages(segment, recent_messages)[-10:]
        lines = "\n".join(
            f"    [{_short_id(item.id)}] {item.author}: {item.content}" for item in shown
        )
        status = "RESOLVED" if segment.status == SegmentStatus.RESOLVED else "OPEN"
        staleness = format_time_gap(message.created_at, shown[-1].created_at) if shown else "unknown"
        blocks.append(
            f"[{segment_label(index)}] {segment.summary}\n"
            f"    Status: {status}\n"
            f"    Last activity: {staleness} ago\n"
            f"    Participants: {', '.join(segment.participants)}\n"
            "    Messages:\n"
            f"{lines or '    (no messages shown)'}"
        )
    conversations_section = "\n\n".join(blocks) if blocks else "(none)"

    options = [f"- {segment_label(index)}: {segment.summary}" for index, segment in enumerate(segments)]
    options.append(f"- {NEW_SEGMENT_LABEL}: Starts a new conversation/topic")

    thread_context = ""
    thread_messages = _thread_messages(message, recent_messages, limit=8)
    if thread_messages:
        thread_lines = "\n".join(f"    {item.author}: {item.content}" for item in thread_messages)
        thread_context = (
            "\nTHREAD CONTEXT (this message is a reply in a thread):\n"
            f"{thread_lines}\n\n"
            "NOTE: Threads can contain multiple topics. Analyze the CONTENT to determine\n"
            "which conversation this message belongs to, not just the thread structure.\n\n"
            "---\n\n"
        )

    previous_context = ""
    if previous_message is not None:
        gap = format_time_gap(message.created_at, previous_message.created_at)
        segment_hint = f" [Segment {previous_segment_label}]" if previous_segment_label else ""
        previous_context = (
            f"\nIMMEDIATELY PREVIOUS MESSAGE ({gap} ago){segment_hint}:\n"
            f'{previous_message.author}: "{previous_message.content}"\n\n'
        )

    thread_marker = " (thread reply)" if message.thread_id else ""
    return (
        f"ACTIVE CONVERSATIONS IN #{message.conversation_name or 'channel'}:\n\n"
        f"{conversations_section}\n\n"
        "---\n"
        f"{thread_context}{previous_context}"
        "NEW MESSAGE TO CLASSIFY:\n"
        f"[{_short_id(message.id)}] {message.author}: {message.content}{thread_marker}\n\n"
        "---\n\n"
        "Which conversation does this message belong to?\n\n"
        "OPTIONS:\n"
        + "\n".join(options)
        + "\n\nRespond with JSON:\n"
        "{\n"
        '  "conversation": "<letter or NEW>",\n'
        '  "attachesTo": "<message_id or null>",\n'
        f'  "role": {_ROLE_CHOICES},\n'
        '  "confidence": <0.0-1.0>,\n'
        '  "reasoning": "<one sentence>"\n'
        "}"
    )


def build_previous_centric_prompt(
    *,
    message: Message,
    reference_message: Message | None,
    reference_segment: Segment | None,
    reference_label: str | None,
    recent_messages: list[Message],
    is_thread_reply: bool,
) -> str:
    """Show only the reference topic and ask a binary continues/new question."""

    topic_label = "THREAD TOPIC" if is_thread_reply else "PREVIOUS TOPIC"
    if reference_segment is not None:
        history = "\n".join(
            f"  [{format_time_gap(message.created_at, item.created_at)} ago] "
            f'{item.author}: "{item.content}"'
            for item in _segment_recent_messages(reference_segment, recent_messages)[-15:]
        )
        topic_section = (
            f"{topic_label} [Segment {reference_label}]:\n"
            f"Summary: {reference_segment.summary}\n"
            f"Participants: {', '.join(reference_segment.participants)}\n\n"
            "Message History:\n"
            f"{history}\n\n"
        )
    elif reference_message is not None:
        gap = format_time_gap(message.created_at, reference_message.created_at)
        topic_section = (
            f"{topic_label} ({gap} ago):\n"
            f'{reference_message.author}: "{reference_message.content}"\n\n'
        )
    else:
        topic_section = "No previous messages (this is the first message).\n\n"

    label_hint = reference_label or "?"
    thread_guidance = ""
    if is_thread_reply:
        thread_guidance = (
            "\nIMPORTANT: This is a THREAD REPLY. Thread replies should ALMOST ALWAYS attach "
            f"to their thread's topic (Segment {label_hint}).\n"
            'Only use "NEW" if the message is discussing something COMPLETELY UNRELATED to the '
            "thread topic.\n"
            "Questions, reactions, follow-ups, tangents - these all belong to the thread's "
            "topic.\n\n"
        )
        question = (
            f"This is a THREAD REPLY. Attach to the thread's topic (Segment {label_hint}) "
            "unless COMPLETELY unrelated."
        )
    else:
        question = (
            "Is this message about THE SAME SPECIFIC ISSUE as the previous topic?\n"
            f"- Same issue = attach to Segment {label_hint}\n"
            "- Different issue (new bug, new PR, new question) = NEW\n"
            "Note: Keyword overlap is NOT enough!"
        )

    return (
        f"#{message.conversation_name or 'channel'}\n\n"
        f"{topic_section}{thread_guidance}"
        "NEW MESSAGE TO CLASSIFY:\n"
        f'{message.author}: "{message.content}"\n\n'
        "---\n\n"
        f"{question}\n\n"
        "Respond with JSON:\n"
        "{\n"
        '  "continues_previous": true | false,\n'
        f'  "segment": "{reference_label or NEW_SEGMENT_LABEL}" | "{NEW_SEGMENT_LABEL}",\n'
        f'  "role": {_ROLE_CHOICES},\n'
        '  "confidence": <0.0-1.0>,\n'
        '  "reasoning": "<one sentence>"\n'
        "}"
    )


def select_hybrid_segments(
    *,
    message: Message,
    segments: list[Segment],
    recent_messages: list[Message],
    reference_segment: Segment | None,
    staleness_threshold_minutes: float,
    max_segments_to_show: int,
) -> list[tuple[int, Segment, Message | None]]:
    """Pick fresh segments (plus the reference segment), most recent first, capped."""

    threshold_seconds = staleness_threshold_minutes * 60
    candidates: list[tuple[float, int, Segment, Message | None]] = []
    for index, segment in enumerate(segments):
        members = _segment_recent_messages(segment, recent_messages)
        last = members[-1] if members else None
        age = (
            (message.created_at - last.created_at).total_seconds()
            if last is not None
            else float("inf")
        )
        is_reference = reference_segment is not None and segment.id == reference_segment.id
        if age > threshold_seconds and not is_reference:
            continue
        candidates.append((age, index, segment, last))

    candidates.sort(key=lambda item: item[0])
    return [(index, segment, last) for _, index, segment, last in candidates[:max_segments_to_show]]


def build_hybrid_prompt(
    *,
    message: Message,
    segments: list[Segment],
    recent_messages: list[Message],
    previous_message: Message | None,
    reference_segment: Segment | None,
    previous_segment_label: str | None,
    staleness_threshold_minutes: float,
    max_segments_to_show: int,
    prefer_previous_message: bool,
) -> str:
    """Show only recently active segments and emphasize the previous message."""

    shown = select_hybrid_segments(
        message=message,
        segments=segments,
        recent_messages=recent_messages,
        reference_segment=reference_segment,
        staleness_threshold_minutes=staleness_threshold_minutes,
        max_segments_to_show=max_segments_to_show,
    )

    blocks: list[str] = []
    for index, segment, last in shown:
        age_text = format_time_gap(message.created_at, last.created_at if last else None)
        lines = "\n".join(
            f"    {item.author}: {item.content}"
            for item in _segment_recent_messages(segment, recent_messages)[-5:]
        )
        blocks.append(
            f"[{segment_label(index)}] {segment.summary}\n"
            f"    Last activity: {age_text} ago\n"
            "    Messages:\n"
            f"{lines or '    (no messages)'}"
        )

    segments_section = "\n\n".join(blocks) if blocks else "(none active recently)"

    thread_context = ""
    thread_messages = _thread_messages(message, recent_messages, limit=5)
    if thread_messages:
        thread_lines = "\n".join(f'  {item.author}: "{item.content}"' for item in thread_messages)
        thread_context = f"\nTHREAD CONTEXT:\n{thread_lines}\n\n"

    previous_section = ""
    if previous_message is not None and prefer_previous_message:
        gap = format_time_gap(message.created_at, previous_message.created_at)
        previous_section = (
            f"\n>>> IMMEDIATELY PREVIOUS MESSAGE ({gap} ago) [Segment {previous_segment_label or '?'}]:\n"
            f'>>> {previous_message.author}: "{previous_message.content}"\n'
            ">>> Messages sent close together usually belong to the same conversation!\n\n"
        )

    options = [f"- {segment_label(index)}" for index, _, _ in shown]
    options.append(f"- {NEW_SEGMENT_LABEL}: Starts a new conversation")

    return (
        f"RECENT CONVERSATIONS IN #{message.conversation_name or 'channel'}:\n\n"
        f"{segments_section}\n\n"
        "---\n"
        f"{thread_context}{previous_section}"
        "NEW MESSAGE TO CLASSIFY:\n"
        f'{message.author}: "{message.content}"\n\n'
        "---\n\n"
        "OPTIONS:\n"
        + "\n".join(options)
        + "\n\nRespond with JSON:\n"
        "{\n"
        '  "conversation": "<letter or NEW>",\n'
        f'  "role": {_ROLE_CHOICES},\n'
        '  "confidence": <0.0-1.0>,\n'
        '  "reasoning": "<one sentence>"\n'
        "}"
    )


def build_single_prompt_user_prompt(messages: list[Message]) -> str:
    """Serialize every message for the one-shot grouping call."""

    rows = [
        {
            "id": message.id,
            "created_at": message.created_at.isoformat(),
            "author": message.author,
            "conversation_id": message.conversation_id,
            "conversation_name": message.conversation_name,
            "thread_id": message.thread_id,
            "content": message.content,
        }
        for message in messages
    ]
    return "Here are the messages to group into stacks:\n\n" + json.dumps(
        rows, ensure_ascii=False, indent=2
    )
