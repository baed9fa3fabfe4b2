"""Prompts for unit validation and the adjacent-unit post-merge pass."""

from __future__ import annotations

from datetime import datetime

from chat_stacks.schemas import Unit

POST_MERGE_SYSTEM_PROMPT = """You check if adjacent units should be merged.
If two adjacent units discuss the same topic/theme, they should be merged.
Focus on semantic similarity, not just temporal proximity.

Reply with ONLY valid JSON. No markdown, no extra text.
"""


def format_short_time(value: datetime) -> str:
    """Render a timestamp as a compact clock time, e.g. `3:07 PM`."""

    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


def build_unit_validation_system_prompt(*, batch_start: int, unit_count: int) -> str:
    """Build the system prompt for one validation batch."""

    return (
        "You validate and adjust message groupings into atomic units.\n"
        f"You are processing units {batch_start + 1}-{batch_start + unit_count} "
        "which are adjacent in the conversation timeline.\n\n"
        "IMPORTANT: If adjacent units (e.g., U32, U33, U34) discuss the same topic or theme, "
        "they should be MERGED into a single unit.\n"
        "Focus on semantic similarity - units discussing the same concept, question, or topic "
        "should be merged even if there are time gaps between them.\n\n"
        "For each unit:\n"
        "1. Check coherence: Are all messages in this unit about the same topic?\n"
        "2. Check splitting: Does the topic change mid-unit? (split if needed)\n"
        "3. Check merging: Does this unit discuss the same topic as adjacent units in this "
        "batch? (merge if yes)\n\n"
        "Reply with ONLY valid JSON. No markdown, no extra text.\n"
    )


def _describe_unit(unit: Unit, unit_number: int) -> str:
    lines = [
        f'  [{unit_number}.{position}] {message.author}: "{message.content}"'
        for position, message in enumerate(unit.messages, start=1)
    ]
    time_range = ""
    if unit.messages:
        time_range = (
            f" ({format_short_time(unit.messages[0].created_at)} - "
            f"{format_short_time(unit.messages[-1].created_at)})"
        )
    header = f"UNIT {unit_number} [{unit.conversation_name or 'DM'}]{time_range}:"
    return header + "\n" + "\n".join(lines)


def build_unit_validation_user_prompt(*, units: list[Unit], batch_start: int) -> str:
    """Build the user prompt describing one batch of adjacent units."""

    first = batch_start + 1
    last = batch_start + len(units)
    descriptions = "\n\n".join(
        _describe_unit(unit, batch_start + offset + 1) for offset, unit in enumerate(units)
    )
    return (
        f"Validate these {len(units)} adjacent message units (units {first}-{last}):\n\n"
        f"{descriptions}\n\n"
        "For each unit, determine:\n"
        "1. Is it coherent? (all messages same topic)\n"
        "2. Should it split? (topic changes mid-unit)\n"
        "3. Should it merge with adjacent units? (same topic/theme - MERGE if semantically "
        "related)\n\n"
        "PRIORITY: If units are adjacent and discuss the same topic (e.g., continuing a "
        "conversation about the same subject), merge them.\n\n"
        "Reply with ONLY this JSON:\n"
        "{\n"
        '  "analysis": [\n'
        f'    {{"unit": {first}, "action": "keep", "reason": "..."}},\n'
        f'    {{"unit": {first + 1}, "action": "split", "split_after_message": [2], '
        '"reason": "..."},\n'
        f'    {{"unit": {first + 2}, "action": "merge", "merge_with_units": [{first + 3}], '
        '"reason": "..."}\n'
        "  ]\n"
        "}\n\n"
        'Actions: "keep", "split", or "merge"\n'
        "- split: set split_after_message to array of message indices (1-based) where to split\n"
        "- merge: set merge_with_units to array of unit numbers to merge with (can merge "
        "multiple adjacent units)\n"
    )


def _inline_messages(unit: Unit) -> str:
    return " | ".join(f'{message.author}: "{message.content}"' for message in unit.messages)


def build_post_merge_user_prompt(*, units: list[Unit], pairs: list[tuple[int, int]]) -> str:
    """Build the user prompt asking whether each adjacent pair should merge.

    `pairs` holds 0-based positions into `units`; the prompt uses 1-based numbers.
    """

    sections = []
    for left, right in pairs:
        sections.append(
            f"PAIR {left + 1}-{right + 1}:\n"
            f"UNIT {left + 1}: {_inline_messages(units[left])}\n"
            f"UNIT {right + 1}: {_inline_messages(units[right])}"
        )
    first_left = pairs[0][0] + 1
    return (
        f"Check these {len(pairs)} adjacent unit pairs:\n\n"
        + "\n\n".join(sections)
        + "\n\nFor each pair, determine if they should be merged (same topic/theme).\n\n"
        "Reply ONLY:\n"
        "{\n"
        '  "pairs": [\n'
        f'    {{"unit1": {first_left}, "unit2": {first_left + 1}, '
        '"should_merge": true/false, "reason": "..."},\n'
        "    ...\n"
        "  ]\n"
        "}\n"
    )
