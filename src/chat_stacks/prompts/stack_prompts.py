"""Prompts for greedy stack assignment."""

from __future__ import annotations

from chat_stacks.schemas import Stack, Unit

STACK_ASSIGNMENT_SYSTEM_PROMPT = """You assign message units to stacks based on semantic topic similarity.
IMPORTANT: Units can be semantically related even if they are far apart in time.
Focus on whether they discuss the same topic, concept, or theme - not just temporal proximity.
If a unit discusses the same topic as an existing stack, join it even if the messages are hours or days apart.

Reply with ONLY valid JSON. No markdown, no extra text.
"""

FULL_STACK_MESSAGE_LIMIT = 10
STACK_HEAD_MESSAGES = 5
STACK_TAIL_MESSAGES = 2


def _describe_stack(stack: Stack, number: int) -> str:
    total = len(stack.messages)
    if total <= FULL_STACK_MESSAGE_LIMIT:
        shown = stack.messages
    else:
        shown = stack.messages[:STACK_HEAD_MESSAGES] + stack.messages[-STACK_TAIL_MESSAGES:]

    sample = "\n".join(f'    {message.author}: "{message.content}"' for message in shown)
    more = ""
    if total > len(shown):
        more = f"\n    ... ({total - len(shown)} more messages)"
    return (
        f'STACK {number}: "{stack.title}"\n'
        f"  {stack.summary}\n"
        f"  Messages ({total} total):\n"
        f"{sample}{more}"
    )


def build_stack_assignment_user_prompt(*, unit: Unit, stacks: list[Stack]) -> str:
    """Build the prompt asking whether a unit joins an existing stack or creates one."""

    if stacks:
        stacks_text = "\n\n".join(
            _describe_stack(stack, number) for number, stack in enumerate(stacks, start=1)
        )
    else:
        stacks_text = "(none yet - create new)"

    unit_lines = "\n".join(f'  {message.author}: "{message.content}"' for message in unit.messages)
    return (
        f"NEW UNIT [{unit.conversation_name or 'DM'}]:\n"
        f"{unit_lines}\n\n"
        "EXISTING STACKS:\n"
        f"{stacks_text}\n\n"
        "Does this unit discuss the same topic as any existing stack?\n"
        "- If YES: join the most semantically similar stack (even if messages are far apart "
        "in time)\n"
        "- If NO: create a new stack\n\n"
        "Reply ONLY:\n"
        '{"action": "join" or "create", "stack_index": <number if join>, '
        '"title": "<50 chars>", "summary": "<150 chars>"}\n'
    )
