"""Prompt builders for chat-stacks oracle calls."""

from chat_stacks.prompts.segment_prompts import (
    NEW_SEGMENT_LABEL,
    PREVIOUS_TOPIC_SYSTEM_PROMPT,
    SEGMENTATION_SYSTEM_PROMPT,
    SINGLE_PROMPT_SYSTEM_PROMPT,
    build_hybrid_prompt,
    build_previous_centric_prompt,
    build_segment_centric_prompt,
    build_single_prompt_user_prompt,
    format_time_gap,
    segment_label,
    segment_label_index,
)
from chat_stacks.prompts.stack_prompts import (
    STACK_ASSIGNMENT_SYSTEM_PROMPT,
    build_stack_assignment_user_prompt,
)
from chat_stacks.prompts.unit_prompts import (
    POST_MERGE_SYSTEM_PROMPT,
    build_post_merge_user_prompt,
    build_unit_validation_system_prompt,
    build_unit_validation_user_prompt,
)

__all__ = [
    "NEW_SEGMENT_LABEL",
    "POST_MERGE_SYSTEM_PROMPT",
    "PREVIOUS_TOPIC_SYSTEM_PROMPT",
    "SEGMENTATION_SYSTEM_PROMPT",
    "SINGLE_PROMPT_SYSTEM_PROMPT",
    "STACK_ASSIGNMENT_SYSTEM_PROMPT",
    "build_hybrid_prompt",
    "build_post_merge_user_prompt",
    "build_previous_centric_prompt",
    "build_segment_centric_prompt",
    "build_single_prompt_user_prompt",
    "build_stack_assignment_user_prompt",
    "build_unit_validation_system_prompt",
    "build_unit_validation_user_prompt",
    "format_time_gap",
    "segment_label",
    "segment_label_index",
]
