"""Pipeline stage implementations."""

from chat_stacks.pipeline.run_pipeline import (
    build_oracle_client,
    generate_run_id,
    run_segmentation,
    run_segmentation_async,
    run_stack_pipeline,
    run_stack_pipeline_async,
    summarize_segmentation,
)
from chat_stacks.pipeline.segmentation import (
    ConversationState,
    InvalidReferenceError,
    SegmentationError,
    SegmentationResult,
    normalize_classification,
    segment_messages,
)
from chat_stacks.pipeline.single_prompt import segment_messages_single_prompt
from chat_stacks.pipeline.stacks import StackAssignmentResult, assign_stacks
from chat_stacks.pipeline.units import build_atomic_units, is_continuation_signal, is_reply_like
from chat_stacks.pipeline.validation import (
    UnitValidationError,
    UnitValidationResult,
    post_merge_adjacent_units,
    validate_units,
)

__all__ = [
    "ConversationState",
    "InvalidReferenceError",
    "SegmentationError",
    "SegmentationResult",
    "StackAssignmentResult",
    "UnitValidationError",
    "UnitValidationResult",
    "assign_stacks",
    "build_atomic_units",
    "build_oracle_client",
    "generate_run_id",
    "is_continuation_signal",
    "is_reply_like",
    "normalize_classification",
    "post_merge_adjacent_units",
    "run_segmentation",
    "run_segmentation_async",
    "run_stack_pipeline",
    "run_stack_pipeline_async",
    "segment_messages",
    "segment_messages_single_prompt",
    "summarize_segmentation",
    "validate_units",
]
