"""Export helpers for downstream viewers."""

from chat_stacks.viz.export import build_segment_export, build_stack_export, derive_segment_status

__all__ = [
    "build_segment_export",
    "build_stack_export",
    "derive_segment_status",
]
