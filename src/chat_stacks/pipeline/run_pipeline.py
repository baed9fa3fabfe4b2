"""Orchestration helpers for the stack and segmentation pipelines."""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from chat_stacks.config import Settings, StrategyConfig
from chat_stacks.models import ClassificationOracle, OpenAIOracleClient
from chat_stacks.pipeline.segmentation import SegmentationResult, segment_messages
from chat_stacks.pipeline.single_prompt import segment_messages_single_prompt
from chat_stacks.pipeline.stacks import StackAssignmentResult, assign_stacks
from chat_stacks.pipeline.units import build_atomic_units
from chat_stacks.pipeline.validation import UnitValidationResult, keep_units, validate_units
from chat_stacks.schemas import Message, SpeechAct, Unit

logger = logging.getLogger(__name__)

_NANOID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"


def generate_run_id(size: int = 12) -> str:
    """Generate a nanoid-style run identifier."""

    return "".join(secrets.choice(_NANOID_ALPHABET) for _ in range(size))


def build_oracle_client(settings: Settings) -> OpenAIOracleClient:
    """Build the OpenAI-backed oracle from settings."""

    if not settings.openai_api_key.strip():
        raise ValueError(
            "OPENAI_API_KEY is required to call the classification oracle. "
            "Set it in your environment or .env."
        )
    return OpenAIOracleClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.resolved_openai_base_url() or None,
        temperature=settings.openai_temperature,
        max_retries=settings.client_max_retries,
        backoff_seconds=settings.client_backoff_seconds,
    )


def _oracle_metrics(oracle: ClassificationOracle) -> dict:
    snapshot = getattr(oracle, "metrics_snapshot", None)
    if callable(snapshot):
        return snapshot()
    return {}


def _stage_callback(
    progress_callback: Callable[[int, int, str], None] | None,
    stage: str,
) -> Callable[[int, int], None] | None:
    if progress_callback is None:
        return None

    def _report(done: int, total: int) -> None:
        progress_callback(done, total, stage)

    return _report


@dataclass
class StackPipelineRun:
    """Everything produced by one run of units -> validation -> stacks."""

    run_id: str
    atomic_units: list[Unit]
    validation: UnitValidationResult
    assignment: StackAssignmentResult
    summary: dict = field(default_factory=dict)


@dataclass
class SegmentationRun:
    """Everything produced by one segmentation run."""

    run_id: str
    strategy: str
    result: SegmentationResult
    summary: dict = field(default_factory=dict)


async def run_stack_pipeline_async(
    messages: list[Message],
    oracle: ClassificationOracle,
    *,
    settings: Settings,
    run_id: str | None = None,
    validate: bool = True,
    progress_callback: Callable[[int, int, str], None] | None = None,
) -> StackPipelineRun:
    """Build atomic units, validate them, and assign them to stacks."""

    effective_run_id = run_id or generate_run_id()
    started_at = datetime.now(UTC)

    atomic_units = build_atomic_units(messages)
    if progress_callback is not None:
        progress_callback(len(atomic_units), len(atomic_units), "atomic_units")

    if validate:
        validation = await validate_units(
            atomic_units,
            oracle,
            batch_size=settings.validation_batch_size,
            overlap=settings.validation_batch_overlap,
            max_tokens=settings.validation_max_tokens,
            timeout_ms=settings.oracle_timeout_ms,
            call_delay_seconds=settings.validation_call_delay_seconds,
            pair_chunk_size=settings.post_merge_pair_chunk_size,
            post_merge_max_tokens=settings.post_merge_max_tokens,
            progress_callback=_stage_callback(progress_callback, "validate_units"),
        )
    else:
        validation = UnitValidationResult(units=keep_units(atomic_units))

    assignment = await assign_stacks(
        validation.units,
        oracle,
        max_tokens=settings.stack_max_tokens,
        timeout_ms=settings.oracle_timeout_ms,
        call_delay_seconds=settings.stack_call_delay_seconds,
        progress_callback=_stage_callback(progress_callback, "assign_stacks"),
    )

    summary = {
        "run_id": effective_run_id,
        "pipeline": "stacks",
        "message_count": len(messages),
        "atomic_unit_count": len(atomic_units),
        "validated_unit_count": len(validation.units),
        "stack_count": len(assignment.stacks),
        "validation_error_count": len(validation.errors),
        "stack_error_count": len(assignment.errors),
        "validated": validate,
        "oracle_metrics": _oracle_metrics(oracle),
        "started_at_utc": started_at.isoformat(),
        "completed_at_utc": datetime.now(UTC).isoformat(),
    }
    logger.info(
        "Stack pipeline %s: %d messages -> %d units -> %d validated -> %d stacks.",
        effective_run_id,
        len(messages),
        len(atomic_units),
        len(validation.units),
        len(assignment.stacks),
    )
    return StackPipelineRun(
        run_id=effective_run_id,
        atomic_units=atomic_units,
        validation=validation,
        assignment=assignment,
        summary=summary,
    )


def run_stack_pipeline(
    messages: list[Message],
    *,
    settings: Settings,
    oracle: ClassificationOracle | None = None,
    run_id: str | None = None,
    validate: bool = True,
    progress_callback: Callable[[int, int, str], None] | None = None,
) -> StackPipelineRun:
    """Synchronous entry point for the stack pipeline."""

    client = oracle or build_oracle_client(settings)
    return asyncio.run(
        run_stack_pipeline_async(
            messages,
            client,
            settings=settings,
            run_id=run_id,
            validate=validate,
            progress_callback=progress_callback,
        )
    )


def summarize_segmentation(result: SegmentationResult) -> dict:
    """Count segments, roles and methods in a segmentation result."""

    role_counts = {role.value: 0 for role in SpeechAct}
    method_counts: dict[str, int] = {}
    for annotation in result.annotations:
        role_counts[annotation.role.value] += 1
        method_counts[annotation.method.value] = method_counts.get(annotation.method.value, 0) + 1

    segments = result.segments
    status_counts: dict[str, int] = {}
    for segment in segments:
        status_counts[segment.status.value] = status_counts.get(segment.status.value, 0) + 1

    confidences = [annotation.confidence for annotation in result.annotations]
    return {
        "message_count": len(result.annotations),
        "conversation_count": len(result.conversations),
        "segment_count": len(segments),
        "segment_status_counts": status_counts,
        "role_counts": role_counts,
        "method_counts": method_counts,
        "mean_confidence": (sum(confidences) / len(confidences)) if confidences else 0.0,
        "error_count": len(result.errors),
    }


async def run_segmentation_async(
    messages: list[Message],
    oracle: ClassificationOracle,
    *,
    settings: Settings,
    config: StrategyConfig | None = None,
    run_id: str | None = None,
    progress_callback: Callable[[int, int, str], None] | None = None,
) -> SegmentationRun:
    """Segment messages with the configured strategy."""

    effective_run_id = run_id or generate_run_id()
    strategy_config = config or settings.strategy_config()
    started_at = datetime.now(UTC)

    if strategy_config.strategy == "single-prompt":
        result = await segment_messages_single_prompt(
            messages,
            oracle,
            timeout_ms=settings.oracle_bulk_timeout_ms,
        )
        if progress_callback is not None:
            progress_callback(len(messages), len(messages), "segment_messages")
    else:
        result = await segment_messages(
            messages,
            oracle,
            config=strategy_config,
            max_tokens=settings.segment_max_tokens,
            timeout_ms=settings.oracle_timeout_ms,
            call_delay_seconds=settings.segment_call_delay_seconds,
            progress_callback=_stage_callback(progress_callback, "segment_messages"),
        )

    summary = {
        "run_id": effective_run_id,
        "pipeline": "segmentation",
        "strategy": strategy_config.strategy,
        **summarize_segmentation(result),
        "oracle_metrics": _oracle_metrics(oracle),
        "started_at_utc": started_at.isoformat(),
        "completed_at_utc": datetime.now(UTC).isoformat(),
    }
    return SegmentationRun(
        run_id=effective_run_id,
        strategy=strategy_config.strategy,
        result=result,
        summary=summary,
    )


def run_segmentation(
    messages: list[Message],
    *,
    settings: Settings,
    oracle: ClassificationOracle | None = None,
    config: StrategyConfig | None = None,
    run_id: str | None = None,
    progress_callback: Callable[[int, int, str], None] | None = None,
) -> SegmentationRun:
    """Synchronous entry point for the segmentation pipeline."""

    client = oracle or build_oracle_client(settings)
    return asyncio.run(
        run_segmentation_async(
            messages,
            client,
            settings=settings,
            config=config,
            run_id=run_id,
            progress_callback=progress_callback,
        )
    )
