"""Oracle-assisted unit validation with overlapping batches and a post-merge pass."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, ValidationError

from chat_stacks.models import ClassificationOracle, OracleError, ask_oracle_json
from chat_stacks.parsing import OracleResponseParseError
from chat_stacks.pipeline.units import build_unit
from chat_stacks.prompts import (
    POST_MERGE_SYSTEM_PROMPT,
    build_post_merge_user_prompt,
    build_unit_validation_system_prompt,
    build_unit_validation_user_prompt,
)
from chat_stacks.schemas import Message, Unit, ValidatedUnit

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_OVERLAP = 3
DEFAULT_PAIR_CHUNK_SIZE = 20


class UnitValidationError(ValueError):
    """Raised when unit validation is configured with invalid parameters."""


class _UnitAnalysisItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    unit: int
    action: str | None = None
    split_after_message: list[int] | None = None
    merge_with_units: list[int] | None = None
    reason: str | None = None

    @property
    def normalized_action(self) -> str:
        return (self.action or "keep").strip().lower()


class _MergePairItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    unit1: int
    unit2: int
    should_merge: bool | None = None
    reason: str | None = None


class _MergePairPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pairs: list[_MergePairItem] | None = None


@dataclass(frozen=True)
class BatchOutcome:
    """Validated units produced for a set of original unit indices by one batch."""

    key: str
    members: tuple[int, ...]
    units: list[ValidatedUnit]


@dataclass
class UnitValidationResult:
    """Output of `validate_units`."""

    units: list[ValidatedUnit]
    batch_reports: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


def _as_validated(unit: Unit, **provenance) -> ValidatedUnit:
    return ValidatedUnit(
        id=unit.id,
        index=unit.index,
        messages=list(unit.messages),
        authors=list(unit.authors),
        conversation_id=unit.conversation_id,
        conversation_name=unit.conversation_name,
        start_time=unit.start_time,
        end_time=unit.end_time,
        **provenance,
    )


def _merge_messages(units: Sequence[Unit]) -> list[Message]:
    return sorted(
        (message for unit in units for message in unit.messages),
        key=lambda item: item.created_at,
    )


def _keep_outcome(unit: Unit, original_index: int) -> BatchOutcome:
    return BatchOutcome(
        key=f"unit:{original_index}",
        members=(original_index,),
        units=[_as_validated(unit, original_index=original_index)],
    )


def _merged_outcome(units: Sequence[Unit], members: Sequence[int]) -> BatchOutcome:
    merged = _as_validated(
        build_unit(_merge_messages(units), 0),
        merged_from=list(members),
    )
    return BatchOutcome(key=f"merge:{merged.id}", members=tuple(members), units=[merged])


def keep_units(units: Sequence[Unit]) -> list[ValidatedUnit]:
    """Promote atomic units to validated units unchanged."""

    return [_as_validated(unit, original_index=index) for index, unit in enumerate(units)]


def compute_batch_starts(unit_count: int, *, batch_size: int, overlap: int) -> list[int]:
    """Return the start offsets of overlapping batches covering `unit_count` units."""

    if batch_size <= 0:
        raise UnitValidationError(f"batch_size must be positive, got {batch_size}.")
    if overlap < 0:
        raise UnitValidationError(f"overlap must be non-negative, got {overlap}.")
    if overlap >= batch_size:
        raise UnitValidationError(
            f"overlap must be smaller than batch_size, got {overlap} >= {batch_size}."
        )
    return list(range(0, unit_count, batch_size - overlap))


def _parse_analysis(analysis: Sequence[dict | _UnitAnalysisItem]) -> list[_UnitAnalysisItem]:
    items: list[_UnitAnalysisItem] = []
    for raw in analysis:
        if isinstance(raw, _UnitAnalysisItem):
            items.append(raw)
            continue
        try:
            items.append(_UnitAnalysisItem.model_validate(raw))
        except ValidationError as exc:
            logger.debug("Ignoring malformed unit analysis item %r: %s", raw, exc)
    return items


def _merge_components(items: list[_UnitAnalysisItem], batch_start: int, size: int) -> list[list[int]]:
    """Collapse merge directives into connected components of batch-local indices."""

    parent = list(range(size))

    def _find(node: int) -> int:
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = parent[node]
        return node

    for item in items:
        if item.normalized_action != "merge" or not item.merge_with_units:
            continue
        local = [item.unit - batch_start - 1]
        local.extend(number - batch_start - 1 for number in item.merge_with_units)
        valid = sorted({index for index in local if 0 <= index < size})
        for index in valid[1:]:
            parent[_find(index)] = _find(valid[0])

    groups: dict[int, list[int]] = {}
    for index in range(size):
        groups.setdefault(_find(index), []).append(index)
    return [members for members in groups.values() if len(members) > 1]


def apply_batch_adjustments(
    units: Sequence[Unit],
    analysis: Sequence[dict | _UnitAnalysisItem],
    batch_start: int,
) -> list[BatchOutcome]:
    """Apply one batch's keep/split/merge directives.

    Unit numbers in `analysis` are 1-based positions in the full unit list. Outcome
    members are 0-based original indices.
    """

    items = _parse_analysis(analysis)
    item_by_number: dict[int, _UnitAnalysisItem] = {}
    for item in items:
        item_by_number.setdefault(item.unit, item)

    component_of: dict[int, list[int]] = {}
    for members in _merge_components(items, batch_start, len(units)):
        for local_index in members:
            component_of[local_index] = members

    outcomes: list[BatchOutcome] = []
    for local_index, unit in enumerate(units):
        original_index = batch_start + local_index
        component = component_of.get(local_index)
        if component is not None:
            if local_index == component[0]:
                outcomes.append(
                    _merged_outcome(
                        [units[member] for member in component],
                        [batch_start + member for member in component],
                    )
                )
            continue

        item = item_by_number.get(original_index + 1)
        split_points: list[int] = []
        if item is not None and item.normalized_action == "split":
            split_points = sorted(
                {point for point in item.split_after_message or [] if 0 < point < len(unit.messages)}
            )
        if not split_points:
            outcomes.append(_keep_outcome(unit, original_index))
            continue

        pieces: list[ValidatedUnit] = []
        start = 0
        for split_at in [*split_points, len(unit.messages)]:
            pieces.append(
                _as_validated(
                    build_unit(unit.messages[start:split_at], 0),
                    split_from=original_index,
                    split_range=(start + 1, split_at),
                )
            )
            start = split_at
        outcomes.append(
            BatchOutcome(key=f"split:{original_index}", members=(original_index,), units=pieces)
        )

    return outcomes


def reconcile_batch_outcomes(
    units: Sequence[Unit],
    results: dict[int, BatchOutcome],
) -> list[ValidatedUnit]:
    """Build one reindexed unit list from per-index outcomes.

    `results` maps each original index to the outcome of the last batch that
    covered it. A merged outcome that lost members to a later batch is rebuilt
    from its surviving members so every message appears exactly once.
    """

    validated: list[ValidatedUnit] = []
    emitted: set[str] = set()
    for original_index, unit in enumerate(units):
        outcome = results.get(original_index) or _keep_outcome(unit, original_index)
        if outcome.key in emitted:
            continue
        emitted.add(outcome.key)

        produced = outcome.units
        if len(outcome.members) > 1:
            live = [
                member
                for member in outcome.members
                if member in results and results[member].key == outcome.key
            ]
            if len(live) == 1:
                produced = _keep_outcome(units[live[0]], live[0]).units
            elif len(live) < len(outcome.members):
                produced = _merged_outcome([units[member] for member in live], live).units

        for item in produced:
            validated.append(item.model_copy(update={"index": len(validated)}))
    return validated


def _collapse_merge_chains(
    units: Sequence[ValidatedUnit],
    forward: dict[int, int],
) -> list[ValidatedUnit]:
    """Collapse i -> i+1 merge links into single units, reindexed."""

    result: list[ValidatedUnit] = []
    consumed: set[int] = set()
    for position, unit in enumerate(units):
        if position in consumed:
            continue
        chain = [position]
        cursor = position
        while cursor in forward and forward[cursor] not in consumed:
            cursor = forward[cursor]
            chain.append(cursor)
            consumed.add(cursor)

        if len(chain) == 1:
            result.append(unit.model_copy(update={"index": len(result)}))
            continue

        members = [units[member] for member in chain]
        provenance = sorted({index for member in members for index in member.provenance()})
        merged = _as_validated(
            build_unit(_merge_messages(members), len(result)),
            merged_from=provenance,
        )
        result.append(merged)
    return result


async def post_merge_adjacent_units(
    units: Sequence[ValidatedUnit],
    oracle: ClassificationOracle,
    *,
    chunk_size: int = DEFAULT_PAIR_CHUNK_SIZE,
    max_tokens: int = 1000,
    timeout_ms: int = 120_000,
    call_delay_seconds: float = 0.2,
) -> tuple[list[ValidatedUnit], list[dict]]:
    """Ask the oracle about every adjacent pair and merge the confirmed chains."""

    if chunk_size <= 0:
        raise UnitValidationError(f"chunk_size must be positive, got {chunk_size}.")
    if len(units) <= 1:
        return [unit.model_copy(update={"index": index}) for index, unit in enumerate(units)], []

    forward: dict[int, int] = {}
    errors: list[dict] = []
    chunk_starts = list(range(0, len(units) - 1, chunk_size))
    for chunk_number, start in enumerate(chunk_starts):
        end = min(start + chunk_size, len(units) - 1)
        pairs = [(left, left + 1) for left in range(start, end)]
        try:
            payload = await ask_oracle_json(
                oracle,
                system_prompt=POST_MERGE_SYSTEM_PROMPT,
                user_prompt=build_post_merge_user_prompt(units=list(units), pairs=pairs),
                max_tokens=max_tokens,
                timeout_ms=timeout_ms,
            )
            parsed = _MergePairPayload.model_validate(payload)
        except (OracleError, OracleResponseParseError, ValidationError) as exc:
            logger.warning("Post-merge chunk %d failed, no merges recorded: %s", chunk_number, exc)
            errors.append(
                {
                    "stage": "post_merge",
                    "chunk_index": chunk_number,
                    "chunk_start": start,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            )
        else:
            for pair in parsed.pairs or []:
                left = pair.unit1 - 1
                right = pair.unit2 - 1
                if pair.should_merge and left >= 0 and right < len(units) and right == left + 1:
                    forward[left] = right

        if call_delay_seconds > 0 and chunk_number < len(chunk_starts) - 1:
            await asyncio.sleep(call_delay_seconds)

    merged = _collapse_merge_chains(units, forward)
    logger.info(
        "Post-merge pass merged %d adjacent pairs: %d -> %d units.",
        len(forward),
        len(units),
        len(merged),
    )
    return merged, errors


async def validate_units(
    units: Sequence[Unit],
    oracle: ClassificationOracle,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    overlap: int = DEFAULT_BATCH_OVERLAP,
    max_tokens: int = 2000,
    timeout_ms: int = 120_000,
    call_delay_seconds: float = 0.2,
    post_merge: bool = True,
    pair_chunk_size: int = DEFAULT_PAIR_CHUNK_SIZE,
    post_merge_max_tokens: int = 1000,
    progress_callback: Callable[[int, int], None] | None = None,
) -> UnitValidationResult:
    """Validate atomic units in overlapping oracle batches, then merge across boundaries.

    The last batch processed wins for any index covered by several batches. A batch
    whose oracle call fails keeps its units unchanged, unless an earlier batch
    already decided them.
    """

    starts = compute_batch_starts(len(units), batch_size=batch_size, overlap=overlap)
    results: dict[int, BatchOutcome] = {}
    reports: list[dict] = []
    errors: list[dict] = []
    total_steps = len(starts) + (1 if post_merge else 0)

    for batch_index, batch_start in enumerate(starts):
        batch = list(units[batch_start : batch_start + batch_size])
        try:
            payload = await ask_oracle_json(
                oracle,
                system_prompt=build_unit_validation_system_prompt(
                    batch_start=batch_start, unit_count=len(batch)
                ),
                user_prompt=build_unit_validation_user_prompt(units=batch, batch_start=batch_start),
                max_tokens=max_tokens,
                timeout_ms=timeout_ms,
            )
        except (OracleError, OracleResponseParseError) as exc:
            logger.warning("Validation batch %d failed, keeping its units: %s", batch_index, exc)
            for offset, unit in enumerate(batch):
                results.setdefault(batch_start + offset, _keep_outcome(unit, batch_start + offset))
            errors.append(
                {
                    "stage": "validation",
                    "batch_index": batch_index,
                    "batch_start": batch_start,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            )
            reports.append(
                {
                    "batch_index": batch_index,
                    "batch_start": batch_start,
                    "input_count": len(batch),
                    "output_count": len(batch),
                    "analysis": [],
                    "error": str(exc),
                }
            )
        else:
            raw_analysis = payload.get("analysis")
            analysis = raw_analysis if isinstance(raw_analysis, list) else []
            outcomes = apply_batch_adjustments(batch, analysis, batch_start)
            for outcome in outcomes:
                for member in outcome.members:
                    results[member] = outcome
            reports.append(
                {
                    "batch_index": batch_index,
                    "batch_start": batch_start,
                    "input_count": len(batch),
                    "output_count": sum(len(outcome.units) for outcome in outcomes),
                    "analysis": [item.model_dump() for item in _parse_analysis(analysis)],
                    "error": None,
                }
            )

        if progress_callback is not None:
            progress_callback(batch_index + 1, total_steps)
        if call_delay_seconds > 0 and batch_index < len(starts) - 1:
            await asyncio.sleep(call_delay_seconds)

    validated = reconcile_batch_outcomes(units, results)
    logger.info("Batch validation produced %d units from %d.", len(validated), len(units))

    if post_merge:
        validated, merge_errors = await post_merge_adjacent_units(
            validated,
            oracle,
            chunk_size=pair_chunk_size,
            max_tokens=post_merge_max_tokens,
            timeout_ms=timeout_ms,
            call_delay_seconds=call_delay_seconds,
        )
        errors.extend(merge_errors)
        if progress_callback is not None:
            progress_callback(total_steps, total_steps)

    return UnitValidationResult(units=validated, batch_reports=reports, errors=errors)
