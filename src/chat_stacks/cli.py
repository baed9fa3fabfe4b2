"""CLI entrypoint for chat-stacks."""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from chat_stacks import __version__
from chat_stacks.config import Settings
from chat_stacks.io import MessageDatasetError, load_messages, validate_messages_file
from chat_stacks.pipeline import (
    build_atomic_units,
    run_segmentation,
    run_stack_pipeline,
)
from chat_stacks.viz import build_segment_export, build_stack_export

_STRATEGIES = ("segment-centric", "previous-centric", "hybrid", "single-prompt")


def _format_duration(seconds: float) -> str:
    if seconds < 0 or not (seconds < float("inf")):
        return "--:--"
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class _EtaProgressPrinter:
    """Print throttled progress updates with elapsed time and ETA to stderr."""

    def __init__(self, label: str, *, min_interval_seconds: float = 2.0) -> None:
        self._label = label
        self._started_at = time.perf_counter()
        self._last_print_at = 0.0
        self._last_done = -1
        self._last_bucket = -1
        self._last_detail = ""
        self._min_interval_seconds = min_interval_seconds

    def __call__(self, done: int, total: int, detail: str = "") -> None:
        if detail != self._last_detail:
            self._last_done = -1
            self._last_bucket = -1
            self._last_detail = detail

        capped_total = max(total, 1)
        capped_done = max(0, min(done, capped_total))
        now = time.perf_counter()
        elapsed = max(0.0, now - self._started_at)
        percent = capped_done / capped_total
        bucket = int(percent * 10)

        should_print = (
            capped_done == 1
            or capped_done >= capped_total
            or bucket > self._last_bucket
            or (now - self._last_print_at) >= self._min_interval_seconds
        )
        if not should_print or capped_done == self._last_done:
            return

        eta = float("inf")
        if capped_done > 0 and elapsed > 0:
            rate = capped_done / elapsed
            if rate > 0:
                eta = (capped_total - capped_done) / rate

        suffix = f" | {detail}" if detail else ""
        print(
            "    "
            f"{self._label}: {capped_done}/{capped_total} ({percent:.0%}) "
            f"| elapsed {_format_duration(elapsed)} | ETA {_format_duration(eta)}"
            f"{suffix}",
            file=sys.stderr,
        )
        self._last_print_at = now
        self._last_done = capped_done
        self._last_bucket = bucket


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chat-stacks",
        description="Group chat messages into conversational units, topical stacks and segments",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=str,
        default="configs/default.yaml",
        help="Path to YAML config file (default: configs/default.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for pipeline diagnostics (default: WARNING).",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("info", help="Show current configuration")

    validate_parser = sub.add_parser(
        "validate-input",
        help="Validate a message JSON/JSONL file against the canonical message contract.",
    )
    validate_parser.add_argument(
        "--input",
        type=str,
        default=None,
        help="Path to message JSON or JSONL. Defaults to configured input_messages_path.",
    )
    validate_parser.add_argument(
        "--max-errors",
        type=int,
        default=100,
        help="Maximum detailed record-level errors to retain in report output.",
    )
    validate_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full validation report as JSON.",
    )

    units_parser = sub.add_parser(
        "units",
        help="Build atomic units with the deterministic heuristics (no oracle calls).",
    )
    units_parser.add_argument("--input", type=str, default=None, help="Message file path.")
    units_parser.add_argument("--limit", type=int, default=None, help="Only load N messages.")

    stacks_parser = sub.add_parser(
        "stacks",
        help="Run units -> validation -> stack assignment and print the stack export.",
    )
    stacks_parser.add_argument("--input", type=str, default=None, help="Message file path.")
    stacks_parser.add_argument("--limit", type=int, default=None, help="Only load N messages.")
    stacks_parser.add_argument(
        "--skip-validation",
        action="store_true",
        help="Assign atomic units directly, without oracle validation.",
    )
    stacks_parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override validation batch size for this run.",
    )
    stacks_parser.add_argument(
        "--batch-overlap",
        type=int,
        default=None,
        help="Override validation batch overlap for this run.",
    )

    segment_parser = sub.add_parser(
        "segment",
        help="Run per-message segmentation and print the segment export.",
    )
    segment_parser.add_argument("--input", type=str, default=None, help="Message file path.")
    segment_parser.add_argument("--limit", type=int, default=None, help="Only load N messages.")
    segment_parser.add_argument(
        "--strategy",
        type=str,
        default=None,
        choices=list(_STRATEGIES),
        help="Override segmentation strategy for this run.",
    )
    segment_parser.add_argument(
        "--staleness-threshold",
        type=float,
        default=None,
        help="Hybrid strategy: minutes after which a segment counts as stale.",
    )
    segment_parser.add_argument(
        "--max-segments",
        type=int,
        default=None,
        help="Hybrid strategy: maximum number of segments shown to the oracle.",
    )
    segment_parser.add_argument(
        "--summary-only",
        action="store_true",
        help="Print only the run summary, not the segment export.",
    )

    return parser


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _print_json(payload: dict | list[dict]) -> None:
    """Pretty-print JSON payload."""

    print(json.dumps(payload, indent=2, ensure_ascii=True))


def _resolve_dataset_path(settings: Settings, args: argparse.Namespace) -> Path:
    """Resolve effective dataset path for this invocation."""

    if getattr(args, "input", None):
        return Path(args.input).expanduser()
    return settings.input_messages_path


def _load_or_exit(settings: Settings, args: argparse.Namespace) -> list:
    dataset_path = _resolve_dataset_path(settings, args)
    try:
        return load_messages(dataset_path, limit=getattr(args, "limit", None))
    except MessageDatasetError as exc:
        print(f"Could not load messages: {exc}", file=sys.stderr)
        sys.exit(1)
    except ValueError as exc:
        print(f"Invalid load options: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_info(settings: Settings) -> None:
    print(f"chat-stacks v{__version__}")
    print(f"  OpenAI model:       {settings.openai_model}")
    print(f"  OpenAI base URL:    {settings.resolved_openai_base_url() or '(default OpenAI)'}")
    print(f"  Key source:         {settings.resolved_openai_key_source()}")
    print(f"  OpenAI temp:        {settings.openai_temperature}")
    print(f"  Client retries:     {settings.client_max_retries}")
    print(f"  Backoff seconds:    {settings.client_backoff_seconds}")
    print(f"  Oracle timeout ms:  {settings.oracle_timeout_ms}")
    print(f"  Bulk timeout ms:    {settings.oracle_bulk_timeout_ms}")
    print(f"  Batch size:         {settings.validation_batch_size}")
    print(f"  Batch overlap:      {settings.validation_batch_overlap}")
    print(f"  Pair chunk size:    {settings.post_merge_pair_chunk_size}")
    print(f"  Strategy:           {settings.segmentation_strategy}")
    print(f"  Staleness minutes:  {settings.staleness_threshold_minutes}")
    print(f"  Max segments shown: {settings.max_segments_to_show}")
    print(f"  Prefer previous:    {settings.prefer_previous_message}")
    print(f"  Recent window:      {settings.recent_window_size}")
    print(f"  Input file:         {settings.input_messages_path}")


def cmd_validate_input(settings: Settings, args: argparse.Namespace) -> None:
    """Validate message input format and print a report."""

    input_path = _resolve_dataset_path(settings, args)
    try:
        report = validate_messages_file(input_path, max_errors=args.max_errors)
    except MessageDatasetError as exc:
        print(f"Input validation failed: {exc}")
        sys.exit(1)
    except ValueError as exc:
        print(f"Input validation configuration error: {exc}")
        sys.exit(1)

    if args.json:
        _print_json(report.to_dict())
        if not report.is_valid:
            sys.exit(1)
        return

    print("Input validation complete.")
    print(f"  Schema version:   {report.schema_version}")
    print(f"  Input path:       {report.input_path}")
    print(f"  Format:           {report.input_format}")
    print(f"  Records:          {report.record_count}")
    print(f"  Valid messages:   {report.valid_message_count}")
    print(f"  Invalid records:  {report.invalid_record_count}")
    print(f"  Duplicate IDs:    {report.duplicate_message_id_count}")
    print(f"  Conversations:    {report.summary.conversation_count}")
    print(f"  Authors:          {report.summary.author_count}")
    print(f"  Thread replies:   {report.summary.thread_reply_count}")
    print(f"  Reactions:        {report.summary.reaction_count}")

    if report.is_valid:
        print("Validation passed: input matches the message contract.")
        return

    print("Validation failed: fix input errors before running the pipeline.")
    if report.errors:
        print("  Sample errors:")
        for item in report.errors[:5]:
            print(f"    - record {item.record_number} [{item.code}] {item.message}")
        if report.dropped_error_count > 0:
            print(
                "    - "
                f"... {report.dropped_error_count} additional errors omitted "
                f"(max-errors={args.max_errors})."
            )
    sys.exit(1)


def cmd_units(settings: Settings, args: argparse.Namespace) -> None:
    """Print atomic units built without any oracle calls."""

    messages = _load_or_exit(settings, args)
    units = build_atomic_units(messages)
    _print_json(
        {
            "message_count": len(messages),
            "unit_count": len(units),
            "units": [
                {
                    "index": unit.index,
                    "conversationName": unit.conversation_name,
                    "authors": unit.authors,
                    "startTime": unit.start_time.isoformat(),
                    "endTime": unit.end_time.isoformat(),
                    "messageIds": unit.message_ids,
                }
                for unit in units
            ],
        }
    )


def cmd_stacks(settings: Settings, args: argparse.Namespace) -> None:
    """Run the stack pipeline and print the export payload plus a summary."""

    if args.batch_size is not None:
        settings.validation_batch_size = args.batch_size
    if args.batch_overlap is not None:
        settings.validation_batch_overlap = args.batch_overlap

    messages = _load_or_exit(settings, args)
    try:
        run = run_stack_pipeline(
            messages,
            settings=settings,
            validate=not args.skip_validation,
            progress_callback=_EtaProgressPrinter("Stacks"),
        )
    except ValueError as exc:
        print(f"Stack pipeline failed: {exc}", file=sys.stderr)
        sys.exit(2)

    payload = build_stack_export(run.assignment.stacks)
    payload["summary"] = run.summary
    payload["errors"] = [*run.validation.errors, *run.assignment.errors]
    _print_json(payload)


def cmd_segment(settings: Settings, args: argparse.Namespace) -> None:
    """Run per-message segmentation and print the export payload plus a summary."""

    if args.strategy is not None:
        settings.segmentation_strategy = args.strategy
    if args.staleness_threshold is not None:
        settings.staleness_threshold_minutes = args.staleness_threshold
    if args.max_segments is not None:
        settings.max_segments_to_show = args.max_segments

    messages = _load_or_exit(settings, args)
    try:
        run = run_segmentation(
            messages,
            settings=settings,
            progress_callback=_EtaProgressPrinter("Segments"),
        )
    except ValueError as exc:
        print(f"Segmentation failed: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.summary_only:
        _print_json(run.summary)
        return

    payload = build_segment_export(
        run.result.segments,
        run.result.annotations,
        now=max(message.created_at for message in messages),
        stale_after_minutes=settings.staleness_threshold_minutes,
    )
    payload["summary"] = run.summary
    payload["errors"] = run.result.errors
    _print_json(payload)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    _configure_logging(args.log_level)

    settings = Settings.from_yaml(args.config)

    if args.command == "info":
        cmd_info(settings)
    elif args.command == "validate-input":
        cmd_validate_input(settings, args)
    elif args.command == "units":
        cmd_units(settings, args)
    elif args.command == "stacks":
        cmd_stacks(settings, args)
    elif args.command == "segment":
        cmd_segment(settings, args)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
