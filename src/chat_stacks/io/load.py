"""Loaders for canonical chat message datasets."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from chat_stacks.schemas import Message

INPUT_SCHEMA_VERSION = "1.0.0"


class MessageDatasetError(ValueError):
    """Raised when a message dataset fails schema or integrity checks."""


@dataclass(frozen=True)
class DatasetSummary:
    """Aggregate summary for a set of messages."""

    message_count: int
    conversation_count: int
    author_count: int
    thread_reply_count: int
    reaction_count: int
    first_message_at: str | None
    last_message_at: str | None


@dataclass(frozen=True)
class ValidationErrorRecord:
    """One validation error discovered while scanning an input file."""

    record_number: int
    code: str
    message: str


@dataclass(frozen=True)
class InputValidationReport:
    """Validation results for a message dataset file."""

    schema_version: str
    input_path: str
    input_format: str
    record_count: int
    valid_message_count: int
    invalid_record_count: int
    duplicate_message_id_count: int
    error_count: int
    dropped_error_count: int
    is_valid: bool
    summary: DatasetSummary
    errors: list[ValidationErrorRecord]

    def to_dict(self) -> dict:
        """Render report as a JSON-serializable dictionary."""

        return {
            "schema_version": self.schema_version,
            "input_path": self.input_path,
            "input_format": self.input_format,
            "record_count": self.record_count,
            "valid_message_count": self.valid_message_count,
            "invalid_record_count": self.invalid_record_count,
            "duplicate_message_id_count": self.duplicate_message_id_count,
            "error_count": self.error_count,
            "dropped_error_count": self.dropped_error_count,
            "is_valid": self.is_valid,
            "summary": asdict(self.summary),
            "errors": [asdict(item) for item in self.errors],
        }


def _input_format(path: Path) -> str:
    return "jsonl" if path.suffix.lower() == ".jsonl" else "json"


def _iter_records(path: Path) -> Iterator[tuple[int, object, json.JSONDecodeError | None]]:
    """Yield `(record_number, payload, decode_error)` triples.

    JSON files hold either a list of messages or an object with a `messages` list;
    a JSON file that does not decode yields a single error triple. JSONL files hold
    one message object per non-empty line and report decode errors per line.
    """

    if _input_format(path) == "jsonl":
        with path.open(encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    yield line_number, json.loads(stripped), None
                except json.JSONDecodeError as exc:
                    yield line_number, None, exc
        return

    with path.open(encoding="utf-8") as handle:
        try:
            payload = json.load(handle)
        except json.JSONDecodeError as exc:
            yield exc.lineno, None, exc
            return
    if isinstance(payload, dict) and isinstance(payload.get("messages"), list):
        payload = payload["messages"]
    if not isinstance(payload, list):
        raise MessageDatasetError(
            f"Expected a list of messages in {path}, got {type(payload).__name__}."
        )
    for record_number, item in enumerate(payload, start=1):
        yield record_number, item, None


def validate_messages_file(
    path: str | Path,
    *,
    max_errors: int = 100,
) -> InputValidationReport:
    """Scan a dataset and return a detailed validation report.

    Unlike `load_messages`, this function does not stop at the first error.
    """

    if max_errors < 0:
        raise ValueError(f"max_errors must be >= 0, got {max_errors}.")

    file_path = Path(path)
    if not file_path.exists():
        raise MessageDatasetError(f"Message file does not exist: {file_path}")

    record_count = 0
    duplicate_message_id_count = 0
    total_error_count = 0
    dropped_error_count = 0
    errors: list[ValidationErrorRecord] = []
    messages: list[Message] = []
    seen_ids: set[str] = set()

    def _record_error(*, record_number: int, code: str, message: str) -> None:
        nonlocal total_error_count, dropped_error_count
        total_error_count += 1
        if len(errors) < max_errors:
            errors.append(ValidationErrorRecord(record_number=record_number, code=code, message=message))
        else:
            dropped_error_count += 1

    try:
        records = list(_iter_records(file_path))
    except MessageDatasetError as exc:
        records = []
        _record_error(record_number=0, code="invalid_container", message=str(exc))

    for record_number, payload, decode_error in records:
        record_count += 1
        if decode_error is not None:
            _record_error(record_number=record_number, code="invalid_json", message=decode_error.msg)
            continue
        if not isinstance(payload, dict):
            _record_error(
                record_number=record_number,
                code="non_object_record",
                message=f"Expected JSON object, got {type(payload).__name__}.",
            )
            continue

        try:
            message = Message.model_validate(payload)
        except ValidationError as exc:
            _record_error(
                record_number=record_number,
                code="schema_validation_failed",
                message=str(exc),
            )
            continue

        if message.id in seen_ids:
            duplicate_message_id_count += 1
            _record_error(
                record_number=record_number,
                code="duplicate_message_id",
                message=f"Duplicate message id '{message.id}' in dataset.",
            )
            continue

        seen_ids.add(message.id)
        messages.append(message)

    if record_count == 0 and total_error_count == 0:
        _record_error(
            record_number=0,
            code="empty_dataset",
            message=f"No messages found in {file_path}.",
        )

    invalid_record_count = record_count - len(messages)
    return InputValidationReport(
        schema_version=INPUT_SCHEMA_VERSION,
        input_path=str(file_path),
        input_format=_input_format(file_path),
        record_count=record_count,
        valid_message_count=len(messages),
        invalid_record_count=invalid_record_count,
        duplicate_message_id_count=duplicate_message_id_count,
        error_count=total_error_count,
        dropped_error_count=dropped_error_count,
        is_valid=total_error_count == 0,
        summary=summarize_messages(messages),
        errors=errors,
    )


def load_messages(path: str | Path, *, limit: int | None = None) -> list[Message]:
    """Load and validate messages from a JSON or JSONL file.

    Message ids must be unique. The returned list keeps file order; the pipelines
    sort by timestamp themselves.
    """

    if limit is not None and limit <= 0:
        raise ValueError(f"limit must be positive when provided, got {limit}.")

    file_path = Path(path)
    if not file_path.exists():
        raise MessageDatasetError(f"Message file does not exist: {file_path}")

    messages: list[Message] = []
    seen_ids: set[str] = set()
    for record_number, payload, decode_error in _iter_records(file_path):
        if decode_error is not None:
            raise MessageDatasetError(
                f"Invalid JSON on line {record_number} of {file_path}: {decode_error.msg}"
            ) from decode_error
        if not isinstance(payload, dict):
            raise MessageDatasetError(
                f"Expected object at record {record_number} of {file_path}, "
                f"got {type(payload).__name__}."
            )
        try:
            message = Message.model_validate(payload)
        except ValidationError as exc:
            raise MessageDatasetError(
                f"Message schema validation failed at record {record_number} of "
                f"{file_path}: {exc}"
            ) from exc
        if message.id in seen_ids:
            raise MessageDatasetError(
                f"Duplicate message id '{message.id}' found at record {record_number} "
                f"of {file_path}."
            )
        seen_ids.add(message.id)
        messages.append(message)
        if limit is not None and len(messages) >= limit:
            break

    if not messages:
        raise MessageDatasetError(f"No messages found in file: {file_path}")
    return messages


def summarize_messages(messages: list[Message]) -> DatasetSummary:
    """Compute basic summary stats for a message list."""

    if not messages:
        return DatasetSummary(
            message_count=0,
            conversation_count=0,
            author_count=0,
            thread_reply_count=0,
            reaction_count=0,
            first_message_at=None,
            last_message_at=None,
        )

    timestamps: list[datetime] = [message.created_at for message in messages]
    return DatasetSummary(
        message_count=len(messages),
        conversation_count=len({message.conversation_id for message in messages}),
        author_count=len({message.author for message in messages}),
        thread_reply_count=sum(1 for message in messages if message.thread_id),
        reaction_count=sum(1 for message in messages if message.is_reaction),
        first_message_at=min(timestamps).isoformat(),
        last_message_at=max(timestamps).isoformat(),
    )
