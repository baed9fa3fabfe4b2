"""Tests for message dataset loading utilities."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chat_stacks.io import (
    MessageDatasetError,
    load_messages,
    summarize_messages,
    validate_messages_file,
)


def _record(message_id: str, **overrides) -> dict:
    record = {
        "id": message_id,
        "created_at": "2024-05-01T09:00:00+00:00",
        "content": f"hello from {message_id}",
        "author": "alice",
        "conversation_id": "general",
        "conversation_name": "general",
    }
    record.update(overrides)
    return record


def _write_jsonl(path: Path, rows: list) -> Path:
    path.write_text("\n".join(json.dumps(row) for row in rows) + "\n", encoding="utf-8")
    return path


class TestLoadMessages:
    def test_loads_json_list(self, tmp_path: Path):
        path = tmp_path / "messages.json"
        path.write_text(json.dumps([_record("m1"), _record("m2", thread_id="m1")]), encoding="utf-8")

        messages = load_messages(path)

        assert [message.id for message in messages] == ["m1", "m2"]
        assert messages[1].thread_id == "m1"

    def test_loads_wrapped_json_object(self, tmp_path: Path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps({"messages": [_record("m1")]}), encoding="utf-8")
        assert len(load_messages(path)) == 1

    def test_loads_jsonl_with_limit(self, tmp_path: Path):
        path = _write_jsonl(tmp_path / "messages.jsonl", [_record(f"m{index}") for index in range(5)])
        assert [message.id for message in load_messages(path, limit=2)] == ["m0", "m1"]

    def test_raises_for_missing_file(self, tmp_path: Path):
        with pytest.raises(MessageDatasetError, match="does not exist"):
            load_messages(tmp_path / "missing.json")

    def test_raises_for_duplicate_ids(self, tmp_path: Path):
        path = _write_jsonl(tmp_path / "dupes.jsonl", [_record("m1"), _record("m1")])
        with pytest.raises(MessageDatasetError, match="Duplicate message id 'm1'"):
            load_messages(path)

    def test_raises_for_schema_violation(self, tmp_path: Path):
        path = _write_jsonl(tmp_path / "bad.jsonl", [{"id": "m1", "content": "no author"}])
        with pytest.raises(MessageDatasetError, match="schema validation failed"):
            load_messages(path)

    def test_raises_for_invalid_json(self, tmp_path: Path):
        path = tmp_path / "broken.jsonl"
        path.write_text('{"id": "m1"\n', encoding="utf-8")
        with pytest.raises(MessageDatasetError, match="Invalid JSON on line 1"):
            load_messages(path)

    def test_raises_for_empty_file(self, tmp_path: Path):
        path = tmp_path / "empty.jsonl"
        path.write_text("\n\n", encoding="utf-8")
        with pytest.raises(MessageDatasetError, match="No messages"):
            load_messages(path)


class TestValidateMessagesFile:
    def test_valid_file_reports_summary(self, tmp_path: Path):
        path = _write_jsonl(
            tmp_path / "messages.jsonl",
            [
                _record("m1"),
                _record("m2", author="bob", thread_id="m1", created_at="2024-05-01T10:00:00+00:00"),
                _record("m3", conversation_id="random", is_reaction=True, reacted_to_id="m1"),
            ],
        )

        report = validate_messages_file(path)

        assert report.is_valid is True
        assert report.input_format == "jsonl"
        assert report.valid_message_count == 3
        assert report.summary.conversation_count == 2
        assert report.summary.author_count == 2
        assert report.summary.thread_reply_count == 1
        assert report.summary.reaction_count == 1
        assert report.summary.last_message_at == "2024-05-01T10:00:00+00:00"
        assert report.to_dict()["summary"]["message_count"] == 3

    def test_collects_errors_without_stopping(self, tmp_path: Path):
        path = tmp_path / "mixed.jsonl"
        path.write_text(
            "\n".join(
                [
                    json.dumps(_record("m1")),
                    "not json",
                    json.dumps([1, 2]),
                    json.dumps({"id": "m4"}),
                    json.dumps(_record("m1")),
                    json.dumps(_record("m6")),
                ]
            ),
            encoding="utf-8",
        )

        report = validate_messages_file(path, max_errors=2)

        assert report.is_valid is False
        assert report.record_count == 6
        assert report.valid_message_count == 2
        assert report.invalid_record_count == 4
        assert report.duplicate_message_id_count == 1
        assert report.error_count == 4
        assert [item.code for item in report.errors] == ["invalid_json", "non_object_record"]
        assert report.dropped_error_count == 2

    def test_negative_max_errors_is_rejected(self, tmp_path: Path):
        path = _write_jsonl(tmp_path / "messages.jsonl", [_record("m1")])
        with pytest.raises(ValueError, match="max_errors"):
            validate_messages_file(path, max_errors=-1)


def test_summarize_empty_messages():
    summary = summarize_messages([])
    assert summary.message_count == 0
    assert summary.first_message_at is None
