"""Tests for CLI parser options and offline commands."""

import json
import sys

import pytest

from chat_stacks.cli import _EtaProgressPrinter, build_parser, main


def test_segment_parser_accepts_strategy_overrides():
    args = build_parser().parse_args(
        [
            "segment",
            "--strategy",
            "hybrid",
            "--staleness-threshold",
            "15",
            "--max-segments",
            "3",
            "--summary-only",
        ]
    )
    assert args.command == "segment"
    assert args.strategy == "hybrid"
    assert args.staleness_threshold == 15.0
    assert args.max_segments == 3
    assert args.summary_only is True


def test_segment_parser_rejects_unknown_strategy():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["segment", "--strategy", "telepathy"])


def test_stacks_parser_accepts_validation_flags():
    args = build_parser().parse_args(
        ["stacks", "--skip-validation", "--batch-size", "8", "--batch-overlap", "2", "--limit", "50"]
    )
    assert args.command == "stacks"
    assert args.skip_validation is True
    assert args.batch_size == 8
    assert args.batch_overlap == 2
    assert args.limit == 50


def test_global_log_level_flag():
    args = build_parser().parse_args(["--log-level", "DEBUG", "info"])
    assert args.log_level == "DEBUG"
    assert args.command == "info"


def test_units_command_prints_units_without_oracle(tmp_path, monkeypatch, capsys):
    input_path = tmp_path / "messages.json"
    input_path.write_text(
        json.dumps(
            [
                {
                    "id": "m1",
                    "created_at": "2024-05-01T09:00:00+00:00",
                    "content": "deploy is broken",
                    "author": "alice",
                    "conversation_id": "general",
                },
                {
                    "id": "m2",
                    "created_at": "2024-05-01T09:00:30+00:00",
                    "content": "looking into it now",
                    "author": "alice",
                    "conversation_id": "general",
                },
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(
        sys,
        "argv",
        ["chat-stacks", "--config", str(tmp_path / "none.yaml"), "units", "--input", str(input_path)],
    )

    main()

    payload = json.loads(capsys.readouterr().out)
    assert payload["unit_count"] == 1
    assert payload["units"][0]["messageIds"] == ["m1", "m2"]
    assert payload["units"][0]["conversationName"] == "DM"


def test_validate_input_exits_nonzero_for_invalid_file(tmp_path, monkeypatch, capsys):
    input_path = tmp_path / "messages.jsonl"
    input_path.write_text('{"id": "m1"}\n', encoding="utf-8")
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "chat-stacks",
            "--config",
            str(tmp_path / "none.yaml"),
            "validate-input",
            "--input",
            str(input_path),
        ],
    )

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 1
    assert "schema_validation_failed" in capsys.readouterr().out


def test_eta_progress_printer_writes_to_stderr(capsys):
    printer = _EtaProgressPrinter("Segments", min_interval_seconds=0.0)
    printer(1, 4, "segment_messages")
    printer(4, 4, "segment_messages")
    printer(1, 2, "assign_stacks")

    err = capsys.readouterr().err
    assert "Segments: 1/4 (25%)" in err
    assert "Segments: 4/4 (100%)" in err
    assert "Segments: 1/2 (50%) | elapsed" in err
    assert "| assign_stacks" in err
