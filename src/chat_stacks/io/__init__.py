"""I/O utilities for reading message datasets."""

from chat_stacks.io.load import (
    INPUT_SCHEMA_VERSION,
    DatasetSummary,
    InputValidationReport,
    MessageDatasetError,
    ValidationErrorRecord,
    load_messages,
    summarize_messages,
    validate_messages_file,
)

__all__ = [
    "INPUT_SCHEMA_VERSION",
    "DatasetSummary",
    "InputValidationReport",
    "MessageDatasetError",
    "ValidationErrorRecord",
    "load_messages",
    "summarize_messages",
    "validate_messages_file",
]
