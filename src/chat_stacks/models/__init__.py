"""Oracle client abstractions."""

from chat_stacks.models.openai_client import OpenAIOracleClient
from chat_stacks.models.oracle import ClassificationOracle, OracleError, ask_oracle, ask_oracle_json

__all__ = [
    "ClassificationOracle",
    "OpenAIOracleClient",
    "OracleError",
    "ask_oracle",
    "ask_oracle_json",
]
