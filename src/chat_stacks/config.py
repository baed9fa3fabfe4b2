"""Configuration management for chat-stacks."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SegmentationStrategy = Literal["segment-centric", "previous-centric", "hybrid", "single-prompt"]


class StrategyConfig(BaseModel):
    """Prompting strategy knobs for the segment state machine."""

    strategy: SegmentationStrategy = "segment-centric"
    staleness_threshold_minutes: float = Field(default=30.0, gt=0)
    max_segments_to_show: int = Field(default=5, ge=1)
    prefer_previous_message: bool = True
    recent_window_size: int = Field(default=50, ge=1)


class Settings(BaseSettings):
    """Pipeline settings, loaded from env vars and optionally overridden by a YAML config file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Oracle transport
    openai_api_key: str = ""
    openai_model: str = "gpt-4.1-mini"
    openai_base_url: str = ""
    openai_temperature: float = 0.0
    client_max_retries: int = 4
    client_backoff_seconds: float = 1.0

    # Oracle call budgets
    oracle_timeout_ms: int = 120_000
    oracle_bulk_timeout_ms: int = 300_000
    validation_max_tokens: int = 2000
    post_merge_max_tokens: int = 1000
    stack_max_tokens: int = 300
    segment_max_tokens: int = 200

    # Rate-limit spacing between consecutive oracle calls
    validation_call_delay_seconds: float = 0.2
    stack_call_delay_seconds: float = 0.05
    segment_call_delay_seconds: float = 0.05

    # Unit validation
    validation_batch_size: int = 10
    validation_batch_overlap: int = 3
    post_merge_pair_chunk_size: int = 20

    # Segmentation
    segmentation_strategy: SegmentationStrategy = "segment-centric"
    staleness_threshold_minutes: float = 30.0
    max_segments_to_show: int = 5
    prefer_previous_message: bool = True
    recent_window_size: int = 50

    # Paths
    input_messages_path: Path = Field(default=Path("data/messages.json"))

    @classmethod
    def from_yaml(cls, config_path: str | Path, **overrides) -> "Settings":
        """Load settings from a YAML config file, with env vars and overrides applied on top."""
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_config = yaml.safe_load(f) or {}
        else:
            yaml_config = {}
        merged = {**yaml_config, **overrides}
        return cls(**merged)

    def strategy_config(self) -> StrategyConfig:
        """Build the segmentation strategy config from flat settings."""

        return StrategyConfig(
            strategy=self.segmentation_strategy,
            staleness_threshold_minutes=self.staleness_threshold_minutes,
            max_segments_to_show=self.max_segments_to_show,
            prefer_previous_message=self.prefer_previous_message,
            recent_window_size=self.recent_window_size,
        )

    def resolved_openai_base_url(self) -> str:
        """Return the effective base URL with a trailing slash, or empty for the default."""

        candidate = self.openai_base_url.strip()
        if not candidate:
            return ""
        return f"{candidate.rstrip('/')}/"

    def resolved_openai_key_source(self) -> str:
        """Return non-secret key source label for diagnostics."""

        if self.openai_api_key.strip():
            return "OPENAI_API_KEY"
        return "none"
