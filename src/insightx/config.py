"""Configuration management for InsightX.

Loads settings from environment variables and .env file.
Everything stays on the local disk; the only outbound calls are to the
configured LLM provider.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass


class InsightXConfig(BaseModel):
    """Application configuration — all from env vars or defaults."""

    # Env-backed defaults go through the same validation as explicit values.
    model_config = ConfigDict(validate_default=True)

    # Storage
    data_dir: str = Field(
        default_factory=lambda: os.getenv(
            "INSIGHTX_DATA_DIR",
            str(Path.home() / ".insightx"),
        )
    )
    activity_partitions: int = Field(
        default_factory=lambda: int(os.getenv("INSIGHTX_ACTIVITY_PARTITIONS", "30"))
    )

    # Inference
    llm_provider: Literal["anthropic", "openai", "ollama"] = Field(
        default_factory=lambda: os.getenv("INSIGHTX_LLM_PROVIDER", "anthropic")  # type: ignore[arg-type]
    )
    llm_model: str = Field(
        default_factory=lambda: os.getenv("INSIGHTX_LLM_MODEL", "claude-haiku-4-5")
    )
    anthropic_api_key: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_API_KEY", "")
    )
    openai_api_key: str = Field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY", "")
    )
    ollama_base_url: str = Field(
        default_factory=lambda: os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    )

    # Detection & cost control
    top_n_insights: int = Field(
        default_factory=lambda: int(os.getenv("INSIGHTX_TOP_N", "20"))
    )
    max_topic_candidates: int = Field(
        default_factory=lambda: int(os.getenv("INSIGHTX_MAX_TOPICS", "10"))
    )
    max_abandonment_candidates: int = Field(
        default_factory=lambda: int(os.getenv("INSIGHTX_MAX_ABANDONED", "15"))
    )
    habit_timezone: str = Field(
        default_factory=lambda: os.getenv("INSIGHTX_TIMEZONE", "UTC")
    )

    # Lifecycle thresholds (product-tuned)
    abandonment_threshold: float = Field(
        default_factory=lambda: float(os.getenv("INSIGHTX_ABANDONMENT_THRESHOLD", "0.6"))
    )
    completion_threshold: float = Field(
        default_factory=lambda: float(os.getenv("INSIGHTX_COMPLETION_THRESHOLD", "0.6"))
    )
    relatedness_threshold: float = Field(
        default_factory=lambda: float(os.getenv("INSIGHTX_RELATEDNESS_THRESHOLD", "0.6"))
    )
    auto_complete_threshold: float = Field(
        default_factory=lambda: float(os.getenv("INSIGHTX_AUTO_COMPLETE_THRESHOLD", "0.5"))
    )
    auto_complete_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("INSIGHTX_AUTO_COMPLETE_DELAY", "300"))
    )
    relink_window_hours: float = Field(
        default_factory=lambda: float(os.getenv("INSIGHTX_RELINK_WINDOW_HOURS", "24"))
    )

    @field_validator("habit_timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    def get_llm_client(self):
        """Create the appropriate LLM client based on config."""
        if self.llm_provider == "anthropic":
            try:
                import anthropic
                return anthropic.AsyncAnthropic(api_key=self.anthropic_api_key)
            except ImportError:
                raise RuntimeError("pip install anthropic  (or: pip install insightx[inference])")

        elif self.llm_provider == "openai":
            try:
                import openai
                return openai.AsyncOpenAI(api_key=self.openai_api_key)
            except ImportError:
                raise RuntimeError("pip install openai  (or: pip install insightx[inference])")

        elif self.llm_provider == "ollama":
            try:
                import openai
                return openai.AsyncOpenAI(
                    base_url=f"{self.ollama_base_url}/v1",
                    api_key="ollama",
                )
            except ImportError:
                raise RuntimeError("pip install openai  (or: pip install insightx[inference])")

        raise ValueError(f"Unknown LLM provider: {self.llm_provider}")

    def ensure_data_dir(self) -> Path:
        """Create data directory if it doesn't exist."""
        p = Path(self.data_dir)
        p.mkdir(parents=True, exist_ok=True)
        return p


def load_config() -> InsightXConfig:
    """Load configuration from environment."""
    return InsightXConfig()
