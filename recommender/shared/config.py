"""
Configuration management for the recommender.
Loads from config/recommender.yaml and environment variables.
"""

from pathlib import Path
from typing import Optional, Dict, Any, List
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class InferenceConfig(BaseSettings):
    """Model endpoint client configuration."""
    base_url: str = Field(default="http://localhost:9000")
    endpoint_urls: Dict[str, str] = Field(default_factory=dict)
    stage_timeout_ms: int = Field(default=1000)
    max_attempts: int = Field(default=3)
    backoff_base_seconds: float = Field(default=1.0)
    backoff_max_seconds: float = Field(default=8.0)
    circuit_failure_threshold: int = Field(default=5)
    circuit_cooldown_seconds: float = Field(default=60.0)

    model_config = SettingsConfigDict(env_prefix="INFERENCE_", extra="ignore")

    def url_for(self, endpoint: str) -> str:
        """Resolve the URL for an endpoint name."""
        if endpoint in self.endpoint_urls:
            return self.endpoint_urls[endpoint]
        return f"{self.base_url.rstrip('/')}/{endpoint}"


class StateConfig(BaseSettings):
    """Adaptation state store configuration."""
    backend: str = Field(default="memory")  # memory, sqlite
    db_path: Path = Field(default=Path("data/student_state.sqlite"))
    concept_ids: List[str] = Field(default_factory=list)
    timeout_ms: int = Field(default=2000)

    model_config = SettingsConfigDict(env_prefix="STATE_", extra="ignore")

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in ("memory", "sqlite"):
            raise ValueError(f"Unknown state backend: {value}")
        return value


class SafetyConfig(BaseSettings):
    """Safety validator thresholds."""
    bands: int = Field(default=5)
    max_band_distance: int = Field(default=2)
    prerequisite_threshold: float = Field(default=0.3)
    mastery_threshold: float = Field(default=0.8)

    model_config = SettingsConfigDict(env_prefix="SAFETY_", extra="ignore")


class PipelineConfig(BaseSettings):
    """Orchestration pipeline configuration."""
    default_deadline_ms: int = Field(default=800)
    top_k: int = Field(default=5)
    explanation_min_budget_ms: int = Field(default=50)
    safe_default_context: List[float] = Field(default_factory=list)
    catalog_path: Optional[Path] = Field(default=None)

    model_config = SettingsConfigDict(env_prefix="PIPELINE_", extra="ignore")


class EventConfig(BaseSettings):
    """Interaction event log configuration."""
    enabled: bool = Field(default=True)
    db_path: Path = Field(default=Path("data/interaction_events.sqlite"))
    queue_size: int = Field(default=10000)
    flush_interval_seconds: float = Field(default=1.0)

    model_config = SettingsConfigDict(env_prefix="EVENTS_", extra="ignore")


class LLMConfig(BaseSettings):
    """LLM provider configuration for study notes."""
    provider: str = Field(default="openai")  # openai, anthropic
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    default_model: str = Field(default="gpt-4o-mini")
    temperature: float = Field(default=0.2)
    max_tokens: int = Field(default=300)
    timeout_seconds: float = Field(default=5.0)

    model_config = SettingsConfigDict(env_prefix="LLM_", extra="ignore", populate_by_name=True)


class ApiConfig(BaseSettings):
    """API server configuration."""
    host: str = Field(default="0.0.0.0", alias="API_HOST")
    port: int = Field(default=8000, alias="API_PORT")
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    rate_limit_requests_per_minute: int = Field(default=120, alias="API_RATE_LIMIT_RPM")

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore", populate_by_name=True)


class RecommenderSettings(BaseSettings):
    """Main recommender configuration."""
    env: str = Field(default="dev", alias="RECOMMENDER_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[Path] = Field(default=None, alias="LOG_FILE")

    # Sub-configurations
    api: ApiConfig = Field(default_factory=ApiConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    events: EventConfig = Field(default_factory=EventConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def load_from_yaml(cls, config_path: Optional[Path] = None) -> "RecommenderSettings":
        """Load settings from YAML file and merge with environment variables."""
        if config_path is None:
            config_path = Path("config/recommender.yaml")

        config_dict: Dict[str, Any] = {}

        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}
                config_dict = yaml_data.get("recommender", {}) or {}

        # Flatten api.rate_limit.requests_per_minute if present
        if "api" in config_dict and isinstance(config_dict["api"], dict):
            api_cfg = dict(config_dict["api"])
            rate_limit = api_cfg.pop("rate_limit", None)
            if isinstance(rate_limit, dict) and "requests_per_minute" in rate_limit:
                api_cfg["rate_limit_requests_per_minute"] = rate_limit["requests_per_minute"]
            config_dict["api"] = api_cfg

        return cls(**config_dict)


# Global settings instance
_settings: Optional[RecommenderSettings] = None


def get_settings() -> RecommenderSettings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = RecommenderSettings.load_from_yaml()
    return _settings


# Alias for convenience
settings = get_settings()
