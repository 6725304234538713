"""Configuration management using Pydantic for validation."""

from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseSettings):
    """LLM configuration."""

    model_config = SettingsConfigDict(env_prefix="CANVAS_LLM_")

    provider: Literal["openai", "b-api-openai", "b-api-academiccloud"] = "openai"
    model: str = "gpt-4.1-mini"
    temperature: float = 0.3
    max_tokens: int = 2000
    timeout: int = 60
    base_url: str | None = None
    api_key: str | None = None
    custom_header: bool = False

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Temperature must be between 0 and 1")
        return v


class RetryConfig(BaseSettings):
    """Retry and backoff configuration for LLM calls."""

    model_config = SettingsConfigDict(env_prefix="CANVAS_RETRY_")

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.25, ge=0.0, le=1.0)
    retriable_status_codes: List[int] = Field(default=[402, 429, 500, 502, 503, 504])


class ExtractionConfig(BaseSettings):
    """Field extraction configuration."""

    model_config = SettingsConfigDict(env_prefix="CANVAS_EXTRACTION_")

    max_workers: int = Field(default=10, ge=1)
    required_priority: int = 10
    optional_priority: int = 5
    success_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    vocabulary_retry_attempts: int = Field(default=1, ge=0)


class NormalizationConfig(BaseSettings):
    """Normalization configuration."""

    model_config = SettingsConfigDict(env_prefix="CANVAS_NORMALIZATION_")

    enable_remote_fallback: bool = True
    remote_temperature: float = 0.1
    remote_max_tokens: int = 200
    fuzzy_max_distance: int = Field(default=3, ge=0)
    fuzzy_ratio: float = Field(default=0.3, ge=0.0, le=1.0)


class ContentTypeConfig(BaseSettings):
    """Content-type detection configuration."""

    model_config = SettingsConfigDict(env_prefix="CANVAS_CONTENT_TYPE_")

    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    content_type_field_id: str = "ccm:oeh_flex_lrt"


class GeocodingConfig(BaseSettings):
    """Geocoding configuration (Photon-compatible API)."""

    model_config = SettingsConfigDict(env_prefix="CANVAS_GEOCODING_")

    enabled: bool = True
    base_url: str = "https://photon.komoot.io/api/"
    language: str = "de"
    limit: int = 1
    min_interval: float = Field(default=1.0, ge=0.0)
    coordinate_precision: int = Field(default=7, ge=0)
    timeout: float = 10.0
    location_field_ids: List[str] = Field(
        default=["schema:location", "schema:address", "schema:legalAddress"]
    )


class SchemaConfig(BaseSettings):
    """Schema source configuration."""

    model_config = SettingsConfigDict(env_prefix="CANVAS_SCHEMA_")

    schema_dir: Path = Field(default=Path("schemata"))
    schema_base_url: str | None = None
    core_schema: str = "core.json"
    language: Literal["de", "en"] = "de"


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="CANVAS_LOGGING_")

    level: str = "INFO"
    file: str | None = "logs/metadata_canvas.log"
    rotation: str = "10 MB"
    retention: str = "1 week"
    extraction_failure_log: str | None = None


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    # Configuration sections
    llm: LLMConfig = Field(default_factory=LLMConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    content_type: ContentTypeConfig = Field(default_factory=ContentTypeConfig)
    geocoding: GeocodingConfig = Field(default_factory=GeocodingConfig)
    schema_source: SchemaConfig = Field(default_factory=SchemaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Environment variables
    openai_api_key: str = ""
    openai_base_url: str = ""
    b_api_key: str = ""

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win).

        This is used to apply environment-derived overrides on top of YAML defaults.
        """
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            yaml.YAMLError: If YAML file is invalid
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        # Nested BaseSettings sections read their own env prefix; only values that
        # differ from the model defaults are layered on top of the YAML file.
        env_overrides: Dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            section_cls = field.annotation
            if isinstance(section_cls, type) and issubclass(section_cls, BaseSettings):
                section_overrides = section_cls().model_dump(exclude_defaults=True)
                if section_overrides:
                    env_overrides[name] = section_overrides
        merged = cls._deep_merge_dict(yaml_config, env_overrides)

        return cls(**merged)

    def resolve_api_key(self) -> str | None:
        """Pick the API key matching the configured provider."""
        if self.llm.api_key:
            return self.llm.api_key
        if self.llm.provider.startswith("b-api"):
            return self.b_api_key or None
        return self.openai_api_key or None

    def validate_config(self) -> None:
        """Validate configuration settings.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.llm.provider.startswith("b-api") and not self.llm.base_url:
            raise ValueError(f"base_url required for provider {self.llm.provider}")

        if self.extraction.required_priority <= self.extraction.optional_priority:
            raise ValueError("required_priority must be greater than optional_priority")


# Global configuration instance
_config: Config | None = None


def get_config() -> Config:
    """Get or create global configuration instance.

    Returns:
        Global Config instance

    Raises:
        RuntimeError: If configuration hasn't been initialized
    """
    global _config
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call load_config() first.")
    return _config


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        Loaded and validated Config instance
    """
    global _config
    _config = Config.from_yaml(yaml_path)
    _config.validate_config()
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
