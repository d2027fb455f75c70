"""Configuration system for tracesync."""

from pathlib import Path
from typing import List, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .animation.speed import FAST_CATEGORIES, FAST_NODE_TYPES, SLOW_CATEGORIES, SLOW_NODE_TYPES
from .execution.models import DEFAULT_PREVIEW_LENGTH

SECTIONS = ("engine", "polling", "animation", "registry", "logging")


class EngineConfig(BaseModel):
    """Remote execution engine connection."""

    base_url: str = "http://localhost:8080"
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0
    events_path: str = "/api/events/stream"

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")


class PollingConfig(BaseModel):
    """Run snapshot polling."""

    enabled: bool = True
    interval_ms: int = Field(default=1000, gt=0)
    start_delay_ms: int = Field(default=1000, ge=0)


class AnimationConfig(BaseModel):
    """Replay pacing and node speed classification."""

    fast_duration_ms: int = Field(default=200, ge=0)
    default_duration_ms: int = Field(default=1500, ge=0)
    slow_fallback_duration_ms: int = Field(default=1500, ge=0)
    fast_node_types: List[str] = Field(default_factory=lambda: list(FAST_NODE_TYPES))
    slow_node_types: List[str] = Field(default_factory=lambda: list(SLOW_NODE_TYPES))
    fast_categories: List[str] = Field(default_factory=lambda: list(FAST_CATEGORIES))
    slow_categories: List[str] = Field(default_factory=lambda: list(SLOW_CATEGORIES))


class RegistryConfig(BaseModel):
    """Step registry settings."""

    preview_length: int = Field(default=DEFAULT_PREVIEW_LENGTH, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    file_enabled: bool = False
    file_path: str = "logs/tracesync.log"
    file_rotation: str = "10 MB"
    file_retention: str = "1 week"
    json_logs: bool = False


class TraceSyncConfig(BaseSettings):
    """Main tracesync configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRACESYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False

    engine: EngineConfig = Field(default_factory=EngineConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    animation: AnimationConfig = Field(default_factory=AnimationConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load_from_yaml(cls, yaml_path: str | Path) -> "TraceSyncConfig":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)

        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}

            config_dict = {}
            for section in SECTIONS:
                if section in yaml_data:
                    config_dict[section] = yaml_data[section]
            if "debug" in yaml_data:
                config_dict["debug"] = yaml_data["debug"]

            return cls(**config_dict)
        except Exception as e:
            logger.error(f"Error loading YAML configuration: {e}")
            raise

    def save_to_yaml(self, yaml_path: str | Path) -> None:
        """Write the configuration to a YAML file."""
        yaml_path = Path(yaml_path)
        yaml_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")
        # Secrets stay in the environment.
        data["engine"].pop("api_key", None)

        with open(yaml_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)


def load_config(config_file: str | None = None) -> TraceSyncConfig:
    """Load configuration from file or environment."""
    if config_file and Path(config_file).exists():
        logger.info(f"Loading configuration from: {config_file}")
        return TraceSyncConfig.load_from_yaml(config_file)
    logger.info("Using default configuration with environment overrides")
    return TraceSyncConfig()
