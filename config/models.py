"""Pydantic configuration models for the agent swarm."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from exceptions import ConfigFileNotFoundError, ConfigurationError


# Load .env file if present
load_dotenv()


def _env_overrides(data: Any, env_mapping: dict[str, str]) -> Any:
    """Fill unset fields from environment variables."""
    if not isinstance(data, dict):
        return data
    for field_name, env_var in env_mapping.items():
        if field_name not in data or data[field_name] is None:
            env_value = os.getenv(env_var)
            if env_value:
                data[field_name] = env_value
    return data


class StoreConfig(BaseModel):
    """Job store configuration."""

    database_path: Path = Field(
        default=Path("./swarm.db"),
        description="SQLite database holding agents, test cases, results and steps",
    )
    stale_after_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Heartbeat age after which an agent is considered dead",
    )
    busy_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="How long a writer waits for the database lock",
    )

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _env_overrides(data, {"database_path": "SWARM_DB_PATH"})


class AgentConfig(BaseModel):
    """Agent runtime loop configuration."""

    poll_interval: float = Field(default=2.0, ge=0, description="Sleep between empty claims")
    error_backoff: float = Field(default=5.0, ge=0, description="Sleep after a failed store call")
    heartbeat_interval: float = Field(default=5.0, gt=0, description="Heartbeat period in seconds")
    screenshot_quality: int = Field(default=80, ge=1, le=100, description="JPEG quality for step screenshots")
    settle_delay: float = Field(
        default=1.0,
        ge=0,
        description="Pause after an AI-chosen action before the next screenshot",
    )
    parse_error_delay: float = Field(
        default=1.0,
        ge=0,
        description="Pause after a model reply that could not be parsed",
    )
    default_max_steps: int = Field(default=50, ge=1, le=500, description="AI step budget when a test sets none")
    max_transcript_images: Optional[int] = Field(
        default=None,
        ge=1,
        description="Keep screenshots only on the newest N user turns (unset keeps all)",
    )


class ModelConfig(BaseModel):
    """Vision model configuration."""

    model: str = Field(default="gpt-4o", description="Model name to use for decisions")
    base_url: Optional[str] = Field(default=None, description="Base URL for an OpenAI-compatible endpoint")
    api_key: Optional[str] = Field(default=None, description="API key for the model service")
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=64, le=8192)
    timeout: float = Field(default=60.0, gt=0, description="Per-request timeout in seconds")
    max_image_width: int = Field(default=1280, ge=320, le=3840, description="Screenshots are downscaled to this width")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/") if v else v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        data = _env_overrides(
            data,
            {
                "model": "SWARM_MODEL",
                "base_url": "SWARM_MODEL_BASE_URL",
                "api_key": "SWARM_MODEL_API_KEY",
            },
        )
        return _env_overrides(data, {"api_key": "OPENAI_API_KEY"})


class BrowserConfig(BaseModel):
    """Browser automation configuration."""

    browser: Literal["chromium", "firefox", "webkit"] = Field(default="chromium")
    headless: bool = Field(default=True)
    viewport_width: int = Field(default=1920, ge=320, le=3840)
    viewport_height: int = Field(default=1080, ge=240, le=2160)
    ignore_https_errors: bool = Field(default=True)
    navigation_timeout: float = Field(default=30000, gt=0, description="Milliseconds")

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _env_overrides(data, {"browser": "SWARM_BROWSER", "headless": "SWARM_HEADLESS"})


class LiveStreamConfig(BaseModel):
    """Broadcast hub client and server configuration."""

    enabled: bool = Field(default=False, description="Stream frames and events to the hub")
    url: str = Field(default="ws://localhost:3001/agent", description="Producer endpoint of the hub")
    fps: float = Field(default=2.0, gt=0, le=30)
    quality: int = Field(default=60, ge=1, le=100)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    max_reconnect_delay: float = Field(default=30.0, gt=0)
    host: str = Field(default="0.0.0.0", description="Hub bind host")
    port: int = Field(default=3001, ge=1, le=65535, description="Hub bind port")
    send_timeout: float = Field(default=2.0, gt=0, description="Hub gives up on an observer send after this")

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _env_overrides(data, {"enabled": "SWARM_LIVE_STREAM", "url": "SWARM_LIVE_STREAM_URL"})


class StorageConfig(BaseModel):
    """Screenshot storage configuration."""

    root: Path = Field(default=Path("./screenshots"), description="Directory used as the screenshot bucket")
    bucket: str = Field(default="test-screenshots")

    @field_validator("root", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Path:
        """Convert string to Path."""
        if isinstance(v, str):
            return Path(v)
        return v


class MonitorConfig(BaseModel):
    interval: float = Field(default=10.0, gt=0, description="Seconds between health sweeps")


class SupervisorConfig(BaseModel):
    """Agent process supervision."""

    agents: int = Field(default=5, ge=1, le=64, description="Number of agent processes")
    respawn_delay: float = Field(default=5.0, ge=0)
    max_respawn_delay: float = Field(default=60.0, ge=0)
    max_rapid_failures: int = Field(default=5, ge=1, description="Exits inside the window before a slot is abandoned")
    rapid_failure_window: float = Field(default=30.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _env_overrides(data, {"agents": "SWARM_AGENTS"})


class SwarmConfig(BaseModel):
    """Root configuration model combining all config sections."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    live_stream: LiveStreamConfig = Field(default_factory=LiveStreamConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_file: Optional[Path] = Field(default=None, description="Rotating log file (stderr only when unset)")

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    def require_model_credentials(self) -> None:
        """Fail fast when the decision loop could never reach the model."""
        if not self.model.api_key:
            raise ConfigurationError(
                "No model API key configured (set SWARM_MODEL_API_KEY or OPENAI_API_KEY)",
                {"model": self.model.model},
            )


def load_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict[str, Any]] = None,
    required: bool = False,
) -> SwarmConfig:
    """
    Load configuration from file with CLI overrides.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file
    3. Environment variables (only fill fields the file leaves unset)
    4. Defaults
    """
    config_data: dict[str, Any] = {}

    if config_path is None:
        config_path = Path(os.getenv("SWARM_CONFIG", "swarm.yaml"))

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.suffix in {".yaml", ".yml"}:
                import yaml
                config_data = yaml.safe_load(f) or {}
            else:
                config_data = json.load(f)
    elif required:
        raise ConfigFileNotFoundError(str(config_path))

    try:
        config = SwarmConfig.model_validate(config_data)
        if cli_overrides:
            config_dict = config.model_dump()
            _apply_overrides(config_dict, cli_overrides)
            config = SwarmConfig.model_validate(config_dict)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    return config


def _apply_overrides(config_dict: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Apply CLI overrides to config dictionary."""
    override_mapping = {
        "browser": ("browser", "browser"),
        "headless": ("browser", "headless"),
        "headful": ("browser", "headless"),  # inverted
        "agents": ("supervisor", "agents"),
        "db": ("store", "database_path"),
        "live_stream": ("live_stream", "enabled"),
        "hub_url": ("live_stream", "url"),
        "port": ("live_stream", "port"),
        "host": ("live_stream", "host"),
        "model": ("model", "model"),
        "log_level": ("log_level", None),
        "log_file": ("log_file", None),
    }

    for key, value in overrides.items():
        if value is None:
            continue

        if key == "headful":
            config_dict["browser"]["headless"] = not value
            continue

        mapping = override_mapping.get(key)
        if mapping:
            section, field = mapping
            if field is None:
                config_dict[section] = value
            else:
                config_dict[section][field] = value
