"""
Configuration management for audit-pulse.

Handles:
- Config file loading from ~/.audit-pulse/config.yaml (or AUDIT_PULSE_CONFIG)
- Environment variable overrides for endpoints and the API token
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


DEFAULT_CONFIG_PATH = Path.home() / ".audit-pulse" / "config.yaml"


class BackoffPolicy(str, Enum):
    """How the delay between reconnect attempts grows."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ConnectionConfig(BaseModel):
    """Settings for the persistent notification channel."""
    url: Optional[str] = None     # None disables the channel entirely
    auto_reconnect: bool = True
    max_reconnect_attempts: int = Field(default=3, ge=0)
    reconnect_delay: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to wait before each reconnect attempt (base delay for exponential backoff).",
    )
    backoff: BackoffPolicy = BackoffPolicy.FIXED
    max_reconnect_delay: float = Field(default=60.0, ge=0)
    heartbeat_interval: float = Field(default=30.0, gt=0)
    open_timeout: float = Field(default=10.0, gt=0)


class ApiConfig(BaseModel):
    """Settings for the start-audit HTTP endpoint."""
    base_url: Optional[str] = None  # None means offline: job ids are minted locally
    token: Optional[str] = None
    timeout: float = 30.0


class SimulationConfig(BaseModel):
    """Settings for the simulated progression used when the channel is down."""
    tick_interval: float = Field(default=0.2, ge=0)
    step: int = Field(
        default=10,
        gt=0,
        le=100,
        description="Progress increment per tick. Every stage always ends with a 100 tick.",
    )


class HubConfig(BaseModel):
    """Settings for the development notification hub."""
    host: str = "127.0.0.1"
    port: int = 3001
    start_delay: float = 0.5      # Gives clients time to subscribe before the first event
    tick_interval: float = 0.2
    max_finished_jobs: int = Field(default=100, ge=1)  # Older completed or cancelled jobs are forgotten


class Config(BaseModel):
    """Main configuration model."""
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    hub: HubConfig = Field(default_factory=HubConfig)


class ConfigManager:
    """Manages configuration loading and access."""

    def __init__(self, config_path: Optional[Path] = None):
        self._config: Optional[Config] = None
        self._config_path = config_path

    @property
    def config_path(self) -> Path:
        """Get the config file path."""
        if self._config_path is not None:
            return self._config_path
        env_path = get_env_var("AUDIT_PULSE_CONFIG")
        if env_path:
            return Path(env_path)
        return DEFAULT_CONFIG_PATH

    def load(self) -> Config:
        """Load configuration from file, or return defaults, then apply env overrides."""
        if self._config is not None:
            return self._config

        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
            config = Config(**data)
        else:
            config = Config()

        self._config = apply_env_overrides(config)
        return self._config

    def save(self, config: Config) -> None:
        """Save configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.dump(config.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)

        self._config = config

    def reset(self) -> None:
        """Forget the cached configuration so the next load re-reads the file."""
        self._config = None

    @property
    def config(self) -> Config:
        """Get the current configuration (loads if needed)."""
        return self.load()


def apply_env_overrides(config: Config) -> Config:
    """Return a copy of config with endpoint/token environment variables applied."""
    ws_url = get_env_var("AUDIT_PULSE_WS_URL")
    api_url = get_env_var("AUDIT_PULSE_API_URL")
    token = get_env_var("AUDIT_PULSE_TOKEN")

    connection = config.connection
    if ws_url:
        connection = connection.model_copy(update={"url": ws_url})

    api = config.api
    if api_url:
        api = api.model_copy(update={"base_url": api_url})
    if token:
        api = api.model_copy(update={"token": token})

    return config.model_copy(update={"connection": connection, "api": api})


def get_env_var(name: str, required: bool = False) -> Optional[str]:
    """Get an environment variable, optionally raising if missing."""
    value = os.environ.get(name)
    if required and not value:
        raise ValueError(f"Required environment variable {name} is not set")
    return value


# Global config manager instance (entry points only; library code takes Config explicitly)
config_manager = ConfigManager()
