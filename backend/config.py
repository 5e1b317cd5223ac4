"""Configuration management for the Door Access Edge Service.

Loads configuration from JSON file with environment-based overrides.
Supports hot-reload via API endpoint.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def get_app_dir() -> Path:
    """Directory that relative config and log paths are resolved against."""
    return Path(__file__).parent


class HttpConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 3000


class MqttConfig(BaseModel):
    """MQTT broker configuration."""

    host: str = "127.0.0.1"
    port: int = 1883
    username: str = ""
    password: str = ""
    use_tls: bool = False


class RelayConfig(BaseModel):
    """Relay/input controller configuration (Shelly Pro 3 over MQTT RPC)."""

    device_id: str = "shellypro3-access"
    topic_rpc: str = "{device_id}/rpc"
    topic_events: str = "{device_id}/events/rpc"
    rpc_source: str = "access-edge"

    # Input channel mapping
    exit_button_input: int = 0
    door_contact_input: int = 1
    reserve_input: int = 2

    # Output channel mapping
    exit_button_output: int = 0
    door_output: int = 0
    off_channels: list[int] = Field(default_factory=lambda: [0, 1, 2])
    alarm_output: Optional[int] = None


class ScannerConfig(BaseModel):
    """QR/badge access terminal configuration."""

    host: str = ""
    username: str = ""
    password: str = ""
    door_id: int = 1
    request_timeout_seconds: float = 4.0
    event_max_age_seconds: float = 9.0
    event_max_future_seconds: float = 3.0
    dedup_seconds: float = 5.0
    max_pending: int = Field(default=2, ge=1)


class AuthorizerConfig(BaseModel):
    """Remote authorization service configuration."""

    url: str = ""
    token: str = ""
    location_id: str = ""
    # Empty, a bare parameter name, or a JSON object whose "code" values are
    # replaced by the scanned code.
    code_param: str = ""
    timeout_seconds: float = 5.0
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_ms: int = 300
    max_failed_pending: int = 3


class DoorConfig(BaseModel):
    """Door watchdog thresholds (seconds)."""

    max_time_open_seconds: float = 300
    first_repeat_seconds: float = 900
    repeat_seconds: float = 3600
    min_illegal_open_seconds: float = 2
    exit_grace_seconds: float = 10
    exit_grant_window_seconds: float = 3
    poll_interval_seconds: float = 1.0


class BookmarkConfig(BaseModel):
    """Video management bookmark forwarding configuration."""

    enabled: bool = False
    server: str = ""
    username: str = ""
    password: str = ""
    device_ids: list[str] = Field(default_factory=list)
    verify_ssl: bool = False
    start_offset_ms: int = 3000
    duration_ms: int = 9000
    timeout_seconds: float = 10.0


class HeartbeatConfig(BaseModel):
    """Device liveness checks for the access terminal and the relay controller."""

    enabled: bool = True
    interval_seconds: float = 120
    max_fails: int = Field(default=5, ge=1)
    terminal_timeout_seconds: float = 10.0
    relay_stale_seconds: float = 300


class StorageConfig(BaseModel):
    """Storage configuration."""

    sqlite_path: str = "data/access.db"
    audit_retention_days: int = 90
    housekeeping_interval_seconds: int = 3600


class AuthConfig(BaseModel):
    """Authentication configuration."""

    enabled: bool = False
    token: str = ""


class AccessConfig(BaseModel):
    """Complete access service configuration."""

    http: HttpConfig = Field(default_factory=HttpConfig)
    mqtt: MqttConfig = Field(default_factory=MqttConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    authorizer: AuthorizerConfig = Field(default_factory=AuthorizerConfig)
    door: DoorConfig = Field(default_factory=DoorConfig)
    bookmarks: BookmarkConfig = Field(default_factory=BookmarkConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    config_path: str = Field(
        default="conf/access-config.json",
        description="Path to JSON configuration file",
    )
    env: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    class Config:
        env_prefix = "ACCESS_"


# Global configuration instance
_config: Optional[AccessConfig] = None
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def _config_file(config_path: Optional[str] = None) -> Path:
    """Resolve the base config file; relative paths are taken from the app directory."""
    path = Path(config_path or get_settings().config_path)
    return path if path.is_absolute() else get_app_dir() / path


def load_config(config_path: Optional[str] = None) -> AccessConfig:
    """Load configuration, preferring the per-environment file if present.

    ``conf/access-config.json`` is overridden by ``conf/access-config.<env>.json``
    when that file exists. A missing file means defaults.

    Args:
        config_path: Optional path to config file. Uses the settings path if omitted.

    Returns:
        AccessConfig instance with loaded configuration.
    """
    global _config

    path = _config_file(config_path)
    env_path = path.with_name(f"{path.stem}.{get_settings().env}{path.suffix}")
    if env_path.exists():
        logger.info(f"Using environment config: {env_path}")
        path = env_path

    if not path.exists():
        logger.warning(f"Config file not found at {path}, using defaults")
        _config = AccessConfig()
        return _config

    logger.info(f"Loading configuration from: {path}")
    with open(path, encoding="utf-8") as f:
        _config = AccessConfig.model_validate(json.load(f))
    return _config


def get_config() -> AccessConfig:
    """Get current configuration (singleton with lazy load)."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> AccessConfig:
    """Drop the cached configuration and read it again."""
    global _config
    _config = None
    return load_config()


def save_config(config: AccessConfig, config_path: Optional[str] = None) -> None:
    """Persist configuration and make it current.

    Args:
        config: AccessConfig instance to save.
        config_path: Optional target path. Uses the base config file if omitted.
    """
    global _config

    path = _config_file(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.model_dump(), indent=2), encoding="utf-8")

    _config = config
    logger.info(f"Configuration saved to: {path}")
