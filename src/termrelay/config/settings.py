"""Configuration management for termrelay.

Loads settings from a YAML configuration file with environment variable
overrides for sensitive values (the JWT secret). Supports .env files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/termrelay.yaml")


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"],
    )


class RemoteConfig(BaseModel):
    backend: Literal["ssh", "local"] = Field(default="ssh")
    connect_timeout: float = Field(default=10.0, gt=0)
    term: str = Field(default="xterm-256color")
    default_cols: int = Field(default=80, gt=0)
    default_rows: int = Field(default=24, gt=0)
    read_size: int = Field(default=4096, gt=0)
    shell_command: str = Field(default="/bin/bash", description="Shell for the local backend")


class AuthConfig(BaseModel):
    jwt_secret: SecretStr = Field(default=SecretStr("default-secret-change-in-production"))
    algorithm: str = Field(default="HS256")
    issuer: str = Field(default="termrelay")
    token_ttl_hours: int = Field(default=24 * 7, gt=0)


class StoreConfig(BaseModel):
    path: Path = Field(default=Path("config/connections.yaml"))


class ClientConfig(BaseModel):
    base_url: str = Field(default="ws://localhost:8080")
    reconnect_initial_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    reconnect_multiplier: float = Field(default=2.0, ge=1.0)
    reconnect_max_attempts: int = Field(default=5, ge=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for the termrelay system.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically. Environment values win over keyword
    arguments, which is how ``load_settings`` passes the YAML data.
    """

    model_config = {
        "env_prefix": "TERMRELAY_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    server: ServerConfig = Field(default_factory=ServerConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs and rank below the environment
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: env vars > .env file > YAML file > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    # Load .env file manually for non-prefixed vars
    _load_dotenv()

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _load_dotenv() -> None:
    """Load .env file into os.environ if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                if not os.environ.get(key):
                    os.environ[key] = value


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply environment variable overrides for non-prefixed vars."""
    jwt_secret = os.environ.get("JWT_SECRET", "")
    port = os.environ.get("PORT", "")

    if jwt_secret:
        yaml_data["auth"] = {**(yaml_data.get("auth") or {}), "jwt_secret": jwt_secret}

    if port:
        yaml_data["server"] = {**(yaml_data.get("server") or {}), "port": int(port)}
