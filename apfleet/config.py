"""Configuration management for apfleet."""

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from .connection import ConnectionMode


class ClientConfig(BaseModel):
    """Device REST client settings."""
    timeout: int = Field(default=30, ge=1, le=300)  # seconds, per request
    verify_ssl: bool = False  # RouterOS ships self-signed certificates


class ConnectionConfig(BaseModel):
    default_mode: ConnectionMode = ConnectionMode.DEFAULT


class ProvisioningConfig(BaseModel):
    max_plan_steps: int = Field(default=256, ge=1, le=4096)


class ReconciliationConfig(BaseModel):
    """Periodic health sync and drift validation."""
    interval: int = Field(default=300, ge=10)  # seconds between fleet passes
    max_concurrency: int = Field(default=8, ge=1, le=128)
    max_objects_per_type: int = Field(default=5000, ge=1)  # warn above this


class LocksConfig(BaseModel):
    reject_when_busy: bool = False  # Queue behind a running operation by default


class StoreConfig(BaseModel):
    path: str = "/var/lib/apfleet/fleet.db"


class SecretsConfig(BaseModel):
    """Credential encryption settings."""
    master_key: str = Field(default="${APFLEET_SECRET_KEY}", validate_default=True)

    @field_validator("master_key", mode="before")
    @classmethod
    def expand_env_var(cls, v: str) -> str:
        """Expand environment variables in the master key."""
        if v and v.startswith("${") and v.endswith("}"):
            env_var = v[2:-1]
            return os.getenv(env_var, "")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = "/var/log/apfleet.log"


class Config(BaseModel):
    """Main configuration class."""
    client: ClientConfig = Field(default_factory=ClientConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    locks: LocksConfig = Field(default_factory=LocksConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def expand_env_vars(obj):
    """Recursively expand environment variables in a dict."""
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        pattern = re.compile(r'\$\{([^}]+)\}')
        def replacer(match):
            return os.getenv(match.group(1), match.group(0))
        return pattern.sub(replacer, obj)
    return obj


def load_config(config_path: str = "config.yaml", env_file: str = ".env") -> Config:
    """Load configuration from YAML file and environment variables.

    Args:
        config_path: Path to the YAML configuration file.
        env_file: Path to the .env file for environment variables.

    Returns:
        Config object with all settings.
    """
    env_path = Path(env_file)
    if env_path.exists():
        load_dotenv(env_path)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    return Config(**expand_env_vars(raw_config))
