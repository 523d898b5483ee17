"""Anvil configuration — reads from anvil.toml, env vars, and CLI args."""

import os
import sys
from pathlib import Path
from typing import Dict, Any, List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field

# Handle tomli import for Python < 3.11 compatibility
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


class AnvilSettings(BaseSettings):
    """Daemon settings."""

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "info"
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3001"])
    enable_rest: bool = True
    enable_websocket: bool = True

    # Auth
    api_key: str = Field(default="anvil_dev_key", alias="ANVIL_API_KEY")
    jwt_secret: str = Field(default="anvil-default-jwt-secret-change-me", alias="ANVIL_JWT_SECRET")
    jwt_algorithm: str = "HS256"

    # Worker pool
    min_workers: int = 2
    max_workers: int = 10
    worker_timeout: float = 300.0  # seconds without a heartbeat before a worker is unhealthy
    # Same timeout in milliseconds; wins over worker_timeout when set
    worker_timeout_ms: Optional[float] = Field(default=None, gt=0)
    auto_scale: bool = False
    scale_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    worker_capacity: int = 5
    heartbeat_interval: float = 5.0
    scale_interval: float = 30.0

    # Realtime
    ws_ping_interval: float = 30.0

    model_config = {"env_prefix": "ANVIL_", "env_file": ".env", "populate_by_name": True}


class ClientSettings(BaseSettings):
    """CLI and worker agent settings."""

    host: str = Field(default="http://localhost:3000", alias="ANVIL_HOST")
    api_key: str = Field(default="anvil_dev_key", alias="ANVIL_API_KEY")

    model_config = {"env_prefix": "ANVIL_"}


def _load_toml_config() -> Dict[str, Any]:
    """Load configuration from anvil.toml files.

    Searches for anvil.toml in:
    1. ANVIL_HOME (~/.anvil/anvil.toml by default)
    2. Current directory (./anvil.toml)

    The ``[server]`` and ``[pool]`` tables are flattened into one dict; the
    local file takes precedence key by key.
    """
    config: Dict[str, Any] = {}

    anvil_home = Path(os.environ.get("ANVIL_HOME", "~/.anvil")).expanduser()
    for path in (anvil_home / "anvil.toml", Path("anvil.toml")):
        if not path.exists():
            continue
        with path.open("rb") as f:
            data = tomllib.load(f)
        for section in ("server", "pool"):
            config.update(data.get(section, {}))

    return config


def get_settings() -> AnvilSettings:
    toml_config = _load_toml_config()
    settings = AnvilSettings()

    # Environment wins over the toml file
    for key, value in toml_config.items():
        env_name = f"ANVIL_{key.upper()}"
        if key in AnvilSettings.model_fields and env_name not in os.environ:
            setattr(settings, key, value)

    return settings


def get_client_settings() -> ClientSettings:
    return ClientSettings()
