"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Optional
import json

from dotenv import load_dotenv


ENV_PREFIX = 'LICENSEHUB_'


@dataclass
class Config:
    """
    licensehub configuration, shared by server and client commands.

    Configuration priority (highest to lowest):
    1. Environment variables (LICENSEHUB_*)
    2. Config file (config.json)
    3. Default values
    """
    # Session server
    host: str = '0.0.0.0'
    port: int = 25599

    # REST API / blob host
    api_host: str = '0.0.0.0'
    api_port: int = 5000
    download_base_url: str = 'http://localhost:5000/api/chunks'

    # Storage
    data_dir: Path = field(default_factory=lambda: Path('./licensehub_data'))
    users_db: str = 'users.db'

    # Chunking
    chunk_size: int = 8 * 1024 * 1024  # 8MB

    # Licensing
    license_days: int = 30
    default_rate_limit: int = 100

    # Timeouts (seconds)
    auth_timeout: float = 10.0
    response_timeout: float = 15.0
    sweep_interval: float = 3600.0
    write_timeout: float = 10.0

    # Protocol
    max_line_bytes: int = 16 * 1024 * 1024

    # Integrity: raise instead of warn on hash/size mismatch
    strict_integrity: bool = False

    # Logging
    log_level: str = 'INFO'

    @property
    def users_db_path(self) -> Path:
        return Path(self.data_dir) / self.users_db

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv(ENV_PREFIX + 'HOST', config.host)
        config.port = int(os.getenv(ENV_PREFIX + 'PORT', config.port))
        config.api_host = os.getenv(ENV_PREFIX + 'API_HOST', config.api_host)
        config.api_port = int(os.getenv(ENV_PREFIX + 'API_PORT', config.api_port))
        config.download_base_url = os.getenv(
            ENV_PREFIX + 'DOWNLOAD_BASE_URL', config.download_base_url
        )

        # Storage
        data_dir = os.getenv(ENV_PREFIX + 'DATA_DIR')
        if data_dir:
            config.data_dir = Path(data_dir)
        config.users_db = os.getenv(ENV_PREFIX + 'USERS_DB', config.users_db)

        # Chunking / licensing
        config.chunk_size = int(os.getenv(ENV_PREFIX + 'CHUNK_SIZE', config.chunk_size))
        config.license_days = int(os.getenv(ENV_PREFIX + 'LICENSE_DAYS', config.license_days))
        config.default_rate_limit = int(
            os.getenv(ENV_PREFIX + 'RATE_LIMIT', config.default_rate_limit)
        )

        # Timeouts
        config.auth_timeout = float(os.getenv(ENV_PREFIX + 'AUTH_TIMEOUT', config.auth_timeout))
        config.response_timeout = float(
            os.getenv(ENV_PREFIX + 'RESPONSE_TIMEOUT', config.response_timeout)
        )
        config.sweep_interval = float(
            os.getenv(ENV_PREFIX + 'SWEEP_INTERVAL', config.sweep_interval)
        )
        config.write_timeout = float(
            os.getenv(ENV_PREFIX + 'WRITE_TIMEOUT', config.write_timeout)
        )

        # Protocol
        config.max_line_bytes = int(
            os.getenv(ENV_PREFIX + 'MAX_LINE_BYTES', config.max_line_bytes)
        )

        config.strict_integrity = os.getenv(
            ENV_PREFIX + 'STRICT_INTEGRITY', 'false'
        ).lower() == 'true'

        # Logging
        config.log_level = os.getenv(ENV_PREFIX + 'LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        for option in fields(cls):
            if option.name not in data:
                continue
            value = data[option.name]
            if option.name == 'data_dir':
                value = Path(value)
            setattr(config, option.name, value)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = str(value) if isinstance(value, Path) else value
        return result

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for f in fields(Config):
        env_val = getattr(env_config, f.name)
        if env_val != getattr(defaults, f.name):
            setattr(config, f.name, env_val)

    return config
