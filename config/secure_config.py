#!/usr/bin/env python3
"""
Secure Configuration Manager for legacy-migrator
Handles environment variables, secrets, and paths centrally
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from core.descriptors import SourceDbConfig


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 1:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass
class MigratorConfig:
    """Migration run settings"""

    # Base paths - use environment or defaults
    base_dir: Path = None
    log_dir: Path = None

    # Legacy source connection
    source_url: Optional[str] = None
    source_driver: Optional[str] = None
    source_user: Optional[str] = None
    source_password: Optional[str] = None

    # Target store
    target_url: Optional[str] = None

    # Batch sizes
    insert_batch_size: int = 2000
    backfill_batch_size: int = 100

    # Runtime settings
    log_level: str = "INFO"
    profile: str = "dev"  # dev, prod

    def __post_init__(self):
        """Initialize paths and load environment variables"""
        self.profile = os.environ.get('MIGRATOR_PROFILE', self.profile)

        if self.base_dir is None:
            self.base_dir = Path(os.environ.get('MIGRATOR_HOME', Path.cwd()))
        else:
            self.base_dir = Path(self.base_dir)
        if self.log_dir is None:
            self.log_dir = Path(os.environ.get('MIGRATOR_LOG_DIR', self.base_dir / 'logs'))

        self.source_url = os.environ.get('MIGRATOR_SOURCE_URL', self.source_url)
        self.source_driver = os.environ.get('MIGRATOR_SOURCE_DRIVER', self.source_driver)
        self.source_user = os.environ.get('MIGRATOR_SOURCE_USER', self.source_user)
        # Secrets come from the environment only
        self.source_password = os.environ.get('MIGRATOR_SOURCE_PASSWORD', self.source_password)
        self.target_url = os.environ.get('MIGRATOR_TARGET_URL', self.target_url)

        self.insert_batch_size = _env_int('MIGRATOR_INSERT_BATCH_SIZE', self.insert_batch_size)
        self.backfill_batch_size = _env_int('MIGRATOR_BACKFILL_BATCH_SIZE', self.backfill_batch_size)

        self.log_level = os.environ.get('MIGRATOR_LOG_LEVEL', self.log_level).upper()
        if self.profile == 'prod' and 'MIGRATOR_LOG_LEVEL' not in os.environ:
            self.log_level = 'WARNING'

    def validate_secrets(self, silent: bool = False) -> bool:
        """Validate that the source connection is fully configured.

        Args:
            silent: If True, suppress warning output (for use in serialization)
        """
        missing = []
        if not self.source_url:
            missing.append('MIGRATOR_SOURCE_URL')
        if not self.target_url:
            missing.append('MIGRATOR_TARGET_URL')
        if self.source_user and not self.source_password:
            missing.append('MIGRATOR_SOURCE_PASSWORD')

        if missing:
            if not silent:
                print(f"Missing required environment variables: {', '.join(missing)}")
                print("Please set these in your environment or .env file")
            return False
        return True

    def source_config(self) -> SourceDbConfig:
        if not self.source_url:
            raise ValueError("No source URL configured (MIGRATOR_SOURCE_URL)")
        return SourceDbConfig(url=self.source_url, driver=self.source_driver,
                              username=self.source_user, password=self.source_password)

    def get_safe_dict(self) -> Dict[str, Any]:
        """Get configuration as dict without sensitive values (side-effect free)"""
        return {
            'base_dir': str(self.base_dir),
            'log_dir': str(self.log_dir),
            'source_url': self.source_config().safe_url() if self.source_url else None,
            'source_driver': self.source_driver,
            'source_user': self.source_user,
            'target_url': SourceDbConfig(self.target_url).safe_url() if self.target_url else None,
            'insert_batch_size': self.insert_batch_size,
            'backfill_batch_size': self.backfill_batch_size,
            'log_level': self.log_level,
            'profile': self.profile,
            'secrets_configured': self.validate_secrets(silent=True),
        }


class ConfigManager:
    """Singleton configuration manager"""

    _instance: Optional['ConfigManager'] = None
    _config: Optional[MigratorConfig] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self.load_config()

    def load_config(self, env_file: Optional[Path] = None):
        """Load configuration from the environment.

        Priority (highest to lowest):
        1. Environment variables (MIGRATOR_*)
        2. .env file (loaded into os.environ before config creation)
        3. MigratorConfig dataclass defaults
        """
        if env_file is None:
            base_dir = Path(os.environ.get('MIGRATOR_HOME', Path.cwd()))
            env_file = base_dir / '.env'
        if env_file.exists():
            self._load_env_file(env_file)

        self._config = MigratorConfig()

    def _load_env_file(self, env_file: Path):
        """Load environment variables from .env file.

        Only sets values for keys not already in os.environ,
        ensuring exported env vars take precedence over .env file.
        """
        with open(env_file, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue
                key, value = line.split('=', 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if key not in os.environ:
                    os.environ[key] = value

    @property
    def config(self) -> MigratorConfig:
        """Get the current configuration"""
        if self._config is None:
            self.load_config()
        return self._config

    @classmethod
    def reset(cls):
        """Forget the loaded configuration (used by tests)"""
        cls._config = None
        cls._instance = None


def get_config() -> MigratorConfig:
    """Get the global configuration"""
    return ConfigManager().config


if __name__ == "__main__":
    config = get_config()
    print("legacy-migrator configuration:")
    print("-" * 40)
    for key, value in config.get_safe_dict().items():
        print(f"{key}: {value}")
