"""
Configuration management using Pydantic Settings.

Architecture Decision: Why pydantic-settings?
- Type-safe configuration with validation
- Supports multiple sources (YAML, env vars, defaults)
- Easy to test with different configurations
"""

import os
from pathlib import Path
from typing import Optional
import yaml

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with multiple sources:
    1. Default values (hardcoded)
    2. YAML config file
    3. Environment variables (highest priority)
    """
    model_config = SettingsConfigDict(
        env_prefix='TIMELEDGER_',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
        validate_assignment=True
    )

    # Application paths
    app_name: str = "TimeLedger"
    config_dir: Optional[Path] = None
    data_dir: Optional[Path] = None

    # Database
    database_url: Optional[str] = None
    echo_sql: bool = False

    # Lifecycle rules
    minimum_timer_minutes: int = Field(default=1, ge=1, description="Floor applied when a timer stops")

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._init_paths()
        self._load_yaml_config()

    def _init_paths(self):
        """Initialize default paths based on OS"""
        if self.config_dir is None:
            if os.name == 'nt':  # Windows
                base = Path(os.getenv('APPDATA'))
            else:  # Linux/Mac
                base = Path.home() / '.config'
            self.config_dir = base / self.app_name.lower()

        if self.data_dir is None:
            if os.name == 'nt':  # Windows
                base = Path(os.getenv('APPDATA'))
            else:  # Linux/Mac
                base = Path.home() / '.local' / 'share'
            self.data_dir = base / self.app_name.lower()

    def _load_yaml_config(self):
        """Overlay values from a YAML file that the environment did not set"""
        # First check in workspace config folder
        config_file = Path("config/settings.yaml")
        if not config_file.exists():
            # Then check in user's config directory
            config_file = self.config_dir / "settings.yaml"

        if not config_file.exists():
            return

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        for key, value in config_data.items():
            env_key = f"{self.model_config['env_prefix']}{key}".upper()
            if key in type(self).model_fields and env_key not in os.environ:
                setattr(self, key, value)

    def get_db_url(self) -> str:
        """Get database URL, creating the default data directory if needed"""
        if self.database_url:
            return self.database_url

        self.data_dir.mkdir(parents=True, exist_ok=True)
        db_path = self.data_dir / 'timeledger.db'
        return f"sqlite+aiosqlite:///{db_path}"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from file"""
    global _settings
    _settings = Settings()
    return _settings
