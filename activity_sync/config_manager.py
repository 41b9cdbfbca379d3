"""
Configuration Manager Module
Loads config/config.yaml with environment variable substitution.

Values substituted from the environment arrive as strings, so boolean flags
are read through ``get_flag`` rather than taken at face value.
"""

import os
import re
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv

# ${VAR} or ${VAR:-default}
ENV_PATTERN = re.compile(r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}')

TRUE_VALUES = ('1', 'true', 'yes', 'on')
DEFAULT_TARGET_BRANCHES = ['master', 'main', 'maintenance/']


def parse_flag(value, default: bool = False) -> bool:
    """Interpret a YAML or environment value as a boolean."""
    if value is None or value == '':
        return default
    if isinstance(value, str):
        return value.strip().lower() in TRUE_VALUES
    return bool(value)


class ConfigManager:
    """Process-wide view of the YAML configuration."""

    _instance = None
    _config: Dict = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self._load_configuration()

    def _load_configuration(self) -> None:
        load_dotenv()

        self._config_dir = self._find_config_dir()
        config_path = self._config_dir / 'config.yaml' if self._config_dir else None
        self._config = self._load_yaml_with_env(config_path) if config_path else {}

    def _find_config_dir(self) -> Optional[Path]:
        """CONFIG_DIR, then the directory next to the package, then the working directory."""
        env_config_dir = os.getenv('CONFIG_DIR')
        if env_config_dir:
            return Path(env_config_dir)

        possible_paths = [
            Path(__file__).parent.parent / 'config',
            Path.cwd() / 'config',
            Path('/app/config'),  # Docker container
        ]
        for path in possible_paths:
            if path.exists():
                return path

        # No file: every getter falls back to its built-in default
        return None

    def _load_yaml_with_env(self, file_path: Path) -> Dict:
        if not file_path.exists():
            return {}

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        return yaml.safe_load(substitute_env_vars(content)) or {}

    # ========================================
    # Section Getters
    # ========================================

    def _section(self, name: str) -> Dict:
        return self._config.get(name) or {}

    def get_database_config(self) -> Dict:
        return self._section('database')

    def get_platform_config(self) -> Dict:
        """Source-control platform API settings."""
        return self._section('platform')

    def get_sync_config(self) -> Dict:
        """Sync defaults: intervals, concurrency, retries, rate limits, lease TTL."""
        return self._section('sync')

    def get_scheduler_config(self) -> Dict:
        return self._section('scheduler')

    def get_notification_config(self) -> Dict:
        return self._section('notifications')

    def get_security_config(self) -> Dict:
        """Credential encryption key and API keys."""
        return self._section('security')

    def get_logging_config(self) -> Dict:
        return self._section('logging')

    # ========================================
    # Typed Values
    # ========================================

    def get_flag(self, section: str, key: str, default: bool = False) -> bool:
        """Boolean setting that may have come from an environment string."""
        return parse_flag(self._section(section).get(key), default)

    def get_api_keys(self) -> List[str]:
        """API keys accepted by the control endpoints; a comma-separated string or a list."""
        keys = self.get_security_config().get('api_keys') or []
        if isinstance(keys, str):
            keys = keys.split(',')
        return [str(k).strip() for k in keys if str(k).strip()]

    def get_target_branches(self) -> List[str]:
        """Branch names (or 'prefix/' patterns) whose pull requests are synced."""
        return self.get_platform_config().get('target_branches') or list(DEFAULT_TARGET_BRANCHES)

    def reload(self) -> None:
        """Re-read the configuration file and the environment."""
        self._config = None
        self._load_configuration()


def substitute_env_vars(content: str) -> str:
    """
    Replace ${VAR} and ${VAR:-default} with environment values.

    A variable that is unset and has no default is left as written.
    """
    def replacer(match):
        value = os.getenv(match.group(1))
        if value is not None:
            return value
        if match.group(2) is not None:
            return match.group(2)
        return match.group(0)

    return ENV_PATTERN.sub(replacer, content)
