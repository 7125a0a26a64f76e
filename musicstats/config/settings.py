"""
Configuration management for Music-Stats

This module handles loading, validation, and persistence of application
settings from several sources. Settings are grouped into dataclass sections:

- Stats tracking (database location, flush and aggregation intervals)
- Cloud sync (Google OAuth client, sync interval, persisted sync state)
- Logging output (level, rotating file, console colors)
- Network behaviour (timeouts, user agent)
- Security and storage (config directory, sync state file)

Sources, lowest precedence first:
1. Dataclass defaults
2. YAML configuration file (config.yaml)
3. Persisted sync state (sync_state.json, written by the app itself)
4. Environment variables, including values from a .env file

The sync state file holds OAuth tokens, so it is written with owner-only
permissions and is never merged back into config.yaml.
"""

import json
import os
import threading
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from ..utils.helpers import ensure_directory
from ..utils.logger import get_logger

# Load environment variables from .env file if present
load_dotenv()

logger = get_logger(__name__)


@dataclass
class StatsConfig:
    """
    Play tracking and local storage settings

    The database file lives in `data_directory`, or in the config directory
    when no data directory is set.
    """
    enabled: bool = True
    tracking_start_date: str = ""
    data_directory: str = ""
    database_file: str = "music-stats.json"
    flush_interval: int = 30
    aggregation_interval: int = 3600


@dataclass
class CloudSyncConfig:
    """
    Google Drive sync settings and persisted sync state

    The fields listed in SYNC_STATE_FIELDS are owned by the application at
    runtime (tokens, remote file id, last content hash) and are persisted to
    the sync state file rather than to config.yaml.
    """
    enabled: bool = False
    client_id: str = ""
    client_secret: str = ""
    sync_interval: int = 600
    auth_timeout: int = 300
    file_name: str = "music-stats.json"
    refresh_token: str = ""
    access_token: str = ""
    access_token_expiry: int = 0
    file_id: str = ""
    last_hash: str = ""
    last_sync_time: str = ""
    last_error: str = ""


SYNC_STATE_FIELDS = (
    'enabled',
    'client_id',
    'client_secret',
    'refresh_token',
    'access_token',
    'access_token_expiry',
    'file_id',
    'last_hash',
    'last_sync_time',
    'last_error',
)

SECRET_FIELDS = (
    'client_id',
    'client_secret',
    'refresh_token',
    'access_token',
    'access_token_expiry',
    'file_id',
    'last_hash',
    'last_sync_time',
    'last_error',
)


@dataclass
class LoggingConfig:
    """Logging output settings"""
    level: str = "INFO"
    file: str = "music-stats.log"
    max_size: str = "10MB"
    backup_count: int = 3
    console_output: bool = True
    colored_output: bool = True


@dataclass
class NetworkConfig:
    """HTTP settings shared by the OAuth and Drive clients"""
    user_agent: str = "Music-Stats/0.4"
    request_timeout: int = 30


@dataclass
class SecurityConfig:
    """
    Security and storage configuration

    Controls where the config file and the token-bearing sync state live.
    """
    config_directory: str = "~/.music-stats/"
    sync_state_file: str = "sync_state.json"


class Settings:
    """
    Main settings class that manages all configuration

    Besides exposing the dataclass sections, Settings owns the persisted
    cloud sync state: update_sync_state() is the single write path used by
    the credential manager and the sync engine, and is safe to call from the
    background sync thread.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config_dir: Optional[str] = None,
        load_env: bool = True,
    ):
        """
        Initialize settings from config file, sync state and environment

        Args:
            config_path: Path to custom config file, if None uses default locations
            config_dir: Override for the config directory (tests use a temp dir)
            load_env: Whether environment variables override file values
        """
        self.config_path = config_path
        self._state_lock = threading.RLock()

        self.stats = StatsConfig()
        self.cloud_sync = CloudSyncConfig()
        self.logging = LoggingConfig()
        self.network = NetworkConfig()
        self.security = SecurityConfig()

        if config_dir:
            self.security.config_directory = str(config_dir)

        self._load_config(search_defaults=config_dir is None)
        if config_dir:
            # An explicit directory wins over whatever the YAML file says
            self.security.config_directory = str(config_dir)
        self._load_sync_state()
        if load_env:
            self._load_environment_variables()
        self._create_directories()

    def _load_config(self, search_defaults: bool = True) -> None:
        """
        Load configuration from the first YAML file found

        Args:
            search_defaults: Also search the working directory for config.yaml
        """
        config_paths = [
            self.config_path,
            self.get_config_directory() / "config.yaml",
        ]
        if search_defaults:
            config_paths += [Path("config/config.yaml"), Path("config.yaml")]

        config_data = {}
        for path in config_paths:
            if path and Path(path).expanduser().exists():
                try:
                    with open(Path(path).expanduser(), 'r', encoding='utf-8') as f:
                        config_data = yaml.safe_load(f) or {}
                    logger.debug(f"Loaded config from {path}")
                    break
                except (OSError, yaml.YAMLError) as e:
                    logger.warning(f"Failed to load config from {path}: {e}")

        self._apply_config(config_data)

    def _sections(self) -> Dict[str, Any]:
        return {
            'stats': self.stats,
            'cloud_sync': self.cloud_sync,
            'logging': self.logging,
            'network': self.network,
            'security': self.security,
        }

    def _apply_config(self, config_data: Dict[str, Any]) -> None:
        """
        Apply configuration data to dataclass instances

        Unknown sections and keys are ignored.

        Args:
            config_data: Dictionary containing configuration sections
        """
        config_mapping = self._sections()
        for section_name, section_data in config_data.items():
            if section_name in config_mapping and isinstance(section_data, dict):
                config_obj = config_mapping[section_name]
                for key, value in section_data.items():
                    if hasattr(config_obj, key):
                        setattr(config_obj, key, value)

    def _load_sync_state(self) -> None:
        """Load tokens and sync bookkeeping written by a previous run"""
        path = self.get_sync_state_path()
        if not path.exists():
            return
        try:
            with open(path, 'r', encoding='utf-8') as f:
                state = json.load(f) or {}
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load sync state from {path}: {e}")
            return

        for key in SYNC_STATE_FIELDS:
            if key in state:
                setattr(self.cloud_sync, key, state[key])

    def _load_environment_variables(self) -> None:
        """
        Load sensitive configuration from environment variables

        Environment variables take precedence over file-based configuration.
        """
        env_mappings = {
            'MUSIC_STATS_CLIENT_ID': lambda v: setattr(self.cloud_sync, 'client_id', v),
            'MUSIC_STATS_CLIENT_SECRET': lambda v: setattr(self.cloud_sync, 'client_secret', v),
            'MUSIC_STATS_DATA_DIR': lambda v: setattr(self.stats, 'data_directory', v),
            'MUSIC_STATS_LOG_LEVEL': lambda v: setattr(self.logging, 'level', v),
        }

        for env_var, setter in env_mappings.items():
            value = os.getenv(env_var)
            if value:
                setter(value)

    def _create_directories(self) -> None:
        """Create the config and data directories if missing"""
        for directory in (self.get_config_directory(), self.get_data_directory()):
            try:
                ensure_directory(directory)
            except OSError as e:
                logger.warning(f"Failed to create directory {directory}: {e}")

    def get_config_directory(self) -> Path:
        return Path(self.security.config_directory).expanduser()

    def get_data_directory(self) -> Path:
        if self.stats.data_directory:
            return Path(self.stats.data_directory).expanduser()
        return self.get_config_directory()

    def get_database_path(self) -> Path:
        """Location of the local stats snapshot file"""
        return self.get_data_directory() / self.stats.database_file

    def get_sync_state_path(self) -> Path:
        return self.get_config_directory() / self.security.sync_state_file

    def sync_state(self) -> Dict[str, Any]:
        """Copy of the persisted cloud sync state"""
        with self._state_lock:
            return {key: getattr(self.cloud_sync, key) for key in SYNC_STATE_FIELDS}

    def update_sync_state(self, **changes: Any) -> None:
        """
        Update cloud sync state fields and write them through to disk

        Args:
            **changes: SyncState field names and their new values

        Raises:
            KeyError: If a field is not part of the sync state
        """
        unknown = set(changes) - set(SYNC_STATE_FIELDS)
        if unknown:
            raise KeyError(f"Unknown sync state fields: {', '.join(sorted(unknown))}")

        with self._state_lock:
            for key, value in changes.items():
                setattr(self.cloud_sync, key, value)
            self._save_sync_state()

    def _save_sync_state(self) -> None:
        path = self.get_sync_state_path()
        state = {key: getattr(self.cloud_sync, key) for key in SYNC_STATE_FIELDS}
        state['saved_at'] = datetime.now().isoformat()
        tmp_path = path.with_name(path.name + '.tmp')
        try:
            ensure_directory(path.parent)
            if tmp_path.exists():
                tmp_path.unlink()
            # Owner read/write only, from creation on
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to save sync state to {path}: {e}")

    def save_config(self, path: Optional[str] = None) -> Path:
        """
        Save current configuration to a YAML file

        Credentials and sync bookkeeping are excluded; they live in the sync
        state file.

        Args:
            path: Custom path to save config, defaults to user config directory

        Returns:
            Path the configuration was written to

        Raises:
            OSError: If the configuration cannot be saved
        """
        target = Path(path).expanduser() if path else self.get_config_directory() / "config.yaml"

        config_data = {name: self._dataclass_to_dict(section) for name, section in self._sections().items()}
        for key in SECRET_FIELDS:
            config_data['cloud_sync'].pop(key, None)

        ensure_directory(target.parent)
        with open(target, 'w', encoding='utf-8') as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, indent=2)
        logger.info(f"Configuration saved to {target}")
        return target

    @staticmethod
    def _dataclass_to_dict(obj) -> Dict[str, Any]:
        return {f.name: getattr(obj, f.name) for f in fields(obj)}

    def validate(self) -> bool:
        """
        Validate current configuration

        Returns:
            True if configuration is valid, False otherwise (errors are logged)
        """
        errors = []

        if self.cloud_sync.enabled and not self.cloud_sync.client_id:
            errors.append("cloud_sync.client_id is required when cloud sync is enabled")

        if self.stats.flush_interval <= 0:
            errors.append(f"Invalid flush interval: {self.stats.flush_interval}")

        if self.stats.aggregation_interval <= 0:
            errors.append(f"Invalid aggregation interval: {self.stats.aggregation_interval}")

        if self.cloud_sync.sync_interval <= 0:
            errors.append(f"Invalid sync interval: {self.cloud_sync.sync_interval}")

        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"Invalid log level: {self.logging.level}")

        for error in errors:
            logger.error(f"Configuration error: {error}")
        return not errors

    def __str__(self) -> str:
        sections = [
            f"Database: {self.get_database_path()}",
            f"Cloud sync: {'enabled' if self.cloud_sync.enabled else 'disabled'}",
            f"Log level: {self.logging.level}",
        ]
        return f"Settings({', '.join(sections)})"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the shared settings instance used by the command line interface

    Created lazily on first use so importing the package has no side effects.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings(config_path: Optional[str] = None) -> Settings:
    """
    Reload settings from configuration files

    Args:
        config_path: Optional path to specific config file

    Returns:
        New Settings instance with reloaded configuration
    """
    global _settings
    _settings = Settings(config_path)
    return _settings
