"""
Configuration for the Session Auth Client.

Values are looked up in this order, first hit wins:

1. Overrides set at runtime (command line flags)
2. ``SESSION_AUTH_*`` environment variables
3. The INI configuration file
4. Built-in defaults
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any, Callable, TypeVar
from configparser import ConfigParser

from shared.interfaces import IConfigurationManager

logger = logging.getLogger(__name__)

T = TypeVar('T')

ENV_PREFIX = 'SESSION_AUTH_'

DEFAULT_CONFIG = {
    'server': {
        'url': 'http://localhost:8080',
        'timeout': 30.0,
        'login_path': '/login'
    },
    'storage': {
        'backend': 'auto',
        'path': None,
        'service_name': 'session-auth-client'
    },
    'session': {
        'check_on_start': True
    },
    'logging': {
        'level': 'WARNING',
        'file': None,
        'structured_logging': False,
        'audit_file': None
    }
}

# Environment variable suffix -> (section, key)
ENV_VARIABLES = {
    'SERVER_URL': ('server', 'url'),
    'TIMEOUT': ('server', 'timeout'),
    'STORAGE_BACKEND': ('storage', 'backend'),
    'STORAGE_PATH': ('storage', 'path'),
    'LOG_LEVEL': ('logging', 'level'),
}

STORAGE_BACKENDS = ('auto', 'keyring', 'file', 'memory')

_FILE_HEADER = """\
# Session Auth Client configuration.
#
# storage.backend is one of: auto, keyring, file, memory
# logging.level is one of: DEBUG, INFO, WARNING, ERROR, CRITICAL
# Unset paths (storage.path, logging.file, logging.audit_file) use defaults.

"""


def default_config_path() -> Path:
    return Path.home() / '.session-auth' / 'client.conf'


def _parse_value(raw: str) -> Any:
    # Numbers and booleans are stored as JSON literals, everything else as text
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _format_value(value: Any) -> str:
    if isinstance(value, (bool, dict, list)):
        return json.dumps(value)
    return str(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


class ClientConfiguration(IConfigurationManager):
    """
    Layered configuration backed by an INI file.

    Keys are addressed as ``section.key``. When no path is given the
    per-user file is used, and written with default values if it does
    not exist yet.
    """

    def __init__(self, config_file: Optional[str] = None):
        if config_file is None:
            path = default_config_path()
            if not path.exists():
                self._write_file(path, DEFAULT_CONFIG)
                logger.info(f"Created default configuration file: {path}")
            config_file = str(path)

        self._config_file = config_file
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}
        self._load_configuration()

    def _load_configuration(self) -> None:
        data: Dict[str, Dict[str, Any]] = {}

        if os.path.exists(self._config_file):
            parser = ConfigParser()
            try:
                parser.read(self._config_file)
            except Exception as e:
                logger.warning(f"Ignoring unreadable configuration file {self._config_file}: {e}")
            else:
                for section in parser.sections():
                    data[section] = {
                        key: _parse_value(raw) for key, raw in parser[section].items()
                    }
                logger.debug(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"No configuration file at {self._config_file}, using defaults")

        for suffix, (section, key) in ENV_VARIABLES.items():
            value = os.environ.get(ENV_PREFIX + suffix)
            if value is not None:
                data.setdefault(section, {})[key] = value

        for section, defaults in DEFAULT_CONFIG.items():
            values = data.setdefault(section, {})
            for key, value in defaults.items():
                values.setdefault(key, value)

        self._config_data = data

    @staticmethod
    def _write_file(path: Path, data: Dict[str, Dict[str, Any]]) -> None:
        parser = ConfigParser()
        for section, values in data.items():
            parser[section] = {
                key: _format_value(value) for key, value in values.items() if value is not None
            }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            f.write(_FILE_HEADER)
            parser.write(f)

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get a value by ``section.key``.

        A key without a dot returns the whole section mapping.
        """
        if key in self._overrides:
            return self._overrides[key]

        section, _, name = key.partition('.')
        if not name:
            return self._config_data.get(section, default)
        return self._config_data.get(section, {}).get(name, default)

    def set_config(self, key: str, value: Any) -> None:
        """Set a value by ``section.key``; persisted by save_configuration."""
        section, _, name = key.partition('.')
        if not name:
            raise ValueError(f"Configuration key must be 'section.key', got {key!r}")
        self._config_data.setdefault(section, {})[name] = value

    def set_override(self, key: str, value: Any) -> None:
        """Override a value for this process only. None removes the override."""
        if value is None:
            self._overrides.pop(key, None)
        else:
            self._overrides[key] = value

    def save_configuration(self) -> None:
        """Write the file, environment and default layers back to the file. Overrides are not saved."""
        try:
            self._write_file(Path(self._config_file), self._config_data)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            raise
        logger.info(f"Configuration saved to: {self._config_file}")

    def get_config_file_path(self) -> str:
        return self._config_file

    def reload_configuration(self) -> None:
        self._load_configuration()
        logger.info("Configuration reloaded")

    def _typed(self, key: str, convert: Callable[[Any], T]) -> T:
        fallback = DEFAULT_CONFIG[key.split('.')[0]][key.split('.')[1]]
        value = self.get_config(key, fallback)
        try:
            return convert(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value {value!r} for {key}, using {fallback!r}")
            return convert(fallback)

    # Typed accessors

    def get_server_url(self) -> str:
        return self._typed('server.url', str)

    def get_server_timeout(self) -> float:
        """Request timeout in seconds."""
        return self._typed('server.timeout', float)

    def get_login_path(self) -> str:
        return self._typed('server.login_path', str)

    def get_storage_backend(self) -> str:
        """One of STORAGE_BACKENDS; unknown names fall back to ``auto``."""
        backend = str(self.get_config('storage.backend', 'auto')).lower()
        if backend not in STORAGE_BACKENDS:
            logger.warning(f"Unknown storage backend {backend!r}, using auto")
            return 'auto'
        return backend

    def get_storage_path(self) -> Optional[str]:
        return self.get_config('storage.path') or None

    def get_service_name(self) -> str:
        return self._typed('storage.service_name', str)

    def should_check_on_start(self) -> bool:
        return self._typed('session.check_on_start', _as_bool)

    def get_log_level(self) -> str:
        return self._typed('logging.level', str).upper()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file') or None

    def get_structured_logging(self) -> bool:
        return self._typed('logging.structured_logging', _as_bool)

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file') or None
