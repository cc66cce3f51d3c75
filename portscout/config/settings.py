"""
Configuration management for host discovery.

Defaults are overridden by an optional YAML file, which is in turn overridden
by environment variables.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, fields
import logging

logger = logging.getLogger('config_manager')

TRUTHY = {'true', '1', 'yes', 'on'}

# Environment variable -> settings attribute
ENV_OVERRIDES = {
    'TRUENAS_API_KEY': 'truenas_api_key',
    'CACHE_TIMEOUT_MS': 'cache_timeout_ms',
    'DISABLE_CACHE': 'disable_cache',
    'INCLUDE_UDP': 'include_udp',
    'TRUENAS_WS_BASE': 'truenas_ws_base',
    'PORT': 'self_port',
    'DEBUG': 'debug',
}


@dataclass
class CollectorSettings:
    """Settings shared by collectors and the TrueNAS client stack"""
    truenas_api_key: Optional[str] = None
    cache_timeout_ms: int = 60000
    disable_cache: bool = False
    include_udp: bool = False
    truenas_ws_base: Optional[str] = None
    self_port: int = 4999
    debug: bool = False

    docker_socket: str = '/var/run/docker.sock'
    command_timeout: int = 30

    # TrueNAS middleware timeouts (seconds)
    ws_connect_timeout: float = 10.0
    ws_auth_timeout: float = 10.0
    ws_request_timeout: float = 30.0
    ws_ping_interval: float = 20.0
    discovery_timeout: float = 5.0

    def __post_init__(self):
        """Coerce values that may arrive as strings from YAML or the environment"""
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None or f.type not in ('int', 'float', 'bool', int, float, bool):
                continue
            setattr(self, f.name, _coerce(value, f.type, getattr(CollectorSettings, f.name, None)))

        if self.truenas_api_key is not None and not str(self.truenas_api_key).strip():
            self.truenas_api_key = None

    @property
    def has_api_key(self) -> bool:
        return bool(self.truenas_api_key)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CollectorSettings':
        """Build settings from a collector config dict, ignoring unknown keys"""
        if isinstance(data, cls):
            return data
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> 'CollectorSettings':
        """Return a copy with the given keys replaced"""
        merged = {f.name: getattr(self, f.name) for f in fields(self)}
        known = set(merged)
        merged.update({k: v for k, v in (overrides or {}).items() if k in known})
        return CollectorSettings(**merged)


def _coerce(value, target_type, default):
    type_name = target_type if isinstance(target_type, str) else target_type.__name__
    if type_name == 'bool':
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in TRUTHY
    try:
        if type_name == 'int':
            return int(str(value).strip())
        return float(str(value).strip())
    except ValueError:
        logger.warning(f"Invalid numeric setting value {value!r}, using default {default}")
        return default


def _find_config_file(config_file: Optional[str] = None) -> Optional[Path]:
    """Find configuration file in standard locations"""
    if config_file:
        return Path(config_file)

    env_path = os.getenv('PORTSCOUT_CONFIG')
    if env_path:
        return Path(env_path)

    possible_locations = [
        Path('config/portscout.yml'),
        Path('/etc/portscout/portscout.yml'),
        Path.home() / '.config' / 'portscout' / 'portscout.yml'
    ]

    for location in possible_locations:
        if location.exists():
            logger.info(f"Found config file at {location}")
            return location

    return None


def _load_yaml(config_path: Optional[Path]) -> Dict[str, Any]:
    if not config_path:
        return {}

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Config file not found: {config_path}")
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load configuration from {config_path}: {e}")
        return {}

    if not isinstance(config_data, dict):
        logger.error(f"Configuration in {config_path} is not a mapping, ignoring it")
        return {}

    # Collector settings may sit at the top level or under a 'collector' section
    section = config_data.get('collector', config_data)
    return section if isinstance(section, dict) else {}


def _env_overrides(environ=None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    overrides = {}
    for env_var, attribute in ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value is not None and value != '':
            overrides[attribute] = value
    return overrides


def load_settings(config_file: str = None, environ=None) -> CollectorSettings:
    """Load settings from defaults, YAML file and environment, in that order"""
    data = _load_yaml(_find_config_file(config_file))
    data.update(_env_overrides(environ))
    settings = CollectorSettings.from_dict(data)

    if settings.disable_cache:
        logger.warning("Caching is globally disabled via DISABLE_CACHE")

    return settings


# Global settings instance
_settings = None


def get_settings() -> CollectorSettings:
    """Get global settings instance"""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def initialize_settings(config_file: str = None) -> CollectorSettings:
    """Initialize settings with a specific config file"""
    global _settings
    _settings = load_settings(config_file)
    return _settings


def resolve_settings(config: Optional[Dict[str, Any]] = None) -> CollectorSettings:
    """
    Settings for a collector instance.

    A CollectorSettings passes through; a dict of overrides is layered on top of
    the environment-derived settings.
    """
    if isinstance(config, CollectorSettings):
        return config
    return load_settings().with_overrides(config)
