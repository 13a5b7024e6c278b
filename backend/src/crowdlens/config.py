"""
Configuration loading for CrowdLens.

Config is a JSON document with one object per section. Missing sections and
keys fall back to defaults, and a handful of environment variables override
the file. load_config() returns the merged dict; load_settings() returns the
typed view used by the rest of the package.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union
import copy
import json
import logging
import os

from .paths import get_config_path, get_default_database_path

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ('memory', 'sql')


def get_default_config() -> Dict[str, Dict[str, Any]]:
    """
    Return default configuration.
    """
    return {
        "clustering": {
            "similarity_threshold": 0.7,
            "min_face_confidence": 0.8,
            "min_bib_confidence": 0.7
        },
        "search": {
            "face_threshold": 0.6,
            "preview_limit": 5,
            "max_page_size": 100
        },
        "storage": {
            "backend": "memory",
            "url": ""
        },
        "vision": {
            "provider": "dummy",
            "timeout_seconds": 30,
            "embedding_dim": 128
        },
        "locking": {
            "timeout_seconds": 30
        },
        "logging": {
            "level": "INFO"
        }
    }


# Environment variable -> (section, key, type)
ENV_OVERRIDES = {
    'CROWDLENS_SIMILARITY_THRESHOLD': ('clustering', 'similarity_threshold', float),
    'CROWDLENS_FACE_THRESHOLD': ('search', 'face_threshold', float),
    'CROWDLENS_STORAGE_BACKEND': ('storage', 'backend', str),
    'CROWDLENS_DATABASE_URL': ('storage', 'url', str),
    'CROWDLENS_VISION_TIMEOUT': ('vision', 'timeout_seconds', float),
    'CROWDLENS_LOG_LEVEL': ('logging', 'level', str),
}


def _merge_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in missing sections and keys from the defaults."""
    defaults = get_default_config()

    for section, values in defaults.items():
        if section not in config:
            config[section] = values
        elif isinstance(values, dict):
            for key, default_value in values.items():
                if key not in config[section]:
                    config[section][key] = default_value

    return config


def get_env_overrides() -> Dict[str, Dict[str, Any]]:
    """
    Get configuration overrides from environment variables.

    Raises:
        ValueError: If a numeric override cannot be converted
    """
    overrides: Dict[str, Dict[str, Any]] = {}

    for env_var, (section, key, convert) in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is None:
            continue

        try:
            converted = convert(value)
        except ValueError:
            raise ValueError(f"Invalid value for {env_var}: {value!r}")

        overrides.setdefault(section, {})[key] = converted
        logger.debug(f"Environment override: {env_var} -> {section}.{key} = {converted}")

    return overrides


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration and apply environment overrides.

    Args:
        config_path: Explicit config file. Defaults to paths.get_config_path();
            a missing default file means built-in defaults.

    Returns:
        Config dict with every section present

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
        ValueError: If the file is not valid JSON or an override is malformed
    """
    explicit = config_path is not None
    path = Path(config_path) if explicit else get_config_path()

    if path.is_file():
        with open(path, 'r') as f:
            try:
                config = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid config file {path}: {e}")
        logger.debug(f"Loaded config from: {path}")
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {path}")
    else:
        logger.debug("No config file found, using defaults")
        config = {}

    config = _merge_defaults(config)

    for section, values in get_env_overrides().items():
        config[section].update(values)

    return config


def write_default_config(path: Union[str, Path]) -> Path:
    """Write the default configuration as JSON, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(get_default_config(), f, indent=2)
    return path


@dataclass
class ClusteringConfig:
    """Incremental assignment thresholds."""
    similarity_threshold: float = 0.7
    min_face_confidence: float = 0.8
    min_bib_confidence: float = 0.7


@dataclass
class SearchConfig:
    """Search defaults."""
    face_threshold: float = 0.6
    preview_limit: int = 5
    max_page_size: int = 100


@dataclass
class StorageConfig:
    """Store backend selection.

    Attributes:
        backend: 'memory' or 'sql'
        url: SQLAlchemy URL; empty means a SQLite file under the data home
    """
    backend: str = 'memory'
    url: str = ''

    def resolved_url(self) -> str:
        if self.url:
            return self.url
        return f"sqlite:///{get_default_database_path()}"


@dataclass
class VisionConfig:
    provider: str = 'dummy'
    timeout_seconds: float = 30.0
    embedding_dim: int = 128


@dataclass
class Settings:
    """Typed view of the merged configuration."""
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    vision: VisionConfig = field(default_factory=VisionConfig)
    lock_timeout: float = 30.0
    log_level: str = 'INFO'

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'Settings':
        """Build settings from a config dict, validating values.

        Raises:
            ValueError: If a threshold is outside [0, 1] or the backend is unknown
        """
        config = _merge_defaults(copy.deepcopy(config))

        clustering = ClusteringConfig(
            similarity_threshold=float(config['clustering']['similarity_threshold']),
            min_face_confidence=float(config['clustering']['min_face_confidence']),
            min_bib_confidence=float(config['clustering']['min_bib_confidence']),
        )
        search = SearchConfig(
            face_threshold=float(config['search']['face_threshold']),
            preview_limit=int(config['search']['preview_limit']),
            max_page_size=int(config['search']['max_page_size']),
        )
        storage = StorageConfig(
            backend=str(config['storage']['backend']).lower(),
            url=str(config['storage']['url'] or ''),
        )
        vision = VisionConfig(
            provider=str(config['vision']['provider']),
            timeout_seconds=float(config['vision']['timeout_seconds']),
            embedding_dim=int(config['vision']['embedding_dim']),
        )

        for name, value in (
            ('clustering.similarity_threshold', clustering.similarity_threshold),
            ('clustering.min_face_confidence', clustering.min_face_confidence),
            ('clustering.min_bib_confidence', clustering.min_bib_confidence),
            ('search.face_threshold', search.face_threshold),
        ):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")

        if storage.backend not in STORAGE_BACKENDS:
            raise ValueError(
                f"Unknown storage backend: {storage.backend}. "
                f"Choose from: {', '.join(STORAGE_BACKENDS)}"
            )

        return cls(
            clustering=clustering,
            search=search,
            storage=storage,
            vision=vision,
            lock_timeout=float(config['locking']['timeout_seconds']),
            log_level=str(config['logging']['level']).upper(),
        )


def load_settings(config_path: Optional[Union[str, Path]] = None) -> Settings:
    """Load config (file, defaults, environment) into Settings."""
    return Settings.from_dict(load_config(config_path))
