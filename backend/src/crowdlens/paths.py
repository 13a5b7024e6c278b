"""
Canonical path resolution for CrowdLens.

Single source of truth for where config and database files live.

All user-writable state goes under ~/.crowdlens/ (overridable via
$CROWDLENS_DATA_HOME). In dev mode, config falls back to <repo>/config/.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional


def _is_dev_mode() -> bool:
    """Detect whether we're running from a repo checkout vs pip install.

    In a pip install, crowdlens lives in site-packages and there is no
    setup.py three levels above the package.
    """
    # backend/src/crowdlens/paths.py -> backend/src/crowdlens -> backend/src -> backend -> repo root
    repo_root = Path(__file__).resolve().parent.parent.parent.parent
    return (repo_root / "setup.py").is_file() and (repo_root / "backend" / "src").is_dir()


def get_repo_root() -> Optional[Path]:
    """Return the repo root path in dev mode, None in installed mode."""
    if not _is_dev_mode():
        return None
    return Path(__file__).resolve().parent.parent.parent.parent


def get_data_home() -> Path:
    """Return the base directory for all CrowdLens user data.

    Default: ~/.crowdlens/
    Override: $CROWDLENS_DATA_HOME
    """
    env = os.environ.get("CROWDLENS_DATA_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".crowdlens"


def get_config_path() -> Path:
    """Return the path to config.json.

    Search order:
    1. $CROWDLENS_DATA_HOME/config.json or ~/.crowdlens/config.json (if exists)
    2. <repo>/config/config.json (dev mode, if exists)
    3. Falls back to the data home location (will be created by init)
    """
    data_home_config = get_data_home() / "config.json"
    if data_home_config.is_file():
        return data_home_config

    repo_root = get_repo_root()
    if repo_root is not None:
        repo_config = repo_root / "config" / "config.json"
        if repo_config.is_file():
            return repo_config

    # Default location (may not exist yet)
    return data_home_config


def get_default_database_path() -> Path:
    """Return the path of the default SQLite database."""
    return get_data_home() / "data" / "crowdlens.db"


def ensure_data_home() -> Path:
    """Create the data home directory structure if it doesn't exist.

    Returns the data home path.
    """
    data_home = get_data_home()
    data_home.mkdir(parents=True, exist_ok=True)
    (data_home / "data").mkdir(parents=True, exist_ok=True)
    return data_home
