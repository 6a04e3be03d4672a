from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from pkgvault.domain.models import LauncherSettings
from pkgvault.storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)

DATA_ROOT_ENV_VAR = "PKGVAULT_DATA_DIR"

# Resolve repository root (project root, not the Python package root)
_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_DATA_DIR = _REPO_ROOT / "data"


def get_data_dir() -> Path:
    """
    Determine the data directory path.

    Priority:
    1. Environment variable PKGVAULT_DATA_DIR
    2. '<project root>/data'
    """
    env_path = os.environ.get(DATA_ROOT_ENV_VAR)
    if env_path:
        data_dir = Path(env_path).expanduser()
    else:
        data_dir = _DEFAULT_DATA_DIR
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def settings_path(data_dir: Path) -> Path:
    return data_dir / "settings.json"


def load_settings(data_dir: Optional[Path] = None) -> LauncherSettings:
    """
    Load settings.json, merging with defaults for any missing fields,
    and write it back so any new fields are persisted.
    """
    data_dir = data_dir or get_data_dir()
    path = settings_path(data_dir)
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            settings = LauncherSettings(**raw)
        except (OSError, ValueError, TypeError, ValidationError) as e:
            # If parsing fails, fall back to defaults and overwrite file.
            logger.warning(f"Could not read {path}, using defaults: {e}")
            settings = LauncherSettings()
    else:
        settings = LauncherSettings()

    if settings.games_dir is None:
        settings.games_dir = data_dir / "games"
    if settings.addons_dir is None:
        settings.addons_dir = data_dir / "addcont"
    if settings.save_data_dir is None:
        settings.save_data_dir = data_dir / "savedata"

    save_settings(settings, data_dir)
    return settings


def save_settings(settings: LauncherSettings, data_dir: Optional[Path] = None) -> None:
    data_dir = data_dir or get_data_dir()
    atomic_write_text(settings_path(data_dir), settings.model_dump_json(indent=2))
