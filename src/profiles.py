import logging
from pathlib import Path

import tomlkit

from domain.models import StoreSettings
from domain.toml_sections import flat_to_sectioned, sectioned_to_flat

logger = logging.getLogger(__name__)


def load_settings(path: str | Path | None = None) -> StoreSettings:
    """
    Load and validate a TOML settings profile -> StoreSettings.

    Accepts both the sectioned layout ([registry], [writer], ...) and flat
    files. Without a path the built-in defaults are returned.
    """
    if path is None:
        return StoreSettings()
    path = Path(path)
    if not path.exists():
        msg = f'Settings profile not found: {path}'
        raise FileNotFoundError(msg)
    text = path.read_text(encoding='utf-8')
    data = tomlkit.parse(text).unwrap()
    settings = StoreSettings.model_validate(sectioned_to_flat(data))
    logger.info('Loaded settings profile %s', path)
    return settings


def save_settings(path: str | Path, settings: StoreSettings) -> Path:
    """Save settings as a sectioned TOML profile (no atomic replace)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    text = tomlkit.dumps(flat_to_sectioned(settings.model_dump()))
    path.write_text(text, encoding='utf-8')
    return path
