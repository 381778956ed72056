"""Loading and normalizing config.json for lock backends and the CLI."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_SPIN_DELAY = 0.005  # 5000 microseconds between blocking attempts


@dataclass
class LockSettings:
    database: Optional[str] = None
    spin_delay: float = DEFAULT_SPIN_DELAY
    reclaim_unexpiring: bool = False
    drop_ghosts_on_init: bool = True


def load_config(path: str | None = None) -> dict[str, Any]:
    """Load a JSON config file.

    Without an explicit path, `config.json` in the current directory is used
    when present. A missing or unreadable file yields an empty dict.
    """
    p = Path(path) if path else Path.cwd() / "config.json"
    if not p.exists():
        if path:
            logger.warning("config file does not exist: %s", p)
        return {}
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as e:
        logger.error("failed to load config from %s: %s", p, e)
        return {}
    if not isinstance(data, dict):
        logger.error("config %s must contain a JSON object", p)
        return {}
    logger.debug("loaded config from %s", p)
    return data


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
    return default


def settings_from_config(cfg: dict) -> LockSettings:
    """Build LockSettings from a config dict, falling back to defaults on bad values."""
    settings = LockSettings()
    db = cfg.get("database")
    if isinstance(db, str) and db.strip():
        settings.database = db.strip()

    try:
        spin = float(cfg.get("spin_delay", DEFAULT_SPIN_DELAY))
        if spin < 0:
            raise ValueError(spin)
        settings.spin_delay = spin
    except (TypeError, ValueError):
        logger.warning("invalid spin_delay %r, using %s", cfg.get("spin_delay"), DEFAULT_SPIN_DELAY)

    settings.reclaim_unexpiring = _as_bool(cfg.get("reclaim_unexpiring"), False)
    settings.drop_ghosts_on_init = _as_bool(cfg.get("drop_ghosts_on_init"), True)
    return settings
