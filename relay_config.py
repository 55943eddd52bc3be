import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

ENV_RELAY_VAR = "IGLOO_RELAY"


def app_data_path() -> Path:
    """Per-user application data directory, honouring ``IGLOO_APPDATA``."""
    override = os.getenv("IGLOO_APPDATA")
    if override:
        return Path(override)
    if sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        return Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    xdg = os.getenv("XDG_CONFIG_HOME")
    return Path(xdg) if xdg else Path.home() / ".config"


def relays_config_path() -> Path:
    return app_data_path() / "igloo" / "relays.json"


def env_relay() -> Optional[str]:
    value = os.getenv(ENV_RELAY_VAR, "").strip()
    return value or None


class FileRelayConfig:
    """Reads the optional ``relays.json`` override.

    Any problem with the file (missing, unreadable, not JSON, wrong shape)
    means there is no override.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None

    def configured_relays(self) -> Optional[List[str]]:
        path = self.path or relays_config_path()
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug("Ignoring relay config %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            return None
        relays = data.get("relays")
        if not isinstance(relays, list):
            return None
        return [r for r in relays if isinstance(r, str)]


class StaticRelayConfig:
    def __init__(self, relays: Optional[List[str]] = None):
        self.relays = relays

    def configured_relays(self) -> Optional[List[str]]:
        return list(self.relays) if self.relays is not None else None
