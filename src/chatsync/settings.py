"""Client configuration and the local key-value settings file."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

BASE_DIR = Path.home() / ".chatsync"
SETTINGS_PATH = BASE_DIR / "settings.json"

THEMES = ("light", "dark", "system")
DEFAULT_SESSION_DURATION_MINUTES = 30


@dataclass(frozen=True)
class ClientConfig:
    base_url: str = "http://127.0.0.1:8080"
    cloud_name: str = ""
    upload_preset: str = ""
    upload_base_url: str = "https://api.cloudinary.com/v1_1"
    max_image_bytes: int = 5 * 1024 * 1024
    request_timeout_s: int = 30
    settings_path: Path = SETTINGS_PATH


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip()


def load_client_config_from_env() -> ClientConfig:
    defaults = ClientConfig()
    return ClientConfig(
        base_url=_parse_str("CHATSYNC_BASE_URL", defaults.base_url),
        cloud_name=_parse_str("CHATSYNC_CLOUD_NAME", defaults.cloud_name),
        upload_preset=_parse_str("CHATSYNC_UPLOAD_PRESET", defaults.upload_preset),
        upload_base_url=_parse_str("CHATSYNC_UPLOAD_BASE_URL", defaults.upload_base_url),
        max_image_bytes=_parse_positive_int("CHATSYNC_MAX_IMAGE_BYTES", defaults.max_image_bytes),
        request_timeout_s=_parse_positive_int("CHATSYNC_REQUEST_TIMEOUT_S", defaults.request_timeout_s),
        settings_path=Path(_parse_str("CHATSYNC_SETTINGS_PATH", str(defaults.settings_path))).expanduser(),
    )


def _atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class SettingsStore:
    """Primitive key-value settings persisted as one JSON file."""

    def __init__(self, path: Path | str = SETTINGS_PATH) -> None:
        self.path = Path(path).expanduser()
        self._values = self._load()

    def _load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, ValueError):
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: str | int | float | bool | None) -> None:
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise TypeError(f"setting {key} must be a primitive value")
        self._values[key] = value
        _atomic_write_json(self.path, self._values)

    @property
    def theme(self) -> str:
        value = self._values.get("theme")
        return value if value in THEMES else "system"

    @theme.setter
    def theme(self, value: str) -> None:
        if value not in THEMES:
            raise ValueError(f"theme must be one of {', '.join(THEMES)}")
        self.set("theme", value)

    @property
    def notifications_enabled(self) -> bool:
        value = self._values.get("notifications_enabled")
        return value if isinstance(value, bool) else True

    @notifications_enabled.setter
    def notifications_enabled(self, value: bool) -> None:
        self.set("notifications_enabled", bool(value))

    @property
    def session_duration_minutes(self) -> int:
        value = self._values.get("session_duration_minutes")
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
        return DEFAULT_SESSION_DURATION_MINUTES

    @session_duration_minutes.setter
    def session_duration_minutes(self, value: int) -> None:
        if value <= 0:
            raise ValueError("session duration must be positive")
        self.set("session_duration_minutes", int(value))
