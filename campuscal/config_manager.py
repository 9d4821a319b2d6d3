from __future__ import annotations

import errno
import logging
import os
import re
import threading
from dataclasses import fields
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from campuscal.errors import ConfigError
from campuscal.models import AppConfig, CalendarConfig, CalendarPalette, StorageConfig, default_app_config

logger = logging.getLogger(__name__)

_SECTIONS: dict[str, type] = {
    "storage": StorageConfig,
    "calendar": CalendarConfig,
    "colors": CalendarPalette,
}
_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def _merge_sections(current: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``payload`` on ``current`` one section at a time.

    Unknown sections or keys raise ``ConfigError`` instead of being dropped
    silently by ``AppConfig.from_dict``.
    """
    merged = {name: dict(current.get(name) or {}) for name in _SECTIONS}
    for name, section in payload.items():
        if name not in _SECTIONS:
            raise ConfigError(f"unknown config section: {name!r}")
        if not isinstance(section, dict):
            raise ConfigError(f"config section {name!r} must be a mapping")
        allowed = {item.name for item in fields(_SECTIONS[name])}
        unknown = sorted(set(section) - allowed)
        if unknown:
            raise ConfigError(f"unknown keys in {name!r}: {', '.join(unknown)}")
        merged[name].update(section)
    return merged


def _validated(data: dict[str, Any]) -> AppConfig:
    calendar = data["calendar"]
    zone = str(calendar.get("timezone", "UTC")).strip()
    if zone and zone.upper() != "UTC":
        try:
            ZoneInfo(zone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"unknown timezone: {zone!r}") from exc

    minutes = calendar.get("default_duration_minutes", 60)
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 1:
        raise ConfigError("calendar.default_duration_minutes must be a positive integer")

    for role, color in data["colors"].items():
        if not _HEX_COLOR.match(str(color)):
            raise ConfigError(f"colors.{role} must look like #RRGGBB, got {color!r}")

    return AppConfig.from_dict(data)


class ConfigManager:
    """YAML-backed settings shared by every user service of the web API."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            text = self.config_path.read_text(encoding="utf-8")
        return AppConfig.from_dict(yaml.safe_load(text) or {})

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
            tmp_path.write_text(text, encoding="utf-8")
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # bind-mounted config files cannot be replaced, only rewritten
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = _merge_sections(self.load().to_dict(), payload)
            config = _validated(merged)
            self.save(config)
        logger.info("Config updated: %s", ", ".join(sorted(payload)) or "no changes")
        return config
