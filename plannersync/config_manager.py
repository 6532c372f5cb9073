from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from plannersync.errors import ConfigurationError
from plannersync.models import AppConfig, default_app_config

MASK = "***"
CONFIG_PATH_ENV = "PLANNERSYNC_CONFIG_PATH"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


def strip_masked_secrets(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop a blank or masked password from an update so it keeps the stored one."""
    sanitized = copy.deepcopy(payload)
    caldav = sanitized.get("caldav")
    if not isinstance(caldav, dict):
        return sanitized
    password = caldav.get("password")
    if password is not None and str(password).strip() in {"", MASK}:
        if str(current.get("caldav", {}).get("password", "")):
            caldav.pop("password", None)
        else:
            caldav["password"] = ""
    if not caldav:
        sanitized.pop("caldav", None)
    return sanitized


class ConfigManager:
    """YAML-backed settings shared by the engine, the scheduler and the admin API."""

    def __init__(self, config_path: str | os.PathLike[str] | None = None) -> None:
        self.config_path = Path(config_path or os.getenv(CONFIG_PATH_ENV, "config.yaml"))
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file {self.config_path} is not valid YAML: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {self.config_path} must contain a mapping.")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            try:
                return AppConfig.from_dict(self._read_raw())
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid value in {self.config_path}: {exc}") from exc

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            data = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _write_yaml(tmp_path, data)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                _write_yaml(self.config_path, data)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load().to_dict()
            config = AppConfig.from_dict(_deep_merge(current, strip_masked_secrets(payload, current)))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config["caldav"].get("password"):
            config["caldav"]["password"] = MASK
        return config
