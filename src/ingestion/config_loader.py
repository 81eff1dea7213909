"""Load, validate, and hot-reload the Waypoint sync configuration.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after an admin update without a restart.

Usage::

    from src.ingestion.config_loader import get_sync_config

    config = get_sync_config()
    strava = config.provider("strava")
    strava.page_size           # 200
    strava.quota_windows[0]    # QuotaWindow(name='15min', limit=95, ...)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("waypoint.ingestion.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuotaWindow:
    """One rate-limit tier: at most ``limit`` requests per ``window_ms``."""

    name: str
    limit: int
    window_ms: int

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000.0


@dataclass
class ProviderSyncConfig:
    """Sync tuning for a single provider."""

    quota_windows: list[QuotaWindow]
    page_size: int = 200
    detail_batch_size: int = 50
    safety_cap: int = 10000
    incremental_lookback_days: int = 7
    photo_size: int = 600
    photo_progress_every: int = 5


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:         Config schema version string.
        quota_max_users: Capacity of the in-process quota usage store.
        providers:       Per-provider settings keyed by source slug.
    """

    version: str
    quota_max_users: int
    providers: dict[str, ProviderSyncConfig]
    _raw: dict = field(default_factory=dict, repr=False)

    def provider(self, source: str) -> ProviderSyncConfig:
        """Return the settings for ``source``.

        Raises:
            KeyError: If the provider is not configured.
        """
        if source not in self.providers:
            raise KeyError(
                f"No sync config for provider '{source}'. "
                f"Configured: {list(self.providers)}"
            )
        return self.providers[source]


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _positive_int(
    section: dict, key: str, default: int | None, where: str, errors: list[str]
) -> int:
    value: Any = section.get(key, default)
    if value is None:
        errors.append(f"Missing required key '{key}' in section '{where}'")
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError):
        errors.append(f"{where}.{key} must be an integer, got {value!r}")
        return 0
    if number <= 0:
        errors.append(f"{where}.{key} must be positive, got {number}")
    return number


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Collects every problem before raising so one edit can fix them all.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    store_raw = raw.get("quota_store") or {}
    quota_max_users = _positive_int(store_raw, "max_users", 10000, "quota_store", errors)

    providers_raw = raw.get("providers") or {}
    if not providers_raw:
        errors.append("'providers' section is missing or empty")

    providers: dict[str, ProviderSyncConfig] = {}
    for source, cfg in providers_raw.items():
        where = f"providers.{source}"
        if not isinstance(cfg, dict):
            errors.append(f"{where} must be a mapping")
            continue

        windows: list[QuotaWindow] = []
        windows_raw = cfg.get("quota_windows") or []
        if not windows_raw:
            errors.append(f"{where}.quota_windows must list at least one window")
        names: set[str] = set()
        for i, w in enumerate(windows_raw):
            w_where = f"{where}.quota_windows[{i}]"
            if not isinstance(w, dict):
                errors.append(f"{w_where} must be a mapping")
                continue
            name = str(w.get("name") or "")
            if not name:
                errors.append(f"{w_where} is missing 'name'")
            elif name in names:
                errors.append(f"{w_where} duplicates window name '{name}'")
            names.add(name)
            windows.append(
                QuotaWindow(
                    name=name,
                    limit=_positive_int(w, "limit", None, w_where, errors),
                    window_ms=_positive_int(w, "window_ms", None, w_where, errors),
                )
            )

        providers[source] = ProviderSyncConfig(
            # Shortest window first: that is the order quota checks report in.
            quota_windows=sorted(windows, key=lambda qw: qw.window_ms),
            page_size=_positive_int(cfg, "page_size", 200, where, errors),
            detail_batch_size=_positive_int(cfg, "detail_batch_size", 50, where, errors),
            safety_cap=_positive_int(cfg, "safety_cap", 10000, where, errors),
            incremental_lookback_days=_positive_int(
                cfg, "incremental_lookback_days", 7, where, errors
            ),
            photo_size=_positive_int(cfg, "photo_size", 600, where, errors),
            photo_progress_every=_positive_int(cfg, "photo_progress_every", 5, where, errors),
        )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        quota_max_users=quota_max_users,
        providers=providers,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.

    Returns:
        Validated SyncConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
