from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
import os
from typing import Any

import yaml

SUPPORTED_DRIVERS = ("aws", "gce")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(RuntimeError):
    """Raised when the controller configuration is invalid."""


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class AppConfig:
    driver: str = os.getenv("NKO_DRIVER", "aws")
    namespace: str | None = _env_optional("NKO_NAMESPACE")
    kubeconfig_path: str | None = _env_optional("NKO_KUBECONFIG")
    context: str | None = _env_optional("NKO_CONTEXT")
    in_cluster: bool = _env_flag("NKO_IN_CLUSTER")
    resync_seconds: int = int(os.getenv("NKO_RESYNC_SECONDS", "30"))
    max_backoff_seconds: int = int(os.getenv("NKO_MAX_BACKOFF_SECONDS", "300"))
    domain_retry_count: int = int(os.getenv("NKO_DOMAIN_RETRY_COUNT", "5"))
    domain_retry_interval_seconds: float = float(os.getenv("NKO_DOMAIN_RETRY_INTERVAL_SECONDS", "5"))
    rsync_image: str = os.getenv("NKO_RSYNC_IMAGE", "eeacms/rsync")
    aws_region: str | None = _env_optional("NKO_AWS_REGION")
    gce_project: str | None = _env_optional("NKO_GCE_PROJECT")
    gce_zone: str | None = _env_optional("NKO_GCE_ZONE")
    log_level: str = os.getenv("NKO_LOG_LEVEL", "INFO")


def load_app_config(path: str | Path | None = None, *, base: AppConfig | None = None) -> AppConfig:
    """Build the controller configuration.

    Environment defaults are applied first; a YAML file, when given, overrides
    individual keys. Keys may use either ``snake_case`` or ``kebab-case``.
    """
    config = base or AppConfig()
    if path is not None:
        config = replace(config, **_read_overrides(Path(path).expanduser()))
    validate_app_config(config)
    return config


def validate_app_config(config: AppConfig) -> None:
    if config.driver not in SUPPORTED_DRIVERS:
        raise ConfigurationError(
            f"Unsupported driver '{config.driver}'. Choose one of: {', '.join(SUPPORTED_DRIVERS)}."
        )
    if config.resync_seconds <= 0:
        raise ConfigurationError("resync_seconds must be positive")
    if config.max_backoff_seconds <= 0:
        raise ConfigurationError("max_backoff_seconds must be positive")
    if config.domain_retry_count <= 0:
        raise ConfigurationError("domain_retry_count must be positive")
    if config.domain_retry_interval_seconds < 0:
        raise ConfigurationError("domain_retry_interval_seconds must not be negative")
    if config.log_level.upper() not in SUPPORTED_LOG_LEVELS:
        raise ConfigurationError(f"Unsupported log level '{config.log_level}'.")


def _read_overrides(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as error:
        raise ConfigurationError(f"Unable to read configuration file '{path}': {error}") from error
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {error}") from error

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping at the top level.")

    known = {item.name: item for item in fields(AppConfig)}
    overrides: dict[str, Any] = {}
    for raw_key, value in data.items():
        key = str(raw_key).replace("-", "_")
        if key not in known:
            raise ConfigurationError(f"Unknown configuration key '{raw_key}' in '{path}'.")
        overrides[key] = _coerce(key, value, known[key].default)
    return overrides


def _coerce(key: str, value: Any, default: Any) -> Any:
    if value is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"Configuration key '{key}' has an invalid value: {value!r}") from error
    return str(value)
