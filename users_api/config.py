"""Configuration management for the users service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_flag(name: str, value: object) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _parse_positive_int(name: str, value: object) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_positive_float(name: str, value: object) -> float:
    try:
        parsed = float(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid number for {name}: {value!r}") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _resolve_path(raw: str, base_path: Path | None) -> Path:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute() and base_path is not None:
        candidate = base_path / candidate
    return candidate.resolve(strict=False)


def default_database_path() -> Path:
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "users.sqlite3").resolve(strict=False)


@dataclass(frozen=True)
class TelemetrySettings:
    """Exporter and resource settings for OpenTelemetry."""

    enabled: bool = True
    service_name: str = "users-api"
    service_version: str = "1.4.2"
    environment: str = "prod"
    otlp_endpoint: Optional[str] = "localhost:4317"
    insecure: bool = True
    console: bool = False
    runtime_metrics: bool = True
    export_interval_millis: int = 60_000
    shutdown_timeout: float = 5.0

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "TelemetrySettings":
        defaults = TelemetrySettings()
        endpoint = data.get("otlp_endpoint", defaults.otlp_endpoint)
        if endpoint is not None:
            endpoint = str(endpoint).strip() or None
        return TelemetrySettings(
            enabled=_parse_flag("telemetry.enabled", data.get("enabled", defaults.enabled)),
            service_name=str(data.get("service_name", defaults.service_name)),
            service_version=str(data.get("service_version", defaults.service_version)),
            environment=str(data.get("environment", defaults.environment)),
            otlp_endpoint=endpoint,
            insecure=_parse_flag("telemetry.insecure", data.get("insecure", defaults.insecure)),
            console=_parse_flag("telemetry.console", data.get("console", defaults.console)),
            runtime_metrics=_parse_flag(
                "telemetry.runtime_metrics",
                data.get("runtime_metrics", defaults.runtime_metrics),
            ),
            export_interval_millis=_parse_positive_int(
                "telemetry.export_interval_millis",
                data.get("export_interval_millis", defaults.export_interval_millis),
            ),
            shutdown_timeout=_parse_positive_float(
                "telemetry.shutdown_timeout",
                data.get("shutdown_timeout", defaults.shutdown_timeout),
            ),
        )


@dataclass(frozen=True)
class Settings:
    """Top-level service configuration."""

    database_path: Path = field(default_factory=default_database_path)
    bcrypt_rounds: int = 12
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "Settings":
        """Create :class:`Settings` from the raw contents of a config file."""

        database_raw = data.get("database") or {}
        telemetry_raw = data.get("telemetry") or {}
        auth_raw = data.get("auth") or {}
        for section, value in (("database", database_raw), ("telemetry", telemetry_raw), ("auth", auth_raw)):
            if not isinstance(value, Mapping):
                raise ValueError(f"Configuration section '{section}' must be a mapping")

        raw_path = database_raw.get("path")
        database_path = _resolve_path(str(raw_path), base_path) if raw_path else default_database_path()

        rounds = _parse_positive_int("auth.bcrypt_rounds", auth_raw.get("bcrypt_rounds", 12))
        if not 4 <= rounds <= 31:
            raise ValueError("auth.bcrypt_rounds must be between 4 and 31")

        return Settings(
            database_path=database_path,
            bcrypt_rounds=rounds,
            telemetry=TelemetrySettings.from_dict(telemetry_raw),
        )

    def with_env_overrides(self, environ: Mapping[str, str]) -> "Settings":
        """Apply environment variable overrides on top of file settings."""

        telemetry_updates: Dict[str, object] = {}
        if environ.get("USERS_API_TELEMETRY"):
            telemetry_updates["enabled"] = _parse_flag("USERS_API_TELEMETRY", environ["USERS_API_TELEMETRY"])
        if environ.get("OTEL_SERVICE_NAME"):
            telemetry_updates["service_name"] = environ["OTEL_SERVICE_NAME"].strip()
        if environ.get("OTEL_EXPORTER_OTLP_ENDPOINT"):
            telemetry_updates["otlp_endpoint"] = environ["OTEL_EXPORTER_OTLP_ENDPOINT"].strip()
        if environ.get("USERS_API_ENVIRONMENT"):
            telemetry_updates["environment"] = environ["USERS_API_ENVIRONMENT"].strip()

        updates: Dict[str, object] = {}
        if environ.get("USERS_API_DB_PATH"):
            updates["database_path"] = _resolve_path(environ["USERS_API_DB_PATH"], None)
        if environ.get("USERS_API_BCRYPT_ROUNDS"):
            rounds = _parse_positive_int("USERS_API_BCRYPT_ROUNDS", environ["USERS_API_BCRYPT_ROUNDS"])
            if not 4 <= rounds <= 31:
                raise ValueError("USERS_API_BCRYPT_ROUNDS must be between 4 and 31")
            updates["bcrypt_rounds"] = rounds
        if telemetry_updates:
            updates["telemetry"] = replace(self.telemetry, **telemetry_updates)

        return replace(self, **updates) if updates else self


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "users_api.yaml").resolve(strict=False)


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from YAML (when present) and the environment."""

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("USERS_API_CONFIG"))

    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        settings = Settings.from_dict(raw, base_path=path.parent)
    elif config_path is not None:
        raise FileNotFoundError(f"Configuration file {path} does not exist")
    else:
        settings = Settings()

    return settings.with_env_overrides(env)


__all__ = [
    "Settings",
    "TelemetrySettings",
    "default_database_path",
    "load_settings",
    "resolve_config_path",
]
