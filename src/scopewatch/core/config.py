"""
Dynaconf-powered configuration loader with Pydantic validation.

Layered YAML files (``config.yaml`` then ``secrets.yaml``) are merged by
Dynaconf, overridden by ``SCOPEWATCH_*`` environment variables, and validated
into an immutable-by-convention ``ConfigSnapshot``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from dynaconf import Dynaconf
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .backoff import BackoffPolicy
from .models import EXTERNAL_NETWORK_IDENTITY, NETWORK_ACCESS_POLICY_IDENTITY


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries without mutating the originals."""
    result: dict[str, Any] = {**base}
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


CONFIG_FILENAMES = ("config.yaml", "secrets.yaml")
_REPO_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


class ApiSettings(BaseModel):
    """Where the credential lives and how long API calls may take."""

    model_config = ConfigDict(extra="ignore")

    credentials_path: Path = Field(default=Path("sdk.json"))
    request_timeout: float = Field(default=10.0, gt=0.0)
    create_timeout: float = Field(
        default=30.0, gt=0.0, description="Deadline for creating the namespace, retries included."
    )
    retry_initial_delay: float = Field(default=0.2, ge=0.0)
    retry_max_delay: float = Field(default=5.0, ge=0.0)

    @field_validator("credentials_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value
        return Path(value)

    def retry_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.retry_initial_delay, max_delay=self.retry_max_delay
        )


class TokenSettings(BaseModel):
    """Bearer token validity and renewal cadence."""

    model_config = ConfigDict(extra="ignore")

    validity_hours: float = Field(default=24.0, gt=0.0)
    refresh_ratio: float = Field(default=0.5, gt=0.0, lt=1.0)
    retry_interval_seconds: float = Field(default=30.0, gt=0.0)

    @property
    def validity_seconds(self) -> float:
        return self.validity_hours * 3600.0


class NamespaceSettings(BaseModel):
    """Namespace created under the credential's namespace at startup."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(default="test")

    @field_validator("name")
    @classmethod
    def _relative_name(cls, value: str) -> str:
        value = value.strip()
        if not value or "/" in value:
            raise ValueError("namespace.name must be a single relative path segment")
        return value


class BackoffSettings(BaseModel):
    """Reconnection backoff for the push channel."""

    model_config = ConfigDict(extra="ignore")

    initial_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.1, ge=0.0, lt=1.0)
    max_attempts: int | None = Field(default=None, ge=1)

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(**self.model_dump())


class SubscriptionSettings(BaseModel):
    """Push subscription scope, filter and resilience knobs."""

    model_config = ConfigDict(extra="ignore")

    recursive: bool = Field(default=True, description="Receive events from child namespaces.")
    identities: list[str] = Field(
        default_factory=lambda: [
            NETWORK_ACCESS_POLICY_IDENTITY.name,
            EXTERNAL_NETWORK_IDENTITY.name,
        ]
    )
    queue_size: int = Field(default=0, ge=0, description="0 means unbounded.")
    open_timeout: float = Field(default=10.0, gt=0.0)
    ping_interval: float | None = Field(default=20.0)
    terminal_close_codes: list[int] = Field(default_factory=lambda: [1008, 4401, 4403])
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)

    @field_validator("identities")
    @classmethod
    def _dedupe_identities(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("subscription.identities must list at least one kind")
        return list(dict.fromkeys(cleaned))


class DispatchSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    handler_timeout: float | None = Field(default=5.0)


class LoggingSettings(BaseModel):
    """Console level plus optional rotating file output."""

    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    file: Path | None = Field(default=None)
    max_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper()


class ConfigSnapshot(BaseModel):
    """Validated, strongly typed view of the merged configuration."""

    model_config = ConfigDict(extra="ignore")

    api: ApiSettings = Field(default_factory=ApiSettings)
    token: TokenSettings = Field(default_factory=TokenSettings)
    namespace: NamespaceSettings = Field(default_factory=NamespaceSettings)
    subscription: SubscriptionSettings = Field(default_factory=SubscriptionSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class ConfigService:
    """
    Runtime facade for loading and validating configuration.
    """

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        settings_files = [self._config_dir / name for name in CONFIG_FILENAMES]
        existing_files = [str(path) for path in settings_files if path.exists()]
        if settings is None and not existing_files:
            raise ConfigError(
                f"No configuration files found in {self._config_dir}. "
                "Expected at least config.yaml."
            )

        self._settings = settings or Dynaconf(
            envvar_prefix="SCOPEWATCH",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
            merge_enabled=True,
        )
        self._snapshot = self._build_snapshot()

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def apply_changes(self, changes: dict[str, Any]) -> ConfigSnapshot:
        """
        Merge the provided changes into the current configuration snapshot.

        Used for command-line overrides; nothing is written back to disk.
        """
        raw = self._settings.as_dict()
        # Dynaconf exposes top-level keys upper-cased.
        merged = _deep_merge(raw, {key.upper(): value for key, value in changes.items()})
        self._snapshot = self._build_snapshot(merged)
        return self._snapshot

    def _build_snapshot(self, raw: dict[str, Any] | None = None) -> ConfigSnapshot:
        data = self._extract_snapshot_data(raw or self._settings.as_dict())
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed: {exc}") from exc

    def _extract_snapshot_data(self, raw: dict[str, Any]) -> dict[str, Any]:
        credentials_path = _section(raw, "api").get("credentials_path")
        api_section = dict(_section(raw, "api"))
        if credentials_path is not None:
            path = Path(credentials_path)
            if not path.is_absolute():
                # Relative credential paths are resolved against the config directory.
                api_section["credentials_path"] = self._config_dir / path
        return {
            "api": api_section,
            "token": _section(raw, "token"),
            "namespace": _section(raw, "namespace"),
            "subscription": _section(raw, "subscription"),
            "dispatch": _section(raw, "dispatch"),
            "logging": _section(raw, "logging"),
        }


__all__ = [
    "ApiSettings",
    "BackoffSettings",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "DispatchSettings",
    "LoggingSettings",
    "NamespaceSettings",
    "SubscriptionSettings",
    "TokenSettings",
]
