"""
Dynaconf-powered configuration loader with Pydantic validation.

The configuration service loads the layered YAML files (`config.yaml`, then an
optional `local.yaml`) plus `QUANTAFLOW_*` environment overrides, validates
them into a `ConfigSnapshot` and derives `ModuleConfig` instances for the
runtime modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from dynaconf import Dynaconf
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .contracts import BaseModule, ModuleConfig


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


CONFIG_FILENAMES = ("config.yaml", "local.yaml")
_REPO_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


class BusSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    queue_size: int = Field(default=0, ge=0, description="0 means unbounded.")


class OrchestratorSettings(BaseModel):
    """Job history and identifier settings."""

    model_config = ConfigDict(extra="ignore")

    max_jobs: int = Field(default=200, ge=0)
    id_prefix: str = Field(default="QC", min_length=1)


class ExecutionSettings(BaseModel):
    """Parameters of the simulated optimization backend."""

    model_config = ConfigDict(extra="ignore")

    backend: Literal["simulated"] = Field(default="simulated")
    tick_interval_seconds: float = Field(default=0.5, ge=0.0)
    max_step: float = Field(default=10.0, gt=0.0)
    shots: int = Field(default=1024, gt=0)
    seed: int | None = Field(default=None)

    def to_options(self) -> dict[str, Any]:
        return self.model_dump(exclude={"backend"})


class TransportSettings(BaseModel):
    """Connection and reconnect policy of the reconnecting transport."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=False)
    url: str = Field(default="ws://127.0.0.1:8765/events")
    reconnect_interval_ms: int = Field(default=3000, ge=0)
    max_reconnect_attempts: int = Field(default=5, ge=1)
    backoff: Literal["fixed", "exponential"] = Field(default="fixed")
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_reconnect_interval_ms: int = Field(default=30000, ge=0)
    heartbeat_interval_ms: int = Field(default=30000, ge=0)
    connect_timeout_ms: int = Field(default=10000, gt=0)

    @field_validator("url")
    @classmethod
    def _websocket_url(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("transport url must use the ws:// or wss:// scheme")
        return value


class GatewaySettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=0, le=65535)
    serve_http: bool = Field(default=True)
    buffer_size: int = Field(default=256, gt=0)
    idle_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_log_lines: int = Field(default=400, gt=0)


class MetricsSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=False)
    addr: str = Field(default="127.0.0.1")
    port: int = Field(default=9094, ge=0, le=65535)


class LoggingSettings(BaseModel):
    """Root logger level and optional rotating log file."""

    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    file: Path | None = Field(default=None)
    max_mb: int = Field(default=10, gt=0)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


class ConfigSnapshot(BaseModel):
    """
    Validated, strongly typed view of the merged configuration.

    Provides helpers to derive per-module configuration dictionaries.
    """

    model_config = ConfigDict(extra="ignore")

    bus: BusSettings = Field(default_factory=BusSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def module_config(self, module_name: str) -> ModuleConfig:
        """Produce a ModuleConfig tailored for the requested module."""
        if module_name == "modules.transport.reconnecting":
            transport = self.transport
            return ModuleConfig(
                enabled=transport.enabled,
                options=transport.model_dump(exclude={"enabled"}),
            )
        if module_name == "modules.dashboard.job_gateway":
            gateway = self.gateway
            return ModuleConfig(
                enabled=gateway.enabled,
                options=gateway.model_dump(exclude={"enabled"}),
            )
        if module_name == "modules.status.prometheus_exporter":
            metrics = self.metrics
            return ModuleConfig(
                enabled=metrics.enabled,
                options={"addr": metrics.addr, "port": metrics.port},
            )
        raise KeyError(f"No module configuration defined for {module_name}")


class ConfigService:
    """
    Runtime facade for loading, validating, and distributing configuration.
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
            envvar_prefix="QUANTAFLOW",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
        )
        self._snapshot = self._build_snapshot()

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def refresh(self) -> ConfigSnapshot:
        """Reload configuration files and rebuild the snapshot."""
        self._settings.reload()
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def apply_changes(self, changes: dict[str, Any]) -> ConfigSnapshot:
        """
        Merge the provided changes into the current configuration snapshot.

        This does not persist the changes to disk.
        """
        raw = {key.lower(): value for key, value in self._settings.as_dict().items()}
        merged = _deep_merge(raw, changes)
        self._snapshot = self._build_snapshot(merged)
        return self._snapshot

    def module_config_for(self, module: str | type[BaseModule] | BaseModule) -> ModuleConfig:
        """Accepts module names, classes, or instances."""
        if isinstance(module, BaseModule):
            module_name = module.name
        elif isinstance(module, str):
            module_name = module
        else:
            module_name = getattr(module, "name", module.__name__)
        return self._snapshot.module_config(module_name)

    def _build_snapshot(self, raw: dict[str, Any] | None = None) -> ConfigSnapshot:
        source = raw if raw is not None else self._settings.as_dict()
        data = {
            key: _section(source, key)
            for key in (
                "bus",
                "orchestrator",
                "execution",
                "transport",
                "gateway",
                "metrics",
                "logging",
            )
        }
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed: {exc}") from exc


__all__ = [
    "BusSettings",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "ExecutionSettings",
    "GatewaySettings",
    "LoggingSettings",
    "MetricsSettings",
    "OrchestratorSettings",
    "TransportSettings",
]
