"""
Configuration loader for Mission Sync.

This module provides configuration management with:
- Multiple configuration sources (files, env vars, dicts)
- Schema validation
- Configuration merging by priority
- Hot reloading of tuning parameters
"""

import os
import json
import yaml
import asyncio
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Callable
import toml
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError, ConfigDict
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("mission-sync.config")

ENV_PREFIX = "MISSION_SYNC__"


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class ServerConfig(BaseModel):
    """Board server endpoints."""
    base_url: str = "http://localhost:3000"
    workspace_id: str = "default"
    request_timeout: float = 10.0
    headers: Dict[str, str] = Field(default_factory=dict)
    stream_path: str = "/api/events/stream"
    tasks_path: str = "/api/tasks"
    agents_path: str = "/api/agents"
    events_path: str = "/api/events"
    status_path: str = "/api/openclaw/status"

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        """Normalize base URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be http(s): {v}")
        return v.rstrip("/")


class StreamConfig(BaseModel):
    """Push stream configuration."""
    enabled: bool = True
    silence_timeout: float = 45.0
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0
    backoff_jitter: float = 0.3
    dedup_window: int = 500

    @model_validator(mode='after')
    def check_backoff(self):
        """Backoff bounds must be ordered."""
        if self.backoff_initial <= 0 or self.backoff_max < self.backoff_initial:
            raise ValueError("backoff_initial must be > 0 and <= backoff_max")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0.0 <= self.backoff_jitter < 1.0:
            raise ValueError("backoff_jitter must be within [0, 1)")
        return self


class PollingConfig(BaseModel):
    """Fallback polling configuration (seconds per resource kind)."""
    enabled: bool = True
    intervals: Dict[str, float] = Field(
        default_factory=lambda: {"tasks": 10.0, "agents": 30.0, "events": 5.0}
    )
    events_limit: int = 20

    @field_validator('intervals')
    @classmethod
    def validate_intervals(cls, v):
        """Only known kinds with positive periods."""
        for kind, period in v.items():
            if kind not in ("tasks", "agents", "events"):
                raise ValueError(f"Unknown resource kind: {kind}")
            if period <= 0:
                raise ValueError(f"Poll interval for {kind} must be positive")
        return v


class ConnectivityConfig(BaseModel):
    """Liveness probe configuration."""
    enabled: bool = True
    online_interval: float = 30.0
    offline_interval: float = 5.0
    probe_timeout: float = 5.0
    failure_threshold: int = Field(default=2, ge=1)
    success_threshold: int = Field(default=2, ge=1)


class StoreConfig(BaseModel):
    """State store configuration."""
    event_history_cap: int = Field(default=100, ge=1)


class MutationConfig(BaseModel):
    """Optimistic mutation configuration."""
    timeout: float = 15.0


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "console"
    directory: Optional[Path] = None
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None
    debug_panel: bool = False
    debug_capacity: int = 50

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class SyncConfig(BaseModel):
    """Main Mission Sync configuration."""
    app_name: str = "mission-sync"

    server: ServerConfig = Field(default_factory=ServerConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    mutation: MutationConfig = Field(default_factory=MutationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    enable_hot_reload: bool = False

    model_config = ConfigDict(validate_assignment=True)


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        """Initialize configuration loader."""
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[SyncConfig] = None
        self._observers: List[Observer] = []
        self._callbacks: List[Callable[[SyncConfig], Any]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Lowest priority first so later merges win
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    def load(self) -> SyncConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration
        """
        merged_data: Dict[str, Any] = {}

        for source in self._sources:
            data = self._load_source(source)
            merged_data = self._deep_merge(merged_data, data)

        merged_data = self._deep_merge(merged_data, self._load_env_vars())

        try:
            self._config = SyncConfig(**merged_data)
        except ValidationError as e:
            errors = []
            for error in e.errors():
                field = ".".join(str(x) for x in error["loc"])
                errors.append(f"{field}: {error['msg']}")

            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}"
            ) from e

        logger.info("configuration_loaded", sources=len(self._sources))
        return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        try:
            if source.source_type == "json":
                return json.loads(content)
            elif source.source_type == "yaml":
                return yaml.safe_load(content) or {}
            elif source.source_type == "toml":
                return toml.loads(content)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot parse {source.path}: {e}") from e

        raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load MISSION_SYNC__SECTION__KEY style environment variables."""
        result: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self.env_prefix):
                continue

            parts = key[len(self.env_prefix):].lower().split("__")
            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._convert_value(value)

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def register_callback(self, callback: Callable[[SyncConfig], Any]) -> None:
        """Register configuration change callback."""
        self._callbacks.append(callback)

    def watch(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start watching file sources; reloads are scheduled on ``loop``."""
        self._loop = loop
        for source in self._sources:
            if source.path and source.path.exists():
                observer = Observer()
                handler = ConfigFileHandler(self, source.path)
                observer.schedule(handler, str(source.path.parent), recursive=False)
                observer.start()
                self._observers.append(observer)

                logger.info("hot_reload_enabled", path=str(source.path))

    async def reload(self) -> None:
        """Reload configuration and notify callbacks when it changed."""
        logger.info("reloading_configuration")

        old_config = self._config
        try:
            new_config = self.load()
        except ConfigurationError as e:
            logger.error("reload_failed", error=str(e))
            return

        if old_config == new_config:
            return

        for callback in self._callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(new_config)
                else:
                    callback(new_config)
            except Exception as e:
                logger.error(
                    "callback_error",
                    callback=getattr(callback, "__name__", repr(callback)),
                    error=str(e)
                )

    def schedule_reload(self) -> None:
        """Thread-safe reload trigger used by the file watcher."""
        if self._loop is not None and not self._loop.is_closed():
            asyncio.run_coroutine_threadsafe(self.reload(), self._loop)

    def get_config(self) -> SyncConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config

    def shutdown(self) -> None:
        """Stop file watchers."""
        for observer in self._observers:
            observer.stop()
            observer.join()
        self._observers.clear()


class ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for configuration files."""

    def __init__(self, loader: ConfigLoader, path: Path):
        self.loader = loader
        self.path = path

    def on_modified(self, event) -> None:
        """Handle file modification."""
        if not event.is_directory and Path(event.src_path) == self.path:
            logger.info("config_file_modified", path=event.src_path)
            self.loader.schedule_reload()


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> ConfigLoader:
    """
    Build a loader from standard locations and load it.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge (highest priority)

    Returns:
        Loader holding the loaded configuration
    """
    loader = ConfigLoader()

    default_paths = [
        Path.home() / ".mission-sync" / "config.yaml",
        Path("./mission-sync.yaml"),
        Path("./mission-sync.toml"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    loader.load()
    return loader


__all__ = [
    'SyncConfig',
    'ServerConfig',
    'StreamConfig',
    'PollingConfig',
    'ConnectivityConfig',
    'StoreConfig',
    'MutationConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
]
