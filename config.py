from __future__ import annotations

from typing import Annotated, Any, List, Optional
import json

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    PydanticBaseSettingsSource,
    NoDecode,
    SettingsConfigDict,
)

from resilience import (
    DEFAULT_AUTOCOMPACT_POLL_POLICY,
    DEFAULT_INDEX_READY_POLICY,
    DEFAULT_INDEX_RETRY_POLICY,
    DEFAULT_STEPDOWN_SETTLE_POLICY,
    RetryPolicy,
)


DEFAULT_LOG_DIR = "rebuild_logs"
DEFAULT_RUNTIME_DIR = ".rebuild_runtime"
DEFAULT_COVER_SUFFIX = "_cover_temp"
DEFAULT_CHEAP_SUFFIX_FIELD = "_rebuild_cover_field_"

DEFAULT_MIN_SAVINGS_MB = 5000.0
DEFAULT_CONVERGENCE_TOLERANCE = 0.20
DEFAULT_MIN_CONVERGENCE_SIZE_MB = 5000.0
DEFAULT_STEPDOWN_TIMEOUT_SECONDS = 120
DEFAULT_MAX_COMPACT_ITERATIONS = 10
DEFAULT_FREE_SPACE_TARGET_MB = 10


def parse_name_list(v: Any) -> List[str]:
    """Parse a collection/index name list from a list, CSV string or JSON list.

    - None / "" -> []
    - "a, b" -> ["a", "b"]
    - '["a", "b"]' -> ["a", "b"]
    - ["a", " b "] -> ["a", "b"]
    """
    if v is None or v == "":
        return []

    if isinstance(v, (list, tuple, set)):
        normalized: list[str] = []
        for item in v:
            if not isinstance(item, str):
                raise ValueError(f"name lists accept strings only, got {item!r}")
            item = item.strip()
            if item:
                normalized.append(item)
        return normalized

    if isinstance(v, str):
        s = v.strip()
        if s == "":
            return []
        if s.startswith("["):
            try:
                parsed = json.loads(s)
            except Exception as exc:
                raise ValueError(f"invalid JSON name list: {s}") from exc
            if not isinstance(parsed, list):
                raise ValueError("JSON name list must be a list of strings")
            return parse_name_list(parsed)
        return [part.strip() for part in s.split(",") if part.strip()]

    raise ValueError("name list must be list[str], CSV string or JSON list")


class _TargetConfig(BaseModel):
    """Fields shared by rebuild and compaction runs."""

    model_config = ConfigDict(frozen=True)

    db_name: str = Field(..., min_length=1)
    cluster_name: Optional[str] = None
    log_dir: str = DEFAULT_LOG_DIR
    safe_run: bool = True
    specified_collections: List[str] = Field(default_factory=list)
    ignored_collections: List[str] = Field(default_factory=list)
    performance_logging: bool = True

    @field_validator("specified_collections", "ignored_collections", mode="before")
    @classmethod
    def _parse_names(cls, v):
        return parse_name_list(v)


class RebuildConfig(_TargetConfig):
    runtime_dir: str = DEFAULT_RUNTIME_DIR
    cover_suffix: str = Field(default=DEFAULT_COVER_SUFFIX, min_length=1)
    cheap_suffix_field: str = Field(default=DEFAULT_CHEAP_SUFFIX_FIELD, min_length=1)
    ignored_indexes: List[str] = Field(default_factory=list)
    save_collection_log: bool = False
    retry_policy: RetryPolicy = DEFAULT_INDEX_RETRY_POLICY
    ready_policy: RetryPolicy = DEFAULT_INDEX_READY_POLICY

    @field_validator("ignored_indexes", mode="before")
    @classmethod
    def _parse_index_names(cls, v):
        return parse_name_list(v)


class CompactConfig(_TargetConfig):
    min_savings_mb: float = Field(default=DEFAULT_MIN_SAVINGS_MB, ge=0)
    convergence_tolerance: float = Field(default=DEFAULT_CONVERGENCE_TOLERANCE, gt=0, lt=1)
    min_convergence_size_mb: float = Field(default=DEFAULT_MIN_CONVERGENCE_SIZE_MB, ge=0)
    step_down_timeout_seconds: int = Field(default=DEFAULT_STEPDOWN_TIMEOUT_SECONDS, ge=1)
    # None means "decide from the server version"
    force_stepdown: Optional[bool] = None
    auto_compact: Optional[bool] = None
    force_manual_compact: bool = False
    max_iterations: int = Field(default=DEFAULT_MAX_COMPACT_ITERATIONS, ge=1, le=100)
    free_space_target_mb: int = Field(default=DEFAULT_FREE_SPACE_TARGET_MB, ge=1)
    iteration_delay_seconds: float = Field(default=0.1, ge=0)
    poll_policy: RetryPolicy = DEFAULT_AUTOCOMPACT_POLL_POLICY
    settle_policy: RetryPolicy = DEFAULT_STEPDOWN_SETTLE_POLICY


class MaintenanceSettings(BaseSettings):
    """
    Process-level settings read from environment variables and `.env` files.

    Command line flags override these per run; see ``rebuild_config`` and
    ``compact_config``.
    """

    MONGODB_URL: str = Field(..., description="MongoDB connection string")
    DATABASE_NAME: Optional[str] = Field(default=None, description="Target database")
    CLUSTER_NAME: Optional[str] = Field(
        default=None, description="Cluster label used in state and log file names"
    )

    REBUILD_LOG_DIR: str = Field(default=DEFAULT_LOG_DIR)
    REBUILD_RUNTIME_DIR: str = Field(default=DEFAULT_RUNTIME_DIR)
    COVER_SUFFIX: str = Field(default=DEFAULT_COVER_SUFFIX, min_length=1)
    CHEAP_SUFFIX_FIELD: str = Field(default=DEFAULT_CHEAP_SUFFIX_FIELD, min_length=1)
    SAFE_RUN: bool = Field(default=True, description="Ask for confirmation at decision points")
    PERFORMANCE_LOGGING: bool = Field(default=True)
    SAVE_COLLECTION_LOG: bool = Field(default=False)

    SPECIFIED_COLLECTIONS: Annotated[List[str], NoDecode] = Field(default_factory=list)
    IGNORED_COLLECTIONS: Annotated[List[str], NoDecode] = Field(default_factory=list)
    IGNORED_INDEXES: Annotated[List[str], NoDecode] = Field(default_factory=list)

    COMPACT_MIN_SAVINGS_MB: float = Field(default=DEFAULT_MIN_SAVINGS_MB, ge=0)
    COMPACT_CONVERGENCE_TOLERANCE: float = Field(
        default=DEFAULT_CONVERGENCE_TOLERANCE, gt=0, lt=1
    )
    COMPACT_MIN_CONVERGENCE_SIZE_MB: float = Field(
        default=DEFAULT_MIN_CONVERGENCE_SIZE_MB, ge=0
    )
    COMPACT_STEPDOWN_TIMEOUT_SECONDS: int = Field(
        default=DEFAULT_STEPDOWN_TIMEOUT_SECONDS, ge=1, le=3600
    )

    MONGODB_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=10_000, ge=100, le=600_000)
    MONGODB_APP_NAME: str = Field(default="mongo-online-maintenance")

    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("SPECIFIED_COLLECTIONS", "IGNORED_COLLECTIONS", "IGNORED_INDEXES", mode="before")
    @classmethod
    def _parse_name_lists(cls, v):
        return parse_name_list(v)

    @field_validator("MONGODB_URL")
    @classmethod
    def _validate_mongodb_url(cls, v: str) -> str:
        if not v or not v.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError(
                "MONGODB_URL must start with mongodb:// or mongodb+srv://"
            )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = (v or "INFO").strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unsupported LOG_LEVEL: {v}")
        return level

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """.env.local overrides .env; real environment variables win over both."""
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(settings_cls, env_file=".env.local", case_sensitive=True),
            DotEnvSettingsSource(settings_cls, env_file=".env", case_sensitive=True),
            file_secret_settings,
        )

    def _target_defaults(self) -> dict:
        return {
            "db_name": self.DATABASE_NAME,
            "cluster_name": self.CLUSTER_NAME,
            "log_dir": self.REBUILD_LOG_DIR,
            "safe_run": self.SAFE_RUN,
            "specified_collections": list(self.SPECIFIED_COLLECTIONS),
            "ignored_collections": list(self.IGNORED_COLLECTIONS),
            "performance_logging": self.PERFORMANCE_LOGGING,
        }

    def rebuild_config(self, **overrides: Any) -> RebuildConfig:
        """Build a RebuildConfig; ``None`` overrides keep the settings value."""
        values = self._target_defaults()
        values.update(
            runtime_dir=self.REBUILD_RUNTIME_DIR,
            cover_suffix=self.COVER_SUFFIX,
            cheap_suffix_field=self.CHEAP_SUFFIX_FIELD,
            ignored_indexes=list(self.IGNORED_INDEXES),
            save_collection_log=self.SAVE_COLLECTION_LOG,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RebuildConfig(**values)

    def compact_config(self, **overrides: Any) -> CompactConfig:
        values = self._target_defaults()
        values.update(
            min_savings_mb=self.COMPACT_MIN_SAVINGS_MB,
            convergence_tolerance=self.COMPACT_CONVERGENCE_TOLERANCE,
            min_convergence_size_mb=self.COMPACT_MIN_CONVERGENCE_SIZE_MB,
            step_down_timeout_seconds=self.COMPACT_STEPDOWN_TIMEOUT_SECONDS,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return CompactConfig(**values)


def load_settings() -> MaintenanceSettings:
    """Load settings from the environment; raises pydantic.ValidationError."""
    return MaintenanceSettings()
