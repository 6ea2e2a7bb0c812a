"""Pydantic configuration models with validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import (
    AliasChoices,
    AliasPath,
    BaseModel,
    Field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["dev", "test", "prod"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console"]


def _normalize_path(value: Any) -> Path:
    """
    Normalize a path-like value without causing filesystem side-effects.

    This function MUST NOT create directories or files.
    """
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise TypeError(f"Expected path-like value, got: {type(value)!r}")


class SandboxConfig(BaseModel):
    """Limits applied to every sandboxed scraper invocation."""

    invocation_timeout_seconds: float = Field(
        default=60.0,
        description="Wall-clock limit for one scraper invocation.",
    )
    fetch_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for a single fetch() issued by a script.",
    )
    max_response_bytes: int = Field(
        default=5 * 1024 * 1024,
        description="Largest response body handed to a script (bytes).",
    )
    max_script_bytes: int = Field(
        default=5 * 1024 * 1024,
        description="Largest scraper script accepted on install (bytes).",
    )
    fetch_user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
        ),
        description="User-Agent used by fetch() when the script sets none.",
    )

    @field_validator("invocation_timeout_seconds", "fetch_timeout_seconds")
    @classmethod
    def _validate_timeouts(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("sandbox timeouts must be > 0")
        return v


class AggregatorConfig(BaseModel):
    """Fan-out and merge settings for stream queries."""

    max_concurrent_scrapers: int = Field(
        default=5,
        description="Max scraper invocations running at the same time.",
    )
    query_deadline_seconds: float = Field(
        default=90.0,
        description="Absolute deadline for one aggregation query.",
    )
    max_results: int = Field(
        default=150,
        description="Cap on the merged stream list.",
    )
    sort_by_quality: bool = Field(
        default=True,
        description="Stable-sort merged streams by detected quality (best first).",
    )

    @field_validator("max_concurrent_scrapers", "max_results")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v


class PairingConfig(BaseModel):
    """Local pairing server settings."""

    host: str = Field(default="0.0.0.0", description="Bind address.")
    start_port: int = Field(default=8090, description="First candidate port.")
    max_attempts: int = Field(default=10, description="Number of candidate ports.")
    proposal_ttl_seconds: float = Field(
        default=600.0,
        description="How long a proposal stays actionable before it expires.",
    )
    logo_path: Optional[Path] = Field(
        default=None,
        description="PNG served at /logo on the pairing page.",
    )

    @field_validator("logo_path", mode="before")
    @classmethod
    def _validate_logo_path(cls, v: Any) -> Any:
        if v is None:
            return None
        return _normalize_path(v)


class AppConfig(BaseModel):
    """
    Canonical application configuration (validated, final).

    Note:
    - YAML is expected to be sectioned (http/logging/cache/sandbox/...).
    - Environment variables are handled by EnvOverrides(BaseSettings) to allow strict
      precedence control (defaults < YAML < ENV < CLI) in load.py.
    """

    # General
    app_name: str = Field(default="scrapearr", description="Application name.")
    environment: Environment = Field(
        default="dev",
        description="Runtime environment (affects defaults like log format).",
    )

    # HTTP (YAML section: http.*)
    http_timeout_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices(
            "http_timeout_seconds",
            AliasPath("http", "timeout_seconds"),
        ),
        description="HTTP timeout for manifest and script downloads.",
    )
    http_follow_redirects: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "http_follow_redirects",
            AliasPath("http", "follow_redirects"),
        ),
        description="Whether HTTP client follows redirects.",
    )
    http_user_agent: str = Field(
        default="Scrapearr/0.1.0",
        validation_alias=AliasChoices(
            "http_user_agent",
            AliasPath("http", "user_agent"),
        ),
        description="User-Agent for manifest and script downloads.",
    )

    # Logging (YAML section: logging.*)
    log_level: LogLevel = Field(
        default="INFO",
        validation_alias=AliasChoices(
            "log_level",
            AliasPath("logging", "level"),
        ),
        description="Log level.",
    )
    log_format: Optional[LogFormat] = Field(
        default=None,
        validation_alias=AliasChoices(
            "log_format",
            AliasPath("logging", "format"),
        ),
        description=(
            "Log renderer format (console/json). If unset, derived from environment."
        ),
    )

    # Cache / persistence (YAML section: cache.*)
    cache_dir: Path = Field(
        default=Path("./.cache/scrapearr"),
        validation_alias=AliasChoices(
            "cache_dir",
            AliasPath("cache", "dir"),
        ),
        description="Diskcache directory holding the persisted plugin state.",
    )
    cache_max_concurrent: int = Field(
        default=10,
        validation_alias=AliasChoices(
            "cache_max_concurrent",
            AliasPath("cache", "max_concurrent"),
        ),
        description="Max parallel cache operations.",
    )

    # TMDB API key (optional; enables enrichment)
    tmdb_api_key: str | None = Field(
        default=None,
        description="TMDB API key for metadata enrichment.",
    )

    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    pairing: PairingConfig = Field(default_factory=PairingConfig)

    @field_validator("cache_dir", mode="before")
    @classmethod
    def _validate_paths(cls, v: Any) -> Path:
        return _normalize_path(v)

    @field_validator("http_timeout_seconds")
    @classmethod
    def _validate_http_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("http_timeout_seconds must be > 0")
        return v

    @model_validator(mode="after")
    def _derive_defaults(self) -> "AppConfig":
        # Default log format: console in dev/test, json in prod.
        if self.log_format is None:
            self.log_format = "json" if self.environment == "prod" else "console"
        return self

    def to_sectioned_dict(self) -> dict[str, Any]:
        """
        Dump configuration in the sectioned shape used by config.yaml/docs.
        """
        return {
            "app_name": self.app_name,
            "environment": self.environment,
            "http": {
                "timeout_seconds": self.http_timeout_seconds,
                "follow_redirects": self.http_follow_redirects,
                "user_agent": self.http_user_agent,
            },
            "logging": {"level": self.log_level, "format": self.log_format},
            "cache": {
                "dir": str(self.cache_dir),
                "max_concurrent": self.cache_max_concurrent,
            },
            "sandbox": self.sandbox.model_dump(),
            "aggregator": self.aggregator.model_dump(),
            "pairing": self.pairing.model_dump(),
        }


class EnvOverrides(BaseSettings):
    """
    Environment-variable overrides (all optional).

    Supported env var examples (flat, explicit):
    - SCRAPEARR_HTTP_TIMEOUT_SECONDS
    - SCRAPEARR_LOG_LEVEL
    - SCRAPEARR_CACHE_DIR
    - SCRAPEARR_TMDB_API_KEY
    """

    model_config = SettingsConfigDict(
        env_prefix="SCRAPEARR_",
        extra="ignore",
        case_sensitive=False,
    )

    app_name: Optional[str] = None
    environment: Optional[Environment] = None

    http_timeout_seconds: Optional[float] = None
    http_follow_redirects: Optional[bool] = None
    http_user_agent: Optional[str] = None

    log_level: Optional[LogLevel] = None
    log_format: Optional[LogFormat] = None

    cache_dir: Optional[Path] = None

    tmdb_api_key: Optional[str] = None

    @field_validator("cache_dir", mode="before")
    @classmethod
    def _validate_paths(cls, v: Any) -> Any:
        if v is None:
            return None
        return _normalize_path(v)

    def to_update_dict(self) -> dict[str, Any]:
        """
        Return only values that were actually provided (non-None), for merging.
        """
        return self.model_dump(exclude_none=True)
