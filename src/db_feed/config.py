"""
DB Feed Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with DB_FEED_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from db_feed.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        db_name="inventory",
        source={"sqlite_path": "inventory.db", "query": "SELECT * FROM items"},
        record={"primary_keys": ["id"]},
    )
"""

from __future__ import annotations

import json
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_columns(value: Any) -> Any:
    """Accept "a, b, c" as well as ["a", "b", "c"]."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class SourceType(str, Enum):
    """Where rows come from."""

    SQLITE = "sqlite"
    D1 = "d1"


class RecordMode(str, Enum):
    """How a row becomes a record. Mirrors the precedence used by the builder."""

    AUTO = "auto"
    CONTENT = "content"
    COMPLETE_URL = "complete_url"
    BASE_URL = "base_url"
    LOB = "lob"


class D1Config(BaseModel):
    """Cloudflare D1 connection used by the remote data source."""

    account_id: str = Field(default="", description="Cloudflare account ID")
    database_id: str = Field(default="", description="D1 database UUID")
    api_token: SecretStr = Field(
        default=SecretStr(""),
        description="Cloudflare API token with D1 read permission",
    )
    query_timeout_seconds: int = Field(
        default=30,
        ge=1,
        description="Maximum query execution time",
    )
    max_retries: int = Field(default=3, ge=1, le=10)

    @field_validator("api_token", mode="before")
    @classmethod
    def validate_token(cls, v: Any) -> SecretStr:
        """Handle token from various sources."""
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")


class SourceConfig(BaseModel):
    """Data source and traversal query configuration."""

    type: SourceType = Field(default=SourceType.SQLITE)
    sqlite_path: Path | None = Field(
        default=None,
        description="Path to the SQLite database file",
    )
    query: str = Field(
        default="",
        description="Traversal SQL query; should carry a stable ORDER BY",
    )
    incremental_query: str | None = Field(
        default=None,
        description=(
            "Parameterized query selecting rows whose first primary key is "
            "greater than :value, ordered by that key"
        ),
    )
    min_value: int = Field(
        default=-1,
        description="Starting value of :value for the incremental query",
    )
    timeout_seconds: float = Field(default=30.0, gt=0)
    d1: D1Config = Field(default_factory=D1Config)

    @property
    def parameterized(self) -> bool:
        return bool(self.incremental_query and self.incremental_query.strip())


class RecordConfig(BaseModel):
    """Column mapping for turning a row into a record."""

    primary_keys: list[str] = Field(
        default_factory=list,
        description="Ordered primary key column names",
    )
    mode: RecordMode = Field(default=RecordMode.AUTO)
    exclude_columns: list[str] = Field(
        default_factory=list,
        description="Columns left out of content, metadata and checksum",
    )
    title_column: str | None = None
    last_modified_column: str | None = None
    document_url_column: str | None = None
    document_id_column: str | None = None
    base_url: str | None = None
    lob_column: str | None = None
    mime_type_column: str | None = None
    fetch_url_column: str | None = None
    stylesheet: str | None = Field(
        default=None,
        description=(
            "Jinja2 template for the content document; empty string selects "
            "the built-in HTML table, None keeps the raw XML row"
        ),
    )
    stylesheet_file: Path | None = None

    @field_validator("primary_keys", "exclude_columns", mode="before")
    @classmethod
    def split_columns(cls, v: Any) -> Any:
        return _split_columns(v)

    @field_validator(
        "title_column",
        "last_modified_column",
        "document_url_column",
        "document_id_column",
        "base_url",
        "lob_column",
        "mime_type_column",
        "fetch_url_column",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    def resolved_stylesheet(self) -> str | None:
        """Stylesheet text, reading ``stylesheet_file`` when set."""
        if self.stylesheet_file is not None:
            return self.stylesheet_file.read_text(encoding="utf-8")
        return self.stylesheet


class ContentLimits(BaseModel):
    """Limits the consumer places on document bodies."""

    max_document_size: int = Field(
        default=30 * 1024 * 1024,
        ge=1,
        description="Bodies larger than this are sent without content",
    )
    supported_mime_types: set[str] = Field(
        default_factory=set,
        description="Empty means every type not excluded is supported",
    )
    excluded_mime_types: set[str] = Field(default_factory=set)
    spool_memory_bytes: int = Field(
        default=1024 * 1024,
        ge=0,
        description="Streamed large objects above this size spill to disk",
    )

    @field_validator("supported_mime_types", "excluded_mime_types", mode="before")
    @classmethod
    def split_types(cls, v: Any) -> Any:
        return {t.lower() for t in _split_columns(v)}


class OrderingConfig(BaseModel):
    """How the data source sorts values; identifiers are compared the same way."""

    nulls_sorted_low: bool = True
    case_sensitive: bool = True
    accent_sensitive: bool = True


class TraversalOptions(BaseModel):
    """Options controlling traversal behavior."""

    batch_hint: int = Field(
        default=100,
        ge=1,
        description="Number of records the consumer asks for per batch",
    )
    prefetch_factor: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Rows fetched per query as a multiple of batch_hint",
    )
    checkpoint_interval: int = Field(
        default=0,
        ge=0,
        description="Save state every N batches mid-pass (0 = pass end only)",
    )
    checksum_algorithm: str = Field(
        default="sha1",
        pattern="^(md5|sha1|sha256)$",
        description="Algorithm for row checksums",
    )
    state_file: Path = Field(
        default=Path(".db-feed-state.json"),
        description="Path to the checkpoint file",
    )
    feed_file: Path = Field(
        default=Path("feed.jsonl"),
        description="Where the CLI writes records",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    backup_count: int = Field(default=3, ge=1, le=10)


class Settings(BaseSettings):
    """
    Main settings class for DB Feed.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (DB_FEED_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        export DB_FEED_DB_NAME="inventory"
        export DB_FEED_RECORD__PRIMARY_KEYS="id"
        settings = Settings()

        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="DB_FEED_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    db_name: str = Field(
        default="db",
        description="Logical database name used in documents and display URLs",
    )
    hostname: str = Field(
        default="localhost",
        description="Host name used in generated display URLs",
    )

    source: SourceConfig = Field(default_factory=SourceConfig)
    record: RecordConfig = Field(default_factory=RecordConfig)
    limits: ContentLimits = Field(default_factory=ContentLimits)
    ordering: OrderingConfig = Field(default_factory=OrderingConfig)
    traversal: TraversalOptions = Field(default_factory=TraversalOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_record_mode(self) -> Self:
        """Explicit modes need the columns they depend on."""
        record = self.record
        required = {
            RecordMode.COMPLETE_URL: ("document_url_column",),
            RecordMode.BASE_URL: ("document_id_column", "base_url"),
            RecordMode.LOB: ("lob_column",),
        }.get(record.mode, ())
        missing = [name for name in required if not getattr(record, name)]
        if missing:
            raise ValueError(
                f"record.mode={record.mode.value} requires {', '.join(missing)}"
            )
        return self

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        # Mask sensitive data
        d1 = data.get("source", {}).get("d1", {})
        if "api_token" in d1:
            d1["api_token"] = "***REDACTED***"

        if path.suffix in (".toml", ".tml"):
            path.write_text(_to_toml(data))
        else:
            path.write_text(json.dumps(data, indent=2))

    def validate_source(self) -> list[str]:
        """Check that the configured source can be used. Returns list of errors."""
        errors = []
        if not self.record.primary_keys:
            errors.append("record.primary_keys is required")
        if not self.source.query and not self.source.parameterized:
            errors.append("source.query is required")
        if self.source.type == SourceType.SQLITE and not self.source.sqlite_path:
            errors.append("source.sqlite_path is required for the sqlite source")
        if self.source.type == SourceType.D1:
            d1 = self.source.d1
            if not d1.api_token.get_secret_value():
                errors.append("source.d1.api_token is required")
            if not d1.account_id:
                errors.append("source.d1.account_id is required")
            if not d1.database_id:
                errors.append("source.d1.database_id is required")
        return errors


def _to_toml(data: dict[str, Any], prefix: str = "") -> str:
    """Basic TOML serialization for nested tables."""
    lines = []
    tables = []
    for key, value in data.items():
        if isinstance(value, dict):
            tables.append((key, value))
        else:
            lines.append(f"{key} = {json.dumps(value)}")
    for key, value in tables:
        name = f"{prefix}.{key}" if prefix else key
        lines.append(f"\n[{name}]")
        lines.append(_to_toml(value, name))
    return "\n".join(line for line in lines if line)


# Convenience function for loading settings
def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
