"""Configuration models and environment variable parsing for the bucket migration tool."""

import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from bucket_migrate.errors import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()

_TRUTHY = {"1", "true", "yes", "y", "on"}

CHECKPOINT_FILE_NAME = "migration_state.json"
REPORT_FILE_NAME = "migration_report.json"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


def parse_extensions(value: str | list[str] | None) -> list[str]:
    """Normalize an extension list (``"epub, .PDF"`` -> ``[".epub", ".pdf"]``)."""
    if value is None:
        return []
    parts = value.split(",") if isinstance(value, str) else value
    out: list[str] = []
    for p in parts:
        p = p.strip().lower()
        if not p:
            continue
        if not p.startswith("."):
            p = f".{p}"
        if p not in out:
            out.append(p)
    return out


class SourceConfig(BaseModel):
    """Configuration for the store objects are copied from."""

    kind: Literal["firebase", "local"] = Field(
        default="firebase", description="Source adapter type"
    )
    bucket: str | None = Field(
        default=None, description="Firebase/Cloud Storage bucket name"
    )
    prefix: str = Field(default="", description="Only list keys under this prefix")
    access_token: str | None = Field(
        default=None, description="OAuth2 bearer token for the storage JSON API"
    )
    url: str = Field(
        default="https://storage.googleapis.com",
        description="Storage JSON API base URL",
    )
    path: Path | None = Field(
        default=None, description="Root directory for the local source adapter"
    )

    @field_validator("access_token")
    def validate_access_token(cls, v: str | None) -> str | None:
        """Treat blank tokens as missing."""
        if v is None or v.strip() == "":
            return None
        return v.strip()


class DestinationConfig(BaseModel):
    """Configuration for the store objects are copied to."""

    kind: Literal["s3", "local"] = Field(
        default="s3", description="Destination adapter type"
    )
    bucket: str | None = Field(default=None, description="S3 bucket name")
    region: str = Field(default="eu-west-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None, description="Custom S3 endpoint (MinIO, LocalStack, ...)"
    )
    key_prefix: str = Field(
        default="", description="Prefix prepended to every destination key"
    )
    storage_class: str | None = Field(
        default="STANDARD_IA", description="S3 storage class for uploaded objects"
    )
    server_side_encryption: str | None = Field(
        default="AES256", description="S3 server-side encryption mode"
    )
    path: Path | None = Field(
        default=None, description="Root directory for the local destination adapter"
    )


class MigrationConfig(BaseModel):
    """Configuration for migration behavior."""

    page_size: int = Field(
        default=1000,
        ge=1,
        le=1000,
        description="Number of objects requested per listing page",
    )
    max_concurrent: int = Field(
        default=10, ge=1, le=100, description="Maximum number of concurrent transfers"
    )
    batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Items per checkpointed batch (a page is split into batches)",
    )
    batch_delay: float = Field(
        default=2.0,
        ge=0.0,
        le=300.0,
        description="Pause between batches in seconds",
    )
    max_pages: int = Field(
        default=10_000,
        ge=1,
        description="Safety ceiling on listing pages per run",
    )
    extensions: list[str] = Field(
        default_factory=lambda: [".epub", ".pdf"],
        description="Only migrate keys with these extensions (empty = all)",
    )
    check_destination: bool = Field(
        default=True,
        description="Probe the destination before transferring uncommitted items",
    )
    retry_attempts: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Number of retry attempts for failed store operations",
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Initial delay between retries in seconds",
    )
    run_retries: int = Field(
        default=0,
        ge=0,
        le=20,
        description="Extra whole-run attempts while items keep failing",
    )
    run_retry_delay: float = Field(
        default=10.0,
        ge=0.0,
        le=600.0,
        description="Initial delay between whole-run attempts in seconds",
    )
    max_consecutive_failures: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Stop after this many runs in a row that raise",
    )
    drain_timeout: float = Field(
        default=60.0,
        ge=0.0,
        description="Seconds to wait for in-flight transfers on shutdown",
    )
    sanitize_keys: bool = Field(
        default=True,
        description="Rewrite destination keys to a strict ASCII allow-list",
    )
    flatten_keys: bool = Field(
        default=True, description="Keep only the file name as destination key"
    )
    strip_prefix: str = Field(
        default="", description="Remove this prefix from identifiers before naming"
    )

    @field_validator("extensions", mode="before")
    def validate_extensions(cls, v: str | list[str] | None) -> list[str]:
        return parse_extensions(v)


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("format")
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "text"}:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class Config(BaseModel):
    """Main configuration class for the bucket migration tool."""

    source: SourceConfig = Field(default_factory=SourceConfig)
    destination: DestinationConfig = Field(default_factory=DestinationConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state_dir: Path = Field(
        default=Path("./checkpoints"),
        description="Directory for storing the migration checkpoint and report",
    )

    model_config = {"validate_assignment": True}

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables.

        Returns:
            Config instance populated from environment variables. Required
            settings are checked later by ``validate_for_run``.
        """
        source_path = os.getenv("SOURCE_PATH")
        dest_path = os.getenv("DEST_PATH")

        return cls(
            source=SourceConfig(
                kind=os.getenv("SOURCE_KIND", "firebase"),
                bucket=os.getenv("FIREBASE_STORAGE_BUCKET")
                or os.getenv("PUBLIC_FIREBASE_STORAGE_BUCKET"),
                prefix=os.getenv("SOURCE_PREFIX", ""),
                access_token=os.getenv("FIREBASE_ACCESS_TOKEN"),
                url=os.getenv("FIREBASE_STORAGE_URL", "https://storage.googleapis.com"),
                path=Path(source_path) if source_path else None,
            ),
            destination=DestinationConfig(
                kind=os.getenv("DEST_KIND", "s3"),
                bucket=os.getenv("S3_BUCKET_NAME"),
                region=os.getenv("AWS_REGION", "eu-west-1"),
                endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
                key_prefix=os.getenv("DEST_KEY_PREFIX", ""),
                storage_class=os.getenv("S3_STORAGE_CLASS", "STANDARD_IA") or None,
                server_side_encryption=os.getenv("S3_SERVER_SIDE_ENCRYPTION", "AES256")
                or None,
                path=Path(dest_path) if dest_path else None,
            ),
            migration=MigrationConfig(
                page_size=int(os.getenv("MIGRATION_PAGE_SIZE", "1000")),
                max_concurrent=int(os.getenv("MIGRATION_MAX_CONCURRENT", "10")),
                batch_size=int(os.getenv("MIGRATION_BATCH_SIZE", "100")),
                batch_delay=float(os.getenv("MIGRATION_BATCH_DELAY", "2.0")),
                max_pages=int(os.getenv("MIGRATION_MAX_PAGES", "10000")),
                extensions=os.getenv("MIGRATION_EXTENSIONS", ".epub,.pdf"),
                check_destination=_env_bool("MIGRATION_CHECK_DESTINATION", "true"),
                retry_attempts=int(os.getenv("MIGRATION_RETRY_ATTEMPTS", "3")),
                retry_delay=float(os.getenv("MIGRATION_RETRY_DELAY", "1.0")),
                run_retries=int(os.getenv("MIGRATION_RUN_RETRIES", "0")),
                run_retry_delay=float(os.getenv("MIGRATION_RUN_RETRY_DELAY", "10.0")),
                max_consecutive_failures=int(
                    os.getenv("MIGRATION_MAX_CONSECUTIVE_FAILURES", "3")
                ),
                drain_timeout=float(os.getenv("MIGRATION_DRAIN_TIMEOUT", "60.0")),
                sanitize_keys=_env_bool("MIGRATION_SANITIZE_KEYS", "true"),
                flatten_keys=_env_bool("MIGRATION_FLATTEN_KEYS", "true"),
                strip_prefix=os.getenv("MIGRATION_STRIP_PREFIX", ""),
            ),
            logging=LoggingConfig(
                level=os.getenv("LOG_LEVEL", "INFO"),
                format=os.getenv("LOG_FORMAT", "json"),
            ),
            state_dir=Path(os.getenv("MIGRATION_STATE_DIR", "./checkpoints")),
        )

    @classmethod
    def from_file(cls, config_path: Path) -> "Config":
        """Create configuration from a YAML or JSON file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Config instance populated from the file

        Raises:
            ConfigurationError: If the file is missing, malformed or unsupported
        """
        import json

        import yaml

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        file_extension = config_path.suffix.lower()

        try:
            if file_extension == ".json":
                with open(config_path) as f:
                    config_data = json.load(f)
            elif file_extension in [".yaml", ".yml"]:
                with open(config_path) as f:
                    config_data = yaml.safe_load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported configuration file format: {file_extension}. Supported formats: .json, .yaml, .yml"
                )

            return cls(**(config_data or {}))

        except ConfigurationError:
            raise
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration file: {e}") from e

    def override_migration(self, **overrides: Any) -> None:
        """Replace migration settings with the non-``None`` overrides.

        Raises:
            ConfigurationError: If the resulting settings are invalid.
        """
        values = {k: v for k, v in overrides.items() if v is not None}
        if not values:
            return
        try:
            self.migration = MigrationConfig.model_validate(
                {**self.migration.model_dump(), **values}
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid migration settings: {e}") from e

    def validate_for_run(self) -> None:
        """Check the settings the configured adapters need.

        Raises:
            ConfigurationError: If a required setting is missing.
        """
        missing: list[str] = []
        if self.source.kind == "firebase":
            if not self.source.bucket:
                missing.append("FIREBASE_STORAGE_BUCKET")
            if not self.source.access_token:
                missing.append("FIREBASE_ACCESS_TOKEN")
        elif self.source.path is None:
            missing.append("SOURCE_PATH")
        elif not self.source.path.is_dir():
            raise ConfigurationError(
                f"Source directory does not exist: {self.source.path}"
            )

        if self.destination.kind == "s3":
            if not self.destination.bucket:
                missing.append("S3_BUCKET_NAME")
        elif self.destination.path is None:
            missing.append("DEST_PATH")

        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

    @property
    def checkpoint_path(self) -> Path:
        return self.state_dir / CHECKPOINT_FILE_NAME

    @property
    def report_path(self) -> Path:
        return self.state_dir / REPORT_FILE_NAME

    def ensure_state_dir(self) -> Path:
        """Ensure the state directory exists and return it."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        return self.state_dir
