# src/vmsync/core/config.py
"""
Configuration schema and loading for vmsync.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from vmsync.export.batch import DEFAULT_FLUSH_INTERVAL, DEFAULT_QUEUE_SIZE
from vmsync.export.formatting import DEFAULT_SEGMENT


class VCenterSettings(BaseModel):
    """vCenter connection settings.

    username and password may be left empty when the URL carries user info.
    """

    model_config = {"frozen": True}

    url: str = Field(description="vCenter SDK URL, e.g. https://vcenter.example.com/sdk")
    username: str = Field(default="", description="Login user")
    password: str = Field(default="", description="Login password")
    datacenter: str = Field(default="", description="Datacenter to export (empty: the only one)")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("vcenter.url must not be empty")
        return v


class RetrySettings(BaseModel):
    """Retry behavior for ingestion uploads."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Maximum upload attempts")
    initial_delay_seconds: float = Field(default=1.0, gt=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=30.0, gt=0, description="Maximum backoff delay")
    exponential_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")


class IngestSettings(BaseModel):
    """Ingestion platform API settings."""

    model_config = {"frozen": True}

    url: str = Field(description="Platform root URL")
    api_key: str = Field(description="API key id")
    api_secret: str = Field(description="API secret used for request signing")
    api_prefix: str = Field(default="/openapi/v1", description="REST API path prefix")
    upload_path: str = Field(default="/assets/cmdb/upload", description="Upload endpoint below api_prefix")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")
    retry: RetrySettings = Field(default_factory=RetrySettings)


class ExportSettings(BaseModel):
    """Export pipeline settings."""

    model_config = {"frozen": True}

    segment: str = Field(default=DEFAULT_SEGMENT, description="Segment (VRF) label written on every row")
    flush_interval_seconds: float = Field(
        default=DEFAULT_FLUSH_INTERVAL,
        gt=0,
        description="Seconds between incremental flushes",
    )
    queue_size: int = Field(default=DEFAULT_QUEUE_SIZE, gt=0, description="Hand-off queue capacity")
    event_page_size: int = Field(default=10, gt=0, description="Events read per collector page")
    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Idle wait between event polls")


class SyncSettings(BaseModel):
    """Top-level vmsync configuration."""

    model_config = {"frozen": True}

    vcenter: VCenterSettings
    ingest: IngestSettings
    export: ExportSettings = Field(default_factory=ExportSettings)
    insecure: bool = Field(default=False, description="Skip TLS verification for vCenter and ingestion")


# ${VAR} or ${VAR:-default}
_ENV_REFERENCE = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _substitute_env(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    if name in os.environ:
        return os.environ[name]
    # Unset without a default: keep the reference so validation shows it
    return default if default is not None else match.group(0)


def _normalize(value: Any) -> Any:
    """Lowercase mapping keys and expand env references in string values.

    Dynaconf uppercases top-level keys and keeps nested env override keys
    as written, so keys are lowercased at every level.
    """
    if isinstance(value, dict):
        return {str(k).lower(): _normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(_substitute_env, value)
    return value


_DYNACONF_KEYS = frozenset({"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"})


def load_settings(config_path: Path) -> SyncSettings:
    """Load and validate a YAML or JSON settings file.

    VMSYNC_* environment variables override file values, nested keys
    joined with a double underscore (VMSYNC_VCENTER__PASSWORD). Anything
    set nowhere takes the model default. String values may reference
    other variables as ${VAR} or ${VAR:-default}.

    Raises:
        FileNotFoundError: If config_path does not exist
        ValidationError: If the merged settings do not validate
    """
    from dynaconf import Dynaconf

    # Dynaconf ignores missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    loaded = Dynaconf(
        envvar_prefix="VMSYNC",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    raw = {k: v for k, v in loaded.as_dict().items() if k not in _DYNACONF_KEYS}
    return SyncSettings(**_normalize(raw))


_HIDDEN = "<hidden>"
_SECRET_FIELD_NAMES = frozenset({"password", "api_secret"})


def describe_settings(settings: SyncSettings) -> dict[str, Any]:
    """Return settings as a dict for display, with secrets replaced by <hidden>."""

    def _mask(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: (_HIDDEN if k in _SECRET_FIELD_NAMES and v else _mask(v)) for k, v in value.items()}
        return value

    return _mask(settings.model_dump())
