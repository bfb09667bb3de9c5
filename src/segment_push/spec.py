"""Job specification models.

The job spec is the one document a push run reads.  It is loaded once and
never mutated; distributed workers receive it as plain JSON-compatible data
(``JobSpec.to_payload()``) and rebuild it on their side.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from segment_push.errors import ConfigError

logger = structlog.get_logger()


class PushMode(str, Enum):
    """What the upload primitive sends to the control plane."""

    TAR = "tar"
    URI = "uri"
    METADATA = "metadata"


class TableType(str, Enum):
    OFFLINE = "OFFLINE"
    REALTIME = "REALTIME"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TableSpec(_Frozen):
    """Table identity and where its config/schema live."""

    table_name: str = Field(min_length=1)
    table_type: TableType = TableType.OFFLINE
    schema_uri: str | None = None
    table_config_uri: str | None = None

    @property
    def raw_table_name(self) -> str:
        """Table name without a ``_OFFLINE`` / ``_REALTIME`` suffix."""
        for table_type in TableType:
            suffix = f"_{table_type.value}"
            if self.table_name.endswith(suffix):
                return self.table_name[: -len(suffix)]
        return self.table_name


class FileSystemSpec(_Frozen):
    """Binds a URI scheme to a file-system implementation."""

    scheme: str = Field(min_length=1)
    class_name: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("scheme")
    @classmethod
    def _lower_scheme(cls, value: str) -> str:
        return value.lower()


class ClusterSpec(_Frozen):
    """One control plane endpoint."""

    controller_uri: str = Field(min_length=1)


class RetryConfig(_Frozen):
    """Retry bounds for control plane and staging calls."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: bool = True
    # Closing a lineage entry is the linearization point of a refresh
    lineage_max_attempts: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _lineage_not_weaker(self) -> "RetryConfig":
        if self.lineage_max_attempts is not None and self.lineage_max_attempts < self.max_attempts:
            raise ValueError("lineage_max_attempts must be >= max_attempts")
        return self

    @property
    def effective_lineage_attempts(self) -> int:
        return self.lineage_max_attempts or self.max_attempts * 2


class PushConfig(_Frozen):
    """How segments are published."""

    mode: PushMode = PushMode.TAR
    # 0 means one partition per segment, 1 means push from the driver
    parallelism: int = Field(default=0, ge=0)
    segment_uri_prefix: str = ""
    segment_uri_suffix: str = ""
    copy_to_deep_store: bool = False
    deep_store_uri: str | None = None
    move_to_deep_store: bool = False
    stale_lineage_policy: Literal["revert", "fail", "ignore"] = "revert"
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @model_validator(mode="after")
    def _move_needs_destination(self) -> "PushConfig":
        if self.move_to_deep_store and not self.deep_store_uri:
            raise ValueError("move_to_deep_store requires deep_store_uri")
        return self


class JobSpec(_Frozen):
    """The full push job specification."""

    table: TableSpec
    output_dir_uri: str = Field(min_length=1)
    input_dir_uri: str | None = None
    execution_framework: Literal["standalone", "process", "celery"] = "standalone"
    filesystems: list[FileSystemSpec] = Field(default_factory=list)
    clusters: list[ClusterSpec] = Field(min_length=1)
    push: PushConfig = Field(default_factory=PushConfig)
    auth_token: str | None = None

    @field_validator("filesystems")
    @classmethod
    def _unique_schemes(cls, value: list[FileSystemSpec]) -> list[FileSystemSpec]:
        schemes = [fs.scheme for fs in value]
        duplicates = sorted({s for s in schemes if schemes.count(s) > 1})
        if duplicates:
            raise ValueError(f"duplicate file-system schemes: {duplicates}")
        return value

    @property
    def controller_uris(self) -> list[str]:
        return [cluster.controller_uri for cluster in self.clusters]

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible form shipped to distributed workers."""
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "JobSpec":
        return cls.model_validate(payload)

    def with_push(self, **changes: Any) -> "JobSpec":
        """Copy with some push settings overridden (CLI flags)."""
        push = self.push.model_copy(update=changes)
        return self.model_copy(update={"push": PushConfig.model_validate(push.model_dump())})


def parse_job_spec(data: dict[str, Any]) -> JobSpec:
    """Validate an already-decoded job spec document."""
    try:
        return JobSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid job spec: {e}", cause=e) from e


def load_job_spec(path: str | Path) -> JobSpec:
    """Load a YAML or JSON job spec from disk."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Job spec not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse job spec {path}: {e}", cause=e) from e

    if not isinstance(data, dict):
        raise ConfigError(f"Job spec {path} must be a mapping, got {type(data).__name__}")

    spec = parse_job_spec(data)
    logger.info(
        "job_spec_loaded",
        path=str(path),
        table=spec.table.table_name,
        push_mode=spec.push.mode.value,
    )
    return spec
