"""
Structured error types for segment publication.

Every error carries a category, an explicit retry flag and an
``ErrorContext`` naming the segment, push mode and controller involved,
so a failure that surfaces from a distributed worker still says which
segment broke and whether re-running the job is worthwhile.

Hierarchy::

    SegmentPushError
      ├── TransientError          (retryable: timeouts, resets, 5xx)
      ├── AttemptsExceededError   (retry budget spent, fatal for the push)
      ├── InvalidRequestError     (malformed request, never retried)
      │     └── UnknownSchemeError
      ├── ConfigError
      ├── DiscoveryError          (output directory could not be listed)
      ├── FileSystemError
      ├── ControllerError         (non-retriable control plane response)
      ├── LineageError
      └── MetadataError

Errors are raised with keyword-only extras so they survive pickling when a
worker process or Celery task hands them back to the driver.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    NETWORK = "NETWORK"
    CONTROLLER = "CONTROLLER"
    FILESYSTEM = "FILESYSTEM"
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    DISCOVERY = "DISCOVERY"
    LINEAGE = "LINEAGE"
    METADATA = "METADATA"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Where an error happened."""

    segment: str | None = None
    push_mode: str | None = None
    table: str | None = None
    controller_uri: str | None = None
    uri: str | None = None
    entry_id: str | None = None
    attempts: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Non-empty fields only."""
        return {k: v for k, v in asdict(self).items() if v not in (None, {})}


class SegmentPushError(Exception):
    """Base class for all segment publication errors."""

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SegmentPushError:
        """
        Add context to this error (fluent API).

        Fields already set are kept, so the innermost layer wins.

        Usage:
            raise error.with_context(segment="events_OFFLINE_0", push_mode="tar")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                if getattr(self.context, key) is None:
                    setattr(self.context, key, value)
            else:
                self.context.metadata.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        context_dict = self.context.to_dict()
        if not context_dict:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in context_dict.items())
        return f"{self.message} ({details})"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class TransientError(SegmentPushError):
    """Network timeout, connection reset or 5xx response."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class AttemptsExceededError(SegmentPushError):
    """Raised when every attempt allowed by the retry policy failed transiently."""

    default_category = ErrorCategory.NETWORK

    def __init__(self, message: str, *, attempts: int = 0, reasons: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.reasons = list(reasons or [])
        if self.context.attempts is None:
            self.context.attempts = attempts


class InvalidRequestError(SegmentPushError):
    """Malformed request or unparseable input. Never retried."""

    default_category = ErrorCategory.VALIDATION


class UnknownSchemeError(InvalidRequestError):
    """No file system is bound to a URI scheme."""

    def __init__(self, scheme: str, *, available: list[str] | None = None, **kwargs: Any):
        known = ", ".join(sorted(available or [])) or "none"
        super().__init__(f"No file system registered for scheme '{scheme}' (registered: {known})", **kwargs)
        self.scheme = scheme
        self.available = list(available or [])

    def __reduce__(self):
        return (_rebuild_unknown_scheme, (self.scheme, self.available, self.__dict__))


def _rebuild_unknown_scheme(scheme: str, available: list[str], state: dict[str, Any]) -> UnknownSchemeError:
    error = UnknownSchemeError(scheme, available=available)
    error.__dict__.update(state)
    return error


class ConfigError(SegmentPushError):
    """Invalid job spec or settings."""

    default_category = ErrorCategory.CONFIG


class DiscoveryError(SegmentPushError):
    """The output directory could not be listed."""

    default_category = ErrorCategory.DISCOVERY


class FileSystemError(SegmentPushError):
    """A file-system operation failed."""

    default_category = ErrorCategory.FILESYSTEM


class ControllerError(SegmentPushError):
    """The control plane rejected a request."""

    default_category = ErrorCategory.CONTROLLER

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class LineageError(SegmentPushError):
    """Opening, closing or reverting a lineage entry failed."""

    default_category = ErrorCategory.LINEAGE


class MetadataError(SegmentPushError):
    """Segment metadata could not be extracted from an archive."""

    default_category = ErrorCategory.METADATA


def is_retryable(error: BaseException) -> bool:
    """Whether an arbitrary exception describes a transient condition."""
    if isinstance(error, SegmentPushError):
        return error.retryable
    if isinstance(error, _PERMANENT_OS_ERRORS):
        return False
    return isinstance(error, (TimeoutError, ConnectionError, OSError))


_PERMANENT_OS_ERRORS = (
    FileNotFoundError,
    FileExistsError,
    PermissionError,
    IsADirectoryError,
    NotADirectoryError,
)
