"""Structured error handling with context + cause + fix pattern.

Every Quiver error carries:
- Context: What operation was being attempted
- Cause: Why it failed
- Fix: How to resolve the issue

Request-level failures (validation, deadline) are raised. Per-feature
failures (resolution, backend) are captured by the dispatcher and embedded
in the response as an outcome kind instead of propagating.
"""

from __future__ import annotations


class QuiverError(Exception):
    """Base error with structured messaging."""

    #: Short machine-readable outcome kind used in serving responses.
    kind: str = "error"
    retryable: bool = False

    def __init__(self, context: str, cause: str, fix: str) -> None:
        self.context = context
        self.cause = cause
        self.fix = fix
        message = f"{context}\n\nCause: {cause}\n\nFix: {fix}"
        super().__init__(message)

    def to_dict(self) -> dict:
        """Serialize error to structured dict for JSON output."""
        return {
            "error": True,
            "code": type(self).__name__,
            "kind": self.kind,
            "retryable": self.retryable,
            "context": self.context,
            "cause": self.cause,
            "fix": self.fix,
        }


class ValidationError(QuiverError):
    """Malformed request or catalog entry. Never retried."""

    kind = "invalid_request"


class CatalogValidationError(ValidationError):
    """A source definition violates a catalog invariant."""

    def __init__(self, source_name: str, cause: str, fix: str) -> None:
        self.source_name = source_name
        super().__init__(
            context=f"Validating source '{source_name}'",
            cause=cause,
            fix=fix,
        )


class NotFoundError(QuiverError):
    """A catalog lookup found nothing."""

    kind = "not_found"


class SourceNotFoundError(NotFoundError):
    """No source with this name is registered in the project."""

    def __init__(self, project: str, name: str, available: list[str]) -> None:
        self.project = project
        self.name = name
        available_str = ", ".join(sorted(available)) if available else "(none)"
        super().__init__(
            context=f"Looking up source '{name}' in project '{project}'",
            cause=f"Source '{name}' is not registered",
            fix=f"Use one of the registered sources: {available_str}",
        )


class UnknownFeatureError(NotFoundError):
    """A feature reference points at a source that is not registered."""

    kind = "unknown_feature"

    def __init__(self, reference: str, project: str) -> None:
        self.reference = reference
        super().__init__(
            context=f"Resolving feature reference '{reference}'",
            cause=f"No source backs this reference in project '{project}'",
            fix="Check the source name or register the source through the control plane",
        )


class UnknownFieldError(NotFoundError):
    """A feature reference names a field the source does not expose."""

    kind = "unknown_field"

    def __init__(self, reference: str, available: list[str]) -> None:
        self.reference = reference
        available_str = ", ".join(available) if available else "(none)"
        super().__init__(
            context=f"Resolving feature reference '{reference}'",
            cause="The source schema has no such field after applying field_mapping",
            fix=f"Use one of the available fields: {available_str}",
        )


class BackendError(QuiverError):
    """Base class for store adapter failures."""

    def __init__(self, source_name: str, cause: str, fix: str) -> None:
        self.source_name = source_name
        super().__init__(
            context=f"Retrieving features from source '{source_name}'",
            cause=cause,
            fix=fix,
        )


class BackendUnavailableError(BackendError):
    """Transient backend failure. May be retried within the deadline."""

    kind = "backend_unavailable"
    retryable = True

    def __init__(self, source_name: str, cause: str) -> None:
        super().__init__(
            source_name=source_name,
            cause=cause,
            fix="Retry the request; check that the backend is reachable",
        )


class BackendRejectedError(BackendError):
    """Terminal backend failure, e.g. a malformed query or missing adapter."""

    kind = "backend_rejected"

    def __init__(self, source_name: str, cause: str, fix: str | None = None) -> None:
        super().__init__(
            source_name=source_name,
            cause=cause,
            fix=fix or "Fix the source definition or the backend query",
        )


class BackendTimeoutError(BackendError):
    """The request deadline cancelled an outstanding adapter call.

    Retryable by the caller; the engine itself does not retry it.
    """

    kind = "timeout"
    retryable = True

    def __init__(self, source_name: str) -> None:
        super().__init__(
            source_name=source_name,
            cause="the request deadline expired before the backend answered",
            fix="Retry the request or raise the serving deadline",
        )


class DeadlineExceededError(QuiverError):
    """The request deadline ran out before any result was assembled."""

    kind = "timeout"
    retryable = True

    def __init__(self, deadline_ms: float, pending: list[str]) -> None:
        self.deadline_ms = deadline_ms
        self.pending = pending
        super().__init__(
            context="Serving online features",
            cause=(
                f"Deadline of {deadline_ms:.0f}ms exhausted with no results "
                f"(pending sources: {', '.join(pending) or '(none)'})"
            ),
            fix="Retry with a larger deadline or fewer feature references",
        )


class ConfigurationError(QuiverError):
    """Configuration file or settings related errors."""

    pass


class ConfigNotFoundError(ConfigurationError):
    """Configuration file not found."""

    def __init__(self, path: str) -> None:
        super().__init__(
            context=f"Loading configuration from '{path}'",
            cause="Configuration file not found",
            fix=f"Create a quiver.yaml file at '{path}'",
        )


class ConfigValidationError(ConfigurationError):
    """Configuration validation failed."""

    def __init__(self, path: str, details: str) -> None:
        super().__init__(
            context=f"Validating configuration from '{path}'",
            cause=details,
            fix="Check the configuration file matches the expected schema for quiver.yaml.",
        )
