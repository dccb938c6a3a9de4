"""
Unified error handling for strata.

Every error raised by the engine derives from :class:`StrataError` and
carries an exit code so CLI commands can translate failures consistently.

Exit Codes:
- 0: Success
- 1: Partial failure (run completed, some nodes failed or were skipped)
- 2: Lock contention (another run holds the state lock)
- 10: Configuration error
- 11: Provider error (external service failure)
- 12: Validation error (bad declaration, cycle, dangling reference)
- 13: State error (corrupt or inconsistent state)
- 127: Unknown/internal error
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, Sequence, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    PARTIAL_FAILURE = 1
    LOCKED = 2
    CONFIG_ERROR = 10
    PROVIDER_ERROR = 11
    VALIDATION_ERROR = 12
    STATE_ERROR = 13
    UNKNOWN_ERROR = 127


class StrataError(Exception):
    """Base exception for strata errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(StrataError):
    """Raised for configuration-related errors."""

    exit_code = ExitCode.CONFIG_ERROR


class ValidationError(StrataError):
    """A declared attribute is missing or has an invalid literal value."""

    exit_code = ExitCode.VALIDATION_ERROR

    def __init__(self, kind: str, field: str, reason: str, *, resource: str | None = None):
        where = f"{resource} ({kind})" if resource else kind
        super().__init__(
            f"{where}: invalid '{field}': {reason}",
            {"kind": kind, "field": field, "reason": reason, "resource": resource},
        )
        self.kind = kind
        self.field = field
        self.reason = reason
        self.resource = resource


class DuplicateResourceError(StrataError):
    """Two declared resources share a logical name."""

    exit_code = ExitCode.VALIDATION_ERROR

    def __init__(self, name: str):
        super().__init__(f"Duplicate resource name: {name}", {"name": name})
        self.name = name


class DanglingReferenceError(StrataError):
    """A reference points at a resource that is not declared."""

    exit_code = ExitCode.VALIDATION_ERROR

    def __init__(self, source: str, target: str, attribute: str | None = None):
        via = f" via '{attribute}'" if attribute else ""
        super().__init__(
            f"Resource '{source}' references unknown resource '{target}'{via}",
            {"source": source, "target": target, "attribute": attribute},
        )
        self.source = source
        self.target = target
        self.attribute = attribute


class CycleError(StrataError):
    """The reference graph contains a cycle."""

    exit_code = ExitCode.VALIDATION_ERROR

    def __init__(self, path: Sequence[str]):
        self.path = list(path)
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(self.path),
            {"path": self.path},
        )


class SchedulerDefectError(StrataError):
    """A node was started before one of its references could be resolved."""

    show_traceback = True


class ApplyError(StrataError):
    """A provider call failed."""

    exit_code = ExitCode.PROVIDER_ERROR
    retryable: bool = False


class TransientProviderError(ApplyError):
    """Timeouts, throttling and not-found-yet errors; safe to retry."""

    retryable = True


class TerminalProviderError(ApplyError):
    """Authorization failures and rejected attributes; never retried."""


class ResourceNotFoundError(TerminalProviderError):
    """The provider has no resource with the given identity."""


class UnresolvedAttributeError(ApplyError):
    """A dependency does not produce the attribute a reference asks for."""


class LockContentionError(StrataError):
    """Another run holds the state lock."""

    exit_code = ExitCode.LOCKED

    def __init__(self, holder: dict[str, Any] | None = None):
        holder = holder or {}
        owner = holder.get("run_id", "unknown")
        super().__init__(f"State is locked by run {owner}", {"holder": holder})
        self.holder = holder


class StateCorruptionError(StrataError):
    """Persisted state cannot be read or does not match the declaration."""

    exit_code = ExitCode.STATE_ERROR


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI command functions that provides unified error handling.

    Exit codes:
        - StrataError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except StrataError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=int(e.exit_code),
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return 130
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=int(ExitCode.UNKNOWN_ERROR),
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: StrataError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items() if v is not None)
        if detail_str:
            msg = f"{msg} ({detail_str})"
    return msg
