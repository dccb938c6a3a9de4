"""Core modules for strata - centralized error definitions."""

from strata.core.errors import (
    ApplyError,
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    DuplicateResourceError,
    ExitCode,
    LockContentionError,
    ResourceNotFoundError,
    SchedulerDefectError,
    StateCorruptionError,
    StrataError,
    TerminalProviderError,
    TransientProviderError,
    UnresolvedAttributeError,
    ValidationError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "StrataError",
    "ConfigurationError",
    "ValidationError",
    "DuplicateResourceError",
    "DanglingReferenceError",
    "CycleError",
    "SchedulerDefectError",
    "ApplyError",
    "TransientProviderError",
    "TerminalProviderError",
    "ResourceNotFoundError",
    "UnresolvedAttributeError",
    "LockContentionError",
    "StateCorruptionError",
    "main_with_error_handling",
    "format_error_message",
]
