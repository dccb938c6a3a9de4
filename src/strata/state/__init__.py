"""Persistent state of applied resources."""

from strata.state.backends import FileStateBackend, MemoryStateBackend, StateBackend
from strata.state.store import STATE_VERSION, StateStore

__all__ = [
    "FileStateBackend",
    "MemoryStateBackend",
    "STATE_VERSION",
    "StateBackend",
    "StateStore",
]
