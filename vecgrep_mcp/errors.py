from __future__ import annotations

from typing import Dict, Optional


class VecgrepError(Exception):
    """Base class for engine errors that cross the service boundary."""


class ConfigurationError(VecgrepError, ValueError):
    """Invalid configuration; fatal, never retried."""


class BackendUnavailableError(VecgrepError):
    """An explicitly requested embedding backend cannot be used."""


class BackendMismatchError(ConfigurationError):
    """The store was built with a different embedding backend."""


class DimensionMismatchError(ConfigurationError):
    """A vector does not match the dimensionality bound to a shard."""


class NotInitializedError(VecgrepError, RuntimeError):
    """An operation was called before the service reached the ready state."""


class ServiceDisposedError(NotInitializedError):
    """An operation was called on a disposed service."""


class OperationCancelled(VecgrepError):
    """Raised when a cancel event stops work before it produced a result."""


class WorkerPoolError(VecgrepError):
    """Every worker unit of a pool operation failed."""

    def __init__(self, message: str, shard_errors: Optional[Dict[int, str]] = None) -> None:
        super().__init__(message)
        self.shard_errors: Dict[int, str] = dict(shard_errors or {})
