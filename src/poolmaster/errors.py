from __future__ import annotations


class PoolmasterError(RuntimeError):
    """Base class for supervisor errors."""


class ConfigError(PoolmasterError):
    """Raised when configuration values are invalid."""


class ProcessManagerError(PoolmasterError):
    """Raised when the process manager is used before it is wired up."""
