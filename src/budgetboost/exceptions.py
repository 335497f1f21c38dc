"""Exception types raised by budgetboost.

Every error subclasses the closest builtin so callers can catch either the
specific type or the generic one (``ValueError``, ``RuntimeError``, ...).

Reaching a resource limit during ``fit`` (timeout, iteration limit, memory
limit, stopping rounds) is not an error and has no exception type: training
simply returns the ensemble fit so far.
"""

from __future__ import annotations

__all__: list[str] = [
    "BoosterError",
    "ConfigError",
    "DeserializationError",
    "IoError",
    "KeyNotFoundError",
    "NotCalibratedError",
    "NotFittedError",
    "ShapeMismatchError",
    "UnsupportedOperationError",
]


class BoosterError(Exception):
    """Base class for all budgetboost errors."""


class ConfigError(BoosterError, ValueError):
    """Invalid configuration value (unknown enum name, out-of-range parameter)."""


class ShapeMismatchError(BoosterError, ValueError):
    """Array lengths or feature indices inconsistent with the data shape."""

    def __init__(self, message: str, *, expected: object = None, actual: object = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NotFittedError(BoosterError, RuntimeError):
    """Operation requires a fitted booster."""


class NotCalibratedError(BoosterError, RuntimeError):
    """Operation requires ``calibrate`` to have been run."""


class UnsupportedOperationError(BoosterError, RuntimeError):
    """Operation is not defined for the configured objective."""


class IoError(BoosterError, OSError):
    """A model file could not be written or read."""


class DeserializationError(BoosterError, ValueError):
    """Serialized model content is malformed."""


class KeyNotFoundError(BoosterError, KeyError):
    """Metadata key is absent."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"No value associated with provided key {self.key!r}"
