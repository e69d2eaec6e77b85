"""
errors.py
~~~~~~~~~

Exception hierarchy for the feed-forward training engine.

Validation errors are raised eagerly to the immediate caller. Nothing in
the engine reshapes, truncates or coerces a tensor to make it fit.
"""


class NetworkError(Exception):
    """Base class for every error raised by the engine."""


class ShapeMismatchError(NetworkError, ValueError):
    """Tensor shapes are incompatible for the requested operation."""


class UninitializedPassError(NetworkError, RuntimeError):
    """Backward was requested without a preceding forward pass."""


class NonFiniteValueError(NetworkError, ArithmeticError):
    """A loss, gradient or parameter became NaN or infinite."""


class PersistenceError(NetworkError, IOError):
    """A model could not be saved or loaded."""


class ConfigurationError(NetworkError, ValueError):
    """Invalid layer sizes, hyperparameters or training data."""
