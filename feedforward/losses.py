"""
losses.py
~~~~~~~~~

Loss functions and the accuracy metric used by the training loop.

Averaging lives in the loss derivative: MSE divides by the total number
of entries, cross-entropy by the number of samples. Layer gradients are
plain sums over the batch, so the learning rate keeps the same scale for
any batch size.
"""

from typing import Dict

import numpy as np

from .errors import ConfigurationError, ShapeMismatchError

# Keeps 1 - EPSILON distinct from 1.0 in float32
EPSILON = 1e-7


def _as_pair(predicted, target):
    predicted = np.asarray(predicted, dtype=np.float32)
    target = np.asarray(target, dtype=np.float32)
    if predicted.ndim != 2 or predicted.shape != target.shape:
        raise ShapeMismatchError(
            f"Predictions {predicted.shape} and targets {target.shape} "
            f"must be 2-D arrays of identical shape"
        )
    return predicted, target


class Loss:
    """Interface for losses: a scalar value and dLoss/dPredicted."""

    name: str = ''

    def loss(self, predicted: np.ndarray, target: np.ndarray) -> float:
        raise NotImplementedError

    def derivative(self, predicted: np.ndarray, target: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class MeanSquaredError(Loss):
    """Mean over all entries of ``(predicted - target)^2``."""

    name = 'mse'

    def loss(self, predicted, target) -> float:
        predicted, target = _as_pair(predicted, target)
        diff = predicted - target
        return float(np.mean(np.square(diff, dtype=np.float64)))

    def derivative(self, predicted, target) -> np.ndarray:
        predicted, target = _as_pair(predicted, target)
        return (2.0 * (predicted - target) / predicted.size).astype(np.float32)


class CrossEntropyLoss(Loss):
    """
    Cross-entropy averaged over samples.

    With several output columns this is the categorical form
    ``-mean_rows(sum_cols(t * log(p)))``. A single output column is read
    as the probability of the positive class, so each row is the implicit
    pair ``[1 - p, p]`` and the same formula gives binary cross-entropy.
    Predictions are clamped to ``[EPSILON, 1 - EPSILON]`` first.
    """

    name = 'cross_entropy'

    def loss(self, predicted, target) -> float:
        predicted, target = _as_pair(predicted, target)
        p = np.clip(predicted.astype(np.float64), EPSILON, 1.0 - EPSILON)
        t = target.astype(np.float64)
        n_samples = predicted.shape[0]

        if predicted.shape[1] == 1:
            per_entry = t * np.log(p) + (1.0 - t) * np.log(1.0 - p)
        else:
            per_entry = t * np.log(p)
        return float(-np.sum(per_entry) / n_samples)

    def derivative(self, predicted, target) -> np.ndarray:
        predicted, target = _as_pair(predicted, target)
        p = np.clip(predicted, EPSILON, 1.0 - EPSILON)
        n_samples = predicted.shape[0]

        if predicted.shape[1] == 1:
            grad = -(target / p) + (1.0 - target) / (1.0 - p)
        else:
            grad = -(target / p)
        return (grad / n_samples).astype(np.float32)


LOSSES: Dict[str, Loss] = {
    'mse': MeanSquaredError(),
    'cross_entropy': CrossEntropyLoss(),
}

_ALIASES = {
    'mean_squared_error': 'mse',
    'meansquarederror': 'mse',
    'crossentropy': 'cross_entropy',
    'crossentropyloss': 'cross_entropy',
    'ce': 'cross_entropy',
}


def get_loss(name) -> Loss:
    """
    Resolve a loss by name or pass a Loss instance through.

    Raises:
        ConfigurationError: If the name is unknown
    """
    if isinstance(name, Loss):
        return name
    if not isinstance(name, str):
        raise ConfigurationError(f"Loss must be a string, got {name!r}")

    key = name.strip().lower().replace('-', '_')
    key = _ALIASES.get(key, key)
    if key not in LOSSES:
        available = ', '.join(sorted(LOSSES))
        raise ConfigurationError(f"Unknown loss {name!r}. Available: {available}")
    return LOSSES[key]


def calculate_accuracy(predicted, target) -> float:
    """
    Fraction of correct predictions.

    Single-column outputs compare rounded values entry by entry;
    multi-column outputs compare the argmax of each row.

    Args:
        predicted: Network output, shape (samples, outputs)
        target: Expected values, same shape

    Returns:
        float: Accuracy between 0.0 and 1.0
    """
    predicted, target = _as_pair(predicted, target)
    if predicted.shape[0] == 0:
        return 0.0
    if predicted.shape[1] == 1:
        return float(np.mean(np.round(predicted) == np.round(target)))
    return float(np.mean(
        np.argmax(predicted, axis=1) == np.argmax(target, axis=1)
    ))


def count_correct(predicted, target) -> int:
    """Number of correct rows, consistent with :func:`calculate_accuracy`."""
    predicted, target = _as_pair(predicted, target)
    if predicted.shape[1] == 1:
        return int(np.sum(np.round(predicted) == np.round(target)))
    return int(np.sum(
        np.argmax(predicted, axis=1) == np.argmax(target, axis=1)
    ))
