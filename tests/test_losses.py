"""
test_losses.py
~~~~~~~~~~~~~~

Unit tests for loss functions and the accuracy metric.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from feedforward.errors import ConfigurationError, ShapeMismatchError
from feedforward.losses import (
    EPSILON,
    CrossEntropyLoss,
    MeanSquaredError,
    calculate_accuracy,
    count_correct,
    get_loss,
)


def numerical_gradient(loss_fn, predicted, target, h=1e-3):
    predicted = predicted.astype(np.float64)
    grad = np.zeros_like(predicted)
    for index in np.ndindex(predicted.shape):
        plus, minus = predicted.copy(), predicted.copy()
        plus[index] += h
        minus[index] -= h
        grad[index] = (loss_fn.loss(plus, target) - loss_fn.loss(minus, target)) / (2 * h)
    return grad


@pytest.mark.unit
class TestMeanSquaredError:
    """MSE averages over every entry."""

    def test_loss_value(self):
        predicted = np.array([[1.0, 2.0], [3.0, 4.0]])
        target = np.array([[1.5, 2.5], [3.5, 4.5]])
        assert MeanSquaredError().loss(predicted, target) == pytest.approx(0.25)

    def test_zero_when_equal(self):
        values = np.array([[0.1, 0.2, 0.3]])
        assert MeanSquaredError().loss(values, values) == 0.0

    def test_derivative_formula(self):
        predicted = np.array([[1.0, 2.0], [3.0, 4.0]])
        target = np.array([[0.0, 2.0], [3.0, 6.0]])
        grad = MeanSquaredError().derivative(predicted, target)
        np.testing.assert_allclose(grad, 2 * (predicted - target) / 4)
        assert grad.dtype == np.float32

    def test_derivative_matches_numerical_gradient(self):
        rng = np.random.default_rng(0)
        predicted = rng.normal(size=(3, 2)).astype(np.float32)
        target = rng.normal(size=(3, 2)).astype(np.float32)
        mse = MeanSquaredError()
        np.testing.assert_allclose(
            mse.derivative(predicted, target),
            numerical_gradient(mse, predicted, target),
            rtol=1e-3, atol=1e-4
        )

    def test_shape_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            MeanSquaredError().loss(np.zeros((2, 2)), np.zeros((2, 3)))
        with pytest.raises(ShapeMismatchError):
            MeanSquaredError().derivative(np.zeros(4), np.zeros(4))


@pytest.mark.unit
class TestCrossEntropy:
    """Categorical and single-column (binary) cross-entropy."""

    def test_categorical_loss_value(self):
        predicted = np.array([[0.6, 0.4], [0.3, 0.7]])
        target = np.array([[1.0, 0.0], [0.0, 1.0]])
        expected = -(np.log(0.6) + np.log(0.7)) / 2
        assert CrossEntropyLoss().loss(predicted, target) == pytest.approx(expected, rel=1e-5)

    def test_categorical_derivative(self):
        predicted = np.array([[0.6, 0.4], [0.3, 0.7]], dtype=np.float32)
        target = np.array([[1.0, 0.0], [0.0, 1.0]], dtype=np.float32)
        grad = CrossEntropyLoss().derivative(predicted, target)
        np.testing.assert_allclose(grad, -(target / predicted) / 2, rtol=1e-6)

    def test_binary_loss_value(self):
        predicted = np.array([[0.9], [0.2]])
        target = np.array([[1.0], [0.0]])
        expected = -(np.log(0.9) + np.log(0.8)) / 2
        assert CrossEntropyLoss().loss(predicted, target) == pytest.approx(expected, rel=1e-5)

    def test_binary_derivative_matches_numerical_gradient(self):
        predicted = np.array([[0.9], [0.2], [0.55]], dtype=np.float32)
        target = np.array([[1.0], [0.0], [1.0]], dtype=np.float32)
        ce = CrossEntropyLoss()
        np.testing.assert_allclose(
            ce.derivative(predicted, target),
            numerical_gradient(ce, predicted, target),
            rtol=1e-3
        )

    def test_extreme_predictions_stay_finite(self):
        ce = CrossEntropyLoss()
        for predicted, target in [
            (np.array([[0.0, 1.0]]), np.array([[1.0, 0.0]])),
            (np.array([[0.0], [1.0]]), np.array([[1.0], [0.0]])),
        ]:
            assert np.isfinite(ce.loss(predicted, target))
            assert np.all(np.isfinite(ce.derivative(predicted, target)))

    def test_clamped_loss_is_bounded(self):
        loss = CrossEntropyLoss().loss(np.array([[0.0]]), np.array([[1.0]]))
        assert loss == pytest.approx(-np.log(EPSILON), rel=1e-3)

    def test_loss_is_non_negative(self):
        rng = np.random.default_rng(1)
        predicted = rng.uniform(size=(5, 1))
        target = rng.integers(0, 2, size=(5, 1)).astype(float)
        assert CrossEntropyLoss().loss(predicted, target) >= 0.0


@pytest.mark.unit
class TestLossRegistry:
    """Lookup by name."""

    def test_names_and_aliases(self):
        assert isinstance(get_loss('mse'), MeanSquaredError)
        assert isinstance(get_loss('MeanSquaredError'), MeanSquaredError)
        assert isinstance(get_loss('cross-entropy'), CrossEntropyLoss)
        assert isinstance(get_loss('CrossEntropyLoss'), CrossEntropyLoss)

    def test_unknown_loss(self):
        with pytest.raises(ConfigurationError):
            get_loss('hinge')


@pytest.mark.unit
class TestAccuracy:
    """Rounded comparison for one column, argmax for several."""

    def test_single_column_rounds(self):
        predicted = np.array([[0.1], [0.8], [0.6], [0.4]])
        target = np.array([[0.0], [1.0], [0.0], [0.0]])
        assert calculate_accuracy(predicted, target) == pytest.approx(0.75)
        assert count_correct(predicted, target) == 3

    def test_multi_column_uses_argmax(self):
        predicted = np.array([[0.7, 0.2, 0.1], [0.1, 0.3, 0.6]])
        target = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        assert calculate_accuracy(predicted, target) == pytest.approx(0.5)
        assert count_correct(predicted, target) == 1
