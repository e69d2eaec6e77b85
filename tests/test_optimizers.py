"""
test_optimizers.py
~~~~~~~~~~~~~~~~~~

Unit tests for SGD and Adam.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from feedforward.errors import ConfigurationError, NonFiniteValueError, ShapeMismatchError
from feedforward.optimizers import SGD, Adam, create_optimizer


def make_parameters(weight=1.0, bias=0.1):
    weights = np.full((2, 3), weight, dtype=np.float32)
    biases = np.full(3, bias, dtype=np.float32)
    return weights, biases


@pytest.mark.unit
class TestSGD:
    """Plain gradient descent."""

    def test_single_step(self):
        """Test w -= lr * g and b -= lr * gb."""
        weights, biases = make_parameters()
        SGD(learning_rate=0.01).update(
            weights, biases,
            np.full((2, 3), 0.1, dtype=np.float32),
            np.full(3, 0.01, dtype=np.float32)
        )
        np.testing.assert_allclose(weights, 0.999, rtol=1e-6)
        np.testing.assert_allclose(biases, 0.0999, rtol=1e-5)

    def test_updates_in_place(self):
        weights, biases = make_parameters()
        weights_ref, biases_ref = weights, biases
        SGD(0.1).update(weights, biases, np.ones((2, 3), np.float32), np.ones(3, np.float32))
        assert weights is weights_ref and biases is biases_ref
        assert weights.dtype == np.float32

    def test_l2_applies_to_weights_only(self):
        weights, biases = make_parameters(weight=2.0, bias=2.0)
        zero_w = np.zeros((2, 3), np.float32)
        zero_b = np.zeros(3, np.float32)
        SGD(learning_rate=0.1, l2_reg=0.5).update(weights, biases, zero_w, zero_b)
        np.testing.assert_allclose(weights, 2.0 - 0.1 * 0.5 * 2.0, rtol=1e-6)
        np.testing.assert_allclose(biases, 2.0)

    def test_nan_gradient_leaves_parameters_unchanged(self):
        weights, biases = make_parameters()
        bad = np.ones((2, 3), np.float32)
        bad[0, 1] = np.nan
        with pytest.raises(NonFiniteValueError):
            SGD(0.1).update(weights, biases, bad, np.ones(3, np.float32))
        np.testing.assert_array_equal(weights, 1.0)
        np.testing.assert_array_equal(biases, np.float32(0.1))

    def test_shape_mismatch(self):
        weights, biases = make_parameters()
        with pytest.raises(ShapeMismatchError):
            SGD(0.1).update(weights, biases, np.ones((3, 2), np.float32), np.ones(3, np.float32))
        with pytest.raises(ShapeMismatchError):
            SGD(0.1).update(weights, biases, np.ones((2, 3), np.float32), np.ones(2, np.float32))

    @pytest.mark.parametrize('kwargs', [
        {'learning_rate': 0},
        {'learning_rate': -0.1},
        {'learning_rate': 0.1, 'l2_reg': -1.0},
        {'learning_rate': float('nan')},
        {'learning_rate': float('inf')},
        {'learning_rate': 0.1, 'l2_reg': float('nan')},
        {'learning_rate': 0.1, 'l2_reg': float('inf')},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ConfigurationError):
            SGD(**kwargs)


@pytest.mark.unit
class TestAdam:
    """Adam with per-slot moments."""

    def test_first_step_moves_by_learning_rate(self):
        """Bias-corrected first step has magnitude lr in every coordinate."""
        weights, biases = make_parameters()
        gradient = np.array([[0.5, -2.0, 10.0], [1e-3, -1e-3, 3.0]], dtype=np.float32)
        Adam(learning_rate=0.01).update(
            weights, biases, gradient, np.full(3, 0.2, dtype=np.float32)
        )
        np.testing.assert_allclose(weights, 1.0 - 0.01 * np.sign(gradient), atol=1e-4)
        np.testing.assert_allclose(biases, 0.1 - 0.01, atol=1e-4)

    def test_state_is_per_slot(self):
        adam = Adam(learning_rate=0.01)
        w1, b1 = make_parameters()
        w2, b2 = make_parameters()
        g = np.ones((2, 3), np.float32)
        gb = np.ones(3, np.float32)

        adam.update(w1, b1, g, gb, key='first')
        adam.update(w1, b1, g, gb, key='first')
        adam.update(w2, b2, g, gb, key='second')

        assert adam.slot_count == 2
        assert adam.slot('first').step == 2
        assert adam.slot('second').step == 1
        assert adam.slot('missing') is None

    def test_default_key_is_weights_identity(self):
        adam = Adam()
        w1, b1 = make_parameters()
        w2, b2 = make_parameters()
        g = np.ones((2, 3), np.float32)
        gb = np.ones(3, np.float32)
        adam.update(w1, b1, g, gb)
        adam.update(w2, b2, g, gb)
        assert adam.slot_count == 2

    def test_slot_shape_mismatch(self):
        adam = Adam()
        w, b = make_parameters()
        adam.update(w, b, np.ones((2, 3), np.float32), np.ones(3, np.float32), key=1)
        other_w = np.ones((4, 3), np.float32)
        with pytest.raises(ShapeMismatchError):
            adam.update(other_w, b, np.ones((4, 3), np.float32), np.ones(3, np.float32), key=1)

    def test_nan_gradient_leaves_state_unchanged(self):
        adam = Adam(learning_rate=0.01)
        w, b = make_parameters()
        adam.update(w, b, np.ones((2, 3), np.float32), np.ones(3, np.float32), key='layer')
        before_w, before_b = w.copy(), b.copy()
        before_m = adam.slot('layer').m_weights.copy()

        bad = np.full((2, 3), np.inf, dtype=np.float32)
        with pytest.raises(NonFiniteValueError):
            adam.update(w, b, bad, np.ones(3, np.float32), key='layer')

        np.testing.assert_array_equal(w, before_w)
        np.testing.assert_array_equal(b, before_b)
        np.testing.assert_array_equal(adam.slot('layer').m_weights, before_m)
        assert adam.slot('layer').step == 1

    def test_reset_drops_state(self):
        adam = Adam()
        w, b = make_parameters()
        adam.update(w, b, np.ones((2, 3), np.float32), np.ones(3, np.float32))
        adam.reset()
        assert adam.slot_count == 0

    @pytest.mark.parametrize('kwargs', [
        {'beta1': 1.0},
        {'beta2': -0.1},
        {'epsilon': 0.0},
        {'learning_rate': 0.0},
        {'learning_rate': float('nan')},
        {'beta1': float('nan')},
        {'beta2': float('nan')},
        {'epsilon': float('nan')},
        {'epsilon': float('inf')},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ConfigurationError):
            Adam(**kwargs)


@pytest.mark.unit
class TestCreateOptimizer:
    """Factory by name."""

    def test_create_by_name(self):
        sgd = create_optimizer('SGD', 0.1, l2_reg=0.01)
        assert isinstance(sgd, SGD)
        assert sgd.get_config() == {'learning_rate': 0.1, 'l2_reg': 0.01}

        adam = create_optimizer('adam', 0.002, beta1=0.8)
        assert isinstance(adam, Adam)
        assert adam.beta1 == 0.8
        assert adam.learning_rate == 0.002

    def test_unknown_name(self):
        with pytest.raises(ConfigurationError):
            create_optimizer('rmsprop', 0.1)


@pytest.mark.unit
class TestPlannedUpdates:
    """compute_update plans, commit applies."""

    @pytest.mark.parametrize('optimizer', [SGD(0.1), Adam(0.1)])
    def test_compute_update_changes_nothing(self, optimizer):
        weights, biases = make_parameters()
        update = optimizer.compute_update(
            weights, biases, np.ones((2, 3), np.float32), np.ones(3, np.float32), key='layer'
        )
        np.testing.assert_array_equal(weights, 1.0)
        np.testing.assert_array_equal(biases, np.float32(0.1))
        assert not np.array_equal(update.weights, weights)
        if isinstance(optimizer, Adam):
            assert optimizer.slot('layer') is None

        optimizer.commit(weights, biases, update)
        np.testing.assert_array_equal(weights, update.weights)
        if isinstance(optimizer, Adam):
            assert optimizer.slot('layer').step == 1

    def test_overflowing_update_is_rejected(self):
        weights = np.full((2, 3), 3e38, dtype=np.float32)
        biases = np.zeros(3, np.float32)
        with pytest.raises(NonFiniteValueError):
            SGD(3.0, l2_reg=1.0).compute_update(
                weights, biases, np.zeros((2, 3), np.float32), np.zeros(3, np.float32)
            )
        np.testing.assert_array_equal(weights, np.float32(3e38))
