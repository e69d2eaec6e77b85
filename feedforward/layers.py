"""
layers.py
~~~~~~~~~

Fully-connected layer with a pluggable activation.

Shapes:
    input          (batch, input_size)
    weights        (input_size, output_size)
    biases         (output_size,)
    output         (batch, output_size)

A layer is not thread-safe on its own; :class:`feedforward.model.NeuralNetwork`
serializes access to the layers it owns.
"""

import itertools
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .activations import Activation, get_activation
from .errors import ConfigurationError, ShapeMismatchError, UninitializedPassError
from .optimizers import Optimizer, ParameterUpdate

_layer_ids = itertools.count(1)


def _check_size(label: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
        raise ConfigurationError(f"{label} must be a positive integer, got {value!r}")
    return int(value)


class DenseLayer:
    """
    Dense layer computing ``activation(input @ weights + biases)``.

    Args:
        input_size: Number of input features
        output_size: Number of units in this layer
        activation: Activation name or instance
        weights: Optional initial weights of shape (input_size, output_size)
        biases: Optional initial biases of shape (output_size,)
        rng: Generator used for weight initialization
    """

    def __init__(
        self,
        input_size: int,
        output_size: int,
        activation='relu',
        weights: Optional[np.ndarray] = None,
        biases: Optional[np.ndarray] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.input_size = _check_size('input_size', input_size)
        self.output_size = _check_size('output_size', output_size)
        self.activation: Activation = get_activation(activation)
        self.layer_id = next(_layer_ids)

        shape = (self.input_size, self.output_size)
        if weights is None:
            rng = rng if rng is not None else np.random.default_rng()
            # Glorot-style uniform range keeps the initial values small
            limit = np.sqrt(2.0 / (self.input_size + self.output_size))
            weights = rng.uniform(-limit, limit, size=shape)
        self.weights = np.array(weights, dtype=np.float32)
        if self.weights.shape != shape:
            raise ShapeMismatchError(
                f"Weights must have shape {shape}, got {self.weights.shape}"
            )

        if biases is None:
            biases = np.zeros(self.output_size)
        self.biases = np.array(biases, dtype=np.float32)
        if self.biases.shape != (self.output_size,):
            raise ShapeMismatchError(
                f"Biases must have shape ({self.output_size},), "
                f"got {self.biases.shape}"
            )

        self._input: Optional[np.ndarray] = None
        self._pre_activation: Optional[np.ndarray] = None

    @property
    def activation_name(self) -> str:
        return self.activation.name

    @property
    def has_cache(self) -> bool:
        """True between a forward pass and the backward pass that uses it."""
        return self._input is not None

    def _linear(self, inputs) -> Tuple[np.ndarray, np.ndarray]:
        x = np.asarray(inputs, dtype=np.float32)
        if x.ndim != 2 or x.shape[1] != self.input_size:
            raise ShapeMismatchError(
                f"Layer expects input of shape (batch, {self.input_size}), "
                f"got {x.shape}"
            )
        return x, x @ self.weights + self.biases

    def forward(self, inputs) -> np.ndarray:
        """
        Compute the layer output and cache what backward needs.

        Args:
            inputs: Array of shape (batch, input_size)

        Returns:
            np.ndarray: Output of shape (batch, output_size)
        """
        x, z = self._linear(inputs)
        output = self.activation.activate_array(z)
        self._input = x
        self._pre_activation = z
        return output

    def predict(self, inputs) -> np.ndarray:
        """Same as :meth:`forward` but leaves the cache untouched."""
        _, z = self._linear(inputs)
        return self.activation.activate_array(z)

    def compute_gradients(
        self,
        output_error: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Gradients for the cached forward pass, without touching parameters.

        Args:
            output_error: dLoss/dOutput, same shape as the last output

        Returns:
            tuple: (weight_gradient, bias_gradient, input_error)

        Raises:
            UninitializedPassError: If no forward pass is cached
            ShapeMismatchError: If ``output_error`` has the wrong shape
        """
        if self._input is None or self._pre_activation is None:
            raise UninitializedPassError(
                f"backward called on layer {self.layer_id} without a preceding forward"
            )

        error = np.asarray(output_error, dtype=np.float32)
        if error.shape != self._pre_activation.shape:
            raise ShapeMismatchError(
                f"Output error shape {error.shape} does not match last output "
                f"shape {self._pre_activation.shape}"
            )

        delta = self.activation.backprop(self._pre_activation, error)
        weight_gradient = self._input.T @ delta
        bias_gradient = np.sum(delta, axis=0)
        input_error = delta @ self.weights.T
        return weight_gradient, bias_gradient, input_error

    def apply_gradients(
        self,
        weight_gradient: np.ndarray,
        bias_gradient: np.ndarray,
        optimizer: Optimizer
    ) -> None:
        """Hand the gradients to ``optimizer`` and drop the forward cache."""
        update = self.plan_update(weight_gradient, bias_gradient, optimizer)
        self.commit_update(update, optimizer)

    def plan_update(
        self,
        weight_gradient: np.ndarray,
        bias_gradient: np.ndarray,
        optimizer: Optimizer
    ) -> ParameterUpdate:
        """Ask ``optimizer`` for this layer's next parameters without applying them."""
        return optimizer.compute_update(
            self.weights,
            self.biases,
            weight_gradient,
            bias_gradient,
            key=self.layer_id
        )

    def commit_update(self, update: ParameterUpdate, optimizer: Optimizer) -> None:
        """Apply a planned update and drop the forward cache."""
        optimizer.commit(self.weights, self.biases, update)
        self.clear_cache()

    def backward(self, output_error: np.ndarray, optimizer: Optimizer) -> np.ndarray:
        """
        Backpropagate ``output_error`` and update this layer's parameters.

        The returned input error is computed with the weights as they were
        before the update.

        Returns:
            np.ndarray: dLoss/dInput of shape (batch, input_size)
        """
        weight_gradient, bias_gradient, input_error = self.compute_gradients(output_error)
        self.apply_gradients(weight_gradient, bias_gradient, optimizer)
        return input_error

    def clear_cache(self) -> None:
        self._input = None
        self._pre_activation = None

    def copy(self) -> 'DenseLayer':
        """
        Detached copy with its own parameter and cache arrays.

        The copy gets a fresh ``layer_id``, so it never shares optimizer
        state with the original.
        """
        clone = DenseLayer.__new__(DenseLayer)
        clone.input_size = self.input_size
        clone.output_size = self.output_size
        clone.activation = self.activation
        clone.layer_id = next(_layer_ids)
        clone.weights = self.weights.copy()
        clone.biases = self.biases.copy()
        clone._input = None if self._input is None else self._input.copy()
        clone._pre_activation = (
            None if self._pre_activation is None else self._pre_activation.copy()
        )
        return clone

    def get_config(self) -> Dict[str, Any]:
        return {
            'input_size': self.input_size,
            'output_size': self.output_size,
            'activation': self.activation_name,
        }

    def __repr__(self) -> str:
        return (
            f"DenseLayer({self.input_size}, {self.output_size}, "
            f"activation='{self.activation_name}')"
        )
