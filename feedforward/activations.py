"""
activations.py
~~~~~~~~~~~~~~

Elementwise activation functions and their derivatives.

Derivatives are always evaluated at the *pre-activation* value ``z``,
never at the activation output. ReLU's derivative at exactly zero is 0.

Softmax is the one row-wise activation. It has no scalar form, so layers
go through :meth:`Activation.backprop`, which every activation implements.
"""

from typing import Dict

import numpy as np

from .errors import ConfigurationError, ShapeMismatchError


def _check_same_shape(z: np.ndarray, output_error: np.ndarray) -> None:
    if z.shape != output_error.shape:
        raise ShapeMismatchError(
            f"Output error shape {output_error.shape} does not match "
            f"activation shape {z.shape}"
        )


class Activation:
    """Interface shared by all activations."""

    name: str = ''

    def activate_array(self, z: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def backprop(self, z: np.ndarray, output_error: np.ndarray) -> np.ndarray:
        """
        Map dLoss/dOutput to dLoss/dPre-activation.

        Args:
            z: Cached pre-activation values
            output_error: Gradient of the loss with respect to the output

        Returns:
            Gradient of the loss with respect to ``z``
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class ElementwiseActivation(Activation):
    """
    Activation applied independently to every entry.

    Subclasses implement ``_forward`` and ``_gradient`` on numpy arrays.
    ``activate``/``derivative`` return a float for scalar input and an
    array otherwise; the ``*_array`` forms always return float32.
    """

    def _forward(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _gradient(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def activate(self, x):
        if np.ndim(x) == 0:
            return float(self._forward(np.asarray(x, dtype=np.float64)))
        return self.activate_array(x)

    def derivative(self, x):
        if np.ndim(x) == 0:
            return float(self._gradient(np.asarray(x, dtype=np.float64)))
        return self.derivative_array(x)

    def activate_array(self, z: np.ndarray) -> np.ndarray:
        z = np.asarray(z, dtype=np.float32)
        return self._forward(z).astype(np.float32, copy=False)

    def derivative_array(self, z: np.ndarray) -> np.ndarray:
        z = np.asarray(z, dtype=np.float32)
        return self._gradient(z).astype(np.float32, copy=False)

    def backprop(self, z: np.ndarray, output_error: np.ndarray) -> np.ndarray:
        _check_same_shape(z, output_error)
        return output_error * self.derivative_array(z)


class ReLU(ElementwiseActivation):
    """Rectified linear unit: ``max(0, x)``."""

    name = 'relu'

    def _forward(self, x):
        return np.maximum(x, 0)

    def _gradient(self, x):
        # Strictly positive only, so f'(0) == 0
        return (x > 0).astype(x.dtype)


class Sigmoid(ElementwiseActivation):
    """Logistic sigmoid: ``1 / (1 + e^-x)``."""

    name = 'sigmoid'

    def _forward(self, x):
        # exp() only ever sees non-positive arguments
        exp = np.exp(-np.abs(x))
        return np.where(x >= 0, 1 / (1 + exp), exp / (1 + exp))

    def _gradient(self, x):
        s = self._forward(x)
        return s * (1 - s)


class Tanh(ElementwiseActivation):
    """Hyperbolic tangent."""

    name = 'tanh'

    def _forward(self, x):
        return np.tanh(x)

    def _gradient(self, x):
        t = np.tanh(x)
        return 1 - t * t


class Linear(ElementwiseActivation):
    """Identity."""

    name = 'linear'

    def _forward(self, x):
        return x.copy()

    def _gradient(self, x):
        return np.ones_like(x)


class Softmax(Activation):
    """Row-wise softmax. Each output row sums to one."""

    name = 'softmax'

    def activate_array(self, z: np.ndarray) -> np.ndarray:
        z = np.asarray(z, dtype=np.float32)
        if z.ndim != 2:
            raise ShapeMismatchError(
                f"Softmax expects a 2-D array, got shape {z.shape}"
            )
        shifted = z - np.max(z, axis=1, keepdims=True)
        exp = np.exp(shifted)
        return exp / np.sum(exp, axis=1, keepdims=True)

    def backprop(self, z: np.ndarray, output_error: np.ndarray) -> np.ndarray:
        _check_same_shape(z, output_error)
        s = self.activate_array(z)
        # Jacobian-vector product, row by row: s * (g - <g, s>)
        dot = np.sum(output_error * s, axis=1, keepdims=True)
        return s * (output_error - dot)


ACTIVATIONS: Dict[str, Activation] = {
    'relu': ReLU(),
    'sigmoid': Sigmoid(),
    'tanh': Tanh(),
    'linear': Linear(),
    'softmax': Softmax(),
}


def get_activation(name) -> Activation:
    """
    Resolve an activation by name (case-insensitive) or pass one through.

    Args:
        name: Activation name such as ``'ReLU'``, or an Activation instance

    Returns:
        The shared Activation instance

    Raises:
        ConfigurationError: If the name is unknown
    """
    if isinstance(name, Activation):
        return name
    if not isinstance(name, str):
        raise ConfigurationError(f"Activation must be a string, got {name!r}")

    key = name.strip().lower()
    if key not in ACTIVATIONS:
        available = ', '.join(sorted(ACTIVATIONS))
        raise ConfigurationError(
            f"Unknown activation {name!r}. Available: {available}"
        )
    return ACTIVATIONS[key]
