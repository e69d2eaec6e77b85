"""
optimizers.py
~~~~~~~~~~~~~

Gradient-based optimizers. An optimizer is the only component allowed
to mutate a layer's parameters.

Optimizer state is keyed by a caller-supplied slot key (a DenseLayer
passes its ``layer_id``), so one Adam instance can be shared by every
layer of a network without the layers' moments bleeding into each other.

Updates are two-phase. :meth:`Optimizer.compute_update` builds the new
parameters (and optimizer state) into a :class:`ParameterUpdate` without
touching anything and raises if any value is NaN/inf;
:meth:`Optimizer.commit` then writes it in place. A network computes the
updates for all of its layers before committing any of them.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Optional

import numpy as np

from .errors import ConfigurationError, NonFiniteValueError, ShapeMismatchError

logger = logging.getLogger(__name__)


def _is_finite_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _check_parameters(
    weights: np.ndarray,
    biases: np.ndarray,
    weight_gradient: np.ndarray,
    bias_gradient: np.ndarray
) -> None:
    if weights.shape != weight_gradient.shape:
        raise ShapeMismatchError(
            f"Weight gradient shape {weight_gradient.shape} does not match "
            f"weights {weights.shape}"
        )
    if biases.shape != bias_gradient.shape:
        raise ShapeMismatchError(
            f"Bias gradient shape {bias_gradient.shape} does not match "
            f"biases {biases.shape}"
        )
    if not (np.all(np.isfinite(weight_gradient))
            and np.all(np.isfinite(bias_gradient))):
        raise NonFiniteValueError("Gradient contains NaN or infinite values")


def _ensure_finite(*arrays: np.ndarray) -> None:
    if not all(np.all(np.isfinite(array)) for array in arrays):
        raise NonFiniteValueError("Parameter update produced NaN or infinite values")


@dataclass
class AdamSlot:
    """First/second moments and step count for one layer's parameters."""

    m_weights: np.ndarray
    v_weights: np.ndarray
    m_biases: np.ndarray
    v_biases: np.ndarray
    step: int = 0

    @classmethod
    def zeros_like(cls, weights: np.ndarray, biases: np.ndarray) -> 'AdamSlot':
        return cls(
            m_weights=np.zeros_like(weights, dtype=np.float32),
            v_weights=np.zeros_like(weights, dtype=np.float32),
            m_biases=np.zeros_like(biases, dtype=np.float32),
            v_biases=np.zeros_like(biases, dtype=np.float32),
        )


@dataclass
class ParameterUpdate:
    """New values for one parameter slot, computed but not yet applied."""

    key: Hashable
    weights: np.ndarray
    biases: np.ndarray
    slot: Optional[AdamSlot] = None


class Optimizer:
    """
    Base optimizer.

    Args:
        learning_rate: Step size, must be positive and finite
        l2_reg: L2 coefficient applied to weights (never to biases)
    """

    name: str = ''

    def __init__(self, learning_rate: float = 0.01, l2_reg: float = 0.0):
        if not _is_finite_number(learning_rate) or learning_rate <= 0:
            raise ConfigurationError(
                f"learning_rate must be a positive finite number, got {learning_rate!r}"
            )
        if not _is_finite_number(l2_reg) or l2_reg < 0:
            raise ConfigurationError(
                f"l2_reg must be a non-negative finite number, got {l2_reg!r}"
            )
        self.learning_rate = float(learning_rate)
        self.l2_reg = float(l2_reg)

    def compute_update(
        self,
        weights: np.ndarray,
        biases: np.ndarray,
        weight_gradient: np.ndarray,
        bias_gradient: np.ndarray,
        key: Optional[Hashable] = None
    ) -> ParameterUpdate:
        """
        Work out one update without modifying anything.

        Args:
            weights: Current weight matrix
            biases: Current bias vector
            weight_gradient: dLoss/dWeights, same shape as ``weights``
            bias_gradient: dLoss/dBiases, same shape as ``biases``
            key: Identifies the parameter slot for stateful optimizers.
                Defaults to the identity of ``weights``.

        Returns:
            ParameterUpdate: Values to hand to :meth:`commit`

        Raises:
            ShapeMismatchError: If a gradient does not match its parameter
            NonFiniteValueError: If a gradient or result is not finite
        """
        raise NotImplementedError

    def commit(
        self,
        weights: np.ndarray,
        biases: np.ndarray,
        update: ParameterUpdate
    ) -> None:
        """Write a computed update into ``weights``/``biases`` in place."""
        weights[...] = update.weights
        biases[...] = update.biases

    def update(self, weights, biases, weight_gradient, bias_gradient, key=None) -> None:
        """Compute and immediately commit one update (in place)."""
        pending = self.compute_update(weights, biases, weight_gradient, bias_gradient, key)
        self.commit(weights, biases, pending)

    def reset(self) -> None:
        """Drop any accumulated state."""

    def get_config(self) -> Dict[str, float]:
        return {'learning_rate': self.learning_rate, 'l2_reg': self.l2_reg}

    def __repr__(self) -> str:
        params = ', '.join(f"{k}={v}" for k, v in self.get_config().items())
        return f"{self.__class__.__name__}({params})"


class SGD(Optimizer):
    """Plain stochastic gradient descent with L2 on the weights."""

    name = 'sgd'

    def compute_update(self, weights, biases, weight_gradient, bias_gradient, key=None):
        _check_parameters(weights, biases, weight_gradient, bias_gradient)

        lr = np.float32(self.learning_rate)
        l2 = np.float32(self.l2_reg)
        # Overflow shows up as inf and is rejected below
        with np.errstate(over='ignore', invalid='ignore'):
            new_weights = weights - lr * (weight_gradient + l2 * weights)
            new_biases = biases - lr * bias_gradient

        _ensure_finite(new_weights, new_biases)
        return ParameterUpdate(
            key=key if key is not None else id(weights),
            weights=new_weights,
            biases=new_biases,
        )


class Adam(Optimizer):
    """
    Adam with optional L2 regularization.

    The L2 term is added to the raw weight gradient before the moment
    update. Each slot keeps its own step counter for bias correction.
    """

    name = 'adam'

    def __init__(
        self,
        learning_rate: float = 0.001,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-8,
        l2_reg: float = 0.0
    ):
        super().__init__(learning_rate, l2_reg)
        for label, beta in (('beta1', beta1), ('beta2', beta2)):
            if not _is_finite_number(beta) or not 0.0 <= beta < 1.0:
                raise ConfigurationError(f"{label} must be in [0, 1), got {beta!r}")
        if not _is_finite_number(epsilon) or epsilon <= 0:
            raise ConfigurationError(f"epsilon must be a positive finite number, got {epsilon!r}")

        self.beta1 = float(beta1)
        self.beta2 = float(beta2)
        self.epsilon = float(epsilon)
        self._slots: Dict[Hashable, AdamSlot] = {}

    def get_config(self) -> Dict[str, float]:
        config = super().get_config()
        config.update(beta1=self.beta1, beta2=self.beta2, epsilon=self.epsilon)
        return config

    def reset(self) -> None:
        self._slots.clear()

    def slot(self, key: Hashable) -> Optional[AdamSlot]:
        """Return the moment state for ``key``, or None if never updated."""
        return self._slots.get(key)

    @property
    def slot_count(self) -> int:
        return len(self._slots)

    def compute_update(self, weights, biases, weight_gradient, bias_gradient, key=None):
        _check_parameters(weights, biases, weight_gradient, bias_gradient)
        if key is None:
            key = id(weights)

        slot = self._slots.get(key)
        if slot is None:
            slot = AdamSlot.zeros_like(weights, biases)
        elif slot.m_weights.shape != weights.shape or slot.m_biases.shape != biases.shape:
            raise ShapeMismatchError(
                f"Optimizer state for slot {key!r} was created for shapes "
                f"{slot.m_weights.shape}/{slot.m_biases.shape}, got "
                f"{weights.shape}/{biases.shape}"
            )

        step = slot.step + 1
        b1, b2 = self.beta1, self.beta2
        correction1 = 1.0 - b1 ** step
        correction2 = 1.0 - b2 ** step
        lr = self.learning_rate

        # Overflow shows up as inf and is rejected below
        with np.errstate(over='ignore', invalid='ignore'):
            weight_gradient = weight_gradient + np.float32(self.l2_reg) * weights

            m_w = b1 * slot.m_weights + (1.0 - b1) * weight_gradient
            v_w = b2 * slot.v_weights + (1.0 - b2) * np.square(weight_gradient)
            m_b = b1 * slot.m_biases + (1.0 - b1) * bias_gradient
            v_b = b2 * slot.v_biases + (1.0 - b2) * np.square(bias_gradient)

            new_weights = weights - lr * (m_w / correction1) / (
                np.sqrt(v_w / correction2) + self.epsilon
            )
            new_biases = biases - lr * (m_b / correction1) / (
                np.sqrt(v_b / correction2) + self.epsilon
            )

        new_slot = AdamSlot(
            m_weights=m_w.astype(np.float32),
            v_weights=v_w.astype(np.float32),
            m_biases=m_b.astype(np.float32),
            v_biases=v_b.astype(np.float32),
            step=step,
        )
        _ensure_finite(
            new_weights, new_biases,
            new_slot.m_weights, new_slot.v_weights, new_slot.m_biases, new_slot.v_biases
        )
        return ParameterUpdate(key=key, weights=new_weights, biases=new_biases, slot=new_slot)

    def commit(self, weights, biases, update):
        super().commit(weights, biases, update)
        if update.slot is not None:
            self._slots[update.key] = update.slot


OPTIMIZERS = {
    'sgd': SGD,
    'adam': Adam,
}


def create_optimizer(
    name: str,
    learning_rate: float,
    l2_reg: float = 0.0,
    **kwargs
) -> Optimizer:
    """
    Build an optimizer by name.

    Args:
        name: ``'sgd'`` or ``'adam'`` (case-insensitive)
        learning_rate: Step size
        l2_reg: L2 coefficient
        **kwargs: Extra Adam settings (beta1, beta2, epsilon)

    Raises:
        ConfigurationError: On unknown names or invalid settings
    """
    key = name.strip().lower() if isinstance(name, str) else name
    if key not in OPTIMIZERS:
        available = ', '.join(sorted(OPTIMIZERS))
        raise ConfigurationError(
            f"Unknown optimizer {name!r}. Available: {available}"
        )
    if key == 'sgd':
        optimizer = SGD(learning_rate=learning_rate, l2_reg=l2_reg)
    else:
        optimizer = Adam(learning_rate=learning_rate, l2_reg=l2_reg, **kwargs)

    logger.debug(f"Created optimizer {optimizer!r}")
    return optimizer
