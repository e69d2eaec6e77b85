"""
training.py
~~~~~~~~~~~

Training configuration intake and background training sessions.

:class:`TrainingConfig` validates the settings an outside caller supplies
(layer list, epochs, batch size, optimizer...) and builds the network,
optimizer and loss from them. :class:`TrainingSession` runs
:meth:`NeuralNetwork.train` on its own thread so the caller can keep
polling stats, run inference or cancel between batches.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .activations import get_activation
from .errors import ConfigurationError
from .layers import DenseLayer
from .losses import Loss, get_loss
from .model import NeuralNetwork, TrainingResult
from .optimizers import OPTIMIZERS, Optimizer, create_optimizer
from .stats import EpochRecord, TrainingStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LayerSpec:
    """Declared shape and activation of one layer."""

    input_size: int
    output_size: int
    activation: str = 'relu'

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'LayerSpec':
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Layer spec must be an object, got {data!r}")
        missing = [k for k in ('input_size', 'output_size') if k not in data]
        if missing:
            raise ConfigurationError(f"Layer spec is missing {', '.join(missing)}")
        return cls(
            input_size=data['input_size'],
            output_size=data['output_size'],
            activation=data.get('activation', 'relu'),
        )


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


@dataclass
class TrainingConfig:
    """
    Everything needed to build and train a network.

    Attributes:
        layers: Ordered layer specs; consecutive sizes must chain
        epochs: Number of epochs
        batch_size: Rows per mini-batch
        learning_rate: Optimizer step size
        l2_reg: L2 coefficient on weights
        optimizer: 'sgd' or 'adam'
        loss: 'mse' or 'cross_entropy'
        beta1, beta2, epsilon: Adam settings
        seed: Seed for weight initialization and shuffling
    """

    layers: List[LayerSpec] = field(default_factory=list)
    epochs: int = 10
    batch_size: int = 32
    learning_rate: float = 0.01
    l2_reg: float = 0.0
    optimizer: str = 'sgd'
    loss: str = 'mse'
    beta1: float = 0.9
    beta2: float = 0.999
    epsilon: float = 1e-8
    seed: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'TrainingConfig':
        """
        Parse a JSON-like mapping and validate it.

        Unknown keys are ignored so request bodies can carry the training
        data alongside the settings.

        Raises:
            ConfigurationError: If any setting is missing or invalid
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Training configuration must be an object")

        raw_layers = data.get('layers')
        if not isinstance(raw_layers, list):
            raise ConfigurationError("'layers' must be a list of layer specs")

        defaults = cls()
        config = cls(
            layers=[LayerSpec.from_dict(item) for item in raw_layers],
            epochs=data.get('epochs', defaults.epochs),
            batch_size=data.get('batch_size', defaults.batch_size),
            learning_rate=data.get('learning_rate', defaults.learning_rate),
            l2_reg=data.get('l2_reg', defaults.l2_reg),
            optimizer=data.get('optimizer', defaults.optimizer),
            loss=data.get('loss', defaults.loss),
            beta1=data.get('beta1', defaults.beta1),
            beta2=data.get('beta2', defaults.beta2),
            epsilon=data.get('epsilon', defaults.epsilon),
            seed=data.get('seed', defaults.seed),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Check every setting and that the layer sizes chain.

        Raises:
            ConfigurationError: Describing the first problem found
        """
        if not self.layers:
            raise ConfigurationError("At least one layer is required")
        for index, spec in enumerate(self.layers):
            if not (_is_positive_int(spec.input_size) and _is_positive_int(spec.output_size)):
                raise ConfigurationError(
                    f"Layer {index} sizes must be positive integers, got "
                    f"({spec.input_size!r}, {spec.output_size!r})"
                )
            if index and self.layers[index - 1].output_size != spec.input_size:
                raise ConfigurationError(
                    f"Layer {index} input_size {spec.input_size} does not match "
                    f"layer {index - 1} output_size {self.layers[index - 1].output_size}"
                )

        if not _is_positive_int(self.epochs):
            raise ConfigurationError('epochs must be a positive integer')
        if not _is_positive_int(self.batch_size):
            raise ConfigurationError('batch_size must be a positive integer')
        if not _is_number(self.learning_rate) or self.learning_rate <= 0:
            raise ConfigurationError('learning_rate must be a positive finite number')
        if not _is_number(self.l2_reg) or self.l2_reg < 0:
            raise ConfigurationError('l2_reg must be a non-negative finite number')
        if not isinstance(self.optimizer, str) or self.optimizer.lower() not in OPTIMIZERS:
            raise ConfigurationError(
                f"optimizer must be one of {sorted(OPTIMIZERS)}, got {self.optimizer!r}"
            )
        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise ConfigurationError('seed must be an integer')

        # Resolving the names validates them
        self.build_loss()
        for spec in self.layers:
            get_activation(spec.activation)
        self.build_optimizer()

    def build_network(self, network_id: Optional[str] = None) -> NeuralNetwork:
        """Create a freshly initialized network from ``layers``."""
        rng = np.random.default_rng(self.seed)
        network = NeuralNetwork(network_id=network_id)
        for spec in self.layers:
            network.add_layer(
                DenseLayer(spec.input_size, spec.output_size, spec.activation, rng=rng)
            )
        return network

    def build_optimizer(self) -> Optimizer:
        kwargs = {}
        if isinstance(self.optimizer, str) and self.optimizer.lower() == 'adam':
            kwargs = {'beta1': self.beta1, 'beta2': self.beta2, 'epsilon': self.epsilon}
        return create_optimizer(self.optimizer, self.learning_rate, self.l2_reg, **kwargs)

    def build_loss(self) -> Loss:
        return get_loss(self.loss)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'layers': [
                {'input_size': s.input_size, 'output_size': s.output_size,
                 'activation': s.activation}
                for s in self.layers
            ],
            'epochs': self.epochs,
            'batch_size': self.batch_size,
            'learning_rate': self.learning_rate,
            'l2_reg': self.l2_reg,
            'optimizer': self.optimizer,
            'loss': self.loss,
            'beta1': self.beta1,
            'beta2': self.beta2,
            'epsilon': self.epsilon,
            'seed': self.seed,
        }


def prepare_dataset(x_train, y_train) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convert raw training data to float32 matrices.

    Raises:
        ConfigurationError: Non-numeric, non-2-D, empty, non-finite data
            or mismatched row counts
    """
    try:
        x = np.asarray(x_train, dtype=np.float32)
        y = np.asarray(y_train, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Training data must be numeric matrices: {e}") from e

    if x.ndim != 2 or y.ndim != 2:
        raise ConfigurationError(
            f"x_train and y_train must be 2-D, got shapes {x.shape} and {y.shape}"
        )
    if x.shape[0] != y.shape[0]:
        raise ConfigurationError(
            f"x_train has {x.shape[0]} rows but y_train has {y.shape[0]}"
        )
    if x.shape[0] == 0:
        raise ConfigurationError("Training data is empty")
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        raise ConfigurationError("Training data contains NaN or infinite values")
    return x, y


class TrainingSession:
    """
    One training run over a shared network, usually on a worker thread.

    The network object is the shared handle: other threads may call
    ``network.predict`` or read ``session.stats`` while the session runs.

    Args:
        network: Network to train in place
        x_train: Inputs
        y_train: Targets
        config: Hyperparameters; its ``layers`` are not used here
        stats: Collector to append to; a new one is created if omitted
        callback: Called with every EpochRecord
    """

    def __init__(
        self,
        network: NeuralNetwork,
        x_train,
        y_train,
        config: TrainingConfig,
        stats: Optional[TrainingStats] = None,
        callback: Optional[Callable[[EpochRecord], None]] = None
    ):
        self.network = network
        self.x_train, self.y_train = prepare_dataset(x_train, y_train)
        self.config = config
        self.stats = stats if stats is not None else TrainingStats()
        self._first_epoch = self.stats.last_epoch
        self.callback = callback
        self.optimizer = config.build_optimizer()
        self.loss_fn = config.build_loss()

        self.status = 'pending'
        self.result: Optional[TrainingResult] = None
        self.error: Optional[BaseException] = None
        self._cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run(self, yield_func: Optional[Callable[[], None]] = None) -> TrainingResult:
        """
        Train synchronously on the calling thread or greenlet.

        Errors are stored on the session and re-raised.
        """
        self.status = 'running'
        try:
            self.result = self.network.train(
                self.x_train,
                self.y_train,
                epochs=self.config.epochs,
                batch_size=self.config.batch_size,
                loss_fn=self.loss_fn,
                optimizer=self.optimizer,
                stats=self.stats,
                seed=self.config.seed,
                cancel_event=self._cancel_event,
                callback=self.callback,
                yield_func=yield_func,
            )
        except Exception as e:
            self.error = e
            self.status = 'failed'
            raise
        self.status = self.result.status
        return self.result

    def _run_in_thread(self) -> None:
        try:
            self.run()
        except Exception as e:
            logger.exception(f"Background training of network {self.network.network_id} failed: {e}")

    def start(self) -> 'TrainingSession':
        """Start training on a daemon thread and return immediately."""
        if self._thread is not None:
            raise ConfigurationError("Training session was already started")
        self.status = 'running'
        self._thread = threading.Thread(
            target=self._run_in_thread,
            name=f"train-{self.network.network_id[:8]}",
            daemon=True,
        )
        self._thread.start()
        return self

    def cancel(self) -> None:
        """Ask the loop to stop before its next batch."""
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker thread; True once it has finished."""
        if self._thread is None:
            return self.status != 'running'
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def is_running(self) -> bool:
        return self.status in ('pending', 'running')

    def to_dict(self) -> Dict[str, Any]:
        completed = self.stats.last_epoch - self._first_epoch
        info: Dict[str, Any] = {
            'network_id': self.network.network_id,
            'status': self.status,
            'epochs': self.config.epochs,
            'epochs_completed': completed,
            'progress': 100.0 * completed / self.config.epochs,
            'stats': self.stats.to_dict(),
        }
        if self.result is not None:
            info['result'] = self.result.to_dict()
        if self.error is not None:
            info['error'] = str(self.error)
        return info


def train(
    network: NeuralNetwork,
    x_train,
    y_train,
    epochs: int,
    batch_size: int,
    loss_fn,
    optimizer: Optimizer,
    stats: Optional[TrainingStats] = None,
    **kwargs
) -> TrainingResult:
    """Functional form of :meth:`NeuralNetwork.train` on a model handle."""
    return network.train(
        x_train, y_train, epochs, batch_size, loss_fn, optimizer, stats, **kwargs
    )
