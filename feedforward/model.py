"""
model.py
~~~~~~~~

Feed-forward neural network built from an ordered stack of dense layers.

A :class:`NeuralNetwork` is a shared handle: the training loop mutates it
while other threads call :meth:`NeuralNetwork.predict` or
:meth:`NeuralNetwork.forward` on the same object. All access to the
layers goes through one re-entrant lock and a whole training batch
(forward, loss, backward, optimizer updates) is applied while holding
it, so readers only ever see parameters from between two batches.
"""

import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import (
    ConfigurationError,
    NonFiniteValueError,
    ShapeMismatchError,
)
from .layers import DenseLayer
from .losses import Loss, count_correct, get_loss
from .optimizers import Optimizer
from .serialization import (
    decode_network,
    encode_network,
    read_network_file,
    write_network_file,
)
from .stats import EpochRecord, TrainingStats

logger = logging.getLogger(__name__)


class TrainingState(str, Enum):
    """Where a network currently is in the training state machine."""

    IDLE = 'idle'
    SHUFFLING = 'shuffling'
    FORWARD_PASS = 'forward_pass'
    BACKWARD_PASS = 'backward_pass'
    STATS_UPDATE = 'stats_update'
    DONE = 'done'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


@dataclass
class TrainingResult:
    """Summary returned by :meth:`NeuralNetwork.train`."""

    status: str
    epochs_completed: int
    batches_run: int
    final_loss: Optional[float]
    final_accuracy: Optional[float]
    elapsed_time: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _positive_int(label: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
        raise ConfigurationError(f"{label} must be a positive integer, got {value!r}")
    return int(value)


class NeuralNetwork:
    """
    Ordered stack of :class:`DenseLayer`.

    Layers live in a list and are addressed by index; they can only be
    appended, and never once training has started.

    Args:
        layers: Optional initial layers, input-to-output order
        network_id: Identity preserved across save/load. Generated if omitted.
    """

    def __init__(
        self,
        layers: Optional[Sequence[DenseLayer]] = None,
        network_id: Optional[str] = None
    ):
        self.network_id = network_id or uuid.uuid4().hex
        self._layers: List[DenseLayer] = []
        self._lock = threading.RLock()
        self._training = False
        self._state = TrainingState.IDLE

        for layer in layers or ():
            self.add_layer(layer)

    # ------------------------------------------------------------------
    # Architecture

    @property
    def layers(self) -> Tuple[DenseLayer, ...]:
        """Detached copies of the layers; changing them never affects the network."""
        with self._lock:
            return tuple(layer.copy() for layer in self._layers)

    @property
    def sizes(self) -> List[int]:
        """Unit counts from the input to the output, e.g. ``[2, 4, 1]``."""
        with self._lock:
            if not self._layers:
                return []
            return [self._layers[0].input_size] + [l.output_size for l in self._layers]

    @property
    def input_size(self) -> Optional[int]:
        with self._lock:
            return self._layers[0].input_size if self._layers else None

    @property
    def output_size(self) -> Optional[int]:
        with self._lock:
            return self._layers[-1].output_size if self._layers else None

    @property
    def state(self) -> TrainingState:
        return self._state

    @property
    def is_training(self) -> bool:
        return self._training

    def __len__(self) -> int:
        with self._lock:
            return len(self._layers)

    def __getitem__(self, index: int) -> DenseLayer:
        """Detached copy of the layer at ``index``."""
        with self._lock:
            return self._layers[index].copy()

    def add_layer(self, layer: DenseLayer) -> None:
        """
        Append a layer to the end of the network.

        Raises:
            ConfigurationError: If training is running or the layer is
                already part of this network
            ShapeMismatchError: If the layer's input size does not equal
                the previous layer's output size
        """
        if not isinstance(layer, DenseLayer):
            raise ConfigurationError(f"Expected a DenseLayer, got {type(layer).__name__}")

        with self._lock:
            if self._training:
                raise ConfigurationError("Cannot add layers while the network is training")
            if any(existing is layer for existing in self._layers):
                raise ConfigurationError("Layer is already part of this network")
            if self._layers and self._layers[-1].output_size != layer.input_size:
                raise ShapeMismatchError(
                    f"Layer expects {layer.input_size} inputs but the previous "
                    f"layer produces {self._layers[-1].output_size}"
                )
            self._layers.append(layer)

        logger.debug(f"Network {self.network_id}: added {layer!r}")

    def parameter_count(self) -> int:
        with self._lock:
            return int(sum(l.weights.size + l.biases.size for l in self._layers))

    def get_parameters(self) -> List[Tuple[np.ndarray, np.ndarray]]:
        """Consistent copy of every layer's (weights, biases)."""
        with self._lock:
            return [(l.weights.copy(), l.biases.copy()) for l in self._layers]

    def clear_caches(self) -> None:
        with self._lock:
            for layer in self._layers:
                layer.clear_cache()

    # ------------------------------------------------------------------
    # Propagation

    def _require_layers(self) -> None:
        if not self._layers:
            raise ConfigurationError("Network has no layers")

    def forward(self, inputs) -> np.ndarray:
        """
        Run every layer in order, leaving their caches ready for backward.

        Args:
            inputs: Array of shape (batch, input_size)

        Returns:
            np.ndarray: Output of shape (batch, output_size)
        """
        with self._lock:
            self._require_layers()
            output = inputs
            for layer in self._layers:
                output = layer.forward(output)
            return output

    def predict(self, inputs) -> np.ndarray:
        """Inference only: like :meth:`forward` but writes no caches."""
        with self._lock:
            self._require_layers()
            output = inputs
            for layer in self._layers:
                output = layer.predict(output)
            return output

    def backward(self, output_error, optimizer: Optimizer) -> np.ndarray:
        """
        Backpropagate ``output_error`` and update every layer.

        Gradients for all layers are computed first, in reverse order and
        against the current weights. They are then checked for NaN/inf,
        and ``optimizer`` plans the new parameters of every layer before
        any of them is written. A non-finite gradient or update anywhere
        leaves every layer and the optimizer state untouched.

        Args:
            output_error: dLoss/dOutput, shape of the last forward output
            optimizer: Optimizer shared by all layers

        Returns:
            np.ndarray: dLoss/dInput of the first layer
        """
        with self._lock:
            self._require_layers()
            error = output_error
            gradients = []
            for layer in reversed(self._layers):
                weight_gradient, bias_gradient, error = layer.compute_gradients(error)
                gradients.append((layer, weight_gradient, bias_gradient))

            for layer, weight_gradient, bias_gradient in gradients:
                if not (np.all(np.isfinite(weight_gradient))
                        and np.all(np.isfinite(bias_gradient))):
                    raise NonFiniteValueError(
                        f"Non-finite gradient in layer {layer.layer_id}"
                    )

            # Every layer's update is planned before any is committed
            updates = [
                (layer, layer.plan_update(weight_gradient, bias_gradient, optimizer))
                for layer, weight_gradient, bias_gradient in gradients
            ]
            for layer, update in updates:
                layer.commit_update(update, optimizer)
            return error

    def train_step(
        self,
        x_batch: np.ndarray,
        y_batch: np.ndarray,
        loss_fn: Loss,
        optimizer: Optimizer
    ) -> Tuple[float, int]:
        """
        Forward, loss and backward for one batch as a single atomic step.

        Returns:
            tuple: (batch loss, number of correct predictions)

        Raises:
            NonFiniteValueError: If the loss or its gradient is not finite;
                no parameter is changed in that case
        """
        with self._lock:
            self._state = TrainingState.FORWARD_PASS
            output = self.forward(x_batch)
            loss = loss_fn.loss(output, y_batch)
            if not np.isfinite(loss):
                self.clear_caches()
                raise NonFiniteValueError(f"Loss became {loss}")

            self._state = TrainingState.BACKWARD_PASS
            error = loss_fn.derivative(output, y_batch)
            if not np.all(np.isfinite(error)):
                self.clear_caches()
                raise NonFiniteValueError("Loss gradient contains NaN or infinite values")
            self.backward(error, optimizer)
            return loss, count_correct(output, y_batch)

    # ------------------------------------------------------------------
    # Training

    def _check_dataset(self, x_train, y_train) -> Tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x_train, dtype=np.float32)
        y = np.asarray(y_train, dtype=np.float32)
        if x.ndim != 2 or y.ndim != 2:
            raise ShapeMismatchError(
                f"x_train and y_train must be 2-D, got {x.shape} and {y.shape}"
            )
        if x.shape[0] != y.shape[0]:
            raise ShapeMismatchError(
                f"x_train has {x.shape[0]} rows but y_train has {y.shape[0]}"
            )
        if x.shape[0] == 0:
            raise ConfigurationError("Training data is empty")
        if x.shape[1] != self.input_size:
            raise ShapeMismatchError(
                f"x_train has {x.shape[1]} columns, network expects {self.input_size}"
            )
        if y.shape[1] != self.output_size:
            raise ShapeMismatchError(
                f"y_train has {y.shape[1]} columns, network produces {self.output_size}"
            )
        return x, y

    def train(
        self,
        x_train,
        y_train,
        epochs: int,
        batch_size: int,
        loss_fn,
        optimizer: Optimizer,
        stats: Optional[TrainingStats] = None,
        seed: Optional[int] = None,
        shuffle: bool = True,
        cancel_event: Optional[threading.Event] = None,
        callback: Optional[Callable[[EpochRecord], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> TrainingResult:
        """
        Train with mini-batches, recording one stats entry per epoch.

        Each epoch shuffles the rows (pairing preserved), then runs every
        batch in order; the last batch of an epoch may be smaller. Epoch
        loss is the sample-weighted mean of batch losses, accuracy is the
        fraction of correct predictions over the epoch.

        Args:
            x_train: Inputs, shape (samples, input_size)
            y_train: Targets, shape (samples, output_size)
            epochs: Number of epochs to run
            batch_size: Rows per batch
            loss_fn: Loss instance or name
            optimizer: Optimizer shared by every layer
            stats: Collector to append to; epoch numbers continue from it
            seed: Seed for shuffling
            shuffle: Permute rows every epoch
            cancel_event: When set, training stops before the next batch
            callback: Called with each new EpochRecord
            yield_func: Called after every batch, outside the lock

        Returns:
            TrainingResult: status is 'completed' or 'cancelled'

        Raises:
            ConfigurationError: Invalid arguments or already training
            ShapeMismatchError: Data does not fit the network
            NonFiniteValueError: Loss or gradients diverged
        """
        epochs = _positive_int('epochs', epochs)
        batch_size = _positive_int('batch_size', batch_size)
        loss_fn = get_loss(loss_fn)
        if not isinstance(optimizer, Optimizer):
            raise ConfigurationError(
                f"optimizer must be an Optimizer, got {type(optimizer).__name__}"
            )
        stats = stats if stats is not None else TrainingStats()

        with self._lock:
            self._require_layers()
            x, y = self._check_dataset(x_train, y_train)
            if self._training:
                raise ConfigurationError(f"Network {self.network_id} is already training")
            self._training = True

        rng = np.random.default_rng(seed)
        n_samples = x.shape[0]
        epoch_offset = stats.last_epoch
        epochs_completed = 0
        batches_run = 0
        last_record: Optional[EpochRecord] = None
        cancelled = False
        start_time = time.time()

        logger.info(
            f"Training network {self.network_id} {self.sizes}: epochs={epochs}, "
            f"batch_size={batch_size}, samples={n_samples}, loss={loss_fn.name}, "
            f"optimizer={optimizer!r}"
        )

        try:
            for epoch in range(1, epochs + 1):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break

                self._state = TrainingState.SHUFFLING
                order = rng.permutation(n_samples) if shuffle else np.arange(n_samples)
                x_epoch, y_epoch = x[order], y[order]

                weighted_loss = 0.0
                correct = 0
                for start in range(0, n_samples, batch_size):
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        break

                    x_batch = x_epoch[start:start + batch_size]
                    y_batch = y_epoch[start:start + batch_size]
                    batch_loss, batch_correct = self.train_step(
                        x_batch, y_batch, loss_fn, optimizer
                    )
                    weighted_loss += batch_loss * x_batch.shape[0]
                    correct += batch_correct
                    batches_run += 1

                    if yield_func is not None:
                        yield_func()

                if cancelled:
                    break

                self._state = TrainingState.STATS_UPDATE
                last_record = stats.record(
                    epoch_offset + epoch,
                    weighted_loss / n_samples,
                    correct / n_samples
                )
                epochs_completed += 1
                logger.info(
                    f"Epoch {epoch}/{epochs} - loss: {last_record.loss:.6f} - "
                    f"accuracy: {last_record.accuracy:.4f}"
                )
                if callback is not None:
                    callback(last_record)

        except Exception:
            self._state = TrainingState.FAILED
            logger.error(
                f"Training of network {self.network_id} aborted after "
                f"{epochs_completed} epoch(s), {batches_run} batch(es)"
            )
            raise
        finally:
            with self._lock:
                self._training = False
                for layer in self._layers:
                    layer.clear_cache()

        if cancelled:
            self._state = TrainingState.CANCELLED
            logger.warning(
                f"Training of network {self.network_id} cancelled after "
                f"{epochs_completed}/{epochs} epoch(s)"
            )
        else:
            self._state = TrainingState.DONE

        return TrainingResult(
            status='cancelled' if cancelled else 'completed',
            epochs_completed=epochs_completed,
            batches_run=batches_run,
            final_loss=last_record.loss if last_record else None,
            final_accuracy=last_record.accuracy if last_record else None,
            elapsed_time=time.time() - start_time,
        )

    # ------------------------------------------------------------------
    # Persistence

    def to_bytes(self) -> bytes:
        with self._lock:
            return encode_network(self.network_id, self._layers)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'NeuralNetwork':
        """
        Build a network from :meth:`to_bytes` output.

        Raises:
            PersistenceError: If the data is corrupt or inconsistent
        """
        network_id, layers = decode_network(data)
        return cls(layers, network_id=network_id)

    def save(self, path: str) -> None:
        """
        Save every layer's sizes, activation, weights and biases to ``path``.

        Raises:
            PersistenceError: If the file cannot be written
        """
        write_network_file(path, self.to_bytes())
        logger.info(f"Saved network {self.network_id} to '{path}'")

    @classmethod
    def load(cls, path: str) -> 'NeuralNetwork':
        """
        Load a network saved with :meth:`save`.

        Raises:
            PersistenceError: Missing file, corrupt data or version mismatch
        """
        network = cls.from_bytes(read_network_file(path))
        logger.info(f"Loaded network {network.network_id} from '{path}'")
        return network

    def __repr__(self) -> str:
        return f"NeuralNetwork(network_id='{self.network_id}', sizes={self.sizes})"
