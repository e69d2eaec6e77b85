"""
feedforward package
~~~~~~~~~~~~~~~~~~~

Feed-forward neural network training engine: dense layers, activations,
losses, SGD/Adam optimizers, a mini-batch training loop whose model and
stats can be read from other threads while it runs, and model
persistence.
"""

from .activations import Activation, Linear, ReLU, Sigmoid, Softmax, Tanh, get_activation
from .errors import (
    ConfigurationError,
    NetworkError,
    NonFiniteValueError,
    PersistenceError,
    ShapeMismatchError,
    UninitializedPassError,
)
from .layers import DenseLayer
from .losses import CrossEntropyLoss, Loss, MeanSquaredError, calculate_accuracy, get_loss
from .model import NeuralNetwork, TrainingResult, TrainingState
from .optimizers import SGD, Adam, Optimizer, create_optimizer
from .stats import EpochRecord, TrainingStats
from .training import LayerSpec, TrainingConfig, TrainingSession, prepare_dataset, train

__version__ = "1.0.0"
