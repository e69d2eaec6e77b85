"""
test_training_config.py
~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for configuration intake, dataset preparation and sessions.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from feedforward.config import Settings
from feedforward.errors import ConfigurationError, ShapeMismatchError
from feedforward.losses import CrossEntropyLoss, MeanSquaredError
from feedforward.optimizers import SGD, Adam
from feedforward.stats import TrainingStats
from feedforward.training import (
    LayerSpec,
    TrainingConfig,
    TrainingSession,
    prepare_dataset,
    train,
)


def xor_config(**overrides):
    data = {
        'layers': [
            {'input_size': 2, 'output_size': 4, 'activation': 'ReLU'},
            {'input_size': 4, 'output_size': 1, 'activation': 'Sigmoid'},
        ],
        'epochs': 5,
        'batch_size': 2,
        'learning_rate': 0.05,
        'optimizer': 'adam',
        'loss': 'cross_entropy',
        'seed': 0,
    }
    data.update(overrides)
    return data


X = [[0, 0], [0, 1], [1, 0], [1, 1]]
Y = [[0], [1], [1], [0]]


@pytest.mark.unit
class TestTrainingConfig:
    """Parsing and validation."""

    def test_from_dict(self):
        config = TrainingConfig.from_dict(xor_config(l2_reg=0.001, beta1=0.8))
        assert config.layers[0] == LayerSpec(2, 4, 'ReLU')
        assert config.epochs == 5
        assert config.l2_reg == 0.001

        optimizer = config.build_optimizer()
        assert isinstance(optimizer, Adam)
        assert optimizer.beta1 == 0.8
        assert isinstance(config.build_loss(), CrossEntropyLoss)

    def test_defaults(self):
        config = TrainingConfig.from_dict({'layers': [{'input_size': 3, 'output_size': 1}]})
        assert config.layers[0].activation == 'relu'
        assert isinstance(config.build_optimizer(), SGD)
        assert isinstance(config.build_loss(), MeanSquaredError)

    def test_round_trip_through_dict(self):
        config = TrainingConfig.from_dict(xor_config())
        assert TrainingConfig.from_dict(config.to_dict()) == config

    def test_build_network(self):
        config = TrainingConfig.from_dict(xor_config())
        network = config.build_network(network_id='xor')
        assert network.network_id == 'xor'
        assert network.sizes == [2, 4, 1]
        assert [l.activation_name for l in network.layers] == ['relu', 'sigmoid']

    def test_seeded_networks_match(self):
        config = TrainingConfig.from_dict(xor_config())
        a, b = config.build_network(), config.build_network()
        np.testing.assert_array_equal(a[0].weights, b[0].weights)

    @pytest.mark.parametrize('overrides', [
        {'layers': []},
        {'layers': 'dense'},
        {'layers': [{'input_size': 2}]},
        {'layers': [{'input_size': 2, 'output_size': 3},
                    {'input_size': 4, 'output_size': 1}]},
        {'layers': [{'input_size': 0, 'output_size': 1}]},
        {'layers': [{'input_size': 2, 'output_size': 1, 'activation': 'swish'}]},
        {'epochs': 0},
        {'epochs': '10'},
        {'batch_size': -1},
        {'learning_rate': 0},
        {'l2_reg': -0.5},
        {'optimizer': 'rmsprop'},
        {'loss': 'hinge'},
        {'beta1': 1.5},
        {'seed': 'abc'},
        {'learning_rate': float('nan')},
        {'learning_rate': float('inf')},
        {'l2_reg': float('nan')},
        {'beta2': float('nan')},
        {'epsilon': float('nan')},
    ])
    def test_invalid_config(self, overrides):
        with pytest.raises(ConfigurationError):
            TrainingConfig.from_dict(xor_config(**overrides))

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            TrainingConfig.from_dict([1, 2, 3])


@pytest.mark.unit
class TestPrepareDataset:
    """Raw data intake."""

    def test_converts_to_float32(self):
        x, y = prepare_dataset(X, Y)
        assert x.dtype == np.float32 and y.dtype == np.float32
        assert x.shape == (4, 2) and y.shape == (4, 1)

    @pytest.mark.parametrize('x, y', [
        ([[0, 0], [1, 1]], [[0]]),
        ([0, 1], [[0], [1]]),
        ([], []),
        ([['a', 'b']], [[0]]),
        ([[0, 1], [1, 0, 1]], [[0], [1]]),
        ([[float('nan'), 0]], [[1]]),
    ])
    def test_invalid_data(self, x, y):
        with pytest.raises(ConfigurationError):
            prepare_dataset(x, y)


@pytest.mark.unit
class TestTrainingSession:
    """Synchronous and threaded runs."""

    def test_run_synchronously(self):
        config = TrainingConfig.from_dict(xor_config())
        network = config.build_network()
        seen = []
        session = TrainingSession(network, X, Y, config, callback=seen.append)
        assert session.status == 'pending'

        result = session.run()
        assert result.status == 'completed'
        assert session.status == 'completed'
        assert len(seen) == 5
        info = session.to_dict()
        assert info['epochs_completed'] == 5
        assert info['progress'] == 100.0
        assert info['stats']['epochs'] == [1, 2, 3, 4, 5]
        assert info['result']['epochs_completed'] == 5

    def test_progress_counts_from_existing_stats(self):
        config = TrainingConfig.from_dict(xor_config(epochs=2))
        stats = TrainingStats()
        stats.record(7, 1.0, 0.5)
        session = TrainingSession(config.build_network(), X, Y, config, stats=stats)
        session.run()
        assert stats.epochs == [7, 8, 9]
        assert session.to_dict()['progress'] == 100.0

    def test_failure_is_recorded(self):
        config = TrainingConfig.from_dict(xor_config())
        network = config.build_network()
        session = TrainingSession(network, [[0, 0, 0]], [[0]], config)
        with pytest.raises(ShapeMismatchError):
            session.run()
        assert session.status == 'failed'
        assert 'error' in session.to_dict()

    def test_threaded_run(self):
        config = TrainingConfig.from_dict(xor_config(epochs=50))
        session = TrainingSession(config.build_network(), X, Y, config).start()
        assert session.join(timeout=60)
        assert session.status == 'completed'
        assert len(session.stats) == 50
        with pytest.raises(ConfigurationError):
            session.start()

    def test_functional_train(self):
        config = TrainingConfig.from_dict(xor_config())
        network = config.build_network()
        result = train(network, X, Y, 3, 4, 'cross_entropy', Adam(0.01))
        assert result.epochs_completed == 3


@pytest.mark.unit
class TestSettings:
    """Environment settings."""

    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.port == 5000
        assert settings.log_level == 'INFO'
        assert not settings.is_production
        assert settings.database_path == os.path.join('models', 'models.db')

    def test_from_environment(self):
        settings = Settings.from_env({
            'MODEL_DIR': '/data', 'LOG_LEVEL': 'debug', 'FLASK_ENV': 'production',
            'PORT': '8080', 'CORS_ORIGINS': 'http://localhost:3000'
        })
        assert settings.model_dir == '/data'
        assert settings.log_level == 'DEBUG'
        assert settings.is_production
        assert settings.port == 8080
        assert settings.cors_origins == 'http://localhost:3000'

    @pytest.mark.parametrize('port', ['abc', '0', '70000'])
    def test_invalid_port(self, port):
        with pytest.raises(ConfigurationError):
            Settings.from_env({'PORT': port})
