"""
test_stats.py
~~~~~~~~~~~~~

Unit tests for TrainingStats.
"""

import dataclasses
import math
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from feedforward.stats import EpochRecord, TrainingStats


@pytest.mark.unit
class TestTrainingStats:
    """Append-only epoch records."""

    def test_empty(self):
        stats = TrainingStats()
        assert len(stats) == 0
        assert stats.latest() is None
        assert stats.last_epoch == 0
        assert stats.snapshot() == ()
        assert stats.to_dict() == {'epochs': [], 'losses': [], 'accuracies': []}

    def test_record_and_read(self):
        stats = TrainingStats()
        stats.record(1, 0.9, 0.5)
        record = stats.record(2, 0.4, 0.75)

        assert record == EpochRecord(2, 0.4, 0.75)
        assert stats.latest() == record
        assert stats.last_epoch == 2
        assert stats.epochs == [1, 2]
        assert stats.losses == [0.9, 0.4]
        assert stats.accuracies == [0.5, 0.75]
        assert stats.to_dict() == {
            'epochs': [1, 2], 'losses': [0.9, 0.4], 'accuracies': [0.5, 0.75]
        }

    def test_epochs_must_increase(self):
        stats = TrainingStats()
        stats.record(3, 0.5, 0.5)
        with pytest.raises(ValueError):
            stats.record(3, 0.4, 0.6)
        with pytest.raises(ValueError):
            stats.record(2, 0.4, 0.6)
        assert len(stats) == 1

    @pytest.mark.parametrize('loss, accuracy', [
        (math.nan, 0.5), (math.inf, 0.5), (0.5, math.nan)
    ])
    def test_non_finite_values_are_rejected(self, loss, accuracy):
        stats = TrainingStats()
        with pytest.raises(ValueError):
            stats.record(1, loss, accuracy)
        assert len(stats) == 0

    def test_snapshot_is_detached(self):
        stats = TrainingStats()
        stats.record(1, 1.0, 0.0)
        snapshot = stats.snapshot()
        stats.record(2, 0.5, 0.5)
        assert len(snapshot) == 1
        assert len(stats.snapshot()) == 2

    def test_records_are_immutable(self):
        record = TrainingStats().record(1, 1.0, 0.0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            record.loss = 0.0
        assert record.to_dict() == {'epoch': 1, 'loss': 1.0, 'accuracy': 0.0}
