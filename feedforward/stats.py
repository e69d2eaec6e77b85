"""
stats.py
~~~~~~~~

Append-only record of per-epoch training progress.

One training loop writes while any number of observers read. Records are
immutable and the lock is only held long enough to append one record or
copy the list, so a slow reader never holds up the writer for longer
than a list copy.
"""

import math
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class EpochRecord:
    """Loss and accuracy aggregated over one epoch."""

    epoch: int
    loss: float
    accuracy: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TrainingStats:
    """Thread-safe, append-only sequence of :class:`EpochRecord`."""

    def __init__(self):
        self._records: List[EpochRecord] = []
        self._lock = threading.Lock()

    def record(self, epoch: int, loss: float, accuracy: float) -> EpochRecord:
        """
        Append one epoch's results.

        Args:
            epoch: Epoch index, strictly greater than the last recorded one
            loss: Mean loss over the epoch
            accuracy: Accuracy over the epoch (0.0 to 1.0)

        Returns:
            EpochRecord: The stored record

        Raises:
            ValueError: If the epoch does not increase or a value is not finite
        """
        if not (math.isfinite(loss) and math.isfinite(accuracy)):
            raise ValueError(f"Non-finite stats for epoch {epoch}: loss={loss}, accuracy={accuracy}")

        entry = EpochRecord(int(epoch), float(loss), float(accuracy))
        with self._lock:
            if self._records and entry.epoch <= self._records[-1].epoch:
                raise ValueError(
                    f"Epoch {entry.epoch} recorded after epoch {self._records[-1].epoch}"
                )
            self._records.append(entry)
        return entry

    def snapshot(self) -> Tuple[EpochRecord, ...]:
        """Return an immutable copy of everything recorded so far."""
        with self._lock:
            return tuple(self._records)

    def latest(self) -> Optional[EpochRecord]:
        with self._lock:
            return self._records[-1] if self._records else None

    @property
    def last_epoch(self) -> int:
        """Index of the most recent record, 0 if nothing was recorded."""
        latest = self.latest()
        return latest.epoch if latest is not None else 0

    @property
    def epochs(self) -> List[int]:
        return [r.epoch for r in self.snapshot()]

    @property
    def losses(self) -> List[float]:
        return [r.loss for r in self.snapshot()]

    @property
    def accuracies(self) -> List[float]:
        return [r.accuracy for r in self.snapshot()]

    def to_dict(self) -> Dict[str, List]:
        records = self.snapshot()
        return {
            'epochs': [r.epoch for r in records],
            'losses': [r.loss for r in records],
            'accuracies': [r.accuracy for r in records],
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __repr__(self) -> str:
        return f"TrainingStats(records={len(self)})"
