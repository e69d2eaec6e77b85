"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-backed store for trained networks.

Each row keeps a named network in the binary format of
:mod:`feedforward.serialization` next to queryable metadata
(architecture, training status, accuracy, timestamps).
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

from .errors import PersistenceError
from .model import NeuralNetwork

logger = logging.getLogger(__name__)


class ModelDatabase:
    """
    Named storage for :class:`NeuralNetwork` objects.

    Database failures surface as :class:`PersistenceError`. A name that
    does not exist is not an error: lookups return ``None`` and deletes
    return ``False``.
    """

    def __init__(self, db_path: str = 'models/models.db'):
        """
        Open (and if needed create) the database.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                raise PersistenceError(f"Cannot create model directory '{db_dir}': {e}") from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Yield a connection that commits on success and rolls back on error.

        Raises:
            PersistenceError: Wrapping any sqlite3 error
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open model database '{self.db_path}': {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Model database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS models (
                    name TEXT PRIMARY KEY,
                    network_id TEXT NOT NULL,
                    architecture TEXT NOT NULL,
                    model_data BLOB NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_models_updated_at
                ON models(updated_at DESC)
            ''')

    @staticmethod
    def _check_name(name: str) -> None:
        if not name or not isinstance(name, str):
            raise ValueError("Model name must be a non-empty string")

    def save_model(
        self,
        name: str,
        network: NeuralNetwork,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> None:
        """
        Store ``network`` under ``name``, replacing any previous entry.

        Args:
            name: Unique name for the model
            network: Network to store
            trained: Whether the network has been trained
            accuracy: Last training accuracy (0.0 to 1.0)

        Raises:
            ValueError: If the name or accuracy is invalid
            PersistenceError: If the database write fails
        """
        self._check_name(name)
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(f"Accuracy must be between 0.0 and 1.0, got {accuracy}")

        model_data = network.to_bytes()
        architecture = json.dumps([layer.get_config() for layer in network.layers])

        with self._get_connection() as conn:
            conn.execute('''
                INSERT INTO models
                (name, network_id, architecture, model_data, trained, accuracy)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    network_id = excluded.network_id,
                    architecture = excluded.architecture,
                    model_data = excluded.model_data,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                name,
                network.network_id,
                architecture,
                sqlite3.Binary(model_data),
                1 if trained else 0,
                accuracy
            ))

        logger.info(
            f"Saved model '{name}' (network {network.network_id}, sizes "
            f"{network.sizes}, trained={trained}, accuracy={accuracy})"
        )

    def load_model(self, name: str) -> Optional[NeuralNetwork]:
        """
        Load the network stored under ``name``.

        Returns:
            NeuralNetwork or None if no such model exists

        Raises:
            PersistenceError: If the stored data is corrupt
        """
        self._check_name(name)
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT model_data FROM models WHERE name = ?', (name,)
            ).fetchone()

        if row is None:
            logger.warning(f"Model '{name}' not found")
            return None

        network = NeuralNetwork.from_bytes(bytes(row['model_data']))
        logger.info(f"Loaded model '{name}' (network {network.network_id})")
        return network

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        try:
            architecture = json.loads(row['architecture'])
        except json.JSONDecodeError as e:
            raise PersistenceError(
                f"Corrupt architecture for model '{row['name']}': {e}"
            ) from e
        return {
            'name': row['name'],
            'network_id': row['network_id'],
            'architecture': architecture,
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at'],
        }

    def list_models(self) -> List[Dict[str, Any]]:
        """Metadata of every stored model, most recently updated first."""
        with self._get_connection() as conn:
            rows = conn.execute('''
                SELECT name, network_id, architecture, trained, accuracy,
                       created_at, updated_at
                FROM models
                ORDER BY updated_at DESC, name
            ''').fetchall()

        models = [self._row_to_metadata(row) for row in rows]
        logger.debug(f"Listed {len(models)} model(s)")
        return models

    def get_model_metadata(self, name: str) -> Optional[Dict[str, Any]]:
        """Metadata for one model without decoding its parameters."""
        self._check_name(name)
        with self._get_connection() as conn:
            row = conn.execute('''
                SELECT name, network_id, architecture, trained, accuracy,
                       created_at, updated_at
                FROM models
                WHERE name = ?
            ''', (name,)).fetchone()

        if row is None:
            return None
        return self._row_to_metadata(row)

    def delete_model(self, name: str) -> bool:
        """
        Delete a stored model.

        Returns:
            bool: True if deleted, False if not found
        """
        self._check_name(name)
        with self._get_connection() as conn:
            deleted = conn.execute(
                'DELETE FROM models WHERE name = ?', (name,)
            ).rowcount > 0

        if deleted:
            logger.info(f"Deleted model '{name}'")
        else:
            logger.warning(f"Could not delete model '{name}': not found")
        return deleted
