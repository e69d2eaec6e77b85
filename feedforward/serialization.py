"""
serialization.py
~~~~~~~~~~~~~~~~

Versioned binary format for saved networks.

A saved network is a NumPy ``.npz`` archive holding:

- ``header``: JSON with the format name, version, network id and the
  ordered list of ``{input_size, output_size, activation}`` layer configs
- ``layer_{i}_weights`` / ``layer_{i}_biases``: float32 parameter arrays

Arrays are stored as-is, so a round trip is bit-exact. Archives are read
with ``allow_pickle=False``. Decoding either returns every layer or
raises :class:`PersistenceError`; it never hands back a partial network.
"""

import json
import logging
import os
import tempfile
import zipfile
import zlib
from io import BytesIO
from typing import List, Sequence, Tuple

import numpy as np

from .errors import NetworkError, PersistenceError
from .layers import DenseLayer

logger = logging.getLogger(__name__)

FORMAT_NAME = 'feedforward-network'
FORMAT_VERSION = 1


def encode_network(network_id: str, layers: Sequence[DenseLayer]) -> bytes:
    """
    Serialize layers to bytes.

    Args:
        network_id: Identity of the network, restored on load
        layers: Layers in input-to-output order

    Returns:
        bytes: The ``.npz`` archive
    """
    header = {
        'format': FORMAT_NAME,
        'version': FORMAT_VERSION,
        'network_id': network_id,
        'layers': [layer.get_config() for layer in layers],
    }
    arrays = {'header': np.array(json.dumps(header))}
    for index, layer in enumerate(layers):
        arrays[f'layer_{index}_weights'] = layer.weights
        arrays[f'layer_{index}_biases'] = layer.biases

    buffer = BytesIO()
    np.savez(buffer, **arrays)
    return buffer.getvalue()


def _read_header(archive) -> dict:
    if 'header' not in archive.files:
        raise PersistenceError("Model archive has no header")

    header = json.loads(str(archive['header'].item()))
    if not isinstance(header, dict):
        raise PersistenceError("Model header must be a JSON object")
    if header.get('format') != FORMAT_NAME:
        raise PersistenceError(f"Unrecognized model format: {header.get('format')!r}")
    if header.get('version') != FORMAT_VERSION:
        raise PersistenceError(
            f"Unsupported model format version {header.get('version')!r} "
            f"(expected {FORMAT_VERSION})"
        )
    if not isinstance(header.get('layers'), list):
        raise PersistenceError("Model header has no layer list")
    if not isinstance(header.get('network_id'), str):
        raise PersistenceError("Model header has no network id")
    return header


def _read_array(archive, key: str) -> np.ndarray:
    if key not in archive.files:
        raise PersistenceError(f"Model archive is missing '{key}'")
    array = archive[key]
    if array.dtype != np.float32:
        raise PersistenceError(f"'{key}' has dtype {array.dtype}, expected float32")
    return array


def decode_network(data: bytes) -> Tuple[str, List[DenseLayer]]:
    """
    Rebuild layers from bytes produced by :func:`encode_network`.

    Returns:
        tuple: (network_id, layers)

    Raises:
        PersistenceError: On any corrupt, truncated or inconsistent input
    """
    try:
        archive = np.load(BytesIO(data), allow_pickle=False)
    except (ValueError, OSError, EOFError, zipfile.BadZipFile, zlib.error) as e:
        raise PersistenceError(f"Model data is not a valid archive: {e}") from e

    if not hasattr(archive, 'files'):
        raise PersistenceError("Model data is a bare array, not a model archive")

    try:
        with archive:
            header = _read_header(archive)
            layers = []
            for index, config in enumerate(header['layers']):
                if not isinstance(config, dict):
                    raise PersistenceError(f"Layer {index} config must be an object")
                layer = DenseLayer(
                    config.get('input_size'),
                    config.get('output_size'),
                    config.get('activation'),
                    weights=_read_array(archive, f'layer_{index}_weights'),
                    biases=_read_array(archive, f'layer_{index}_biases'),
                )
                if layers and layers[-1].output_size != layer.input_size:
                    raise PersistenceError(
                        f"Layer {index} expects {layer.input_size} inputs but the "
                        f"previous layer produces {layers[-1].output_size}"
                    )
                layers.append(layer)
    except PersistenceError:
        raise
    except NetworkError as e:
        raise PersistenceError(f"Invalid layer in model data: {e}") from e
    except (ValueError, KeyError, TypeError, OSError, EOFError,
            zipfile.BadZipFile, zlib.error) as e:
        raise PersistenceError(f"Corrupt model data: {e}") from e

    return header['network_id'], layers


def write_network_file(path: str, data: bytes) -> None:
    """
    Write encoded model bytes to ``path``.

    The bytes go to a temporary file in the same directory which then
    replaces ``path``, so an interrupted save never leaves half a file.

    Raises:
        PersistenceError: If the file cannot be written
    """
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            dir=directory, prefix='.tmp-', suffix='.npz', delete=False
        ) as handle:
            tmp_path = handle.name
            handle.write(data)
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise PersistenceError(f"Could not write model file '{path}': {e}") from e

    logger.info(f"Wrote model file '{path}' ({len(data)} bytes)")


def read_network_file(path: str) -> bytes:
    """
    Read encoded model bytes from ``path``.

    Raises:
        PersistenceError: If the file is missing or unreadable
    """
    try:
        with open(path, 'rb') as handle:
            return handle.read()
    except FileNotFoundError as e:
        raise PersistenceError(f"Model file not found: '{path}'") from e
    except OSError as e:
        raise PersistenceError(f"Could not read model file '{path}': {e}") from e
