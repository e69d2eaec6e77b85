"""
api_server.py
~~~~~~~~~~~~~

Flask REST API with Socket.IO progress events for the training engine.

Endpoints:
- ``POST /api/train``: build a network from a layer list and train it in
  the background
- ``GET /api/stats`` / ``GET /api/training/<job_id>``: poll progress
- ``POST /api/training/<job_id>/cancel``: stop between batches
- ``POST /api/test``: run inference, also while training is running
- ``POST /api/save_model`` / ``POST /api/load_model`` / ``GET /api/models``
  / ``DELETE /api/models/<name>``: named model storage

The server uses:
- Flask for REST endpoints, Flask-CORS for cross-origin access
- Flask-SocketIO in gevent mode for ``training_*`` events
- gevent greenlets for background training
- SQLite (via :class:`ModelDatabase`) for named models
"""

import logging
import uuid
from typing import Any, Dict, Optional

import gevent
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO

from feedforward.config import Settings
from feedforward.errors import (
    ConfigurationError,
    NetworkError,
    PersistenceError,
    ShapeMismatchError,
)
from feedforward.model_persistence import ModelDatabase
from feedforward.stats import EpochRecord
from feedforward.training import TrainingConfig, TrainingSession

# ============================================================================
# LOGGING SETUP
# ============================================================================

settings = Settings.from_env()


def configure_logging(settings: Settings) -> None:
    """
    Set up logging for the server.

    In production third-party loggers are limited to warnings while the
    engine's own loggers stay at INFO.
    """
    log_level = getattr(logging, settings.log_level, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if settings.is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('feedforward').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging(settings)
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/api/*": {"origins": settings.cors_origins}})

socketio = SocketIO(
    app,
    cors_allowed_origins=settings.cors_origins,
    async_mode='gevent',
    logger=not settings.is_production,
    engineio_logger=not settings.is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks held in memory: {network_id: {'network', 'trained', 'accuracy'}}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs: {job_id: {'session', 'task', 'network_id'}}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Job reported by /api/stats
latest_job_id: Optional[str] = None

# Finished jobs kept around for polling before being dropped
MAX_FINISHED_JOBS = 20

# Networks held in memory before idle ones are dropped
MAX_ACTIVE_NETWORKS = 50

_db: Optional[ModelDatabase] = None


def _get_db() -> ModelDatabase:
    """Get or create the model database for the configured MODEL_DIR."""
    global _db
    if _db is None:
        _db = ModelDatabase(db_path=settings.database_path)
    return _db


def _error(message: str, status: int):
    return jsonify({'error': message}), status


def _resolve_network(network_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """Look up a network by id, or the most recently trained one."""
    if network_id:
        return active_networks.get(network_id)
    if latest_job_id and latest_job_id in training_jobs:
        return active_networks.get(training_jobs[latest_job_id]['network_id'])
    return None


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

def cleanup_finished_training_jobs() -> None:
    """
    Forget the oldest finished jobs beyond ``MAX_FINISHED_JOBS``.

    Running jobs and the job served by /api/stats are always kept.
    """
    finished = [
        job_id for job_id, job in training_jobs.items()
        if not job['session'].is_running and job_id != latest_job_id
    ]
    excess = len(finished) - MAX_FINISHED_JOBS
    for job_id in finished[:max(excess, 0)]:
        del training_jobs[job_id]

    if excess > 0:
        logger.info(f"Cleaned up {excess} finished training job(s)")


def cleanup_idle_networks(keep: Optional[str] = None) -> None:
    """
    Drop the oldest idle networks beyond ``MAX_ACTIVE_NETWORKS``.

    Networks that are training, belong to a running job, belong to the
    job served by /api/stats, or match ``keep`` are never dropped.
    Saved models stay in the database and can be loaded again.
    """
    busy = {
        job['network_id'] for job_id, job in training_jobs.items()
        if job['session'].is_running or job_id == latest_job_id
    }
    if keep is not None:
        busy.add(keep)

    idle = [
        network_id for network_id, info in active_networks.items()
        if network_id not in busy and not info['network'].is_training
    ]
    excess = len(active_networks) - MAX_ACTIVE_NETWORKS
    removed = idle[:max(excess, 0)]
    for network_id in removed:
        del active_networks[network_id]

    if removed:
        logger.info(
            f"Removed {len(removed)} idle network(s) from memory, "
            f"{len(active_networks)} remaining"
        )


def train_network_task(job_id: str) -> None:
    """
    Run one training session, emitting Socket.IO events as it goes.

    Yields to other greenlets between batches so HTTP requests (stats
    polling, inference) are served while training runs.
    """
    job = training_jobs[job_id]
    session: TrainingSession = job['session']
    network_id = job['network_id']

    def yield_to_other_tasks() -> None:
        gevent.sleep(0)

    try:
        logger.info(f"Starting training job {job_id} for network {network_id}")
        result = session.run(yield_func=yield_to_other_tasks)

        net_info = active_networks.get(network_id)
        if net_info is not None and result.epochs_completed:
            net_info['trained'] = True
            net_info['accuracy'] = result.final_accuracy

        event = 'training_complete' if result.status == 'completed' else 'training_cancelled'
        socketio.emit(event, {
            'job_id': job_id,
            'network_id': network_id,
            **result.to_dict()
        })
        logger.info(
            f"Training job {job_id} {result.status}: {result.epochs_completed} "
            f"epoch(s), loss={result.final_loss}, accuracy={result.final_accuracy}"
        )

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")
        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
    gevent.sleep(0)


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status with counts of networks and running jobs."""
    running = sum(1 for job in training_jobs.values() if job['session'].is_running)
    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': running
    }), 200


@app.route('/api/train', methods=['POST'])
def start_training():
    """
    Build a network and start training it in the background.

    Request body:
        {
            'layers': [{'input_size': 2, 'output_size': 4, 'activation': 'ReLU'}, ...],
            'epochs': 10, 'batch_size': 32, 'learning_rate': 0.01,
            'l2_reg': 0.0, 'optimizer': 'adam', 'loss': 'mse', 'seed': 0,
            'x_train': [[...], ...], 'y_train': [[...], ...]
        }

    Returns:
        202 with job_id and network_id
    """
    global latest_job_id

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error('Request body must be a JSON object', 400)
    if 'x_train' not in data or 'y_train' not in data:
        return _error('x_train and y_train are required', 400)

    try:
        config = TrainingConfig.from_dict(data)
        net = config.build_network()
        job_id = str(uuid.uuid4())

        def on_epoch_complete(record: EpochRecord) -> None:
            socketio.emit('training_update', {
                'job_id': job_id,
                'network_id': net.network_id,
                'total_epochs': config.epochs,
                'progress': 100.0 * record.epoch / config.epochs,
                **record.to_dict()
            })

        session = TrainingSession(
            net, data['x_train'], data['y_train'], config,
            callback=on_epoch_complete
        )
        if session.x_train.shape[1] != net.input_size or session.y_train.shape[1] != net.output_size:
            raise ShapeMismatchError(
                f"Data shapes {session.x_train.shape}/{session.y_train.shape} do not "
                f"fit a network of sizes {net.sizes}"
            )
    except (ConfigurationError, ShapeMismatchError) as e:
        logger.warning(f"Rejected training request: {e}")
        return _error(str(e), 400)

    active_networks[net.network_id] = {
        'network': net,
        'trained': False,
        'accuracy': None
    }
    training_jobs[job_id] = {
        'session': session,
        'network_id': net.network_id,
        'task': None
    }
    latest_job_id = job_id
    cleanup_finished_training_jobs()
    cleanup_idle_networks(keep=net.network_id)

    training_jobs[job_id]['task'] = socketio.start_background_task(
        train_network_task, job_id
    )

    logger.info(
        f"Created training job {job_id} for network {net.network_id}: "
        f"sizes={net.sizes}, epochs={config.epochs}, batch_size={config.batch_size}, "
        f"optimizer={config.optimizer}, lr={config.learning_rate}"
    )
    return jsonify({
        'job_id': job_id,
        'network_id': net.network_id,
        'status': 'training_started'
    }), 202


@app.route('/api/stats', methods=['GET'])
def get_stats():
    """Stats of the most recently started training job."""
    if latest_job_id is None or latest_job_id not in training_jobs:
        return jsonify({'epochs': [], 'losses': [], 'accuracies': [], 'status': 'idle'}), 200

    session: TrainingSession = training_jobs[latest_job_id]['session']
    payload = session.stats.to_dict()
    payload.update(job_id=latest_job_id, status=session.status)
    return jsonify(payload), 200


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Status, progress and stats of one training job."""
    job = training_jobs.get(job_id)
    if job is None:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return _error('Training job not found', 404)
    return jsonify({'job_id': job_id, **job['session'].to_dict()}), 200


@app.route('/api/training/<job_id>/cancel', methods=['POST'])
def cancel_training(job_id: str):
    """Ask a job to stop before its next batch."""
    job = training_jobs.get(job_id)
    if job is None:
        return _error('Training job not found', 404)

    session: TrainingSession = job['session']
    if session.is_running:
        session.cancel()
        logger.info(f"Cancellation requested for job {job_id}")
    return jsonify({
        'job_id': job_id,
        'status': session.status,
        'cancel_requested': session.cancel_requested
    }), 200


@app.route('/api/test', methods=['POST'])
def test_network():
    """
    Run inference.

    Request body:
        {'inputs': [[...], ...], 'network_id': optional}

    Uses the latest trained network when no id is given.
    """
    data = request.get_json(silent=True) or {}
    net_info = _resolve_network(data.get('network_id'))
    if net_info is None:
        return _error('Network not found', 404)
    if 'inputs' not in data:
        return _error('inputs is required', 400)

    try:
        predictions = net_info['network'].predict(data['inputs'])
    except (NetworkError, ValueError, TypeError) as e:
        return _error(f'Invalid inputs: {e}', 400)

    return jsonify({
        'network_id': net_info['network'].network_id,
        'predictions': predictions.tolist()
    }), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List networks held in memory."""
    networks = [
        {
            'network_id': network_id,
            'sizes': info['network'].sizes,
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'training': info['network'].is_training
        }
        for network_id, info in active_networks.items()
    ]
    return jsonify({'networks': networks}), 200


def _model_name_from_request() -> Optional[str]:
    """Accept either ``{'name': ...}`` JSON or a plain-text body."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        name = data.get('name')
    else:
        name = request.get_data(as_text=True).strip()
    return name if isinstance(name, str) and name else None


@app.route('/api/save_model', methods=['POST'])
def save_model():
    """Store a network under a name (latest network by default)."""
    name = _model_name_from_request()
    if name is None:
        return _error('A model name is required', 400)

    data = request.get_json(silent=True)
    network_id = data.get('network_id') if isinstance(data, dict) else None
    net_info = _resolve_network(network_id)
    if net_info is None:
        return _error('Network not found', 404)

    try:
        _get_db().save_model(
            name,
            net_info['network'],
            trained=net_info['trained'],
            accuracy=net_info['accuracy']
        )
    except ValueError as e:
        return _error(str(e), 400)
    except PersistenceError as e:
        logger.error(f"Error saving model '{name}': {e}")
        return _error(f'Failed to save model: {e}', 500)

    return jsonify({
        'message': f"Model '{name}' saved",
        'name': name,
        'network_id': net_info['network'].network_id
    }), 200


@app.route('/api/load_model', methods=['POST'])
def load_model():
    """Load a stored model into memory so it can be tested."""
    name = _model_name_from_request()
    if name is None:
        return _error('A model name is required', 400)

    try:
        db = _get_db()
        net = db.load_model(name)
        metadata = db.get_model_metadata(name) if net is not None else None
    except PersistenceError as e:
        logger.error(f"Error loading model '{name}': {e}")
        return _error(f'Failed to load model: {e}', 500)

    if net is None:
        return _error(f"Model '{name}' not found", 404)

    existing = active_networks.get(net.network_id)
    if existing is not None and existing['network'].is_training:
        return _error('A network with this id is currently training', 409)

    # Re-insert so a reloaded network counts as the newest
    active_networks.pop(net.network_id, None)
    active_networks[net.network_id] = {
        'network': net,
        'trained': metadata['trained'],
        'accuracy': metadata['accuracy']
    }
    cleanup_idle_networks(keep=net.network_id)
    return jsonify({
        'message': f"Model '{name}' loaded",
        'name': name,
        'network_id': net.network_id,
        'sizes': net.sizes
    }), 200


@app.route('/api/models', methods=['GET'])
def list_models():
    """List stored models."""
    try:
        models = _get_db().list_models()
    except PersistenceError as e:
        logger.error(f"Error listing models: {e}")
        return _error('Failed to list models', 500)
    return jsonify({'models': models}), 200


@app.route('/api/models/<name>', methods=['DELETE'])
def delete_model(name: str):
    """Delete a stored model."""
    try:
        deleted = _get_db().delete_model(name)
    except PersistenceError as e:
        logger.error(f"Error deleting model '{name}': {e}")
        return _error('Failed to delete model', 500)

    if not deleted:
        return _error(f"Model '{name}' not found", 404)
    return jsonify({'name': name, 'deleted': True}), 200


def main() -> None:
    """Run the development server."""
    logger.info(f"Starting server on {settings.host}:{settings.port}")
    socketio.run(app, host=settings.host, port=settings.port)


if __name__ == '__main__':
    main()
