"""
api_server.py
~~~~~~~~~~~~~

HTTP and WebSocket front end of the digit classifier.

Clients create networks, start and stop background training runs whose
progress is pushed over Socket.IO, classify 32x32 drawings, inspect
evaluation results and keep networks in the SQLite registry.

Training runs on gevent greenlets; inference passes share one
ConvolutionExecutor for the whole process.
"""

import atexit
import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Headless rendering backend; must be selected before pyplot is imported
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitcnn.config import TrainingConfig, configure_logging, is_production
from digitcnn.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks,
    get_network_metadata
)
from digitcnn.parallel import ConvolutionExecutor
from digitcnn.training import TrainingController, TrainingListener

configure_logging()
logger = logging.getLogger(__name__)

# Registry entries older than this are purged by the cleanup greenlet
REGISTRY_MAX_AGE_DAYS = 2
CLEANUP_INTERVAL = 24 * 60 * 60
CLEANUP_RETRY = 60 * 60

FINISHED_JOB_STATES = frozenset({'completed', 'stopped', 'failed'})
RUNNING_JOB_STATES = frozenset({'pending', 'training'})

# ----------------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------------

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

_verbose_sockets = not is_production()
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=_verbose_sockets,
    engineio_logger=_verbose_sockets,
    ping_timeout=60,
    ping_interval=25
)

config = TrainingConfig.from_env()

executor = ConvolutionExecutor(max_workers=config.conv_workers)
atexit.register(executor.shutdown)

# Picks the digit shown by the example endpoint
example_rng = np.random.default_rng(config.seed)

# network_id -> {'controller': TrainingController, 'trained': bool,
#                'accuracy': float or None}
active_networks: Dict[str, Dict[str, Any]] = {}

# job_id -> {'network_id', 'status', 'progress', 'epochs', ...}
training_jobs: Dict[str, Dict[str, Any]] = {}


def _new_controller(**overrides) -> TrainingController:
    """Create a controller from the environment config plus overrides."""
    params = {
        'epochs': config.epochs,
        'batch_size': config.batch_size,
        'learning_rate': config.learning_rate,
        'use_augmentation': config.use_augmentation,
        'train_size': config.train_size,
        'test_size': config.test_size,
        'model_path': config.model_path,
        'seed': config.seed,
    }
    params.update(overrides)
    return TrainingController(executor=executor, **params)


# ----------------------------------------------------------------------------
# Socket.IO progress events
# ----------------------------------------------------------------------------

class SocketIOTrainingListener(TrainingListener):
    """Forwards training progress to WebSocket clients and the job table."""

    def __init__(self, job_id: str, network_id: str,
                 controller: TrainingController):
        self.job_id = job_id
        self.network_id = network_id
        self.controller = controller

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        payload = dict(payload, job_id=self.job_id, network_id=self.network_id)
        socketio.emit(event, payload)
        # Yield so the emit is flushed before training continues
        gevent.sleep(0)

    def _job(self) -> Dict[str, Any]:
        return training_jobs.get(self.job_id, {})

    def on_status_changed(self, status: str) -> None:
        self._job()['message'] = status
        self._emit('training_status', {'status': status})

    def on_progress_changed(self, progress: int) -> None:
        job = self._job()
        job['status'] = 'training'
        job['progress'] = progress
        self._emit('training_progress', {'progress': progress})

    def on_epoch_completed(self, epoch: int, loss: float) -> None:
        self._job()['epoch'] = epoch
        self._emit('training_update', {
            'epoch': epoch,
            'total_epochs': self._job().get('epochs'),
            'loss': float(loss)
        })

    def on_accuracy_updated(self, accuracy: float) -> None:
        self._job()['accuracy'] = accuracy
        if self.network_id in active_networks:
            active_networks[self.network_id]['accuracy'] = accuracy
        self._emit('accuracy_update', {'accuracy': float(accuracy)})

    def on_error(self, error: str) -> None:
        job = self._job()
        if self.controller.run_failed:
            job['status'] = 'failed'
            job['error'] = error
        else:
            # Auto-save problems do not undo the trained epochs
            job.setdefault('warnings', []).append(error)
        self._emit('training_error', {'status': job.get('status'), 'error': error})

    def on_model_saved(self, filepath: str) -> None:
        self._emit('model_saved', {'filepath': filepath})

    def on_model_loaded(self, filepath: str) -> None:
        self._emit('model_loaded', {'filepath': filepath})

    def on_training_completed(self) -> None:
        job = self._job()
        info = active_networks.get(self.network_id)

        if self.controller.run_failed:
            job['status'] = 'failed'
        elif self.controller.stop_requested:
            job['status'] = 'stopped'
        else:
            job['status'] = 'completed'
            job['progress'] = 100
            if info is not None:
                info['trained'] = True

        logger.info(f"Training job {self.job_id} finished: {job['status']}")
        self._emit('training_complete', {
            'status': job['status'],
            'accuracy': job.get('accuracy'),
            'progress': job.get('progress')
        })


# ----------------------------------------------------------------------------
# Registry housekeeping
# ----------------------------------------------------------------------------

def reload_saved_networks() -> None:
    """Bring every registry entry back into memory after a restart."""
    entries = list_saved_networks(config.model_dir)
    if not entries:
        logger.info("Registry is empty, nothing to reload")
        return

    restored = 0
    for entry in entries:
        network_id = entry['network_id']
        net = load_network(network_id, config.model_dir,
                           seed=config.seed, executor=executor)
        if net is None:
            logger.warning(f"Skipping unreadable registry entry {network_id}")
            continue

        active_networks[network_id] = {
            'controller': _new_controller(network=net),
            'trained': entry['trained'],
            'accuracy': entry['accuracy']
        }
        restored += 1

    logger.info(f"Restored {restored} of {len(entries)} network(s) from registry")


def cleanup_old_networks_task() -> None:
    """Greenlet body: purge stale registry entries and finished jobs daily."""
    while True:
        try:
            purged = delete_old_networks(days=REGISTRY_MAX_AGE_DAYS,
                                         model_dir=config.model_dir)
            if purged < 0:
                logger.error("Registry purge failed, see previous error")
            else:
                logger.info(f"Registry purge removed {purged} network(s)")
            cleanup_finished_training_jobs()
        except Exception as e:
            logger.exception(f"Housekeeping failed: {e}")
            gevent.sleep(CLEANUP_RETRY)
        else:
            gevent.sleep(CLEANUP_INTERVAL)


def cleanup_finished_training_jobs() -> None:
    finished = [job_id for job_id, job in training_jobs.items()
                if job.get('status') in FINISHED_JOB_STATES]
    for job_id in finished:
        training_jobs.pop(job_id, None)

    if finished:
        logger.info(f"Dropped {len(finished)} finished training job(s)")


# ----------------------------------------------------------------------------
# Response helpers
# ----------------------------------------------------------------------------

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Plain floats for jsonify."""
    return array.astype(float).ravel().tolist()


def create_digit_image(image_data: np.ndarray, predicted: int, actual: int) -> str:
    """
    Render one digit with its predicted and true label.

    Args:
        image_data: (1, S, S) or (S, S) intensities
        predicted: Class chosen by the network
        actual: Ground-truth class

    Returns:
        PNG bytes, base64-encoded
    """
    fig, ax = plt.subplots(figsize=(3, 3))
    try:
        ax.imshow(image_data.reshape(image_data.shape[-2:]), cmap='gray',
                  vmin=0.0, vmax=1.0)
        ax.set_title(f"Predicted {predicted}, actual {actual}")
        ax.set_axis_off()

        png = BytesIO()
        fig.savefig(png, format='png', bbox_inches='tight')
    finally:
        plt.close(fig)

    return base64.b64encode(png.getvalue()).decode('ascii')


def _not_found(network_id: str, action: str):
    logger.warning(f"{action} requested for non-existent network: {network_id}")
    return jsonify({'error': 'Network not found'}), 404


def _busy(network_id: str):
    return jsonify({
        'error': f'Network {network_id} is currently training'
    }), 409


# ----------------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------------

@app.route('/api/status', methods=['GET'])
def get_status():
    """Liveness plus counts of loaded networks and running jobs."""
    running = [job for job in training_jobs.values()
               if job.get('status') in RUNNING_JOB_STATES]

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': len(running),
        'conv_workers': executor.max_workers
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new convolutional network.

    Request body (optional):
        {'learning_rate': 0.001}

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    learning_rate = data.get('learning_rate', config.learning_rate)

    if (isinstance(learning_rate, bool)
            or not isinstance(learning_rate, (int, float))
            or learning_rate <= 0):
        return jsonify({'error': 'learning_rate must be a positive number'}), 400

    try:
        network_id = str(uuid.uuid4())
        controller = _new_controller(learning_rate=float(learning_rate))
    except Exception as e:
        logger.exception(f"Error creating network: {e}")
        return jsonify({'error': f'Failed to create network: {str(e)}'}), 500

    active_networks[network_id] = {
        'controller': controller,
        'trained': False,
        'accuracy': None
    }

    architecture = controller.network.architecture()
    logger.info(f"Created network {network_id} with learning rate {learning_rate}")

    return jsonify({
        'network_id': network_id,
        'architecture': architecture,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {
            'epochs': 10,
            'batch_size': 32,
            'augment': true,
            'train_size': 6000
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        return _not_found(network_id, "Training")

    controller: TrainingController = active_networks[network_id]['controller']
    if controller.is_training:
        return _busy(network_id)

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', controller.epochs)
    batch_size = data.get('batch_size', controller.batch_size)
    train_size = data.get('train_size', controller.train_size)
    augment = data.get('augment', controller.use_augmentation)

    for name, value in (('epochs', epochs), ('batch_size', batch_size),
                        ('train_size', train_size)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            return jsonify({'error': f'{name} must be a positive integer'}), 400
    if not isinstance(augment, bool):
        return jsonify({'error': 'augment must be a boolean'}), 400

    controller.epochs = epochs
    controller.batch_size = batch_size
    controller.train_size = train_size
    controller.use_augmentation = augment

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }
    controller.listener = SocketIOTrainingListener(job_id, network_id, controller)

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, batch_size={batch_size}, train_size={train_size}, "
        f"augment={augment}"
    )

    # Runs on a background greenlet so we can return immediately
    controller.start_training()

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


@app.route('/api/networks/<network_id>/stop', methods=['POST'])
def stop_training(network_id: str):
    """Request cooperative cancellation of a running training job."""
    if network_id not in active_networks:
        return _not_found(network_id, "Stop")

    controller: TrainingController = active_networks[network_id]['controller']
    if not controller.is_training:
        return jsonify({'error': 'Network is not training'}), 409

    controller.stop_training()
    return jsonify({'network_id': network_id, 'status': 'stop_requested'}), 202


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict_digit(network_id: str):
    """
    Classify one image.

    Request body:
        {'pixels': [[...], ...]}  # S x S values in [0, 1] or [0, 255]

    Returns:
        JSON with predicted_digit, confidence and probabilities
    """
    if network_id not in active_networks:
        return _not_found(network_id, "Prediction")

    controller: TrainingController = active_networks[network_id]['controller']
    if controller.is_training:
        return _busy(network_id)

    data = request.get_json(silent=True) or {}
    size = controller.source.image_size
    try:
        pixels = np.asarray(data.get('pixels'), dtype=np.float64)
    except (TypeError, ValueError):
        pixels = np.empty(0)

    if pixels.shape != (size, size):
        return jsonify({
            'error': f'pixels must be a {size}x{size} array of numbers'
        }), 400
    if pixels.max(initial=0.0) > 1.0:
        pixels = pixels / 255.0

    try:
        result = controller.predict(pixels)
    except Exception as e:
        logger.exception(f"Prediction failed for network {network_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({
        'network_id': network_id,
        'predicted_digit': result.predicted_class,
        'confidence': result.confidence,
        'probabilities': array_to_float_list(result.probabilities)
    }), 200


@app.route('/api/networks/<network_id>/evaluate', methods=['GET'])
def evaluate_network(network_id: str):
    """Evaluate on freshly generated digits; includes a confusion matrix."""
    if network_id not in active_networks:
        return _not_found(network_id, "Evaluation")

    info = active_networks[network_id]
    controller: TrainingController = info['controller']
    if controller.is_training:
        return _busy(network_id)

    try:
        result = controller.evaluate_detailed()
    except Exception as e:
        logger.exception(f"Evaluation failed for network {network_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500
    info['accuracy'] = result.accuracy

    return jsonify({
        'network_id': network_id,
        'accuracy': result.accuracy,
        'confusion_matrix': result.confusion_matrix.tolist(),
        'class_accuracies': array_to_float_list(result.class_accuracies)
    }), 200


@app.route('/api/networks/<network_id>/example', methods=['GET'])
def get_example(network_id: str):
    """Render a generated digit together with the network's prediction."""
    if network_id not in active_networks:
        return _not_found(network_id, "Example")

    controller: TrainingController = active_networks[network_id]['controller']
    if controller.is_training:
        return _busy(network_id)

    try:
        actual_digit = int(example_rng.integers(0, 10))
        image = controller.source.generate_digit(actual_digit, 0.05)
        result = controller.predict(image)
        image_data = create_digit_image(image, result.predicted_class, actual_digit)
    except Exception as e:
        logger.exception(f"Error rendering example for network {network_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({
        'network_id': network_id,
        'predicted_digit': result.predicted_class,
        'actual_digit': actual_digit,
        'image_data': image_data,
        'network_output': array_to_float_list(result.probabilities)
    }), 200


@app.route('/api/networks/<network_id>/save', methods=['POST'])
def save_network_endpoint(network_id: str):
    """Store the in-memory network in the model registry."""
    if network_id not in active_networks:
        return _not_found(network_id, "Save")

    info = active_networks[network_id]
    controller: TrainingController = info['controller']
    if controller.is_training:
        return _busy(network_id)

    saved = save_network(
        controller.network,
        network_id,
        model_dir=config.model_dir,
        trained=info['trained'],
        accuracy=info['accuracy']
    )
    if not saved:
        return jsonify({'error': 'Failed to save network'}), 500

    return jsonify({'network_id': network_id, 'status': 'saved'}), 200


@app.route('/api/networks/<network_id>/load', methods=['POST'])
def load_network_endpoint(network_id: str):
    """Replace the in-memory network with the registry copy."""
    info = active_networks.get(network_id)
    if info is not None and info['controller'].is_training:
        return _busy(network_id)

    net = load_network(network_id, config.model_dir,
                       seed=config.seed, executor=executor)
    if net is None:
        return _not_found(network_id, "Load")

    meta = get_network_metadata(network_id, config.model_dir) or {}
    if info is None:
        info = active_networks[network_id] = {
            'controller': _new_controller(network=net)
        }
    else:
        info['controller'].network = net
    info['trained'] = meta.get('trained', True)
    info['accuracy'] = meta.get('accuracy')

    logger.info(f"Loaded network {network_id} from registry")
    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture(),
        'trained': info['trained'],
        'accuracy': info['accuracy'],
        'status': 'loaded'
    }), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """Loaded networks first, then registry entries that are not loaded."""
    listing = [
        {
            'network_id': nid,
            'architecture': info['controller'].network.architecture(),
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'training': info['controller'].is_training,
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]
    listing.extend(
        dict(entry, status='saved')
        for entry in list_saved_networks(config.model_dir)
        if entry['network_id'] not in active_networks
    )
    return jsonify({'networks': listing}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Drop a network from memory and from the registry."""
    info = active_networks.get(network_id)
    if info is not None and info['controller'].is_training:
        return _busy(network_id)

    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, config.model_dir)

    if not (deleted_from_memory or deleted_from_disk):
        return _not_found(network_id, "Delete")

    logger.info(
        f"Deleted network {network_id} (memory={deleted_from_memory}, "
        f"registry={deleted_from_disk})"
    )
    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


# ----------------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------------

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))

    reload_saved_networks()
    gevent.spawn(cleanup_old_networks_task)

    logger.info(f"Serving on http://0.0.0.0:{port}/ ({executor.max_workers} conv worker(s))")
    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production(),
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" not in str(e):
            raise
        logger.error(f"Port {port} is taken; set PORT to use another one")
        sys.exit(1)
