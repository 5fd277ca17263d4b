"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for packed networks.

This module provides endpoints for:
- Building networks and running forward passes
- Computing per-weight gradients for a sample
- Checking gradients against finite differences in the background, with
  progress updates via WebSockets
- Persisting networks to/from SQLite and exporting codec streams

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for background jobs and the retention cleanup task
- Matplotlib to render weight matrices
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify, Response
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from packnet import codec
from packnet.engine import (
    ErrorMode,
    forward,
    gradient,
    loss,
    max_relative_error,
    numerical_gradient,
    resolve_error_mode,
)
from packnet.exceptions import PacknetError
from packnet.initializer import randomize
from packnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    get_network_metadata,
    delete_network,
    delete_old_networks
)
from packnet.network import Network

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # In production, silence noisy third-party logs but keep our logs visible
    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('packnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

MODEL_DIR = os.getenv('MODEL_DIR', 'models')
CLEANUP_DAYS = float(os.getenv('CLEANUP_DAYS', '2'))

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO pushes gradient-check progress to connected clients
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Gradient-check jobs being tracked: {job_id: job_info}
check_jobs: Dict[str, Dict[str, Any]] = {}


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the database into memory.

    Called at startup so that networks saved before a restart are
    available again without an explicit load request.
    """
    saved_networks = list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue

        active_networks[network_id] = {
            'network': net,
            'trained': net_info['trained'],
            'loss': net_info['loss'],
            'saved': True
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Background task that runs immediately, then every 24 hours to:
    - Delete networks older than CLEANUP_DAYS from the database
    - Drop in-memory networks whose saved copy was deleted
    - Remove finished gradient-check jobs from memory
    """
    while True:
        try:
            logger.info("Starting automatic cleanup of old networks...")
            deleted_count = delete_old_networks(days=CLEANUP_DAYS, model_dir=MODEL_DIR)

            if deleted_count > 0:
                logger.info(f"Cleanup completed: deleted {deleted_count} network(s)")
                sync_active_networks()
            elif deleted_count == 0:
                logger.info("Cleanup completed: no old networks found to delete")
            else:
                logger.error("Cleanup returned error code")

            cleanup_finished_check_jobs()

            logger.info("Next cleanup scheduled in 24 hours")
            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            gevent.sleep(3600)


def sync_active_networks() -> None:
    """Remove saved networks from memory once they are gone from the database."""
    saved_ids = {net['network_id'] for net in list_saved_networks(MODEL_DIR)}
    stale = [
        nid for nid, info in active_networks.items()
        if info.get('saved') and nid not in saved_ids
    ]
    for nid in stale:
        del active_networks[nid]
        logger.info(f"Removed network {nid} from memory (deleted from database)")


def cleanup_finished_check_jobs() -> None:
    """Remove completed or failed gradient-check jobs from memory."""
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in check_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del check_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished gradient-check job(s)")


def start_cleanup_task() -> None:
    """Start the background cleanup task once; later calls do nothing."""
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


def gradient_check_task(
    network_id: str,
    job_id: str,
    inputs: Optional[List[float]],
    targets: List[float],
    error_mode: ErrorMode,
    epsilon: float
) -> None:
    """
    Background task comparing the analytic gradient with finite differences.

    Sends one progress update per connection layer via WebSocket.
    """
    info = active_networks.get(network_id)
    if info is None:
        check_jobs[job_id].update(status='failed', error='Network not found')
        return

    net = info['network']

    def on_layer_complete(data: Dict[str, Any]) -> None:
        progress = (data['layer'] / data['total_layers']) * 100
        check_jobs[job_id]['status'] = 'checking'
        check_jobs[job_id]['progress'] = progress

        socketio.emit('gradient_check_update', {
            'job_id': job_id,
            'network_id': network_id,
            'layer': data['layer'],
            'total_layers': data['total_layers'],
            'progress': progress
        })

        # Let other greenlets run between layers
        gevent.sleep(0)

    try:
        logger.info(f"Starting gradient check {job_id} on network {network_id}")

        analytic = gradient(net, inputs, targets, error_mode)
        numeric = numerical_gradient(
            net, inputs, targets, error_mode,
            epsilon=epsilon, callback=on_layer_complete
        )

        result = {
            'max_abs_error': float(np.max(np.abs(analytic - numeric))),
            'max_rel_error': max_relative_error(analytic, numeric),
        }
        check_jobs[job_id].update(status='completed', progress=100, **result)

        logger.info(
            f"Gradient check {job_id} completed: "
            f"max relative error {result['max_rel_error']:.3e}"
        )

        socketio.emit('gradient_check_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'progress': 100,
            **result
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Gradient check failed for job {job_id}: {e}")

        check_jobs[job_id]['status'] = 'failed'
        check_jobs[job_id]['error'] = str(e)

        socketio.emit('gradient_check_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


# ============================================================================
# ERROR HANDLING
# ============================================================================

@app.errorhandler(PacknetError)
def handle_packnet_error(error: PacknetError):
    """Malformed architectures, vectors and streams are client errors."""
    logger.warning(f"Rejected request: {error}")
    return jsonify({'error': str(error), 'context': error.context}), 400


def _not_found(network_id: str):
    logger.warning(f"Request for non-existent network: {network_id}")
    return jsonify({'error': 'Network not found'}), 404


def _json_body() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and statistics."""
    active_statuses = ('pending', 'checking')
    active_checks = sum(
        1 for job in check_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'gradient_checks': active_checks
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Build a new network.

    Request body:
        {
            'neuron_counts': [4, 3, 1],
            'activations': ['relu', 'sigmoid'],
            'seed': 0               # optional, SplitMix64 weight seed
        }

    Returns:
        JSON with network_id and architecture
    """
    data = _json_body()
    neuron_counts = data.get('neuron_counts')
    activations = data.get('activations')

    if not isinstance(neuron_counts, list) or not isinstance(activations, list):
        logger.warning(f"Invalid architecture requested: {neuron_counts}, {activations}")
        return jsonify({
            'error': 'neuron_counts and activations must be lists'
        }), 400

    seed = data.get('seed', 0)
    if not isinstance(seed, int) or isinstance(seed, bool) or seed < 0:
        return jsonify({'error': 'seed must be a non-negative integer'}), 400

    net = Network(neuron_counts, activations)
    randomize(net, seed, inputs=False)

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'trained': False,
        'loss': None
    }

    logger.info(f"Created network {network_id}: {net}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture(),
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['network'].architecture(),
            'trained': info['trained'],
            'loss': info['loss'],
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    saved_only = []
    for net in list_saved_networks(MODEL_DIR):
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    """Return the architecture and weights of an in-memory network."""
    if network_id not in active_networks:
        return _not_found(network_id)

    info = active_networks[network_id]
    net = info['network']

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture(),
        'weights': net.weights.tolist(),
        'trained': info['trained'],
        'loss': info['loss']
    }), 200


@app.route('/api/networks/<network_id>/forward', methods=['POST'])
def forward_endpoint(network_id: str):
    """
    Run a forward pass.

    Request body (optional):
        {'inputs': [...]}   # omitted: rerun on the resident inputs
    """
    if network_id not in active_networks:
        return _not_found(network_id)

    data = _json_body()
    net = active_networks[network_id]['network']
    outputs = forward(net, data.get('inputs'))

    return jsonify({
        'network_id': network_id,
        'outputs': outputs.tolist()
    }), 200


@app.route('/api/networks/<network_id>/gradient', methods=['POST'])
def gradient_endpoint(network_id: str):
    """
    Compute the per-weight gradient for one sample.

    Request body:
        {
            'inputs': [...],          # optional
            'targets': [...],
            'error_mode': 'squared'   # or 'absolute'
        }
    """
    if network_id not in active_networks:
        return _not_found(network_id)

    data = _json_body()
    if 'targets' not in data:
        return jsonify({'error': 'targets is required'}), 400

    net = active_networks[network_id]['network']
    mode = resolve_error_mode(data.get('error_mode', 'squared'))
    grad = gradient(net, data.get('inputs'), data['targets'], mode)

    return jsonify({
        'network_id': network_id,
        'error_mode': mode.name.lower(),
        'outputs': net.outputs.tolist(),
        'loss': loss(net, data['targets'], mode),
        'gradient': grad.tolist()
    }), 200


@app.route('/api/networks/<network_id>/gradient_check', methods=['POST'])
def start_gradient_check(network_id: str):
    """
    Start a finite-difference gradient check in the background.

    Request body:
        {
            'inputs': [...],          # optional
            'targets': [...],
            'error_mode': 'squared',
            'epsilon': 1e-6
        }
    """
    if network_id not in active_networks:
        return _not_found(network_id)

    data = _json_body()
    if 'targets' not in data:
        return jsonify({'error': 'targets is required'}), 400

    epsilon = data.get('epsilon', 1e-6)
    if not isinstance(epsilon, (int, float)) or epsilon <= 0:
        return jsonify({'error': 'epsilon must be a positive number'}), 400

    mode = resolve_error_mode(data.get('error_mode', 'squared'))

    job_id = str(uuid.uuid4())
    check_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0
    }

    logger.info(f"Created gradient check {job_id} for network {network_id}")

    socketio.start_background_task(
        gradient_check_task,
        network_id, job_id, data.get('inputs'), data['targets'], mode, float(epsilon)
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'check_started'
    }), 202


@app.route('/api/gradient_check/<job_id>', methods=['GET'])
def get_gradient_check(job_id: str):
    """Get the current status of a gradient-check job."""
    if job_id not in check_jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return jsonify({'error': 'Gradient check job not found'}), 404
    return jsonify(check_jobs[job_id]), 200


@app.route('/api/networks/<network_id>/weights', methods=['PUT'])
def put_weights(network_id: str):
    """
    Replace the weights of a network.

    Request body:
        {'weights': [...], 'loss': 0.01}   # loss optional

    Answers 409 while a gradient check on the network is pending or running.
    """
    if network_id not in active_networks:
        return _not_found(network_id)

    data = _json_body()
    if 'weights' not in data:
        return jsonify({'error': 'weights is required'}), 400

    busy = [
        job_id for job_id, job in check_jobs.items()
        if job['network_id'] == network_id and job['status'] in ('pending', 'checking')
    ]
    if busy:
        return jsonify({
            'error': f'Gradient check {busy[0]} is running on network {network_id}',
            'job_id': busy[0]
        }), 409

    info = active_networks[network_id]
    info['network'].set_weights(data['weights'])
    info['trained'] = True
    info['loss'] = data.get('loss')

    logger.info(f"Updated weights of network {network_id}")

    return jsonify({
        'network_id': network_id,
        'weight_count': info['network'].weight_count,
        'status': 'updated'
    }), 200


@app.route('/api/networks/<network_id>/save', methods=['POST'])
def save_endpoint(network_id: str):
    """Save an in-memory network to the database."""
    if network_id not in active_networks:
        return _not_found(network_id)

    info = active_networks[network_id]
    if not save_network(info['network'], network_id, model_dir=MODEL_DIR,
                        trained=info['trained'], loss=info['loss']):
        return jsonify({'error': 'Failed to save network'}), 500

    info['saved'] = True
    return jsonify({'network_id': network_id, 'status': 'saved'}), 200


@app.route('/api/networks/<network_id>/load', methods=['POST'])
def load_endpoint(network_id: str):
    """Load a saved network into memory, replacing any in-memory copy."""
    metadata = get_network_metadata(network_id, MODEL_DIR)
    net = load_network(network_id, MODEL_DIR) if metadata else None
    if net is None:
        return _not_found(network_id)

    active_networks[network_id] = {
        'network': net,
        'trained': metadata['trained'],
        'loss': metadata['loss'],
        'saved': True
    }

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture(),
        'status': 'loaded'
    }), 200


@app.route('/api/networks/<network_id>/export', methods=['GET'])
def export_network(network_id: str):
    """Download the codec stream of a network (legacy layout unless ?versioned=1)."""
    if network_id not in active_networks:
        return _not_found(network_id)

    versioned = request.args.get('versioned', '0') in ('1', 'true')
    data = codec.dumps(active_networks[network_id]['network'], versioned=versioned)

    return Response(
        data,
        mimetype='application/octet-stream',
        headers={'Content-Disposition': f'attachment; filename={network_id}.pknt'}
    )


@app.route('/api/networks/import', methods=['POST'])
def import_network():
    """Create an in-memory network from a codec stream in the request body."""
    net = codec.loads(request.get_data())

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'trained': True,
        'loss': None
    }

    logger.info(f"Imported network {network_id}: {net}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.architecture(),
        'status': 'imported'
    }), 201


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = False
    if network_id in active_networks:
        active_networks.pop(network_id)['network'].destroy()
        deleted_from_memory = True

    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        return _not_found(network_id)

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    saved_ids = [net['network_id'] for net in list_saved_networks(MODEL_DIR)]
    all_network_ids = list(set(active_networks) | set(saved_ids))

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0

    for network_id in all_network_ids:
        if network_id in active_networks:
            active_networks.pop(network_id)['network'].destroy()
            deleted_from_memory_count += 1

        if network_id in saved_ids and delete_network(network_id, MODEL_DIR):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of saved networks older than specified days.

    Request body (optional):
        {'days': 2}
    """
    data = _json_body()
    days = data.get('days', CLEANUP_DAYS)

    if not isinstance(days, (int, float)) or isinstance(days, bool) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=days, model_dir=MODEL_DIR)
    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    if deleted_count > 0:
        sync_active_networks()

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days
    }), 200


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def create_weights_image(weights: np.ndarray, title: str) -> str:
    """
    Render a weight matrix as a base64-encoded PNG heatmap.

    Args:
        weights: ``(next_count, neuron_count + 1)`` matrix, bias column last
        title: Figure title

    Returns:
        Base64-encoded PNG image string
    """
    fig, ax = plt.subplots(figsize=(4, 3))
    image = ax.imshow(weights, cmap='coolwarm', aspect='auto')
    fig.colorbar(image, ax=ax)
    ax.set_title(title)
    ax.set_xlabel('input neuron (last column: bias)')
    ax.set_ylabel('output neuron')

    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight')
    plt.close(fig)

    return base64.b64encode(buffer.getvalue()).decode('utf-8')


@app.route('/api/networks/<network_id>/layers/<int:layer>/weights_image', methods=['GET'])
def get_weights_image(network_id: str, layer: int):
    """Return a heatmap of the weights leaving ``layer``."""
    if network_id not in active_networks:
        return _not_found(network_id)

    net = active_networks[network_id]['network']
    if layer >= net.layer_count - 1:
        return jsonify({
            'error': f'layer must be in 0..{net.layer_count - 2}'
        }), 400

    matrix = net.layers[layer].weight_matrix
    return jsonify({
        'network_id': network_id,
        'layer': layer,
        'shape': list(matrix.shape),
        'image_data': create_weights_image(matrix, f"layer {layer} -> {layer + 1}")
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

def startup() -> None:
    """Restore saved networks and start the retention task."""
    reload_saved_networks()
    start_cleanup_task()


if __name__ == '__main__':
    is_cloud = bool(os.environ.get('RAILWAY_STATIC_URL') or os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    startup()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
