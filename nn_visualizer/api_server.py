"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for live digit
recognition.

This module provides endpoints for:
- Registering trained network descriptors and listing them
- Running predictions on drawn or uploaded pixels
- Stepping through labelled sample images (next, previous, next wrong)
- Streaming predictions for a drawing as it is made, via WebSockets

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent as the default async mode
- SQLite for descriptor persistence
"""

import os
import sys
import uuid
import base64
import logging
import binascii
from io import BytesIO
from typing import Dict, Any, List, Optional, Tuple

import numpy as np
from flask import Flask, request, jsonify, send_from_directory
from flask_cors import CORS
from flask_socketio import SocketIO, emit
from PIL import Image, UnidentifiedImageError

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Local imports
from nn_visualizer.dataset import SampleSet
from nn_visualizer.inputs import (
    blank_input,
    drawing_input,
    image_shape,
    normalize_intensity,
)
from nn_visualizer.network import NetworkDescriptor, predict
from nn_visualizer.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    read_descriptor_file,
)

# ============================================================================
# CONFIGURATION
# ============================================================================

MODEL_DIR = os.getenv('NN_MODEL_DIR', 'models')
NETWORK_PATH = os.getenv('NN_NETWORK_PATH')
SAMPLES_PATH = os.getenv('NN_SAMPLES_PATH', os.path.join('data', 'samples.npz'))
ASYNC_MODE = os.getenv('SOCKETIO_ASYNC_MODE', 'gevent')
DEFAULT_NETWORK_ID = 'default'

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
        logging.getLogger('nn_visualizer').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__, static_folder='static')
CORS(app, resources={r"/*": {"origins": "*"}})  # Allow requests from any origin

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO carries predictions back while the user is still drawing
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode=ASYNC_MODE,
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Descriptors available for inference: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Labelled sample images - loaded once at startup
sample_set: Optional[SampleSet] = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_sample_data(path: str = SAMPLES_PATH) -> None:
    """
    Load the labelled sample images into the global sample set.

    A missing file is not fatal: drawing still works, only the sample
    endpoints report that no data is available.
    """
    global sample_set

    if not os.path.exists(path):
        logger.warning(f"Sample data not found at {path}; sample browsing disabled")
        return

    logger.info(f"Loading sample data from {path}...")
    try:
        sample_set = SampleSet.from_npz(path)
    except Exception as e:
        logger.exception(f"Error loading sample data: {e}")
        raise


def register_network(network_id: str, descriptor: NetworkDescriptor,
                     accuracy: Optional[float] = None) -> Dict[str, Any]:
    """Make a descriptor available for inference under ``network_id``."""
    info = {
        'network': descriptor,
        'structure': list(descriptor.structure),
        'accuracy': accuracy
    }
    active_networks[network_id] = info
    return info


def reload_saved_networks() -> None:
    """
    Reload all saved descriptors from the database into memory.

    Called at startup so descriptors registered before a restart are
    available again.
    """
    saved_networks = list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is not None:
            register_network(network_id, net, net_info['accuracy'])
            loaded_count += 1
        else:
            logger.warning(f"Failed to load network {network_id}")

    logger.info(f"Reloaded {loaded_count} network(s) from database")


def load_default_network(path: Optional[str] = NETWORK_PATH) -> None:
    """Register the descriptor file named by NN_NETWORK_PATH, if any."""
    if not path:
        return

    descriptor = read_descriptor_file(path)
    accuracy = None
    if sample_set is not None and sample_set.width == descriptor.input_size:
        accuracy = sample_set.accuracy(descriptor)
        logger.info(f"Default network accuracy on samples: {accuracy:.2%}")
    register_network(DEFAULT_NETWORK_ID, descriptor, accuracy)


load_sample_data()
reload_saved_networks()
load_default_network()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def create_digit_image(image_data: np.ndarray, predicted: int,
                       label: Optional[int] = None) -> str:
    """
    Create a base64-encoded PNG image of an input vector.

    Args:
        image_data: Normalized input vector
        predicted: The class the network predicted
        label: The correct class, when known

    Returns:
        Base64-encoded PNG image string
    """
    title = f"Predicted: {predicted}"
    if label is not None:
        title += f" | Label: {label}"

    plt.figure(figsize=(3, 3))
    plt.imshow(np.asarray(image_data).reshape(image_shape(len(image_data))),
               cmap='gray', vmin=0.0, vmax=1.0)
    plt.title(title)
    plt.axis('off')

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


def decode_drawing(image_b64: str, width: int) -> np.ndarray:
    """
    Turn a base64 PNG snapshot of the drawing surface into an input vector.

    Accepts an optional ``data:image/png;base64,`` prefix as produced by
    ``canvas.toDataURL()``.
    """
    if not isinstance(image_b64, str):
        raise ValueError("'image' must be a base64 string")
    if ',' in image_b64 and image_b64.startswith('data:'):
        image_b64 = image_b64.split(',', 1)[1]
    try:
        raw = base64.b64decode(image_b64, validate=True)
        with Image.open(BytesIO(raw)) as img:
            bitmap = np.asarray(img.convert('RGBA'))
    except (binascii.Error, UnidentifiedImageError) as e:
        raise ValueError(f"image is not a valid base64 PNG: {e}") from e
    return drawing_input(bitmap, width)


def input_from_payload(data: Dict[str, Any], width: int) -> np.ndarray:
    """
    Build an input vector from a request body.

    Exactly one of ``input`` (normalized floats), ``pixels`` (0-255 per
    pixel) or ``image`` (base64 PNG) is expected.

    Raises:
        ValueError: If none or several sources are given, or they are invalid
    """
    sources = [key for key in ('input', 'pixels', 'image') if key in data]
    if len(sources) != 1:
        raise ValueError("provide exactly one of 'input', 'pixels' or 'image'")

    source = sources[0]
    if source == 'image':
        return decode_drawing(data['image'], width)

    try:
        values = np.asarray(data[source], dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValueError(f"'{source}' must be a list of numbers") from e
    if source == 'pixels':
        return normalize_intensity(values)
    return values


def prediction_payload(output: np.ndarray, predicted: int) -> Dict[str, Any]:
    return {
        'predicted': predicted,
        'output': array_to_float_list(output),
        'scores': {str(i): float(v) for i, v in enumerate(output)}
    }


def sample_payload(network_id: str, net: NetworkDescriptor,
                   index: int) -> Dict[str, Any]:
    """Prediction details and rendered image for one sample."""
    index = sample_set.wrap_index(index)
    x = sample_set.sample(index)
    output, predicted = predict(x, net)
    label = sample_set.label(index)

    return {
        'network_id': network_id,
        'index': index,
        'label': label,
        'correct': predicted == label,
        'image_data': create_digit_image(x, predicted, label),
        **prediction_payload(output, predicted)
    }


def _lookup(network_id: str) -> Tuple[Optional[NetworkDescriptor], Any]:
    """Return the descriptor, or an error response when it is unknown."""
    if network_id not in active_networks:
        logger.warning(f"Request for non-existent network: {network_id}")
        return None, (jsonify({'error': 'Network not found'}), 404)
    return active_networks[network_id]['network'], None


def _check_samples(net: NetworkDescriptor):
    if sample_set is None:
        logger.error("Sample data not loaded")
        return jsonify({'error': 'Sample data not available'}), 500
    if sample_set.width != net.input_size:
        return jsonify({
            'error': f'Samples have {sample_set.width} pixels, '
                     f'network expects {net.input_size}'
        }), 400
    return None


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and statistics."""
    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'samples': len(sample_set) if sample_set is not None else 0
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Register a trained network.

    Request body:
        {
            'structure': [784, 30, 10],
            'weights': [...],
            'biases': [...],
            'network_id': 'optional-id'
        }

    Returns:
        JSON with network_id, structure, and status
    """
    data = request.get_json(silent=True) or {}
    network_id = data.get('network_id') or str(uuid.uuid4())

    if not isinstance(network_id, str):
        return jsonify({'error': 'network_id must be a string'}), 400

    try:
        descriptor = NetworkDescriptor(
            data.get('structure', []),
            data.get('weights', []),
            data.get('biases', [])
        )
    except ValueError as e:
        logger.warning(f"Rejected malformed network {network_id}: {e}")
        return jsonify({'error': f'Invalid network: {e}'}), 400

    try:
        accuracy = None
        if sample_set is not None and sample_set.width == descriptor.input_size:
            accuracy = sample_set.accuracy(descriptor)

        register_network(network_id, descriptor, accuracy)
        saved = save_network(descriptor, network_id, MODEL_DIR, accuracy=accuracy)

    except Exception as e:
        logger.exception(f"Error registering network {network_id}: {e}")
        active_networks.pop(network_id, None)
        return jsonify({'error': f'Failed to register network: {str(e)}'}), 500

    logger.info(
        f"Registered network {network_id} with structure "
        f"{list(descriptor.structure)}, saved={saved}"
    )

    return jsonify({
        'network_id': network_id,
        'structure': list(descriptor.structure),
        'accuracy': accuracy,
        'saved': saved,
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        {
            'network_id': nid,
            'structure': info['structure'],
            'accuracy': info['accuracy'],
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    # Get saved networks, excluding duplicates already in memory
    in_memory_ids = set(active_networks.keys())
    saved_only = []
    for net in list_saved_networks(MODEL_DIR):
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    """Return structure and accuracy of one network."""
    net, error = _lookup(network_id)
    if error:
        return error

    info = active_networks[network_id]
    return jsonify({
        'network_id': network_id,
        'structure': info['structure'],
        'accuracy': info['accuracy'],
        'weight_count': int(net.weights.size),
        'bias_count': int(net.biases.size)
    }), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = False
    if network_id in active_networks:
        del active_networks[network_id]
        deleted_from_memory = True

    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict_endpoint(network_id: str):
    """
    Run the network on one input.

    Request body (exactly one key):
        {'input': [0.0, ...]}     # normalized floats
        {'pixels': [0, 255, ...]}  # 8-bit intensities
        {'image': 'iVBORw0...'}    # base64 PNG of the drawing surface

    Returns:
        JSON with predicted class, raw output and per-class scores
    """
    net, error = _lookup(network_id)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    try:
        x = input_from_payload(data, net.input_size)
        output, predicted = predict(x, net)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.exception(f"Error predicting with network {network_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({
        'network_id': network_id,
        **prediction_payload(output, predicted)
    }), 200


@app.route('/api/networks/<network_id>/clear', methods=['POST'])
def clear_endpoint(network_id: str):
    """Prediction for an empty drawing."""
    net, error = _lookup(network_id)
    if error:
        return error

    output, predicted = predict(blank_input(net.input_size), net)
    return jsonify({
        'network_id': network_id,
        **prediction_payload(output, predicted)
    }), 200


@app.route('/api/networks/<network_id>/samples/<int(signed=True):index>',
           methods=['GET'])
def get_sample(network_id: str, index: int):
    """
    Return one labelled sample with the network's prediction.

    The index wraps around the sample set.
    """
    net, error = _lookup(network_id)
    if error:
        return error
    error = _check_samples(net)
    if error:
        return error

    return jsonify(sample_payload(network_id, net, index)), 200


@app.route('/api/networks/<network_id>/samples/<int(signed=True):index>/<direction>',
           methods=['GET'])
def step_sample(network_id: str, index: int, direction: str):
    """
    Move from sample ``index`` and return the sample reached.

    ``direction`` is ``next``, ``prev`` or ``next_wrong`` (the next sample
    the network misclassifies).
    """
    net, error = _lookup(network_id)
    if error:
        return error
    error = _check_samples(net)
    if error:
        return error

    if direction == 'next':
        target = sample_set.next_index(index)
    elif direction == 'prev':
        target = sample_set.previous_index(index)
    elif direction == 'next_wrong':
        target = sample_set.next_misclassified(net, index)
        if target is None:
            return jsonify({
                'error': 'Network classifies every sample correctly'
            }), 404
    else:
        return jsonify({'error': f'Unknown direction: {direction}'}), 400

    return jsonify(sample_payload(network_id, net, target)), 200


# ============================================================================
# WEBSOCKET EVENTS
# ============================================================================

@socketio.on('draw')
def handle_draw(data: Dict[str, Any]):
    """
    Predict on the current drawing.

    Every stroke sends the full drawing (``pixels`` or ``image``) and gets
    a fresh prediction back; nothing is kept between events.
    """
    data = data or {}
    network_id = data.get('network_id', DEFAULT_NETWORK_ID)
    if network_id not in active_networks:
        emit('prediction_error', {'network_id': network_id,
                                  'error': 'Network not found'})
        return

    net = active_networks[network_id]['network']
    try:
        x = input_from_payload(data, net.input_size)
        output, predicted = predict(x, net)
    except ValueError as e:
        emit('prediction_error', {'network_id': network_id, 'error': str(e)})
        return
    except Exception as e:
        logger.exception(f"Error predicting drawing with network {network_id}: {e}")
        emit('prediction_error', {'network_id': network_id,
                                  'error': 'Internal server error'})
        return

    emit('prediction', {'network_id': network_id,
                        **prediction_payload(output, predicted)})


@socketio.on('clear')
def handle_clear(data: Optional[Dict[str, Any]] = None):
    """Prediction for an empty drawing."""
    network_id = (data or {}).get('network_id', DEFAULT_NETWORK_ID)
    if network_id not in active_networks:
        emit('prediction_error', {'network_id': network_id,
                                  'error': 'Network not found'})
        return

    net = active_networks[network_id]['network']
    output, predicted = predict(blank_input(net.input_size), net)
    emit('prediction', {'network_id': network_id,
                        **prediction_payload(output, predicted)})


# ============================================================================
# STATIC FILE SERVING
# ============================================================================

@app.route('/')
def index():
    """Serve the main frontend page."""
    return send_from_directory(app.static_folder, 'index.html')


@app.route('/<path:path>')
def serve_static(path: str):
    """Serve static files (CSS, JS, images, etc.)."""
    return send_from_directory(app.static_folder, path)

# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    # Create static directory if it doesn't exist
    static_dir = os.path.join(os.path.dirname(__file__), 'static')
    if not os.path.exists(static_dir):
        os.makedirs(static_dir)
        logger.info(f"Created static directory: {static_dir}")

    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
