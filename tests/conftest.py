"""
conftest.py
~~~~~~~~~~~

Shared fixtures and environment for the test suite.
"""

import os
import sys
import tempfile

import numpy as np
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# The API server reads its configuration at import time
_model_dir = tempfile.mkdtemp(prefix='nn_visualizer_models_')
os.environ['NN_MODEL_DIR'] = _model_dir
os.environ['NN_SAMPLES_PATH'] = os.path.join(_model_dir, 'missing_samples.npz')
os.environ['SOCKETIO_ASYNC_MODE'] = 'threading'
os.environ.pop('NN_NETWORK_PATH', None)

from nn_visualizer.network import NetworkDescriptor


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def adder_network():
    """Single neuron summing two inputs: structure [2, 1]."""
    return NetworkDescriptor([2, 1], [1.0, 1.0], [0.0])


@pytest.fixture
def brightness_network():
    """
    Two-class network over 2x2 images.

    Class 0 scores the darkness of the image, class 1 its brightness, so
    mostly-dark images are predicted 0 and mostly-bright images 1.
    """
    return NetworkDescriptor(
        [4, 2],
        [-1.0, -1.0, -1.0, -1.0,
         1.0, 1.0, 1.0, 1.0],
        [2.0, -2.0]
    )


@pytest.fixture
def random_network():
    """A deeper network with random parameters, shaped like the digit model."""
    rng = np.random.default_rng(0)
    structure = [16, 8, 6, 10]
    weight_count = sum(a * b for a, b in zip(structure, structure[1:]))
    return NetworkDescriptor(
        structure,
        rng.normal(size=weight_count),
        rng.normal(size=sum(structure[1:]))
    )
