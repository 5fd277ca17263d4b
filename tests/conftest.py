"""
conftest.py
~~~~~~~~~~~

Shared fixtures for the packnet test suite.
"""

import os
import sys

import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from packnet import Activation, Network
from packnet.initializer import randomize


@pytest.fixture
def scenario_network():
    """[2, 2, 1] relu/sigmoid network with all weights 1 and all biases 0."""
    net = Network([2, 2, 1], [Activation.RELU, Activation.SIGMOID])
    for layer in net.layers[:-1]:
        matrix = layer.weight_matrix
        matrix[:, :-1] = 1.0
        matrix[:, -1] = 0.0
    return net


@pytest.fixture
def random_network():
    """Seeded [4, 3, 2, 1] network using all three activations."""
    net = Network([4, 3, 2, 1], [Activation.LINEAR, Activation.RELU, Activation.SIGMOID])
    randomize(net, seed=0, inputs=True)
    return net


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)
