"""
conftest.py
~~~~~~~~~~~

Shared fixtures. Most tests use a scaled-down structure (8x8 inputs,
a few channels) so full forward/backward passes stay fast.
"""

import os
import sys

import numpy as np
import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from digitcnn.layers import ConvLayerConfig, FCLayerConfig
from digitcnn.network import Network, NetworkStructure

SMALL_IMAGE_SIZE = 8


def small_structure(learning_rate: float = 0.01) -> NetworkStructure:
    """1x8x8 input -> 2x8x8 -> 2x4x4 -> 3x4x4 -> 3x2x2 -> 8 -> 10."""
    return NetworkStructure(
        learning_rate=learning_rate,
        conv1=ConvLayerConfig(1, 2, 3, stride=1, padding=1),
        conv2=ConvLayerConfig(2, 3, 3, stride=1, padding=1),
        fc1=FCLayerConfig(3 * 2 * 2, 8),
        fc2=FCLayerConfig(8, 10),
    )


@pytest.fixture
def small_network():
    return Network(structure=small_structure(), seed=7)


@pytest.fixture
def small_image():
    rng = np.random.default_rng(3)
    return rng.random((1, SMALL_IMAGE_SIZE, SMALL_IMAGE_SIZE))
