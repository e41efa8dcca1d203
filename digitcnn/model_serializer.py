"""
model_serializer.py
~~~~~~~~~~~~~~~~~~~

Binary model format for Network weights.

Layout (big-endian throughout):

    int32   magic ("DCNN")
    int32   version
    float64 learning rate
    int32 x 5  conv1 in_channels, out_channels, kernel_size, stride, padding
    int32 x 5  conv2 (same fields)
    int32 x 2  fc1 input_size, output_size
    int32 x 2  fc2 input_size, output_size
    then for conv1, conv2, fc1, fc2:
        weights: one int32 per dimension, then float64 values (row-major)
        bias:    int32 length, then float64 values

Optimizer moments are not stored; a loaded network starts with fresh Adam
state.
"""

import io
import logging
import os
import struct
from typing import BinaryIO, List, Tuple

import numpy as np

from .layers import ConvLayerConfig, FCLayerConfig
from .network import Network, NetworkStructure

logger = logging.getLogger(__name__)

MAGIC_NUMBER = 0x44434E4E  # "DCNN"
VERSION = 1

_INT = struct.Struct('>i')
_DOUBLE = struct.Struct('>d')
_VALUE_DTYPE = np.dtype('>f8')


class ModelFormatError(IOError):
    """Raised when a model file is malformed or has an unsupported version."""


# ----------------------------------------------------------------------------
# Writing
# ----------------------------------------------------------------------------

def _write_int(out: BinaryIO, value: int) -> None:
    out.write(_INT.pack(value))


def _write_array(out: BinaryIO, array: np.ndarray) -> None:
    for dim in array.shape:
        _write_int(out, dim)
    out.write(np.ascontiguousarray(array, dtype=_VALUE_DTYPE).tobytes())


def _write_structure(out: BinaryIO, structure: NetworkStructure) -> None:
    out.write(_DOUBLE.pack(structure.learning_rate))
    for conv in (structure.conv1, structure.conv2):
        for value in (conv.in_channels, conv.out_channels, conv.kernel_size,
                      conv.stride, conv.padding):
            _write_int(out, value)
    for fc in (structure.fc1, structure.fc2):
        _write_int(out, fc.input_size)
        _write_int(out, fc.output_size)


def write_model(network: Network, out: BinaryIO) -> None:
    """Write a network to a binary stream."""
    _write_int(out, MAGIC_NUMBER)
    _write_int(out, VERSION)
    _write_structure(out, network.structure)
    for layer in network.layers:
        weights, bias = layer.parameters()
        _write_array(out, weights)
        _write_array(out, bias)


def encode_model(network: Network) -> bytes:
    """Serialize a network to bytes."""
    buffer = io.BytesIO()
    write_model(network, buffer)
    return buffer.getvalue()


def save_model(network: Network, filepath: str) -> None:
    """
    Save a network to a file, creating parent directories as needed.

    Args:
        network: Network to save
        filepath: Destination path

    Raises:
        OSError: If the file cannot be written
    """
    parent = os.path.dirname(filepath)
    if parent and not os.path.exists(parent):
        os.makedirs(parent)

    with open(filepath, 'wb') as f:
        write_model(network, f)

    logger.info(f"Model saved to: {filepath}")


# ----------------------------------------------------------------------------
# Reading
# ----------------------------------------------------------------------------

def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ModelFormatError(
            f"Unexpected end of model data: wanted {size} bytes, got {len(data)}"
        )
    return data


def _read_int(stream: BinaryIO) -> int:
    return _INT.unpack(_read_exact(stream, _INT.size))[0]


def _read_structure(stream: BinaryIO) -> NetworkStructure:
    learning_rate = _DOUBLE.unpack(_read_exact(stream, _DOUBLE.size))[0]
    conv1 = ConvLayerConfig(*(_read_int(stream) for _ in range(5)))
    conv2 = ConvLayerConfig(*(_read_int(stream) for _ in range(5)))
    fc1 = FCLayerConfig(_read_int(stream), _read_int(stream))
    fc2 = FCLayerConfig(_read_int(stream), _read_int(stream))

    if not np.isfinite(learning_rate) or learning_rate <= 0:
        raise ModelFormatError(f"Invalid learning rate: {learning_rate}")
    for config in (conv1, conv2):
        if min(config.in_channels, config.out_channels, config.kernel_size,
               config.stride) <= 0 or config.padding < 0:
            raise ModelFormatError(f"Invalid convolution structure: {config}")
    for config in (fc1, fc2):
        if min(config.input_size, config.output_size) <= 0:
            raise ModelFormatError(f"Invalid dense structure: {config}")

    return NetworkStructure(learning_rate, conv1, conv2, fc1, fc2)


def _read_array(stream: BinaryIO, expected: Tuple[int, ...]) -> np.ndarray:
    shape = tuple(_read_int(stream) for _ in expected)
    if shape != expected:
        raise ModelFormatError(
            f"Stored array shape {shape} does not match declared structure "
            f"{expected}"
        )
    count = int(np.prod(expected))
    data = _read_exact(stream, count * _VALUE_DTYPE.itemsize)
    return np.frombuffer(data, dtype=_VALUE_DTYPE).astype(np.float64).reshape(expected)


def _expected_shapes(structure: NetworkStructure) -> List[Tuple[Tuple[int, ...], Tuple[int, ...]]]:
    shapes = []
    for conv in (structure.conv1, structure.conv2):
        shapes.append((
            (conv.out_channels, conv.in_channels, conv.kernel_size, conv.kernel_size),
            (conv.out_channels,),
        ))
    for fc in (structure.fc1, structure.fc2):
        shapes.append(((fc.output_size, fc.input_size), (fc.output_size,)))
    return shapes


def read_model(stream: BinaryIO, **network_kwargs) -> Network:
    """
    Read a network from a binary stream.

    The header, structure and every parameter array are read and checked
    before a Network is constructed, so a malformed stream never yields a
    partially loaded network.

    Args:
        stream: Binary stream positioned at the magic number
        **network_kwargs: Extra Network arguments (seed, executor)

    Returns:
        A new Network carrying the stored weights

    Raises:
        ModelFormatError: On a bad magic number, unsupported version,
            inconsistent shapes or truncated data
    """
    magic = _read_int(stream)
    if magic != MAGIC_NUMBER:
        raise ModelFormatError(
            f"Invalid file format (magic 0x{magic & 0xFFFFFFFF:08X})"
        )

    version = _read_int(stream)
    if version != VERSION:
        raise ModelFormatError(f"Unsupported version: {version}")

    structure = _read_structure(stream)

    params = []
    for weight_shape, bias_shape in _expected_shapes(structure):
        weights = _read_array(stream, weight_shape)
        bias = _read_array(stream, bias_shape)
        params.append((weights, bias))

    if stream.read(1):
        raise ModelFormatError("Trailing data after model weights")

    network = Network(structure=structure, **network_kwargs)
    for layer, layer_params in zip(network.layers, params):
        layer.load_parameters(layer_params)
    return network


def decode_model(data: bytes, **network_kwargs) -> Network:
    """Deserialize a network from bytes produced by encode_model."""
    return read_model(io.BytesIO(data), **network_kwargs)


def load_model(filepath: str, **network_kwargs) -> Network:
    """
    Load a network from a file written by save_model.

    Raises:
        FileNotFoundError: If the file does not exist
        ModelFormatError: If the file is malformed
    """
    with open(filepath, 'rb') as f:
        network = read_model(f, **network_kwargs)

    logger.info(f"Model loaded from: {filepath}")
    return network
