"""
tensor_ops.py
~~~~~~~~~~~~~

Stateless numerical helpers shared by the layers and the network:
activations, softmax / cross-entropy and small dense linear algebra.
"""

import numpy as np

# Floor applied to the target probability before taking the log
LOG_EPSILON = 1e-15


def relu(x: np.ndarray) -> np.ndarray:
    """Elementwise max(0, x)."""
    return np.maximum(x, 0.0)


def relu_mask(pre_activation: np.ndarray) -> np.ndarray:
    """Boolean mask of the positions where the pre-activation was positive."""
    return pre_activation > 0


def relu_backward(grad: np.ndarray, pre_activation: np.ndarray) -> np.ndarray:
    """
    Pass the gradient through a ReLU.

    Args:
        grad: Gradient with respect to the ReLU output
        pre_activation: Input that was fed to the ReLU in the forward pass

    Returns:
        Gradient with respect to the ReLU input
    """
    return np.where(relu_mask(pre_activation), grad, 0.0)


def softmax(logits: np.ndarray) -> np.ndarray:
    """Numerically stable softmax over a 1D vector."""
    shifted = np.exp(logits - np.max(logits))
    return shifted / np.sum(shifted)


def cross_entropy(probabilities: np.ndarray, target: int) -> float:
    """Negative log-likelihood of the target class."""
    return float(-np.log(max(probabilities[target], LOG_EPSILON)))


def one_hot(target: int, num_classes: int) -> np.ndarray:
    encoded = np.zeros(num_classes)
    encoded[target] = 1.0
    return encoded


def softmax_cross_entropy_gradient(
    probabilities: np.ndarray,
    target: int
) -> np.ndarray:
    """
    Gradient of cross_entropy(softmax(z), target) with respect to z.

    The softmax Jacobian and the log derivative cancel, leaving p - y.
    """
    return probabilities - one_hot(target, probabilities.shape[0])


def argmax(vector: np.ndarray) -> int:
    return int(np.argmax(vector))


def dot_mv(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Matrix-vector product."""
    return matrix @ vector


def outer(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.outer(a, b)


def transpose(matrix: np.ndarray) -> np.ndarray:
    return matrix.T


def flatten(volume: np.ndarray) -> np.ndarray:
    """Flatten a (C, H, W) volume to a vector in row-major order."""
    return volume.reshape(-1).copy()


def reshape(vector: np.ndarray, channels: int, height: int,
            width: int) -> np.ndarray:
    """Inverse of flatten for a known (C, H, W) shape."""
    return vector.reshape(channels, height, width)
