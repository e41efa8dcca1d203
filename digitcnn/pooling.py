"""
pooling.py
~~~~~~~~~~

Max pooling over (C, H, W) volumes with an explicit index cache.

The forward pass returns, next to the pooled values, the flattened
in-window offset (ph * pool_size + pw) of the maximum for every output
cell. The backward pass consumes exactly that array, so the pairing of a
forward call with its backward call is carried by the caller instead of
hidden layer state.
"""

from typing import Tuple

import numpy as np

from .convolution import window_view


def max_pool_forward(
    volume: np.ndarray,
    pool_size: int,
    stride: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Max pool every channel of a volume.

    Ties keep the first maximum in row-major window order.

    Args:
        volume: Input (C, H, W)
        pool_size: Side of the square window
        stride: Step between windows

    Returns:
        (output, indices), both shaped (C, OH, OW)
    """
    channels, height, width = volume.shape
    out_h = (height - pool_size) // stride + 1
    out_w = (width - pool_size) // stride + 1

    output = np.full((channels, out_h, out_w), -np.inf)
    indices = np.zeros((channels, out_h, out_w), dtype=np.int64)

    for ph in range(pool_size):
        for pw in range(pool_size):
            window = window_view(volume, ph, pw, out_h, out_w, stride)
            better = window > output
            output[better] = window[better]
            indices[better] = ph * pool_size + pw

    return output, indices


def max_pool_backward(
    grad_output: np.ndarray,
    indices: np.ndarray,
    pool_size: int,
    stride: int,
    input_shape: Tuple[int, int, int]
) -> np.ndarray:
    """
    Route pooled gradients back to the positions that won the forward pass.

    Every other position in a window receives nothing from that window;
    overlapping windows (stride < pool_size) accumulate.

    Args:
        grad_output: Gradient with respect to the pooled output (C, OH, OW)
        indices: Index cache produced by max_pool_forward for the same input
        pool_size: Window size used in the forward pass
        stride: Stride used in the forward pass
        input_shape: Shape (C, H, W) of the forward input

    Returns:
        Gradient with respect to the forward input
    """
    if grad_output.shape != indices.shape:
        raise ValueError(
            f"Gradient shape {grad_output.shape} does not match index cache "
            f"shape {indices.shape}"
        )

    out_h, out_w = grad_output.shape[1:]
    grad_input = np.zeros(input_shape)

    for ph in range(pool_size):
        for pw in range(pool_size):
            routed = np.where(indices == ph * pool_size + pw, grad_output, 0.0)
            # Positions within one offset slice are distinct, so += is safe
            window_view(grad_input, ph, pw, out_h, out_w, stride)[...] += routed

    return grad_input
