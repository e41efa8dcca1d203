"""
convolution.py
~~~~~~~~~~~~~~

Single-plane convolution primitives and the sequential multi-channel
convolution used by ConvLayer.

All convolutions here are cross-correlations: the kernel is not flipped.
Planes are 2D arrays (H, W); volumes are 3D arrays (C, H, W); kernels are
4D arrays (out_channels, in_channels, kernel_h, kernel_w).
"""

from typing import Optional

import numpy as np


def output_size(size: int, kernel: int, stride: int, padding: int) -> int:
    """Spatial output size of a strided, padded window operation."""
    return (size + 2 * padding - kernel) // stride + 1


def apply_padding(plane: np.ndarray, padding: int) -> np.ndarray:
    """
    Surround the last two axes of an array with a zero border.

    Works for a single plane (H, W) as well as a volume (C, H, W).
    """
    if padding == 0:
        return plane
    pad_width = [(0, 0)] * (plane.ndim - 2) + [(padding, padding)] * 2
    return np.pad(plane, pad_width, mode='constant')


def window_view(padded: np.ndarray, kh: int, kw: int, out_h: int,
                out_w: int, stride: int) -> np.ndarray:
    """
    View of the input cells that meet kernel offset (kh, kw).

    Element [..., oh, ow] of the result is padded[..., oh*stride + kh,
    ow*stride + kw], so one slice covers every output position at once.
    """
    return padded[...,
                  kh:kh + stride * (out_h - 1) + 1:stride,
                  kw:kw + stride * (out_w - 1) + 1:stride]


def correlate2d(padded_plane: np.ndarray, kernel: np.ndarray,
                stride: int) -> np.ndarray:
    """
    Cross-correlate one already padded plane with one kernel.

    Args:
        padded_plane: Input plane (H, W), padding already applied
        kernel: Kernel plane (KH, KW)
        stride: Step between neighbouring windows

    Returns:
        Output plane of shape ((H - KH) // stride + 1, (W - KW) // stride + 1)
    """
    kernel_h, kernel_w = kernel.shape
    out_h = (padded_plane.shape[0] - kernel_h) // stride + 1
    out_w = (padded_plane.shape[1] - kernel_w) // stride + 1

    result = np.zeros((out_h, out_w))
    for kh in range(kernel_h):
        for kw in range(kernel_w):
            window = window_view(padded_plane, kh, kw, out_h, out_w, stride)
            result += kernel[kh, kw] * window
    return result


def max_pool2d(plane: np.ndarray, pool_size: int, stride: int) -> np.ndarray:
    """Max pool a single plane; windows that do not fit are dropped."""
    out_h = (plane.shape[0] - pool_size) // stride + 1
    out_w = (plane.shape[1] - pool_size) // stride + 1

    result = np.full((out_h, out_w), -np.inf)
    for ph in range(pool_size):
        for pw in range(pool_size):
            window = window_view(plane, ph, pw, out_h, out_w, stride)
            np.maximum(result, window, out=result)
    return result


def convolve3d(
    volume: np.ndarray,
    kernels: np.ndarray,
    bias: Optional[np.ndarray],
    stride: int,
    padding: int
) -> np.ndarray:
    """
    Sequential multi-channel convolution.

    Args:
        volume: Input (C_in, H, W)
        kernels: Weights (C_out, C_in, KH, KW)
        bias: Per-output-channel bias (C_out,) or None
        stride: Window stride
        padding: Zero border added on every side

    Returns:
        Output volume (C_out, OH, OW)
    """
    out_channels, in_channels, kernel_h, kernel_w = kernels.shape
    if volume.shape[0] != in_channels:
        raise ValueError(
            f"Input has {volume.shape[0]} channels, kernels expect {in_channels}"
        )

    padded = apply_padding(volume, padding)
    out_h = (padded.shape[1] - kernel_h) // stride + 1
    out_w = (padded.shape[2] - kernel_w) // stride + 1

    output = np.zeros((out_channels, out_h, out_w))
    for kh in range(kernel_h):
        for kw in range(kernel_w):
            window = window_view(padded, kh, kw, out_h, out_w, stride)
            # (C_out, C_in) x (C_in, OH, OW) -> (C_out, OH, OW)
            output += np.tensordot(kernels[:, :, kh, kw], window, axes=(1, 0))

    if bias is not None:
        output += bias[:, np.newaxis, np.newaxis]
    return output
