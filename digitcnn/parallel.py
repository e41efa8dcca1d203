"""
parallel.py
~~~~~~~~~~~

Parallel convolution and pooling over a bounded worker pool.

Work is split recursively over the output-channel range [start, end):
ranges of at most THRESHOLD channels are computed directly, larger ranges
are halved, the left half is submitted to the pool and the right half is
computed on the current thread before joining. Every task writes only its
own channel slice of the shared output array, so tasks never write the
same element.

The executor is a resource with an explicit lifetime: create one per
process, pass it to whoever needs it and call shutdown() (or use it as a
context manager) when done.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import numpy as np

from .convolution import (
    apply_padding,
    correlate2d,
    max_pool2d,
    output_size,
)

logger = logging.getLogger(__name__)

# Channel ranges at or below this size are computed without splitting
THRESHOLD = 16


def im2col(
    volume: np.ndarray,
    kernel_h: int,
    kernel_w: int,
    stride: int,
    padding: int
) -> np.ndarray:
    """
    Unroll every receptive field of a volume into one matrix row.

    Args:
        volume: Input (C, H, W)
        kernel_h: Kernel height
        kernel_w: Kernel width
        stride: Window stride
        padding: Zero border added on every side

    Returns:
        Matrix (OH * OW, C * kernel_h * kernel_w); row r holds the field of
        output position (r // OW, r % OW), columns ordered (c, kh, kw)
    """
    channels, height, width = volume.shape
    out_h = output_size(height, kernel_h, stride, padding)
    out_w = output_size(width, kernel_w, stride, padding)
    padded = apply_padding(volume, padding)

    col = np.empty((out_h * out_w, channels * kernel_h * kernel_w))
    row = 0
    for oh in range(out_h):
        for ow in range(out_w):
            top = oh * stride
            left = ow * stride
            field = padded[:, top:top + kernel_h, left:left + kernel_w]
            col[row] = field.reshape(-1)
            row += 1
    return col


class ConvolutionExecutor:
    """
    Fork/join scheduler for multi-channel convolution and max pooling.

    Args:
        max_workers: Size of the worker pool (defaults to the CPU count)
        threshold: Largest channel range computed without splitting
    """

    def __init__(self, max_workers: Optional[int] = None,
                 threshold: int = THRESHOLD):
        if threshold < 1:
            raise ValueError(f"threshold must be positive, got {threshold}")
        self.max_workers = max_workers or os.cpu_count() or 1
        self.threshold = threshold
        self._pool = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix='conv-worker'
        )
        logger.info(
            f"Convolution executor started with {self.max_workers} worker(s)"
        )

    def __enter__(self) -> 'ConvolutionExecutor':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        """Stop the worker pool after pending tasks finish."""
        self._pool.shutdown(wait=True)
        logger.info("Convolution executor shut down")

    def _fork_join(self, start: int, end: int,
                   compute: Callable[[int, int], None]) -> None:
        """Run compute(start, end) over disjoint channel ranges in parallel."""
        if end - start <= self.threshold:
            compute(start, end)
            return

        mid = start + (end - start) // 2
        left = self._pool.submit(self._fork_join, start, mid, compute)
        self._fork_join(mid, end, compute)

        # A task nobody picked up yet is run here, so a full pool of
        # waiting parents can never starve its own children.
        if left.cancel():
            self._fork_join(start, mid, compute)
        else:
            left.result()

    def convolve3d(
        self,
        volume: np.ndarray,
        kernels: np.ndarray,
        bias: Optional[np.ndarray],
        stride: int,
        padding: int
    ) -> np.ndarray:
        """
        Parallel multi-channel convolution.

        Same contract and result as convolution.convolve3d.
        """
        out_channels, in_channels, kernel_h, kernel_w = kernels.shape
        if volume.shape[0] != in_channels:
            raise ValueError(
                f"Input has {volume.shape[0]} channels, kernels expect {in_channels}"
            )

        out_h = output_size(volume.shape[1], kernel_h, stride, padding)
        out_w = output_size(volume.shape[2], kernel_w, stride, padding)
        output = np.zeros((out_channels, out_h, out_w))

        def compute(start: int, end: int) -> None:
            padded = [apply_padding(volume[ic], padding)
                      for ic in range(in_channels)]
            for oc in range(start, end):
                acc = np.zeros((out_h, out_w))
                for ic in range(in_channels):
                    acc += correlate2d(padded[ic], kernels[oc, ic], stride)
                if bias is not None:
                    acc += bias[oc]
                output[oc] = acc

        self._fork_join(0, out_channels, compute)
        return output

    def max_pool3d(self, volume: np.ndarray, pool_size: int,
                   stride: int) -> np.ndarray:
        """Parallel max pooling of every channel of a volume."""
        channels, height, width = volume.shape
        out_h = (height - pool_size) // stride + 1
        out_w = (width - pool_size) // stride + 1
        output = np.zeros((channels, out_h, out_w))

        def compute(start: int, end: int) -> None:
            for c in range(start, end):
                output[c] = max_pool2d(volume[c], pool_size, stride)

        self._fork_join(0, channels, compute)
        return output

    @staticmethod
    def convolve3d_im2col(
        volume: np.ndarray,
        kernels: np.ndarray,
        bias: Optional[np.ndarray],
        stride: int,
        padding: int
    ) -> np.ndarray:
        """
        Convolution as a single matrix product.

        The kernels become a (C_out, C_in * KH * KW) matrix which is
        multiplied with the transposed im2col matrix, giving one output
        row per channel.
        """
        out_channels, in_channels, kernel_h, kernel_w = kernels.shape
        out_h = output_size(volume.shape[1], kernel_h, stride, padding)
        out_w = output_size(volume.shape[2], kernel_w, stride, padding)

        col = im2col(volume, kernel_h, kernel_w, stride, padding)
        kernel_matrix = kernels.reshape(out_channels, -1)
        output = kernel_matrix @ col.T

        if bias is not None:
            output += bias[:, np.newaxis]
        return output.reshape(out_channels, out_h, out_w)
