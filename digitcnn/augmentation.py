"""
augmentation.py
~~~~~~~~~~~~~~~

Random perturbations applied to training images before they enter the
network. Every function returns a new array; inputs are never modified.
"""

import math

import numpy as np

MAX_ROTATION_DEGREES = 15.0
MAX_SHIFT = 2
NOISE_LEVEL = 0.1


def rotate_image(image: np.ndarray, angle: float) -> np.ndarray:
    """
    Rotate every channel about the image centre.

    Uses nearest-neighbour backward mapping: each destination pixel looks
    up its (truncated) source coordinate; sources outside the image give 0.

    Args:
        image: Volume (C, H, W)
        angle: Rotation in radians

    Returns:
        Rotated volume of the same shape
    """
    _, height, width = image.shape
    center_y = height // 2
    center_x = width // 2
    cos, sin = math.cos(angle), math.sin(angle)

    ys, xs = np.indices((height, width))
    dy = ys - center_y
    dx = xs - center_x
    src_y = np.trunc(cos * dy + sin * dx + center_y).astype(np.int64)
    src_x = np.trunc(-sin * dy + cos * dx + center_x).astype(np.int64)

    valid = (src_y >= 0) & (src_y < height) & (src_x >= 0) & (src_x < width)
    rotated = np.zeros(image.shape)
    rotated[:, valid] = image[:, src_y[valid], src_x[valid]]
    return rotated


def shift_image(image: np.ndarray, shift_x: int, shift_y: int) -> np.ndarray:
    """Translate by whole pixels; uncovered pixels become 0."""
    _, height, width = image.shape
    shifted = np.zeros(image.shape)
    if abs(shift_x) >= width or abs(shift_y) >= height:
        return shifted

    dst_y = slice(max(shift_y, 0), height + min(shift_y, 0))
    dst_x = slice(max(shift_x, 0), width + min(shift_x, 0))
    src_y = slice(max(-shift_y, 0), height + min(-shift_y, 0))
    src_x = slice(max(-shift_x, 0), width + min(-shift_x, 0))

    shifted[:, dst_y, dst_x] = image[:, src_y, src_x]
    return shifted


def add_noise(image: np.ndarray, level: float,
              rng: np.random.Generator) -> np.ndarray:
    """Add uniform noise in [-level/2, level/2) and clip to [0, 1]."""
    noise = (rng.random(image.shape) - 0.5) * level
    return np.clip(image + noise, 0.0, 1.0)


def augment_image(image: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """
    Randomly rotate, shift and add noise to a training image.

    Each effect is applied independently with probability 0.5.

    Args:
        image: Volume (C, H, W) with values in [0, 1]
        rng: Random generator driving every decision

    Returns:
        Augmented copy of the image
    """
    augmented = image

    if rng.random() < 0.5:
        angle = math.radians((rng.random() - 0.5) * 2 * MAX_ROTATION_DEGREES)
        augmented = rotate_image(augmented, angle)

    if rng.random() < 0.5:
        shift_x = int(rng.integers(-MAX_SHIFT, MAX_SHIFT + 1))
        shift_y = int(rng.integers(-MAX_SHIFT, MAX_SHIFT + 1))
        augmented = shift_image(augmented, shift_x, shift_y)

    if rng.random() < 0.5:
        augmented = add_noise(augmented, NOISE_LEVEL, rng)

    if augmented is image:
        augmented = image.copy()
    return augmented
