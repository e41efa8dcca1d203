"""
digits.py
~~~~~~~~~

Sources of labelled digit images for training and evaluation.

- SyntheticDigitSource renders glyphs with matplotlib and perturbs them
  (rotation, scale, offset, noise, smoothing), so no dataset download is
  needed.
- NpzDigitSource serves images stored in an .npz file, for example one
  written by scripts/generate_digit_dataset.py.

Every source returns (1, S, S) float arrays with values in [0, 1].
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import numpy as np
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure

from .augmentation import add_noise, rotate_image, shift_image

logger = logging.getLogger(__name__)

# Render at this multiple of the target size, then box-downsample
OVERSAMPLE = 4

# Fonts bundled with matplotlib, so rendering never depends on the host
FONT_FAMILIES = ('DejaVu Sans', 'DejaVu Serif', 'DejaVu Sans Mono')
FONT_WEIGHTS = ('normal', 'bold')


class DigitSource(ABC):
    """Supplies labelled single-channel digit images."""

    image_size: int

    @abstractmethod
    def generate_digit(self, digit: int, noise: float = 0.0) -> np.ndarray:
        """
        Produce one image of the given digit.

        Args:
            digit: Class label in 0..9
            noise: Amount of uniform noise to add (0 disables it)

        Returns:
            Array (1, S, S) with values in [0, 1]
        """

    def generate_batch(self, count: int,
                       noise: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
        """Generate `count` images cycling through the digits 0..9."""
        images = np.zeros((count, 1, self.image_size, self.image_size))
        labels = np.zeros(count, dtype=np.int64)
        for i in range(count):
            digit = i % 10
            images[i] = self.generate_digit(digit, noise)
            labels[i] = digit
        return images, labels


def _check_digit(digit: int) -> None:
    if not 0 <= digit <= 9:
        raise ValueError(f"Digit must be between 0 and 9, got {digit}")


def render_glyph(text: str, size: int, family: str = 'DejaVu Sans',
                 weight: str = 'normal') -> np.ndarray:
    """
    Render white text centred on a black square.

    Returns:
        Array (size, size) with values in [0, 1]
    """
    pixels = size * OVERSAMPLE
    fig = Figure(figsize=(1, 1), dpi=pixels)
    canvas = FigureCanvasAgg(fig)
    fig.patch.set_facecolor('black')
    # A 1 inch figure is 72 points tall; digits fill roughly 60% of it
    fig.text(0.5, 0.5, text, color='white', ha='center', va='center',
             fontsize=54, family=family, weight=weight)
    canvas.draw()

    rgba = np.asarray(canvas.buffer_rgba())
    gray = rgba[:pixels, :pixels, 0].astype(np.float64) / 255.0
    return gray.reshape(size, OVERSAMPLE, size, OVERSAMPLE).mean(axis=(1, 3))


def scale_image(image: np.ndarray, factor: float) -> np.ndarray:
    """Nearest-neighbour zoom of a (C, H, W) volume about its centre."""
    _, height, width = image.shape
    center_y, center_x = height // 2, width // 2
    ys, xs = np.indices((height, width))
    src_y = np.trunc((ys - center_y) / factor + center_y).astype(np.int64)
    src_x = np.trunc((xs - center_x) / factor + center_x).astype(np.int64)

    valid = (src_y >= 0) & (src_y < height) & (src_x >= 0) & (src_x < width)
    scaled = np.zeros(image.shape)
    scaled[:, valid] = image[:, src_y[valid], src_x[valid]]
    return scaled


def smooth_image(image: np.ndarray) -> np.ndarray:
    """Blend each pixel with its 3x3 neighbourhood mean."""
    padded = np.pad(image, ((0, 0), (1, 1), (1, 1)), mode='edge')
    _, height, width = image.shape
    box = sum(
        padded[:, dy:dy + height, dx:dx + width]
        for dy in range(3) for dx in range(3)
    ) / 9.0
    return 0.6 * image + 0.4 * box


class SyntheticDigitSource(DigitSource):
    """
    Procedurally varied digits rendered from bundled fonts.

    Glyph templates are rendered once per (digit, font, weight) and
    cached; each generated image is a randomly transformed template.

    Args:
        image_size: Side of the square output image
        seed: Seed for the random generator; None for entropy
    """

    def __init__(self, image_size: int = 32, seed: Optional[int] = None):
        self.image_size = image_size
        self.rng = np.random.default_rng(seed)
        self._templates: Dict[int, List[np.ndarray]] = {}

    def _variants(self, digit: int) -> List[np.ndarray]:
        if digit not in self._templates:
            self._templates[digit] = [
                render_glyph(str(digit), self.image_size, family, weight)[np.newaxis]
                for family in FONT_FAMILIES
                for weight in FONT_WEIGHTS
            ]
            logger.debug(f"Rendered {len(self._templates[digit])} templates for {digit}")
        return self._templates[digit]

    def generate_digit(self, digit: int, noise: float = 0.0) -> np.ndarray:
        _check_digit(digit)
        variants = self._variants(digit)
        image = variants[self.rng.integers(len(variants))]

        # About +/- 11 degrees
        image = rotate_image(image, (self.rng.random() - 0.5) * 0.4)

        factor = 0.85 + self.rng.random() * 0.3
        if abs(factor - 1.0) > 0.05:
            image = scale_image(image, factor)

        offset_x, offset_y = self.rng.integers(-2, 3, size=2)
        image = shift_image(image, int(offset_x), int(offset_y))

        if noise > 0:
            image = add_noise(image, noise, self.rng)

        return np.clip(smooth_image(image), 0.0, 1.0)


class NpzDigitSource(DigitSource):
    """
    Digit images stored in an .npz archive.

    The archive holds `<split>_images` shaped (N, S, S) or (N, S*S) and
    `<split>_labels` shaped (N,).

    Args:
        path: Path to the .npz file
        split: Prefix of the arrays to use ('train', 'test', ...)
        seed: Seed for choosing among images of the same digit
    """

    def __init__(self, path: str, split: str = 'train',
                 seed: Optional[int] = None):
        with np.load(path) as data:
            images = np.asarray(data[f'{split}_images'], dtype=np.float64)
            labels = np.asarray(data[f'{split}_labels'], dtype=np.int64)

        if images.ndim == 2:
            side = int(math.isqrt(images.shape[1]))
            if side * side != images.shape[1]:
                raise ValueError(
                    f"Flat images of length {images.shape[1]} are not square"
                )
            images = images.reshape(-1, side, side)
        if images.max(initial=0.0) > 1.0:
            images = images / 255.0

        self.image_size = images.shape[1]
        self.images = images
        self.labels = labels
        self.rng = np.random.default_rng(seed)
        self._by_digit = {d: np.flatnonzero(labels == d) for d in range(10)}

        logger.info(f"Loaded {len(labels)} '{split}' images from {path}")

    def __len__(self) -> int:
        return len(self.labels)

    def generate_digit(self, digit: int, noise: float = 0.0) -> np.ndarray:
        _check_digit(digit)
        candidates = self._by_digit[digit]
        if len(candidates) == 0:
            raise ValueError(f"No stored images for digit {digit}")

        image = self.images[self.rng.choice(candidates)][np.newaxis].copy()
        if noise > 0:
            image = add_noise(image, noise, self.rng)
        return image
