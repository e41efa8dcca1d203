"""
test_digits.py
~~~~~~~~~~~~~~

Tests for the synthetic and NPZ digit sources.
"""

import pytest
import numpy as np

from digitcnn.digits import (
    NpzDigitSource,
    SyntheticDigitSource,
    render_glyph,
    smooth_image,
)


@pytest.fixture(scope="module")
def synthetic():
    return SyntheticDigitSource(image_size=16, seed=0)


@pytest.mark.unit
class TestSyntheticDigits:

    def test_render_glyph(self):
        glyph = render_glyph("7", 16)
        assert glyph.shape == (16, 16)
        assert glyph.min() >= 0.0 and glyph.max() <= 1.0
        assert glyph.max() > 0.5
        # Corners stay background
        assert glyph[0, 0] < 0.1

    def test_generate_digit(self, synthetic):
        image = synthetic.generate_digit(3, noise=0.1)
        assert image.shape == (1, 16, 16)
        assert image.min() >= 0.0 and image.max() <= 1.0
        assert image.sum() > 1.0

    def test_variation_between_samples(self, synthetic):
        a = synthetic.generate_digit(5)
        b = synthetic.generate_digit(5)
        assert not np.array_equal(a, b)

    def test_same_seed_reproducible(self):
        a = SyntheticDigitSource(image_size=16, seed=9).generate_digit(2, 0.05)
        b = SyntheticDigitSource(image_size=16, seed=9).generate_digit(2, 0.05)
        assert np.array_equal(a, b)

    def test_invalid_digit(self, synthetic):
        with pytest.raises(ValueError):
            synthetic.generate_digit(10)
        with pytest.raises(ValueError):
            synthetic.generate_digit(-1)

    def test_generate_batch_cycles_labels(self, synthetic):
        images, labels = synthetic.generate_batch(12, 0.0)
        assert images.shape == (12, 1, 16, 16)
        assert list(labels) == [0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 0, 1]

    def test_smooth_preserves_constant(self):
        image = np.full((1, 4, 4), 0.3)
        assert np.allclose(smooth_image(image), image)


@pytest.fixture
def npz_path(tmp_path):
    rng = np.random.default_rng(0)
    labels = np.array([0, 1, 2, 3, 4, 5, 6, 7, 8, 9, 0, 1], dtype=np.uint8)
    images = rng.integers(0, 256, size=(len(labels), 64), dtype=np.uint8)
    path = tmp_path / "digits.npz"
    np.savez_compressed(
        path,
        train_images=images, train_labels=labels,
        test_images=images[:3].reshape(3, 8, 8), test_labels=labels[:3],
    )
    return str(path)


@pytest.mark.unit
class TestNpzDigits:

    def test_loads_flat_images_as_squares(self, npz_path):
        source = NpzDigitSource(npz_path, split='train', seed=0)
        assert len(source) == 12
        assert source.image_size == 8
        assert source.images.max() <= 1.0

    def test_generate_digit_returns_matching_label(self, npz_path):
        source = NpzDigitSource(npz_path, seed=0)
        image = source.generate_digit(1)
        assert image.shape == (1, 8, 8)
        candidates = source.images[source.labels == 1]
        assert any(np.array_equal(image[0], c) for c in candidates)

    def test_missing_digit(self, npz_path):
        source = NpzDigitSource(npz_path, split='test')
        assert len(source) == 3
        with pytest.raises(ValueError):
            source.generate_digit(7)

    def test_returned_image_is_a_copy(self, npz_path):
        source = NpzDigitSource(npz_path, seed=0)
        image = source.generate_digit(2)
        image[:] = -1.0
        assert source.images.min() >= 0.0

    def test_non_square_flat_images(self, tmp_path):
        path = tmp_path / "bad.npz"
        np.savez(path, train_images=np.zeros((2, 10)), train_labels=np.zeros(2))
        with pytest.raises(ValueError):
            NpzDigitSource(str(path))
