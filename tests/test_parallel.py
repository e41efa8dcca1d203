"""
test_parallel.py
~~~~~~~~~~~~~~~~

Tests for the fork/join convolution executor and the im2col path.
"""

import pytest
import numpy as np

from conftest import small_structure
from digitcnn.convolution import convolve3d
from digitcnn.network import Network
from digitcnn.parallel import THRESHOLD, ConvolutionExecutor, im2col
from digitcnn.pooling import max_pool_forward


@pytest.fixture
def executor():
    with ConvolutionExecutor(max_workers=2) as ex:
        yield ex


def random_conv(out_channels, in_channels=3, size=9, seed=0):
    rng = np.random.default_rng(seed)
    volume = rng.standard_normal((in_channels, size, size))
    kernels = rng.standard_normal((out_channels, in_channels, 3, 3))
    bias = rng.standard_normal(out_channels)
    return volume, kernels, bias


@pytest.mark.unit
class TestConvolutionExecutor:

    @pytest.mark.parametrize("out_channels", [1, THRESHOLD, THRESHOLD + 1, 40])
    def test_matches_sequential(self, executor, out_channels):
        volume, kernels, bias = random_conv(out_channels)
        expected = convolve3d(volume, kernels, bias, 1, 1)
        assert np.allclose(executor.convolve3d(volume, kernels, bias, 1, 1), expected)

    def test_matches_sequential_with_stride(self, executor):
        volume, kernels, bias = random_conv(20, size=10)
        expected = convolve3d(volume, kernels, bias, 2, 0)
        result = executor.convolve3d(volume, kernels, bias, 2, 0)
        assert result.shape == expected.shape == (20, 4, 4)
        assert np.allclose(result, expected)

    def test_single_worker_deep_split_does_not_starve(self):
        volume, kernels, bias = random_conv(9)
        with ConvolutionExecutor(max_workers=1, threshold=1) as ex:
            result = ex.convolve3d(volume, kernels, bias, 1, 1)
        assert np.allclose(result, convolve3d(volume, kernels, bias, 1, 1))

    def test_channel_mismatch(self, executor):
        volume, kernels, bias = random_conv(4)
        with pytest.raises(ValueError):
            executor.convolve3d(volume[:2], kernels, bias, 1, 1)

    def test_max_pool3d_matches_sequential(self, executor):
        volume = np.random.default_rng(1).standard_normal((40, 8, 8))
        expected, _ = max_pool_forward(volume, 2, 2)
        assert np.array_equal(executor.max_pool3d(volume, 2, 2), expected)

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            ConvolutionExecutor(max_workers=1, threshold=0)

    def test_network_inference_with_executor(self, executor, small_image):
        plain = Network(structure=small_structure(), seed=9)
        parallel = Network(structure=small_structure(), seed=9, executor=executor)

        assert np.allclose(plain.forward(small_image), parallel.forward(small_image))
        context = parallel.forward_pass(small_image)
        assert context.pool1_indices is None

    def test_backward_on_parallel_context_raises(self, executor, small_image):
        net = Network(structure=small_structure(), seed=9, executor=executor)
        context = net.forward_pass(small_image)
        with pytest.raises(RuntimeError):
            net.backward(context, 1)

    def test_training_pass_ignores_executor(self, executor, small_image):
        net = Network(structure=small_structure(), seed=9, executor=executor)
        context = net.forward_pass(small_image, training=True)
        assert context.pool1_indices is not None
        assert np.isfinite(net.backward(context, 1))


@pytest.mark.unit
class TestIm2col:

    def test_shape_and_rows(self):
        volume = np.arange(2 * 4 * 4, dtype=float).reshape(2, 4, 4)
        col = im2col(volume, 3, 3, 1, 0)
        assert col.shape == (4, 2 * 9)
        assert np.array_equal(col[0], volume[:, :3, :3].reshape(-1))
        assert np.array_equal(col[3], volume[:, 1:4, 1:4].reshape(-1))

    @pytest.mark.parametrize("stride,padding", [(1, 1), (2, 0), (2, 1)])
    def test_convolution_matches_sequential(self, stride, padding):
        volume, kernels, bias = random_conv(5, size=8)
        expected = convolve3d(volume, kernels, bias, stride, padding)
        result = ConvolutionExecutor.convolve3d_im2col(
            volume, kernels, bias, stride, padding
        )
        assert np.allclose(result, expected)
