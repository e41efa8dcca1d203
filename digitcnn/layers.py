"""
layers.py
~~~~~~~~~

Trainable layers of the network: a 2D convolution layer and a
fully-connected layer. Both compute their own gradients by hand and
update themselves with Adam.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from . import tensor_ops
from .convolution import apply_padding, convolve3d, output_size, window_view
from .optimizer import AdamState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConvLayerConfig:
    """Structural description of a convolution layer."""
    in_channels: int
    out_channels: int
    kernel_size: int
    stride: int = 1
    padding: int = 0


@dataclass(frozen=True)
class FCLayerConfig:
    """Structural description of a fully-connected layer."""
    input_size: int
    output_size: int


class TrainableLayer(ABC):
    """
    Capability shared by every parametric layer.

    A layer owns its parameters, the gradients of its last backward pass,
    its Adam state and its learning rate.
    """

    def __init__(self, learning_rate: float):
        self._learning_rate = learning_rate
        self.t = 0

    @property
    def learning_rate(self) -> float:
        return self._learning_rate

    def set_learning_rate(self, learning_rate: float) -> None:
        self._learning_rate = learning_rate

    @abstractmethod
    def forward(self, x: np.ndarray) -> np.ndarray:
        """Compute the layer output and cache what backward needs."""

    @abstractmethod
    def backward(self, grad_output: np.ndarray,
                 x: Optional[np.ndarray] = None) -> np.ndarray:
        """Compute parameter gradients and return the input gradient."""

    @abstractmethod
    def update_weights(self) -> None:
        """Apply one Adam step using the gradients of the last backward."""

    @abstractmethod
    def parameters(self) -> List[np.ndarray]:
        """Parameter arrays in serialization order (weights, then bias)."""

    @abstractmethod
    def load_parameters(self, params: Sequence[np.ndarray]) -> None:
        """Replace parameter storage; optimizer moments are left untouched."""

    @property
    @abstractmethod
    def config(self):
        """Structural description of the layer."""

    @property
    def cached_input(self) -> Optional[np.ndarray]:
        """Input of the most recent forward call, None before the first."""
        return self._last_input

    def _check_shapes(self, params: Sequence[np.ndarray]) -> List[np.ndarray]:
        current = self.parameters()
        if len(params) != len(current):
            raise ValueError(
                f"Expected {len(current)} parameter arrays, got {len(params)}"
            )
        loaded = []
        for new, old in zip(params, current):
            new = np.array(new, dtype=np.float64, copy=True)
            if new.shape != old.shape:
                raise ValueError(
                    f"Parameter shape {new.shape} does not match {old.shape}"
                )
            loaded.append(new)
        return loaded

    def _adam_update(self, pairs) -> None:
        self.t += 1
        for param, grad, state in pairs:
            state.step(param, grad, self.t, self._learning_rate)


class ConvLayer(TrainableLayer):
    """
    2D convolution layer with stride and zero padding.

    Weights are shaped (out_channels, in_channels, kernel, kernel) and
    initialised with He scaling, sqrt(2 / (in_channels * kernel^2)).
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int,
        stride: int = 1,
        padding: int = 0,
        learning_rate: float = 0.001,
        rng: Optional[np.random.Generator] = None
    ):
        super().__init__(learning_rate)
        self.in_channels = in_channels
        self.out_channels = out_channels
        self.kernel_size = kernel_size
        self.stride = stride
        self.padding = padding

        rng = rng if rng is not None else np.random.default_rng()
        scale = np.sqrt(2.0 / (in_channels * kernel_size * kernel_size))
        shape = (out_channels, in_channels, kernel_size, kernel_size)
        self.weights = rng.standard_normal(shape) * scale
        self.bias = np.zeros(out_channels)

        self.grad_weights: Optional[np.ndarray] = None
        self.grad_bias: Optional[np.ndarray] = None

        self._weight_state = AdamState(self.weights.shape)
        self._bias_state = AdamState(self.bias.shape)
        self._last_input: Optional[np.ndarray] = None

    @property
    def config(self) -> ConvLayerConfig:
        return ConvLayerConfig(
            self.in_channels, self.out_channels, self.kernel_size,
            self.stride, self.padding
        )

    def output_shape(self, height: int, width: int):
        return (
            self.out_channels,
            output_size(height, self.kernel_size, self.stride, self.padding),
            output_size(width, self.kernel_size, self.stride, self.padding),
        )

    def forward(self, x: np.ndarray, executor=None) -> np.ndarray:
        """
        Convolve the input and add the per-channel bias.

        Args:
            x: Input volume (in_channels, H, W)
            executor: Optional ConvolutionExecutor; when given the output
                channels are computed on its worker pool

        Returns:
            Output volume (out_channels, OH, OW)
        """
        self._last_input = x
        if executor is not None:
            return executor.convolve3d(
                x, self.weights, self.bias, self.stride, self.padding
            )
        return convolve3d(x, self.weights, self.bias, self.stride,
                          self.padding)

    def backward(self, grad_output: np.ndarray,
                 x: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Compute bias, weight and input gradients.

        The input cached by the last forward call is always used; `x` is
        accepted for interface symmetry only.

        Args:
            grad_output: Gradient with respect to the output (out_channels, OH, OW)
            x: Ignored in favour of the cached forward input

        Returns:
            Gradient with respect to the forward input (in_channels, H, W)

        Raises:
            RuntimeError: If no forward pass preceded this call
        """
        if self._last_input is None:
            raise RuntimeError("ConvLayer.backward called before forward")
        if x is not None and x is not self._last_input:
            logger.debug("ConvLayer.backward: using cached forward input")

        volume = self._last_input
        _, height, width = volume.shape
        expected = self.output_shape(height, width)
        if grad_output.shape != expected:
            raise ValueError(
                f"Gradient shape {grad_output.shape} does not match layer "
                f"output shape {expected}"
            )
        _, out_h, out_w = expected

        self.grad_bias = grad_output.sum(axis=(1, 2))

        padded = apply_padding(volume, self.padding)
        grad_weights = np.zeros_like(self.weights)
        grad_padded = np.zeros(padded.shape)

        for kh in range(self.kernel_size):
            for kw in range(self.kernel_size):
                window = window_view(padded, kh, kw, out_h, out_w, self.stride)
                # (C_out, OH, OW) . (C_in, OH, OW) -> (C_out, C_in)
                grad_weights[:, :, kh, kw] = np.tensordot(
                    grad_output, window, axes=([1, 2], [1, 2])
                )
                # Transposed convolution: scatter back through the same kernel
                scattered = np.tensordot(
                    self.weights[:, :, kh, kw], grad_output, axes=(0, 0)
                )
                window_view(grad_padded, kh, kw, out_h, out_w,
                            self.stride)[...] += scattered

        self.grad_weights = grad_weights

        p = self.padding
        return grad_padded[:, p:p + height, p:p + width]

    def update_weights(self) -> None:
        if self.grad_weights is None or self.grad_bias is None:
            raise RuntimeError("ConvLayer.update_weights called without gradients")

        self._adam_update([
            (self.bias, self.grad_bias, self._bias_state),
            (self.weights, self.grad_weights, self._weight_state),
        ])
        self.grad_weights = None
        self.grad_bias = None

    def parameters(self) -> List[np.ndarray]:
        return [self.weights, self.bias]

    def load_parameters(self, params: Sequence[np.ndarray]) -> None:
        self.weights, self.bias = self._check_shapes(params)


class FullyConnectedLayer(TrainableLayer):
    """Affine layer y = W x + b with W shaped (output_size, input_size)."""

    def __init__(
        self,
        input_size: int,
        output_size: int,
        learning_rate: float = 0.001,
        rng: Optional[np.random.Generator] = None
    ):
        super().__init__(learning_rate)
        self.input_size = input_size
        self.output_size = output_size

        rng = rng if rng is not None else np.random.default_rng()
        scale = np.sqrt(2.0 / input_size)
        self.weights = rng.standard_normal((output_size, input_size)) * scale
        self.bias = np.zeros(output_size)

        self.grad_weights: Optional[np.ndarray] = None
        self.grad_bias: Optional[np.ndarray] = None

        self._weight_state = AdamState(self.weights.shape)
        self._bias_state = AdamState(self.bias.shape)
        self._last_input: Optional[np.ndarray] = None

    @property
    def config(self) -> FCLayerConfig:
        return FCLayerConfig(self.input_size, self.output_size)

    def forward(self, x: np.ndarray) -> np.ndarray:
        self._last_input = x
        return tensor_ops.dot_mv(self.weights, x) + self.bias

    def backward(self, grad_output: np.ndarray,
                 x: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Args:
            grad_output: Gradient with respect to the output (output_size,)
            x: Forward input; falls back to the cached one when omitted

        Returns:
            Gradient with respect to the input (input_size,)
        """
        if x is None:
            x = self._last_input
        if x is None:
            raise RuntimeError(
                "FullyConnectedLayer.backward called before forward"
            )

        self.grad_weights = tensor_ops.outer(grad_output, x)
        self.grad_bias = grad_output.copy()
        return tensor_ops.dot_mv(tensor_ops.transpose(self.weights), grad_output)

    def update_weights(self) -> None:
        if self.grad_weights is None or self.grad_bias is None:
            raise RuntimeError(
                "FullyConnectedLayer.update_weights called without gradients"
            )

        self._adam_update([
            (self.bias, self.grad_bias, self._bias_state),
            (self.weights, self.grad_weights, self._weight_state),
        ])
        self.grad_weights = None
        self.grad_bias = None

    def parameters(self) -> List[np.ndarray]:
        return [self.weights, self.bias]

    def load_parameters(self, params: Sequence[np.ndarray]) -> None:
        self.weights, self.bias = self._check_shapes(params)
