"""
network.py
~~~~~~~~~~

Fixed-topology convolutional network for digit classification.

    input -> conv1 -> ReLU -> maxpool -> conv2 -> ReLU -> maxpool
          -> flatten -> fc1 -> ReLU -> dropout -> fc2 -> softmax

A forward pass returns a ForwardContext holding every intermediate value
(including the pooling index caches and the dropout mask). The backward
pass consumes that context, so the pairing of a forward pass with its
backward pass is explicit instead of relying on hidden per-call state.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from . import tensor_ops
from .layers import ConvLayer, ConvLayerConfig, FCLayerConfig, FullyConnectedLayer
from .pooling import max_pool_backward, max_pool_forward

logger = logging.getLogger(__name__)

POOL_SIZE = 2
POOL_STRIDE = 2
DROPOUT_RATE = 0.5

# Learning-rate schedule: multiply by DECAY_FACTOR every DECAY_EVERY epochs
DECAY_EVERY = 10
DECAY_FACTOR = 0.9

IMAGE_SIZE = 32
NUM_CLASSES = 10


@dataclass(frozen=True)
class NetworkStructure:
    """Everything needed to rebuild a network apart from its weights."""
    learning_rate: float
    conv1: ConvLayerConfig
    conv2: ConvLayerConfig
    fc1: FCLayerConfig
    fc2: FCLayerConfig

    @classmethod
    def default(cls, learning_rate: float = 0.001) -> 'NetworkStructure':
        """Structure for 1x32x32 inputs and 10 classes."""
        return cls(
            learning_rate=learning_rate,
            conv1=ConvLayerConfig(1, 16, 3, stride=1, padding=1),
            conv2=ConvLayerConfig(16, 32, 3, stride=1, padding=1),
            fc1=FCLayerConfig(32 * 8 * 8, 128),
            fc2=FCLayerConfig(128, NUM_CLASSES),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ForwardContext:
    """Intermediate values of one forward pass, consumed by backward."""
    input: np.ndarray
    conv1_out: np.ndarray
    relu1_out: np.ndarray
    pool1_out: np.ndarray
    pool1_indices: Optional[np.ndarray]
    conv2_out: np.ndarray
    relu2_out: np.ndarray
    pool2_out: np.ndarray
    pool2_indices: Optional[np.ndarray]
    flattened: np.ndarray
    fc1_out: np.ndarray
    dropout_mask: Optional[np.ndarray]
    dropped: np.ndarray
    logits: np.ndarray
    probabilities: np.ndarray
    training: bool


class Network:
    """
    Two convolution stages, two pooling stages and two dense stages.

    Args:
        learning_rate: Initial Adam step size (ignored when `structure`
            is given, which carries its own learning rate)
        structure: Layer configuration; defaults to NetworkStructure.default
        seed: Seed for weight initialisation and dropout; None for entropy
        executor: Optional ConvolutionExecutor used by inference passes
    """

    def __init__(
        self,
        learning_rate: float = 0.001,
        structure: Optional[NetworkStructure] = None,
        seed: Optional[int] = 42,
        executor=None
    ):
        if structure is None:
            structure = NetworkStructure.default(learning_rate)

        self.initial_learning_rate = structure.learning_rate
        self._learning_rate = structure.learning_rate
        self.dropout_rate = DROPOUT_RATE
        self.epoch = 0
        self.executor = executor

        init_seed, dropout_seed = np.random.SeedSequence(seed).spawn(2)
        init_rng = np.random.default_rng(init_seed)
        self._rng = np.random.default_rng(dropout_seed)

        lr = structure.learning_rate
        c1, c2 = structure.conv1, structure.conv2
        self.conv1 = ConvLayer(c1.in_channels, c1.out_channels, c1.kernel_size,
                               c1.stride, c1.padding, lr, rng=init_rng)
        self.conv2 = ConvLayer(c2.in_channels, c2.out_channels, c2.kernel_size,
                               c2.stride, c2.padding, lr, rng=init_rng)
        self.fc1 = FullyConnectedLayer(structure.fc1.input_size,
                                       structure.fc1.output_size, lr,
                                       rng=init_rng)
        self.fc2 = FullyConnectedLayer(structure.fc2.input_size,
                                       structure.fc2.output_size, lr,
                                       rng=init_rng)

        logger.debug(f"Created network {self.architecture()}")

    @property
    def layers(self) -> Tuple:
        """Parametric layers in update and serialization order."""
        return (self.conv1, self.conv2, self.fc1, self.fc2)

    @property
    def learning_rate(self) -> float:
        return self._learning_rate

    @property
    def num_classes(self) -> int:
        return self.fc2.output_size

    @property
    def structure(self) -> NetworkStructure:
        return NetworkStructure(
            learning_rate=self._learning_rate,
            conv1=self.conv1.config,
            conv2=self.conv2.config,
            fc1=self.fc1.config,
            fc2=self.fc2.config,
        )

    def architecture(self) -> Dict[str, Any]:
        """JSON-friendly description of the layer structure."""
        return self.structure.to_dict()

    # ------------------------------------------------------------------
    # Forward
    # ------------------------------------------------------------------

    def _pool(self, volume: np.ndarray, training: bool):
        if self.executor is not None and not training:
            return self.executor.max_pool3d(volume, POOL_SIZE, POOL_STRIDE), None
        return max_pool_forward(volume, POOL_SIZE, POOL_STRIDE)

    def _dropout(self, activations: np.ndarray, training: bool):
        if not training or self.dropout_rate == 0:
            return activations, None
        mask = self._rng.random(activations.shape[0]) > self.dropout_rate
        scale = 1.0 / (1.0 - self.dropout_rate)
        return activations * mask * scale, mask

    def forward_pass(self, x: np.ndarray, training: bool = False) -> ForwardContext:
        """
        Run the full chain and keep every intermediate.

        Inference passes (training=False) use the injected executor when
        there is one; their contexts then carry no pooling indices.

        Args:
            x: Input volume (C, H, W)
            training: Enables dropout and forces the sequential path

        Returns:
            ForwardContext for this pass
        """
        if x.ndim != 3:
            raise ValueError(f"Expected a (C, H, W) volume, got shape {x.shape}")

        executor = None if training else self.executor

        conv1_out = self.conv1.forward(x, executor=executor)
        relu1_out = tensor_ops.relu(conv1_out)
        pool1_out, pool1_indices = self._pool(relu1_out, training)

        conv2_out = self.conv2.forward(pool1_out, executor=executor)
        relu2_out = tensor_ops.relu(conv2_out)
        pool2_out, pool2_indices = self._pool(relu2_out, training)

        flattened = tensor_ops.flatten(pool2_out)

        fc1_out = self.fc1.forward(flattened)
        relu3_out = tensor_ops.relu(fc1_out)
        dropped, dropout_mask = self._dropout(relu3_out, training)

        logits = self.fc2.forward(dropped)
        probabilities = tensor_ops.softmax(logits)

        return ForwardContext(
            input=x,
            conv1_out=conv1_out,
            relu1_out=relu1_out,
            pool1_out=pool1_out,
            pool1_indices=pool1_indices,
            conv2_out=conv2_out,
            relu2_out=relu2_out,
            pool2_out=pool2_out,
            pool2_indices=pool2_indices,
            flattened=flattened,
            fc1_out=fc1_out,
            dropout_mask=dropout_mask,
            dropped=dropped,
            logits=logits,
            probabilities=probabilities,
            training=training,
        )

    def forward(self, x: np.ndarray) -> np.ndarray:
        """Class probabilities in inference mode."""
        return self.forward_pass(x, training=False).probabilities

    def predict(self, x: np.ndarray) -> int:
        return tensor_ops.argmax(self.forward(x))

    # ------------------------------------------------------------------
    # Backward
    # ------------------------------------------------------------------

    def backward(self, context: ForwardContext, target: int) -> float:
        """
        Compute the loss and the gradients of all four layers.

        Args:
            context: Result of the forward pass being differentiated
            target: Correct class index

        Returns:
            Cross-entropy loss of the forward pass

        Raises:
            ValueError: If the target is not a valid class index
            RuntimeError: If the context was produced without index caches,
                or if another forward pass ran after it
        """
        if not 0 <= target < self.num_classes:
            raise ValueError(
                f"Target must be in [0, {self.num_classes}), got {target}"
            )
        if context.pool1_indices is None or context.pool2_indices is None:
            raise RuntimeError(
                "Forward context has no pooling indices; run forward_pass "
                "without an executor to differentiate it"
            )
        # Conv layers differentiate against the input of their latest forward
        if (context.input is not self.conv1.cached_input
                or context.pool1_out is not self.conv2.cached_input):
            raise RuntimeError(
                "Forward context is stale: another forward pass ran after it"
            )

        loss = tensor_ops.cross_entropy(context.probabilities, target)
        grad = tensor_ops.softmax_cross_entropy_gradient(
            context.probabilities, target
        )

        grad = self.fc2.backward(grad, context.dropped)

        if context.dropout_mask is not None:
            grad = grad * context.dropout_mask / (1.0 - self.dropout_rate)
        grad = tensor_ops.relu_backward(grad, context.fc1_out)

        grad = self.fc1.backward(grad, context.flattened)
        grad = tensor_ops.reshape(grad, *context.pool2_out.shape)

        grad = max_pool_backward(grad, context.pool2_indices, POOL_SIZE,
                                 POOL_STRIDE, context.relu2_out.shape)
        grad = tensor_ops.relu_backward(grad, context.conv2_out)
        grad = self.conv2.backward(grad, context.pool1_out)

        grad = max_pool_backward(grad, context.pool1_indices, POOL_SIZE,
                                 POOL_STRIDE, context.relu1_out.shape)
        grad = tensor_ops.relu_backward(grad, context.conv1_out)
        # conv1 is the input layer; its input gradient is not needed
        self.conv1.backward(grad, context.input)

        return loss

    def update_weights(self) -> None:
        for layer in self.layers:
            layer.update_weights()

    def train(self, x: np.ndarray, target: int) -> float:
        """
        One training step on a single sample.

        Returns:
            Loss before the update
        """
        context = self.forward_pass(x, training=True)
        loss = self.backward(context, target)
        self.update_weights()
        return loss

    def end_epoch(self) -> None:
        """Advance the epoch counter and decay the learning rate on schedule."""
        self.epoch += 1
        if self.epoch % DECAY_EVERY == 0:
            self._learning_rate *= DECAY_FACTOR
            for layer in self.layers:
                layer.set_learning_rate(self._learning_rate)
            logger.info(
                f"Epoch {self.epoch}: learning rate decayed to "
                f"{self._learning_rate:.6g}"
            )
