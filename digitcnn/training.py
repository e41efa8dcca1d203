"""
training.py
~~~~~~~~~~~

Training controller: runs epochs and batches on a background greenlet,
reports progress to a listener and supports cooperative cancellation.

The run polls its stop flag once per epoch and once per batch and yields
to other greenlets after every batch, so an HTTP server sharing the event
loop stays responsive. A sample that is already being trained is never
interrupted; cancellation takes effect within one batch.
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import Optional, Tuple

import gevent
import numpy as np

from . import tensor_ops
from .augmentation import augment_image
from .config import TrainingConfig
from .digits import DigitSource, SyntheticDigitSource
from .model_serializer import load_model, save_model
from .network import Network

logger = logging.getLogger(__name__)

DEFAULT_MODEL_PATH = 'outputs/digit_cnn.bin'

TRAIN_NOISE = 0.1
TEST_NOISE = 0.05

# Evaluate on the test set after every EVALUATE_EVERY epochs
EVALUATE_EVERY = 5


class TrainingListener:
    """
    Receives training progress. Every method is a no-op by default;
    override the ones you care about.
    """

    def on_status_changed(self, status: str) -> None:
        pass

    def on_progress_changed(self, progress: int) -> None:
        """Overall progress in percent (0-100)."""

    def on_epoch_completed(self, epoch: int, loss: float) -> None:
        pass

    def on_accuracy_updated(self, accuracy: float) -> None:
        pass

    def on_training_completed(self) -> None:
        pass

    def on_error(self, error: str) -> None:
        pass

    def on_model_saved(self, filepath: str) -> None:
        pass

    def on_model_loaded(self, filepath: str) -> None:
        pass


@dataclass
class PredictionResult:
    predicted_class: int
    probabilities: np.ndarray

    @property
    def confidence(self) -> float:
        return float(self.probabilities[self.predicted_class])


@dataclass
class EvaluationResult:
    accuracy: float
    confusion_matrix: np.ndarray  # [actual][predicted]
    class_accuracies: np.ndarray


class TrainingController:
    """
    Owns one network and trains it on images from a digit source.

    Args:
        epochs: Number of epochs per run
        batch_size: Samples per batch (progress and cancellation granularity)
        learning_rate: Initial learning rate of a newly created network
        use_augmentation: Augment training images, except in the last two epochs
        train_size: Training images generated per run
        test_size: Images generated per evaluation
        source: Digit source; defaults to SyntheticDigitSource
        model_path: Where a finished run saves the network
        seed: Seed for the network, shuffling and augmentation
        executor: Optional ConvolutionExecutor for inference passes
        network: Existing network to train instead of a new one

    Raises:
        ValueError: If epochs, batch_size, train_size or test_size is not
            a positive integer
    """

    def __init__(
        self,
        epochs: int = 10,
        batch_size: int = 32,
        learning_rate: float = 0.001,
        use_augmentation: bool = True,
        train_size: int = 6000,
        test_size: int = 1000,
        source: Optional[DigitSource] = None,
        model_path: str = DEFAULT_MODEL_PATH,
        seed: Optional[int] = None,
        executor=None,
        network: Optional[Network] = None
    ):
        for name, value in (('epochs', epochs), ('batch_size', batch_size),
                            ('train_size', train_size), ('test_size', test_size)):
            if value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value}")

        self.epochs = epochs
        self.batch_size = batch_size
        self.learning_rate = learning_rate
        self.use_augmentation = use_augmentation
        self.train_size = train_size
        self.test_size = test_size
        self.model_path = model_path
        self.seed = seed
        self.executor = executor

        self.network = network if network is not None else Network(
            learning_rate, seed=seed, executor=executor
        )
        self.source = source if source is not None else SyntheticDigitSource(seed=seed)
        self.listener: Optional[TrainingListener] = TrainingListener()

        self._rng = np.random.default_rng(seed)
        self._is_training = False
        self._stop_requested = False
        self._run_failed = False
        self._greenlet: Optional[gevent.Greenlet] = None

    @classmethod
    def from_config(cls, config: TrainingConfig, **kwargs) -> 'TrainingController':
        return cls(
            epochs=config.epochs,
            batch_size=config.batch_size,
            learning_rate=config.learning_rate,
            use_augmentation=config.use_augmentation,
            train_size=config.train_size,
            test_size=config.test_size,
            model_path=config.model_path,
            seed=config.seed,
            **kwargs
        )

    @property
    def is_training(self) -> bool:
        return self._is_training

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def run_failed(self) -> bool:
        """
        True when the current or last run hit a training error.

        A failed auto-save is reported through on_error as well but leaves
        this False: the epochs were trained and the run still counts as done.
        """
        return self._run_failed

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify(self, method: str, *args) -> None:
        listener = self.listener
        if listener is None:
            return
        try:
            getattr(listener, method)(*args)
        except Exception:
            logger.exception(f"Training listener failed in {method}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_training(self) -> bool:
        """
        Start a run on a background greenlet.

        Returns:
            False if a run is already in progress, True otherwise
        """
        if self._is_training:
            logger.warning("Training already in progress, ignoring start request")
            return False

        self._is_training = True
        self._stop_requested = False
        self._run_failed = False
        self._greenlet = gevent.spawn(self._run_training)
        return True

    def stop_training(self) -> None:
        """Ask the running training loop to stop at the next batch boundary."""
        if self._is_training:
            logger.info("Stop requested for training run")
        self._stop_requested = True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the background run finishes.

        Returns:
            True if no run is in progress afterwards
        """
        if self._greenlet is not None:
            self._greenlet.join(timeout=timeout)
        return not self._is_training

    def run_training(self) -> None:
        """Run training on the calling greenlet until done or stopped."""
        if self._is_training:
            logger.warning("Training already in progress, ignoring run request")
            return
        self._is_training = True
        self._stop_requested = False
        self._run_failed = False
        self._run_training()

    def _run_training(self) -> None:
        try:
            logger.info(
                f"Starting training: epochs={self.epochs}, "
                f"batch_size={self.batch_size}, train_size={self.train_size}, "
                f"augmentation={self.use_augmentation}"
            )
            self._notify('on_status_changed', "Generating training data...")
            images, labels = self._generate_training_data()

            for epoch in range(self.epochs):
                if self._stop_requested:
                    break

                self._notify('on_status_changed',
                             f"Training epoch {epoch + 1}/{self.epochs}")
                self._notify('on_progress_changed', (epoch * 100) // self.epochs)

                self._shuffle(images, labels)
                epoch_loss = self._train_epoch(images, labels, epoch)
                if self._stop_requested:
                    break

                self.network.end_epoch()
                logger.info(f"Epoch {epoch + 1}/{self.epochs}: loss {epoch_loss:.4f}")
                self._notify('on_epoch_completed', epoch + 1, epoch_loss)

                if (epoch + 1) % EVALUATE_EVERY == 0:
                    self.evaluate_model()

            if not self._stop_requested:
                self._notify('on_status_changed', "Final evaluation...")
                self.evaluate_model()
            else:
                logger.info("Training stopped before completion")

        except Exception as e:
            self._run_failed = True
            logger.exception(f"Training failed: {e}")
            self._notify('on_error', f"Training error: {e}")

        finally:
            if not self._stop_requested and not self._run_failed:
                self._notify('on_status_changed', "Saving model...")
                self.save_model(self.model_path)

            self._is_training = False
            self._notify('on_training_completed')

    # ------------------------------------------------------------------
    # Training loop
    # ------------------------------------------------------------------

    def _generate_training_data(self) -> Tuple[np.ndarray, np.ndarray]:
        size = self.source.image_size
        images = np.zeros((self.train_size, 1, size, size))
        labels = np.zeros(self.train_size, dtype=np.int64)

        for i in range(self.train_size):
            digit = i % 10
            images[i] = self.source.generate_digit(digit, TRAIN_NOISE)
            labels[i] = digit

            if i % 100 == 0:
                # Data generation covers the first 10% of progress
                self._notify('on_progress_changed', (i * 10) // self.train_size)
                gevent.sleep(0)

        return images, labels

    def _shuffle(self, images: np.ndarray, labels: np.ndarray) -> None:
        order = self._rng.permutation(len(labels))
        images[:] = images[order]
        labels[:] = labels[order]

    def _train_epoch(self, images: np.ndarray, labels: np.ndarray,
                     epoch: int) -> float:
        """Train one epoch; returns the mean batch loss."""
        num_batches = math.ceil(len(labels) / self.batch_size)
        total_loss = 0.0
        completed = 0

        for batch in range(num_batches):
            if self._stop_requested:
                break

            total_loss += self._train_batch(images, labels, batch, epoch)
            completed += 1

            progress = ((epoch * num_batches + batch + 1) * 100) // (
                self.epochs * num_batches
            )
            self._notify('on_progress_changed', progress)

            # Let other greenlets (HTTP handlers, socket emits) run
            gevent.sleep(0)

        return total_loss / completed if completed else 0.0

    def _train_batch(self, images: np.ndarray, labels: np.ndarray,
                     batch: int, epoch: int) -> float:
        start = batch * self.batch_size
        end = min(start + self.batch_size, len(labels))
        augment = self.use_augmentation and epoch < self.epochs - 2

        batch_loss = 0.0
        for i in range(start, end):
            image = images[i]
            if augment:
                image = augment_image(image, self._rng)
            batch_loss += self.network.train(image, int(labels[i]))

        return batch_loss / (end - start)

    # ------------------------------------------------------------------
    # Evaluation and prediction
    # ------------------------------------------------------------------

    def evaluate_model(self) -> float:
        """Accuracy on freshly generated test images; notifies the listener."""
        images, labels = self.source.generate_batch(self.test_size, TEST_NOISE)

        correct = 0
        for image, label in zip(images, labels):
            if self.network.predict(image) == label:
                correct += 1

        accuracy = correct / self.test_size
        logger.info(f"Evaluation accuracy: {accuracy:.2%}")
        self._notify('on_accuracy_updated', accuracy)
        return accuracy

    def evaluate_detailed(self) -> EvaluationResult:
        """Accuracy with a confusion matrix and per-class accuracies."""
        images, labels = self.source.generate_batch(self.test_size, TEST_NOISE)
        num_classes = self.network.num_classes
        confusion = np.zeros((num_classes, num_classes), dtype=np.int64)

        for image, label in zip(images, labels):
            confusion[label, self.network.predict(image)] += 1

        accuracy = float(np.trace(confusion)) / self.test_size
        totals = confusion.sum(axis=1)
        class_accuracies = np.divide(
            np.diag(confusion), totals,
            out=np.zeros(num_classes), where=totals > 0
        )
        return EvaluationResult(accuracy, confusion, class_accuracies)

    def predict(self, image: np.ndarray) -> PredictionResult:
        """
        Classify one image.

        Args:
            image: Volume (1, S, S) or plane (S, S)
        """
        if image.ndim == 2:
            image = image[np.newaxis]
        probabilities = self.network.forward(image)
        return PredictionResult(tensor_ops.argmax(probabilities), probabilities)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_model(self, filepath: str) -> bool:
        """Save the network; failures are reported to the listener."""
        try:
            save_model(self.network, filepath)
        except OSError as e:
            logger.error(f"Failed to save model to {filepath}: {e}")
            self._notify('on_error', f"Failed to save model: {e}")
            return False

        self._notify('on_model_saved', filepath)
        return True

    def load_model(self, filepath: str) -> bool:
        """
        Replace the network with one loaded from a file.

        On any failure the current network stays in place.
        """
        if self._is_training:
            self._notify('on_error', "Cannot load a model while training")
            return False
        if not self.model_file_exists(filepath):
            self._notify('on_error', f"Model file not found: {filepath}")
            return False

        try:
            network = load_model(filepath, seed=self.seed, executor=self.executor)
        except OSError as e:
            logger.error(f"Failed to load model from {filepath}: {e}")
            self._notify('on_error', f"Failed to load model: {e}")
            return False

        self.network = network
        self._notify('on_model_loaded', filepath)
        self.evaluate_model()
        return True

    @staticmethod
    def model_file_exists(filepath: str) -> bool:
        return os.path.exists(filepath)
