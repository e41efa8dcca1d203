"""
config.py
~~~~~~~~~

Environment-driven configuration.

Environment variables (all optional):

Training:
- EPOCHS: training epochs (default: 10)
- BATCH_SIZE: samples per batch (default: 32)
- LEARNING_RATE: initial Adam step size (default: 0.001)
- AUGMENT: 0/1 or true/false, rotate/shift/noise training images (default: 1)
- TRAIN_SIZE: generated training images per run (default: 6000)
- TEST_SIZE: generated evaluation images (default: 1000)
- SEED: seed for network initialisation, shuffling and augmentation (default: unset)

Persistence:
- MODEL_PATH: auto-save path at the end of a run (default: outputs/digit_cnn.bin)
- MODEL_DIR: directory of the SQLite model registry (default: models)

Execution:
- CONV_WORKERS: worker threads of the parallel convolution pool (default: CPU count)

Logging:
- LOG_LEVEL: root log level name (default: INFO)
- FLASK_ENV: "production" quiets the socket and request loggers
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None or v == "":
        return int(default)
    try:
        return int(v)
    except ValueError as e:
        raise ValueError(f"env var {name} must be an int, got: {v!r}") from e


def _env_optional_int(name: str) -> Optional[int]:
    v = os.environ.get(name)
    if v is None or v == "":
        return None
    return _env_int(name, 0)


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None or v == "":
        return float(default)
    try:
        return float(v)
    except ValueError as e:
        raise ValueError(f"env var {name} must be a float, got: {v!r}") from e


def _env_str(name: str, default: str) -> str:
    v = os.environ.get(name)
    if v is None or v == "":
        return str(default)
    return str(v)


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None or v == "":
        return bool(default)
    s = str(v).strip().lower()
    if s in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "f", "no", "n", "off"}:
        return False
    raise ValueError(f"env var {name} must be bool-like (0/1/true/false), got: {v!r}")


@dataclass(frozen=True)
class TrainingConfig:
    epochs: int = 10
    batch_size: int = 32
    learning_rate: float = 0.001
    use_augmentation: bool = True
    train_size: int = 6000
    test_size: int = 1000
    seed: Optional[int] = None
    model_path: str = 'outputs/digit_cnn.bin'
    model_dir: str = 'models'
    conv_workers: Optional[int] = None

    @classmethod
    def from_env(cls) -> 'TrainingConfig':
        """Build a configuration from environment variables."""
        config = cls(
            epochs=_env_int('EPOCHS', cls.epochs),
            batch_size=_env_int('BATCH_SIZE', cls.batch_size),
            learning_rate=_env_float('LEARNING_RATE', cls.learning_rate),
            use_augmentation=_env_bool('AUGMENT', cls.use_augmentation),
            train_size=_env_int('TRAIN_SIZE', cls.train_size),
            test_size=_env_int('TEST_SIZE', cls.test_size),
            seed=_env_optional_int('SEED'),
            model_path=_env_str('MODEL_PATH', cls.model_path),
            model_dir=_env_str('MODEL_DIR', cls.model_dir),
            conv_workers=_env_optional_int('CONV_WORKERS'),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Raises:
            ValueError: If any numeric setting is out of range
        """
        if self.epochs < 1:
            raise ValueError(f"epochs must be a positive integer, got {self.epochs}")
        if self.batch_size < 1:
            raise ValueError(
                f"batch_size must be a positive integer, got {self.batch_size}"
            )
        if self.learning_rate <= 0:
            raise ValueError(
                f"learning_rate must be a positive number, got {self.learning_rate}"
            )
        if self.train_size < 1 or self.test_size < 1:
            raise ValueError("train_size and test_size must be positive")
        if self.conv_workers is not None and self.conv_workers < 1:
            raise ValueError(
                f"conv_workers must be a positive integer, got {self.conv_workers}"
            )


# Third-party loggers that flood the output during socket traffic
_CHATTY_LOGGERS = ('socketio', 'socketio.server', 'engineio',
                   'engineio.server', 'werkzeug')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def is_production() -> bool:
    return _env_str('FLASK_ENV', 'development') == 'production'


def configure_logging() -> None:
    """
    Install the root handler using LOG_LEVEL.

    Production keeps the package loggers at INFO and raises the socket and
    request loggers to WARNING; development leaves them at INFO.
    """
    level_name = _env_str('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO),
                        format=LOG_FORMAT)

    chatty_level = logging.WARNING if is_production() else logging.INFO
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)
    if is_production():
        logging.getLogger('digitcnn').setLevel(logging.INFO)
