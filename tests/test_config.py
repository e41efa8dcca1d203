"""
test_config.py
~~~~~~~~~~~~~~

Tests for environment-driven configuration.
"""

import logging

import pytest

from digitcnn.config import TrainingConfig, configure_logging, is_production

ENV_VARS = ('EPOCHS', 'BATCH_SIZE', 'LEARNING_RATE', 'AUGMENT', 'TRAIN_SIZE',
            'TEST_SIZE', 'SEED', 'MODEL_PATH', 'MODEL_DIR', 'CONV_WORKERS')


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.mark.unit
class TestTrainingConfig:

    def test_defaults(self):
        config = TrainingConfig.from_env()
        assert config == TrainingConfig()
        assert config.epochs == 10
        assert config.batch_size == 32
        assert config.learning_rate == 0.001
        assert config.use_augmentation is True
        assert config.seed is None
        assert config.conv_workers is None

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv('EPOCHS', '3')
        monkeypatch.setenv('LEARNING_RATE', '0.01')
        monkeypatch.setenv('AUGMENT', 'off')
        monkeypatch.setenv('SEED', '42')
        monkeypatch.setenv('MODEL_DIR', '/tmp/registry')
        monkeypatch.setenv('CONV_WORKERS', '4')

        config = TrainingConfig.from_env()
        assert config.epochs == 3
        assert config.learning_rate == 0.01
        assert config.use_augmentation is False
        assert config.seed == 42
        assert config.model_dir == '/tmp/registry'
        assert config.conv_workers == 4

    def test_empty_value_uses_default(self, monkeypatch):
        monkeypatch.setenv('BATCH_SIZE', '')
        assert TrainingConfig.from_env().batch_size == 32

    @pytest.mark.parametrize("name,value", [
        ('EPOCHS', 'ten'),
        ('LEARNING_RATE', 'fast'),
        ('AUGMENT', 'maybe'),
    ])
    def test_unparseable_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValueError, match=name):
            TrainingConfig.from_env()

    @pytest.mark.parametrize("name,value", [
        ('EPOCHS', '0'),
        ('BATCH_SIZE', '-1'),
        ('LEARNING_RATE', '0'),
        ('TEST_SIZE', '0'),
        ('CONV_WORKERS', '0'),
    ])
    def test_out_of_range_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValueError):
            TrainingConfig.from_env()


@pytest.mark.unit
class TestConfigureLogging:

    @pytest.fixture(autouse=True)
    def restore_levels(self):
        names = ('werkzeug', 'socketio', 'digitcnn')
        saved = {name: logging.getLogger(name).level for name in names}
        yield
        for name, level in saved.items():
            logging.getLogger(name).setLevel(level)

    def test_production_quiets_socket_loggers(self, monkeypatch):
        monkeypatch.setenv('FLASK_ENV', 'production')
        configure_logging()

        assert is_production()
        assert logging.getLogger('werkzeug').level == logging.WARNING
        assert logging.getLogger('socketio').level == logging.WARNING
        assert logging.getLogger('digitcnn').level == logging.INFO

    def test_development_keeps_socket_loggers_at_info(self, monkeypatch):
        monkeypatch.delenv('FLASK_ENV', raising=False)
        configure_logging()

        assert not is_production()
        assert logging.getLogger('socketio').level == logging.INFO
