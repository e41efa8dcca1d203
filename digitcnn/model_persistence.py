"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based registry of trained networks.

Each row stores the binary model produced by model_serializer together
with queryable metadata (architecture, training status, accuracy).
The module-level functions are the forgiving entry points used by the
API server: they log database problems and report them through their
return value. ModelDatabase itself lets sqlite3 errors propagate.
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Iterator
from contextlib import closing, contextmanager

from .model_serializer import ModelFormatError, decode_model, encode_model
from .network import Network

logger = logging.getLogger(__name__)

DB_FILENAME = 'networks.db'
DEFAULT_MODEL_DIR = 'models'

_SCHEMA = '''
CREATE TABLE IF NOT EXISTS networks (
    network_id   TEXT PRIMARY KEY,
    architecture TEXT NOT NULL,
    network_data BLOB NOT NULL,
    trained      INTEGER NOT NULL DEFAULT 0,
    accuracy     REAL,
    created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_networks_created
    ON networks(created_at DESC);
'''

_UPSERT = '''
INSERT INTO networks (network_id, architecture, network_data, trained, accuracy)
VALUES (:network_id, :architecture, :network_data, :trained, :accuracy)
ON CONFLICT(network_id) DO UPDATE SET
    architecture = excluded.architecture,
    network_data = excluded.network_data,
    trained = excluded.trained,
    accuracy = excluded.accuracy,
    updated_at = CURRENT_TIMESTAMP
'''

# Everything except the weight blob
_METADATA_COLUMNS = (
    'network_id, architecture, trained, accuracy, created_at, updated_at'
)


def _parameter_shapes(architecture: Dict[str, Any]) -> Dict[str, List[List[int]]]:
    """Weight and bias shapes of every layer, derived from the architecture."""
    weights_shape = []
    biases_shape = []
    for name in ('conv1', 'conv2'):
        conv = architecture[name]
        weights_shape.append([
            conv['out_channels'], conv['in_channels'],
            conv['kernel_size'], conv['kernel_size']
        ])
        biases_shape.append([conv['out_channels']])
    for name in ('fc1', 'fc2'):
        fc = architecture[name]
        weights_shape.append([fc['output_size'], fc['input_size']])
        biases_shape.append([fc['output_size']])
    return {'weights_shape': weights_shape, 'biases_shape': biases_shape}


def _metadata(row: sqlite3.Row) -> Dict[str, Any]:
    info = dict(row)
    info['architecture'] = json.loads(info['architecture'])
    info['trained'] = bool(info['trained'])
    return info


class ModelDatabase:
    """
    One SQLite file holding encoded networks keyed by network id.

    Args:
        db_path: Location of the database file; its directory is created
            on demand
    """

    def __init__(self, db_path: str = os.path.join(DEFAULT_MODEL_DIR, DB_FILENAME)):
        self.db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and roll back on error."""
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Encode `network` and store it, overwriting an existing entry.

        Raises:
            ValueError: If accuracy lies outside [0, 1]
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        blob = encode_model(network)
        with self._transaction() as conn:
            conn.execute(_UPSERT, {
                'network_id': network_id,
                'architecture': json.dumps(network.architecture()),
                'network_data': blob,
                'trained': int(bool(trained)),
                'accuracy': accuracy,
            })

        logger.info(
            f"Stored network '{network_id}' ({len(blob)} bytes, "
            f"trained={trained}, accuracy={accuracy})"
        )
        return True

    def load_network_from_db(self, network_id: str, **network_kwargs) -> Optional[Network]:
        """
        Rebuild a stored network.

        Args:
            network_id: Registry key
            **network_kwargs: Passed on to Network (seed, executor)

        Returns:
            The decoded network, or None when the id is unknown

        Raises:
            ModelFormatError: If the stored blob cannot be decoded
        """
        with self._transaction() as conn:
            row = conn.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"No stored network with id '{network_id}'")
            return None

        network = decode_model(bytes(row['network_data']), **network_kwargs)
        logger.info(f"Restored network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """Metadata plus parameter shapes of every entry, newest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                f'SELECT {_METADATA_COLUMNS} FROM networks '
                f'ORDER BY created_at DESC'
            ).fetchall()

        networks = []
        for row in rows:
            info = _metadata(row)
            info.update(_parameter_shapes(info['architecture']))
            networks.append(info)

        logger.debug(f"Registry holds {len(networks)} network(s)")
        return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        with self._transaction() as conn:
            removed = conn.execute(
                'DELETE FROM networks WHERE network_id = ?', (network_id,)
            ).rowcount > 0

        if removed:
            logger.info(f"Removed network '{network_id}'")
        else:
            logger.warning(f"Nothing to remove for network '{network_id}'")
        return removed

    def delete_old_networks_from_db(self, days: int) -> int:
        """
        Remove entries whose creation time lies more than `days` days back.

        A threshold of 0 removes everything created before the current
        moment.

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._transaction() as conn:
            removed = conn.execute(
                "DELETE FROM networks "
                "WHERE julianday(created_at) < julianday('now', ?)",
                (f'-{days} days',)
            ).rowcount

        logger.info(f"Removed {removed} network(s) older than {days} day(s)")
        return removed

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """Metadata of one entry without touching its weights."""
        with self._transaction() as conn:
            row = conn.execute(
                f'SELECT {_METADATA_COLUMNS} FROM networks '
                f'WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"No metadata for network '{network_id}'")
            return None
        return _metadata(row)


_registries: Dict[str, ModelDatabase] = {}


def _get_db(model_dir: str = DEFAULT_MODEL_DIR) -> ModelDatabase:
    """Registry for `model_dir`, created on first use."""
    db_path = os.path.join(model_dir, DB_FILENAME)
    db = _registries.get(db_path)
    if db is None or not os.path.exists(db_path):
        db = _registries[db_path] = ModelDatabase(db_path=db_path)
    return db


def _valid_id(network_id) -> bool:
    if isinstance(network_id, str) and network_id:
        return True
    logger.error(f"Rejected network id {network_id!r}: must be a non-empty string")
    return False


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    trained: bool = True,
    accuracy: Optional[float] = None
) -> bool:
    """
    Store a network in the registry under `model_dir`.

    Returns:
        True on success; False for an invalid id, an out-of-range
        accuracy or a database error

    Example:
        >>> net = Network(learning_rate=0.001)
        >>> save_network(net, "digits-a", trained=False)
        True
    """
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).save_network_to_db(
            network, network_id, trained, accuracy
        )
    except ValueError as e:
        logger.error(f"Refused to store network '{network_id}': {e}")
    except sqlite3.Error as e:
        logger.error(f"Database error storing network '{network_id}': {e}")
    return False


def load_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR,
                 **network_kwargs) -> Optional[Network]:
    """
    Rebuild a network from the registry.

    Unknown ids, undecodable blobs and database errors all yield None.
    """
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).load_network_from_db(
            network_id, **network_kwargs
        )
    except ModelFormatError as e:
        logger.error(f"Stored model '{network_id}' is corrupt: {e}")
    except sqlite3.Error as e:
        logger.error(f"Database error restoring network '{network_id}': {e}")
    return None


def list_saved_networks(
    model_dir: str = DEFAULT_MODEL_DIR
) -> List[Dict[str, Any]]:
    """
    Metadata of every stored network; empty when the registry is unreadable.

    Example:
        >>> for entry in list_saved_networks():
        ...     print(entry['network_id'], entry['accuracy'])
    """
    try:
        return _get_db(model_dir).list_networks_from_db()
    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
    except (json.JSONDecodeError, KeyError) as e:
        logger.error(f"Unreadable architecture in registry: {e}")
    return []


def delete_network(network_id: str, model_dir: str = DEFAULT_MODEL_DIR) -> bool:
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Database error removing network '{network_id}': {e}")
        return False


def delete_old_networks(days: int = 2, model_dir: str = DEFAULT_MODEL_DIR) -> int:
    """
    Purge networks older than `days` days.

    Returns:
        Number of removed networks, or -1 when the database failed

    Raises:
        ValueError: If days is negative
    """
    try:
        return _get_db(model_dir).delete_old_networks_from_db(days)
    except sqlite3.Error as e:
        logger.error(f"Database error purging old networks: {e}")
        return -1


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)
    except (sqlite3.Error, json.JSONDecodeError) as e:
        logger.error(f"Could not read metadata for '{network_id}': {e}")
        return None
