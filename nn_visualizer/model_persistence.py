"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-based persistence for trained network descriptors.

Only precomputed structures, weights and biases are stored; networks are
never trained here. Weights and biases are kept as raw little-endian
float64 blobs so nothing has to be unpickled on load.
"""

import sqlite3
import json
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager
import numpy as np

from nn_visualizer.network import NetworkDescriptor, MalformedDescriptorError

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = 'models'

_BLOB_DTYPE = np.dtype('<f8')


def _to_blob(values: np.ndarray) -> bytes:
    return np.asarray(values, dtype=_BLOB_DTYPE).tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=_BLOB_DTYPE)


def _layer_shapes(structure: List[int]) -> Dict[str, List[List[int]]]:
    """Weight and bias matrix shapes implied by a structure."""
    return {
        'weights_shape': [
            [structure[i+1], structure[i]]
            for i in range(len(structure) - 1)
        ],
        'biases_shape': [
            [structure[i+1], 1]
            for i in range(len(structure) - 1)
        ],
    }


def read_descriptor_file(path: str) -> NetworkDescriptor:
    """
    Load a descriptor exported by the training side.

    Args:
        path: ``.json`` file or ``.npz`` archive holding ``structure``,
            ``weights`` and ``biases``

    Returns:
        NetworkDescriptor: The validated descriptor

    Raises:
        MalformedDescriptorError: If the three sequences disagree in size
        ValueError: If the file type is not supported or a key is missing
    """
    _, extension = os.path.splitext(path)
    extension = extension.lower()

    if extension == '.json':
        with open(path, 'r', encoding='utf-8') as f:
            payload = json.load(f)
    elif extension == '.npz':
        with np.load(path) as archive:
            payload = {key: archive[key] for key in archive.files}
        if 'structure' in payload:
            payload['structure'] = [int(size) for size in payload['structure']]
    else:
        raise ValueError(f"Unsupported descriptor file type: {path}")

    missing = [key for key in ('structure', 'weights', 'biases')
               if key not in payload]
    if missing:
        raise ValueError(f"Descriptor file {path} is missing {missing}")

    descriptor = NetworkDescriptor(
        payload['structure'], payload['weights'], payload['biases']
    )
    logger.info(f"Read descriptor {list(descriptor.structure)} from {path}")
    return descriptor


class ModelDatabase:
    """
    Manages SQLite database for network descriptor persistence.

    The database stores:
    - Network metadata (structure, accuracy, timestamps)
    - Flat weights and biases as binary blobs
    """

    def __init__(self, db_path: str = f'{DEFAULT_MODEL_DIR}/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    structure TEXT NOT NULL,
                    weights BLOB NOT NULL,
                    biases BLOB NOT NULL,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    def save_network_to_db(
        self,
        descriptor: NetworkDescriptor,
        network_id: str,
        accuracy: Optional[float] = None
    ) -> bool:
        """
        Save a descriptor to the database.

        Args:
            descriptor: Descriptor to save
            network_id: Unique identifier for the network
            accuracy: Accuracy measured on a sample set (0.0 to 1.0)

        Returns:
            bool: True if successful

        Raises:
            ValueError: If accuracy is out of valid range
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        structure_json = json.dumps(list(descriptor.structure))

        with self._get_connection() as conn:
            cursor = conn.cursor()
            # Keep the original created_at when a network is overwritten
            cursor.execute('''
                INSERT INTO networks
                (network_id, structure, weights, biases, accuracy, updated_at)
                VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(network_id) DO UPDATE SET
                    structure = excluded.structure,
                    weights = excluded.weights,
                    biases = excluded.biases,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                structure_json,
                _to_blob(descriptor.weights),
                _to_blob(descriptor.biases),
                accuracy
            ))

        logger.info(
            f"Saved network '{network_id}' with structure "
            f"{list(descriptor.structure)}, accuracy={accuracy}"
        )
        return True

    def load_network_from_db(
        self,
        network_id: str
    ) -> Optional[NetworkDescriptor]:
        """
        Load a descriptor from the database.

        Args:
            network_id: Unique identifier of the network

        Returns:
            NetworkDescriptor or None if not found

        Raises:
            MalformedDescriptorError: If the stored blobs do not match
                the stored structure
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT structure, weights, biases FROM networks '
                'WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Network '{network_id}' not found")
                return None

            descriptor = NetworkDescriptor(
                json.loads(row['structure']),
                _from_blob(row['weights']),
                _from_blob(row['biases'])
            )
            logger.info(f"Loaded network '{network_id}'")
            return descriptor

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """
        List all networks with metadata.

        Returns:
            List of network metadata dictionaries
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    structure,
                    accuracy,
                    created_at,
                    updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')

            networks = []
            for row in cursor.fetchall():
                structure = json.loads(row['structure'])
                networks.append({
                    'network_id': row['network_id'],
                    'structure': structure,
                    **_layer_shapes(structure),
                    'accuracy': row['accuracy'],
                    'created_at': row['created_at'],
                    'updated_at': row['updated_at']
                })

            logger.debug(f"Listed {len(networks)} networks")
            return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Delete a network from the database.

        Args:
            network_id: Unique identifier of the network

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )

            deleted = cursor.rowcount > 0
            if deleted:
                logger.info(f"Deleted network '{network_id}'")
            else:
                logger.warning(
                    f"Could not delete network '{network_id}': not found"
                )
            return deleted

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Get network metadata without reading the weight blobs.

        Args:
            network_id: Unique identifier of the network

        Returns:
            Metadata dictionary or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    structure,
                    accuracy,
                    created_at,
                    updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))

            row = cursor.fetchone()
            if row is None:
                logger.warning(
                    f"Metadata for network '{network_id}' not found"
                )
                return None

            return {
                'network_id': row['network_id'],
                'structure': json.loads(row['structure']),
                'accuracy': row['accuracy'],
                'created_at': row['created_at'],
                'updated_at': row['updated_at']
            }


# Global database instance
_db = None


def _get_db(model_dir: str = DEFAULT_MODEL_DIR) -> ModelDatabase:
    """
    Get the database for ``model_dir``.

    The default directory shares one global instance; any other directory
    gets a fresh one.
    """
    global _db
    if model_dir != DEFAULT_MODEL_DIR:
        return ModelDatabase(db_path=f'{model_dir}/networks.db')
    if _db is None:
        _db = ModelDatabase()
    return _db


def save_network(
    descriptor: NetworkDescriptor,
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR,
    accuracy: Optional[float] = None
) -> bool:
    """
    Save a network descriptor to the SQLite database.

    Args:
        descriptor: The descriptor to save
        network_id: A unique identifier for the network
        model_dir: Directory for the database file
        accuracy: Accuracy on a sample set (0.0 to 1.0), if measured

    Returns:
        bool: True if the save was successful, False otherwise

    Example:
        >>> net = NetworkDescriptor([2, 1], [1.0, 1.0], [0.0])
        >>> save_network(net, "adder")
        True
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False

    try:
        return _get_db(model_dir).save_network_to_db(
            descriptor, network_id, accuracy
        )

    except ValueError as e:
        logger.error(f"Validation error saving network '{network_id}': {e}")
        return False
    except AttributeError as e:
        logger.error(
            f"Serialization error saving network '{network_id}': {e}"
        )
        return False
    except sqlite3.Error as e:
        logger.error(f"Database error saving network '{network_id}': {e}")
        return False
    except Exception as e:
        logger.exception(
            f"Unexpected error saving network '{network_id}': {e}"
        )
        return False


def load_network(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[NetworkDescriptor]:
    """
    Load a network descriptor from the SQLite database.

    Args:
        network_id: The unique identifier of the network to load
        model_dir: Directory where the database is stored

    Returns:
        The loaded descriptor or None if not found or unreadable

    Example:
        >>> net = load_network("adder")
        >>> if net:
        ...     print(f"Loaded network with {net.layer_count} layers")
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)

    except MalformedDescriptorError as e:
        logger.error(f"Stored network '{network_id}' is malformed: {e}")
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error loading network '{network_id}': {e}"
        )
        return None
    except sqlite3.Error as e:
        logger.error(
            f"Database error loading network '{network_id}': {e}"
        )
        return None
    except Exception as e:
        logger.exception(
            f"Unexpected error loading network '{network_id}': {e}"
        )
        return None


def list_saved_networks(
    model_dir: str = DEFAULT_MODEL_DIR
) -> List[Dict[str, Any]]:
    """
    List all saved networks with their metadata.

    Args:
        model_dir: Directory where the database is stored

    Returns:
        list: A list of metadata dictionaries for each saved network
    """
    try:
        return _get_db(model_dir).list_networks_from_db()

    except sqlite3.Error as e:
        logger.error(f"Database error listing networks: {e}")
        return []
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error listing networks: {e}")
        return []
    except Exception as e:
        logger.exception(
            f"Unexpected error listing networks: {e}"
        )
        return []


def delete_network(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> bool:
    """
    Delete a saved network from the database.

    Args:
        network_id: The unique identifier of the network to delete
        model_dir: Directory where the database is stored

    Returns:
        bool: True if deletion was successful, False otherwise
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(f"Database error deleting network '{network_id}': {e}")
        return False
    except Exception as e:
        logger.exception(
            f"Unexpected error deleting network '{network_id}': {e}"
        )
        return False


def get_network_metadata(
    network_id: str,
    model_dir: str = DEFAULT_MODEL_DIR
) -> Optional[Dict[str, Any]]:
    """
    Get metadata for a specific network without loading its parameters.

    Args:
        network_id: The unique identifier of the network
        model_dir: Directory where the database is stored

    Returns:
        dict: Network metadata or None if not found

    Example:
        >>> metadata = get_network_metadata("adder")
        >>> if metadata:
        ...     print(f"Accuracy: {metadata['accuracy']}")
    """
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)

    except sqlite3.Error as e:
        logger.error(
            f"Database error getting metadata for '{network_id}': {e}"
        )
        return None
    except json.JSONDecodeError as e:
        logger.error(
            f"JSON decode error getting metadata for '{network_id}': {e}"
        )
        return None
    except Exception as e:
        logger.exception(
            f"Unexpected error getting metadata for '{network_id}': {e}"
        )
        return None
