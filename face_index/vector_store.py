"""
Vector Database Module

Stores identity records (id, face embedding, metadata) and answers
K-nearest-neighbor queries with optional metadata filtering.

The VectorStore interface is backed by either an exact in-process engine
(scikit-learn pairwise distances, optional pickle persistence) or ChromaDB
(see chroma_store.py).
"""

import numpy as np
import logging
import math
import os
import pickle
import tempfile
import threading
import collections.abc
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any, Callable, Union, Mapping
from sklearn.metrics.pairwise import cosine_distances, euclidean_distances

from .errors import (
    DimensionMismatch,
    IndexNotInitialized,
    IndexSchemaConflict,
    InvalidMetadata,
    InvalidVector,
    NotFound,
)

logger = logging.getLogger(__name__)

SUPPORTED_METRICS = ('cosine', 'euclidean')

MetadataValue = Union[str, int, float]
MetadataFilter = Union[Mapping[str, MetadataValue], Callable[[Dict[str, MetadataValue]], bool]]


@dataclass
class IdentityRecord:
    """A registered identity: caller id, face embedding and metadata."""

    id: str
    vector: np.ndarray
    metadata: Dict[str, MetadataValue] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.vector = np.asarray(self.vector, dtype=np.float32).reshape(-1)

    def copy(self) -> 'IdentityRecord':
        return IdentityRecord(
            id=self.id,
            vector=self.vector.copy(),
            metadata=dict(self.metadata),
            created_at=self.created_at,
        )

    def to_dict(self, include_vector: bool = False) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'metadata': dict(self.metadata),
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'vectorDimension': int(self.vector.shape[0]),
        }
        if include_vector:
            data['vector'] = self.vector.tolist()
        return data


@dataclass(frozen=True)
class SearchResult:
    id: str
    distance: float
    metadata: Dict[str, MetadataValue]

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'distance': self.distance, 'metadata': dict(self.metadata)}


def validate_metric(metric: str) -> str:
    metric = metric.lower()
    if metric not in SUPPORTED_METRICS:
        raise ValueError(f"Unsupported distance metric: {metric}")
    return metric


def validate_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, MetadataValue]:
    """
    Check that metadata is a flat mapping of string keys to strings or numbers.

    Keys starting with an underscore are reserved for store bookkeeping.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, collections.abc.Mapping):
        raise InvalidMetadata(f"Metadata must be a mapping, got {type(metadata).__name__}")

    clean = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not key:
            raise InvalidMetadata(f"Metadata keys must be non-empty strings, got {key!r}")
        if key.startswith('_'):
            raise InvalidMetadata(f"Metadata key '{key}' is reserved")
        # bool is an int subclass but not a valid metadata value
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise InvalidMetadata(f"Metadata value for '{key}' must be a string or number")
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidMetadata(f"Metadata value for '{key}' must be finite")
        clean[key] = value
    return clean


def build_predicate(metadata_filter: Optional[MetadataFilter]) -> Optional[Callable[[Dict[str, MetadataValue]], bool]]:
    """Turn a mapping of equality constraints or a callable into a predicate."""
    if metadata_filter is None:
        return None
    if callable(metadata_filter):
        return metadata_filter
    if isinstance(metadata_filter, collections.abc.Mapping):
        constraints = dict(metadata_filter)
        if not constraints:
            return None
        return lambda metadata: all(
            key in metadata and metadata[key] == value for key, value in constraints.items()
        )
    raise ValueError(f"Unsupported filter type: {type(metadata_filter).__name__}")


def validate_k(k: int):
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k <= 0:
        raise ValueError(f"k must be a positive integer, got {k!r}")


def pairwise_distances(query: np.ndarray, vectors: np.ndarray, metric: str) -> np.ndarray:
    """Distances from one query to each row of vectors."""
    if metric == 'cosine':
        # sklearn treats zero vectors as orthogonal to everything
        return cosine_distances(query.reshape(1, -1), vectors)[0]
    return euclidean_distances(query.reshape(1, -1), vectors)[0]


def rank_candidates(candidates: List[tuple], k: int) -> List[tuple]:
    """Order (distance, rank, ...) tuples by distance then insertion rank."""
    return sorted(candidates, key=lambda item: (item[0], item[1]))[:k]


class VectorStore(ABC):
    """Storage and similarity retrieval over identity records."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.vector_config = config.get('vector_store', {})
        self.storage_config = config.get('storage', {})
        self.dimension: Optional[int] = None
        self.metric: Optional[str] = None

    # Schema

    @abstractmethod
    def create_index(self, dimension: int, metric: str = 'cosine') -> None:
        """Create the index, or verify an existing one has the same schema."""

    def _check_schema(self, dimension: int, metric: str):
        if self.dimension is not None and (self.dimension != dimension or self.metric != metric):
            raise IndexSchemaConflict(
                f"Index exists with dimension={self.dimension}, metric={self.metric}; "
                f"requested dimension={dimension}, metric={metric}"
            )

    def _require_index(self):
        if self.dimension is None:
            raise IndexNotInitialized("create_index must be called before use")

    def _validate_vector(self, vector: np.ndarray) -> np.ndarray:
        self._require_index()
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, int(vector.shape[0]))
        if not np.all(np.isfinite(vector)):
            raise InvalidVector("Vector contains NaN or infinite values")
        return vector

    # Records

    @abstractmethod
    def upsert(self, record: IdentityRecord) -> IdentityRecord:
        """Insert or fully replace the record at record.id."""

    @abstractmethod
    def knn_search(self, query: np.ndarray, k: int,
                   metadata_filter: Optional[MetadataFilter] = None) -> List[SearchResult]:
        """Return up to k nearest records, most similar first."""

    @abstractmethod
    def delete_by_id(self, identity_id: str) -> bool:
        """Remove a record; absent ids are not an error."""

    @abstractmethod
    def get_by_id(self, identity_id: str) -> IdentityRecord:
        """Return a copy of the record or raise NotFound."""

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def list_ids(self) -> List[str]:
        pass

    def get_statistics(self) -> Dict[str, Any]:
        """Get database statistics."""
        return {
            'backend': self.backend,
            'total_records': self.count(),
            'dimension': self.dimension,
            'similarity_metric': self.metric,
        }

    def close(self):
        pass

    def __len__(self):
        return self.count()


@dataclass(frozen=True)
class _Entry:
    """Committed record state. Replaced wholesale, never mutated."""

    record: IdentityRecord
    rank: int


class InMemoryVectorStore(VectorStore):
    """Exact brute-force KNN over in-process numpy arrays."""

    backend = 'sklearn'

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the in-memory store.

        Args:
            config: Configuration dictionary; storage.database_file enables
                pickle persistence when storage.persist is true
        """
        super().__init__(config or {})
        self.database_file = self.storage_config.get('database_file')
        self.persist = bool(self.storage_config.get('persist', False)) and bool(self.database_file)

        self._lock = threading.RLock()
        self._entries: Dict[str, _Entry] = {}
        self._next_rank = 0

        if self.persist:
            self.load_database()

        logger.info(f"Vector store initialized with backend: {self.backend}")

    def create_index(self, dimension: int, metric: str = 'cosine') -> None:
        metric = validate_metric(metric)
        if dimension <= 0:
            raise ValueError(f"Dimension must be positive, got {dimension}")

        with self._lock:
            if self.dimension is not None:
                self._check_schema(dimension, metric)
                logger.debug("Index already exists with matching schema")
                return
            self.dimension = int(dimension)
            self.metric = metric
            try:
                self._commit(self._entries, self._next_rank)
            except BaseException:
                self.dimension = None
                self.metric = None
                raise

        logger.info(f"Index created with dimension={dimension}, metric={metric}")

    def upsert(self, record: IdentityRecord) -> IdentityRecord:
        vector = self._validate_vector(record.vector)
        metadata = validate_metadata(record.metadata)

        stored = IdentityRecord(
            id=str(record.id),
            vector=vector.copy(),
            metadata=metadata,
            created_at=datetime.now(),
        )

        with self._lock:
            replaced = stored.id in self._entries
            entries = dict(self._entries)
            entries[stored.id] = _Entry(record=stored, rank=self._next_rank)
            self._commit(entries, self._next_rank + 1)

        logger.debug(f"{'Replaced' if replaced else 'Added'} record {stored.id}")
        return stored.copy()

    def knn_search(self, query: np.ndarray, k: int,
                   metadata_filter: Optional[MetadataFilter] = None) -> List[SearchResult]:
        validate_k(k)
        query = self._validate_vector(query)
        predicate = build_predicate(metadata_filter)

        with self._lock:
            entries = list(self._entries.values())

        if predicate is not None:
            entries = [entry for entry in entries if predicate(dict(entry.record.metadata))]
        if not entries:
            return []

        vectors = np.stack([entry.record.vector for entry in entries])
        distances = pairwise_distances(query, vectors, self.metric)

        candidates = [(float(distances[i]), entry.rank, entry) for i, entry in enumerate(entries)]
        return [
            SearchResult(id=entry.record.id, distance=distance, metadata=dict(entry.record.metadata))
            for distance, _, entry in rank_candidates(candidates, k)
        ]

    def delete_by_id(self, identity_id: str) -> bool:
        with self._lock:
            removed = identity_id in self._entries
            if removed:
                entries = dict(self._entries)
                del entries[identity_id]
                self._commit(entries, self._next_rank)

        if removed:
            logger.info(f"Removed record {identity_id}")
        return removed

    def get_by_id(self, identity_id: str) -> IdentityRecord:
        with self._lock:
            entry = self._entries.get(identity_id)
        if entry is None:
            raise NotFound(identity_id)
        return entry.record.copy()

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def list_ids(self) -> List[str]:
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda entry: entry.rank)
        return [entry.record.id for entry in entries]

    # Persistence

    def _commit(self, entries: Dict[str, _Entry], next_rank: int):
        """Persist the new state, then make it visible. Caller holds the lock."""
        if self.persist:
            self._write_database(self.database_file, entries, next_rank)
        self._entries = entries
        self._next_rank = next_rank

    def save_database(self, filepath: Optional[str] = None) -> None:
        """
        Save the store to a pickle file.

        The file is written to a temporary path and renamed into place.
        """
        with self._lock:
            self._write_database(filepath or self.database_file, self._entries, self._next_rank)

    def _write_database(self, filepath: str, entries: Dict[str, _Entry], next_rank: int):
        directory = os.path.dirname(os.path.abspath(filepath))
        os.makedirs(directory, exist_ok=True)

        data = {
            'dimension': self.dimension,
            'metric': self.metric,
            'next_rank': next_rank,
            'records': [
                {
                    'id': entry.record.id,
                    'vector': entry.record.vector,
                    'metadata': entry.record.metadata,
                    'created_at': entry.record.created_at,
                    'rank': entry.rank,
                }
                for entry in entries.values()
            ],
            'save_timestamp': datetime.now().isoformat(),
            'version': '2.0',
        }

        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'wb') as f:
                pickle.dump(data, f)
            os.replace(tmp_path, filepath)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.debug(f"Database saved to {filepath}")

    def load_database(self, filepath: Optional[str] = None) -> bool:
        """
        Load the store from a pickle file.

        Returns:
            True if a database was loaded, False if none exists
        """
        filepath = filepath or self.database_file
        if not os.path.exists(filepath):
            logger.info("No existing database found, starting fresh")
            return False

        with open(filepath, 'rb') as f:
            data = pickle.load(f)

        with self._lock:
            self.dimension = data.get('dimension')
            self.metric = data.get('metric')
            self._next_rank = data.get('next_rank', 0)
            self._entries = {}
            for item in data.get('records', []):
                record = IdentityRecord(
                    id=item['id'],
                    vector=item['vector'],
                    metadata=item['metadata'],
                    created_at=item['created_at'],
                )
                self._entries[record.id] = _Entry(record=record, rank=item['rank'])

        logger.info(f"Database loaded from {filepath}")
        logger.info(f"Loaded {len(self._entries)} records")
        return True


def create_vector_store(config: Dict[str, Any]) -> VectorStore:
    """Build the store selected by vector_store.backend."""
    backend = config.get('vector_store', {}).get('backend', 'chromadb')

    if backend == 'chromadb':
        from .chroma_store import ChromaVectorStore
        return ChromaVectorStore(config)
    if backend in ('sklearn', 'memory'):
        return InMemoryVectorStore(config)

    raise ValueError(f"Unsupported vector store backend: {backend}")
