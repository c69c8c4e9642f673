"""
ChromaDB Vector Store

VectorStore engine backed by a ChromaDB collection. Chroma owns indexing and
persistence; this module adds the schema checks, insertion ranks and result
ordering the VectorStore contract requires on top of it.
"""

import numpy as np
import logging
import os
import threading
import collections.abc
from datetime import datetime
from typing import Dict, List, Optional, Any, Tuple
import chromadb

from .errors import IndexSchemaConflict, NotFound
from .vector_store import (
    VectorStore,
    IdentityRecord,
    SearchResult,
    MetadataFilter,
    validate_metric,
    validate_metadata,
    validate_k,
    rank_candidates,
)

logger = logging.getLogger(__name__)

RANK_KEY = '_rank'
CREATED_KEY = '_created_at'

METRIC_TO_SPACE = {'cosine': 'cosine', 'euclidean': 'l2'}
SPACE_TO_METRIC = {space: metric for metric, space in METRIC_TO_SPACE.items()}


class ChromaVectorStore(VectorStore):
    """Vector store persisted in a ChromaDB collection."""

    backend = 'chromadb'

    def __init__(self, config: Dict[str, Any], client: Optional[Any] = None):
        """
        Initialize the Chroma store.

        Args:
            config: Configuration dictionary with vector_store and storage settings
            client: Existing Chroma client; built from storage settings if omitted
        """
        super().__init__(config)
        self.collection_name = self.vector_config.get('collection_name', 'face_embeddings')
        self.candidate_pool = int(self.vector_config.get('candidate_pool', 32))
        self.embeddings_path = self.storage_config.get('embeddings_path', 'data/embeddings')

        if client is None:
            if self.storage_config.get('persist', True):
                os.makedirs(self.embeddings_path, exist_ok=True)
                client = chromadb.PersistentClient(path=self.embeddings_path)
            else:
                client = chromadb.EphemeralClient()
        self.chroma_client = client
        self.collection = None

        # Guards the id lock table and the rank counter
        self._lock = threading.Lock()
        self._id_locks: Dict[str, threading.Lock] = {}
        self._next_rank = 0

        self._attach_existing()

        logger.info(f"Vector store initialized with backend: {self.backend}")

    def _collection_names(self) -> List[str]:
        # Older Chroma releases return Collection objects, newer ones names
        return [item if isinstance(item, str) else item.name
                for item in self.chroma_client.list_collections()]

    def _attach_existing(self):
        if self.collection_name not in self._collection_names():
            return

        self.collection = self.chroma_client.get_collection(self.collection_name)
        metadata = self.collection.metadata or {}
        self.dimension = metadata.get('dimension')
        self.metric = SPACE_TO_METRIC.get(metadata.get('hnsw:space', 'l2'), 'euclidean')

        if self.dimension is None:
            # Collection created elsewhere; read the dimension off a stored vector
            sample = self.collection.get(limit=1, include=['embeddings'])
            if len(sample['ids']) > 0:
                self.dimension = len(sample['embeddings'][0])

        stored = self.collection.get(include=['metadatas'])
        ranks = [(meta or {}).get(RANK_KEY, -1) for meta in stored['metadatas'] or []]
        self._next_rank = max(ranks, default=-1) + 1

        logger.info(f"Attached to collection '{self.collection_name}' "
                    f"({self.collection.count()} records, dimension={self.dimension})")

    def _id_lock(self, identity_id: str) -> threading.Lock:
        with self._lock:
            lock = self._id_locks.get(identity_id)
            if lock is None:
                lock = self._id_locks[identity_id] = threading.Lock()
            return lock

    def create_index(self, dimension: int, metric: str = 'cosine') -> None:
        metric = validate_metric(metric)
        if dimension <= 0:
            raise ValueError(f"Dimension must be positive, got {dimension}")

        with self._lock:
            if self.collection is not None:
                if self.dimension is None:
                    self._adopt_schema(dimension, metric)
                    return
                self._check_schema(dimension, metric)
                logger.debug(f"Collection '{self.collection_name}' already matches schema")
                return

            self.collection = self.chroma_client.get_or_create_collection(
                name=self.collection_name,
                metadata={
                    'hnsw:space': METRIC_TO_SPACE[metric],
                    'dimension': int(dimension),
                },
            )
            self.dimension = int(dimension)
            self.metric = metric

        logger.info(f"ChromaDB collection ready with dimension: {dimension}, metric: {metric}")

    def _adopt_schema(self, dimension: int, metric: str):
        """Take the dimension of an empty collection that never recorded one."""
        if self.metric != metric:
            raise IndexSchemaConflict(
                f"Collection '{self.collection_name}' uses metric={self.metric}; "
                f"requested metric={metric}"
            )
        self.dimension = int(dimension)
        logger.info(f"Collection '{self.collection_name}' adopted dimension: {dimension}")

    def upsert(self, record: IdentityRecord) -> IdentityRecord:
        vector = self._validate_vector(record.vector)
        metadata = validate_metadata(record.metadata)
        identity_id = str(record.id)
        created_at = datetime.now()

        with self._id_lock(identity_id):
            with self._lock:
                rank = self._next_rank
                self._next_rank += 1

            stored_metadata = dict(metadata)
            stored_metadata[RANK_KEY] = rank
            stored_metadata[CREATED_KEY] = created_at.isoformat()

            previous = self.collection.get(ids=[identity_id], include=['embeddings', 'metadatas'])

            # Chroma merges metadata on upsert; delete first for a full replace
            self.collection.delete(ids=[identity_id])
            try:
                self.collection.add(
                    ids=[identity_id],
                    embeddings=[vector.tolist()],
                    metadatas=[stored_metadata],
                )
            except Exception:
                if len(previous['ids']) > 0:
                    logger.error(f"Write of record {identity_id} failed, restoring previous version")
                    restore = {
                        'ids': [identity_id],
                        'embeddings': [np.asarray(previous['embeddings'][0], dtype=np.float32).tolist()],
                    }
                    if previous['metadatas'][0]:
                        restore['metadatas'] = [previous['metadatas'][0]]
                    self.collection.add(**restore)
                raise

        logger.debug(f"Upserted record {identity_id} (rank {rank})")
        return IdentityRecord(id=identity_id, vector=vector, metadata=metadata, created_at=created_at)

    def knn_search(self, query: np.ndarray, k: int,
                   metadata_filter: Optional[MetadataFilter] = None) -> List[SearchResult]:
        validate_k(k)
        query = self._validate_vector(query)

        total = self.collection.count()
        if total == 0:
            return []

        where = None
        predicate = None
        if callable(metadata_filter):
            predicate = metadata_filter
        elif metadata_filter is not None:
            where = self._build_where(metadata_filter)

        # Callable filters run client-side, so every record is a candidate
        n_results = total if predicate is not None else min(total, max(k, self.candidate_pool))

        while True:
            candidates, fetched = self._query(query, n_results, where, predicate)
            if n_results >= total or fetched < n_results or len(candidates) < k:
                break
            # Records tied with the k-th may lie beyond the fetched window
            kth_distance = sorted(c[0] for c in candidates)[k - 1]
            if max(c[0] for c in candidates) > kth_distance:
                break
            n_results = min(total, n_results * 2)
            logger.debug(f"Ties at the k-th distance, widening candidate window to {n_results}")

        return [
            SearchResult(id=identity_id, distance=distance, metadata=metadata)
            for distance, _, identity_id, metadata in rank_candidates(candidates, k)
        ]

    def _query(self, query: np.ndarray, n_results: int, where: Optional[Dict[str, Any]],
               predicate) -> Tuple[List[tuple], int]:
        """Fetch n_results nearest records as (distance, rank, id, metadata) tuples."""
        response = self.collection.query(
            query_embeddings=[query.tolist()],
            n_results=n_results,
            where=where,
            include=['metadatas', 'distances'],
        )

        ids = response['ids'][0]
        candidates = []
        for identity_id, raw_distance, stored in zip(ids,
                                                     response['distances'][0],
                                                     response['metadatas'][0]):
            metadata = self._user_metadata(stored)
            if predicate is not None and not predicate(dict(metadata)):
                continue
            candidates.append((self._to_distance(raw_distance), (stored or {}).get(RANK_KEY, -1),
                               identity_id, metadata))
        return candidates, len(ids)

    def delete_by_id(self, identity_id: str) -> bool:
        self._require_index()
        with self._id_lock(identity_id):
            existing = self.collection.get(ids=[identity_id], include=['metadatas'])
            if not existing['ids']:
                return False
            self.collection.delete(ids=[identity_id])

        logger.info(f"Removed record {identity_id}")
        return True

    def get_by_id(self, identity_id: str) -> IdentityRecord:
        self._require_index()
        result = self.collection.get(ids=[identity_id], include=['embeddings', 'metadatas'])
        if not result['ids']:
            raise NotFound(identity_id)

        stored = result['metadatas'][0] or {}
        return IdentityRecord(
            id=result['ids'][0],
            vector=np.array(result['embeddings'][0], dtype=np.float32),
            metadata=self._user_metadata(stored),
            created_at=datetime.fromisoformat(stored[CREATED_KEY]) if CREATED_KEY in stored else None,
        )

    def count(self) -> int:
        if self.collection is None:
            return 0
        return self.collection.count()

    def list_ids(self) -> List[str]:
        if self.collection is None:
            return []
        stored = self.collection.get(include=['metadatas'])
        pairs = zip(stored['ids'], stored['metadatas'])
        return [identity_id for identity_id, _ in
                sorted(pairs, key=lambda pair: (pair[1] or {}).get(RANK_KEY, -1))]

    def get_statistics(self) -> Dict[str, Any]:
        stats = super().get_statistics()
        stats.update({
            'collection_name': self.collection_name,
            'embeddings_path': self.embeddings_path,
        })
        return stats

    def _to_distance(self, raw_distance: float) -> float:
        # Chroma reports squared L2 for the l2 space
        raw_distance = max(0.0, float(raw_distance))
        if self.metric == 'euclidean':
            return float(np.sqrt(raw_distance))
        return raw_distance

    @staticmethod
    def _user_metadata(stored: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {key: value for key, value in (stored or {}).items() if not key.startswith('_')}

    @staticmethod
    def _build_where(metadata_filter: MetadataFilter) -> Optional[Dict[str, Any]]:
        """Translate equality constraints into a Chroma where clause."""
        if not isinstance(metadata_filter, collections.abc.Mapping):
            raise ValueError(f"Unsupported filter type: {type(metadata_filter).__name__}")

        clauses = [{key: value} for key, value in metadata_filter.items()]
        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {'$and': clauses}
