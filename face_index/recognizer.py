"""
Face Recognition Module

Composes the embedding client and the vector store into the operations
callers use: register an identity from a face image, find the identities a
face most resembles, and look up or remove registered identities.
"""

import numpy as np
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import datetime
from typing import Dict, List, Optional, Any

from .embedding_client import EmbeddingClient, create_embedding_client
from .errors import EmbeddingError, EmbeddingFailed, EmbeddingTimeout
from .face_detector import FaceDetector
from .geometry import RawRect
from .vector_store import (
    VectorStore,
    IdentityRecord,
    SearchResult,
    MetadataFilter,
    create_vector_store,
    validate_metadata,
    validate_k,
)

logger = logging.getLogger(__name__)


class FaceRecognizer:
    """Registration and similarity search over face identities."""

    def __init__(self, config: Dict[str, Any],
                 embedding_client: EmbeddingClient,
                 vector_store: VectorStore,
                 face_detector: Optional[FaceDetector] = None):
        """
        Initialize face recognizer.

        The index is created (or verified) with the configured dimension and
        metric before the recognizer accepts requests.

        Args:
            config: Configuration dictionary
            embedding_client: Client used to turn face images into vectors
            vector_store: Store holding the registered identities
            face_detector: Detector used for frame-based operations
        """
        self.config = config
        self.embedding_config = config.get('embedding', {})
        self.vector_config = config.get('vector_store', {})

        self.embedding_timeout = float(self.embedding_config.get('timeout', 30))
        self.max_retries = int(self.embedding_config.get('max_retries', 0))
        self.content_type = self.embedding_config.get('content_type', 'image/jpeg')
        self.dimension = int(self.vector_config.get('dimension', 512))
        self.metric = self.vector_config.get('similarity_metric', 'cosine')

        self.embedding_client = embedding_client
        self.vector_store = vector_store
        self.face_detector = face_detector or FaceDetector(config)
        self._owns_dependencies = False

        self.max_workers = int(self.embedding_config.get('max_workers', 4))
        self._in_flight = 0
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix='embedding'
        )

        self._stats_lock = threading.Lock()
        self.stats = {
            'registrations': 0,
            'searches': 0,
            'deletions': 0,
            'failed_embeddings': 0,
            'embedding_timeouts': 0,
            'session_start': datetime.now().isoformat()
        }

        self.vector_store.create_index(self.dimension, self.metric)

        logger.info("Face recognizer initialized successfully")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'FaceRecognizer':
        """Build a recognizer that owns its embedding client and store."""
        embedding_client = create_embedding_client(config)
        vector_store = create_vector_store(config)
        recognizer = cls(config, embedding_client, vector_store)
        recognizer._owns_dependencies = True
        return recognizer

    def _count(self, key: str):
        with self._stats_lock:
            self.stats[key] += 1

    def _release_worker(self, future):
        with self._stats_lock:
            self._in_flight -= 1

    def _submit_embedding(self, image: bytes, content_type: str):
        """Queue an embedding call; warns when every worker is still busy."""
        with self._stats_lock:
            busy = self._in_flight
            self._in_flight += 1
        if busy >= self.max_workers:
            # Timed-out calls keep their worker until the remote side answers
            logger.warning(f"All {self.max_workers} embedding workers are busy "
                           f"({busy} calls in flight); request is queued")
        future = self._executor.submit(self.embedding_client.embed, image, content_type)
        future.add_done_callback(self._release_worker)
        return future

    def _embed(self, image: bytes, content_type: str) -> np.ndarray:
        """
        Call the embedding client with a bounded wait.

        Timeouts are retried up to max_retries times with a fresh call; any
        other embedding failure is raised immediately.
        """
        attempts = self.max_retries + 1
        last_timeout = None

        for attempt in range(1, attempts + 1):
            future = self._submit_embedding(image, content_type)
            try:
                return future.result(timeout=self.embedding_timeout)
            except (FuturesTimeout, EmbeddingTimeout) as e:
                # The remote call keeps running; only the wait is abandoned
                future.cancel()
                self._count('embedding_timeouts')
                logger.warning(f"Embedding attempt {attempt}/{attempts} timed out")
                last_timeout = e
            except EmbeddingError as e:
                self._count('failed_embeddings')
                logger.error(f"Embedding failed: {e.reason}")
                raise EmbeddingFailed(e.reason) from e
            except Exception as e:
                self._count('failed_embeddings')
                logger.error(f"Embedding client error: {e}")
                raise EmbeddingFailed(f"Embedding client error: {e}") from e

        raise EmbeddingTimeout(
            f"Embedding did not complete within {self.embedding_timeout}s "
            f"after {attempts} attempt(s)"
        ) from last_timeout

    def register_identity(self, identity_id: str, image: bytes,
                          metadata: Optional[Dict[str, Any]] = None,
                          content_type: Optional[str] = None) -> IdentityRecord:
        """
        Register (or re-register) an identity from a face image.

        Nothing is written unless the embedding succeeds.

        Args:
            identity_id: Caller-chosen unique id; an existing id is replaced
            image: Encoded face image
            metadata: Flat string/number metadata stored with the vector
            content_type: MIME type of the image

        Returns:
            The stored record

        Raises:
            EmbeddingFailed: The image could not be embedded
            EmbeddingTimeout: The embedding service did not answer in time
            DimensionMismatch: The embedding does not match the index dimension
        """
        if not identity_id:
            raise ValueError("identity_id is required")
        metadata = validate_metadata(metadata)

        vector = self._embed(image, content_type or self.content_type)
        record = self.vector_store.upsert(
            IdentityRecord(id=identity_id, vector=vector, metadata=metadata)
        )

        self._count('registrations')
        logger.info(f"Registered identity {identity_id}")
        return record

    def find_similar(self, image: bytes, k: int = 5,
                     metadata_filter: Optional[MetadataFilter] = None,
                     content_type: Optional[str] = None) -> List[SearchResult]:
        """
        Find the registered identities most similar to a face image.

        Args:
            image: Encoded face image
            k: Maximum number of results
            metadata_filter: Equality constraints or predicate over metadata
            content_type: MIME type of the image

        Returns:
            Results ordered by ascending distance
        """
        validate_k(k)

        vector = self._embed(image, content_type or self.content_type)
        results = self.vector_store.knn_search(vector, k, metadata_filter)

        self._count('searches')
        logger.debug(f"Search returned {len(results)} results")
        return results

    def register_from_detection(self, identity_id: str, frame: np.ndarray, raw_rect: RawRect,
                                metadata: Optional[Dict[str, Any]] = None,
                                confidence: float = 1.0) -> IdentityRecord:
        """
        Register an identity from a detector rectangle within a frame.

        Raises:
            DegenerateRegion: The rectangle yields no usable crop; nothing is embedded
        """
        face_bytes, rect = self.face_detector.extract_face(frame, raw_rect, confidence)
        logger.debug(f"Cropped face at {rect.to_dict()}")
        return self.register_identity(identity_id, face_bytes, metadata, content_type='image/jpeg')

    def find_similar_in_frame(self, frame: np.ndarray, raw_rect: RawRect, k: int = 5,
                              metadata_filter: Optional[MetadataFilter] = None,
                              confidence: float = 1.0) -> List[SearchResult]:
        """Search with the face found at a detector rectangle within a frame."""
        face_bytes, _ = self.face_detector.extract_face(frame, raw_rect, confidence)
        return self.find_similar(face_bytes, k, metadata_filter, content_type='image/jpeg')

    def get_identity(self, identity_id: str) -> IdentityRecord:
        return self.vector_store.get_by_id(identity_id)

    def delete_identity(self, identity_id: str) -> bool:
        removed = self.vector_store.delete_by_id(identity_id)
        if removed:
            self._count('deletions')
        return removed

    def list_identities(self) -> List[str]:
        return self.vector_store.list_ids()

    def health(self) -> Dict[str, Any]:
        """Embedding service availability and index statistics."""
        return {
            'embedding_service': self.embedding_client.health_check(),
            'index': self.vector_store.get_statistics(),
        }

    def get_recognition_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self.stats)
            stats['embedding_calls_in_flight'] = self._in_flight
        stats['total_identities'] = self.vector_store.count()
        return stats

    def close(self):
        """Stop the embedding worker pool and close owned dependencies."""
        self._executor.shutdown(wait=False)
        if self._owns_dependencies:
            self.embedding_client.close()
            self.vector_store.close()
        logger.info("Face recognizer closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
