"""
Embedding Client Module

Obtains face embeddings from a remote embedding service. The service accepts
a multipart image upload on POST /embed and answers with
{"embedding": [...]} or {"error": "..."}; GET /health probes availability.
"""

import numpy as np
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import requests

from .errors import EmbeddingError, EmbeddingTimeout

logger = logging.getLogger(__name__)


class EmbeddingClient(ABC):
    """Boundary to whatever turns a face image into a vector."""

    @abstractmethod
    def embed(self, image_bytes: bytes, content_type: str = 'image/jpeg') -> np.ndarray:
        """
        Compute the embedding of a face image.

        Raises:
            EmbeddingError: On remote failure, unreadable image or no face
        """

    @abstractmethod
    def health_check(self) -> bool:
        pass

    def close(self):
        pass


class HttpEmbeddingClient(EmbeddingClient):
    """Embedding client for the remote HTTP embedding service."""

    def __init__(self, config: Dict[str, Any], session: Optional[requests.Session] = None):
        """
        Initialize the HTTP client.

        Args:
            config: Configuration dictionary with embedding settings
            session: Optional pre-built requests session
        """
        self.config = config.get('embedding', {})
        self.service_url = self.config.get('service_url', 'http://127.0.0.1:1301').rstrip('/')
        self.timeout = float(self.config.get('timeout', 30))
        self.session = session or requests.Session()

        logger.info(f"Embedding client initialized for {self.service_url}")

    def embed(self, image_bytes: bytes, content_type: str = 'image/jpeg') -> np.ndarray:
        if not image_bytes:
            raise EmbeddingError("Empty image")

        extension = content_type.split('/')[-1] if '/' in content_type else 'jpg'
        files = {'file': (f'upload.{extension}', image_bytes, content_type)}

        try:
            response = self.session.post(f"{self.service_url}/embed", files=files, timeout=self.timeout)
        except requests.Timeout as e:
            logger.warning(f"Embedding service timed out after {self.timeout}s")
            raise EmbeddingTimeout(f"Embedding service timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            logger.error(f"Embedding request failed: {e}")
            raise EmbeddingError(f"Embedding service unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if payload.get('error'):
            raise EmbeddingError(f"Embedding service error: {payload['error']}")
        if response.status_code != 200:
            raise EmbeddingError(f"Embedding service returned HTTP {response.status_code}")

        embedding = payload.get('embedding')
        if not embedding:
            raise EmbeddingError("Embedding service returned no embedding")

        try:
            vector = np.asarray(embedding, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise EmbeddingError("Embedding service returned a malformed vector") from e
        if vector.ndim != 1 or not np.all(np.isfinite(vector)):
            raise EmbeddingError("Embedding service returned a malformed vector")

        logger.debug(f"Received embedding of dimension {vector.shape[0]}")
        return vector

    def health_check(self) -> bool:
        try:
            response = self.session.get(f"{self.service_url}/health", timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Embedding service health check failed: {e}")
            return False
        return response.status_code == 200

    def close(self):
        self.session.close()


def create_embedding_client(config: Dict[str, Any]) -> EmbeddingClient:
    """Build the client selected by embedding.backend."""
    backend = config.get('embedding', {}).get('backend', 'http')

    if backend == 'http':
        return HttpEmbeddingClient(config)
    if backend in ('facenet', 'face_recognition'):
        # Model dependencies are an optional extra
        from .local_embedder import LocalEmbeddingClient
        return LocalEmbeddingClient(config)

    raise ValueError(f"Unsupported embedding backend: {backend}")
