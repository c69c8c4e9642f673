"""
Face Identity Index

Registers reference faces as identity vectors and answers "who does this
face most resemble" with nearest-neighbor search, normalizing detector
bounding boxes of any coordinate convention along the way.
"""

__version__ = "1.0.0"
__author__ = "Face Recognition System Team"

from .geometry import CoordinateConvention, RawRect, DetectionRect, normalize_rect
from .vector_store import IdentityRecord, SearchResult, VectorStore, InMemoryVectorStore, create_vector_store
from .embedding_client import EmbeddingClient, HttpEmbeddingClient
from .recognizer import FaceRecognizer

__all__ = [
    "CoordinateConvention",
    "RawRect",
    "DetectionRect",
    "normalize_rect",
    "IdentityRecord",
    "SearchResult",
    "VectorStore",
    "InMemoryVectorStore",
    "create_vector_store",
    "EmbeddingClient",
    "HttpEmbeddingClient",
    "FaceRecognizer"
]
