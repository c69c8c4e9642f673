"""
Error Taxonomy

Every error raised by the core carries the stage it came from, so operators
can tell bad detector output apart from an unavailable embedding service or
storage problem.
"""

from typing import Optional


class FaceIndexError(Exception):
    """Base class for all face index errors."""

    stage = 'core'

    def __init__(self, message: str, stage: Optional[str] = None):
        if stage is not None:
            self.stage = stage
        self.message = message
        super().__init__(f"[{self.stage}] {message}")


# Geometry stage

class GeometryError(FaceIndexError):
    stage = 'geometry'


class DegenerateRegion(GeometryError):
    """The normalizer could not produce a usable rectangle."""


# Embedding stage

class EmbeddingError(FaceIndexError):
    """Raised by embedding clients on remote failure, bad image or no face."""

    stage = 'embedding'

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class EmbeddingFailed(EmbeddingError):
    """Embedding could not be obtained; nothing was written."""


class EmbeddingTimeout(EmbeddingFailed):
    """Embedding call did not complete within the configured timeout."""


# Index stage

class IndexStoreError(FaceIndexError):
    stage = 'index'


class IndexNotInitialized(IndexStoreError):
    """create_index has not been called on this store."""


class IndexSchemaConflict(IndexStoreError):
    """An index already exists with an incompatible dimension or metric."""


class DimensionMismatch(IndexStoreError):

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector has {actual} components, index expects {expected}")


class InvalidVector(IndexStoreError):
    pass


class InvalidMetadata(IndexStoreError):
    pass


class NotFound(IndexStoreError):

    def __init__(self, identity_id: str):
        self.identity_id = identity_id
        super().__init__(f"Identity '{identity_id}' not found")
