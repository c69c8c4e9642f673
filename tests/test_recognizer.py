"""
Unit tests for FaceRecognizer module.
"""

import threading
import time
import unittest
import numpy as np

from face_index.embedding_client import EmbeddingClient
from face_index.errors import (
    DegenerateRegion,
    DimensionMismatch,
    EmbeddingError,
    EmbeddingFailed,
    EmbeddingTimeout,
    InvalidMetadata,
    NotFound,
)
from face_index.geometry import RawRect
from face_index.recognizer import FaceRecognizer
from face_index.vector_store import InMemoryVectorStore


DIM = 128


def unit_vector(index, dim=DIM):
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = 1.0
    return vector


class FakeEmbeddingClient(EmbeddingClient):
    """Returns pre-registered vectors keyed by image bytes."""

    def __init__(self, vectors=None, delay=0.0):
        self.vectors = dict(vectors or {})
        self.delay = delay
        self.calls = 0
        self.healthy = True
        self.closed = False
        self._lock = threading.Lock()

    def embed(self, image_bytes, content_type='image/jpeg'):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if image_bytes not in self.vectors:
            raise EmbeddingError("No face detected")
        return self.vectors[image_bytes]

    def health_check(self):
        return self.healthy

    def close(self):
        self.closed = True


class TestFaceRecognizer(unittest.TestCase):
    """Test cases for FaceRecognizer class."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'embedding': {'timeout': 2, 'max_retries': 0},
            'vector_store': {'backend': 'sklearn', 'dimension': DIM, 'similarity_metric': 'cosine'},
        }
        self.client = FakeEmbeddingClient({
            b'alice': unit_vector(0),
            b'alice_again': unit_vector(1),
            b'bob': unit_vector(2),
            b'short': np.ones(DIM - 1, dtype=np.float32),
        })
        self.store = InMemoryVectorStore(self.config)
        self.recognizer = FaceRecognizer(self.config, self.client, self.store)

    def tearDown(self):
        self.recognizer.close()

    def test_index_created_on_init(self):
        self.assertEqual(self.store.dimension, DIM)
        self.assertEqual(self.store.metric, 'cosine')

    def test_register_then_find_self(self):
        """Querying with the registered vector returns it at distance ~0."""
        self.recognizer.register_identity('alice_1', b'alice', {'name': 'Alice'})

        results = self.recognizer.find_similar(b'alice', k=1)
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].id, 'alice_1')
        self.assertAlmostEqual(results[0].distance, 0.0, places=5)
        self.assertEqual(results[0].metadata, {'name': 'Alice'})

    def test_register_returns_record(self):
        record = self.recognizer.register_identity('alice_1', b'alice')
        self.assertEqual(record.id, 'alice_1')
        self.assertEqual(record.vector.shape, (DIM,))

    def test_re_register_replaces(self):
        self.recognizer.register_identity('x', b'alice')
        self.recognizer.register_identity('x', b'alice_again')

        self.assertEqual(self.recognizer.list_identities(), ['x'])
        np.testing.assert_array_equal(self.recognizer.get_identity('x').vector, unit_vector(1))

    def test_embedding_failure_writes_nothing(self):
        self.recognizer.register_identity('alice_1', b'alice', {'name': 'Alice'})

        with self.assertRaises(EmbeddingFailed) as ctx:
            self.recognizer.register_identity('alice_1', b'no-face-here', {'name': 'Changed'})
        self.assertEqual(ctx.exception.stage, 'embedding')

        record = self.recognizer.get_identity('alice_1')
        self.assertEqual(record.metadata, {'name': 'Alice'})
        np.testing.assert_array_equal(record.vector, unit_vector(0))
        self.assertEqual(self.recognizer.get_recognition_statistics()['failed_embeddings'], 1)

    def test_search_embedding_failure(self):
        with self.assertRaises(EmbeddingFailed):
            self.recognizer.find_similar(b'no-face-here', k=3)

    def test_unexpected_client_error_is_embedding_failed(self):
        class BrokenClient(FakeEmbeddingClient):
            def embed(self, image_bytes, content_type='image/jpeg'):
                raise RuntimeError("socket closed")

        recognizer = FaceRecognizer(self.config, BrokenClient(), InMemoryVectorStore(self.config))
        with self.assertRaises(EmbeddingFailed):
            recognizer.register_identity('a', b'alice')
        self.assertEqual(recognizer.vector_store.count(), 0)
        recognizer.close()

    def test_timeout_writes_nothing(self):
        config = dict(self.config, embedding={'timeout': 0.05, 'max_retries': 0})
        client = FakeEmbeddingClient({b'alice': unit_vector(0)}, delay=0.5)
        store = InMemoryVectorStore(config)
        recognizer = FaceRecognizer(config, client, store)

        with self.assertRaises(EmbeddingTimeout) as ctx:
            recognizer.register_identity('alice_1', b'alice')
        self.assertIsInstance(ctx.exception, EmbeddingFailed)
        self.assertEqual(store.count(), 0)
        recognizer.close()

    def test_timeout_retried(self):
        config = dict(self.config, embedding={'timeout': 0.05, 'max_retries': 2})
        client = FakeEmbeddingClient({b'alice': unit_vector(0)}, delay=0.3)
        recognizer = FaceRecognizer(config, client, InMemoryVectorStore(config))

        with self.assertRaises(EmbeddingTimeout):
            recognizer.find_similar(b'alice', k=1)
        self.assertEqual(recognizer.get_recognition_statistics()['embedding_timeouts'], 3)
        recognizer.close()

    def test_busy_workers_logged(self):
        """A retry queued behind a hung call reports that the pool is exhausted."""
        config = dict(self.config, embedding={'timeout': 0.05, 'max_retries': 1, 'max_workers': 1})
        client = FakeEmbeddingClient({b'alice': unit_vector(0)}, delay=0.3)
        recognizer = FaceRecognizer(config, client, InMemoryVectorStore(config))

        with self.assertLogs('face_index.recognizer', level='WARNING') as logs:
            with self.assertRaises(EmbeddingTimeout):
                recognizer.register_identity('alice_1', b'alice')

        self.assertTrue(any('workers are busy' in line for line in logs.output))
        self.assertEqual(client.calls, 1)
        recognizer.close()

    def test_embedding_failure_not_retried(self):
        config = dict(self.config, embedding={'timeout': 2, 'max_retries': 3})
        client = FakeEmbeddingClient({})
        recognizer = FaceRecognizer(config, client, InMemoryVectorStore(config))

        with self.assertRaises(EmbeddingFailed):
            recognizer.register_identity('a', b'missing')
        self.assertEqual(client.calls, 1)
        recognizer.close()

    def test_dimension_mismatch_from_embedding(self):
        with self.assertRaises(DimensionMismatch):
            self.recognizer.register_identity('a', b'short')
        self.assertEqual(self.store.count(), 0)

    def test_invalid_metadata_checked_before_embedding(self):
        with self.assertRaises(InvalidMetadata):
            self.recognizer.register_identity('a', b'alice', {'ok': [1, 2]})
        self.assertEqual(self.client.calls, 0)

    def test_invalid_k_checked_before_embedding(self):
        with self.assertRaises(ValueError):
            self.recognizer.find_similar(b'alice', k=0)
        self.assertEqual(self.client.calls, 0)

    def test_find_with_filter(self):
        self.recognizer.register_identity('alice_1', b'alice', {'group': 'staff'})
        self.recognizer.register_identity('bob_1', b'bob', {'group': 'visitor'})

        results = self.recognizer.find_similar(b'alice', k=5, metadata_filter={'group': 'visitor'})
        self.assertEqual([r.id for r in results], ['bob_1'])

    def test_get_and_delete(self):
        self.recognizer.register_identity('alice_1', b'alice')
        self.assertTrue(self.recognizer.delete_identity('alice_1'))
        self.assertFalse(self.recognizer.delete_identity('alice_1'))
        with self.assertRaises(NotFound):
            self.recognizer.get_identity('alice_1')

    def test_register_requires_id(self):
        with self.assertRaises(ValueError):
            self.recognizer.register_identity('', b'alice')

    def test_register_from_detection_degenerate(self):
        """A degenerate rectangle fails before the embedding service is called."""
        frame = np.zeros((720, 1280, 3), dtype=np.uint8)
        with self.assertRaises(DegenerateRegion):
            self.recognizer.register_from_detection('a', frame, RawRect(5000, 5000, 10, 10))
        self.assertEqual(self.client.calls, 0)

    def test_register_from_detection_sends_crop(self):
        frame = np.full((720, 1280, 3), 127, dtype=np.uint8)
        seen = {}

        class CapturingClient(FakeEmbeddingClient):
            def embed(self, image_bytes, content_type='image/jpeg'):
                seen['image'] = image_bytes
                seen['content_type'] = content_type
                return unit_vector(3)

        recognizer = FaceRecognizer(self.config, CapturingClient(), InMemoryVectorStore(self.config))
        record = recognizer.register_from_detection('c', frame, RawRect(0.1, 0.2, 0.3, 0.3), {'cam': 'a'})

        self.assertEqual(record.id, 'c')
        self.assertTrue(seen['image'].startswith(b'\xff\xd8'))
        self.assertEqual(seen['content_type'], 'image/jpeg')

        results = recognizer.find_similar_in_frame(frame, RawRect(0.1, 0.2, 0.3, 0.3), k=1)
        self.assertEqual(results[0].id, 'c')
        recognizer.close()

    def test_health(self):
        self.recognizer.register_identity('alice_1', b'alice')
        health = self.recognizer.health()
        self.assertTrue(health['embedding_service'])
        self.assertEqual(health['index']['total_records'], 1)

        self.client.healthy = False
        self.assertFalse(self.recognizer.health()['embedding_service'])

    def test_get_recognition_statistics(self):
        self.recognizer.register_identity('alice_1', b'alice')
        self.recognizer.find_similar(b'alice', k=1)

        stats = self.recognizer.get_recognition_statistics()
        self.assertEqual(stats['registrations'], 1)
        self.assertEqual(stats['searches'], 1)
        self.assertEqual(stats['total_identities'], 1)
        self.assertIn('session_start', stats)

    def test_close_only_closes_owned_dependencies(self):
        self.recognizer.close()
        self.assertFalse(self.client.closed)

    def test_context_manager(self):
        with FaceRecognizer(self.config, self.client, InMemoryVectorStore(self.config)) as recognizer:
            recognizer.register_identity('a', b'alice')
        self.assertFalse(self.client.closed)


class TestEndToEnd(unittest.TestCase):
    """D=128 cosine index, register a unit vector and query it."""

    def test_alice_self_match(self):
        config = {
            'embedding': {'timeout': 2},
            'vector_store': {'backend': 'sklearn', 'dimension': 128, 'similarity_metric': 'cosine'},
        }
        rng = np.random.default_rng(42)
        v1 = rng.normal(size=128).astype(np.float32)
        v1 /= np.linalg.norm(v1)

        vectors = {b'v1': v1}
        for i in range(10):
            other = rng.normal(size=128).astype(np.float32)
            vectors[f'other_{i}'.encode()] = other / np.linalg.norm(other)

        with FaceRecognizer(config, FakeEmbeddingClient(vectors), InMemoryVectorStore(config)) as recognizer:
            for key in vectors:
                if key != b'v1':
                    recognizer.register_identity(key.decode(), key)
            recognizer.register_identity('alice_1', b'v1')

            results = recognizer.find_similar(b'v1', k=1)

        self.assertEqual([r.id for r in results], ['alice_1'])
        self.assertAlmostEqual(results[0].distance, 0.0, places=5)


if __name__ == '__main__':
    unittest.main()
