"""
Unit tests for the ChromaDB vector store.
"""

import unittest
import uuid
import numpy as np
import os
import tempfile
import shutil

from face_index.chroma_store import ChromaVectorStore
from face_index.errors import DimensionMismatch, IndexSchemaConflict, NotFound
from face_index.vector_store import IdentityRecord, create_vector_store


def unit_vector(dim, index):
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = 1.0
    return vector


class FailingAddCollection:
    """Wraps a Chroma collection; the first add raises, later calls go through."""

    def __init__(self, collection):
        self._collection = collection
        self.failed = False

    def add(self, **kwargs):
        if not self.failed:
            self.failed = True
            raise RuntimeError("storage unavailable")
        return self._collection.add(**kwargs)

    def __getattr__(self, name):
        return getattr(self._collection, name)


class TestChromaVectorStore(unittest.TestCase):
    """Test cases for ChromaVectorStore class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.config = {
            'vector_store': {
                'backend': 'chromadb',
                'collection_name': f'faces_{uuid.uuid4().hex[:8]}',
                'candidate_pool': 8
            },
            'storage': {
                'persist': True,
                'embeddings_path': os.path.join(self.test_dir, 'embeddings')
            }
        }
        self.store = ChromaVectorStore(self.config)
        self.store.create_index(8, 'cosine')

    def tearDown(self):
        """Clean up test fixtures."""
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_factory_builds_chroma_store(self):
        store = create_vector_store(self.config)
        self.assertIsInstance(store, ChromaVectorStore)
        self.assertEqual(store.dimension, 8)

    def test_self_match(self):
        self.store.upsert(IdentityRecord('alice_1', unit_vector(8, 0), {'name': 'Alice'}))
        self.store.upsert(IdentityRecord('bob_1', unit_vector(8, 1), {'name': 'Bob'}))

        results = self.store.knn_search(unit_vector(8, 0), k=1)
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].id, 'alice_1')
        self.assertAlmostEqual(results[0].distance, 0.0, places=4)
        self.assertEqual(results[0].metadata, {'name': 'Alice'})

    def test_dimension_guard(self):
        with self.assertRaises(DimensionMismatch):
            self.store.upsert(IdentityRecord('a', np.ones(7)))
        with self.assertRaises(DimensionMismatch):
            self.store.upsert(IdentityRecord('a', np.ones(9)))
        self.assertEqual(self.store.count(), 0)

    def test_upsert_full_replace(self):
        """Replacing a record drops metadata keys the new record lacks."""
        self.store.upsert(IdentityRecord('x', unit_vector(8, 0), {'name': 'first', 'floor': 3}))
        self.store.upsert(IdentityRecord('x', unit_vector(8, 1), {'name': 'second'}))

        self.assertEqual(self.store.count(), 1)
        record = self.store.get_by_id('x')
        np.testing.assert_allclose(record.vector, unit_vector(8, 1))
        self.assertEqual(record.metadata, {'name': 'second'})
        self.assertIsNotNone(record.created_at)

    def test_ties_broken_by_insertion_order(self):
        for identity_id in ('c', 'a', 'b'):
            self.store.upsert(IdentityRecord(identity_id, unit_vector(8, 0)))

        results = self.store.knn_search(unit_vector(8, 0), k=3)
        self.assertEqual([r.id for r in results], ['c', 'a', 'b'])

    def test_ties_beyond_candidate_pool(self):
        """More tied records than the candidate pool still resolve by insertion order."""
        for i in range(30):
            self.store.upsert(IdentityRecord(f'r{i}', unit_vector(8, 0)))
        self.store.upsert(IdentityRecord('other', unit_vector(8, 1)))

        results = self.store.knn_search(unit_vector(8, 0), k=1)
        self.assertEqual([r.id for r in results], ['r0'])

        results = self.store.knn_search(unit_vector(8, 0), k=3)
        self.assertEqual([r.id for r in results], ['r0', 'r1', 'r2'])

    def test_ties_beyond_candidate_pool_with_filter(self):
        for i in range(20):
            self.store.upsert(IdentityRecord(f'r{i}', unit_vector(8, 0), {'camera': 'front'}))

        results = self.store.knn_search(unit_vector(8, 0), k=2, metadata_filter={'camera': 'front'})
        self.assertEqual([r.id for r in results], ['r0', 'r1'])

    def test_failed_replace_keeps_previous_record(self):
        self.store.upsert(IdentityRecord('x', unit_vector(8, 0), {'v': 1}))
        self.store.upsert(IdentityRecord('y', unit_vector(8, 0)))
        self.store.collection = FailingAddCollection(self.store.collection)

        with self.assertRaises(RuntimeError):
            self.store.upsert(IdentityRecord('x', unit_vector(8, 1), {'v': 2}))

        self.assertEqual(self.store.count(), 2)
        record = self.store.get_by_id('x')
        self.assertEqual(record.metadata, {'v': 1})
        np.testing.assert_allclose(record.vector, unit_vector(8, 0))
        # Restored record keeps its original insertion rank
        self.assertEqual(self.store.list_ids(), ['x', 'y'])

    def test_failed_insert_writes_nothing(self):
        self.store.collection = FailingAddCollection(self.store.collection)

        with self.assertRaises(RuntimeError):
            self.store.upsert(IdentityRecord('x', unit_vector(8, 0)))
        self.assertEqual(self.store.count(), 0)

    def test_attach_collection_without_dimension(self):
        """A collection created outside the store takes its dimension from stored vectors."""
        name = f'faces_{uuid.uuid4().hex[:8]}'
        collection = self.store.chroma_client.get_or_create_collection(
            name=name, metadata={'hnsw:space': 'cosine'}
        )
        collection.add(ids=['legacy'], embeddings=[unit_vector(8, 2).tolist()])

        config = dict(self.config)
        config['vector_store'] = dict(self.config['vector_store'], collection_name=name)
        store = ChromaVectorStore(config, client=self.store.chroma_client)
        self.assertEqual(store.dimension, 8)
        with self.assertRaises(IndexSchemaConflict):
            store.create_index(16, 'cosine')

        store.create_index(8, 'cosine')
        store.upsert(IdentityRecord('new', unit_vector(8, 2)))
        self.assertEqual(store.count(), 2)

    def test_attach_empty_collection_without_dimension(self):
        name = f'faces_{uuid.uuid4().hex[:8]}'
        self.store.chroma_client.get_or_create_collection(name=name, metadata={'hnsw:space': 'cosine'})

        config = dict(self.config)
        config['vector_store'] = dict(self.config['vector_store'], collection_name=name)
        store = ChromaVectorStore(config, client=self.store.chroma_client)
        self.assertIsNone(store.dimension)

        with self.assertRaises(IndexSchemaConflict):
            store.create_index(8, 'euclidean')
        store.create_index(8, 'cosine')
        store.upsert(IdentityRecord('a', unit_vector(8, 0)))
        self.assertEqual(store.knn_search(unit_vector(8, 0), k=1)[0].id, 'a')

    def test_mapping_filter(self):
        self.store.upsert(IdentityRecord('a', unit_vector(8, 0), {'camera': 'front', 'floor': 1}))
        self.store.upsert(IdentityRecord('b', unit_vector(8, 0), {'camera': 'back', 'floor': 1}))
        self.store.upsert(IdentityRecord('c', unit_vector(8, 1), {'camera': 'front', 'floor': 2}))

        results = self.store.knn_search(unit_vector(8, 0), k=5, metadata_filter={'camera': 'front'})
        self.assertEqual([r.id for r in results], ['a', 'c'])

        results = self.store.knn_search(unit_vector(8, 0), k=5,
                                        metadata_filter={'camera': 'front', 'floor': 2})
        self.assertEqual([r.id for r in results], ['c'])

    def test_callable_filter(self):
        self.store.upsert(IdentityRecord('a', unit_vector(8, 0), {'age': 30}))
        self.store.upsert(IdentityRecord('b', unit_vector(8, 0), {'age': 50}))

        results = self.store.knn_search(unit_vector(8, 0), k=5,
                                        metadata_filter=lambda m: m['age'] > 40)
        self.assertEqual([r.id for r in results], ['b'])

    def test_get_and_delete(self):
        self.store.upsert(IdentityRecord('a', unit_vector(8, 0)))
        self.assertTrue(self.store.delete_by_id('a'))
        self.assertFalse(self.store.delete_by_id('a'))
        with self.assertRaises(NotFound):
            self.store.get_by_id('a')

    def test_empty_search(self):
        self.assertEqual(self.store.knn_search(unit_vector(8, 0), k=3), [])

    def test_reopen_keeps_schema_and_order(self):
        self.store.upsert(IdentityRecord('first', unit_vector(8, 0)))
        self.store.upsert(IdentityRecord('second', unit_vector(8, 0)))

        reopened = ChromaVectorStore(self.config, client=self.store.chroma_client)
        self.assertEqual(reopened.dimension, 8)
        self.assertEqual(reopened.metric, 'cosine')
        with self.assertRaises(IndexSchemaConflict):
            reopened.create_index(16, 'cosine')

        reopened.upsert(IdentityRecord('third', unit_vector(8, 0)))
        results = reopened.knn_search(unit_vector(8, 0), k=3)
        self.assertEqual([r.id for r in results], ['first', 'second', 'third'])
        self.assertEqual(reopened.list_ids(), ['first', 'second', 'third'])

    def test_euclidean_distance(self):
        config = dict(self.config)
        config['vector_store'] = dict(self.config['vector_store'],
                                      collection_name=f'faces_{uuid.uuid4().hex[:8]}')
        store = ChromaVectorStore(config, client=self.store.chroma_client)
        store.create_index(3, 'euclidean')
        store.upsert(IdentityRecord('far', np.array([3.0, 4.0, 0.0])))

        results = store.knn_search(np.zeros(3), k=1)
        self.assertAlmostEqual(results[0].distance, 5.0, places=3)


if __name__ == '__main__':
    unittest.main()
