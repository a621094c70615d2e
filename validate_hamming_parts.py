import os
import tempfile
import unittest
from unittest import mock
import numpy as np

from hamming_codec import SimHashCodec, check_code_width, route, routing_bits
from streaming_centroid import StreamingCentroid
from sharded_dedup import ShardedDeduplicator, ShardOverflowError, dedup_codes
from query_split import (QueryIndexSet, SplitConsistencyError, TrainQuerySplitter,
                         iter_code_chunks, sample_query_indices)
from point_io import (count_points, iter_point_chunks, read_center, read_points,
                      write_center, write_vecs)
from hdf5_sink import Hdf5Sink, read_hdf5
from hamming_gt import HammingGroundTruth, codes_to_bytes


# Helper to draw random codes.
def random_codes(rng, n, enc_dim):
    return rng.integers(0, np.iinfo(np.uint64).max, size=(n, enc_dim),
                        dtype=np.uint64, endpoint=True)


def as_row_set(codes):
    return {row.tobytes() for row in np.ascontiguousarray(codes, dtype='<u8')}


def hamming(a, b):
    x = np.bitwise_xor(a, b)
    return int(np.unpackbits(np.ascontiguousarray(x).view(np.uint8)).sum())


class TestSimHashCodec(unittest.TestCase):
    def setUp(self):
        self.dim = 16
        self.m = 128
        self.points = np.random.default_rng(1).normal(size=(50, self.dim))

    def test_same_seed_same_codes(self):
        a = SimHashCodec(self.dim, self.m, 4242)
        b = SimHashCodec(self.dim, self.m, 4242)
        np.testing.assert_array_equal(a.hyperplanes, b.hyperplanes)
        np.testing.assert_array_equal(a.encode(self.points), b.encode(self.points))

    def test_generator_seed_matches_int_seed(self):
        a = SimHashCodec(self.dim, self.m, 7)
        b = SimHashCodec(self.dim, self.m, np.random.default_rng(7))
        np.testing.assert_array_equal(a.encode(self.points), b.encode(self.points))

    def test_different_seed_different_hyperplanes(self):
        a = SimHashCodec(self.dim, self.m, 1)
        b = SimHashCodec(self.dim, self.m, 2)
        self.assertFalse(np.array_equal(a.hyperplanes, b.hyperplanes))

    def test_bits_match_projection_signs(self):
        codec = SimHashCodec(self.dim, self.m, 99)
        for p in self.points[:5]:
            code = codec.encode([p])
            self.assertEqual(code.size, self.m // 64)
            for i in range(self.m):
                word = int(code[0, i // 64])
                bit = (word >> (63 - i % 64)) & 1
                expected = int(np.dot(p, codec.hyperplanes[i]) >= 0)
                self.assertEqual(bit, expected, f"bit {i} mismatch")

    def test_output_shape_and_order(self):
        codec = SimHashCodec(self.dim, 256, 3)
        codes = codec.encode(self.points)
        self.assertEqual(codes.shape, (50, 4))
        self.assertEqual(codes.dtype, np.dtype('<u8'))
        np.testing.assert_array_equal(codes[10], codec.encode(self.points[10])[0])

    def test_zero_vector_encodes_all_ones(self):
        codec = SimHashCodec(4, 64, 0)
        self.assertEqual(int(codec.encode(np.zeros(4))[0, 0]), (1 << 64) - 1)

    def test_dimension_mismatch_raises(self):
        codec = SimHashCodec(self.dim, self.m, 0)
        with self.assertRaises(ValueError):
            codec.encode(np.zeros((3, self.dim + 1)))

    def test_code_width_validation(self):
        self.assertEqual(check_code_width(192), 3)
        for bad in (0, -64, 100, 63):
            with self.assertRaises(ValueError):
                check_code_width(bad)
            with self.assertRaises(ValueError):
                SimHashCodec(4, bad, 0)


class TestRouting(unittest.TestCase):
    def test_uses_leading_bits_of_first_word(self):
        codes = np.array([[22 << 59, 0], [1 << 59, 5], [(1 << 64) - 1, 0]], dtype=np.uint64)
        np.testing.assert_array_equal(route(codes, 32), [22, 1, 31])
        np.testing.assert_array_equal(route(codes, 2), [1, 0, 1])

    def test_single_shard(self):
        codes = random_codes(np.random.default_rng(0), 10, 2)
        np.testing.assert_array_equal(route(codes, 1), np.zeros(10))

    def test_identical_codes_same_shard(self):
        codes = random_codes(np.random.default_rng(5), 100, 2)
        doubled = np.concatenate([codes, codes])
        ids = route(doubled, 32)
        np.testing.assert_array_equal(ids[:100], ids[100:])
        self.assertTrue(np.all((ids >= 0) & (ids < 32)))

    def test_invalid_shard_counts(self):
        self.assertEqual(routing_bits(32), 5)
        for bad in (0, 3, 48, 1 << 17):
            with self.assertRaises(ValueError):
                routing_bits(bad)


class TestStreamingCentroid(unittest.TestCase):
    def test_equal_chunks(self):
        data = np.random.default_rng(2).normal(size=(300, 8))
        acc = StreamingCentroid()
        for i in range(3):
            mean = acc.add(data[i * 100:(i + 1) * 100])
            np.testing.assert_allclose(mean, data[i * 100:(i + 1) * 100].mean(axis=0))
        self.assertEqual(acc.total, 300)
        np.testing.assert_allclose(acc.exact_centroid(), data.mean(axis=0))
        np.testing.assert_allclose(acc.centroid(), data.mean(axis=0) / 300)

    def test_unequal_chunks(self):
        data = np.random.default_rng(3).normal(size=(250, 4))
        acc = StreamingCentroid()
        acc.add(data[:200])
        acc.add(data[200:])
        np.testing.assert_allclose(acc.exact_centroid(), data.mean(axis=0))
        expected = (data[:200].mean(axis=0) + data[200:].mean(axis=0)) / 2 / 250
        np.testing.assert_allclose(acc.centroid(), expected)

    def test_empty_and_mismatch(self):
        acc = StreamingCentroid()
        self.assertIsNone(acc.add(np.empty((0, 4))))
        with self.assertRaises(ValueError):
            acc.centroid()
        acc.add(np.ones((2, 4)))
        with self.assertRaises(ValueError):
            acc.add(np.ones((2, 5)))


class TestShardedDedup(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.scratch = os.path.join(self.tmpdir.name, "temp")
        self.output = os.path.join(self.tmpdir.name, "all.dat")
        rng = np.random.default_rng(11)
        self.distinct = random_codes(rng, 150, 2)
        self.corpus = self.distinct[rng.integers(0, 150, size=1000)]

    def tearDown(self):
        self.tmpdir.cleanup()

    def run_dedup(self, chunk, n_shards=8):
        dedup = ShardedDeduplicator(self.scratch, 2, n_shards)
        for start in range(0, len(self.corpus), chunk):
            dedup.add(self.corpus[start:start + chunk])
        size_each, n_tot = dedup.finish(self.output)
        unique = np.fromfile(self.output, dtype='<u8').reshape(-1, 2)
        return size_each, n_tot, unique

    def check_against_brute_force(self, chunk):
        size_each, n_tot, unique = self.run_dedup(chunk)
        expected = as_row_set(self.corpus)
        self.assertEqual(n_tot, len(expected))
        self.assertEqual(sum(size_each), n_tot)
        self.assertEqual(len(size_each), 8)
        self.assertEqual(unique.shape[0], n_tot)
        self.assertEqual(as_row_set(unique), expected)

    def test_chunk_divides_corpus(self):
        self.check_against_brute_force(100)

    def test_chunk_with_remainder(self):
        self.check_against_brute_force(128)

    def test_single_chunk(self):
        self.check_against_brute_force(len(self.corpus))

    def test_reproducible_output(self):
        first = self.run_dedup(128)[2]
        second = self.run_dedup(128)[2]
        np.testing.assert_array_equal(first, second)

    def test_shards_hold_only_their_codes(self):
        dedup = ShardedDeduplicator(self.scratch, 2, 8)
        dedup.add(self.corpus)
        for k, shard in enumerate(dedup.shards):
            codes = shard.read_all()
            self.assertTrue(np.all(route(codes, 8) == k))
        dedup.close()

    def test_dedup_codes_keeps_first_occurrence(self):
        codes = np.array([[3, 1], [2, 2], [3, 1], [5, 0], [2, 2]], dtype=np.uint64)
        np.testing.assert_array_equal(dedup_codes(codes), [[3, 1], [2, 2], [5, 0]])

    def test_dedup_codes_matches_loop(self):
        # codes differing only in the second word must stay distinct
        rng = np.random.default_rng(33)
        distinct = random_codes(rng, 500, 3)
        distinct[250:, 0] = distinct[:250, 0]
        codes = distinct[rng.integers(0, 500, size=5000)]
        seen = set()
        expected = []
        for row in codes:
            key = row.tobytes()
            if key not in seen:
                seen.add(key)
                expected.append(row)
        np.testing.assert_array_equal(dedup_codes(codes), np.array(expected))
        self.assertEqual(dedup_codes(codes[:0]).shape, (0, 3))

    def test_shard_overflow(self):
        dedup = ShardedDeduplicator(self.scratch, 2, 1, max_shard_codes=10)
        dedup.add(self.corpus[:11])
        with self.assertRaises(ShardOverflowError):
            dedup.finish(self.output)

    def test_shard_out_of_memory(self):
        dedup = ShardedDeduplicator(self.scratch, 2, 4)
        dedup.add(self.corpus)
        with mock.patch('sharded_dedup.dedup_codes', side_effect=MemoryError):
            with self.assertRaises(ShardOverflowError) as cm:
                dedup.finish(self.output)
        self.assertIn("Shard 0", str(cm.exception))
        self.assertIsInstance(cm.exception.__cause__, MemoryError)
        self.assertTrue(all(shard._f.closed for shard in dedup.shards))

    def test_rejects_wrong_code_width(self):
        dedup = ShardedDeduplicator(self.scratch, 2, 4)
        with self.assertRaises(ValueError):
            dedup.add(np.zeros((3, 3), dtype=np.uint64))
        dedup.close()
        with self.assertRaises(ValueError):
            ShardedDeduplicator(self.scratch, 2, 6)

    def test_known_points_scenario(self):
        # exact duplicate pair (a, a) and a near duplicate of b in the last dimension
        points = np.array([
            [1.0, 0.0, 0.0, 0.0],
            [1.0, 0.0, 0.0, 0.0],
            [0.0, 1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0, 1e-9],
            [0.0, 0.0, 1.0, 0.0],
            [0.0, 0.0, 0.0, -1.0],
        ])
        outputs = []
        for _ in range(2):
            codec = SimHashCodec(4, 128, 91023221)
            codes = codec.encode(points)
            self.assertEqual(codes.shape, (6, 2))
            np.testing.assert_array_equal(codes[0], codes[1])
            np.testing.assert_array_equal(codes[2], codes[3])
            dedup = ShardedDeduplicator(self.scratch, 2, 4)
            dedup.add(codes[:4])
            dedup.add(codes[4:])
            _, n_tot = dedup.finish(self.output)
            self.assertEqual(n_tot, 4)
            with open(self.output, "rb") as f:
                outputs.append(f.read())
        self.assertEqual(outputs[0], outputs[1])


class TestQuerySplit(unittest.TestCase):
    def test_sample_is_reproducible(self):
        a = sample_query_indices(1000, 10, 4057218)
        b = sample_query_indices(1000, 10, 4057218)
        self.assertEqual(len(a), 10)
        self.assertEqual(len(set(a)), 10)
        self.assertTrue(all(0 <= i < 1000 for i in a))
        self.assertEqual(list(a), list(b))

    def test_sample_too_many(self):
        with self.assertRaises(ValueError):
            sample_query_indices(5, 6, 0)

    def test_mask_and_contains(self):
        qs = QueryIndexSet([2, 7, 8, 15], 20)
        self.assertIn(7, qs)
        self.assertNotIn(6, qs)
        np.testing.assert_array_equal(
            np.flatnonzero(qs.mask(5, 10)), [2, 3])

    def test_split_completeness(self):
        corpus = random_codes(np.random.default_rng(21), 257, 2)
        qs = sample_query_indices(257, 20, np.random.default_rng(1))
        splitter = TrainQuerySplitter(qs)
        trains, queries = [], []
        for start in range(0, 257, 64):
            train, query = splitter.split(corpus[start:start + 64])
            trains.append(train)
            queries.append(query)
        n_train, n_query = splitter.finish()
        train = np.concatenate(trains)
        query = np.concatenate(queries)
        self.assertEqual((n_train, n_query), (237, 20))
        np.testing.assert_array_equal(query, corpus[qs.indices])
        self.assertEqual(as_row_set(train) | as_row_set(query), as_row_set(corpus))
        self.assertFalse(as_row_set(train) & as_row_set(query))

    def split_in_chunks(self, corpus, qs, chunk):
        splitter = TrainQuerySplitter(qs)
        trains, queries = [], []
        for start in range(0, len(corpus), chunk):
            train, query = splitter.split(corpus[start:start + chunk])
            trains.append(train)
            queries.append(query)
        counts = splitter.finish()
        return counts, np.concatenate(trains), np.concatenate(queries)

    def test_split_corpus_of_exactly_one_chunk(self):
        corpus = random_codes(np.random.default_rng(22), 64, 2)
        qs = QueryIndexSet([0, 17, 63], 64)
        (n_train, n_query), train, query = self.split_in_chunks(corpus, qs, 64)
        self.assertEqual((n_train, n_query), (61, 3))
        np.testing.assert_array_equal(query, corpus[[0, 17, 63]])
        np.testing.assert_array_equal(train, np.delete(corpus, [0, 17, 63], axis=0))

    def test_split_queries_on_chunk_boundaries(self):
        corpus = random_codes(np.random.default_rng(23), 128, 2)
        qs = QueryIndexSet([0, 63, 64, 65, 127], 128)
        (n_train, n_query), train, query = self.split_in_chunks(corpus, qs, 64)
        self.assertEqual((n_train, n_query), (123, 5))
        np.testing.assert_array_equal(query, corpus[[0, 63, 64, 65, 127]])
        self.assertEqual(as_row_set(train) | as_row_set(query), as_row_set(corpus))
        self.assertFalse(as_row_set(train) & as_row_set(query))

    def test_finish_detects_short_stream(self):
        corpus = random_codes(np.random.default_rng(4), 100, 1)
        splitter = TrainQuerySplitter(QueryIndexSet([5, 95], 100))
        splitter.split(corpus[:50])
        with self.assertRaises(SplitConsistencyError):
            splitter.finish()

    def test_iter_code_chunks(self):
        corpus = random_codes(np.random.default_rng(6), 70, 3)
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "codes.dat")
            corpus.astype('<u8').tofile(path)
            chunks = list(iter_code_chunks(path, 3, 32))
            self.assertEqual([len(c) for c in chunks], [32, 32, 6])
            np.testing.assert_array_equal(np.concatenate(chunks), corpus)
            with open(path, "ab") as f:
                f.write(b"\x00" * 5)
            with self.assertRaises(IOError):
                list(iter_code_chunks(path, 3, 32))


class TestPointIO(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def path(self, name):
        return os.path.join(self.tmpdir.name, name)

    def test_fvecs_chunks(self):
        data = np.random.default_rng(0).normal(size=(25, 6)).astype(np.float32)
        write_vecs(self.path("a.fvecs"), data)
        self.assertEqual(count_points(self.path("a.fvecs")), 25)
        np.testing.assert_array_equal(read_points(self.path("a.fvecs"), 10, 5), data[10:15])
        chunks = list(iter_point_chunks(self.path("a.fvecs"), 10))
        self.assertEqual([s for s, _ in chunks], [0, 10, 20])
        np.testing.assert_array_equal(np.concatenate([c for _, c in chunks]), data)

    def test_bvecs_elements(self):
        data = np.random.default_rng(1).integers(0, 256, size=(7, 128)).astype(np.uint8)
        write_vecs(self.path("b.bvecs"), data)
        self.assertEqual(os.path.getsize(self.path("b.bvecs")), 7 * (4 + 128))
        points = read_points(self.path("b.bvecs"))
        self.assertEqual(points.dtype, np.uint8)
        np.testing.assert_array_equal(points, data)

    def test_truncated_record(self):
        write_vecs(self.path("t.fvecs"), np.ones((3, 4), dtype=np.float32))
        with open(self.path("t.fvecs"), "ab") as f:
            f.write(b"\x04\x00\x00\x00\x00\x00")
        with self.assertRaises(IOError):
            read_points(self.path("t.fvecs"))
        with self.assertRaises(ValueError):
            count_points(self.path("t.fvecs"))

    def test_inconsistent_dimension(self):
        write_vecs(self.path("d.fvecs"), np.ones((3, 4), dtype=np.float32))
        with open(self.path("d.fvecs"), "r+b") as f:
            f.seek(20)
            f.write(np.array([5], dtype='<i4').tobytes())
        with self.assertRaises(ValueError):
            read_points(self.path("d.fvecs"))

    def test_unknown_extension(self):
        with self.assertRaises(ValueError):
            write_vecs(self.path("x.txt"), np.ones((1, 2)))

    def test_center_sidecar(self):
        center = np.array([0.5, -1.25, 3.0])
        write_center(self.path("c.dat"), center)
        self.assertEqual(os.path.getsize(self.path("c.dat")), 4 + 3 * 4)
        np.testing.assert_array_equal(read_center(self.path("c.dat")), center.astype(np.float32))


class TestHdf5Sink(unittest.TestCase):
    def test_incremental_writes(self):
        codes = random_codes(np.random.default_rng(8), 30, 2)
        with tempfile.TemporaryDirectory() as d:
            fname = os.path.join(d, "out.h5")
            with Hdf5Sink(fname, 128) as sink:
                sink.create('train', 30)
                end = sink.write('train', codes[:12], 0)
                end = sink.write('train', codes[12:], end)
                self.assertEqual(end, 30)
                with self.assertRaises(ValueError):
                    sink.write('train', codes[:1], 30)
                sink.write_all('test', codes[:3])
            np.testing.assert_array_equal(read_hdf5(fname, 'train'), codes)
            np.testing.assert_array_equal(read_hdf5(fname, 'test'), codes[:3])
            import h5py
            with h5py.File(fname, 'r') as hf:
                self.assertEqual(hf.attrs['distance'], 'hamming')
                self.assertEqual(hf.attrs['dimension'], 128)
                self.assertEqual(hf['train'].dtype, np.dtype('uint64'))


class TestHammingGroundTruth(unittest.TestCase):
    def test_matches_brute_force(self):
        rng = np.random.default_rng(17)
        train = random_codes(rng, 300, 2)
        queries = random_codes(rng, 5, 2)
        k = 10
        gt = HammingGroundTruth(queries, 128, k)
        for start in range(0, 300, 64):
            gt.add(train[start:start + 64])
        neighbors, distances = gt.result()
        self.assertEqual(neighbors.shape, (5, k))
        for qi, q in enumerate(queries):
            true = np.array([hamming(q, t) for t in train])
            np.testing.assert_array_equal(distances[qi], np.sort(true)[:k])
            self.assertEqual(len(set(neighbors[qi].tolist())), k)
            for idx, dist in zip(neighbors[qi], distances[qi]):
                self.assertEqual(true[idx], dist)

    def test_fewer_train_codes_than_k(self):
        rng = np.random.default_rng(18)
        train = random_codes(rng, 3, 1)
        gt = HammingGroundTruth(random_codes(rng, 2, 1), 64, 5)
        gt.add(train)
        neighbors, distances = gt.result()
        self.assertTrue(np.all(neighbors[:, 3:] == -1))
        self.assertTrue(np.all(distances[:, 3:] == -1))
        self.assertEqual(sorted(neighbors[0, :3].tolist()), [0, 1, 2])

    def test_byte_view_shape(self):
        codes = random_codes(np.random.default_rng(2), 4, 3)
        self.assertEqual(codes_to_bytes(codes).shape, (4, 24))


if __name__ == '__main__':
    unittest.main()
