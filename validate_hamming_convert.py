import os
import sys
import subprocess
import tempfile
import unittest
import numpy as np
import h5py

from hamming_convert import convert, output_paths
from point_io import read_center, write_vecs


# Helper to read packed code files.
def read_codes(fname, enc_dim):
    """
    Read a flat file of little-endian uint64 words into shape (n, enc_dim).
    """
    return np.fromfile(fname, dtype='<u8').reshape(-1, enc_dim)


def row_set(codes):
    return {row.tobytes() for row in codes}


class TestHammingConvertScript(unittest.TestCase):
    def setUp(self):
        # Create a temporary directory to hold test files.
        self.tmpdir = tempfile.TemporaryDirectory()
        self.data_dir = os.path.join(self.tmpdir.name, "SIFT1M")
        os.makedirs(self.data_dir)
        # Path to the script (assumed to be in the same directory as this test file).
        self.script_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "hamming_convert.py")
        # A small float dataset where the last 50 base vectors repeat earlier ones.
        rng = np.random.default_rng(12345)
        unique = (rng.random((450, 8)) * 10).astype(np.float32)
        self.base = np.concatenate([unique, unique[:50]])
        self.query = (rng.random((20, 8)) * 10).astype(np.float32)
        write_vecs(os.path.join(self.data_dir, "sift_base.fvecs"), self.base)
        write_vecs(os.path.join(self.data_dir, "sift_query.fvecs"), self.query)
        self.m = 128

    def tearDown(self):
        self.tmpdir.cleanup()

    def run_script(self, *extra, out_name="out"):
        out_dir = os.path.join(self.tmpdir.name, out_name)
        cmd = [
            sys.executable,
            self.script_path,
            str(self.m),
            self.data_dir,
            "--dataset", "sift1m",
            "--num-queries", "10",
            "--chunk-size", "64",
            "--shards", "8",
            "--output-dir", out_dir,
            *extra,
        ]
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            self.fail(f"Script failed:\nstdout: {result.stdout}\nstderr: {result.stderr}")
        return output_paths(out_dir, "sift1m", self.m)

    def test_outputs_are_consistent(self):
        paths = self.run_script("--neighbors", "5")
        corpus = read_codes(paths['all'], 2)
        train = read_codes(paths['train'], 2)
        test = read_codes(paths['test'], 2)

        # duplicates of the base vectors must be gone; the 20 queries are encoded too
        self.assertLessEqual(corpus.shape[0], 470)
        self.assertEqual(len(row_set(corpus)), corpus.shape[0])

        self.assertEqual(test.shape[0], 10)
        self.assertEqual(train.shape[0] + test.shape[0], corpus.shape[0])
        self.assertEqual(row_set(train) | row_set(test), row_set(corpus))
        self.assertFalse(row_set(train) & row_set(test))

        with h5py.File(paths['h5'], 'r') as hf:
            np.testing.assert_array_equal(hf['train'][:], train)
            np.testing.assert_array_equal(hf['test'][:], test)
            self.assertEqual(hf['neighbors'].shape, (10, 5))
            self.assertEqual(hf['distances'].shape, (10, 5))
            self.assertTrue(np.all(hf['neighbors'][:] < train.shape[0]))

        center = read_center(paths['center'])
        self.assertEqual(center.shape, (8,))

    def test_runs_are_reproducible(self):
        first = self.run_script(out_name="first")
        second = self.run_script(out_name="second")
        for key in ('all', 'train', 'test', 'center'):
            with open(first[key], "rb") as a, open(second[key], "rb") as b:
                self.assertEqual(a.read(), b.read(), f"{key} output differs between runs")

    def test_single_chunk_corpus(self):
        paths = self.run_script("--chunk-size", "500", "--exact-centroid")
        corpus = read_codes(paths['all'], 2)
        self.assertEqual(read_codes(paths['test'], 2).shape[0], 10)
        self.assertEqual(read_codes(paths['train'], 2).shape[0], corpus.shape[0] - 10)
        np.testing.assert_allclose(
            read_center(paths['center']),
            np.concatenate([self.base, self.query]).mean(axis=0),
            rtol=1e-5)

    def test_include_queries(self):
        without = read_codes(self.run_script("--base-only", out_name="a")['all'], 2)
        with_q = read_codes(self.run_script("--include-queries", out_name="b")['all'], 2)
        self.assertGreater(with_q.shape[0], without.shape[0])
        self.assertTrue(row_set(without) <= row_set(with_q))

    def test_sift1m_profile_defaults(self):
        # exact mean over base and queries, and the queries are part of the corpus
        paths = self.run_script()
        np.testing.assert_allclose(
            read_center(paths['center']),
            np.concatenate([self.base, self.query]).mean(axis=0),
            rtol=1e-5)
        default = row_set(read_codes(paths['all'], 2))
        with_q = row_set(read_codes(self.run_script("--include-queries", out_name="b")['all'], 2))
        self.assertEqual(default, with_q)

    def test_chunk_centroid_override(self):
        paths = self.run_script("--chunk-size", "1000", "--chunk-centroid")
        expected = (self.base.mean(axis=0, dtype=np.float64)
                    + self.query.mean(axis=0, dtype=np.float64)) / 2 / 520
        np.testing.assert_allclose(read_center(paths['center']), expected, rtol=1e-5)

    def test_usage_errors(self):
        for args in ([], ["128", self.data_dir, "extra"], ["100", self.data_dir],
                     ["128", self.data_dir, "--shards", "3"]):
            result = subprocess.run([sys.executable, self.script_path, *args],
                                    capture_output=True, text=True)
            self.assertEqual(result.returncode, 2, f"args {args}: {result.stderr}")
            self.assertIn("usage", result.stderr.lower())

    def test_missing_dataset(self):
        result = subprocess.run(
            [sys.executable, self.script_path, "128", os.path.join(self.tmpdir.name, "nope"),
             "--dataset", "sift1m"],
            capture_output=True, text=True)
        self.assertEqual(result.returncode, 1)
        self.assertIn("ERROR", result.stderr)

    def test_too_many_queries(self):
        out_dir = os.path.join(self.tmpdir.name, "big")
        result = subprocess.run(
            [sys.executable, self.script_path, "128", self.data_dir, "--dataset", "sift1m",
             "--num-queries", "100000", "--output-dir", out_dir],
            capture_output=True, text=True)
        self.assertEqual(result.returncode, 1)
        self.assertIn("num_queries", result.stderr)


class TestSift1bScript(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.data_dir = os.path.join(self.tmpdir.name, "SIFT1B")
        os.makedirs(self.data_dir)
        self.script_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "hamming_convert.py")
        # one byte per element, stored under .fvecs names
        rng = np.random.default_rng(99)
        self.base = rng.integers(0, 256, size=(300, 16)).astype(np.uint8)
        self.query = rng.integers(0, 256, size=(15, 16)).astype(np.uint8)
        write_vecs(os.path.join(self.data_dir, "sift_base.fvecs"), self.base, dtype='u1')
        write_vecs(os.path.join(self.data_dir, "sift_query.fvecs"), self.query, dtype='u1')

    def tearDown(self):
        self.tmpdir.cleanup()

    def run_script(self, *extra, out_name="out"):
        out_dir = os.path.join(self.tmpdir.name, out_name)
        cmd = [sys.executable, self.script_path, "64", self.data_dir,
               "--dataset", "sift1b", "--num-queries", "10", "--chunk-size", "1000",
               "--shards", "4", "--output-dir", out_dir, *extra]
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            self.fail(f"Script failed:\nstdout: {result.stdout}\nstderr: {result.stderr}")
        return output_paths(out_dir, "sift1b", 64)

    def test_byte_elements_in_fvecs_files(self):
        paths = self.run_script()
        corpus = read_codes(paths['all'], 1)
        self.assertLessEqual(corpus.shape[0], 300)
        self.assertEqual(read_codes(paths['test'], 1).shape[0], 10)
        self.assertEqual(read_codes(paths['train'], 1).shape[0], corpus.shape[0] - 10)
        # single chunk per file: mean of the two file means over the point count
        expected = (self.base.mean(axis=0, dtype=np.float64)
                    + self.query.mean(axis=0, dtype=np.float64)) / 2 / 315
        np.testing.assert_allclose(read_center(paths['center']), expected, rtol=1e-5)

    def test_profile_overrides(self):
        paths = self.run_script("--exact-centroid", "--include-queries")
        np.testing.assert_allclose(
            read_center(paths['center']),
            np.concatenate([self.base, self.query]).mean(axis=0, dtype=np.float64),
            rtol=1e-5)
        base_only = row_set(read_codes(self.run_script("--exact-centroid", out_name="b")['all'], 1))
        self.assertTrue(base_only < row_set(read_codes(paths['all'], 1)))

    def test_file_name_options(self):
        os.rename(os.path.join(self.data_dir, "sift_base.fvecs"),
                  os.path.join(self.data_dir, "bigann_base.bvecs"))
        os.rename(os.path.join(self.data_dir, "sift_query.fvecs"),
                  os.path.join(self.data_dir, "bigann_query.bvecs"))
        paths = self.run_script("--base-file", "bigann_base.bvecs",
                                "--query-file", "bigann_query.bvecs")
        self.assertEqual(read_codes(paths['test'], 1).shape[0], 10)


class TestConvertBvecs(unittest.TestCase):
    def test_byte_dataset_with_remainder_chunk(self):
        with tempfile.TemporaryDirectory() as d:
            rng = np.random.default_rng(7)
            base = rng.integers(0, 256, size=(333, 16)).astype(np.uint8)
            query = rng.integers(0, 256, size=(12, 16)).astype(np.uint8)
            base_path = os.path.join(d, "bigann_base.bvecs")
            query_path = os.path.join(d, "bigann_query.bvecs")
            write_vecs(base_path, base)
            write_vecs(query_path, query)
            scratch = os.path.join(d, "temp")

            paths = convert(base_path, query_path, 64, output_dir=os.path.join(d, "out"),
                            prefix="sift1b", num_queries=25, chunk_size=100,
                            n_shards=4, temp_dir=scratch)

            corpus = read_codes(paths['all'], 1)
            train = read_codes(paths['train'], 1)
            test = read_codes(paths['test'], 1)
            self.assertEqual(test.shape[0], 25)
            self.assertEqual(train.shape[0] + 25, corpus.shape[0])
            self.assertEqual(row_set(train) | row_set(test), row_set(corpus))
            self.assertEqual(sorted(os.listdir(scratch)), [f"{k}.dat" for k in range(4)])
            self.assertTrue(paths['center'].endswith("SIFT1B_CENTER.dat"))


if __name__ == '__main__':
    unittest.main()
