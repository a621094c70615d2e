#!/usr/bin/env python3
"""
hamming_convert.py

Convert a SIFT-style point-file dataset into m-bit Hamming codes for ANN
benchmarking, in bounded memory:

  1. stream the base and query files once to compute the recentering vector;
  2. stream the base file again, recenter and SimHash-encode every chunk,
     and route the codes into scratch shards;
  3. deduplicate each shard and concatenate the unique codes;
  4. draw the query indices and stream the unique codes once more, writing
     train and test sets to .dat files and an HDF5 container.

Usage:
  python3 hamming_convert.py HAMMING_DIM [DATASET_DIR] [--dataset sift1b] [--neighbors 100]
"""

import os
import sys
import time
import shutil
import argparse
import tempfile
import numpy as np

from hamming_codec import SimHashCodec, check_code_width, routing_bits
from streaming_centroid import StreamingCentroid
from sharded_dedup import ShardedDeduplicator
from query_split import TrainQuerySplitter, iter_code_chunks, sample_query_indices
from point_io import iter_point_chunks, read_dim, write_center
from hdf5_sink import Hdf5Sink
from hamming_gt import HammingGroundTruth

SEED = 4057218         # query index sampling
C_SEED = 91023221      # hyperplanes
N_FILES = 32
DEFAULT_CHUNK_SIZE = 1_000_000

DATASETS = {
    # 1M: float elements, exact mean, queries are encoded into the corpus too
    'sift1m': dict(dir='datasets/SIFT1M', base='sift_base.fvecs', query='sift_query.fvecs',
                   dtype='<f4', num_queries=1000, prefix='sift1m',
                   exact_center=True, include_queries=True),
    # 1B: one byte per element despite the .fvecs names, chunked mean, base only
    'sift1b': dict(dir='datasets/SIFT1B', base='sift_base.fvecs', query='sift_query.fvecs',
                   dtype='u1', num_queries=10000, prefix='sift1b',
                   exact_center=False, include_queries=False),
}


def output_paths(output_dir, prefix, m):
    return dict(
        all=os.path.join(output_dir, f"{prefix}-hamming-all-{m}.dat"),
        train=os.path.join(output_dir, f"{prefix}-hamming-train-{m}.dat"),
        test=os.path.join(output_dir, f"{prefix}-hamming-test-{m}.dat"),
        h5=os.path.join(output_dir, f"{prefix}-hamming-{m}.h5"),
        center=os.path.join(output_dir, f"{prefix.upper()}_CENTER.dat"),
    )


def compute_center(base_path, query_path, chunk_size, exact=False, dtype=None):
    """Pass 1: mean over every base and query point, one chunk at a time."""
    acc = StreamingCentroid()
    for path in (base_path, query_path):
        for start, points in iter_point_chunks(path, chunk_size, dtype):
            acc.add(points)
            print(f"[Centroid] {os.path.basename(path)}: {start + len(points):,} points")
    print(f"[Centroid] # of points: {acc.total:,} in {len(acc.chunk_means)} chunks")
    return acc.exact_centroid() if exact else acc.centroid()


def encode_file(path, codec, center, dedup, chunk_size, dtype=None):
    """Pass 2: recenter and encode one point file, routing codes into the shards."""
    for start, points in iter_point_chunks(path, chunk_size, dtype):
        codes = codec.encode(points.astype(np.float64) - center)
        dedup.add(codes)
        print(f"[Encode] {os.path.basename(path)}: {start + len(points):,} points encoded")


def split_corpus(paths, m, n_tot, num_queries, seed, chunk_size, neighbors=0):
    """
    Pass 3: sample the query indices and stream the unique codes once,
    writing the train and test sets. Returns (n_train, n_query).
    """
    enc_dim = m // 64
    query_set = sample_query_indices(n_tot, num_queries, seed)
    splitter = TrainQuerySplitter(query_set)
    queries = []
    tc = 0

    with Hdf5Sink(paths['h5'], m) as sink:
        sink.create('train', n_tot - num_queries)
        with open(paths['train'], "wb") as tfp:
            for chunk in iter_code_chunks(paths['all'], enc_dim, chunk_size):
                train, query = splitter.split(chunk)
                train.tofile(tfp)
                tc = sink.write('train', train, tc)
                if len(query):
                    queries.append(query)
                print(f"[Split] {splitter.offset:,} / {n_tot:,} codes, {splitter.n_query:,} queries")
        n_train, n_query = splitter.finish()

        queries = np.concatenate(queries) if queries else np.empty((0, enc_dim), dtype=np.uint64)
        with open(paths['test'], "wb") as qfp:
            queries.tofile(qfp)
        sink.write_all('test', queries)

        if neighbors > 0:
            gt = HammingGroundTruth(queries, m, neighbors)
            for chunk in iter_code_chunks(paths['train'], enc_dim, chunk_size):
                gt.add(chunk)
                print(f"[GT] Searched {gt.offset:,} / {n_train:,} train codes")
            ids, dists = gt.result()
            sink.write_all('neighbors', ids, dtype=np.int64)
            sink.write_all('distances', dists, dtype=np.int32)

    return n_train, n_query


def convert(base_path, query_path, m, output_dir=".", prefix="hamming",
            num_queries=1000, chunk_size=DEFAULT_CHUNK_SIZE, n_shards=N_FILES,
            max_shard_codes=None, seed=SEED, code_seed=C_SEED, exact_center=False,
            include_queries=False, neighbors=0, temp_dir=None, dtype=None):
    """
    Run the whole conversion and return the dict of output paths.
    `dtype` is the element type of both point files; None picks it from the extension.
    """
    enc_dim = check_code_width(m)
    routing_bits(n_shards)
    if chunk_size <= 0:
        raise ValueError("chunk_size must be a positive integer.")
    os.makedirs(output_dir, exist_ok=True)
    paths = output_paths(output_dir, prefix, m)
    t0 = time.time()

    dim = read_dim(base_path)
    if read_dim(query_path) != dim:
        raise ValueError(
            f"Dimension mismatch: base vectors have dimension {dim} but query vectors "
            f"have dimension {read_dim(query_path)}."
        )

    center = compute_center(base_path, query_path, chunk_size, exact_center, dtype)
    write_center(paths['center'], center)
    print(f"[Main] Center written to {paths['center']}")

    codec = SimHashCodec(dim, m, np.random.default_rng(code_seed))
    scratch = temp_dir or tempfile.mkdtemp(prefix="hamming_shards_")
    print(f"[Main] temp_dir = {scratch}")
    dedup = ShardedDeduplicator(scratch, enc_dim, n_shards, max_shard_codes)
    try:
        encode_file(base_path, codec, center, dedup, chunk_size, dtype)
        if include_queries:
            encode_file(query_path, codec, center, dedup, chunk_size, dtype)
    except Exception:
        dedup.close()
        raise
    _, n_tot = dedup.finish(paths['all'])
    print(f"converted:\n\t#points: {n_tot:,}, #dim: {m}")

    n_train, n_query = split_corpus(paths, m, n_tot, num_queries,
                                    np.random.default_rng(seed), chunk_size, neighbors)
    print(f"[Main] Stored {n_train:,} train codes in '{paths['train']}'.")
    print(f"[Main] Stored {n_query:,} query codes in '{paths['test']}'.")
    print(f"[Main] HDF5 container: '{paths['h5']}'")

    if temp_dir is None:
        shutil.rmtree(scratch)
    print(f"[Main] Done in {time.time() - t0:.2f}s")
    return paths


def main():
    parser = argparse.ArgumentParser(
        description="Convert a point-file dataset into deduplicated Hamming codes split into train and test sets."
    )
    parser.add_argument("hamming_dim", type=int,
                        help="Code width m in bits (positive multiple of 64)")
    parser.add_argument("dataset_dir", nargs="?", default=None,
                        help="Directory holding the base and query point files (default: per dataset)")
    parser.add_argument("--dataset", choices=sorted(DATASETS), default='sift1b',
                        help="Dataset profile (default: sift1b)")
    parser.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE,
                        help=f"Points or codes per in-memory chunk (default {DEFAULT_CHUNK_SIZE:,})")
    parser.add_argument("--shards", type=int, default=N_FILES,
                        help=f"Number of dedup shards, a power of two (default {N_FILES})")
    parser.add_argument("--max-shard-codes", type=int, default=None,
                        help="Abort if any shard holds more codes than this")
    parser.add_argument("--num-queries", type=int, default=None,
                        help="Number of query codes (default: per dataset)")
    parser.add_argument("--seed", type=int, default=SEED,
                        help=f"Seed for query sampling (default {SEED})")
    parser.add_argument("--code-seed", type=int, default=C_SEED,
                        help=f"Seed for the hyperplanes (default {C_SEED})")
    parser.add_argument("--base-file", default=None,
                        help="Base point file name inside DATASET_DIR (default: per dataset)")
    parser.add_argument("--query-file", default=None,
                        help="Query point file name inside DATASET_DIR (default: per dataset)")
    # profile defaults below unless one of these is given
    parser.add_argument("--exact-centroid", dest="exact_centroid", action="store_true", default=None,
                        help="Use the exact corpus mean (default for sift1m)")
    parser.add_argument("--chunk-centroid", dest="exact_centroid", action="store_false",
                        help="Use the mean of per-chunk means divided by the point count (default for sift1b)")
    parser.add_argument("--include-queries", dest="include_queries", action="store_true", default=None,
                        help="Also encode the query file into the corpus (default for sift1m)")
    parser.add_argument("--base-only", dest="include_queries", action="store_false",
                        help="Encode only the base file (default for sift1b)")
    parser.add_argument("--neighbors", type=int, default=0,
                        help="Store the K nearest train codes of each query (default 0: skip)")
    parser.add_argument("--temp-dir", default=None,
                        help="Directory for scratch shard files (default: auto temp)")
    parser.add_argument("--output-dir", "-o", default=".",
                        help="Directory to write the outputs into (default: cwd)")
    args = parser.parse_args()

    try:
        check_code_width(args.hamming_dim)
        routing_bits(args.shards)
    except ValueError as e:
        parser.error(str(e))
    if args.chunk_size <= 0:
        parser.error("--chunk-size must be a positive integer.")

    profile = DATASETS[args.dataset]
    dirname = args.dataset_dir or profile['dir']
    base_path = os.path.join(dirname, args.base_file or profile['base'])
    query_path = os.path.join(dirname, args.query_file or profile['query'])
    for path in (base_path, query_path):
        if not os.path.isfile(path):
            print(f"ERROR: Input file {path!r} does not exist.", file=sys.stderr)
            sys.exit(1)

    num_queries = profile['num_queries'] if args.num_queries is None else args.num_queries
    exact_center = profile['exact_center'] if args.exact_centroid is None else args.exact_centroid
    include_queries = profile['include_queries'] if args.include_queries is None else args.include_queries

    try:
        convert(
            base_path, query_path, args.hamming_dim,
            output_dir=args.output_dir,
            prefix=profile['prefix'],
            num_queries=num_queries,
            chunk_size=args.chunk_size,
            n_shards=args.shards,
            max_shard_codes=args.max_shard_codes,
            seed=args.seed,
            code_seed=args.code_seed,
            exact_center=exact_center,
            include_queries=include_queries,
            neighbors=args.neighbors,
            temp_dir=args.temp_dir,
            dtype=profile['dtype'],
        )
    except Exception as e:
        print(f"ERROR: {str(e) or type(e).__name__}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
