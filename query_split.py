"""
query_split.py

Splits a deduplicated code corpus into mutually exclusive train and query
(test) sets in a single streaming pass. The query indices are drawn at
random, without replacement, before the pass starts; the corpus itself is
never modified.
"""

import os
import numpy as np

from hamming_codec import CODE_DTYPE


class SplitConsistencyError(AssertionError):
    pass


class QueryIndexSet:
    """Sorted, distinct global indices of the codes that go to the query set."""

    def __init__(self, indices, corpus_size):
        indices = np.unique(np.asarray(indices, dtype=np.int64))
        if indices.size and (indices[0] < 0 or indices[-1] >= corpus_size):
            raise ValueError(f"Query indices must lie in [0, {corpus_size}).")
        self.indices = indices
        self.corpus_size = corpus_size

    def __len__(self):
        return self.indices.size

    def __contains__(self, i):
        pos = np.searchsorted(self.indices, i)
        return bool(pos < self.indices.size and self.indices[pos] == i)

    def __iter__(self):
        return iter(self.indices.tolist())

    def mask(self, offset, count):
        """Boolean mask over the global index range [offset, offset + count)."""
        lo, hi = np.searchsorted(self.indices, [offset, offset + count])
        mask = np.zeros(count, dtype=bool)
        mask[self.indices[lo:hi] - offset] = True
        return mask


def sample_query_indices(corpus_size, num_queries, seed):
    """
    Choose num_queries distinct indices uniformly from [0, corpus_size).
    `seed` may be an int or a numpy Generator.
    """
    if num_queries < 0:
        raise ValueError("num_queries must be non-negative.")
    if num_queries > corpus_size:
        raise ValueError(
            f"Requested num_queries {num_queries} exceeds available codes {corpus_size}."
        )
    rng = np.random.default_rng(seed)
    indices = rng.choice(corpus_size, size=num_queries, replace=False)
    return QueryIndexSet(indices, corpus_size)


class TrainQuerySplitter:
    """
    Streams chunks of the corpus and routes every code either to the train
    stream or to the query stream, depending on its global index.
    """

    def __init__(self, query_set):
        self.query_set = query_set
        self.offset = 0
        self.n_train = 0
        self.n_query = 0

    def split(self, chunk):
        """Split one chunk covering [offset, offset + len(chunk)); returns (train, query)."""
        chunk = np.asarray(chunk, dtype=CODE_DTYPE)
        n = chunk.shape[0]
        is_query = self.query_set.mask(self.offset, n)
        train = chunk[~is_query]
        query = chunk[is_query]
        self.offset += n
        self.n_train += train.shape[0]
        self.n_query += query.shape[0]
        return train, query

    def finish(self):
        if self.n_query != len(self.query_set):
            raise SplitConsistencyError(
                f"Query stream holds {self.n_query} codes, expected {len(self.query_set)}."
            )
        if self.offset != self.query_set.corpus_size:
            raise SplitConsistencyError(
                f"Split covered {self.offset} codes, corpus holds {self.query_set.corpus_size}."
            )
        return self.n_train, self.n_query


def iter_code_chunks(fname, enc_dim, chunk_codes):
    """Yield consecutive (n, enc_dim) blocks of at most chunk_codes codes from a packed code file."""
    if chunk_codes <= 0:
        raise ValueError("chunk_codes must be a positive integer.")
    fname = os.path.expanduser(fname)
    width = enc_dim * CODE_DTYPE.itemsize
    with open(fname, "rb") as f:
        while True:
            buf = f.read(chunk_codes * width)
            if not buf:
                break
            if len(buf) % width:
                raise IOError(
                    f"Incomplete code in {fname!r}: {len(buf) % width} trailing bytes."
                )
            yield np.frombuffer(buf, dtype=CODE_DTYPE).reshape(-1, enc_dim)
