"""
hamming_gt.py

Exact Hamming-distance ground truth for the query codes, computed against a
train set that is streamed in chunks. Each chunk is indexed with a flat
binary FAISS index and its top-k results are merged into the running top-k,
so memory stays bounded by one chunk plus num_queries * k results.
"""

import numpy as np
import faiss

from hamming_codec import CODE_DTYPE

# train indices are packed below the distance in one int64 sort key
_INDEX_BITS = 40
_MISSING_INDEX = (1 << _INDEX_BITS) - 1


def codes_to_bytes(codes):
    """
    View (n, enc_dim) uint64 codes as (n, enc_dim * 8) uint8 rows for FAISS.
    The byte order inside each word changes, which leaves Hamming distances unchanged.
    """
    codes = np.require(codes, dtype=CODE_DTYPE, requirements=['C', 'W'])
    return codes.view(np.uint8).reshape(codes.shape[0], -1)


def build_index(codes, m):
    """Build a flat binary FAISS index over the given codes."""
    index = faiss.IndexBinaryFlat(m)
    if len(codes):
        index.add(codes_to_bytes(codes))
    return index


class HammingGroundTruth:
    """Running top-k nearest train codes for a fixed set of query codes."""

    def __init__(self, queries, m, k):
        if k <= 0:
            raise ValueError("k must be a positive integer.")
        self.queries = codes_to_bytes(queries)
        self.m = m
        self.k = k
        self.offset = 0
        nq = self.queries.shape[0]
        self._keys = np.full((nq, k), self._key(m + 1, _MISSING_INDEX), dtype=np.int64)

    @staticmethod
    def _key(dist, idx):
        return (np.asarray(dist, dtype=np.int64) << _INDEX_BITS) | np.asarray(idx, dtype=np.int64)

    def add(self, train_chunk):
        """Search one train chunk whose first code has global index `self.offset`."""
        n = len(train_chunk)
        if n == 0:
            return
        if self.offset + n > _MISSING_INDEX:
            raise ValueError("Train set too large for the ground truth index range.")
        if self.queries.shape[0] == 0:
            self.offset += n
            return
        index = build_index(train_chunk, self.m)
        D, I = index.search(self.queries, min(self.k, n))
        missing = I < 0
        D = np.where(missing, self.m + 1, D)
        I = np.where(missing, _MISSING_INDEX, I + self.offset)
        keys = np.concatenate([self._keys, self._key(D, I)], axis=1)
        keys.sort(axis=1)
        self._keys = keys[:, :self.k]
        self.offset += n

    def result(self):
        """Return (neighbors, distances); slots with no train code hold -1."""
        idx = self._keys & _MISSING_INDEX
        dist = self._keys >> _INDEX_BITS
        missing = idx == _MISSING_INDEX
        neighbors = np.where(missing, -1, idx).astype(np.int64)
        distances = np.where(missing, -1, dist).astype(np.int32)
        return neighbors, distances
