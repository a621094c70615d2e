"""
hamming_codec.py

Random-hyperplane (SimHash) encoder that turns dense vectors into m-bit
Hamming codes, plus the shard routing rule that reads bits out of those codes.

Code layout: m bits stored as m/64 unsigned 64-bit words per point. Bit i of
the signature is bit (63 - i % 64) of word i // 64, i.e. bits are packed
most-significant-first. On disk every word is little-endian.
"""

import numpy as np

WORD_BITS = 64
CODE_DTYPE = np.dtype('<u8')
MAX_SHARDS = 1 << 16


def check_code_width(m):
    """Validate a code width and return enc_dim = m / 64."""
    if isinstance(m, bool) or not isinstance(m, (int, np.integer)):
        raise ValueError(f"Code width must be an integer, got {m!r}.")
    if m <= 0 or m % WORD_BITS != 0:
        raise ValueError(f"Code width must be a positive multiple of {WORD_BITS}, got {m}.")
    return int(m) // WORD_BITS


class SimHashCodec:
    """
    Deterministic random-projection encoder.

    The m hyperplane normals are drawn once from a standard normal
    distribution at construction time. `seed` may be an int or an already
    constructed numpy Generator; the same seed always yields the same
    hyperplanes and therefore the same codes.
    """

    def __init__(self, dim, m, seed):
        if dim <= 0:
            raise ValueError(f"Dimensionality must be positive, got {dim}.")
        self.dim = int(dim)
        self.m = int(m)
        self.enc_dim = check_code_width(m)
        rng = np.random.default_rng(seed)
        self.hyperplanes = rng.standard_normal((self.m, self.dim))

    def encode(self, points):
        """
        Encode a batch of (already centered) points.

        Returns an array of shape (n, enc_dim) and dtype uint64, one row per
        input point in input order. Bit i is 1 iff dot(point, normal_i) >= 0.
        """
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points.reshape(1, -1)
        if points.ndim != 2 or points.shape[1] != self.dim:
            raise ValueError(
                f"Expected points of dimension {self.dim}, got shape {points.shape}."
            )
        if points.shape[0] == 0:
            return np.empty((0, self.enc_dim), dtype=CODE_DTYPE)

        bits = (points @ self.hyperplanes.T) >= 0
        packed = np.packbits(bits, axis=1)
        # each group of 8 bytes is one big-endian word (MSB = first bit)
        return packed.view('>u8').astype(CODE_DTYPE)


def routing_bits(n_shards):
    """
    Number of leading code bits used to pick a shard.

    Only powers of two route evenly: every shard id then owns the same share
    of bit patterns.
    """
    if isinstance(n_shards, bool) or not isinstance(n_shards, (int, np.integer)):
        raise ValueError(f"Shard count must be an integer, got {n_shards!r}.")
    if n_shards < 1 or n_shards > MAX_SHARDS:
        raise ValueError(f"Shard count must be in [1, {MAX_SHARDS}], got {n_shards}.")
    if n_shards & (n_shards - 1):
        raise ValueError(f"Shard count must be a power of two, got {n_shards}.")
    return int(n_shards).bit_length() - 1


def route(codes, n_shards):
    """
    Shard id of every code: the top log2(n_shards) bits of its first word.

    Depends on nothing but the code bits, so identical codes always land in
    the same shard.
    """
    bits = routing_bits(n_shards)
    codes = np.asarray(codes, dtype=CODE_DTYPE)
    if codes.ndim == 1:
        codes = codes.reshape(1, -1)
    if bits == 0:
        return np.zeros(codes.shape[0], dtype=np.int64)
    return (codes[:, 0] >> np.uint64(WORD_BITS - bits)).astype(np.int64)
