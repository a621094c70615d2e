#!/usr/bin/env python3
"""
sharded_dedup.py

Exact deduplication of Hamming codes for corpora much larger than memory.

Codes are routed into a fixed number of scratch shard files by the leading
bits of their first word (see hamming_codec.route). Identical codes always
share a shard, so each shard can be deduplicated on its own in memory and
the per-shard unique sets concatenated into the globally unique corpus.
There is no re-shard or retry: a shard that outgrows `max_shard_codes`
aborts the run.
"""

import os
import numpy as np

from hamming_codec import CODE_DTYPE, route, routing_bits


class ShardOverflowError(RuntimeError):
    pass


class Shard:
    """Append-only scratch file of packed codes, truncated when opened."""

    def __init__(self, path, enc_dim):
        self.path = path
        self.enc_dim = enc_dim
        self.count = 0
        self._f = open(path, "wb+")

    def append(self, codes):
        if len(codes) == 0:
            return
        np.ascontiguousarray(codes, dtype=CODE_DTYPE).tofile(self._f)
        self.count += len(codes)

    def read_all(self):
        self._f.flush()
        self._f.seek(0)
        words = np.fromfile(self._f, dtype=CODE_DTYPE)
        if words.size != self.count * self.enc_dim:
            raise IOError(
                f"Shard {self.path!r} holds {words.size} words, "
                f"expected {self.count * self.enc_dim}."
            )
        return words.reshape(self.count, self.enc_dim)

    def close(self):
        if not self._f.closed:
            self._f.close()


def dedup_codes(codes):
    """
    Remove exact duplicates from an (n, enc_dim) block of codes.

    Each row is viewed as one opaque void scalar and passed to np.unique;
    the first-occurrence indices are sorted back into input order, so the
    result only depends on the input order.
    """
    codes = np.ascontiguousarray(codes, dtype=CODE_DTYPE)
    if codes.shape[0] == 0:
        return codes
    width = codes.shape[1] * CODE_DTYPE.itemsize
    keys = codes.view(np.dtype((np.void, width))).ravel()
    _, first = np.unique(keys, return_index=True)
    return codes[np.sort(first)]


class ShardedDeduplicator:
    """
    Route encoded chunks into `n_shards` scratch files, then deduplicate
    each shard and write the unique codes to one consolidated file.
    """

    def __init__(self, scratch_dir, enc_dim, n_shards=32, max_shard_codes=None):
        routing_bits(n_shards)
        if enc_dim <= 0:
            raise ValueError(f"enc_dim must be positive, got {enc_dim}.")
        os.makedirs(scratch_dir, exist_ok=True)
        self.scratch_dir = scratch_dir
        self.enc_dim = enc_dim
        self.n_shards = n_shards
        self.max_shard_codes = max_shard_codes
        self.total_in = 0
        self.shards = [
            Shard(os.path.join(scratch_dir, f"{k}.dat"), enc_dim)
            for k in range(n_shards)
        ]

    def add(self, codes):
        """Route one encoded chunk and append each part to its shard."""
        codes = np.asarray(codes, dtype=CODE_DTYPE)
        if codes.ndim != 2 or codes.shape[1] != self.enc_dim:
            raise ValueError(
                f"Expected codes of shape (n, {self.enc_dim}), got {codes.shape}."
            )
        if codes.shape[0] == 0:
            return
        fid = route(codes, self.n_shards)
        order = np.argsort(fid, kind='stable')
        bounds = np.searchsorted(fid[order], np.arange(self.n_shards + 1))
        for k, shard in enumerate(self.shards):
            lo, hi = bounds[k], bounds[k + 1]
            if hi > lo:
                shard.append(codes[order[lo:hi]])
        self.total_in += codes.shape[0]

    def finish(self, output_path):
        """
        Deduplicate every shard and append its unique codes to output_path.

        Returns (size_each, n_tot): unique codes per shard and their total.
        """
        size_each = []
        n_tot = 0
        print(f"[Dedup] Routed {self.total_in:,} codes into {self.n_shards} shards")
        try:
            with open(output_path, "wb") as out:
                for k, shard in enumerate(self.shards):
                    if self.max_shard_codes is not None and shard.count > self.max_shard_codes:
                        raise ShardOverflowError(
                            f"Shard {k} holds {shard.count:,} codes, more than the "
                            f"limit of {self.max_shard_codes:,}; routing is too skewed."
                        )
                    try:
                        unique = dedup_codes(shard.read_all())
                    except MemoryError as e:
                        raise ShardOverflowError(
                            f"Shard {k} holds {shard.count:,} codes and does not fit in "
                            f"memory; use more shards or set --max-shard-codes."
                        ) from e
                    unique.tofile(out)
                    size_each.append(unique.shape[0])
                    n_tot += unique.shape[0]
                    print(f"[Dedup] Shard {k}: {shard.count:,} → {unique.shape[0]:,} unique")
                    shard.close()
        finally:
            self.close()
        print(f"[Dedup] Total unique: {n_tot:,}, removed: {self.total_in - n_tot:,}")
        return size_each, n_tot

    def close(self):
        for shard in self.shards:
            shard.close()
