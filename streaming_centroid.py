import numpy as np


class StreamingCentroid:
    """
    Accumulates the mean of a corpus that is read one chunk at a time.

    Only one mean per chunk and a running float64 sum are kept; the chunks
    themselves are never retained.
    """

    def __init__(self):
        self.chunk_means = []
        self.chunk_sizes = []
        self.total = 0
        self.dim = None
        self._sum = None

    def add(self, chunk):
        """Record one chunk and return its chunk-local mean (None for an empty chunk)."""
        chunk = np.asarray(chunk, dtype=np.float64)
        if chunk.ndim != 2:
            raise ValueError(f"Expected a 2-D chunk of points, got shape {chunk.shape}.")
        if chunk.shape[0] == 0:
            return None

        if self.dim is None:
            self.dim = chunk.shape[1]
            self._sum = np.zeros(self.dim, dtype=np.float64)
        elif chunk.shape[1] != self.dim:
            raise ValueError(
                f"Dimension mismatch: expected {self.dim}, got {chunk.shape[1]}."
            )

        chunk_sum = chunk.sum(axis=0)
        mean = chunk_sum / chunk.shape[0]
        self._sum += chunk_sum
        self.chunk_means.append(mean)
        self.chunk_sizes.append(chunk.shape[0])
        self.total += chunk.shape[0]
        return mean

    def _check_nonempty(self):
        if self.total == 0:
            raise ValueError("No points were added; cannot compute a centroid.")

    def centroid(self):
        """
        Published recentering vector: the mean of the per-chunk means divided
        by the total point count.

        Chunks of unequal size are weighted equally, so this is only an
        approximation of the corpus mean when the last chunk is short.
        """
        self._check_nonempty()
        return np.mean(self.chunk_means, axis=0) / self.total

    def exact_centroid(self):
        """Arithmetic mean of every point added so far."""
        self._check_nonempty()
        return self._sum / self.total
