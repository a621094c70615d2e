import os
import h5py
import numpy as np

from hamming_codec import CODE_DTYPE, WORD_BITS


class Hdf5Sink:
    """
    HDF5 container for the converted codes.

    Datasets hold uint64 words with shape (rows, enc_dim) and can be filled
    incrementally, one block of rows at a time.
    """

    def __init__(self, fname, m):
        self.fname = os.path.expanduser(fname)
        self.m = m
        self.enc_dim = m // WORD_BITS
        self.hf = h5py.File(self.fname, 'w')
        self.hf.attrs['distance'] = 'hamming'
        self.hf.attrs['point_type'] = 'binary'
        self.hf.attrs['dimension'] = m

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def create(self, name, rows, cols=None, dtype=CODE_DTYPE):
        cols = self.enc_dim if cols is None else cols
        chunk_rows = max(1, min(rows, 1 << 16))
        return self.hf.create_dataset(
            name,
            shape=(rows, cols),
            dtype=dtype,
            chunks=(chunk_rows, cols) if rows else None,
        )

    def write(self, name, data, start):
        """Write rows [start, start + len(data)) of an existing dataset."""
        if name not in self.hf:
            raise ValueError(f"Key '{name}' not found in HDF5 file: {self.fname}")
        dset = self.hf[name]
        data = np.asarray(data)
        end = start + data.shape[0]
        if end > dset.shape[0]:
            raise ValueError(
                f"Writing rows [{start}, {end}) past the end of '{name}' ({dset.shape[0]} rows)."
            )
        if data.shape[0]:
            dset[start:end] = data
        return end

    def write_all(self, name, data, dtype=CODE_DTYPE):
        data = np.asarray(data)
        self.create(name, data.shape[0], data.shape[1], dtype)
        self.write(name, data, 0)

    def close(self):
        if self.hf.id.valid:
            self.hf.close()


def read_hdf5(fname, key):
    """
    Reads an HDF5 file and returns a numpy array from the dataset with the given key.
    """
    with h5py.File(os.path.expanduser(fname), 'r') as hf:
        if key not in hf:
            raise ValueError(f"Key '{key}' not found in HDF5 file: {fname}")
        return np.array(hf[key])
