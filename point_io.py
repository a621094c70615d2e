import os
import struct
import numpy as np

# element type per point-file extension
ELEMENT_TYPES = {
    '.fvecs': np.dtype('<f4'),
    '.bvecs': np.dtype('u1'),
}


def element_dtype(fname):
    """Element dtype for a point file, chosen by its extension."""
    ext = os.path.splitext(fname)[1].lower()
    if ext not in ELEMENT_TYPES:
        raise ValueError(
            f"Unsupported point file extension {ext!r} (expected one of {sorted(ELEMENT_TYPES)})."
        )
    return ELEMENT_TYPES[ext]


def read_dim(fname):
    """Read the dimensionality from the header of the first record."""
    fname = os.path.expanduser(fname)
    with open(fname, "rb") as f:
        hdr = f.read(4)
    if len(hdr) < 4:
        raise ValueError(f"Input file {fname!r} is empty or too small.")
    dim = struct.unpack("<i", hdr)[0]
    if dim <= 0:
        raise ValueError(f"Invalid dimension ({dim}) in the first record of {fname!r}.")
    return dim


def record_size(dim, dtype):
    return 4 + dim * np.dtype(dtype).itemsize


def count_points(fname, dtype=None):
    """Number of records in a point file, computed from the file size."""
    fname = os.path.expanduser(fname)
    dtype = dtype if dtype is not None else element_dtype(fname)
    dim = read_dim(fname)
    rec = record_size(dim, dtype)
    total_bytes = os.path.getsize(fname)
    if total_bytes % rec != 0:
        raise ValueError(
            f"File size ({total_bytes}) is not a multiple of record size ({rec})."
        )
    return total_bytes // rec


def read_points(fname, start=0, count=None, dtype=None):
    """
    Read up to `count` points starting at record `start`.

    Seeks straight to byte start * (4 + dim * element_width) and returns an
    array of shape (n, dim) in the file's element dtype; n is smaller than
    `count` only at the end of the file. A record whose declared length
    cannot be satisfied, or whose dimensionality differs from the first
    record, is an error.
    """
    fname = os.path.expanduser(fname)
    dtype = np.dtype(dtype if dtype is not None else element_dtype(fname))
    dim = read_dim(fname)
    rec_dtype = np.dtype([('d', '<i4'), ('v', dtype, (dim,))])

    with open(fname, "rb") as f:
        f.seek(start * rec_dtype.itemsize)
        if count is None:
            buf = f.read()
        else:
            buf = f.read(count * rec_dtype.itemsize)

    n, rest = divmod(len(buf), rec_dtype.itemsize)
    if rest:
        raise IOError(
            f"Incomplete record at vector {start + n} of {fname!r}: "
            f"{rest} trailing bytes, expected {rec_dtype.itemsize} per record."
        )
    records = np.frombuffer(buf, dtype=rec_dtype, count=n)
    bad = np.flatnonzero(records['d'] != dim)
    if bad.size:
        i = bad[0]
        raise ValueError(
            f"Inconsistent dimension: expected {dim}, got {records['d'][i]} "
            f"at vector {start + i}."
        )
    return records['v']


def iter_point_chunks(fname, chunk_size, dtype=None):
    """Yield (start, points) for consecutive chunks of at most chunk_size points."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be a positive integer.")
    total = count_points(fname, dtype)
    for start in range(0, total, chunk_size):
        yield start, read_points(fname, start, chunk_size, dtype)


def write_vecs(fname, arr, dtype=None):
    """
    Write an (n, d) array to a point file.
    Each vector is stored as: [d (int32), element, element, ..., element].
    """
    fname = os.path.expanduser(fname)
    dtype = np.dtype(dtype if dtype is not None else element_dtype(fname))
    arr = np.asarray(arr)
    n, d = arr.shape
    rec_dtype = np.dtype([('d', '<i4'), ('v', dtype, (d,))])
    records = np.empty(n, dtype=rec_dtype)
    records['d'] = d
    records['v'] = arr.astype(dtype)
    with open(fname, "wb") as f:
        records.tofile(f)


def write_center(fname, center):
    """Recentering sidecar: int32 dimensionality followed by float32 values."""
    center = np.asarray(center, dtype='<f4').ravel()
    with open(os.path.expanduser(fname), "wb") as f:
        f.write(struct.pack("<i", center.size))
        center.tofile(f)


def read_center(fname):
    with open(os.path.expanduser(fname), "rb") as f:
        hdr = f.read(4)
        if len(hdr) < 4:
            raise ValueError("Center file is empty or too small.")
        dim = struct.unpack("<i", hdr)[0]
        center = np.fromfile(f, dtype='<f4')
    if center.size != dim:
        raise ValueError(f"Center file declares {dim} values but holds {center.size}.")
    return center
