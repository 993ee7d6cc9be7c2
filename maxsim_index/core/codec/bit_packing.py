"""
Bit-plane packing of residual bucket indices.

Layout of one packed embedding (this is the on-disk format, do not change it):

    The bucket index of dimension d (0 <= d < D) is split into nbits binary
    planes, plane 0 holding the least significant bit. The planes are laid
    out one after another, giving a stream of nbits * D bits where

        stream_position = plane * D + d

    The stream is cut into bytes LSB-first: bit j (value 1 << j) of byte k
    is stream position 8 * k + j.

When D is a multiple of 8, byte k therefore holds dimensions [8k', 8k' + 8)
of a single plane, with the planes concatenated. D * nbits must be a
multiple of 8 so that each embedding occupies whole bytes.
"""
import numpy as np

def bucketize(values: np.ndarray, cutoffs: np.ndarray) -> np.ndarray:
    """
    Map every value to the index of the first cutoff >= value.

    Args:
        values: Residual components, any shape
        cutoffs: Sorted bucket boundaries, shape (2^nbits - 1,)

    Returns:
        uint8 array of bucket indices in [0, 2^nbits) with the shape of values
    """
    return np.searchsorted(cutoffs, values, side="left").astype(np.uint8)

def pack_bit_planes(bucket_indices: np.ndarray, nbits: int) -> np.ndarray:
    """
    Pack bucket indices of shape (n, D) into uint8 of shape (n, D * nbits / 8).
    """
    bucket_indices = np.asarray(bucket_indices)
    if bucket_indices.ndim != 2:
        raise ValueError(f"Expected a 2D array of bucket indices, got shape {bucket_indices.shape}")
    num_embeddings, dim = bucket_indices.shape
    total_bits = dim * nbits
    if total_bits % 8 != 0:
        raise ValueError(f"dim * nbits must be a multiple of 8 (dim={dim}, nbits={nbits})")

    indices = bucket_indices.astype(np.uint8)
    stream = np.empty((num_embeddings, total_bits), dtype=np.uint8)
    for plane in range(nbits):
        stream[:, plane * dim:(plane + 1) * dim] = (indices >> plane) & 1

    # Group the stream in runs of 8 and fold each run into one byte, LSB first
    stream = stream.reshape(num_embeddings, total_bits // 8, 8)
    packed = np.zeros((num_embeddings, total_bits // 8), dtype=np.uint8)
    for bit in range(8):
        packed |= stream[:, :, bit] << bit
    return packed

def unpack_bit_planes(packed: np.ndarray, dim: int, nbits: int) -> np.ndarray:
    """
    Inverse of pack_bit_planes. Returns uint8 bucket indices of shape (n, dim).
    """
    packed = np.asarray(packed, dtype=np.uint8)
    if packed.ndim != 2 or packed.shape[1] * 8 != dim * nbits:
        raise ValueError(
            f"Packed residuals of shape {packed.shape} do not match dim={dim}, nbits={nbits}"
        )
    num_embeddings, num_bytes = packed.shape

    stream = np.empty((num_embeddings, num_bytes, 8), dtype=np.uint8)
    for bit in range(8):
        stream[:, :, bit] = (packed >> bit) & 1
    stream = stream.reshape(num_embeddings, dim * nbits)

    # Weighted sum of the planes: plane i contributes bit_i * 2^i
    indices = np.zeros((num_embeddings, dim), dtype=np.uint8)
    for plane in range(nbits):
        indices |= stream[:, plane * dim:(plane + 1) * dim] << plane
    return indices
