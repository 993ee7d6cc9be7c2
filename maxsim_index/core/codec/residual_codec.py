# maxsim_index/core/codec/residual_codec.py
"""
Residual compression of token embeddings.

Each embedding is stored as the id of its nearest centroid (its code) plus
the residual embedding - centroid, quantized per dimension into 2^nbits
buckets and bit-packed (see bit_packing.py for the byte layout).
"""
import logging
import struct
import numpy as np
from typing import Optional, Tuple
from maxsim_index.config import (
    IndexConfig,
    IndexPaths,
    COMPRESS_BATCH_SIZE,
    DECOMPRESS_BATCH_SIZE,
    CODES_BATCH_BYTES,
    HELDOUT_FRACTION,
    MAX_HELDOUT,
    KMEANS_SEED
)
from maxsim_index.core.codec.bit_packing import bucketize, pack_bit_planes, unpack_bit_planes
from maxsim_index.core.codec.kmeans import KMeans
from maxsim_index.core.indexing.binary_format import write_binary_file, read_binary_file, PayloadReader
from maxsim_index.core.similarity_engine.vector_math import VectorOps
from maxsim_index.core.utilities.errors import ConfigurationError, CorruptFileError, DegenerateSampleError

logger = logging.getLogger(__name__)

CODEC_MAGIC = b"MXCD"
CODEC_PARAMS_FORMAT = "<IIIf"  # dim, num_centroids, nbits, avg_residual

def _readonly(array: np.ndarray, dtype) -> np.ndarray:
    array = np.array(array, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array

class ResidualCodec:
    """
    Compressor for token embeddings.

    Instances are immutable once built: the arrays are read-only and nothing
    reassigns them, so one codec can be shared by every chunk job and search.

    Attributes:
        config: The IndexConfig this codec was trained for
        centroids: float32 array of shape (N, D)
        avg_residual: Mean absolute residual component over the held-out sample
        bucket_cutoffs: float32 array of shape (2^nbits - 1,), ascending
        bucket_weights: float32 array of shape (2^nbits,), the value each bucket decodes to
    """

    def __init__(self, config: IndexConfig, centroids: np.ndarray, avg_residual: float,
                 bucket_cutoffs: np.ndarray, bucket_weights: np.ndarray, vector_ops=None):
        num_options = 2 ** config.nbits
        if centroids.ndim != 2 or centroids.shape[1] != config.dim:
            raise ConfigurationError(
                f"Centroids of shape {centroids.shape} do not match dim={config.dim}"
            )
        if len(bucket_cutoffs) != num_options - 1 or len(bucket_weights) != num_options:
            raise ConfigurationError(
                f"Expected {num_options - 1} cutoffs and {num_options} weights for nbits={config.nbits}, "
                f"got {len(bucket_cutoffs)} and {len(bucket_weights)}"
            )
        if np.any(np.diff(bucket_cutoffs) < 0):
            raise ConfigurationError("Bucket cutoffs must be sorted ascending")

        self.config = config
        self.centroids = _readonly(centroids, np.float32)
        self.avg_residual = float(avg_residual)
        self.bucket_cutoffs = _readonly(bucket_cutoffs, np.float32)
        self.bucket_weights = _readonly(bucket_weights, np.float32)
        self.vector_ops = vector_ops or VectorOps()

    @property
    def dim(self) -> int:
        return self.config.dim

    @property
    def nbits(self) -> int:
        return self.config.nbits

    @property
    def num_centroids(self) -> int:
        return self.centroids.shape[0]

    @property
    def packed_dim(self) -> int:
        return self.config.packed_dim

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    @classmethod
    def fit(cls, sample: np.ndarray, config: IndexConfig, num_centroids: Optional[int] = None,
            vector_ops=None, device: str = "cpu") -> "ResidualCodec":
        """
        Learn centroids and residual buckets from a sample of document embeddings.

        The sample is split into a training part for k-means and a held-out
        part whose residuals define the buckets. Cutoffs are the quantiles at
        i / 2^nbits (i = 1..2^nbits-1) and weights the quantiles at bucket
        midpoints (i + 0.5) / 2^nbits, pooled over all dimensions.

        Args:
            sample: float array of shape (n, D)
            config: Index configuration (dim, nbits, kmeans_niters)
            num_centroids: Number of centroids; defaults to config.num_centroids
            vector_ops: Backend for nearest-centroid assignment
            device: Torch device for k-means

        Raises:
            DegenerateSampleError: the sample is empty or cannot yield num_centroids centroids
            ConfigurationError: the sample dimension does not match config.dim
        """
        config.validate()
        num_centroids = num_centroids or config.num_centroids
        if not num_centroids:
            raise ConfigurationError("num_centroids must be set before fitting the codec")

        sample = np.asarray(sample, dtype=np.float32)
        if sample.size == 0:
            raise DegenerateSampleError("Cannot fit the codec on an empty sample")
        if sample.ndim != 2 or sample.shape[1] != config.dim:
            raise ConfigurationError(
                f"Sample of shape {sample.shape} does not match embedding dimension {config.dim}"
            )

        rng = np.random.default_rng(KMEANS_SEED)
        sample = sample[rng.permutation(len(sample))]
        heldout_size = heldout_size_for(len(sample))
        if heldout_size == 0:
            train, heldout = sample, sample
        else:
            train, heldout = sample[:-heldout_size], sample[-heldout_size:]

        logger.info(f"Training {num_centroids} centroids on {len(train):,} embeddings "
                    f"({len(heldout):,} held out for buckets)")
        centroids = KMeans(num_centroids, niters=config.kmeans_niters, device=device).fit(train)

        vector_ops = vector_ops or VectorOps()
        codes = _assign_codes(vector_ops, heldout, centroids)
        residuals = heldout - centroids[codes]
        avg_residual = float(np.abs(residuals).mean())

        num_options = 2 ** config.nbits
        quantiles = np.arange(num_options, dtype=np.float64) / num_options
        cutoff_quantiles = quantiles[1:]
        weight_quantiles = quantiles + 0.5 / num_options
        flat = residuals.ravel().astype(np.float64)
        bucket_cutoffs = np.quantile(flat, cutoff_quantiles)
        bucket_weights = np.quantile(flat, weight_quantiles)

        logger.debug(f"avg_residual={avg_residual:.5f} cutoffs={bucket_cutoffs} weights={bucket_weights}")
        return cls(config, centroids, avg_residual, bucket_cutoffs, bucket_weights, vector_ops=vector_ops)

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def _check_embeddings(self, embeddings: np.ndarray) -> np.ndarray:
        embeddings = np.asarray(embeddings, dtype=np.float32)
        if embeddings.ndim != 2 or embeddings.shape[1] != self.dim:
            raise ConfigurationError(
                f"Embeddings of shape {embeddings.shape} do not match dimension {self.dim}"
            )
        return embeddings

    def compress_into_codes(self, embeddings: np.ndarray, batch_size: Optional[int] = None) -> np.ndarray:
        """
        Nearest-centroid id for every embedding (first index wins on ties).

        Work is split into batches so the (batch x num_centroids) score
        matrix stays below CODES_BATCH_BYTES elements.
        """
        embeddings = self._check_embeddings(embeddings)
        return _assign_codes(self.vector_ops, embeddings, self.centroids, batch_size)

    def binarize(self, residuals: np.ndarray) -> np.ndarray:
        """Quantize residuals of shape (n, D) into packed uint8 of shape (n, packed_dim)."""
        residuals = np.asarray(residuals, dtype=np.float32)
        bucket_indices = bucketize(residuals, self.bucket_cutoffs)
        return pack_bit_planes(bucket_indices, self.nbits)

    def compress(self, embeddings: np.ndarray,
                 batch_size: int = COMPRESS_BATCH_SIZE) -> Tuple[np.ndarray, np.ndarray]:
        """
        Compress embeddings into (codes, packed_residuals).

        Returns:
            codes: int32 array of shape (n,)
            packed_residuals: uint8 array of shape (n, packed_dim)
        """
        embeddings = self._check_embeddings(embeddings)
        num_embeddings = len(embeddings)
        codes = np.empty(num_embeddings, dtype=np.int32)
        residuals = np.empty((num_embeddings, self.packed_dim), dtype=np.uint8)

        for start in range(0, num_embeddings, batch_size):
            end = min(start + batch_size, num_embeddings)
            batch = embeddings[start:end]
            batch_codes = self.compress_into_codes(batch)
            codes[start:end] = batch_codes
            residuals[start:end] = self.binarize(batch - self.centroids[batch_codes])

        return codes, residuals

    # ------------------------------------------------------------------
    # Decompression
    # ------------------------------------------------------------------

    def decompress_residuals(self, packed_residuals: np.ndarray) -> np.ndarray:
        """Map packed residuals back to approximate float32 residuals of shape (n, D)."""
        bucket_indices = unpack_bit_planes(packed_residuals, self.dim, self.nbits)
        return self.bucket_weights[bucket_indices]

    def decompress(self, codes: np.ndarray, packed_residuals: np.ndarray,
                   batch_size: int = DECOMPRESS_BATCH_SIZE) -> np.ndarray:
        """
        Rebuild unit-length embeddings from codes and packed residuals.

        A reconstructed zero vector is returned as-is.
        """
        codes = np.asarray(codes)
        packed_residuals = np.asarray(packed_residuals, dtype=np.uint8)
        if codes.ndim != 1 or packed_residuals.ndim != 2 or len(codes) != len(packed_residuals):
            raise ValueError(
                f"Codes {codes.shape} and residuals {packed_residuals.shape} do not line up"
            )

        num_embeddings = len(codes)
        embeddings = np.empty((num_embeddings, self.dim), dtype=np.float32)
        for start in range(0, num_embeddings, batch_size):
            end = min(start + batch_size, num_embeddings)
            batch = self.centroids[codes[start:end]] + self.decompress_residuals(packed_residuals[start:end])
            embeddings[start:end] = self.vector_ops.normalize_rows(batch)
        return embeddings

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, paths: IndexPaths):
        """Write codec.bin under the index root."""
        payload = b"".join([
            struct.pack(CODEC_PARAMS_FORMAT, self.dim, self.num_centroids, self.nbits, self.avg_residual),
            self.centroids.astype("<f4").tobytes(),
            self.bucket_cutoffs.astype("<f4").tobytes(),
            self.bucket_weights.astype("<f4").tobytes()
        ])
        write_binary_file(paths.get_codec_file(), CODEC_MAGIC, payload)

    @classmethod
    def load(cls, paths: IndexPaths, config: IndexConfig, vector_ops=None) -> "ResidualCodec":
        """Read codec.bin and check it against the index configuration."""
        path = paths.get_codec_file()
        reader = PayloadReader(read_binary_file(path, CODEC_MAGIC), path)
        dim, num_centroids, nbits, avg_residual = reader.unpack(CODEC_PARAMS_FORMAT)
        if dim != config.dim or nbits != config.nbits:
            raise CorruptFileError(
                f"{path}: codec has dim={dim}, nbits={nbits} but metadata says "
                f"dim={config.dim}, nbits={config.nbits}"
            )
        num_options = 2 ** nbits
        centroids = reader.array("<f4", num_centroids * dim).reshape(num_centroids, dim)
        bucket_cutoffs = reader.array("<f4", num_options - 1)
        bucket_weights = reader.array("<f4", num_options)
        reader.finish()
        return cls(config, centroids, avg_residual, bucket_cutoffs, bucket_weights, vector_ops=vector_ops)

def heldout_size_for(sample_size: int) -> int:
    """Rows of a sample of this size held out from k-means for bucket fitting."""
    return min(int(HELDOUT_FRACTION * sample_size), MAX_HELDOUT)

def _assign_codes(vector_ops, embeddings: np.ndarray, centroids: np.ndarray,
                  batch_size: Optional[int] = None) -> np.ndarray:
    """Batched nearest-centroid assignment into a preallocated output."""
    if batch_size is None:
        batch_size = max(1, CODES_BATCH_BYTES // max(1, len(centroids)))
    codes = np.empty(len(embeddings), dtype=np.int32)
    for start in range(0, len(embeddings), batch_size):
        end = min(start + batch_size, len(embeddings))
        codes[start:end] = vector_ops.nearest_centroids(embeddings[start:end], centroids)
    return codes
