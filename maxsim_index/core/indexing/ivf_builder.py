# maxsim_index/core/indexing/ivf_builder.py
"""
Centroid -> embedding-id inverted file (IVF).

File Structure: ivf.bin (after the common 16-byte header)
----------------------------------------------------------
    Offset  Type          Description
    0       uint64        Number of centroids N
    8       uint64        Number of embeddings E
    16      int64[N]      Run length (count) per centroid
    16+8N   int64[N]      Run start (offset) per centroid into the id array
    16+16N  int64[E]      Embedding ids sorted by (code, id)

Centroid c owns ids[offsets[c] : offsets[c] + counts[c]], ascending.
"""
import logging
import struct
import numpy as np
from dataclasses import dataclass
from maxsim_index.config import IndexPaths
from maxsim_index.core.indexing.binary_format import write_binary_file, read_binary_file, PayloadReader
from maxsim_index.core.utilities.errors import IvfMismatchError, CorruptFileError

logger = logging.getLogger(__name__)

IVF_MAGIC = b"MXIV"
IVF_PARAMS_FORMAT = "<QQ"

@dataclass
class InvertedFile:
    """Read-only centroid -> embedding id runs."""
    counts: np.ndarray
    offsets: np.ndarray
    embedding_ids: np.ndarray

    def __post_init__(self):
        for array in (self.counts, self.offsets, self.embedding_ids):
            array.setflags(write=False)

    @property
    def num_centroids(self) -> int:
        return len(self.counts)

    @property
    def num_embeddings(self) -> int:
        return len(self.embedding_ids)

    def run(self, centroid_id: int) -> np.ndarray:
        """Sorted embedding ids whose code is centroid_id."""
        start = self.offsets[centroid_id]
        return self.embedding_ids[start:start + self.counts[centroid_id]]

    def lookup(self, centroid_ids) -> np.ndarray:
        """Concatenated runs of several centroids."""
        centroid_ids = np.asarray(centroid_ids, dtype=np.int64)
        if len(centroid_ids) == 0:
            return np.empty(0, dtype=np.int64)
        return np.concatenate([self.run(c) for c in centroid_ids])

    def validate(self, num_embeddings: int):
        """
        Check that the runs partition [0, num_embeddings) exactly.

        Raises:
            IvfMismatchError: totals, offsets or ids are inconsistent
        """
        total = int(self.counts.sum())
        if total != num_embeddings or self.num_embeddings != num_embeddings:
            raise IvfMismatchError(
                f"IVF runs cover {total} entries ({self.num_embeddings} ids) "
                f"but the index records {num_embeddings} embeddings"
            )
        expected_offsets = np.concatenate([[0], np.cumsum(self.counts)[:-1]]) if len(self.counts) else self.counts
        if np.any(self.counts < 0) or not np.array_equal(self.offsets, expected_offsets):
            raise IvfMismatchError("IVF offsets are not contiguous prefix sums of the counts")
        if num_embeddings and not np.array_equal(np.sort(self.embedding_ids), np.arange(num_embeddings)):
            raise IvfMismatchError("IVF embedding ids are not a permutation of the embedding id space")

    def save(self, paths: IndexPaths):
        payload = b"".join([
            struct.pack(IVF_PARAMS_FORMAT, self.num_centroids, self.num_embeddings),
            self.counts.astype("<i8").tobytes(),
            self.offsets.astype("<i8").tobytes(),
            self.embedding_ids.astype("<i8").tobytes()
        ])
        write_binary_file(paths.get_ivf_file(), IVF_MAGIC, payload)

    @classmethod
    def load(cls, paths: IndexPaths) -> "InvertedFile":
        path = paths.get_ivf_file()
        if not path.exists():
            raise CorruptFileError(f"IVF file missing: {path}")
        reader = PayloadReader(read_binary_file(path, IVF_MAGIC), path)
        num_centroids, num_embeddings = reader.unpack(IVF_PARAMS_FORMAT)
        counts = reader.array("<i8", num_centroids).astype(np.int64)
        offsets = reader.array("<i8", num_centroids).astype(np.int64)
        embedding_ids = reader.array("<i8", num_embeddings).astype(np.int64)
        reader.finish()
        return cls(counts=counts, offsets=offsets, embedding_ids=embedding_ids)

def build_ivf(codes: np.ndarray, num_centroids: int) -> InvertedFile:
    """
    Group global embedding ids by code.

    Args:
        codes: Global code sequence, position = embedding id
        num_centroids: Number of centroids N; centroids with no embeddings get empty runs

    Returns:
        InvertedFile whose runs partition range(len(codes))
    """
    codes = np.asarray(codes, dtype=np.int64)
    if len(codes) and (codes.min() < 0 or codes.max() >= num_centroids):
        raise IvfMismatchError(f"Codes fall outside [0, {num_centroids})")

    # Stable sort keeps embedding ids ascending within each run
    embedding_ids = np.argsort(codes, kind="stable").astype(np.int64)
    counts = np.bincount(codes, minlength=num_centroids).astype(np.int64)
    offsets = np.zeros(num_centroids, dtype=np.int64)
    if num_centroids > 1:
        offsets[1:] = np.cumsum(counts)[:-1]
    return InvertedFile(counts=counts, offsets=offsets, embedding_ids=embedding_ids)

def build_ivf_from_store(store, num_chunks: int, num_centroids: int) -> InvertedFile:
    """
    Concatenate every chunk's codes in chunk order and build the IVF.

    The codes of each chunk are placed at that chunk's recorded embedding
    offset, so a chunk whose offset disagrees with its predecessors is caught.
    """
    metadata = [store.read_chunk_metadata(chunk_id) for chunk_id in range(num_chunks)]
    num_embeddings = sum(meta.num_embeddings for meta in metadata)
    all_codes = np.empty(num_embeddings, dtype=np.int64)

    expected_offset = 0
    for meta in metadata:
        if meta.embedding_offset != expected_offset:
            raise IvfMismatchError(
                f"Chunk {meta.chunk_id} starts at embedding {meta.embedding_offset}, "
                f"expected {expected_offset}"
            )
        codes = store.read_codes(meta.chunk_id)
        if len(codes) != meta.num_embeddings:
            raise CorruptFileError(
                f"Chunk {meta.chunk_id}: {len(codes)} codes but metadata records {meta.num_embeddings}"
            )
        all_codes[expected_offset:expected_offset + len(codes)] = codes
        expected_offset += len(codes)

    logger.info(f"Building IVF over {num_embeddings:,} embeddings and {num_centroids:,} centroids")
    ivf = build_ivf(all_codes, num_centroids)
    non_empty = int(np.count_nonzero(ivf.counts))
    logger.debug(f"IVF has {non_empty} non-empty runs out of {num_centroids}")
    return ivf
