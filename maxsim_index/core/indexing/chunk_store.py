# maxsim_index/core/indexing/chunk_store.py
"""
Chunk-granular persistence of compressed embeddings.

A chunk is the unit of index construction: a contiguous run of documents
with their token counts (doclens), centroid codes and packed residuals.
Global embedding ids are assigned by concatenating chunks in chunk-id
order, so chunks are committed strictly in increasing id order and each
chunk records where it starts in both the document and embedding id spaces.

Files per chunk (see IndexPaths):
    doclens.{i}.json     JSON list of per-document token counts
    {i}.codes.bin        int32 codes, one per embedding
    {i}.residuals.bin    uint8 packed residuals, packed_dim bytes per embedding
    {i}.metadata.json    offsets and counts; written last, marks the chunk committed
"""
import logging
import re
import threading
import numpy as np
from dataclasses import dataclass
from typing import Optional
from maxsim_index.config import IndexPaths
from maxsim_index.core.indexing.binary_format import (
    write_binary_file,
    read_binary_file,
    atomic_write_json,
    read_json,
    PayloadReader
)
from maxsim_index.core.utilities.errors import (
    ChunkCountMismatchError,
    ChunkOrderError,
    ChunkWriteError,
    CorruptFileError,
    MissingChunkError
)

logger = logging.getLogger(__name__)

CODES_MAGIC = b"MXCC"
RESIDUALS_MAGIC = b"MXCR"
_CHUNK_FILE_PATTERN = re.compile(r"^(?:doclens\.(\d+)\.json|(\d+)\.(?:codes\.bin|residuals\.bin|metadata\.json))$")

@dataclass(frozen=True)
class ChunkMetadata:
    chunk_id: int
    passage_offset: int
    num_passages: int
    embedding_offset: int
    num_embeddings: int

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "passage_offset": self.passage_offset,
            "num_passages": self.num_passages,
            "embedding_offset": self.embedding_offset,
            "num_embeddings": self.num_embeddings
        }

@dataclass
class Chunk:
    metadata: ChunkMetadata
    doclens: np.ndarray
    codes: np.ndarray
    residuals: np.ndarray

class ChunkStore:
    """Reads and writes chunk files under one index root."""

    def __init__(self, index_path, packed_dim: int):
        self.paths = IndexPaths(index_path)
        self.packed_dim = packed_dim

        # Running totals for the next chunk to be committed
        self._lock = threading.Lock()
        self._next_chunk_id = 0
        self._next_passage_offset = 0
        self._next_embedding_offset = 0

    @property
    def num_committed(self) -> int:
        return self._next_chunk_id

    @property
    def total_passages(self) -> int:
        return self._next_passage_offset

    @property
    def total_embeddings(self) -> int:
        return self._next_embedding_offset

    def write_chunk(self, chunk_id: int, doc_lengths, codes: np.ndarray,
                    packed_residuals: np.ndarray, metadata: Optional[dict] = None) -> ChunkMetadata:
        """
        Persist one chunk.

        Chunks must arrive in increasing id order starting at 0. Offsets are
        filled from the running totals of the chunks already committed. Any
        extra metadata entries are stored alongside the offsets.

        Raises:
            ChunkOrderError: chunk_id is not the next expected id
            ChunkWriteError: validation or I/O failed; the chunk's partial files are removed
        """
        with self._lock:
            if chunk_id != self._next_chunk_id:
                raise ChunkOrderError(
                    f"Chunk {chunk_id} written out of order; expected chunk {self._next_chunk_id}"
                )

            doclens = np.asarray(doc_lengths, dtype=np.int64)
            codes = np.asarray(codes, dtype=np.int32)
            packed_residuals = np.asarray(packed_residuals, dtype=np.uint8)

            chunk_meta = ChunkMetadata(
                chunk_id=chunk_id,
                passage_offset=self._next_passage_offset,
                num_passages=len(doclens),
                embedding_offset=self._next_embedding_offset,
                num_embeddings=len(codes)
            )
            try:
                self.paths.root.mkdir(parents=True, exist_ok=True)
                self._validate(doclens, codes, packed_residuals)
                atomic_write_json(self.paths.get_doclens_file(chunk_id), doclens.tolist())
                write_binary_file(self.paths.get_codes_file(chunk_id), CODES_MAGIC,
                                  codes.astype("<i4").tobytes())
                write_binary_file(self.paths.get_residuals_file(chunk_id), RESIDUALS_MAGIC,
                                  np.ascontiguousarray(packed_residuals).tobytes())
                record = dict(metadata or {})
                record.update(chunk_meta.to_dict())
                atomic_write_json(self.paths.get_chunk_metadata_file(chunk_id), record)
            except Exception as e:
                self.remove_chunk(chunk_id)
                raise ChunkWriteError(chunk_id, e) from e

            self._next_chunk_id += 1
            self._next_passage_offset += chunk_meta.num_passages
            self._next_embedding_offset += chunk_meta.num_embeddings
            logger.debug(f"Committed chunk {chunk_id}: {chunk_meta.num_passages} passages, "
                         f"{chunk_meta.num_embeddings} embeddings")
            return chunk_meta

    def _validate(self, doclens: np.ndarray, codes: np.ndarray, packed_residuals: np.ndarray):
        if doclens.ndim != 1 or np.any(doclens < 0):
            raise ValueError("doc_lengths must be a 1D sequence of non-negative counts")
        if int(doclens.sum()) != len(codes):
            raise ValueError(f"doc_lengths sum to {int(doclens.sum())} but {len(codes)} codes were given")
        if packed_residuals.shape != (len(codes), self.packed_dim):
            raise ValueError(
                f"Packed residuals have shape {packed_residuals.shape}, "
                f"expected ({len(codes)}, {self.packed_dim})"
            )

    def remove_chunk(self, chunk_id: int):
        """Delete whatever files of a chunk exist, metadata first."""
        for path in reversed(self.paths.get_chunk_files(chunk_id)):
            if path.exists():
                path.unlink()

    def chunk_exists(self, chunk_id: int) -> bool:
        return all(path.exists() for path in self.paths.get_chunk_files(chunk_id))

    def verify_complete(self, num_chunks: int):
        """
        Check that chunks 0..num_chunks-1 are fully present and nothing beyond.

        Raises:
            MissingChunkError: the first chunk with a missing file
            ChunkCountMismatchError: files exist for chunk ids >= num_chunks
        """
        for chunk_id in range(num_chunks):
            for path in self.paths.get_chunk_files(chunk_id):
                if not path.exists():
                    raise MissingChunkError(chunk_id, path)

        extra = sorted(chunk_id for chunk_id in self._chunk_ids_on_disk() if chunk_id >= num_chunks)
        if extra:
            raise ChunkCountMismatchError(
                f"Expected {num_chunks} chunks but found files for chunk ids {extra}"
            )

    def _chunk_ids_on_disk(self) -> set:
        ids = set()
        for path in self.paths.root.iterdir():
            match = _CHUNK_FILE_PATTERN.match(path.name)
            if match:
                ids.add(int(match.group(1) or match.group(2)))
        return ids

    def read_chunk_metadata(self, chunk_id: int) -> ChunkMetadata:
        path = self.paths.get_chunk_metadata_file(chunk_id)
        if not path.exists():
            raise MissingChunkError(chunk_id, path)
        record = read_json(path)
        try:
            return ChunkMetadata(
                chunk_id=int(record["chunk_id"]),
                passage_offset=int(record["passage_offset"]),
                num_passages=int(record["num_passages"]),
                embedding_offset=int(record["embedding_offset"]),
                num_embeddings=int(record["num_embeddings"])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptFileError(f"{path}: invalid chunk metadata ({e})") from e

    def read_doclens(self, chunk_id: int) -> np.ndarray:
        path = self.paths.get_doclens_file(chunk_id)
        if not path.exists():
            raise MissingChunkError(chunk_id, path)
        return np.asarray(read_json(path), dtype=np.int64)

    def read_codes(self, chunk_id: int) -> np.ndarray:
        path = self.paths.get_codes_file(chunk_id)
        if not path.exists():
            raise MissingChunkError(chunk_id, path)
        payload = read_binary_file(path, CODES_MAGIC)
        if len(payload) % 4 != 0:
            raise CorruptFileError(f"{path}: payload of {len(payload)} bytes is not a whole number of codes")
        return PayloadReader(payload, path).array("<i4", len(payload) // 4).astype(np.int32)

    def read_residuals(self, chunk_id: int) -> np.ndarray:
        path = self.paths.get_residuals_file(chunk_id)
        if not path.exists():
            raise MissingChunkError(chunk_id, path)
        payload = read_binary_file(path, RESIDUALS_MAGIC)
        if len(payload) % self.packed_dim != 0:
            raise CorruptFileError(
                f"{path}: payload of {len(payload)} bytes is not a multiple of {self.packed_dim}"
            )
        return PayloadReader(payload, path).array(np.uint8, len(payload)).reshape(-1, self.packed_dim)

    def read_chunk(self, chunk_id: int) -> Chunk:
        """
        Load one chunk and cross-check its files.

        Raises:
            MissingChunkError: a file of the chunk is absent
            CorruptFileError: the files disagree with each other or the metadata
        """
        metadata = self.read_chunk_metadata(chunk_id)
        doclens = self.read_doclens(chunk_id)
        codes = self.read_codes(chunk_id)
        residuals = self.read_residuals(chunk_id)

        if len(doclens) != metadata.num_passages or int(doclens.sum()) != metadata.num_embeddings:
            raise CorruptFileError(f"Chunk {chunk_id}: doclens disagree with chunk metadata")
        if len(codes) != metadata.num_embeddings or len(residuals) != metadata.num_embeddings:
            raise CorruptFileError(
                f"Chunk {chunk_id}: expected {metadata.num_embeddings} embeddings, "
                f"found {len(codes)} codes and {len(residuals)} residuals"
            )
        return Chunk(metadata=metadata, doclens=doclens, codes=codes, residuals=residuals)
