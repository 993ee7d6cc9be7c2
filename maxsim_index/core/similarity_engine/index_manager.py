# maxsim_index/core/similarity_engine/index_manager.py
"""
Read-only, in-memory view of a completed index.

Loading checks everything the build promised: metadata.json exists, every
chunk 0..num_chunks-1 is present and nothing beyond, the IVF covers exactly
the recorded embeddings, and chunk offsets line up end to end.
"""
import logging
import numpy as np
from pathlib import Path
from typing import Tuple
from maxsim_index.config import IndexConfig, IndexPaths
from maxsim_index.core.codec.residual_codec import ResidualCodec
from maxsim_index.core.indexing.binary_format import read_json
from maxsim_index.core.indexing.chunk_store import ChunkStore
from maxsim_index.core.indexing.ivf_builder import InvertedFile
from maxsim_index.core.utilities.errors import (
    ConfigurationError,
    CorruptFileError,
    IndexNotFoundError,
    IvfMismatchError
)

logger = logging.getLogger(__name__)

def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array

class Index:
    """
    Codec + chunks + IVF + lookup tables, shared read-only by all searches.

    Attributes:
        doclens: Token count per document
        doc_offsets: Global id of each document's first embedding
        emb2pid: Document id owning each global embedding id
        codes: Centroid code per global embedding id
        residuals: Packed residuals per global embedding id
    """

    def __init__(self, path: Path, config: IndexConfig, codec: ResidualCodec, ivf: InvertedFile,
                 chunk_metadata: list, doclens: np.ndarray, codes: np.ndarray, residuals: np.ndarray):
        self.path = Path(path)
        self.config = config
        self.codec = codec
        self.ivf = ivf
        self.chunk_metadata = chunk_metadata

        self.codes = _freeze(codes)
        self.residuals = _freeze(residuals)
        self.doclens = _freeze(doclens)

        doc_offsets = np.zeros(len(doclens), dtype=np.int64)
        if len(doclens) > 1:
            doc_offsets[1:] = np.cumsum(doclens)[:-1]
        self.doc_offsets = _freeze(doc_offsets)
        self.emb2pid = _freeze(np.repeat(np.arange(len(doclens), dtype=np.int64), doclens))

        self._chunk_embedding_offsets = _freeze(
            np.array([meta.embedding_offset for meta in chunk_metadata], dtype=np.int64)
        )
        self._doc_chunk_ids = _freeze(np.repeat(
            np.arange(len(chunk_metadata), dtype=np.int64),
            [meta.num_passages for meta in chunk_metadata]
        ))

    @property
    def dim(self) -> int:
        return self.config.dim

    @property
    def num_chunks(self) -> int:
        return len(self.chunk_metadata)

    @property
    def num_documents(self) -> int:
        return len(self.doclens)

    @property
    def num_embeddings(self) -> int:
        return len(self.codes)

    @classmethod
    def load(cls, index_path, vector_ops=None) -> "Index":
        """
        Load and verify an index.

        Raises:
            IndexNotFoundError: no metadata.json, i.e. the build never completed
            MissingChunkError, ChunkCountMismatchError: chunk files disagree with metadata
            IvfMismatchError: IVF totals differ from the recorded embedding count
            CorruptFileError: a file is malformed or offsets do not line up
        """
        paths = IndexPaths(index_path)
        metadata_file = paths.get_metadata_file()
        if not metadata_file.exists():
            raise IndexNotFoundError(f"No completed index at {paths.root} (missing {metadata_file.name})")

        metadata = read_json(metadata_file)
        try:
            config = IndexConfig.from_dict(metadata["config"]).validate()
            num_chunks = int(metadata["num_chunks"])
            num_documents = int(metadata["num_documents"])
            num_embeddings = int(metadata["num_embeddings"])
        except (KeyError, TypeError, ValueError, ConfigurationError) as e:
            raise CorruptFileError(f"{metadata_file}: invalid index metadata ({e})") from e

        store = ChunkStore(paths.root, config.packed_dim)
        store.verify_complete(num_chunks)

        codec = ResidualCodec.load(paths, config, vector_ops=vector_ops)
        ivf = InvertedFile.load(paths)
        if ivf.num_centroids != codec.num_centroids:
            raise IvfMismatchError(
                f"IVF has {ivf.num_centroids} centroids but the codec has {codec.num_centroids}"
            )
        ivf.validate(num_embeddings)

        codes = np.empty(num_embeddings, dtype=np.int32)
        residuals = np.empty((num_embeddings, config.packed_dim), dtype=np.uint8)
        doclens = np.empty(num_documents, dtype=np.int64)
        chunk_metadata = []

        passage_offset = 0
        embedding_offset = 0
        for chunk_id in range(num_chunks):
            chunk = store.read_chunk(chunk_id)
            meta = chunk.metadata
            if meta.passage_offset != passage_offset or meta.embedding_offset != embedding_offset:
                raise CorruptFileError(
                    f"Chunk {chunk_id} starts at document {meta.passage_offset} / embedding "
                    f"{meta.embedding_offset}, expected {passage_offset} / {embedding_offset}"
                )
            if passage_offset + meta.num_passages > num_documents or \
               embedding_offset + meta.num_embeddings > num_embeddings:
                raise CorruptFileError(f"Chunk {chunk_id} runs past the totals recorded in metadata")

            doclens[passage_offset:passage_offset + meta.num_passages] = chunk.doclens
            codes[embedding_offset:embedding_offset + meta.num_embeddings] = chunk.codes
            residuals[embedding_offset:embedding_offset + meta.num_embeddings] = chunk.residuals
            passage_offset += meta.num_passages
            embedding_offset += meta.num_embeddings
            chunk_metadata.append(meta)

        if passage_offset != num_documents or embedding_offset != num_embeddings:
            raise CorruptFileError(
                f"Chunks hold {passage_offset} documents / {embedding_offset} embeddings but metadata "
                f"records {num_documents} / {num_embeddings}"
            )

        logger.info(f"Loaded index {paths.root}: {num_documents:,} documents, "
                    f"{num_embeddings:,} embeddings, {num_chunks} chunks")
        return cls(paths.root, config, codec, ivf, chunk_metadata, doclens, codes, residuals)

    def _check_doc_id(self, doc_id: int):
        if not 0 <= doc_id < self.num_documents:
            raise IndexError(f"Document id {doc_id} out of range [0, {self.num_documents})")

    def document_location(self, doc_id: int) -> Tuple[int, int, int]:
        """(chunk_id, local embedding offset within the chunk, token count) of a document."""
        self._check_doc_id(doc_id)
        chunk_id = int(self._doc_chunk_ids[doc_id])
        local_offset = int(self.doc_offsets[doc_id] - self._chunk_embedding_offsets[chunk_id])
        return chunk_id, local_offset, int(self.doclens[doc_id])

    def locate_embedding(self, embedding_id: int) -> Tuple[int, int]:
        """(chunk_id, local offset) of a global embedding id."""
        if not 0 <= embedding_id < self.num_embeddings:
            raise IndexError(f"Embedding id {embedding_id} out of range [0, {self.num_embeddings})")
        # Empty chunks share their successor's offset; the last match is the owner
        chunk_id = int(np.searchsorted(self._chunk_embedding_offsets, embedding_id, side="right") - 1)
        return chunk_id, int(embedding_id - self._chunk_embedding_offsets[chunk_id])

    def embedding_ids_for(self, doc_ids: np.ndarray) -> np.ndarray:
        """Global embedding ids of several documents, back to back in the given order."""
        doc_ids = np.asarray(doc_ids, dtype=np.int64)
        lengths = self.doclens[doc_ids]
        total = int(lengths.sum())
        if total == 0:
            return np.empty(0, dtype=np.int64)
        segment_starts = np.zeros(len(doc_ids), dtype=np.int64)
        segment_starts[1:] = np.cumsum(lengths)[:-1]
        shift = np.repeat(self.doc_offsets[doc_ids] - segment_starts, lengths)
        return np.arange(total, dtype=np.int64) + shift

    def decompress_documents(self, doc_ids: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Decompressed token embeddings of several documents.

        Returns:
            (embeddings of shape (sum(doclens), D), doclens in the given order)
        """
        doc_ids = np.asarray(doc_ids, dtype=np.int64)
        embedding_ids = self.embedding_ids_for(doc_ids)
        embeddings = self.codec.decompress(self.codes[embedding_ids], self.residuals[embedding_ids])
        return embeddings, self.doclens[doc_ids]

    def document_embeddings(self, doc_id: int) -> np.ndarray:
        self._check_doc_id(doc_id)
        embeddings, _ = self.decompress_documents(np.array([doc_id]))
        return embeddings

    def stats(self) -> dict:
        return {
            "path": str(self.path),
            "num_chunks": self.num_chunks,
            "num_documents": self.num_documents,
            "num_embeddings": self.num_embeddings,
            "num_centroids": self.codec.num_centroids,
            "non_empty_centroids": int(np.count_nonzero(self.ivf.counts)),
            "avg_residual": self.codec.avg_residual,
            **self.config.to_dict()
        }
