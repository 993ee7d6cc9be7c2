# maxsim_index/core/indexing/collection_indexer.py
"""
One-shot index construction.

Phases, in order:
    setup     count documents, draw the clustering sample, choose num_centroids
    train     fit the residual codec on the sample and save codec.bin
    index     compress chunks on a worker pool, commit them in chunk order
    finalize  verify every chunk is on disk, build ivf.bin, write metadata.json

metadata.json is written only after everything else succeeded, so its
presence is what marks an index as usable.
"""
import dataclasses
import logging
import math
import time
import psutil
import numpy as np
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Sequence
from tqdm import tqdm
from maxsim_index.config import IndexConfig, IndexPaths, KMEANS_SEED, VERSION, default_num_centroids
from maxsim_index.core.codec.residual_codec import ResidualCodec, heldout_size_for
from maxsim_index.core.indexing.binary_format import atomic_write_json
from maxsim_index.core.indexing.chunk_store import ChunkStore
from maxsim_index.core.indexing.ivf_builder import build_ivf_from_store
from maxsim_index.core.utilities.errors import ChunkWriteError, ConfigurationError, DegenerateSampleError
from maxsim_index.core.utilities.vector_validation import validate_embeddings
from maxsim_index.core.vectorization.encoder import as_embedding_matrix

logger = logging.getLogger(__name__)

TYPICAL_DOCLEN = 120  # Token count assumed when sizing the clustering sample

def get_memory_usage() -> str:
    """Resident memory of this process."""
    mem_info = psutil.Process().memory_info()
    return f"{mem_info.rss / (1024**3):.2f} GB"

class CollectionIndexer:
    """
    Builds an index for a collection of documents.

    A collection item is either text (encoded with the encoder) or an
    (n_tokens, dim) float array of that document's token embeddings.
    """

    def __init__(self, config: IndexConfig, index_path, encoder=None, vector_ops=None,
                 device: str = "cpu", show_progress: bool = True):
        self.config = config.validate()
        self.paths = IndexPaths(index_path)
        self.encoder = encoder
        self.vector_ops = vector_ops
        self.device = device
        self.show_progress = show_progress

        self.collection = None
        self.sample = None
        self.codec = None
        self.store = None
        self.num_chunks = 0

    def _embed(self, doc_id: int) -> np.ndarray:
        embeddings = as_embedding_matrix(self.collection[doc_id], self.encoder, self.config.dim)
        valid, reason = validate_embeddings(embeddings, self.config.dim)
        if not valid:
            raise ConfigurationError(f"Document {doc_id}: {reason}")
        return embeddings

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def setup(self, collection: Sequence):
        """Draw the clustering sample and settle num_centroids."""
        self.collection = collection
        num_documents = len(collection)
        if num_documents == 0:
            raise DegenerateSampleError("Cannot build an index over an empty collection")

        if self.config.sample_fraction is not None:
            sample_size = max(1, int(round(self.config.sample_fraction * num_documents)))
        else:
            sample_size = 1 + int(16 * math.sqrt(TYPICAL_DOCLEN * num_documents))
        sample_size = min(sample_size, num_documents)

        rng = np.random.default_rng(KMEANS_SEED)
        sampled_ids = np.sort(rng.choice(num_documents, size=sample_size, replace=False))
        sampled = [self._embed(int(doc_id)) for doc_id in sampled_ids]
        self.sample = np.concatenate(sampled)
        if len(self.sample) == 0:
            raise DegenerateSampleError("Sampled documents contain no token embeddings")

        if self.config.num_centroids is None:
            avg_doclen = len(self.sample) / sample_size
            estimated_embeddings = int(avg_doclen * num_documents)
            # k-means only sees the non-held-out part of the sample
            num_trainable = len(np.unique(self.sample, axis=0)) - heldout_size_for(len(self.sample))
            num_centroids = max(1, min(default_num_centroids(estimated_embeddings), num_trainable))
            self.config = dataclasses.replace(self.config, num_centroids=num_centroids)
            logger.info(f"Estimated {estimated_embeddings:,} embeddings; using {num_centroids} centroids")

        self.num_chunks = math.ceil(num_documents / self.config.chunk_size)
        logger.info(f"Setup: {num_documents:,} documents in {self.num_chunks} chunks, "
                    f"{len(self.sample):,} sampled embeddings")

    def train(self):
        """Fit the codec on the sample and persist it."""
        self.paths.root.mkdir(parents=True, exist_ok=True)
        self.codec = ResidualCodec.fit(self.sample, self.config, vector_ops=self.vector_ops,
                                       device=self.device)
        self.codec.save(self.paths)
        self.sample = None
        logger.info(f"Codec trained (avg residual {self.codec.avg_residual:.4f}); memory {get_memory_usage()}")

    def _compress_chunk(self, chunk_id: int):
        start = chunk_id * self.config.chunk_size
        end = min(start + self.config.chunk_size, len(self.collection))
        documents = [self._embed(doc_id) for doc_id in range(start, end)]
        doclens = [len(doc) for doc in documents]
        if sum(doclens):
            embeddings = np.concatenate(documents)
        else:
            embeddings = np.empty((0, self.config.dim), dtype=np.float32)
        codes, residuals = self.codec.compress(embeddings)
        return doclens, codes, residuals

    def index(self):
        """
        Compress every chunk and write it.

        Chunk jobs run on num_workers threads and only read the immutable
        codec. Results are committed strictly in chunk-id order; at most
        2 * num_workers chunks are in flight so memory stays bounded.

        Raises:
            ChunkWriteError: a chunk failed to compress or persist
        """
        self.store = ChunkStore(self.paths.root, self.config.packed_dim)
        num_workers = self.config.num_workers
        window = 2 * num_workers

        pending = deque()
        next_chunk = 0
        with ThreadPoolExecutor(max_workers=num_workers) as executor, \
             tqdm(total=self.num_chunks, unit="chunk", desc="Indexing", disable=not self.show_progress) as progress_bar:
            try:
                for _ in range(self.num_chunks):
                    while next_chunk < self.num_chunks and len(pending) < window:
                        pending.append((next_chunk, executor.submit(self._compress_chunk, next_chunk)))
                        next_chunk += 1

                    submitted_id, future = pending.popleft()
                    try:
                        doclens, codes, residuals = future.result()
                    except Exception as e:
                        raise ChunkWriteError(submitted_id, e) from e

                    self.store.write_chunk(submitted_id, doclens, codes, residuals)
                    progress_bar.update(1)
            except BaseException:
                for _, future in pending:
                    future.cancel()
                raise

        logger.info(f"Indexed {self.store.total_passages:,} documents / "
                    f"{self.store.total_embeddings:,} embeddings; memory {get_memory_usage()}")

    def finalize(self) -> Path:
        """Completeness barrier, IVF build and global metadata."""
        self.store.verify_complete(self.num_chunks)

        ivf = build_ivf_from_store(self.store, self.num_chunks, self.codec.num_centroids)
        ivf.validate(self.store.total_embeddings)
        ivf.save(self.paths)

        metadata = {
            "version": VERSION,
            "num_chunks": self.num_chunks,
            "num_documents": self.store.total_passages,
            "num_embeddings": self.store.total_embeddings,
            "config": self.config.to_dict()
        }
        atomic_write_json(self.paths.get_metadata_file(), metadata)
        logger.info(f"Index written to {self.paths.root}")
        return self.paths.root

    def run(self, collection: Sequence) -> Path:
        start_time = time.time()
        self.setup(collection)
        self.train()
        self.index()
        path = self.finalize()
        logger.info(f"Build finished in {time.time() - start_time:.1f}s")
        return path

def build_index(collection: Sequence, config: IndexConfig, index_path, encoder=None,
                vector_ops=None, device: str = "cpu", show_progress: bool = True) -> Path:
    """
    Build a complete index for collection under index_path.

    Args:
        collection: Sequence of texts or (n_tokens, dim) embedding arrays
        config: Index configuration; num_centroids may be left as None
        index_path: Root directory for every index file
        encoder: Text encoder, required when the collection holds texts
        vector_ops: Nearest-centroid backend (default: NumPy)
        device: Torch device for k-means
        show_progress: Show a tqdm bar over chunks

    Returns:
        The index root path

    Raises:
        ConfigurationError: invalid config or degenerate sample
        ChunkWriteError: a chunk failed; no metadata.json is written
    """
    indexer = CollectionIndexer(config, index_path, encoder=encoder, vector_ops=vector_ops,
                                device=device, show_progress=show_progress)
    return indexer.run(collection)
