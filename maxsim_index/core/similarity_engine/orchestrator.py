# maxsim_index/core/similarity_engine/orchestrator.py
"""
Query-time search: IVF candidate generation followed by exact MaxSim.
"""
import logging
import time
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple
from maxsim_index.config import SCORE_BATCH_DOCS
from maxsim_index.core.utilities.errors import SearchTimeoutError
from maxsim_index.core.utilities.vector_validation import check_query
from maxsim_index.core.vectorization.encoder import as_embedding_matrix
from .index_manager import Index
from .maxsim import maxsim_scores, rank_top_k

logger = logging.getLogger(__name__)

def _check_deadline(deadline: Optional[float]):
    if deadline is not None and time.monotonic() >= deadline:
        raise SearchTimeoutError("Search timed out before ranking completed")

class Searcher:
    """
    Searches one loaded Index.

    The Searcher holds no per-query state, so several threads may call
    search() on the same instance concurrently.
    """

    def __init__(self, index: Index, encoder=None, ncells: Optional[int] = None, vector_ops=None,
                 num_threads: int = 1, score_batch_size: int = SCORE_BATCH_DOCS):
        """
        Args:
            index: Loaded index
            encoder: Text encoder for string queries
            ncells: Centroids probed per query token (default: the index's ncells)
            vector_ops: Backend for query-centroid scores (default: the codec's)
            num_threads: Threads used to decompress and score candidate batches
            score_batch_size: Candidate documents per scoring batch
        """
        self.index = index
        self.encoder = encoder
        self.ncells = ncells or index.config.ncells
        self.vector_ops = vector_ops or index.codec.vector_ops
        self.num_threads = max(1, num_threads)
        self.score_batch_size = max(1, score_batch_size)

    def encode_query(self, query) -> np.ndarray:
        """Turn text or an embedding array into a validated (n_q, D) float32 matrix."""
        matrix = as_embedding_matrix(query, self.encoder, self.index.dim)
        return check_query(matrix, self.index.dim)

    def generate_candidates(self, Q: np.ndarray) -> np.ndarray:
        """
        Sorted unique document ids reachable from the top-ncells centroids of any query token.
        """
        if len(Q) == 0:
            return np.empty(0, dtype=np.int64)
        cells = np.unique(self.vector_ops.top_centroids(Q, self.index.codec.centroids, self.ncells))
        embedding_ids = self.index.ivf.lookup(cells)
        candidates = np.unique(self.index.emb2pid[embedding_ids])
        logger.debug(f"{len(cells)} cells probed -> {len(embedding_ids)} embeddings, "
                     f"{len(candidates)} candidate documents")
        return candidates

    def _score_batch(self, Q: np.ndarray, doc_ids: np.ndarray, deadline: Optional[float]) -> np.ndarray:
        _check_deadline(deadline)
        embeddings, doclens = self.index.decompress_documents(doc_ids)
        return maxsim_scores(Q, embeddings, doclens)

    def score_candidates(self, Q: np.ndarray, doc_ids: np.ndarray,
                         deadline: Optional[float] = None) -> np.ndarray:
        """
        Exact MaxSim score for every candidate, aligned with doc_ids.

        Raises:
            SearchTimeoutError: deadline (time.monotonic() value) passed
        """
        scores = np.empty(len(doc_ids), dtype=np.float32)
        starts = range(0, len(doc_ids), self.score_batch_size)

        if self.num_threads == 1 or len(starts) <= 1:
            for start in starts:
                end = start + self.score_batch_size
                scores[start:end] = self._score_batch(Q, doc_ids[start:end], deadline)
            return scores

        with ThreadPoolExecutor(max_workers=self.num_threads) as executor:
            futures = [
                (start, executor.submit(self._score_batch, Q, doc_ids[start:start + self.score_batch_size], deadline))
                for start in starts
            ]
            try:
                for start, future in futures:
                    batch_scores = future.result()
                    scores[start:start + len(batch_scores)] = batch_scores
            except BaseException:
                for _, future in futures:
                    future.cancel()
                raise
        return scores

    def search(self, query, k: int = 10, timeout: Optional[float] = None) -> List[Tuple[int, float]]:
        """
        Top-k documents for a query.

        Args:
            query: Text (needs an encoder) or an (n_q, D) array; a 1D array is one token
            k: Number of results; fewer are returned when there are fewer candidates
            timeout: Seconds allowed before ranking; None waits indefinitely

        Returns:
            [(doc_id, score), ...] by score descending, then doc id ascending

        Raises:
            QueryDimensionError: query dimension differs from the index
            SearchTimeoutError: timeout elapsed before ranking completed
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        Q = self.encode_query(query)
        if len(Q) == 0:
            return []

        candidates = self.generate_candidates(Q)
        scores = self.score_candidates(Q, candidates, deadline)
        _check_deadline(deadline)
        return rank_top_k(candidates, scores, k)

def search(index, query, k: int = 10, encoder=None, ncells: Optional[int] = None,
           timeout: Optional[float] = None, vector_ops=None) -> List[Tuple[int, float]]:
    """One-off search; index may be an Index or a path to one."""
    if not isinstance(index, Index):
        index = Index.load(index, vector_ops=vector_ops)
    searcher = Searcher(index, encoder=encoder, ncells=ncells, vector_ops=vector_ops)
    return searcher.search(query, k=k, timeout=timeout)
