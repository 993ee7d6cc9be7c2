# maxsim_index/core/similarity_engine/maxsim.py
"""
Late-interaction scoring.

MaxSim(Q, d) = sum over query tokens q of max over document tokens t of q . t
"""
import numpy as np
from typing import List, Tuple

def maxsim_scores(query: np.ndarray, doc_embeddings: np.ndarray, doclens: np.ndarray) -> np.ndarray:
    """
    MaxSim score of every document in a packed batch.

    Args:
        query: float32 array of shape (n_q, D)
        doc_embeddings: Token embeddings of all documents back to back, shape (sum(doclens), D)
        doclens: Token count per document, in the same order

    Returns:
        float32 array of shape (len(doclens),). Documents with no tokens score 0.
    """
    doclens = np.asarray(doclens, dtype=np.int64)
    scores = np.zeros(len(doclens), dtype=np.float32)
    if len(query) == 0 or len(doclens) == 0:
        return scores
    if int(doclens.sum()) != len(doc_embeddings):
        raise ValueError(f"doclens sum to {int(doclens.sum())} but {len(doc_embeddings)} embeddings were given")

    # (tokens, n_q) similarity matrix, reduced per document segment
    similarities = doc_embeddings @ query.T
    starts = np.zeros(len(doclens), dtype=np.int64)
    starts[1:] = np.cumsum(doclens)[:-1]

    non_empty = doclens > 0
    if np.any(non_empty):
        maxima = np.maximum.reduceat(similarities, starts[non_empty], axis=0)
        scores[non_empty] = maxima.sum(axis=1)
    return scores

def rank_top_k(doc_ids: np.ndarray, scores: np.ndarray, k: int) -> List[Tuple[int, float]]:
    """
    Top-k (doc_id, score) pairs, score descending then doc id ascending.

    Returns every candidate when k exceeds their number.
    """
    doc_ids = np.asarray(doc_ids, dtype=np.int64)
    scores = np.asarray(scores)
    if k <= 0 or len(doc_ids) == 0:
        return []
    # lexsort sorts by the last key first
    order = np.lexsort((doc_ids, -scores))[:k]
    return [(int(doc_ids[i]), float(scores[i])) for i in order]
