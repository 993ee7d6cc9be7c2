# maxsim_index/core/utilities/vector_validation.py
import numpy as np
from typing import Tuple
from maxsim_index.core.utilities.errors import ConfigurationError, QueryDimensionError

def validate_embeddings(embeddings: np.ndarray, dim: int) -> Tuple[bool, str]:
    """Shape and finiteness check for a per-token embedding matrix."""
    if embeddings.ndim != 2:
        return False, f"Expected a 2D (tokens, dim) matrix, got {embeddings.ndim} dimensions"
    if embeddings.shape[0] and embeddings.shape[1] != dim:
        return False, f"Embedding dimension {embeddings.shape[1]} != {dim}"

    bad_rows = np.flatnonzero(~np.isfinite(embeddings).all(axis=1))
    if len(bad_rows):
        return False, f"row {bad_rows[0]} contains NaN or Inf"

    return True, "Valid"

def check_query(query: np.ndarray, dim: int) -> np.ndarray:
    """
    Reject a query that cannot be searched. Zero-token queries pass.

    Raises:
        QueryDimensionError: token width differs from the index dimension
        ConfigurationError: the query is not 2D or holds non-finite values
    """
    if query.ndim == 2 and query.shape[0] and query.shape[1] != dim:
        raise QueryDimensionError(dim, query.shape[1])
    valid, reason = validate_embeddings(query, dim)
    if not valid:
        raise ConfigurationError(f"Invalid query: {reason}")
    return query
