# maxsim_index/core/vectorization/encoder.py
"""
Boundary to the external text encoder.

The index never looks inside the encoder: it only needs, for a piece of
text, the ordered per-token embeddings. Tokens are carried along for
callers that want them but are ignored here.
"""
import numpy as np
from typing import Any, Protocol, Sequence, Tuple, runtime_checkable

@runtime_checkable
class Encoder(Protocol):
    def encode(self, text: str) -> Sequence[Tuple[Any, Any]]:
        """Return ordered (embedding, token) pairs for text."""
        ...

def encode_to_matrix(encoder, text: str, dim: int) -> np.ndarray:
    """
    Stack an encoder's per-token vectors into a float32 (n, dim) matrix.

    Args:
        encoder: Object with encode(text) -> [(embedding, token), ...]
        text: Document or query text
        dim: Expected embedding dimension, used for the empty case

    Returns:
        float32 array of shape (n, dim); (0, dim) when the encoder yields nothing
    """
    pairs = list(encoder.encode(text))
    if not pairs:
        return np.empty((0, dim), dtype=np.float32)
    return np.stack([np.asarray(embedding, dtype=np.float32).reshape(-1) for embedding, _ in pairs])

def as_embedding_matrix(item, encoder, dim: int) -> np.ndarray:
    """
    Normalize one collection item or query to a 2D float32 matrix.

    Text goes through the encoder; arrays are used directly, a 1D array
    being a single token.
    """
    if isinstance(item, str):
        if encoder is None:
            raise TypeError("Text input requires an encoder")
        return encode_to_matrix(encoder, item, dim)
    matrix = np.asarray(item, dtype=np.float32)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1) if matrix.size else np.empty((0, dim), dtype=np.float32)
    return matrix
