"""
Vector math operations for centroid assignment and similarity scoring.
"""
import numpy as np

class VectorOps:
    """CPU (NumPy) implementation of the nearest-centroid operations."""

    DTYPE = np.float32
    name = "cpu"

    @staticmethod
    def centroid_scores(embeddings: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        """
        Dot products between embeddings and centroids.

        Args:
            embeddings: Array of shape (n, D)
            centroids: Array of shape (N, D)

        Returns:
            Array of shape (n, N)
        """
        embeddings = np.asarray(embeddings, dtype=VectorOps.DTYPE)
        return embeddings @ np.asarray(centroids, dtype=VectorOps.DTYPE).T

    def nearest_centroids(self, embeddings: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        """Index of the highest-scoring centroid per embedding (first index on ties)."""
        if len(embeddings) == 0:
            return np.empty(0, dtype=np.int32)
        return np.argmax(self.centroid_scores(embeddings, centroids), axis=1).astype(np.int32)

    def top_centroids(self, embeddings: np.ndarray, centroids: np.ndarray, k: int) -> np.ndarray:
        """
        The k highest-scoring centroids for every embedding.

        Returns:
            int64 array of shape (n, min(k, N)); order within a row is by score descending
        """
        scores = self.centroid_scores(embeddings, centroids)
        k = min(k, scores.shape[1])
        # Stable sort keeps the lower centroid id first on equal scores
        return np.argsort(-scores, axis=1, kind="stable")[:, :k]

    @staticmethod
    def normalize_rows(vectors: np.ndarray) -> np.ndarray:
        """L2-normalize each row in place. Zero rows are left untouched."""
        norms = np.linalg.norm(vectors, axis=1)
        mask = norms > 0
        vectors[mask] /= norms[mask, None]
        return vectors
