import logging
import threading
import torch
import numpy as np
from maxsim_index.config import FORCE_CPU_MODE
from maxsim_index.core.utilities.gpu_utils import max_score_elements
from .vector_math import VectorOps

logger = logging.getLogger(__name__)

class VectorOpsGPU:
    """PyTorch implementation of the nearest-centroid operations (CUDA when available)."""

    name = "gpu"

    def __init__(self, device: str = "cuda"):
        if device.startswith("cuda") and not torch.cuda.is_available():
            logger.warning("CUDA not available; running torch backend on CPU")
            device = "cpu"
        self.device_str = device
        self.device = torch.device(device)
        self._centroid_cache = None
        self._cache_lock = threading.Lock()

        # Score-matrix entries per matmul, None for a single batch
        self.max_batch_elements = None
        if self.device.type == "cuda":
            self.max_batch_elements = max_score_elements() or None

    def _centroids_on_device(self, centroids: np.ndarray) -> torch.Tensor:
        """Upload centroids once and reuse them while the same array is passed in."""
        with self._cache_lock:
            cached = self._centroid_cache
            if cached is not None and cached[0] is centroids:
                return cached[1]
            # Codec centroids are read-only; torch needs a writable buffer
            tensor = torch.from_numpy(np.array(centroids, dtype=np.float32)).to(self.device)
            self._centroid_cache = (centroids, tensor)
            return tensor

    def _scores(self, embeddings: np.ndarray, centroids: np.ndarray) -> torch.Tensor:
        centroids_t = self._centroids_on_device(centroids)
        embeddings_t = torch.from_numpy(np.array(embeddings, dtype=np.float32)).to(self.device, non_blocking=True)
        return embeddings_t @ centroids_t.T

    def _row_batches(self, num_rows: int, num_centroids: int):
        if self.max_batch_elements:
            step = max(1, self.max_batch_elements // max(1, num_centroids))
        else:
            step = max(1, num_rows)
        for start in range(0, num_rows, step):
            yield start, min(start + step, num_rows)

    def centroid_scores(self, embeddings: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        out = np.empty((len(embeddings), len(centroids)), dtype=np.float32)
        with torch.no_grad():
            for start, end in self._row_batches(len(embeddings), len(centroids)):
                out[start:end] = self._scores(embeddings[start:end], centroids).cpu().numpy()
        return out

    def nearest_centroids(self, embeddings: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        """Index of the highest-scoring centroid per embedding (first index on ties)."""
        codes = np.empty(len(embeddings), dtype=np.int32)
        with torch.no_grad():
            for start, end in self._row_batches(len(embeddings), len(centroids)):
                scores = self._scores(embeddings[start:end], centroids)
                codes[start:end] = torch.argmax(scores, dim=1).cpu().numpy()
        return codes

    def top_centroids(self, embeddings: np.ndarray, centroids: np.ndarray, k: int) -> np.ndarray:
        """The k highest-scoring centroids per embedding, lower id first on equal scores."""
        k = min(k, len(centroids))
        order = np.empty((len(embeddings), k), dtype=np.int64)
        with torch.no_grad():
            for start, end in self._row_batches(len(embeddings), len(centroids)):
                scores = self._scores(embeddings[start:end], centroids)
                top = torch.sort(scores, dim=1, descending=True, stable=True).indices[:, :k]
                order[start:end] = top.cpu().numpy()
        return order

    @staticmethod
    def normalize_rows(vectors: np.ndarray) -> np.ndarray:
        """L2-normalize each row in place. Zero rows are left untouched."""
        norms = np.linalg.norm(vectors, axis=1)
        mask = norms > 0
        vectors[mask] /= norms[mask, None]
        return vectors

def select_vector_ops(force_cpu: bool = False, force_gpu: bool = False):
    """
    Pick the centroid backend. CPU unless a GPU is requested or available
    and not disabled by configuration.
    """
    if force_cpu or FORCE_CPU_MODE:
        return VectorOps()
    if force_gpu:
        if not torch.cuda.is_available():
            logger.warning("GPU mode forced but CUDA is not available; using torch on CPU")
        return VectorOpsGPU()
    if torch.cuda.is_available():
        return VectorOpsGPU()
    return VectorOps()
