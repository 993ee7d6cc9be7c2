"""
Torch-native k-means used to learn the codec centroids.
"""
import logging
import torch
import numpy as np
from maxsim_index.config import KMEANS_SEED, KMEANS_TOLERANCE
from maxsim_index.core.utilities.errors import DegenerateSampleError

logger = logging.getLogger(__name__)

class KMeans:
    """
    Lloyd's k-means with deterministic seeding and empty-cluster refill.

    Initial centroids are k distinct sample rows chosen by a seeded
    permutation. A cluster that empties out is re-seeded with the point
    farthest from its current centroid.
    """

    def __init__(self, k: int, niters: int = 20, tol: float = KMEANS_TOLERANCE,
                 seed: int = KMEANS_SEED, device: str = "cpu"):
        self.k = int(k)
        self.niters = int(niters)
        self.tol = float(tol)
        self.seed = int(seed)
        self.device = torch.device(device)
        self.centroids = None

    @torch.no_grad()
    def fit(self, sample: np.ndarray) -> np.ndarray:
        """
        Cluster the sample and return L2-normalized centroids of shape (k, D).

        Raises:
            DegenerateSampleError: empty sample, fewer distinct rows than k, or
                fewer than k distinct centroids after training
        """
        if sample is None or len(sample) == 0:
            raise DegenerateSampleError("Cannot train centroids on an empty sample")

        X = torch.as_tensor(np.ascontiguousarray(sample), dtype=torch.float32).to(self.device)
        distinct = torch.unique(X, dim=0)
        if distinct.shape[0] < self.k:
            raise DegenerateSampleError(
                f"Sample has {distinct.shape[0]} distinct embeddings but {self.k} centroids were "
                f"requested; reduce num_centroids or supply more data"
            )

        g = torch.Generator(device="cpu").manual_seed(self.seed)
        init = torch.randperm(distinct.shape[0], generator=g)[:self.k].to(self.device)
        C = distinct.index_select(0, init).clone()

        n = X.shape[0]
        ones = torch.ones(n, 1, device=self.device, dtype=X.dtype)
        x2 = (X * X).sum(-1, keepdim=True)      # [n,1]
        prev_inertia = None
        for iteration in range(self.niters):
            c2 = (C * C).sum(-1).unsqueeze(0)   # [1,k]
            dist2 = x2 + c2 - 2.0 * (X @ C.T)   # [n,k]
            assignment = dist2.argmin(-1)       # [n]
            nearest = dist2.gather(1, assignment.view(-1, 1)).squeeze(1)
            inertia = nearest.sum().item()

            sums = torch.zeros_like(C)
            counts = torch.zeros(self.k, 1, device=self.device, dtype=X.dtype)
            sums.index_add_(0, assignment, X)
            counts.index_add_(0, assignment, ones)

            empty = (counts.squeeze(1) == 0).nonzero(as_tuple=False).flatten()
            if empty.numel() > 0:
                logger.debug(f"k-means iteration {iteration}: re-seeding {empty.numel()} empty clusters")
                farthest = torch.argsort(nearest, descending=True, stable=True)[:empty.numel()]
                sums.index_copy_(0, empty, X.index_select(0, farthest))
                counts.index_fill_(0, empty, 1.0)

            C = sums / counts.clamp_min(1.0)
            if prev_inertia is not None and abs(prev_inertia - inertia) <= self.tol * max(1.0, prev_inertia):
                logger.debug(f"k-means converged after {iteration + 1} iterations (inertia {inertia:.4f})")
                break
            prev_inertia = inertia

        C = torch.nn.functional.normalize(C, dim=-1)
        if torch.unique(C, dim=0).shape[0] < self.k:
            raise DegenerateSampleError(
                f"k-means did not produce {self.k} distinct centroids; "
                f"reduce num_centroids or supply more data"
            )

        self.centroids = C.cpu().numpy().astype(np.float32)
        return self.centroids
