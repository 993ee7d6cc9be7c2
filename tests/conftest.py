import numpy as np
import pytest

from maxsim_index import IndexConfig, build_index


def _normalize(x: np.ndarray) -> np.ndarray:
    return x / np.linalg.norm(x, axis=-1, keepdims=True)


def _clustered_documents(num_docs: int, dim: int, num_clusters: int = 8, noise: float = 0.05,
                         min_tokens: int = 2, max_tokens: int = 6, seed: int = 0):
    rng = np.random.default_rng(seed)
    centers = _normalize(rng.standard_normal((num_clusters, dim)))
    documents = []
    for _ in range(num_docs):
        n_tokens = int(rng.integers(min_tokens, max_tokens + 1))
        which = rng.integers(0, num_clusters, size=n_tokens)
        tokens = centers[which] + noise * rng.standard_normal((n_tokens, dim))
        documents.append(_normalize(tokens).astype(np.float32))
    return documents


@pytest.fixture
def make_documents():
    return _clustered_documents


@pytest.fixture
def clustered_embeddings():
    docs = _clustered_documents(200, 32, num_clusters=8, seed=1)
    return np.concatenate(docs)


@pytest.fixture
def scenario_documents():
    # Documents 0 and 2 point along the first axis, document 1 along the third
    docs = [
        [[1.0, 0.0, 0.0, 0.0], [0.9, 0.1, 0.0, 0.0]],
        [[0.0, 0.0, 1.0, 0.0], [0.0, 0.0, 0.9, 0.1], [0.0, 0.1, 0.9, 0.0]],
        [[0.95, 0.0, 0.05, 0.0]],
    ]
    return [_normalize(np.asarray(d, dtype=np.float32)) for d in docs]


@pytest.fixture
def scenario_index(tmp_path, scenario_documents):
    config = IndexConfig(dim=4, nbits=2, num_centroids=2, chunk_size=2, ncells=2)
    return build_index(scenario_documents, config, tmp_path / "scenario", show_progress=False)


@pytest.fixture
def small_documents():
    return _clustered_documents(40, 16, num_clusters=6, seed=7)


@pytest.fixture
def small_index(tmp_path, small_documents):
    config = IndexConfig(dim=16, nbits=2, num_centroids=16, chunk_size=7, ncells=2)
    return build_index(small_documents, config, tmp_path / "small", show_progress=False)
