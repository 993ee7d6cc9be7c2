# maxsim_index/config.py
import math
import tomllib
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Optional

from maxsim_index.core.utilities.errors import ConfigurationError

def _get_version():
    """Read the package version from pyproject.toml"""
    try:
        pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "unknown"  # Fallback for installed wheels without pyproject.toml

VERSION = _get_version()
FORCE_CPU_MODE = False
VRAM_SAFETY_FACTOR = 0.85 # What percentage of available VRAM to use
FRAME_WIDTH = 70 # For CLI UI headings

# Batching knobs. These bound peak memory only; results never depend on them.
COMPRESS_BATCH_SIZE = 1 << 18       # Embeddings per compress() batch
DECOMPRESS_BATCH_SIZE = 1 << 15     # Embeddings per decompress() batch
CODES_BATCH_BYTES = 1 << 29         # Cap on the (batch x num_centroids) score matrix elements
SCORE_BATCH_DOCS = 1024             # Candidate documents scored per MaxSim batch

# Codec training
HELDOUT_FRACTION = 0.05
MAX_HELDOUT = 50_000
KMEANS_SEED = 123
KMEANS_TOLERANCE = 1e-4

# On-disk format
FORMAT_VERSION = 1
BINARY_HEADER_FORMAT = "<4sI8s"  # Magic (4B) + Version (4B) + Checksum (8B)
BINARY_HEADER_SIZE = 16

class PathConfig:
    BASE_DIR = Path(__file__).parent

    @classmethod
    def get_config_path(cls):
        return cls.BASE_DIR / "config.json"

class IndexPaths:
    """File layout of one index. Every artifact lives under a single root."""

    def __init__(self, root):
        self.root = Path(root)

    def get_metadata_file(self):
        """Global metadata; its presence marks a completed build"""
        return self.root / "metadata.json"

    def get_codec_file(self):
        return self.root / "codec.bin"

    def get_ivf_file(self):
        return self.root / "ivf.bin"

    def get_codes_file(self, chunk_id: int):
        return self.root / f"{chunk_id}.codes.bin"

    def get_residuals_file(self, chunk_id: int):
        return self.root / f"{chunk_id}.residuals.bin"

    def get_doclens_file(self, chunk_id: int):
        return self.root / f"doclens.{chunk_id}.json"

    def get_chunk_metadata_file(self, chunk_id: int):
        """Written last for each chunk; marks the chunk as committed"""
        return self.root / f"{chunk_id}.metadata.json"

    def get_chunk_files(self, chunk_id: int):
        """Return all files that make up one chunk"""
        return [
            self.get_doclens_file(chunk_id),
            self.get_codes_file(chunk_id),
            self.get_residuals_file(chunk_id),
            self.get_chunk_metadata_file(chunk_id)
        ]

@dataclass(frozen=True)
class IndexConfig:
    """
    Immutable parameters of one index.

    Built once before indexing starts, persisted in metadata.json and shared
    read-only by every chunk job and every search.
    """
    dim: int
    nbits: int = 2
    num_centroids: Optional[int] = None
    chunk_size: int = 25_000
    ncells: int = 2
    kmeans_niters: int = 20
    sample_fraction: Optional[float] = None
    num_workers: int = 1

    @property
    def packed_dim(self) -> int:
        """Bytes of packed residual per embedding"""
        return self.dim * self.nbits // 8

    def validate(self) -> "IndexConfig":
        """Reject configurations that cannot produce a valid index."""
        if self.dim <= 0:
            raise ConfigurationError(f"Embedding dimension must be positive, got {self.dim}")
        if not 1 <= self.nbits <= 8:
            raise ConfigurationError(f"nbits must be between 1 and 8, got {self.nbits}")
        if (self.dim * self.nbits) % 8 != 0:
            raise ConfigurationError(
                f"dim * nbits must be a multiple of 8 for byte-aligned residuals "
                f"(dim={self.dim}, nbits={self.nbits})"
            )
        if self.num_centroids is not None and self.num_centroids < 1:
            raise ConfigurationError(f"num_centroids must be at least 1, got {self.num_centroids}")
        if self.chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be at least 1, got {self.chunk_size}")
        if self.ncells < 1:
            raise ConfigurationError(f"ncells must be at least 1, got {self.ncells}")
        if self.kmeans_niters < 1:
            raise ConfigurationError(f"kmeans_niters must be at least 1, got {self.kmeans_niters}")
        if self.sample_fraction is not None and not 0.0 < self.sample_fraction <= 1.0:
            raise ConfigurationError(f"sample_fraction must be in (0, 1], got {self.sample_fraction}")
        if self.num_workers < 1:
            raise ConfigurationError(f"num_workers must be at least 1, got {self.num_workers}")
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "IndexConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

def default_num_centroids(num_embeddings: int) -> int:
    """Power of two near 16 * sqrt(num_embeddings)."""
    if num_embeddings <= 0:
        return 1
    return 2 ** int(math.floor(math.log2(16 * math.sqrt(num_embeddings))))
