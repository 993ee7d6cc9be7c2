from .chunk_store import ChunkStore, ChunkMetadata
from .ivf_builder import InvertedFile, build_ivf, build_ivf_from_store
