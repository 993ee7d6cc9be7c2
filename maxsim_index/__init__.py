"""
Late-interaction retrieval index with residual compression and MaxSim ranking.
"""
from maxsim_index.config import IndexConfig, VERSION as __version__
from maxsim_index.core.indexing.collection_indexer import build_index
from maxsim_index.core.similarity_engine.index_manager import Index
from maxsim_index.core.similarity_engine.orchestrator import Searcher, search

__all__ = ["IndexConfig", "Index", "Searcher", "build_index", "search"]
