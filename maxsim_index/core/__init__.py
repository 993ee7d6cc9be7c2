"""Core codec, indexing and search components."""
