"""
Exception hierarchy for index construction and search.
"""

class MaxSimIndexError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(MaxSimIndexError):
    """Invalid parameters, reported before any work starts."""


class DegenerateSampleError(ConfigurationError):
    """The clustering sample cannot yield the requested number of centroids."""


class QueryDimensionError(ConfigurationError):
    """Query embeddings do not match the index dimension."""

    def __init__(self, expected: int, got: int):
        super().__init__(f"Query embedding dimension {got} does not match index dimension {expected}")
        self.expected = expected
        self.got = got


class DataIntegrityError(MaxSimIndexError):
    """Persisted index files are missing, inconsistent or corrupt."""


class IndexNotFoundError(DataIntegrityError):
    """No completed index exists at the given path."""


class MissingChunkError(DataIntegrityError):
    def __init__(self, chunk_id: int, path):
        super().__init__(f"Chunk {chunk_id} is incomplete: missing {path}")
        self.chunk_id = chunk_id
        self.path = path


class ChunkCountMismatchError(DataIntegrityError):
    """Chunk files on disk disagree with the recorded chunk count."""


class IvfMismatchError(DataIntegrityError):
    """IVF runs do not cover the recorded embeddings exactly."""


class CorruptFileError(DataIntegrityError):
    """Bad magic, unsupported version, checksum mismatch or truncated payload."""


class ChunkWriteError(MaxSimIndexError):
    """Processing or persisting one chunk failed; the build is aborted."""

    def __init__(self, chunk_id: int, cause: BaseException):
        super().__init__(f"Failed to write chunk {chunk_id}: {cause}")
        self.chunk_id = chunk_id
        self.cause = cause


class ChunkOrderError(MaxSimIndexError):
    """A chunk was written out of order or more than once."""


class SearchTimeoutError(MaxSimIndexError):
    """The caller's timeout elapsed before ranking completed."""
