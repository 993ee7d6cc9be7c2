import numpy as np
import pytest

from maxsim_index.core.indexing.chunk_store import ChunkStore
from maxsim_index.core.utilities.errors import (
    ChunkCountMismatchError,
    ChunkOrderError,
    ChunkWriteError,
    CorruptFileError,
    MissingChunkError,
)


def _chunk(doclens, packed_dim=2, seed=0):
    rng = np.random.default_rng(seed)
    n = int(sum(doclens))
    codes = rng.integers(0, 4, size=n).astype(np.int32)
    residuals = rng.integers(0, 256, size=(n, packed_dim)).astype(np.uint8)
    return doclens, codes, residuals


def test_write_and_read_chunk(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=2)
    doclens, codes, residuals = _chunk([2, 3])
    meta = store.write_chunk(0, doclens, codes, residuals)
    assert (meta.passage_offset, meta.num_passages, meta.embedding_offset, meta.num_embeddings) == (0, 2, 0, 5)

    chunk = store.read_chunk(0)
    np.testing.assert_array_equal(chunk.doclens, [2, 3])
    np.testing.assert_array_equal(chunk.codes, codes)
    np.testing.assert_array_equal(chunk.residuals, residuals)
    assert store.chunk_exists(0)


def test_offsets_continue_across_chunks(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=2)
    first = store.write_chunk(0, *_chunk([2, 3], seed=1))
    second = store.write_chunk(1, *_chunk([1], seed=2))
    assert second.embedding_offset == first.embedding_offset + first.num_embeddings
    assert second.passage_offset == 2
    assert store.total_embeddings == 6
    assert store.total_passages == 3


def test_chunks_must_arrive_in_order(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=2)
    with pytest.raises(ChunkOrderError):
        store.write_chunk(1, *_chunk([1]))
    store.write_chunk(0, *_chunk([1]))
    with pytest.raises(ChunkOrderError):
        store.write_chunk(0, *_chunk([1]))


def test_failed_write_leaves_no_files(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=2)
    doclens, codes, _ = _chunk([2, 2])
    bad_residuals = np.zeros((4, 3), dtype=np.uint8)
    with pytest.raises(ChunkWriteError) as excinfo:
        store.write_chunk(0, doclens, codes, bad_residuals)
    assert excinfo.value.chunk_id == 0
    assert not any(path.exists() for path in store.paths.get_chunk_files(0))
    assert store.num_committed == 0


def test_doclens_must_match_codes(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=2)
    _, codes, residuals = _chunk([2, 2])
    with pytest.raises(ChunkWriteError):
        store.write_chunk(0, [1, 1], codes, residuals)


def test_verify_complete(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=2)
    store.write_chunk(0, *_chunk([1, 1]))
    store.write_chunk(1, *_chunk([2]))
    store.verify_complete(2)

    with pytest.raises(ChunkCountMismatchError):
        store.verify_complete(1)

    store.paths.get_residuals_file(1).unlink()
    with pytest.raises(MissingChunkError) as excinfo:
        store.verify_complete(2)
    assert excinfo.value.chunk_id == 1


def test_read_chunk_detects_tampering(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=2)
    store.write_chunk(0, *_chunk([2, 3]))
    path = store.paths.get_codes_file(0)
    data = bytearray(path.read_bytes())
    data[-1] ^= 0x01
    path.write_bytes(bytes(data))
    with pytest.raises(CorruptFileError):
        store.read_chunk(0)


def test_empty_documents_are_allowed(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=2)
    meta = store.write_chunk(0, [0, 2, 0], *_chunk([2])[1:])
    assert meta.num_passages == 3
    assert meta.num_embeddings == 2
    np.testing.assert_array_equal(store.read_chunk(0).doclens, [0, 2, 0])
