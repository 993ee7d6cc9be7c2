import numpy as np
import pytest

from maxsim_index.config import IndexPaths
from maxsim_index.core.indexing.chunk_store import ChunkStore
from maxsim_index.core.indexing.ivf_builder import InvertedFile, build_ivf, build_ivf_from_store
from maxsim_index.core.utilities.errors import CorruptFileError, IvfMismatchError


def test_runs_group_ids_by_code():
    ivf = build_ivf(np.array([1, 0, 1, 2, 0]), num_centroids=4)
    np.testing.assert_array_equal(ivf.counts, [2, 2, 1, 0])
    np.testing.assert_array_equal(ivf.offsets, [0, 2, 4, 5])
    np.testing.assert_array_equal(ivf.run(0), [1, 4])
    np.testing.assert_array_equal(ivf.run(1), [0, 2])
    np.testing.assert_array_equal(ivf.run(2), [3])
    assert len(ivf.run(3)) == 0
    ivf.validate(5)


def test_runs_partition_all_embedding_ids():
    codes = np.random.default_rng(3).integers(0, 16, size=1000)
    ivf = build_ivf(codes, num_centroids=16)
    all_ids = np.concatenate([ivf.run(c) for c in range(16)])
    assert len(all_ids) == 1000
    np.testing.assert_array_equal(np.sort(all_ids), np.arange(1000))
    for c in range(16):
        run = ivf.run(c)
        assert np.all(codes[run] == c)
        assert np.all(np.diff(run) > 0)


def test_validate_rejects_wrong_total():
    ivf = build_ivf(np.array([0, 1, 1]), num_centroids=2)
    with pytest.raises(IvfMismatchError):
        ivf.validate(4)


def test_codes_out_of_range():
    with pytest.raises(IvfMismatchError):
        build_ivf(np.array([0, 3]), num_centroids=2)


def test_save_and_load(tmp_path):
    paths = IndexPaths(tmp_path)
    ivf = build_ivf(np.array([2, 2, 0, 1, 0, 2]), num_centroids=3)
    ivf.save(paths)
    loaded = InvertedFile.load(paths)
    np.testing.assert_array_equal(loaded.counts, ivf.counts)
    np.testing.assert_array_equal(loaded.offsets, ivf.offsets)
    np.testing.assert_array_equal(loaded.embedding_ids, ivf.embedding_ids)


def test_load_truncated_file(tmp_path):
    paths = IndexPaths(tmp_path)
    build_ivf(np.array([0, 1]), num_centroids=2).save(paths)
    data = paths.get_ivf_file().read_bytes()
    paths.get_ivf_file().write_bytes(data[:-8])
    with pytest.raises(CorruptFileError):
        InvertedFile.load(paths)


def test_build_from_store_uses_chunk_order(tmp_path):
    store = ChunkStore(tmp_path, packed_dim=1)
    store.write_chunk(0, [2], np.array([1, 0], dtype=np.int32), np.zeros((2, 1), dtype=np.uint8))
    store.write_chunk(1, [1, 2], np.array([0, 1, 1], dtype=np.int32), np.zeros((3, 1), dtype=np.uint8))
    ivf = build_ivf_from_store(store, num_chunks=2, num_centroids=2)
    np.testing.assert_array_equal(ivf.run(0), [1, 2])
    np.testing.assert_array_equal(ivf.run(1), [0, 3, 4])
    ivf.validate(5)
