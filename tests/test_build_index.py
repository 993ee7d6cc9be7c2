import json

import numpy as np
import pytest

from maxsim_index import Index, IndexConfig, build_index
from maxsim_index.config import IndexPaths
from maxsim_index.core.indexing.collection_indexer import CollectionIndexer
from maxsim_index.core.utilities.errors import (
    ChunkCountMismatchError,
    ChunkWriteError,
    CorruptFileError,
    DegenerateSampleError,
    IndexNotFoundError,
    IvfMismatchError,
    MissingChunkError,
)


def test_scenario_ivf_has_one_entry_per_token(scenario_index):
    index = Index.load(scenario_index)
    assert index.num_documents == 3
    assert index.num_embeddings == 6
    assert int(index.ivf.counts.sum()) == 6
    np.testing.assert_array_equal(np.sort(index.ivf.embedding_ids), np.arange(6))
    np.testing.assert_array_equal(index.doclens, [2, 3, 1])


def test_metadata_records_totals(scenario_index):
    metadata = json.loads(IndexPaths(scenario_index).get_metadata_file().read_text())
    assert metadata["num_chunks"] == 2
    assert metadata["num_documents"] == 3
    assert metadata["num_embeddings"] == 6
    assert metadata["config"]["dim"] == 4
    assert metadata["config"]["num_centroids"] == 2


def test_lookup_tables(small_index, small_documents):
    index = Index.load(small_index)
    assert index.num_chunks == 6  # 40 documents, 7 per chunk
    assert index.num_embeddings == sum(len(doc) for doc in small_documents)

    for doc_id in (0, 6, 7, 39):
        chunk_id, local_offset, length = index.document_location(doc_id)
        assert chunk_id == doc_id // 7
        assert length == len(small_documents[doc_id])
        first = int(index.doc_offsets[doc_id])
        assert index.locate_embedding(first) == (chunk_id, local_offset)
        assert np.all(index.emb2pid[first:first + length] == doc_id)


def test_chunk_embedding_ranges_are_contiguous(small_index):
    index = Index.load(small_index)
    for previous, current in zip(index.chunk_metadata, index.chunk_metadata[1:]):
        assert current.embedding_offset == previous.embedding_offset + previous.num_embeddings


def test_document_embeddings_approximate_the_input(small_index, small_documents):
    index = Index.load(small_index)
    restored = index.document_embeddings(11)
    original = small_documents[11]
    assert restored.shape == original.shape
    assert np.sum(restored * original, axis=1).min() > 0.8


def test_default_num_centroids_is_derived(tmp_path, make_documents):
    docs = make_documents(30, 8, num_clusters=4, seed=5)
    path = build_index(docs, IndexConfig(dim=8, chunk_size=10), tmp_path / "idx", show_progress=False)
    index = Index.load(path)
    assert index.config.num_centroids == index.codec.num_centroids
    assert index.codec.num_centroids >= 1


def test_parallel_build_matches_serial(tmp_path, small_documents):
    serial = build_index(small_documents, IndexConfig(dim=16, num_centroids=16, chunk_size=5),
                         tmp_path / "serial", show_progress=False)
    parallel = build_index(small_documents, IndexConfig(dim=16, num_centroids=16, chunk_size=5, num_workers=4),
                           tmp_path / "parallel", show_progress=False)
    a, b = Index.load(serial), Index.load(parallel)
    np.testing.assert_array_equal(a.codes, b.codes)
    np.testing.assert_array_equal(a.residuals, b.residuals)
    np.testing.assert_array_equal(a.ivf.embedding_ids, b.ivf.embedding_ids)


def test_text_collection_uses_encoder(tmp_path, small_documents):
    class LookupEncoder:
        def encode(self, text):
            doc = small_documents[int(text.split("-")[1])]
            return [(vector, f"tok{i}") for i, vector in enumerate(doc)]

    texts = [f"doc-{i}" for i in range(len(small_documents))]
    path = build_index(texts, IndexConfig(dim=16, num_centroids=8, chunk_size=10), tmp_path / "text",
                       encoder=LookupEncoder(), show_progress=False)
    assert Index.load(path).num_documents == len(texts)


def test_failed_chunk_aborts_build(tmp_path, monkeypatch, small_documents):
    original = CollectionIndexer._compress_chunk

    def failing(self, chunk_id):
        if chunk_id == 2:
            raise OSError("disk full")
        return original(self, chunk_id)

    monkeypatch.setattr(CollectionIndexer, "_compress_chunk", failing)
    root = tmp_path / "broken"
    with pytest.raises(ChunkWriteError) as excinfo:
        build_index(small_documents, IndexConfig(dim=16, num_centroids=8, chunk_size=7), root,
                    show_progress=False)
    assert excinfo.value.chunk_id == 2
    assert not IndexPaths(root).get_metadata_file().exists()
    with pytest.raises(IndexNotFoundError):
        Index.load(root)


def test_empty_collection_is_rejected(tmp_path):
    with pytest.raises(DegenerateSampleError):
        build_index([], IndexConfig(dim=8, num_centroids=2), tmp_path / "empty", show_progress=False)


def test_load_missing_index(tmp_path):
    with pytest.raises(IndexNotFoundError):
        Index.load(tmp_path / "nothing")


def test_load_missing_chunk_file(small_index):
    IndexPaths(small_index).get_codes_file(3).unlink()
    with pytest.raises(MissingChunkError):
        Index.load(small_index)


def test_load_extra_chunk_files(small_index):
    paths = IndexPaths(small_index)
    paths.get_doclens_file(6).write_text("[]")
    with pytest.raises(ChunkCountMismatchError):
        Index.load(small_index)


def test_load_ivf_total_mismatch(small_index):
    metadata_file = IndexPaths(small_index).get_metadata_file()
    metadata = json.loads(metadata_file.read_text())
    metadata["num_embeddings"] += 1
    metadata_file.write_text(json.dumps(metadata))
    with pytest.raises(IvfMismatchError):
        Index.load(small_index)


def test_load_corrupt_ivf(small_index):
    ivf_file = IndexPaths(small_index).get_ivf_file()
    data = bytearray(ivf_file.read_bytes())
    data[0:4] = b"XXXX"
    ivf_file.write_bytes(bytes(data))
    with pytest.raises(CorruptFileError):
        Index.load(small_index)
