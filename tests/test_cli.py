import json

import numpy as np

from maxsim_index.main import main, split_documents


def test_split_documents():
    embeddings = np.arange(12, dtype=np.float32).reshape(6, 2)
    docs = split_documents(embeddings, np.array([2, 3, 1]))
    assert [len(doc) for doc in docs] == [2, 3, 1]
    np.testing.assert_array_equal(docs[2], embeddings[5:])


def test_build_info_and_search(tmp_path, capsys, make_documents):
    docs = make_documents(20, 8, num_clusters=4, seed=11)
    embeddings_file = tmp_path / "embeddings.npy"
    doclens_file = tmp_path / "doclens.json"
    query_file = tmp_path / "query.npy"
    np.save(embeddings_file, np.concatenate(docs))
    doclens_file.write_text(json.dumps([len(doc) for doc in docs]))
    np.save(query_file, docs[4])
    index_dir = tmp_path / "index"

    assert main(["--cpu", "build", str(index_dir), "--embeddings", str(embeddings_file),
                 "--doclens", str(doclens_file), "--num-centroids", "8", "--chunk-size", "6"]) == 0
    assert (index_dir / "metadata.json").exists()

    assert main(["info", str(index_dir)]) == 0
    assert "num_documents" in capsys.readouterr().out

    assert main(["--cpu", "search", str(index_dir), "--query", str(query_file), "-k", "3"]) == 0
    out = capsys.readouterr().out
    assert "doc" in out and "score" in out


def test_search_missing_index_reports_error(tmp_path, capsys):
    query_file = tmp_path / "query.npy"
    np.save(query_file, np.ones((1, 8), dtype=np.float32))
    assert main(["search", str(tmp_path / "missing"), "--query", str(query_file)]) == 1
    assert "No completed index" in capsys.readouterr().err
