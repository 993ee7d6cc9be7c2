import json

import pytest

from maxsim_index.config import IndexConfig, IndexPaths, PathConfig, default_num_centroids
from maxsim_index.core.utilities.config_manager import ConfigManager
from maxsim_index.core.utilities.errors import ConfigurationError


@pytest.mark.parametrize("kwargs", [
    {"dim": 0},
    {"dim": 4, "nbits": 3},
    {"dim": 8, "nbits": 0},
    {"dim": 8, "nbits": 9},
    {"dim": 8, "num_centroids": 0},
    {"dim": 8, "chunk_size": 0},
    {"dim": 8, "ncells": 0},
    {"dim": 8, "sample_fraction": 1.5},
    {"dim": 8, "num_workers": 0},
])
def test_invalid_configs_are_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        IndexConfig(**kwargs).validate()


def test_valid_config_round_trips_through_dict():
    config = IndexConfig(dim=128, nbits=2, num_centroids=256, chunk_size=1000).validate()
    assert config.packed_dim == 32
    assert IndexConfig.from_dict(json.loads(json.dumps(config.to_dict()))) == config


def test_from_dict_ignores_unknown_keys():
    assert IndexConfig.from_dict({"dim": 8, "legacy": True}) == IndexConfig(dim=8)


def test_default_num_centroids_is_a_power_of_two():
    assert default_num_centroids(10_000) == 1024  # 16 * 100 = 1600 -> 1024
    assert default_num_centroids(1) == 16
    assert default_num_centroids(0) == 1


def test_index_paths_share_one_root(tmp_path):
    paths = IndexPaths(tmp_path)
    files = [paths.get_metadata_file(), paths.get_codec_file(), paths.get_ivf_file(), *paths.get_chunk_files(3)]
    assert all(path.parent == tmp_path for path in files)
    assert paths.get_chunk_files(3)[-1] == paths.get_chunk_metadata_file(3)


@pytest.fixture
def fresh_config_manager(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    monkeypatch.setattr(PathConfig, "get_config_path", classmethod(lambda cls: config_path))
    monkeypatch.setattr(ConfigManager, "_instance", None)
    return config_path


def test_config_manager_defaults_without_file(fresh_config_manager):
    manager = ConfigManager()
    assert manager.get_top_k() == 10
    assert manager.get_force_cpu() is False


def test_config_manager_persists_settings(fresh_config_manager):
    manager = ConfigManager()
    manager.set_top_k(0)
    manager.set_ncells(4)
    assert json.loads(fresh_config_manager.read_text())["top_k"] == 1
    assert json.loads(fresh_config_manager.read_text())["ncells"] == 4
    with pytest.raises(ValueError):
        manager.set_num_workers(0)


def test_config_manager_survives_unreadable_file(fresh_config_manager):
    fresh_config_manager.write_text("{not json")
    manager = ConfigManager()
    assert manager.settings == ConfigManager.DEFAULT_SETTINGS
