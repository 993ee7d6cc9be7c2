import pytest

from maxsim_index.core.indexing.binary_format import read_binary_file, write_binary_file
from maxsim_index.core.utilities.errors import CorruptFileError


def test_payload_round_trip(tmp_path):
    path = tmp_path / "data.bin"
    write_binary_file(path, b"TEST", b"payload bytes")
    assert read_binary_file(path, b"TEST") == b"payload bytes"
    assert not path.with_name("data.bin.tmp").exists()


def test_checksum_is_always_verified(tmp_path):
    path = tmp_path / "data.bin"
    write_binary_file(path, b"TEST", b"payload bytes")
    data = bytearray(path.read_bytes())
    data[-1] ^= 0x01
    path.write_bytes(bytes(data))
    with pytest.raises(CorruptFileError, match="checksum"):
        read_binary_file(path, b"TEST")


def test_wrong_magic_and_short_file_are_rejected(tmp_path):
    path = tmp_path / "data.bin"
    write_binary_file(path, b"TEST", b"x")
    with pytest.raises(CorruptFileError, match="magic"):
        read_binary_file(path, b"ELSE")

    path.write_bytes(b"short")
    with pytest.raises(CorruptFileError):
        read_binary_file(path, b"TEST")
