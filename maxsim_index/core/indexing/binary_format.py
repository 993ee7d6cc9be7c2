# maxsim_index/core/indexing/binary_format.py
"""
Shared container for every binary index file.

[Header: 16 bytes]
    Offset  Type     Description
    0       char[4]  Magic bytes identifying the file kind
    4       uint32   Format version
    8       char[8]  BLAKE2b-64 checksum of the payload

[Payload: variable length]
    File-specific. All integers are little-endian.

Files are written to a temporary sibling and moved into place with
os.replace, so a reader either sees the complete file or no file.
"""
import hashlib
import json
import os
import struct
import numpy as np
from pathlib import Path
from maxsim_index.config import BINARY_HEADER_FORMAT, BINARY_HEADER_SIZE, FORMAT_VERSION
from maxsim_index.core.utilities.errors import CorruptFileError

def _checksum(payload: bytes) -> bytes:
    hasher = hashlib.blake2b(digest_size=8)
    hasher.update(payload)
    return hasher.digest()

def atomic_write_bytes(path: Path, data: bytes):
    """Write data to path via a temporary file in the same directory."""
    path = Path(path)
    temp_path = path.with_name(path.name + ".tmp")
    try:
        with open(temp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            temp_path.unlink()

def atomic_write_json(path: Path, obj):
    atomic_write_bytes(path, json.dumps(obj, indent=2).encode("utf-8"))

def read_json(path: Path):
    path = Path(path)
    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise CorruptFileError(f"Malformed JSON in {path}: {e}") from e

def write_binary_file(path: Path, magic: bytes, payload: bytes):
    """Write header + payload atomically."""
    header = struct.pack(BINARY_HEADER_FORMAT, magic, FORMAT_VERSION, _checksum(payload))
    atomic_write_bytes(path, header + payload)

def read_binary_file(path: Path, magic: bytes) -> bytes:
    """
    Read a binary index file and return its payload.

    Raises:
        FileNotFoundError: the file does not exist
        CorruptFileError: wrong magic, unsupported version or checksum mismatch
    """
    path = Path(path)
    with open(path, "rb") as f:
        data = f.read()

    if len(data) < BINARY_HEADER_SIZE:
        raise CorruptFileError(f"{path} is too small ({len(data)} bytes) to hold a header")

    file_magic, version, stored_checksum = struct.unpack(BINARY_HEADER_FORMAT, data[:BINARY_HEADER_SIZE])
    if file_magic != magic:
        raise CorruptFileError(f"{path}: expected magic {magic!r}, found {file_magic!r}")
    if version != FORMAT_VERSION:
        raise CorruptFileError(f"{path}: unsupported format version {version}")

    payload = data[BINARY_HEADER_SIZE:]
    if _checksum(payload) != stored_checksum:
        raise CorruptFileError(f"{path}: checksum mismatch")
    return payload

class PayloadReader:
    """Sequential reader over a payload, raising CorruptFileError on truncation."""

    def __init__(self, payload: bytes, path):
        self.payload = memoryview(payload)
        self.path = path
        self.offset = 0

    def unpack(self, fmt: str):
        size = struct.calcsize(fmt)
        self._require(size)
        values = struct.unpack_from(fmt, self.payload, self.offset)
        self.offset += size
        return values

    def array(self, dtype, count: int):
        dtype = np.dtype(dtype)
        if count == 0:
            return np.empty(0, dtype=dtype)
        size = dtype.itemsize * count
        self._require(size)
        arr = np.frombuffer(self.payload, dtype=dtype, count=count, offset=self.offset).copy()
        self.offset += size
        return arr

    def finish(self):
        if self.offset != len(self.payload):
            raise CorruptFileError(
                f"{self.path}: {len(self.payload) - self.offset} trailing bytes after payload"
            )

    def _require(self, size: int):
        if self.offset + size > len(self.payload):
            raise CorruptFileError(f"{self.path}: payload truncated at byte {self.offset}")
