"""Immutable sorted store files with per-file envelope encryption.

File layout:

    b'SSTF' + version byte
    data blocks      : 4-byte big-endian length + block bytes (encrypted per block)
    block index      : one section, passed through the cipher as block number
                       ``block_count`` so first keys never hit disk in plaintext
    trailer record   : see trailer.py
    footer           : fixed 20 bytes, see trailer.py

Records inside a block: 1-byte type (0 put, 1 delete), 4-byte key length,
4-byte value length, key, value. Keys are appended in strictly ascending order.

The writer works on ``<path>.tmp`` and only renames it into place after the
trailer and footer are written and synced, so an interrupted write never
leaves a file with a valid-looking trailer.
"""
from __future__ import annotations

import bisect
import io
import logging
import os
import struct
from collections import OrderedDict
from pathlib import Path
from typing import Iterator, List, NamedTuple, Optional

from ..security.context import EncryptionContext
from ..security.datakey import DataKeyGenerator
from .config import EncryptionConfig
from .exceptions import StoreFileError
from .trailer import Footer, read_trailer

logger = logging.getLogger(__name__)


FILE_MAGIC = b"SSTF"
FORMAT_VERSION = 1
HEADER_SIZE = len(FILE_MAGIC) + 1
TMP_SUFFIX = ".tmp"

PUT = 0
DELETE = 1

_RECORD_HEADER = struct.Struct(">BII")
_INDEX_ENTRY = struct.Struct(">QII")


class Record(NamedTuple):
    key: bytes
    value: Optional[bytes]  # None marks a delete

    @property
    def deleted(self) -> bool:
        return self.value is None


class BlockIndexEntry(NamedTuple):
    offset: int
    length: int
    record_count: int
    first_key: bytes


def _encode_record(key: bytes, value: Optional[bytes]) -> bytes:
    if value is None:
        return _RECORD_HEADER.pack(DELETE, len(key), 0) + key
    return _RECORD_HEADER.pack(PUT, len(key), len(value)) + key + value


def _decode_records(data: bytes) -> List[Record]:
    records = []
    buf = io.BytesIO(data)
    while True:
        header = buf.read(_RECORD_HEADER.size)
        if not header:
            break
        if len(header) != _RECORD_HEADER.size:
            raise StoreFileError("corrupt data block: truncated record header")
        kind, key_len, value_len = _RECORD_HEADER.unpack(header)
        if kind not in (PUT, DELETE):
            raise StoreFileError(f"corrupt data block: unknown record type {kind}")
        key = buf.read(key_len)
        value = buf.read(value_len)
        if len(key) != key_len or len(value) != value_len:
            raise StoreFileError("corrupt data block: truncated record")
        records.append(Record(key, None if kind == DELETE else value))
    return records


def _encode_index(entries: List[BlockIndexEntry]) -> bytes:
    out = bytearray()
    for entry in entries:
        out += _INDEX_ENTRY.pack(entry.offset, entry.length, entry.record_count)
        out += struct.pack(">I", len(entry.first_key))
        out += entry.first_key
    return bytes(out)


def _decode_index(data: bytes, block_count: int) -> List[BlockIndexEntry]:
    entries = []
    buf = io.BytesIO(data)
    for _ in range(block_count):
        raw = buf.read(_INDEX_ENTRY.size + 4)
        if len(raw) != _INDEX_ENTRY.size + 4:
            raise StoreFileError("corrupt block index")
        offset, length, count = _INDEX_ENTRY.unpack(raw[: _INDEX_ENTRY.size])
        (key_len,) = struct.unpack(">I", raw[_INDEX_ENTRY.size:])
        first_key = buf.read(key_len)
        if len(first_key) != key_len:
            raise StoreFileError("corrupt block index")
        entries.append(BlockIndexEntry(offset, length, count, first_key))
    if buf.read(1):
        raise StoreFileError("corrupt block index: trailing bytes")
    return entries


class StoreFileWriter:
    """Writes one store file.

    The encryption context is built in the constructor, so an unresolvable
    master key aborts before anything touches the disk. Use as a context
    manager; an exception inside the ``with`` block aborts the write.
    """

    def __init__(
        self,
        path: str | Path,
        config: EncryptionConfig,
        key_provider=None,
        data_key_generator: Optional[DataKeyGenerator] = None,
    ):
        self.path = Path(path)
        self.config = config
        self.key_provider = key_provider
        self.context = EncryptionContext.for_write(config, key_provider, data_key_generator)
        self.tmp_path = self.path.with_name(self.path.name + TMP_SUFFIX)
        self._index: List[BlockIndexEntry] = []
        self._block = bytearray()
        self._block_first_key: Optional[bytes] = None
        self._block_records = 0
        self._block_count = 0
        self._entry_count = 0
        self._last_key: Optional[bytes] = None
        self._finished = False
        self._aborted = False
        try:
            self._file = open(self.tmp_path, "wb")
            self._file.write(FILE_MAGIC + struct.pack("B", FORMAT_VERSION))
        except OSError as e:
            self.context.close()
            raise StoreFileError(f"cannot create {self.tmp_path}: {e}") from e

    @property
    def entry_count(self) -> int:
        return self._entry_count

    def append(self, key: bytes, value: Optional[bytes]) -> None:
        """Append a record; ``value=None`` writes a delete marker."""
        if self._finished:
            raise StoreFileError("writer is closed")
        if self._last_key is not None and key <= self._last_key:
            raise ValueError("keys must be appended in strictly ascending order")
        if self._block_first_key is None:
            self._block_first_key = key
        self._block += _encode_record(key, value)
        self._block_records += 1
        self._last_key = key
        self._entry_count += 1
        if len(self._block) >= self.config.block_size:
            self._flush_block()

    def _flush_block(self) -> None:
        if not self._block:
            return
        payload = self.context.encrypt_block(self._block_count, bytes(self._block))
        offset = self._file.tell()
        self._file.write(struct.pack(">I", len(payload)))
        self._file.write(payload)
        self._index.append(
            BlockIndexEntry(offset, len(payload) + 4, self._block_records, self._block_first_key)
        )
        self._block_count += 1
        self._block = bytearray()
        self._block_first_key = None
        self._block_records = 0

    def close(self) -> Path:
        """Write index, trailer and footer, verify the data key, then publish the file."""
        if self._aborted:
            raise StoreFileError(f"writer for {self.path} was aborted")
        if self._finished:
            return self.path
        try:
            self._flush_block()
            index_offset = self._file.tell()
            index = self.context.encrypt_block(self._block_count, _encode_index(self._index))
            self._file.write(index)
            trailer = self.context.to_trailer(self._block_count, self._entry_count).to_bytes()
            self._file.write(trailer)
            self._file.write(Footer(index_offset, len(index), len(trailer)).to_bytes())
            self._file.flush()
            os.fsync(self._file.fileno())
            self._file.close()
            # every published encrypted file must carry a resolvable data key
            self.context.verify(self.key_provider)
            os.replace(self.tmp_path, self.path)
        except BaseException:
            self.abort()
            raise
        self._finished = True
        logger.info(
            "Wrote store file %s (%d entries, %d blocks, %s)",
            self.path, self._entry_count, self._block_count,
            self.context.cipher.name if self.context.encrypted else "plaintext",
        )
        self.context.close()
        return self.path

    def abort(self) -> None:
        """Drop the partial file; nothing is published."""
        if self._finished:
            return
        self._finished = True
        self._aborted = True
        try:
            self._file.close()
        finally:
            self.context.close()
            if self.tmp_path.exists():
                self.tmp_path.unlink()
        logger.debug("Aborted store file %s", self.path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.abort()
        elif not self._aborted:
            self.close()


class StoreFileReader:
    """Reads one store file, decrypting blocks lazily.

    The trailer is read and the encryption context rebuilt when the reader is
    opened; blocks are only read and decrypted on demand and a few decoded
    blocks are kept per reader.
    """

    def __init__(
        self,
        path: str | Path,
        key_provider=None,
        config: Optional[EncryptionConfig] = None,
        cache_blocks: int = 8,
    ):
        self.path = Path(path)
        self.key_provider = key_provider
        self.cache_blocks = cache_blocks
        self._cache: "OrderedDict[int, List[Record]]" = OrderedDict()
        alternate = config.alternate_master_key_alias if config is not None else None
        try:
            self._file = open(self.path, "rb")
        except OSError as e:
            raise StoreFileError(f"cannot open {self.path}: {e}") from e
        try:
            header = self._file.read(HEADER_SIZE)
            if header[: len(FILE_MAGIC)] != FILE_MAGIC:
                raise StoreFileError(f"{self.path} is not a store file (magic mismatch)")
            if header[len(FILE_MAGIC):] != struct.pack("B", FORMAT_VERSION):
                raise StoreFileError(f"{self.path}: unsupported store file version")
            self.trailer, self._footer = read_trailer(self._file)
            self.encryption_context = EncryptionContext.for_read(
                self.trailer, key_provider, alternate_alias=alternate
            )
        except BaseException:
            self._file.close()
            raise
        try:
            self._index = self._load_index()
        except BaseException:
            self.close()
            raise
        self._first_keys = [entry.first_key for entry in self._index]
        logger.debug("Opened store file %s (%r)", self.path, self.encryption_context)

    def _load_index(self) -> List[BlockIndexEntry]:
        self._file.seek(self._footer.index_offset)
        raw = self._file.read(self._footer.index_length)
        if len(raw) != self._footer.index_length:
            raise StoreFileError("truncated block index")
        data = self.encryption_context.decrypt_block(self.trailer.block_count, raw)
        return _decode_index(data, self.trailer.block_count)

    @property
    def block_count(self) -> int:
        return self.trailer.block_count

    @property
    def entry_count(self) -> int:
        return self.trailer.entry_count

    @property
    def encrypted(self) -> bool:
        return self.encryption_context.encrypted

    def read_block(self, block_index: int) -> List[Record]:
        """Return the decoded records of one data block."""
        if self._file.closed:
            raise StoreFileError("reader is closed")
        cached = self._cache.get(block_index)
        if cached is not None:
            self._cache.move_to_end(block_index)
            return cached
        if not 0 <= block_index < len(self._index):
            raise IndexError(f"block {block_index} out of range")
        entry = self._index[block_index]
        self._file.seek(entry.offset)
        raw = self._file.read(entry.length)
        if len(raw) != entry.length:
            raise StoreFileError(f"truncated data block {block_index}")
        (payload_len,) = struct.unpack(">I", raw[:4])
        if payload_len != entry.length - 4:
            raise StoreFileError(f"data block {block_index} length mismatch")
        records = _decode_records(self.encryption_context.decrypt_block(block_index, raw[4:]))
        if len(records) != entry.record_count:
            raise StoreFileError(f"data block {block_index} record count mismatch")
        self._cache[block_index] = records
        if len(self._cache) > self.cache_blocks:
            self._cache.popitem(last=False)
        return records

    def scan(self) -> Iterator[Record]:
        for i in range(len(self._index)):
            yield from self.read_block(i)

    def get(self, key: bytes) -> Optional[Record]:
        """Point lookup; returns the record (possibly a delete marker) or None."""
        block = bisect.bisect_right(self._first_keys, key) - 1
        if block < 0:
            return None
        for record in self.read_block(block):
            if record.key == key:
                return record
            if record.key > key:
                break
        return None

    def close(self) -> None:
        self._cache.clear()
        self._file.close()
        self.encryption_context.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def write_store_file(path, records, config: EncryptionConfig, key_provider=None) -> Path:
    """Write sorted ``(key, value)`` pairs to a new store file."""
    with StoreFileWriter(path, config, key_provider) as writer:
        for key, value in records:
            writer.append(key, value)
    return writer.path
