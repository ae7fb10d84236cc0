"""Trailer record and fixed-size footer of a store file.

Footer layout (last 20 bytes of the file, big-endian):
- 8 bytes: offset of the block index section
- 4 bytes: length of the block index section
- 4 bytes: length of the trailer record (which sits right before the footer)
- 4 bytes: magic b'SSTT'

Trailer record layout (big-endian):
- 1 byte: trailer version (1)
- 2 bytes: algorithm code (0 = no encryption)
- 2 bytes: len_alias + alias (utf-8)
- 2 bytes: len_wrapped + wrapped DEK
- 1 byte: len_seed + IV seed
- 4 bytes: data block count
- 8 bytes: entry count

A plaintext file carries algorithm code 0 and empty alias, wrapped key and
seed; anything else with code 0 is rejected.
"""
from __future__ import annotations

import io
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, Tuple

from .exceptions import MalformedTrailer


TRAILER_VERSION = 1
FOOTER_MAGIC = b"SSTT"
FOOTER_FORMAT = ">QII4s"
FOOTER_SIZE = struct.calcsize(FOOTER_FORMAT)
NO_ENCRYPTION = 0


def _read_exact(buf: io.BytesIO, n: int, what: str) -> bytes:
    data = buf.read(n)
    if len(data) != n:
        raise MalformedTrailer(f"truncated trailer while reading {what}")
    return data


@dataclass(frozen=True)
class TrailerRecord:
    algorithm_code: int
    master_key_alias: str = ""
    wrapped_key: bytes = b""
    iv_seed: bytes = b""
    block_count: int = 0
    entry_count: int = 0
    version: int = TRAILER_VERSION

    @property
    def encrypted(self) -> bool:
        return self.algorithm_code != NO_ENCRYPTION

    @classmethod
    def plaintext(cls, block_count: int = 0, entry_count: int = 0) -> "TrailerRecord":
        return cls(NO_ENCRYPTION, block_count=block_count, entry_count=entry_count)

    def validate(self) -> None:
        if self.version != TRAILER_VERSION:
            raise MalformedTrailer(f"unsupported trailer version {self.version}")
        if self.encrypted:
            if not self.master_key_alias:
                raise MalformedTrailer("encrypted trailer has no master key alias")
            if not self.wrapped_key:
                raise MalformedTrailer("encrypted trailer has no wrapped key")
        elif self.master_key_alias or self.wrapped_key or self.iv_seed:
            raise MalformedTrailer("plaintext trailer carries key material")

    def to_bytes(self) -> bytes:
        self.validate()
        alias = self.master_key_alias.encode("utf-8")
        out = bytearray()
        out += struct.pack(">BH", self.version, self.algorithm_code)
        out += struct.pack(">H", len(alias))
        out += alias
        out += struct.pack(">H", len(self.wrapped_key))
        out += self.wrapped_key
        out += struct.pack("B", len(self.iv_seed))
        out += self.iv_seed
        out += struct.pack(">IQ", self.block_count, self.entry_count)
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> "TrailerRecord":
        buf = io.BytesIO(data)
        (version,) = struct.unpack("B", _read_exact(buf, 1, "version"))
        if version != TRAILER_VERSION:
            raise MalformedTrailer(f"unsupported trailer version {version}")
        (code,) = struct.unpack(">H", _read_exact(buf, 2, "algorithm"))
        (alias_len,) = struct.unpack(">H", _read_exact(buf, 2, "alias length"))
        try:
            alias = _read_exact(buf, alias_len, "alias").decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedTrailer("master key alias is not valid utf-8") from e
        (wrapped_len,) = struct.unpack(">H", _read_exact(buf, 2, "wrapped key length"))
        wrapped = _read_exact(buf, wrapped_len, "wrapped key")
        (seed_len,) = struct.unpack("B", _read_exact(buf, 1, "seed length"))
        seed = _read_exact(buf, seed_len, "seed")
        block_count, entry_count = struct.unpack(">IQ", _read_exact(buf, 12, "counts"))
        if buf.read(1):
            raise MalformedTrailer("unexpected bytes after trailer record")
        record = cls(code, alias, wrapped, seed, block_count, entry_count, version)
        record.validate()
        return record


@dataclass(frozen=True)
class Footer:
    index_offset: int
    index_length: int
    trailer_length: int

    def to_bytes(self) -> bytes:
        return struct.pack(
            FOOTER_FORMAT, self.index_offset, self.index_length, self.trailer_length, FOOTER_MAGIC
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Footer":
        if len(data) != FOOTER_SIZE:
            raise MalformedTrailer("truncated footer")
        index_offset, index_length, trailer_length, magic = struct.unpack(FOOTER_FORMAT, data)
        if magic != FOOTER_MAGIC:
            raise MalformedTrailer("footer magic mismatch")
        return cls(index_offset, index_length, trailer_length)


def read_trailer(f: BinaryIO) -> Tuple[TrailerRecord, Footer]:
    """Read the footer and trailer record from the end of an open file."""
    f.seek(0, os.SEEK_END)
    size = f.tell()
    if size < FOOTER_SIZE:
        raise MalformedTrailer("file too small to hold a footer")
    f.seek(size - FOOTER_SIZE)
    footer = Footer.from_bytes(f.read(FOOTER_SIZE))
    trailer_start = size - FOOTER_SIZE - footer.trailer_length
    if trailer_start < 0 or footer.index_offset + footer.index_length > trailer_start:
        raise MalformedTrailer("footer offsets point outside the file")
    f.seek(trailer_start)
    trailer = TrailerRecord.from_bytes(f.read(footer.trailer_length))
    return trailer, footer
