"""On-disk layout summary of a store file, for `sstcrypt inspect`.

Sections are taken from the footer, so no key material is needed. The digest
covers the bytes as stored (ciphertext for encrypted files) and is what an
external checksum layer would compare against.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import NamedTuple

from .exceptions import MalformedTrailer, StoreFileError
from .storefile import FILE_MAGIC, HEADER_SIZE
from .trailer import FOOTER_SIZE, TrailerRecord, read_trailer

CHUNK_SIZE = 65536  # 64KB


class StoreFileLayout(NamedTuple):
    size: int
    header: int
    data: int
    index: int
    trailer: int
    footer: int
    sha256: str
    record: TrailerRecord


def describe_store_file(path: str | Path) -> StoreFileLayout:
    """Read the footer and trailer of ``path`` and hash the whole file."""
    path = Path(path)
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        if f.read(len(FILE_MAGIC)) != FILE_MAGIC:
            raise StoreFileError(f"{path} is not a store file (magic mismatch)")
        record, footer = read_trailer(f)
        size = f.seek(0, os.SEEK_END)
        f.seek(0)
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            sha256.update(chunk)

    data = footer.index_offset - HEADER_SIZE
    if data < 0:
        raise MalformedTrailer("index offset points into the file header")
    if HEADER_SIZE + data + footer.index_length + footer.trailer_length + FOOTER_SIZE != size:
        raise MalformedTrailer("footer sections do not add up to the file size")
    return StoreFileLayout(
        size=size,
        header=HEADER_SIZE,
        data=data,
        index=footer.index_length,
        trailer=footer.trailer_length,
        footer=FOOTER_SIZE,
        sha256=sha256.hexdigest(),
        record=record,
    )
