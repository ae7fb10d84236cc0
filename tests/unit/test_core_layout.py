"""Unit tests for the store file layout summary."""

import hashlib
from pathlib import Path

import pytest

from sstcrypt.core import layout
from sstcrypt.core.config import EncryptionConfig
from sstcrypt.core.exceptions import MalformedTrailer, StoreFileError
from sstcrypt.core.storefile import write_store_file
from sstcrypt.core.trailer import FOOTER_SIZE
from sstcrypt.security.providers import MockAesKeyProvider


@pytest.fixture
def store_file(tmp_path: Path) -> Path:
    config = EncryptionConfig(master_key_alias="hbase", block_size=128)
    records = [(f"row-{i:04d}".encode(), b"v" * 40) for i in range(50)]
    return write_store_file(tmp_path / "f.sst", records, config, MockAesKeyProvider())


def test_sections_add_up_to_file_size(store_file: Path) -> None:
    info = layout.describe_store_file(store_file)
    assert info.size == store_file.stat().st_size
    assert info.header + info.data + info.index + info.trailer + info.footer == info.size
    assert info.footer == FOOTER_SIZE
    assert info.data > 0
    assert info.record.entry_count == 50


def test_digest_covers_stored_bytes(store_file: Path) -> None:
    info = layout.describe_store_file(store_file)
    assert info.sha256 == hashlib.sha256(store_file.read_bytes()).hexdigest()


def test_digest_spans_chunks(tmp_path: Path) -> None:
    """Files larger than one read chunk hash the same as hashing all bytes at once."""
    config = EncryptionConfig(master_key_alias="hbase")
    records = [(f"row-{i:06d}".encode(), b"x" * 100) for i in range(2000)]
    path = write_store_file(tmp_path / "big.sst", records, config, MockAesKeyProvider())
    assert path.stat().st_size > layout.CHUNK_SIZE * 2

    assert layout.describe_store_file(path).sha256 == hashlib.sha256(path.read_bytes()).hexdigest()


def test_plaintext_file(tmp_path: Path) -> None:
    path = write_store_file(
        tmp_path / "p.sst", [(b"a", b"1")], EncryptionConfig(enabled=False, master_key_alias="x")
    )
    info = layout.describe_store_file(path)
    assert not info.record.encrypted
    assert info.header + info.data + info.index + info.trailer + info.footer == info.size


def test_not_a_store_file(tmp_path: Path) -> None:
    path = tmp_path / "junk.sst"
    path.write_bytes(b"garbage" * 10)
    with pytest.raises(StoreFileError, match="magic"):
        layout.describe_store_file(path)


def test_extra_bytes_before_trailer_rejected(store_file: Path) -> None:
    data = store_file.read_bytes()
    info = layout.describe_store_file(store_file)
    trailer_start = info.size - info.footer - info.trailer
    # padding between index and trailer leaves the footer offsets short of the file size
    store_file.write_bytes(data[:trailer_start] + b"\x00" * 8 + data[trailer_start:])
    with pytest.raises(MalformedTrailer, match="add up"):
        layout.describe_store_file(store_file)
