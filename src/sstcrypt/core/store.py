"""
Store: one column family's memstore plus its immutable store files

Structure Map for reference:
==============================
 - <store_root>/
      - 00000001-<uuid>.sst
      - 00000002-<uuid>.sst
      - 00000003-<uuid>.sst.tmp   (in-flight write, removed on reopen)
==============================
For reference:
> Writes land in the memstore; flush() turns the memstore into a new store file
> compact() merges every store file into one new file and drops delete markers
> Every file written by flush or compact gets its own freshly generated data key
> The sequence prefix orders files from oldest to newest after a reopen

The store never keeps an EncryptionContext around: each flush, compaction or
lookup opens its own writer/reader session and closes it again.
"""

from __future__ import annotations

import heapq
import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .config import EncryptionConfig
from .exceptions import StoreFileError
from .storefile import TMP_SUFFIX, Record, StoreFileReader, StoreFileWriter

logger = logging.getLogger(__name__)

STOREFILE_SUFFIX = ".sst"


def _sequence_of(path: Path) -> int:
    head, _, _ = path.name.partition("-")
    try:
        return int(head)
    except ValueError:
        raise StoreFileError(f"unexpected store file name {path.name!r}") from None


class Store:
    """Memstore + store files with optional per-file encryption"""

    def __init__(
        self,
        root_path: str | Path,
        config: EncryptionConfig,
        key_provider=None,
        name: str = "cf",
    ):
        self.root = Path(root_path).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self.config = config
        self.key_provider = key_provider
        if key_provider is None and config.enabled:
            self.key_provider = config.build_key_provider()
        self.name = name
        self._memstore: Dict[bytes, Optional[bytes]] = {}
        self._snapshot: Dict[bytes, Optional[bytes]] = {}
        self._mem_lock = threading.Lock()
        # serializes flush/compaction against each other, not against reads of the memstore
        self._files_lock = threading.RLock()
        self._files: List[Path] = []
        self._load_existing()

    def _load_existing(self) -> None:
        for stale in self.root.glob(f"*{STOREFILE_SUFFIX}{TMP_SUFFIX}"):
            logger.warning("Removing incomplete store file %s", stale)
            stale.unlink()
        self._files = sorted(self.root.glob(f"*{STOREFILE_SUFFIX}"), key=_sequence_of)
        self._next_sequence = (_sequence_of(self._files[-1]) + 1) if self._files else 1

    def _new_path(self) -> Path:
        seq = self._next_sequence
        self._next_sequence += 1
        return self.root / f"{seq:08d}-{uuid.uuid4().hex}{STOREFILE_SUFFIX}"

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    def put(self, key: bytes, value: bytes) -> None:
        if value is None:
            raise ValueError("use delete() to remove a key")
        with self._mem_lock:
            self._memstore[bytes(key)] = bytes(value)

    def delete(self, key: bytes) -> None:
        with self._mem_lock:
            self._memstore[bytes(key)] = None

    def get(self, key: bytes) -> Optional[bytes]:
        """Newest value for ``key``: memstore, flushing snapshot, then newest file first."""
        with self._mem_lock:
            for table in (self._memstore, self._snapshot):
                if key in table:
                    return table[key]
        with self._files_lock:
            files = list(self._files)
        for path in reversed(files):
            with self.open_reader(path) as reader:
                record = reader.get(key)
            if record is not None:
                return record.value
        return None

    def open_reader(self, path: str | Path) -> StoreFileReader:
        return StoreFileReader(path, self.key_provider, self.config)

    def storefile_paths(self) -> List[Path]:
        with self._files_lock:
            return list(self._files)

    @property
    def memstore_size(self) -> int:
        with self._mem_lock:
            return len(self._memstore)

    # ------------------------------------------------------------------
    # Flush / compaction
    # ------------------------------------------------------------------

    def flush(self) -> Optional[Path]:
        """Write the memstore to a new store file; returns its path or None if empty."""
        with self._files_lock:
            with self._mem_lock:
                if not self._memstore:
                    return None
                self._snapshot = self._memstore
                self._memstore = {}
            path = self._new_path()
            try:
                with StoreFileWriter(path, self.config, self.key_provider) as writer:
                    for key in sorted(self._snapshot):
                        writer.append(key, self._snapshot[key])
            except BaseException:
                # put the edits back so nothing is lost; newer writes win
                with self._mem_lock:
                    self._snapshot.update(self._memstore)
                    self._memstore = self._snapshot
                    self._snapshot = {}
                raise
            self._files.append(path)
            with self._mem_lock:
                self._snapshot = {}
        logger.info("Flushed store %s to %s", self.name, path.name)
        return path

    @staticmethod
    def _tagged(seq: int, reader: StoreFileReader) -> Iterator[Tuple[bytes, int, Record]]:
        for record in reader.scan():
            yield record.key, -seq, record

    def _merged(self, readers: List[Tuple[int, StoreFileReader]]) -> Iterator[Record]:
        # newest file wins for equal keys: order by (key, -sequence)
        streams = [self._tagged(seq, reader) for seq, reader in readers]
        last_key = None
        for key, _, record in heapq.merge(*streams, key=lambda item: (item[0], item[1])):
            if key == last_key:
                continue
            last_key = key
            yield record

    def compact(self) -> Optional[Path]:
        """Merge all store files into one new file, dropping delete markers."""
        with self._files_lock:
            inputs = list(self._files)
            if not inputs:
                return None
            path = self._new_path()
            readers: List[Tuple[int, StoreFileReader]] = []
            try:
                for p in inputs:
                    readers.append((_sequence_of(p), self.open_reader(p)))
                with StoreFileWriter(path, self.config, self.key_provider) as writer:
                    for record in self._merged(readers):
                        if not record.deleted:
                            writer.append(record.key, record.value)
            finally:
                for _, reader in readers:
                    reader.close()
            self._files = [path]
            for p in inputs:
                p.unlink()
        logger.info("Compacted %d store file(s) of %s into %s", len(inputs), self.name, path.name)
        return path

    def close(self) -> None:
        """Flush pending edits."""
        self.flush()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
