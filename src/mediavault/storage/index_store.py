"""
Encrypted index of a vault: physical name -> (file type, virtual folder path).

The index lives next to the content it describes under a name derived from
the vault key, so it can be found on every open without a lookup table and
looks like any other content file to someone without the key.

Mutations are serialized by one lock. Each mutation builds a new dict and
swaps the reference, so lock-free readers always see a complete snapshot.
"""
import enum
import logging
import threading

from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from mediavault.crypto.aead import derive_index_name
from mediavault.crypto.secure import SecureBuffer, wipe_bytearray
from mediavault.crypto.stream import open_encrypting_stream, decrypt_bytes
from mediavault.storage.vault import write_atomic
from mediavault.utils.dataModels import (
    FileType, IndexDocument, IndexEntry, INDEX_AAD, NAME_RETRIES, PHYSICAL_NAME_LENGTH,
    normalize_folder_path,
)
from mediavault.utils.errors import (
    AuthenticationFailure, CorruptIndex, EntryNotFound, InvalidState, NameCollision,
)
from mediavault.utils.helper import generate_name

logger = logging.getLogger(__name__)


class StoreState(enum.Enum):
    CLOSED = "closed"
    LOADING = "loading"
    READY = "ready"


class IndexStore:
    def __init__(self, name_generator: Callable[[int], str] = generate_name):
        self._lock = threading.RLock()
        self._state = StoreState.CLOSED
        self._entries: Dict[str, IndexEntry] = {}
        self._key: Optional[SecureBuffer] = None
        self._location: Optional[Path] = None
        self._index_name: Optional[str] = None
        self._created_at: Optional[int] = None
        self._dirty = False
        self._generate_name = name_generator

    # ---- lifecycle -------------------------------------------------------

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def index_name(self) -> str:
        self._require_ready()
        return self._index_name

    @property
    def index_path(self) -> Path:
        self._require_ready()
        return self._location / self._index_name

    def open(self, vault_key: SecureBuffer, location: Path, fresh: bool = False) -> "IndexStore":
        """Load the index for ``vault_key`` from ``location``.

        Missing file -> empty index (first run). Undecryptable or unparsable
        file -> CorruptIndex; the file is left on disk. ``fresh=True`` skips
        loading entirely, for an explicit rebuild.
        """
        with self._lock:
            if self._state is not StoreState.CLOSED:
                raise InvalidState("index store is already open")
            self._state = StoreState.LOADING
            try:
                self._key = SecureBuffer.copy_of(vault_key.get_data())
                self._location = Path(location)
                self._index_name = derive_index_name(self._key)
                path = self._location / self._index_name
                if fresh or not path.exists():
                    doc = IndexDocument()
                    logger.debug("index: starting empty (fresh=%s)", fresh)
                else:
                    doc = self._load(path)
                    logger.debug("index: loaded %d entries", len(doc.entries))
                self._entries = dict(doc.entries)
                self._created_at = doc.created_at
                self._dirty = bool(fresh)
                self._state = StoreState.READY
            except BaseException:
                self._reset()
                raise
        return self

    def _load(self, path: Path) -> IndexDocument:
        blob = path.read_bytes()
        try:
            plain = decrypt_bytes(self._key, blob, INDEX_AAD)
        except AuthenticationFailure as e:
            raise CorruptIndex("index file failed authentication") from e
        buf = bytearray(plain)
        try:
            return IndexDocument.from_bytes(bytes(buf))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise CorruptIndex("index file could not be parsed") from e
        finally:
            wipe_bytearray(buf)

    def close(self) -> None:
        with self._lock:
            if self._state is StoreState.CLOSED:
                return
            if self._dirty:
                logger.warning("index: closing with unsaved changes")
            self._reset()

    def _reset(self) -> None:
        if self._key is not None:
            self._key.wipe()
        self._key = None
        self._entries = {}
        self._location = None
        self._index_name = None
        self._created_at = None
        self._dirty = False
        self._state = StoreState.CLOSED

    def __enter__(self) -> "IndexStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_ready(self) -> None:
        if self._state is not StoreState.READY:
            raise InvalidState("index store is not open")

    # ---- reads (snapshot, no lock) ---------------------------------------

    def lookup(self, physical_name: str) -> Optional[IndexEntry]:
        self._require_ready()
        return self._entries.get(physical_name)

    def has_entry(self, physical_name: str) -> bool:
        self._require_ready()
        return physical_name in self._entries

    def list_by_folder(self, path: str) -> List[IndexEntry]:
        self._require_ready()
        folder = normalize_folder_path(path)
        return sorted((e for e in self._entries.values() if e.folder_path == folder),
                      key=lambda e: e.file_name)

    def entries_by_type(self, file_type: FileType) -> List[IndexEntry]:
        self._require_ready()
        return [e for e in self._entries.values() if e.file_type == file_type]

    def entries(self) -> List[IndexEntry]:
        self._require_ready()
        return list(self._entries.values())

    def folders(self) -> List[str]:
        self._require_ready()
        return sorted({e.folder_path for e in self._entries.values()})

    def __len__(self) -> int:
        self._require_ready()
        return len(self._entries)

    def __contains__(self, physical_name: str) -> bool:
        return self.has_entry(physical_name)

    def is_dirty(self) -> bool:
        return self._dirty

    # ---- writes (serialized) ---------------------------------------------

    def reserve_name(self, is_taken: Callable[[str], bool] = lambda name: False) -> str:
        """A fresh physical name not used by the index, the index file or ``is_taken``."""
        with self._lock:
            self._require_ready()
            for _ in range(NAME_RETRIES):
                name = self._generate_name(PHYSICAL_NAME_LENGTH)
                if name in self._entries or name == self._index_name or is_taken(name):
                    logger.debug("name collision, retrying")
                    continue
                return name
            raise NameCollision(f"no free physical name after {NAME_RETRIES} attempts")

    def add(self, entry: IndexEntry) -> None:
        with self._lock:
            self._require_ready()
            if entry.file_name in self._entries or entry.file_name == self._index_name:
                raise NameCollision(f"physical name already indexed: {entry.file_name}")
            entry = IndexEntry(entry.file_name, entry.file_type, normalize_folder_path(entry.folder_path))
            entries = dict(self._entries)
            entries[entry.file_name] = entry
            self._commit(entries)

    def remove(self, physical_name: str) -> bool:
        with self._lock:
            self._require_ready()
            if physical_name not in self._entries:
                return False
            entries = dict(self._entries)
            del entries[physical_name]
            self._commit(entries)
            return True

    def move(self, physical_name: str, new_folder_path: str) -> IndexEntry:
        with self._lock:
            self._require_ready()
            current = self._entries.get(physical_name)
            if current is None:
                raise EntryNotFound(f"no such entry: {physical_name}")
            moved = current.with_folder(normalize_folder_path(new_folder_path))
            entries = dict(self._entries)
            entries[physical_name] = moved
            self._commit(entries)
            return moved

    def replace_all(self, entries: Iterable[IndexEntry]) -> None:
        with self._lock:
            self._require_ready()
            fresh = {}
            for e in entries:
                if e.file_name == self._index_name:
                    continue
                fresh[e.file_name] = IndexEntry(e.file_name, e.file_type, normalize_folder_path(e.folder_path))
            self._commit(fresh)

    def _commit(self, entries: Dict[str, IndexEntry]) -> None:
        self._entries = entries
        self._dirty = True

    def persist(self) -> int:
        """Encrypt the whole index and atomically replace the file on disk."""
        with self._lock:
            self._require_ready()
            doc = IndexDocument.of(self._entries.values(), created_at=self._created_at)
            plain = bytearray(doc.to_bytes())
            try:
                header, enc = open_encrypting_stream(self._key, INDEX_AAD)
                blob = [header, enc.update(bytes(plain)), enc.finalize()]
            finally:
                wipe_bytearray(plain)
            written = write_atomic(self._location / self._index_name, blob)
            self._dirty = False
            logger.debug("index: persisted %d entries", len(doc.entries))
            return written

    def save_if_dirty(self) -> bool:
        with self._lock:
            self._require_ready()
            if not self._dirty:
                return False
            self.persist()
            return True
