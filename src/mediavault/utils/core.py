import argparse
import getpass
import io
import json
import logging
import mimetypes
import os
import struct
import sys
import threading

from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

from mediavault.crypto.folder_names import FolderNameCache, encrypt_name, looks_like_encrypted_folder, try_decrypt_name
from mediavault.crypto.hash import create_verifier, derive_and_verify
from mediavault.crypto.secure import SecureBuffer
from mediavault.crypto.stream import encrypt_iter, iter_decrypt
from mediavault.storage.index_store import IndexStore
from mediavault.storage.vault import load_verifier, save_verifier, write_atomic
from mediavault.utils.dataModels import (
    CONTENT_AAD, FileMetadata, FileType, IndexEntry, METADATA_MAX_SIZE, normalize_folder_path,
    validate_folder_path,
    DEFAULT_T_COST, DEFAULT_M_COST_KiB, DEFAULT_PARALLELISM,
)
from mediavault.utils.errors import EntryNotFound, InvalidState, TamperedStream, VaultError
from mediavault.utils.helper import bytes_to_readable, repo_paths

logger = logging.getLogger(__name__)

_META_LEN = struct.Struct(">I")
_MAX_META = METADATA_MAX_SIZE


def split_metadata(pieces: Iterator[bytes]) -> Tuple[FileMetadata, Iterator[bytes]]:
    """Peel the metadata block off a decrypted content stream."""
    buf = bytearray()
    need = None
    for piece in pieces:
        buf += piece
        if need is None and len(buf) >= _META_LEN.size:
            (n,) = _META_LEN.unpack_from(buf)
            if n > _MAX_META:
                raise TamperedStream("metadata block too large")
            need = _META_LEN.size + n
        if need is not None and len(buf) >= need:
            break
    if need is None or len(buf) < need:
        raise TamperedStream("content file has no metadata block")
    try:
        meta = FileMetadata.from_dict(json.loads(bytes(buf[_META_LEN.size:need]).decode("utf-8")))
    except (ValueError, KeyError, TypeError) as e:
        raise TamperedStream("unreadable metadata block") from e
    rest = bytes(buf[need:])

    def body() -> Iterator[bytes]:
        if rest:
            yield rest
        yield from pieces

    return meta, body()


class IterReader:
    """Minimal ``read()`` over an iterator of byte pieces."""

    def __init__(self, pieces: Iterator[bytes]):
        self._pieces = pieces
        self._buf = bytearray()

    def read(self, n: int = -1) -> bytes:
        while n < 0 or len(self._buf) < n:
            piece = next(self._pieces, None)
            if piece is None:
                break
            self._buf += piece
        if n < 0:
            n = len(self._buf)
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out


class VaultSession:
    """One unlocked vault. Owns the vault key and the IndexStore; wipes both on ``lock()``.

    Virtual folders are materialized as nested directories whose names are
    folder tokens; the index remains the source of truth for which folder an
    entry belongs to.
    """

    def __init__(self, repo: Path, vault_key: SecureBuffer, store: IndexStore):
        self.repo = Path(repo)
        self._key = vault_key
        self._store = store
        self._folder_names = FolderNameCache()
        self._lock = threading.RLock()

    @property
    def store(self) -> IndexStore:
        self._require_open()
        return self._store

    @property
    def vault_key(self) -> SecureBuffer:
        self._require_open()
        return self._key

    def is_locked(self) -> bool:
        return self._key.is_wiped()

    def _require_open(self) -> None:
        if self._key.is_wiped():
            raise InvalidState("vault is locked")

    def lock(self) -> None:
        with self._lock:
            self._store.close()
            self._key.wipe()
            self._folder_names.clear()

    def __enter__(self) -> "VaultSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.lock()

    # ---- folders ---------------------------------------------------------

    def _token_dirs(self, directory: Path) -> Dict[str, Path]:
        """Decrypted name -> directory for every vault folder directly under ``directory``."""
        found = {}
        if not directory.is_dir():
            return found
        for child in directory.iterdir():
            if not child.is_dir() or not looks_like_encrypted_folder(child.name):
                continue
            name = self._folder_names.get(child.name)
            if name is None:
                name = try_decrypt_name(child.name, self._key)
                if name is None:
                    continue
                self._folder_names.put(child.name, name)
            found.setdefault(name, child)
        return found

    def folder_dir(self, folder_path: str, create: bool = False) -> Optional[Path]:
        current = self.repo
        for segment in filter(None, normalize_folder_path(folder_path).split("/")):
            existing = self._token_dirs(current).get(segment)
            if existing is None:
                if not create:
                    return None
                token = encrypt_name(segment, self._key)
                existing = current / token
                existing.mkdir()
                self._folder_names.put(token, segment)
            current = existing
        return current

    def physical_path(self, entry: IndexEntry) -> Optional[Path]:
        directory = self.folder_dir(entry.folder_path)
        return None if directory is None else directory / entry.file_name

    # ---- queries ---------------------------------------------------------

    def list_folder(self, folder_path: str = "") -> List[IndexEntry]:
        self._require_open()
        return self._store.list_by_folder(folder_path)

    def subfolders(self, folder_path: str = "") -> List[str]:
        """Immediate child folder names of ``folder_path`` that hold indexed entries."""
        self._require_open()
        base = normalize_folder_path(folder_path)
        prefix = base + "/" if base else ""
        names = set()
        for folder in self._store.folders():
            if folder and folder.startswith(prefix) and folder != base:
                names.add(folder[len(prefix):].split("/", 1)[0])
        return sorted(names)

    def entries(self) -> List[IndexEntry]:
        self._require_open()
        return self._store.entries()

    def lookup(self, name: str) -> IndexEntry:
        self._require_open()
        entry = self._store.lookup(name)
        if entry is None:
            raise EntryNotFound(f"No such id: {name}")
        return entry

    # ---- content ---------------------------------------------------------

    def import_file(self, src: Path, file_type: Optional[FileType] = None, folder: str = "") -> IndexEntry:
        src = Path(src)
        if file_type is None:
            file_type = FileType.from_mime(mimetypes.guess_type(src.name)[0])
        with src.open("rb") as f:
            return self.import_stream(f, src.name, file_type, folder)

    def import_bytes(self, data: bytes, original_name: str, file_type: FileType, folder: str = "",
                     note: Optional[str] = None, thumbnail: Optional[bytes] = None) -> IndexEntry:
        return self.import_stream(io.BytesIO(data), original_name, file_type, folder, note, thumbnail)

    def import_stream(self, src: BinaryIO, original_name: str, file_type: FileType, folder: str = "",
                      note: Optional[str] = None, thumbnail: Optional[bytes] = None) -> IndexEntry:
        """Encrypt ``src`` under a fresh physical name, index it and persist the index."""
        file_type = FileType.from_code(file_type)
        with self._lock:
            self._require_open()
            folder = validate_folder_path(folder)
            target_dir = self.folder_dir(folder, create=True)
            name = self._store.reserve_name(lambda n: (target_dir / n).exists())
            path = target_dir / name
            meta = FileMetadata(original_name=original_name, file_type=file_type,
                                note=note, thumbnail=thumbnail).to_bytes()
            write_atomic(path, encrypt_iter(self._key, src, CONTENT_AAD, prefix_plaintext=meta))
            entry = IndexEntry(name, file_type, folder)
            added = False
            try:
                self._store.add(entry)
                added = True
                self._store.persist()
            except BaseException:
                if added:
                    self._store.remove(name)
                path.unlink(missing_ok=True)
                raise
            logger.info("imported %s into %s", name, folder or "/")
            return entry

    def _open_content(self, name: str) -> Tuple[IndexEntry, Path]:
        entry = self.lookup(name)
        path = self.physical_path(entry)
        if path is None or not path.is_file():
            raise EntryNotFound(f"content file missing for {name}")
        return entry, path

    def iter_content(self, name: str) -> Iterator[bytes]:
        """Verified plaintext of an entry, chunk by chunk."""
        _, path = self._open_content(name)
        with path.open("rb") as f:
            _, body = split_metadata(iter_decrypt(self._key, f, CONTENT_AAD))
            yield from body

    def read_metadata(self, name: str) -> FileMetadata:
        _, path = self._open_content(name)
        with path.open("rb") as f:
            meta, _ = split_metadata(iter_decrypt(self._key, f, CONTENT_AAD))
        return meta

    def read_note(self, name: str) -> Optional[str]:
        return self.read_metadata(name).note

    def read_thumbnail(self, name: str) -> Optional[bytes]:
        return self.read_metadata(name).thumbnail

    def set_note(self, name: str, note: Optional[str]) -> None:
        """Replace (or with ``None``/``""`` drop) an entry's note. The content file is re-encrypted."""
        with self._lock:
            _, path = self._open_content(name)
            with path.open("rb") as f:
                meta, body = split_metadata(iter_decrypt(self._key, f, CONTENT_AAD))
                meta.note = note or None
                write_atomic(path, encrypt_iter(self._key, IterReader(body), CONTENT_AAD,
                                                prefix_plaintext=meta.to_bytes()))
            logger.info("updated note of %s", name)

    def read_bytes(self, name: str) -> bytes:
        return b"".join(self.iter_content(name))

    def extract(self, name: str, out: Path) -> int:
        written = 0
        with Path(out).open("wb") as f:
            for piece in self.iter_content(name):
                f.write(piece)
                written += len(piece)
        return written

    def delete(self, name: str) -> None:
        with self._lock:
            entry = self.lookup(name)
            path = self.physical_path(entry)
            if path is not None:
                path.unlink(missing_ok=True)
            self._store.remove(name)
            self._store.persist()
            logger.info("deleted %s", name)

    def move(self, name: str, new_folder: str) -> IndexEntry:
        with self._lock:
            entry = self.lookup(name)
            new_folder = validate_folder_path(new_folder)
            if new_folder == entry.folder_path:
                return entry
            src = self.physical_path(entry)
            if src is None or not src.is_file():
                raise EntryNotFound(f"content file missing for {name}")
            dst = self.folder_dir(new_folder, create=True) / name
            if dst.exists():
                raise VaultError(f"destination already holds {name}")
            os.replace(src, dst)
            try:
                moved = self._store.move(name, new_folder)
                self._store.persist()
            except BaseException:
                os.replace(dst, src)
                self._store.move(name, entry.folder_path)
                raise
            logger.info("moved %s to %s", name, new_folder or "/")
            return moved


def init_vault(repo: Path, passphrase, t_cost: int = DEFAULT_T_COST, m_cost_kib: int = DEFAULT_M_COST_KiB,
               parallelism: int = DEFAULT_PARALLELISM, force: bool = False) -> None:
    repo = Path(repo)
    repo.mkdir(parents=True, exist_ok=True)
    p = repo_paths(repo)
    if p["verifier"].exists() and not force:
        raise VaultError(f"{p['verifier']} exists. Use --force to overwrite.")

    record, vault_key = create_verifier(passphrase, t_cost, m_cost_kib, parallelism)
    try:
        save_verifier(p["verifier"], record)
        with IndexStore().open(vault_key, repo, fresh=True) as store:
            store.persist()
    finally:
        record.discard()
        vault_key.wipe()


def unlock(repo: Path, passphrase, fresh_index: bool = False) -> VaultSession:
    """Verify the password, then load the index. Nothing is read from the index on a wrong password."""
    repo = Path(repo)
    p = repo_paths(repo)
    if not p["verifier"].is_file():
        raise VaultError(f"No vault at {repo}")
    record = load_verifier(p["verifier"])
    try:
        vault_key = derive_and_verify(passphrase, record)
    finally:
        record.discard()
    try:
        store = IndexStore().open(vault_key, repo, fresh=fresh_index)
    except BaseException:
        vault_key.wipe()
        raise
    return VaultSession(repo, vault_key, store)


def read_passphrase(args: argparse.Namespace, attr: str = "passphrase", prompt: str = "Passphrase: ") -> str:
    value = getattr(args, attr, None)
    return value if value is not None else getpass.getpass(prompt)


def cmd_init(args: argparse.Namespace) -> None:
    repo = Path(args.repo)
    init_vault(repo, read_passphrase(args), args.t, args.m, args.p, force=args.force)
    print(f"[+] Initialized vault at {repo}")


def cmd_add(args: argparse.Namespace) -> None:
    src = Path(args.path)
    if not src.is_file():
        print(f"[!] Not a file: {src}")
        sys.exit(1)
    file_type = FileType[args.type.upper()] if args.type else None
    with unlock(Path(args.repo), read_passphrase(args)) as session:
        entry = session.import_file(src, file_type, args.folder)
    print(f"[+] Encrypted and added {src.name} as id={entry.file_name}")


def cmd_ls(args: argparse.Namespace) -> None:
    with unlock(Path(args.repo), read_passphrase(args)) as session:
        entries = session.list_folder(args.folder) if args.folder is not None else session.entries()
        if not entries:
            print("(empty)")
            return
        for e in sorted(entries, key=lambda e: (e.folder_path, e.file_name)):
            size = session.physical_path(e)
            size = bytes_to_readable(size.stat().st_size) if size is not None and size.exists() else "missing"
            print(f"{e.file_name}\t{e.file_type.name}\t{size}\t/{e.folder_path}")


def cmd_extract(args: argparse.Namespace) -> None:
    out = Path(args.out)
    with unlock(Path(args.repo), read_passphrase(args)) as session:
        meta = session.read_metadata(args.id)
        session.extract(args.id, out)
    print(f"[+] Extracted {meta.original_name} -> {out}")
