import argparse
import logging

from pathlib import Path
from typing import Iterator, List, Tuple

from mediavault.crypto.folder_names import encrypt_name, looks_like_encrypted_folder, try_decrypt_name
from mediavault.crypto.hash import create_verifier
from mediavault.crypto.secure import SecureBuffer
from mediavault.crypto.stream import encrypt_iter, iter_decrypt
from mediavault.storage.index_store import IndexStore
from mediavault.storage.vault import load_verifier, save_verifier, write_atomic, TMP_SUFFIX
from mediavault.utils.core import IterReader, VaultSession, read_passphrase, split_metadata, unlock
from mediavault.utils.dataModels import CONTENT_AAD, IndexEntry
from mediavault.utils.errors import AuthenticationFailure, EntryNotFound, VaultError
from mediavault.utils.helper import is_physical_name, repo_paths

logger = logging.getLogger(__name__)

REKEY_SUFFIX = ".rekey"


def walk_vault(root: Path, vault_key: SecureBuffer) -> Iterator[Tuple[str, Path]]:
    """(virtual folder path, file) for every physical-name file under readable vault folders."""
    stack: List[Tuple[Path, str]] = [(root, "")]
    while stack:
        directory, folder = stack.pop()
        for child in sorted(directory.iterdir()):
            if child.is_dir():
                if not looks_like_encrypted_folder(child.name):
                    continue
                name = try_decrypt_name(child.name, vault_key)
                if name is None:
                    logger.debug("skipping folder that does not belong to this vault")
                    continue
                stack.append((child, f"{folder}/{name}" if folder else name))
            elif is_physical_name(child.name):
                yield folder, child


def rebuild_index(session: VaultSession) -> int:
    """Recreate the index from what is on disk. The recovery path for CorruptIndex.

    Each content file's encrypted metadata supplies its type; its location
    in the folder tree supplies its virtual folder path. Files that fail to
    authenticate (other vaults, damage) are left alone and not indexed.
    """
    store = session.store
    key = session.vault_key
    found = []
    skipped = 0
    for folder, path in walk_vault(session.repo, key):
        if path.name == store.index_name:
            continue
        try:
            with path.open("rb") as f:
                meta, _ = split_metadata(iter_decrypt(key, f, CONTENT_AAD))
        except (AuthenticationFailure, ValueError) as e:
            skipped += 1
            logger.warning("rebuild: skipping unreadable file (%s)", type(e).__name__)
            continue
        found.append(IndexEntry(path.name, meta.file_type, folder))
    store.replace_all(found)
    store.persist()
    logger.info("rebuild: indexed %d files, skipped %d", len(found), skipped)
    return len(found)


def change_password(repo: Path, old_passphrase, new_passphrase, t_cost: int = None,
                    m_cost_kib: int = None, parallelism: int = None) -> int:
    """Re-derive from a new password and re-encrypt everything under the new key.

    Phase one stages re-encrypted copies next to the originals and can be
    abandoned at any point. Phase two swaps them in, renames folders, writes
    the new index and finally the new verifier. Returns the number of files.
    """
    repo = Path(repo)
    p = repo_paths(repo)
    old = load_verifier(p["verifier"])
    t_cost = old.t_cost if t_cost is None else t_cost
    m_cost_kib = old.m_cost_kib if m_cost_kib is None else m_cost_kib
    parallelism = old.parallelism if parallelism is None else parallelism
    old.discard()

    staged: List[Tuple[Path, Path]] = []
    with unlock(repo, old_passphrase) as session:
        new_record, new_key = create_verifier(new_passphrase, t_cost, m_cost_kib, parallelism)
        try:
            entries = session.entries()
            old_index = session.store.index_path
            try:
                for entry in entries:
                    src = session.physical_path(entry)
                    if src is None or not src.is_file():
                        raise EntryNotFound(f"content file missing for {entry.file_name}; "
                                            "run rebuild-index before changing the password")
                    dst = src.with_name(src.name + REKEY_SUFFIX)
                    with src.open("rb") as f:
                        write_atomic(dst, _reencrypt(session.vault_key, new_key, f))
                    staged.append((dst, src))
            except BaseException:
                for dst, _ in staged:
                    dst.unlink(missing_ok=True)
                raise

            for dst, src in staged:
                dst.replace(src)
            _rename_folders(repo, session.vault_key, new_key)
            with IndexStore().open(new_key, repo, fresh=True) as store:
                store.replace_all(entries)
                store.persist()
                new_index = store.index_path
            save_verifier(p["verifier"], new_record)
            if old_index != new_index:
                old_index.unlink(missing_ok=True)
        finally:
            new_record.discard()
            new_key.wipe()
    logger.info("change-password: re-encrypted %d files", len(staged))
    return len(staged)


def _reencrypt(old_key: SecureBuffer, new_key: SecureBuffer, src) -> Iterator[bytes]:
    plain = IterReader(iter_decrypt(old_key, src, CONTENT_AAD))
    yield from encrypt_iter(new_key, plain, CONTENT_AAD)


def _rename_folders(root: Path, old_key: SecureBuffer, new_key: SecureBuffer) -> None:
    found: List[Tuple[int, Path, str]] = []
    stack = [(root, 0)]
    while stack:
        directory, depth = stack.pop()
        for child in directory.iterdir():
            if child.is_dir() and looks_like_encrypted_folder(child.name):
                name = try_decrypt_name(child.name, old_key)
                if name is not None:
                    found.append((depth, child, name))
                    stack.append((child, depth + 1))
    # deepest first, so parent paths stay valid while children are renamed
    for _, path, name in sorted(found, key=lambda item: item[0], reverse=True):
        path.rename(path.with_name(encrypt_name(name, new_key)))


def clean_stale_files(repo: Path) -> int:
    """Remove leftover tmp/rekey files from interrupted writes."""
    removed = 0
    for path in Path(repo).rglob("*"):
        if path.is_file() and path.name.endswith((TMP_SUFFIX, REKEY_SUFFIX)):
            path.unlink()
            removed += 1
    return removed


def cmd_rm(args: argparse.Namespace) -> None:
    with unlock(Path(args.repo), read_passphrase(args)) as session:
        session.delete(args.id)
    print(f"[+] Removed id={args.id}")


def cmd_mv(args: argparse.Namespace) -> None:
    with unlock(Path(args.repo), read_passphrase(args)) as session:
        session.move(args.id, args.folder)
    print(f"[+] Moved id={args.id} -> /{args.folder.strip('/')}")


def cmd_rebuild(args: argparse.Namespace) -> None:
    repo = Path(args.repo)
    with unlock(repo, read_passphrase(args), fresh_index=True) as session:
        count = rebuild_index(session)
    removed = clean_stale_files(repo)
    print(f"[+] Rebuilt index with {count} files ({removed} stale files removed)")


def cmd_change_password(args: argparse.Namespace) -> None:
    old = read_passphrase(args)
    new = read_passphrase(args, "new_passphrase", "New passphrase: ")
    if not new:
        raise VaultError("New passphrase cannot be empty")
    count = change_password(Path(args.repo), old, new, args.t, args.m, args.p)
    print(f"[+] Password changed; re-encrypted {count} files.")
