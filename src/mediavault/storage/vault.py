import logging
import os
import struct

from pathlib import Path
from typing import Iterable

from mediavault.crypto.hash import VerifierRecord
from mediavault.utils.dataModels import VERIFIER_FMT, VERIFIER_MAGIC, VERIFIER_VERSION, VERIFIER_SIZE
from mediavault.utils.errors import UnsupportedFormat

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


def _fsync_dir(path: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_atomic(path: Path, chunks: Iterable[bytes]) -> int:
    """Write to a sibling tmp file, fsync, then rename over ``path``.

    A crash at any point leaves either the old file or the new one, never a
    mix. If ``chunks`` raises, the tmp file is removed and ``path`` is untouched.
    """
    tmp = path.with_name(path.name + TMP_SUFFIX)
    written = 0
    try:
        with tmp.open("wb") as f:
            for chunk in chunks:
                f.write(chunk)
                written += len(chunk)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    _fsync_dir(path.parent)
    return written


def save_verifier(path: Path, record: VerifierRecord) -> None:
    data = struct.pack(VERIFIER_FMT, VERIFIER_MAGIC, record.version, record.t_cost,
                       record.m_cost_kib, record.parallelism, bytes(record.salt), bytes(record.hash))
    write_atomic(path, [data])


def load_verifier(path: Path) -> VerifierRecord:
    data = path.read_bytes()
    if len(data) != VERIFIER_SIZE:
        raise UnsupportedFormat("verifier record has the wrong size")
    magic, ver, t, m, p, salt, hash_ = struct.unpack(VERIFIER_FMT, data)
    if magic != VERIFIER_MAGIC:
        raise UnsupportedFormat("Invalid verifier magic")
    if ver != VERIFIER_VERSION:
        raise UnsupportedFormat(f"Unsupported verifier version {ver}")
    return VerifierRecord(salt=bytearray(salt), hash=bytearray(hash_), t_cost=t,
                          m_cost_kib=m, parallelism=p, version=ver)
