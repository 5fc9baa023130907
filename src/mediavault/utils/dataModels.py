import base64
import json
import struct
import time

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Any, Iterable, Optional

from mediavault.utils.errors import InvalidFolderName

# Argon2id defaults (tune per device); persisted per vault in the verifier record
DEFAULT_T_COST = 4
DEFAULT_M_COST_KiB = 262144  # 256 MiB
DEFAULT_PARALLELISM = 2

SALT_SIZE = 16
VERIFY_HASH_SIZE = 32
VAULT_KEY_SIZE = 32

VERIFIER_MAGIC = b"MVV1"
VERIFIER_VERSION = 1
VERIFIER_FMT = ">4sBIII16s32s"  # magic, ver, t, m, p, salt(16), hash(32)
VERIFIER_SIZE = struct.calcsize(VERIFIER_FMT)
VERIFIER_FILE_NAME = ".mvault"

# Content streams
STREAM_VERSION = 1
STREAM_CHUNK_SIZE = 64 * 1024
STREAM_MAX_CHUNK_SIZE = 4 * 1024 * 1024

# Folder name tokens
FOLDER_TOKEN_PREFIX = "mv1_"
FOLDER_NAME_MAX_LENGTH = 30
FOLDER_NAME_BLOCK = 64

# Physical names / index
PHYSICAL_NAME_LENGTH = 32
NAME_RETRIES = 8
INDEX_VERSION = 1
INDEX_AAD = b"mvault-index"
CONTENT_AAD = b"mvault-file"
CONTENT_KIND_FILE = "FILE"
METADATA_MAX_SIZE = 4 * 1024 * 1024


class FileType(IntEnum):
    DIRECTORY = 0
    IMAGE = 1
    GIF = 2
    VIDEO = 3
    TEXT = 4

    @classmethod
    def from_mime(cls, mime_type: Optional[str]) -> "FileType":
        if mime_type is None:
            return cls.IMAGE
        if mime_type == "image/gif":
            return cls.GIF
        if mime_type.startswith("image/"):
            return cls.IMAGE
        if mime_type.startswith("text/"):
            return cls.TEXT
        return cls.VIDEO

    @classmethod
    def from_code(cls, code: int) -> "FileType":
        ft = cls(int(code))
        if ft is cls.DIRECTORY:
            raise ValueError("directories are not index entries")
        return ft


def normalize_folder_path(path: Optional[str]) -> str:
    """``"/a//b/"`` -> ``"a/b"``, ``" a / b "`` -> ``"a/b"``; ``None`` and ``"/"`` -> root (``""``).

    Segments are stripped the same way folder names are before encryption,
    so a path always matches the names its token directories decrypt to.
    """
    if not path:
        return ""
    return "/".join(part.strip() for part in path.split("/") if part.strip())


def validate_folder_path(path: Optional[str]) -> str:
    """Normalized path, or InvalidFolderName if a segment is too long to encrypt."""
    folder = normalize_folder_path(path)
    for segment in filter(None, folder.split("/")):
        if len(segment) > FOLDER_NAME_MAX_LENGTH:
            raise InvalidFolderName(
                f"Folder name {segment!r} exceeds maximum length of {FOLDER_NAME_MAX_LENGTH} characters")
    return folder


class IndexEntry:
    """One file on disk. Identity is the physical name only."""

    __slots__ = ("file_name", "file_type", "folder_path")

    def __init__(self, file_name: str, file_type: FileType | int, folder_path: str = ""):
        self.file_name = file_name
        self.file_type = FileType(int(file_type))
        self.folder_path = folder_path or ""

    def is_in_root_folder(self) -> bool:
        return self.folder_path == ""

    def with_folder(self, folder_path: str) -> "IndexEntry":
        return IndexEntry(self.file_name, self.file_type, folder_path)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"t": int(self.file_type)}
        if self.folder_path:
            d["p"] = self.folder_path
        return d

    @staticmethod
    def from_dict(file_name: str, obj: Dict[str, Any]) -> "IndexEntry":
        return IndexEntry(file_name, FileType.from_code(obj["t"]), obj.get("p", ""))

    def __eq__(self, other) -> bool:
        if self is other:
            return True
        if not isinstance(other, IndexEntry):
            return NotImplemented
        return self.file_name == other.file_name

    def __hash__(self) -> int:
        return hash(self.file_name)

    def __repr__(self) -> str:
        return (f"IndexEntry(file_name={self.file_name!r}, file_type={self.file_type.name}, "
                f"folder_path={self.folder_path!r})")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class IndexDocument:
    version: int = INDEX_VERSION
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)
    entries: Dict[str, IndexEntry] = field(default_factory=dict)

    def to_bytes(self) -> bytes:
        obj = {
            "v": self.version,
            "c": self.created_at,
            "u": self.updated_at,
            "e": {name: entry.to_dict() for name, entry in self.entries.items()},
        }
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @staticmethod
    def from_bytes(b: bytes) -> "IndexDocument":
        obj = json.loads(b.decode("utf-8"))
        if not isinstance(obj, dict):
            raise ValueError("index document is not an object")
        version = obj.get("v", 1)
        if version > INDEX_VERSION:
            raise ValueError(f"Unsupported index version {version}")
        raw_entries = obj.get("e") or {}
        entries = {name: IndexEntry.from_dict(name, e) for name, e in raw_entries.items()}
        now = _now_ms()
        return IndexDocument(version=version, created_at=obj.get("c", now),
                             updated_at=obj.get("u", now), entries=entries)

    @staticmethod
    def of(entries: Iterable[IndexEntry], created_at: Optional[int] = None) -> "IndexDocument":
        doc = IndexDocument(entries={e.file_name: e for e in entries})
        if created_at is not None:
            doc.created_at = created_at
        return doc


@dataclass
class FileMetadata:
    """Encrypted block at the start of every content file's plaintext.

    Besides the FILE description it carries the optional NOTE (text) and
    THUMBNAIL (image bytes) sections; absent sections are left out of the
    encoding.
    """
    original_name: str
    file_type: FileType
    kind: str = CONTENT_KIND_FILE
    note: Optional[str] = None
    thumbnail: Optional[bytes] = None

    def to_bytes(self) -> bytes:
        obj: Dict[str, Any] = {"n": self.original_name, "t": int(self.file_type), "c": self.kind}
        if self.note:
            obj["o"] = self.note
        if self.thumbnail:
            obj["h"] = base64.b64encode(self.thumbnail).decode("ascii")
        body = json.dumps(obj, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        if len(body) > METADATA_MAX_SIZE:
            raise ValueError("note and thumbnail exceed the metadata size limit")
        return struct.pack(">I", len(body)) + body

    @staticmethod
    def from_dict(obj: Dict[str, Any]) -> "FileMetadata":
        thumbnail = obj.get("h")
        return FileMetadata(original_name=obj.get("n", ""), file_type=FileType.from_code(obj["t"]),
                            kind=obj.get("c", CONTENT_KIND_FILE), note=obj.get("o") or None,
                            thumbnail=base64.b64decode(thumbnail, validate=True) if thumbnail else None)
