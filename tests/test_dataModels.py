import json

import pytest

from mediavault.utils.dataModels import (
    FileMetadata, FileType, IndexDocument, IndexEntry, normalize_folder_path, validate_folder_path,
)
from mediavault.utils.errors import InvalidFolderName, VaultError


def test_entry_identity_is_file_name_only():
    a = IndexEntry("n" * 32, FileType.IMAGE, "a/b")
    b = IndexEntry("n" * 32, FileType.VIDEO, "")
    c = IndexEntry("m" * 32, FileType.IMAGE, "a/b")
    assert a == b
    assert hash(a) == hash(b)
    assert a != c
    assert len({a, b, c}) == 2


def test_root_entry_serializes_without_path():
    entry = IndexEntry("n" * 32, FileType.GIF)
    assert entry.is_in_root_folder()
    assert entry.to_dict() == {"t": 2}


def test_missing_path_means_root():
    entry = IndexEntry.from_dict("n" * 32, {"t": 4})
    assert entry.folder_path == ""
    assert entry.is_in_root_folder()
    assert entry.file_type is FileType.TEXT


def test_nested_entry_keeps_path():
    entry = IndexEntry("n" * 32, FileType.VIDEO, "a/b")
    assert not entry.is_in_root_folder()
    assert entry.to_dict() == {"t": 3, "p": "a/b"}
    assert IndexEntry.from_dict(entry.file_name, entry.to_dict()).folder_path == "a/b"


def test_directory_code_rejected():
    with pytest.raises(ValueError):
        IndexEntry.from_dict("n" * 32, {"t": 0})


def test_from_mime():
    assert FileType.from_mime("image/gif") is FileType.GIF
    assert FileType.from_mime("image/png") is FileType.IMAGE
    assert FileType.from_mime("text/plain") is FileType.TEXT
    assert FileType.from_mime("video/mp4") is FileType.VIDEO
    assert FileType.from_mime(None) is FileType.IMAGE


@pytest.mark.parametrize("raw, expected", [
    (None, ""), ("", ""), ("/", ""), ("a", "a"), ("/a//b/", "a/b"), (" a/ b ", "a/b"),
    ("Trips /2024", "Trips/2024"), (" / x /", "x"),
])
def test_normalize_folder_path(raw, expected):
    assert normalize_folder_path(raw) == expected


def test_document_encoding():
    doc = IndexDocument.of([IndexEntry("n" * 32, FileType.IMAGE, "x")], created_at=5)
    obj = json.loads(doc.to_bytes())
    assert obj["v"] == 1
    assert obj["c"] == 5
    assert obj["e"] == {"n" * 32: {"t": 1, "p": "x"}}
    back = IndexDocument.from_bytes(doc.to_bytes())
    assert back.entries["n" * 32].folder_path == "x"
    assert back.created_at == 5


def test_document_rejects_future_version_and_non_object():
    with pytest.raises(ValueError):
        IndexDocument.from_bytes(b'{"v": 99, "e": {}}')
    with pytest.raises(ValueError):
        IndexDocument.from_bytes(b"[]")


def test_file_metadata_block():
    block = FileMetadata("photo.png", FileType.IMAGE).to_bytes()
    length = int.from_bytes(block[:4], "big")
    assert length == len(block) - 4
    meta = FileMetadata.from_dict(json.loads(block[4:]))
    assert meta == FileMetadata("photo.png", FileType.IMAGE, "FILE")


def test_validate_folder_path():
    assert validate_folder_path(" a / " + "b" * 30 + " ") == "a/" + "b" * 30
    with pytest.raises(InvalidFolderName) as exc:
        validate_folder_path("ok/" + "c" * 31)
    assert isinstance(exc.value, VaultError)


def test_file_metadata_note_and_thumbnail():
    meta = FileMetadata("clip.mp4", FileType.VIDEO, note="first day", thumbnail=b"\x89PNG\x00\x01")
    block = meta.to_bytes()
    obj = json.loads(block[4:])
    assert obj["o"] == "first day"
    back = FileMetadata.from_dict(obj)
    assert back.note == "first day"
    assert back.thumbnail == b"\x89PNG\x00\x01"


def test_file_metadata_without_sections_omits_them():
    obj = json.loads(FileMetadata("a.png", FileType.IMAGE, note="").to_bytes()[4:])
    assert "o" not in obj
    assert "h" not in obj
    back = FileMetadata.from_dict(obj)
    assert back.note is None
    assert back.thumbnail is None
