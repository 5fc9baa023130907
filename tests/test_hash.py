"""
Tests for password verification, key derivation and the verifier record.
"""

import struct
from concurrent.futures import CancelledError, ThreadPoolExecutor

import pytest

from conftest import FAST_KDF
from mediavault.crypto.hash import KeyDerivationTask, create_verifier, derive_and_verify
from mediavault.crypto.secure import SecureBuffer
from mediavault.storage.vault import load_verifier, save_verifier
from mediavault.utils.dataModels import VERIFIER_FMT, VERIFIER_SIZE
from mediavault.utils.errors import AuthenticationFailure, UnsupportedFormat


def test_same_password_same_key_across_derivations():
    record, key = create_verifier("p@ss", **FAST_KDF)
    first = derive_and_verify("p@ss", record)
    second = derive_and_verify("p@ss", record)
    assert first.get_data() == second.get_data() == key.get_data()
    assert len(first) == 32


def test_altered_password_fails():
    record, _ = create_verifier("p@ss", **FAST_KDF)
    with pytest.raises(AuthenticationFailure):
        derive_and_verify("p@sS", record)
    with pytest.raises(AuthenticationFailure):
        derive_and_verify("p@s", record)


def test_verify_hash_differs_from_vault_key():
    record, key = create_verifier("p@ss", **FAST_KDF)
    assert bytes(record.hash) != key.get_data()[:len(record.hash)]


def test_secure_buffer_password_left_to_owner():
    pw = SecureBuffer.from_text("p@ss")
    record, _ = create_verifier(pw, **FAST_KDF)
    assert not pw.is_wiped()
    derive_and_verify(pw, record)
    assert not pw.is_wiped()


def test_discard_zeroes_record():
    record, _ = create_verifier("p@ss", **FAST_KDF)
    record.discard()
    assert record.salt == bytearray(16)
    assert record.hash == bytearray(32)


def test_verifier_record_round_trip(tmp_path):
    record, _ = create_verifier("p@ss", **FAST_KDF)
    path = tmp_path / ".mvault"
    save_verifier(path, record)
    assert path.stat().st_size == VERIFIER_SIZE
    loaded = load_verifier(path)
    assert (loaded.t_cost, loaded.m_cost_kib, loaded.parallelism) == (1, 1024, 1)
    assert loaded.salt == record.salt
    derive_and_verify("p@ss", loaded)


def test_unknown_magic_or_version_rejected(tmp_path):
    path = tmp_path / ".mvault"
    path.write_bytes(struct.pack(VERIFIER_FMT, b"XXXX", 1, 1, 1024, 1, bytes(16), bytes(32)))
    with pytest.raises(UnsupportedFormat):
        load_verifier(path)
    path.write_bytes(struct.pack(VERIFIER_FMT, b"MVV1", 9, 1, 1024, 1, bytes(16), bytes(32)))
    with pytest.raises(UnsupportedFormat):
        load_verifier(path)
    path.write_bytes(b"MVV1")
    with pytest.raises(UnsupportedFormat):
        load_verifier(path)


def test_key_derivation_task():
    record, key = create_verifier("p@ss", **FAST_KDF)
    with ThreadPoolExecutor(max_workers=1) as pool:
        task = KeyDerivationTask(pool, "p@ss", record)
        assert task.result(timeout=30).get_data() == key.get_data()
        bad = KeyDerivationTask(pool, "nope", record)
        with pytest.raises(AuthenticationFailure):
            bad.result(timeout=30)


def test_cancelled_task_never_releases_key():
    record, _ = create_verifier("p@ss", **FAST_KDF)
    with ThreadPoolExecutor(max_workers=1) as pool:
        task = KeyDerivationTask(pool, "p@ss", record)
        task.cancel()
        assert task.cancelled()
        with pytest.raises(CancelledError):
            task.result(timeout=30)
