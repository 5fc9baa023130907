"""
Tests for the chunked content cipher: round trips across chunk boundaries,
tamper detection anywhere in the stream, truncation and reordering.
"""

import io
import os

import pytest

from mediavault.crypto.stream import (
    A_BYTES, HEADER_BYTES, ciphertext_size, decrypt_bytes, decrypt_file, encrypt_bytes, encrypt_file,
    iter_decrypt, open_decrypting_stream, open_encrypting_stream, read_prefix,
)
from mediavault.utils.errors import InvalidState, TamperedStream, TruncatedStream

CHUNK = 32
AAD = b"mvault-file"


@pytest.mark.parametrize("length", [0, 1, CHUNK - 1, CHUNK, CHUNK + 1, 2 * CHUNK, 3 * CHUNK + 5])
def test_round_trip_across_chunk_boundaries(vault_key, length):
    data = os.urandom(length)
    blob = encrypt_bytes(vault_key, data, AAD, chunk_size=CHUNK)
    assert len(blob) == ciphertext_size(length, CHUNK)
    assert decrypt_bytes(vault_key, blob, AAD, chunk_size=CHUNK) == data


def test_round_trip_default_chunk_size(vault_key):
    data = os.urandom(200 * 1024)
    src, dst, out = io.BytesIO(data), io.BytesIO(), io.BytesIO()
    written = encrypt_file(vault_key, src, dst, AAD)
    assert written == len(dst.getvalue()) == ciphertext_size(len(data))
    dst.seek(0)
    assert decrypt_file(vault_key, dst, out, AAD) == len(data)
    assert out.getvalue() == data


def test_incremental_updates_match(vault_key):
    data = os.urandom(5 * CHUNK + 3)
    header, enc = open_encrypting_stream(vault_key, AAD, chunk_size=CHUNK)
    body = b"".join(enc.update(data[i:i + 7]) for i in range(0, len(data), 7)) + enc.finalize()
    dec = open_decrypting_stream(vault_key, header, AAD, chunk_size=CHUNK)
    plain = b"".join(dec.update(body[i:i + 11]) for i in range(0, len(body), 11)) + dec.finalize()
    assert plain == data


def test_every_single_byte_flip_fails(vault_key):
    data = os.urandom(2 * CHUNK + 10)
    blob = encrypt_bytes(vault_key, data, AAD, chunk_size=CHUNK)
    for i in range(len(blob)):
        tampered = bytearray(blob)
        tampered[i] ^= 0x01
        with pytest.raises(TamperedStream):
            decrypt_bytes(vault_key, bytes(tampered), AAD, chunk_size=CHUNK)


def test_no_plaintext_from_bad_chunk(vault_key):
    data = os.urandom(3 * CHUNK)
    blob = bytearray(encrypt_bytes(vault_key, data, AAD, chunk_size=CHUNK))
    # corrupt the second chunk
    blob[HEADER_BYTES + (CHUNK + A_BYTES) + 3] ^= 0xFF
    pieces = []
    with pytest.raises(TamperedStream):
        for piece in iter_decrypt(vault_key, io.BytesIO(bytes(blob)), AAD, chunk_size=CHUNK):
            pieces.append(piece)
    assert b"".join(pieces) == data[:CHUNK]


def test_decryptor_dead_after_failure(vault_key):
    header, enc = open_encrypting_stream(vault_key, AAD, chunk_size=CHUNK)
    body = bytearray(enc.update(os.urandom(3 * CHUNK)) + enc.finalize())
    body[0] ^= 1
    dec = open_decrypting_stream(vault_key, header, AAD, chunk_size=CHUNK)
    with pytest.raises(TamperedStream):
        dec.update(bytes(body))
    with pytest.raises(TamperedStream):
        dec.update(b"")
    with pytest.raises(TamperedStream):
        dec.finalize()


def test_truncation_on_chunk_boundary(vault_key):
    blob = encrypt_bytes(vault_key, os.urandom(3 * CHUNK), AAD, chunk_size=CHUNK)
    cut = blob[:HEADER_BYTES + 2 * (CHUNK + A_BYTES)]
    with pytest.raises(TruncatedStream):
        decrypt_bytes(vault_key, cut, AAD, chunk_size=CHUNK)


def test_truncation_to_header_only(vault_key):
    blob = encrypt_bytes(vault_key, b"hello", AAD, chunk_size=CHUNK)
    with pytest.raises(TruncatedStream):
        decrypt_bytes(vault_key, blob[:HEADER_BYTES], AAD, chunk_size=CHUNK)
    with pytest.raises(TruncatedStream):
        decrypt_bytes(vault_key, blob[:HEADER_BYTES - 1], AAD, chunk_size=CHUNK)


def test_appended_bytes_fail(vault_key):
    blob = encrypt_bytes(vault_key, os.urandom(CHUNK + 1), AAD, chunk_size=CHUNK)
    with pytest.raises(TamperedStream):
        decrypt_bytes(vault_key, blob + b"\x00" * 20, AAD, chunk_size=CHUNK)


def test_reordered_chunks_fail(vault_key):
    blob = encrypt_bytes(vault_key, os.urandom(3 * CHUNK + 1), AAD, chunk_size=CHUNK)
    size = CHUNK + A_BYTES
    header, body = blob[:HEADER_BYTES], blob[HEADER_BYTES:]
    swapped = header + body[size:2 * size] + body[:size] + body[2 * size:]
    with pytest.raises(TamperedStream):
        decrypt_bytes(vault_key, swapped, AAD, chunk_size=CHUNK)


def test_wrong_key_or_aad_fails(vault_key, other_key):
    blob = encrypt_bytes(vault_key, b"data", AAD)
    with pytest.raises(TamperedStream):
        decrypt_bytes(other_key, blob, AAD)
    with pytest.raises(TamperedStream):
        decrypt_bytes(vault_key, blob, b"mvault-index")


def test_splicing_between_files_fails(vault_key):
    a = encrypt_bytes(vault_key, os.urandom(CHUNK + 4), AAD, chunk_size=CHUNK)
    b = encrypt_bytes(vault_key, os.urandom(CHUNK + 4), AAD, chunk_size=CHUNK)
    with pytest.raises(TamperedStream):
        decrypt_bytes(vault_key, a[:HEADER_BYTES] + b[HEADER_BYTES:], AAD, chunk_size=CHUNK)


def test_encryptor_finished(vault_key):
    _, enc = open_encrypting_stream(vault_key, AAD)
    enc.finalize()
    with pytest.raises(InvalidState):
        enc.update(b"x")
    with pytest.raises(InvalidState):
        enc.finalize()


def test_invalid_chunk_size(vault_key):
    with pytest.raises(ValueError):
        open_encrypting_stream(vault_key, AAD, chunk_size=0)


def test_read_prefix(vault_key):
    data = os.urandom(4 * CHUNK)
    blob = encrypt_bytes(vault_key, data, AAD, chunk_size=CHUNK)
    assert read_prefix(vault_key, io.BytesIO(blob), 10, AAD, chunk_size=CHUNK) == data[:10]
    assert read_prefix(vault_key, io.BytesIO(blob), len(data) + 1, AAD, chunk_size=CHUNK) is None
