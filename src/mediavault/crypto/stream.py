"""
Chunked authenticated encryption for file bodies of any size.

Construction (STREAM over AES-256-GCM)::

    header     = version(1) || salt(16) || nonce_prefix(7)            24 bytes
    file_key   = HKDF(content_subkey, salt=salt, info=CONTEXT || header)
    nonce_i    = nonce_prefix || i (u32 big-endian) || last (0x00 / 0x01)
    chunk_i    = AES-256-GCM(file_key, nonce_i, plaintext_i, aad)       len + 16

Every chunk is bound to its position and to whether it ends the stream, so
reordering, dropping, splicing between files, truncating and appending are
all detected. An empty body is a single final chunk of zero bytes.
"""
import logging
import os
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from typing import BinaryIO, Iterator, Optional, Tuple

from mediavault.crypto.aead import derive_subkey, hkdf, CONTENT_CONTEXT, KEY_SIZE, TAG_SIZE
from mediavault.crypto.secure import SecureBuffer
from mediavault.utils.dataModels import STREAM_VERSION, STREAM_CHUNK_SIZE, STREAM_MAX_CHUNK_SIZE
from mediavault.utils.errors import TamperedStream, TruncatedStream, InvalidState

logger = logging.getLogger(__name__)

SALT_BYTES = 16
PREFIX_BYTES = 7
HEADER_BYTES = 1 + SALT_BYTES + PREFIX_BYTES
A_BYTES = TAG_SIZE
_MAX_CHUNKS = 2 ** 32
_FILE_KEY_CONTEXT = b"mvault-stream-file-key-v1"


def _file_cipher(vault_key: SecureBuffer, header: bytes) -> AESGCM:
    salt = header[1:1 + SALT_BYTES]
    content_key = derive_subkey(vault_key, CONTENT_CONTEXT)
    return AESGCM(hkdf(content_key, _FILE_KEY_CONTEXT + header, KEY_SIZE, salt))


def _nonce(prefix: bytes, counter: int, last: bool) -> bytes:
    if counter >= _MAX_CHUNKS:
        raise OverflowError("stream too long")
    return prefix + struct.pack(">IB", counter, 1 if last else 0)


def _check_chunk_size(chunk_size: int) -> int:
    if chunk_size <= 0 or chunk_size > STREAM_MAX_CHUNK_SIZE:
        raise ValueError(f"chunk_size must be in (0, {STREAM_MAX_CHUNK_SIZE}]")
    return chunk_size


class StreamEncryptor:
    """Plaintext in, ciphertext out. ``finalize()`` emits the last (final-tagged) chunk."""

    def __init__(self, cipher: AESGCM, prefix: bytes, aad: bytes, chunk_size: int):
        self._cipher = cipher
        self._prefix = prefix
        self._aad = aad
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        self._counter = 0
        self._finished = False

    def update(self, data: bytes) -> bytes:
        if self._finished:
            raise InvalidState("Stream already finished")
        self._buffer += data
        out = bytearray()
        # hold back a full chunk until we know it isn't the last one
        while len(self._buffer) > self._chunk_size:
            out += self._seal(bytes(self._buffer[:self._chunk_size]), last=False)
            self._buffer[:self._chunk_size] = b""
        return bytes(out)

    def finalize(self) -> bytes:
        if self._finished:
            raise InvalidState("Stream already finished")
        out = self._seal(bytes(self._buffer), last=True)
        self._buffer[:] = bytes(len(self._buffer))
        self._buffer.clear()
        self._finished = True
        return out

    def _seal(self, plain: bytes, last: bool) -> bytes:
        ct = self._cipher.encrypt(_nonce(self._prefix, self._counter, last), plain, self._aad)
        self._counter += 1
        return ct


class StreamDecryptor:
    """Ciphertext in, plaintext out.

    A chunk's plaintext is released only after its tag verifies. After any
    failure the decryptor is dead: further calls raise and nothing else is
    emitted. Plaintext already returned for earlier chunks stays returned.
    """

    def __init__(self, cipher: AESGCM, prefix: bytes, aad: bytes, chunk_size: int):
        self._cipher = cipher
        self._prefix = prefix
        self._aad = aad
        self._cipher_chunk = chunk_size + A_BYTES
        self._buffer = bytearray()
        self._counter = 0
        self._finished = False
        self._failed = False

    def _check(self) -> None:
        if self._failed:
            raise TamperedStream()
        if self._finished:
            raise InvalidState("Stream already finished")

    def update(self, data: bytes) -> bytes:
        self._check()
        self._buffer += data
        out = bytearray()
        while len(self._buffer) > self._cipher_chunk:
            out += self._open(bytes(self._buffer[:self._cipher_chunk]), last=False)
            del self._buffer[:self._cipher_chunk]
        return bytes(out)

    def finalize(self) -> bytes:
        """Open the final chunk; raises TruncatedStream if none can be authenticated."""
        self._check()
        if len(self._buffer) < A_BYTES:
            self._failed = True
            raise TruncatedStream()
        try:
            out = self._open(bytes(self._buffer), last=True)
        except TamperedStream:
            # a stream cut on a chunk boundary fails here: its tail was never tagged final
            raise TruncatedStream() from None
        self._buffer.clear()
        self._finished = True
        return out

    def _open(self, chunk: bytes, last: bool) -> bytes:
        try:
            plain = self._cipher.decrypt(_nonce(self._prefix, self._counter, last), chunk, self._aad)
        except InvalidTag:
            self._failed = True
            self._buffer.clear()
            logger.debug("chunk %d failed authentication", self._counter)
            raise TamperedStream() from None
        self._counter += 1
        return plain


def open_encrypting_stream(vault_key: SecureBuffer, associated_data: bytes = b"",
                           chunk_size: int = STREAM_CHUNK_SIZE) -> Tuple[bytes, StreamEncryptor]:
    """Fresh random header plus an encryptor bound to it. Persist the header first."""
    chunk_size = _check_chunk_size(chunk_size)
    header = bytes([STREAM_VERSION]) + os.urandom(SALT_BYTES + PREFIX_BYTES)
    enc = StreamEncryptor(_file_cipher(vault_key, header), header[1 + SALT_BYTES:], associated_data, chunk_size)
    return header, enc


def open_decrypting_stream(vault_key: SecureBuffer, header: bytes, associated_data: bytes = b"",
                           chunk_size: int = STREAM_CHUNK_SIZE) -> StreamDecryptor:
    chunk_size = _check_chunk_size(chunk_size)
    if len(header) != HEADER_BYTES:
        raise TruncatedStream("stream header is incomplete")
    if header[0] != STREAM_VERSION:
        # an unknown version byte is indistinguishable from a flipped one
        raise TamperedStream()
    return StreamDecryptor(_file_cipher(vault_key, header), header[1 + SALT_BYTES:], associated_data, chunk_size)


def _read_exactly(src: BinaryIO, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        piece = src.read(n - len(buf))
        if not piece:
            break
        buf += piece
    return bytes(buf)


def encrypt_iter(vault_key: SecureBuffer, src: BinaryIO, associated_data: bytes = b"",
                 chunk_size: int = STREAM_CHUNK_SIZE, prefix_plaintext: bytes = b"") -> Iterator[bytes]:
    """Yield header then ciphertext for everything read from ``src``."""
    header, enc = open_encrypting_stream(vault_key, associated_data, chunk_size)
    yield header
    if prefix_plaintext:
        out = enc.update(prefix_plaintext)
        if out:
            yield out
    while True:
        piece = src.read(chunk_size)
        if not piece:
            break
        out = enc.update(piece)
        if out:
            yield out
    yield enc.finalize()


def iter_decrypt(vault_key: SecureBuffer, src: BinaryIO, associated_data: bytes = b"",
                 chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield verified plaintext pieces from a header+chunks source."""
    header = _read_exactly(src, HEADER_BYTES)
    dec = open_decrypting_stream(vault_key, header, associated_data, chunk_size)
    while True:
        piece = src.read(chunk_size + A_BYTES)
        if not piece:
            break
        out = dec.update(piece)
        if out:
            yield out
    out = dec.finalize()
    if out:
        yield out


def encrypt_file(vault_key: SecureBuffer, src: BinaryIO, dst: BinaryIO, associated_data: bytes = b"",
                 chunk_size: int = STREAM_CHUNK_SIZE) -> int:
    written = 0
    for piece in encrypt_iter(vault_key, src, associated_data, chunk_size):
        dst.write(piece)
        written += len(piece)
    return written


def decrypt_file(vault_key: SecureBuffer, src: BinaryIO, dst: BinaryIO, associated_data: bytes = b"",
                 chunk_size: int = STREAM_CHUNK_SIZE) -> int:
    written = 0
    for piece in iter_decrypt(vault_key, src, associated_data, chunk_size):
        dst.write(piece)
        written += len(piece)
    return written


def encrypt_bytes(vault_key: SecureBuffer, data: bytes, associated_data: bytes = b"",
                  chunk_size: int = STREAM_CHUNK_SIZE) -> bytes:
    header, enc = open_encrypting_stream(vault_key, associated_data, chunk_size)
    return header + enc.update(data) + enc.finalize()


def decrypt_bytes(vault_key: SecureBuffer, blob: bytes, associated_data: bytes = b"",
                  chunk_size: int = STREAM_CHUNK_SIZE) -> bytes:
    dec = open_decrypting_stream(vault_key, blob[:HEADER_BYTES], associated_data, chunk_size)
    return dec.update(blob[HEADER_BYTES:]) + dec.finalize()


def ciphertext_size(plaintext_size: int, chunk_size: int = STREAM_CHUNK_SIZE) -> int:
    """Bytes on disk for ``plaintext_size`` bytes of body."""
    chunks = max(1, -(-plaintext_size // chunk_size))
    return HEADER_BYTES + plaintext_size + chunks * A_BYTES


def read_prefix(vault_key: SecureBuffer, src: BinaryIO, n: int, associated_data: bytes = b"",
                chunk_size: int = STREAM_CHUNK_SIZE) -> Optional[bytes]:
    """First ``n`` verified plaintext bytes, decrypting only as many chunks as needed."""
    out = bytearray()
    for piece in iter_decrypt(vault_key, src, associated_data, chunk_size):
        out += piece
        if len(out) >= n:
            return bytes(out[:n])
    return None
