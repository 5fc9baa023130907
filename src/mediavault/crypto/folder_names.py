"""
Encrypted folder names.

Token layout::

    "mv1_" + base64url_nopad( nonce(12) || AES-256-GCM(padded_name) || tag(16) )

padded_name is ``len(1) || utf8 || zeros`` rounded up to a 64-byte block, so
token length reveals only which block count the name fell into. The prefix
is authenticated as associated data.
"""
import base64
import binascii
import re
import threading

from collections import OrderedDict
from typing import Optional

from mediavault.crypto.aead import aead_encrypt, aead_decrypt, derive_subkey, FOLDER_NAME_CONTEXT, NONCE_SIZE, TAG_SIZE
from mediavault.crypto.secure import SecureBuffer, wipe_bytearray
from mediavault.utils.dataModels import FOLDER_TOKEN_PREFIX, FOLDER_NAME_MAX_LENGTH, FOLDER_NAME_BLOCK
from mediavault.utils.errors import AuthenticationFailure

_AAD = FOLDER_TOKEN_PREFIX.encode("ascii")
_TOKEN_BODY_RE = re.compile(r"[A-Za-z0-9_-]+")
# utf-8 is at most 4 bytes per character, plus the length byte
_MAX_BLOCKS = -(-(1 + 4 * FOLDER_NAME_MAX_LENGTH) // FOLDER_NAME_BLOCK)


def _encoded_len(n: int) -> int:
    return (4 * n + 2) // 3


_VALID_BODY_LENGTHS = frozenset(
    _encoded_len(NONCE_SIZE + FOLDER_NAME_BLOCK * k + TAG_SIZE) for k in range(1, _MAX_BLOCKS + 1)
)


def _pad(raw: bytes) -> bytearray:
    total = -(-(1 + len(raw)) // FOLDER_NAME_BLOCK) * FOLDER_NAME_BLOCK
    out = bytearray(total)
    out[0] = len(raw)
    out[1:1 + len(raw)] = raw
    return out


def _unpad(padded: bytes) -> bytes:
    n = padded[0]
    if n == 0 or 1 + n > len(padded) or any(padded[1 + n:]):
        raise AuthenticationFailure()
    return padded[1:1 + n]


def encrypt_name(plain_name: str, vault_key: SecureBuffer) -> str:
    if plain_name is None or not plain_name.strip():
        raise ValueError("Folder name cannot be empty")
    name = plain_name.strip()
    if len(name) > FOLDER_NAME_MAX_LENGTH:
        raise ValueError(f"Folder name exceeds maximum length of {FOLDER_NAME_MAX_LENGTH} characters")
    if "/" in name:
        raise ValueError("Folder name cannot contain '/'")
    padded = _pad(name.encode("utf-8"))
    try:
        nonce, ct = aead_encrypt(derive_subkey(vault_key, FOLDER_NAME_CONTEXT), bytes(padded), _AAD)
    finally:
        wipe_bytearray(padded)
    body = base64.urlsafe_b64encode(nonce + ct).rstrip(b"=").decode("ascii")
    return FOLDER_TOKEN_PREFIX + body


def decrypt_name(token: str, vault_key: SecureBuffer) -> str:
    """Plaintext name, or AuthenticationFailure for a wrong key, a tampered token or a non-token."""
    if not looks_like_encrypted_folder(token):
        raise AuthenticationFailure()
    body = token[len(FOLDER_TOKEN_PREFIX):]
    try:
        raw = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    except (binascii.Error, ValueError):
        raise AuthenticationFailure() from None
    nonce, ct = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    padded = aead_decrypt(derive_subkey(vault_key, FOLDER_NAME_CONTEXT), nonce, ct, _AAD)
    try:
        return _unpad(padded).decode("utf-8")
    except UnicodeDecodeError:
        raise AuthenticationFailure() from None


def try_decrypt_name(token: str, vault_key: SecureBuffer) -> Optional[str]:
    try:
        return decrypt_name(token, vault_key)
    except AuthenticationFailure:
        return None


def looks_like_encrypted_folder(candidate: Optional[str]) -> bool:
    """Structural check only; no key needed."""
    if not candidate or not candidate.startswith(FOLDER_TOKEN_PREFIX):
        return False
    body = candidate[len(FOLDER_TOKEN_PREFIX):]
    return len(body) in _VALID_BODY_LENGTHS and bool(_TOKEN_BODY_RE.fullmatch(body))


class FolderNameCache:
    """Bounded LRU of token -> decrypted name, owned by one open vault."""

    MAX_CACHE_SIZE = 500

    def __init__(self, max_size: int = MAX_CACHE_SIZE):
        self._max_size = max_size
        self._cache: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, token: str) -> Optional[str]:
        with self._lock:
            name = self._cache.get(token)
            if name is not None:
                self._cache.move_to_end(token)
            return name

    def put(self, token: str, name: str) -> None:
        with self._lock:
            self._cache[token] = name
            self._cache.move_to_end(token)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)

    def remove(self, token: str) -> None:
        with self._lock:
            self._cache.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
