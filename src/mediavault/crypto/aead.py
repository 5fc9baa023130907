import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from typing import Tuple

from mediavault.crypto.secure import SecureBuffer
from mediavault.utils.dataModels import PHYSICAL_NAME_LENGTH
from mediavault.utils.errors import AuthenticationFailure
from mediavault.utils.helper import name_from_bytes

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

# HKDF contexts; one per purpose so the vault key is never used directly
FOLDER_NAME_CONTEXT = b"mvault-folder-names-v1"
CONTENT_CONTEXT = b"mvault-content-v1"
INDEX_NAME_CONTEXT = b"mvault-index-name-v1"


def aead_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> Tuple[bytes, bytes]:
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ct = aesgcm.encrypt(nonce, plaintext, aad)
    return nonce, ct


def aead_decrypt(key: bytes, nonce: bytes, ct: bytes, aad: bytes | None = None) -> bytes:
    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, ct, aad)
    except InvalidTag as e:
        raise AuthenticationFailure() from e


def hkdf(ikm: bytes, info: bytes, length: int = KEY_SIZE, salt: bytes | None = None) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(ikm)


def derive_subkey(vault_key: SecureBuffer, context: bytes, salt: bytes | None = None) -> bytes:
    """Domain-separated 32-byte subkey of the vault key."""
    return hkdf(vault_key.get_data(), context, KEY_SIZE, salt)


def derive_index_name(vault_key: SecureBuffer) -> str:
    """Deterministic per-vault index file name, shaped like any content file name.

    HMAC-SHA512 of a counter under a dedicated subkey; the output bytes are
    mapped to the alphanumeric alphabet with rejection sampling.
    """
    key = derive_subkey(vault_key, INDEX_NAME_CONTEXT)
    stream = bytearray()
    counter = 0
    while True:
        mac = hmac.HMAC(key, hashes.SHA512())
        mac.update(counter.to_bytes(4, "big"))
        stream += mac.finalize()
        try:
            return name_from_bytes(stream, PHYSICAL_NAME_LENGTH)
        except ValueError:
            counter += 1
