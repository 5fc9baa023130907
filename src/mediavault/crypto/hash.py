# master = Argon2id(SHA3-512(password), salt); verify hash and vault key are HKDF outputs of master
import logging
import os
import threading

from argon2.exceptions import HashingError
from argon2.low_level import hash_secret_raw, Type as Argon2Type
from concurrent.futures import Executor, Future, CancelledError
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.constant_time import bytes_eq
from dataclasses import dataclass
from typing import Tuple

from mediavault.crypto.aead import hkdf
from mediavault.crypto.secure import SecureBuffer, wipe_bytearray
from mediavault.utils.dataModels import (
    DEFAULT_T_COST, DEFAULT_M_COST_KiB, DEFAULT_PARALLELISM,
    SALT_SIZE, VERIFY_HASH_SIZE, VAULT_KEY_SIZE, VERIFIER_VERSION,
)
from mediavault.utils.errors import AuthenticationFailure

logger = logging.getLogger(__name__)

_VERIFY_CONTEXT = b"mvault-verify-v1"
_VAULT_KEY_CONTEXT = b"mvault-vault-key-v1"
_MASTER_SIZE = 32


def sha3_512_bytes(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA3_512(), backend=default_backend())
    digest.update(data)
    return digest.finalize()


@dataclass
class VerifierRecord:
    """Persisted (salt, hash) pair plus the Argon2 parameters that produced it."""
    salt: bytearray
    hash: bytearray
    t_cost: int = DEFAULT_T_COST
    m_cost_kib: int = DEFAULT_M_COST_KiB
    parallelism: int = DEFAULT_PARALLELISM
    version: int = VERIFIER_VERSION

    def discard(self) -> None:
        wipe_bytearray(self.salt)
        wipe_bytearray(self.hash)


def _as_buffer(password) -> Tuple[SecureBuffer, bool]:
    if isinstance(password, SecureBuffer):
        return password, False
    if isinstance(password, str):
        return SecureBuffer.from_text(password), True
    return SecureBuffer.copy_of(password), True


def derive_master(password: SecureBuffer, salt: bytes, t_cost: int, m_cost_kib: int,
                  parallelism: int) -> SecureBuffer:
    prehash = sha3_512_bytes(password.get_data())
    raw = hash_secret_raw(
        secret=prehash,
        salt=bytes(salt),
        time_cost=t_cost,
        memory_cost=m_cost_kib,
        parallelism=parallelism,
        hash_len=_MASTER_SIZE,
        type=Argon2Type.ID,
    )
    return SecureBuffer.copy_of(raw)


def _split(master: SecureBuffer) -> Tuple[bytearray, SecureBuffer]:
    ikm = master.get_data()
    verify_hash = bytearray(hkdf(ikm, _VERIFY_CONTEXT, VERIFY_HASH_SIZE))
    vault_key = SecureBuffer.copy_of(hkdf(ikm, _VAULT_KEY_CONTEXT, VAULT_KEY_SIZE))
    return verify_hash, vault_key


def create_verifier(password, t_cost: int = DEFAULT_T_COST, m_cost_kib: int = DEFAULT_M_COST_KiB,
                    parallelism: int = DEFAULT_PARALLELISM) -> Tuple[VerifierRecord, SecureBuffer]:
    """Fresh salt, verification hash and vault key for a new vault."""
    pw, owned = _as_buffer(password)
    master = None
    try:
        salt = bytearray(os.urandom(SALT_SIZE))
        master = derive_master(pw, salt, t_cost, m_cost_kib, parallelism)
        verify_hash, vault_key = _split(master)
        record = VerifierRecord(salt=salt, hash=verify_hash, t_cost=t_cost,
                                m_cost_kib=m_cost_kib, parallelism=parallelism)
        logger.debug("created verifier (t=%d, m=%d KiB, p=%d)", t_cost, m_cost_kib, parallelism)
        return record, vault_key
    finally:
        if master is not None:
            master.wipe()
        if owned:
            pw.wipe()


def derive_and_verify(password, record: VerifierRecord) -> SecureBuffer:
    pw, owned = _as_buffer(password)
    master = None
    verify_hash = None
    vault_key = None
    try:
        try:
            master = derive_master(pw, record.salt, record.t_cost, record.m_cost_kib, record.parallelism)
        except (HashingError, ValueError) as e:
            # a mangled record (bad salt length, absurd costs) looks like a wrong password
            logger.debug("derivation failed: %s", type(e).__name__)
            raise AuthenticationFailure() from None
        verify_hash, vault_key = _split(master)
        if not bytes_eq(bytes(verify_hash), bytes(record.hash)):
            raise AuthenticationFailure()
        result, vault_key = vault_key, None
        return result
    finally:
        wipe_bytearray(verify_hash)
        if vault_key is not None:
            vault_key.wipe()
        if master is not None:
            master.wipe()
        if owned:
            pw.wipe()


class KeyDerivationTask:
    """Runs ``derive_and_verify`` on an executor; a cancelled task wipes its result."""

    def __init__(self, executor: Executor, password, record: VerifierRecord):
        # take our own copy so the caller may wipe theirs straight away
        self._password, _ = _as_buffer(password)
        if self._password is password:
            self._password = SecureBuffer.copy_of(password.get_data())
        self._record = record
        self._cancelled = threading.Event()
        self._future: Future = executor.submit(self._run)

    def _run(self) -> SecureBuffer:
        try:
            if self._cancelled.is_set():
                raise CancelledError()
            key = derive_and_verify(self._password, self._record)
        finally:
            self._password.wipe()
        if self._cancelled.is_set():
            key.wipe()
            raise CancelledError()
        return key

    def cancel(self) -> None:
        self._cancelled.set()
        if self._future.cancel():
            self._password.wipe()
        self._future.add_done_callback(self._discard)

    @staticmethod
    def _discard(fut: Future) -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        fut.result().wipe()

    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def result(self, timeout: float | None = None) -> SecureBuffer:
        if self._cancelled.is_set():
            raise CancelledError()
        return self._future.result(timeout)
