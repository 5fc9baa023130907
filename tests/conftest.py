import os

import pytest

from mediavault.crypto.secure import SecureBuffer

# Argon2 parameters small enough for a test run
FAST_KDF = {"t_cost": 1, "m_cost_kib": 1024, "parallelism": 1}


@pytest.fixture
def vault_key():
    key = SecureBuffer.copy_of(os.urandom(32))
    yield key
    key.wipe()


@pytest.fixture
def other_key():
    key = SecureBuffer.copy_of(os.urandom(32))
    yield key
    key.wipe()


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    return path
