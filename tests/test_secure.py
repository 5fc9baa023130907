"""
Tests for SecureBuffer and the registry of live secrets.
"""

import pytest

from mediavault.crypto.secure import SecureBuffer, SecureMemoryRegistry, wipe_bytearray
from mediavault.utils.errors import InvalidState


def test_copy_of_is_independent():
    source = bytearray(b"secret")
    buf = SecureBuffer.copy_of(source)
    source[0] = 0
    assert buf.get_data() == b"secret"
    data = buf.get_data()
    assert isinstance(data, bytes)
    assert len(buf) == buf.length() == 6


def test_wipe_zeroes_and_blocks_access():
    buf = SecureBuffer.copy_of(b"\x01\x02\x03")
    backing = buf._data
    buf.wipe()
    assert buf.is_wiped()
    assert backing == bytearray(3)
    with pytest.raises(InvalidState):
        buf.get_data()
    with pytest.raises(InvalidState):
        buf.copy_to(bytearray(3), 0, 0, 1)


def test_wipe_is_idempotent():
    buf = SecureBuffer.from_text("pw")
    buf.wipe()
    buf.wipe()
    assert buf.is_wiped()


def test_paranoid_wipe_ends_zeroed():
    buf = SecureBuffer.copy_of(b"abcdef", paranoid=True)
    backing = buf._data
    buf.wipe()
    assert backing == bytearray(6)


def test_context_manager_wipes():
    with SecureBuffer.from_text("héllo") as buf:
        assert buf.get_data() == "héllo".encode("utf-8")
    assert buf.is_wiped()


def test_copy_to_and_from_bounds():
    buf = SecureBuffer(4)
    buf.copy_from(b"abcd", 1, 0, 3)
    assert buf.get_data() == b"bcd\x00"
    dest = bytearray(2)
    buf.copy_to(dest, 1, 0, 2)
    assert dest == bytearray(b"cd")
    with pytest.raises(IndexError):
        buf.copy_to(dest, 3, 0, 2)
    with pytest.raises(IndexError):
        buf.copy_from(b"ab", 0, 3, 2)
    with pytest.raises(IndexError):
        buf.copy_from(b"ab", -1, 0, 1)


def test_negative_size_rejected():
    with pytest.raises(ValueError):
        SecureBuffer(-1)


def test_zero_length_buffer():
    buf = SecureBuffer(0)
    assert buf.get_data() == b""
    buf.wipe()
    assert buf.is_wiped()


def test_registry_tracks_and_wipes():
    registry = SecureMemoryRegistry.default()
    buf = SecureBuffer.copy_of(b"k" * 32)
    assert registry.live_count() >= 1
    registry.wipe_all()
    assert buf.is_wiped()


def test_repr_hides_contents():
    buf = SecureBuffer.copy_of(b"topsecret")
    assert "topsecret" not in repr(buf)
    assert "live" in repr(buf)
    buf.wipe()
    assert "wiped" in repr(buf)


def test_wipe_bytearray():
    data = bytearray(b"xyz")
    wipe_bytearray(data)
    assert data == bytearray(3)
    wipe_bytearray(None)
