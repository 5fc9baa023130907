import threading
import weakref

from mediavault.utils.errors import InvalidState


class SecureBuffer:
    """Single owner of a mutable secret. ``live`` until ``wipe()``, then ``wiped`` forever."""

    __slots__ = ("_data", "_wiped", "_paranoid", "_lock", "__weakref__")

    def __init__(self, size: int = 0, paranoid: bool = False):
        if size < 0:
            raise ValueError("Size cannot be negative")
        self._data = bytearray(size)
        self._wiped = False
        self._paranoid = paranoid
        self._lock = threading.Lock()
        SecureMemoryRegistry.default().register(self)

    @classmethod
    def copy_of(cls, source, paranoid: bool = False) -> "SecureBuffer":
        """Take an independent copy of ``source``; later changes to either side don't leak."""
        buf = cls(len(source), paranoid=paranoid)
        buf._data[:] = source
        return buf

    @classmethod
    def from_text(cls, text: str) -> "SecureBuffer":
        raw = bytearray(text.encode("utf-8"))
        try:
            return cls.copy_of(raw)
        finally:
            raw[:] = bytes(len(raw))

    def _check(self) -> None:
        if self._wiped:
            raise InvalidState("SecureBuffer has been wiped")

    def length(self) -> int:
        return len(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def is_wiped(self) -> bool:
        return self._wiped

    def get_data(self) -> bytes:
        """Explicit copy of the contents. Never a view onto the backing store."""
        self._check()
        return bytes(self._data)

    def copy_to(self, dest: bytearray, src_offset: int, dst_offset: int, count: int) -> None:
        self._check()
        _check_range(len(self._data), src_offset, count)
        _check_range(len(dest), dst_offset, count)
        dest[dst_offset:dst_offset + count] = self._data[src_offset:src_offset + count]

    def copy_from(self, source, src_offset: int, dst_offset: int, count: int) -> None:
        self._check()
        _check_range(len(source), src_offset, count)
        _check_range(len(self._data), dst_offset, count)
        self._data[dst_offset:dst_offset + count] = source[src_offset:src_offset + count]

    def wipe(self) -> None:
        if self._wiped:
            return
        with self._lock:
            if self._wiped:
                return
            n = len(self._data)
            if self._paranoid:
                for pattern in (0xFF, 0xAA, 0x55):
                    self._data[:] = bytes([pattern]) * n
            # slice assignment of equal length writes into the same buffer
            self._data[:] = bytes(n)
            self._wiped = True
        SecureMemoryRegistry.default().unregister(self)

    def close(self) -> None:
        self.wipe()

    def __enter__(self) -> "SecureBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.wipe()

    def __del__(self):
        try:
            self.wipe()
        except Exception:
            pass

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else "live"
        return f"SecureBuffer(length={len(self._data)}, state={state})"


def _check_range(size: int, offset: int, count: int) -> None:
    if offset < 0 or count < 0 or offset + count > size:
        raise IndexError(f"range [{offset}, {offset + count}) outside buffer of length {size}")


def wipe_bytearray(data: bytearray | None) -> None:
    """Zero a plain bytearray in place (for short-lived scratch buffers)."""
    if data is not None:
        data[:] = bytes(len(data))


class SecureMemoryRegistry:
    """Tracks live SecureBuffers so a vault lock can wipe whatever is still around."""

    _default: "SecureMemoryRegistry | None" = None
    _default_lock = threading.Lock()

    def __init__(self):
        self._buffers: "weakref.WeakSet[SecureBuffer]" = weakref.WeakSet()
        self._lock = threading.Lock()

    @classmethod
    def default(cls) -> "SecureMemoryRegistry":
        if cls._default is None:
            with cls._default_lock:
                if cls._default is None:
                    cls._default = cls()
        return cls._default

    def register(self, buf: SecureBuffer) -> None:
        with self._lock:
            self._buffers.add(buf)

    def unregister(self, buf: SecureBuffer) -> None:
        with self._lock:
            self._buffers.discard(buf)

    def live_count(self) -> int:
        with self._lock:
            return len(self._buffers)

    def wipe_all(self) -> int:
        with self._lock:
            buffers = list(self._buffers)
        for buf in buffers:
            buf.wipe()
        return len(buffers)
