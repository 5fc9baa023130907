"""Exception taxonomy shared by every vault component."""


class VaultError(Exception):
    """Base class for every error raised by the vault engine."""


class AuthenticationFailure(VaultError):
    """Wrong password or a failed authentication tag.

    Callers can't tell a wrong key from corrupted data.
    """

    def __init__(self, message: str = "authentication failed"):
        super().__init__(message)


class TamperedStream(AuthenticationFailure):
    """A content chunk failed verification."""

    def __init__(self, message: str = "stream failed authentication"):
        super().__init__(message)


class TruncatedStream(TamperedStream):
    """The stream ended before a final-tagged chunk was seen."""

    def __init__(self, message: str = "stream ended without a final chunk"):
        super().__init__(message)


class CorruptIndex(VaultError):
    """Index file exists but can't be decrypted or parsed after unlock."""


class NameCollision(VaultError):
    """A physical name is already in use."""


class EntryNotFound(VaultError, KeyError):
    """No index entry for the given physical name."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class UnsupportedFormat(VaultError):
    """Persisted record has an unknown magic or version."""


class InvalidState(RuntimeError):
    """Operation on a wiped buffer or a closed store."""


class InvalidFolderName(VaultError, ValueError):
    """A virtual folder path has a segment that can't be stored as a folder name."""
