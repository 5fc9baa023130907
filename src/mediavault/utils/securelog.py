"""Logging setup that keeps physical names and folder tokens out of log output."""
import logging
import os
import re

from mediavault.utils.dataModels import FOLDER_TOKEN_PREFIX, PHYSICAL_NAME_LENGTH

SENSITIVE_ENV = "MVAULT_LOG_SENSITIVE"

_PATTERNS = [
    re.compile(re.escape(FOLDER_TOKEN_PREFIX) + r"[A-Za-z0-9_-]+"),
    re.compile(r"(?<![A-Za-z0-9])[A-Za-z0-9]{%d}(?![A-Za-z0-9])" % PHYSICAL_NAME_LENGTH),
]
REDACTED = "<redacted>"


def redact(text: str) -> str:
    for pattern in _PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


class RedactingFilter(logging.Filter):
    """Masks vault identifiers in records unless MVAULT_LOG_SENSITIVE=1."""

    def filter(self, record: logging.LogRecord) -> bool:
        if os.environ.get(SENSITIVE_ENV) == "1":
            return True
        record.msg = redact(record.getMessage())
        record.args = None
        return True


def configure_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(RedactingFilter())
    root = logging.getLogger("mediavault")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False
