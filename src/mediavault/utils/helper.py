import re
import secrets
import string

from decimal import Decimal, ROUND_HALF_EVEN
from pathlib import Path
from typing import Dict, Iterable

from mediavault.utils.dataModels import PHYSICAL_NAME_LENGTH, VERIFIER_FILE_NAME

NAME_ALPHABET = string.ascii_letters + string.digits
_PHYSICAL_NAME_RE = re.compile(r"[A-Za-z0-9]{%d}" % PHYSICAL_NAME_LENGTH)

_SIZE_UNITS = ("B", "kB", "MB")


def repo_paths(repo: Path) -> Dict[str, Path]:
    return {
        "root": repo,
        "verifier": repo / VERIFIER_FILE_NAME,
    }


def generate_name(length: int = PHYSICAL_NAME_LENGTH) -> str:
    """Uniform random alphanumeric name. No uniqueness guarantee beyond chance."""
    if length < 0:
        raise ValueError("length cannot be negative")
    return "".join(secrets.choice(NAME_ALPHABET) for _ in range(length))


def name_from_bytes(stream: Iterable[int], length: int = PHYSICAL_NAME_LENGTH) -> str:
    """Map pseudo-random bytes to an alphanumeric name without modulo bias.

    Bytes >= 248 are rejected (248 = 4 * 62). Raises ValueError if the
    stream runs dry before ``length`` characters are produced.
    """
    limit = 256 - (256 % len(NAME_ALPHABET))
    out = []
    for b in stream:
        if len(out) == length:
            break
        if b < limit:
            out.append(NAME_ALPHABET[b % len(NAME_ALPHABET)])
    if len(out) < length:
        raise ValueError("not enough bytes to build a name")
    return "".join(out)


def is_physical_name(name: str) -> bool:
    return bool(_PHYSICAL_NAME_RE.fullmatch(name))


def bytes_to_readable(size: int) -> str:
    """Decimal units, capped at MB: 999999 -> '1000.00 kB', 10**10 -> '10000.00 MB'."""
    value = Decimal(size)
    unit = 0
    while value >= 1000 and unit < len(_SIZE_UNITS) - 1:
        value /= 1000
        unit += 1
    value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN)
    return f"{value} {_SIZE_UNITS[unit]}"
