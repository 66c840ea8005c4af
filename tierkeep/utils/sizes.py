"""Byte size parsing and formatting helpers."""

import re

_UNITS = {
    '': 1,
    'B': 1,
    'KB': 1024,
    'MB': 1024 ** 2,
    'GB': 1024 ** 3,
    'TB': 1024 ** 4
}
_SIZE_RE = re.compile(r'^\s*([0-9]*\.?[0-9]+)\s*([KMGT]?B)?\s*$', re.IGNORECASE)

GIB = 1024 ** 3


def parse_size(value: str) -> int:
    """
    Parse sizes like '125MB', '1.5GB', '512kb' or '42' into bytes.

    Raises:
        ValueError: If the string is not a size
    """
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid size value: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _UNITS[(unit or '').upper()])


def format_size(num_bytes: float) -> str:
    """Human readable size, e.g. 1536 -> '1.50 KB'."""
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if abs(size) < 1024:
            return f"{size:.2f} {unit}" if unit != 'B' else f"{int(size)} B"
        size /= 1024
    return f"{size:.2f} TB"


def to_gib(num_bytes: int) -> float:
    return num_bytes / GIB
