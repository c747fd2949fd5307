"""Resource limit parsing and validation.

Memory and storage accept plain megabytes (`512`) or quantities with binary or
decimal suffixes (`512Mi`, `1Gi`, `2048M`). CPU accepts cores (`0.5`, `2`) or
millicores (`500m`).
"""

import re

from .errors import ValidationError

MEMORY_MIN_MB = 64
MEMORY_MAX_MB = 32 * 1024
CPU_MIN_CORES = 0.01
CPU_MAX_CORES = 16.0
STORAGE_MIN_MB = 100
STORAGE_MAX_MB = 1000 * 1024

_BYTES_PER_MB = 1024 * 1024

_UNIT_BYTES: dict[str, int] = {
    "": _BYTES_PER_MB,
    "K": 1000,
    "KI": 1024,
    "M": 1000**2,
    "MI": 1024**2,
    "G": 1000**3,
    "GI": 1024**3,
    "T": 1000**4,
    "TI": 1024**4,
}

_QUANTITY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]i?)?B?\s*$", re.IGNORECASE)
_CPU_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(m)?\s*$")


def parse_size_mb(value: str | int | float, field: str = "memory") -> int:
    """Parse a size quantity into whole megabytes (MiB)."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field} value: {value!r}", field=field)
    if isinstance(value, int | float):
        return int(value)

    match = _QUANTITY_RE.match(value)
    if not match:
        raise ValidationError(f"Invalid {field} value: {value!r}", field=field)
    number, unit = match.groups()
    multiplier = _UNIT_BYTES[(unit or "").upper()]
    return int(float(number) * multiplier / _BYTES_PER_MB)


def parse_cpu(value: str | int | float) -> float:
    """Parse a CPU quantity into cores."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid cpu value: {value!r}", field="cpu")
    if isinstance(value, int | float):
        return float(value)

    match = _CPU_RE.match(value)
    if not match:
        raise ValidationError(f"Invalid cpu value: {value!r}", field="cpu")
    number, millis = match.groups()
    cores = float(number)
    return cores / 1000 if millis else cores


def validate_memory_mb(memory_mb: int) -> int:
    if not MEMORY_MIN_MB <= memory_mb <= MEMORY_MAX_MB:
        raise ValidationError(
            f"Memory must be between {MEMORY_MIN_MB}Mi and {MEMORY_MAX_MB // 1024}Gi, "
            f"got {memory_mb}Mi",
            field="memory_mb",
        )
    return memory_mb


def validate_cpu_cores(cpu_cores: float) -> float:
    if not CPU_MIN_CORES <= cpu_cores <= CPU_MAX_CORES:
        raise ValidationError(
            f"CPU must be between {CPU_MIN_CORES} and {CPU_MAX_CORES} cores, got {cpu_cores}",
            field="cpu_cores",
        )
    return cpu_cores


def validate_storage_mb(storage_mb: int) -> int:
    if not STORAGE_MIN_MB <= storage_mb <= STORAGE_MAX_MB:
        raise ValidationError(
            f"Storage must be between {STORAGE_MIN_MB}Mi and {STORAGE_MAX_MB // 1024}Gi, "
            f"got {storage_mb}Mi",
            field="storage_mb",
        )
    return storage_mb
