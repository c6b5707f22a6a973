"""IDR display helpers."""

import math


def to_idr(amount) -> int:
    """Round half-up to whole rupiah; IDR has no fractional unit."""
    value = float(amount)
    if not math.isfinite(value):
        raise ValueError(f"Amount must be a finite number, got {amount!r}")
    if value < 0:
        return -int(math.floor(-value + 0.5))
    return int(math.floor(value + 0.5))


def format_idr(amount) -> str:
    value = to_idr(amount)
    sign = "-" if value < 0 else ""
    grouped = f"{abs(value):,}".replace(",", ".")
    return f"{sign}Rp {grouped}"
