"""Formatting and conversion utilities."""

import re

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def as_int(value, *, default: int = 0) -> int:
    """Convert value to int, handling various types."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        v = value.strip()
        if not v:
            return default
        if v.startswith("0x"):
            return int(v, 16)
        return int(float(v)) if any(c in v for c in ".eE") else int(v)
    return int(value)


def as_float(value, *, default: float | None = None) -> float | None:
    """Convert a provider number (int, float or numeric string) to float."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def is_contract_address(value: str | None) -> bool:
    """True for a 0x-prefixed 20-byte hex address, False for provider-issued ids."""
    return bool(value) and _ADDRESS_RE.match(value) is not None


def short_address(address: str) -> str:
    """Shorten an address for display."""
    if is_contract_address(address):
        return f"{address[:10]}...{address[-6:]}"
    return address if len(address) <= 20 else f"{address[:17]}..."


def format_apy(apy: float | None, *, decimals: int = 2) -> str:
    """Format a fractional APY as a percentage."""
    if apy is None:
        return "n/a"
    return f"{apy * 100:.{decimals}f}%"


def format_usd(value: int | float | None) -> str:
    """Format a USD amount with a K/M/B suffix."""
    if value is None:
        return "n/a"
    sign = "-" if value < 0 else ""
    v = abs(float(value))
    for threshold, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if v >= threshold:
            return f"{sign}${v / threshold:.2f}{suffix}"
    return f"{sign}${v:,.0f}"

