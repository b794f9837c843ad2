from __future__ import annotations

from datetime import date, datetime

RUPEE = "₹"

# Largest unit first; amount >= threshold is shown in that unit.
_UNITS = (
    (1_000_000_000_000, "T"),
    (10_000_000_000, "TCr"),
    (10_000_000, "Cr"),
    (100_000, "L"),
    (1_000, "K"),
)


def _clean(value: float) -> str:
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return text or "0"


def format_currency_lakhs(amount: float | int | None) -> str:
    """Indian-style short amount: 850000 -> '₹8.5L', 25000000 -> '₹2.5Cr'."""
    if not amount:
        return f"{RUPEE}0"
    for threshold, suffix in _UNITS:
        if amount >= threshold:
            return f"{RUPEE}{_clean(amount / threshold)}{suffix}"
    if amount >= 1 and float(amount).is_integer():
        return f"{RUPEE}{int(amount)}"
    return f"{RUPEE}{_clean(amount)}"


def format_datetime(value: datetime | date | str | None) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        return value.strftime("%d %b %Y, %H:%M")
    return value.strftime("%d %b %Y")
