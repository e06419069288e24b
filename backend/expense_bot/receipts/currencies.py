"""Currencies the receipt reader recognises, their surface symbols and static rates."""

from __future__ import annotations

import re
from collections import Counter
from decimal import Decimal
from functools import lru_cache

from ..domain.entities import Currency

CURRENCIES: dict[str, Currency] = {
    currency.code: currency
    for currency in (
        Currency("JPY", "¥", "Japanese yen", 0),
        Currency("USD", "$", "US dollar"),
        Currency("EUR", "€", "Euro"),
        Currency("GBP", "£", "Pound sterling"),
        Currency("CNY", "元", "Chinese yuan"),
        Currency("KRW", "₩", "South Korean won", 0),
        Currency("THB", "฿", "Thai baht"),
        Currency("SGD", "S$", "Singapore dollar"),
        Currency("PHP", "₱", "Philippine peso"),
        Currency("VND", "₫", "Vietnamese dong", 0),
        Currency("IDR", "Rp", "Indonesian rupiah"),
        Currency("MYR", "RM", "Malaysian ringgit"),
        Currency("AUD", "A$", "Australian dollar"),
        Currency("CAD", "C$", "Canadian dollar"),
        Currency("CHF", "CHF", "Swiss franc"),
        Currency("INR", "₹", "Indian rupee"),
    )
}

# Surface forms in the order they are tried. "¥" is read as yen only.
SYMBOLS: tuple[tuple[str, str], ...] = (
    ("¥", "JPY"),
    ("円", "JPY"),
    ("JPY", "JPY"),
    ("S$", "SGD"),
    ("A$", "AUD"),
    ("C$", "CAD"),
    ("$", "USD"),
    ("USD", "USD"),
    ("€", "EUR"),
    ("EUR", "EUR"),
    ("£", "GBP"),
    ("GBP", "GBP"),
    ("元", "CNY"),
    ("RMB", "CNY"),
    ("CNY", "CNY"),
    ("₩", "KRW"),
    ("원", "KRW"),
    ("KRW", "KRW"),
    ("฿", "THB"),
    ("THB", "THB"),
    ("SGD", "SGD"),
    ("₱", "PHP"),
    ("PHP", "PHP"),
    ("₫", "VND"),
    ("VND", "VND"),
    ("Rp", "IDR"),
    ("IDR", "IDR"),
    ("RM", "MYR"),
    ("MYR", "MYR"),
    ("AUD", "AUD"),
    ("CAD", "CAD"),
    ("CHF", "CHF"),
    ("₹", "INR"),
    ("INR", "INR"),
)

# Units of JPY per unit of currency, used when no live rate is available.
FALLBACK_RATES_TO_JPY: dict[str, Decimal] = {
    "JPY": Decimal("1"),
    "USD": Decimal("150"),
    "EUR": Decimal("160"),
    "GBP": Decimal("190"),
    "CNY": Decimal("20"),
    "KRW": Decimal("0.11"),
    "THB": Decimal("4.2"),
    "SGD": Decimal("110"),
    "MYR": Decimal("32"),
    "IDR": Decimal("0.01"),
    "PHP": Decimal("2.7"),
    "VND": Decimal("0.006"),
    "AUD": Decimal("100"),
    "CAD": Decimal("110"),
    "CHF": Decimal("165"),
    "INR": Decimal("1.8"),
}


def get_currency(code: str) -> Currency:
    """Look up a currency by ISO code. Unknown codes get a generic entry."""
    normalised = code.strip().upper()
    currency = CURRENCIES.get(normalised)
    if currency is None:
        return Currency(normalised, normalised, normalised)
    return currency


@lru_cache(maxsize=None)
def symbol_pattern(symbol: str) -> str:
    """Regex fragment for a symbol that will not fire inside a longer word.

    ``$`` must not match the tail of ``S$``/``A$``/``C$`` and alphabetic codes
    such as ``RM`` must not match inside ordinary words.
    """
    escaped = re.escape(symbol)
    if symbol[0].isascii() and symbol[0].isalpha():
        escaped = rf"(?<![A-Za-z]){escaped}"
    elif symbol == "$":
        escaped = rf"(?<![A-Za-z]){escaped}"
    if symbol[-1].isascii() and symbol[-1].isalpha():
        escaped = rf"{escaped}(?![A-Za-z])"
    return escaped


@lru_cache(maxsize=None)
def _symbol_regex(symbol: str) -> re.Pattern[str]:
    return re.compile(symbol_pattern(symbol), re.IGNORECASE)


def estimate_currency(text: str, default: str) -> Currency:
    """Return the currency whose symbols appear most often in ``text``."""
    counts: Counter[str] = Counter()
    for symbol, code in SYMBOLS:
        hits = len(_symbol_regex(symbol).findall(text))
        if hits:
            counts[code] += hits
    if not counts:
        return get_currency(default)
    code, _ = counts.most_common(1)[0]
    return get_currency(code)


def static_rate(from_code: str, to_code: str) -> Decimal | None:
    """Cross rate from the fallback table, or ``None`` when either side is unknown."""
    source = FALLBACK_RATES_TO_JPY.get(from_code.upper())
    target = FALLBACK_RATES_TO_JPY.get(to_code.upper())
    if source is None or target is None:
        return None
    return source / target
