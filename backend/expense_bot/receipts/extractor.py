"""Find every plausible (amount, currency) pair in raw OCR text."""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Iterator
from decimal import Decimal, InvalidOperation

from ..domain.entities import AmountCandidate, Currency
from .currencies import SYMBOLS, estimate_currency, get_currency, symbol_pattern

logger = logging.getLogger(__name__)

_ZERO_WIDTH = re.compile(r"[\u200b-\u200d\u2060\ufeff]")
_SPACES = re.compile(r"[ \t]+")

# Thousands separators and up to two decimals. Digits glued to dates, times,
# percentages or longer numbers are not amounts.
NUMBER = (
    r"(?<![\d,.])(?<!\d[:/\-])"
    r"(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)"
    r"(?!\d|[.,:/\-]\d|\s*%)"
)
_NUMBER_RE = re.compile(NUMBER)

TOTAL_KEYWORDS = r"合計|小計|総額|total|subtotal"
_AMOUNT_KEYWORDS = r"合計|小計|総額|総計|税込|税|total|subtotal|tax|amount|due"

_BARE_PATTERNS = (
    # a number standing alone on its line
    re.compile(rf"^[*#]?\s*{NUMBER}\s*\*?$"),
    # a number closing the line
    re.compile(rf"{NUMBER}\s*\*?$"),
    # a number following a total or tax keyword
    re.compile(rf"(?:{_AMOUNT_KEYWORDS})[^\d\n]{{0,12}}{NUMBER}", re.IGNORECASE),
)


def _currency_patterns(symbol: str) -> tuple[re.Pattern[str], ...]:
    sym = symbol_pattern(symbol)
    return (
        re.compile(rf"{sym}\s*{NUMBER}", re.IGNORECASE),
        re.compile(rf"{NUMBER}\s*{sym}", re.IGNORECASE),
        re.compile(rf"(?:{TOTAL_KEYWORDS})[：:\s]*{sym}\s*{NUMBER}", re.IGNORECASE),
        re.compile(rf"{NUMBER}\s*{sym}\s*(?:{TOTAL_KEYWORDS})", re.IGNORECASE),
    )


_CURRENCY_PATTERNS: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = tuple(
    (code, _currency_patterns(symbol)) for symbol, code in SYMBOLS
)


def normalise_text(text: str) -> str:
    """Fold full-width forms, drop invisible characters and blank lines.

    Line breaks are kept: the resolver reasons about lines.
    """
    normalised = unicodedata.normalize("NFKC", text)
    normalised = _ZERO_WIDTH.sub("", normalised)
    normalised = normalised.replace("\r\n", "\n").replace("\r", "\n")
    lines = (_SPACES.sub(" ", line).strip() for line in normalised.split("\n"))
    return "\n".join(line for line in lines if line)


def parse_number(raw: str) -> Decimal | None:
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


def iter_numbers(line: str) -> Iterator[tuple[Decimal, int, int]]:
    """Yield ``(value, start, end)`` for every amount-shaped number in a line."""
    for match in _NUMBER_RE.finditer(line):
        value = parse_number(match.group(1))
        if value is not None:
            yield value, match.start(1), match.end(1)


class AmountCandidateExtractor:
    """Scans OCR text for amounts, with or without a currency marker.

    Candidates come out in text order with a confidence of zero; scoring is
    the resolver's job. Each (amount, currency) pair appears once.
    """

    def __init__(self, home_currency: str = "JPY", max_amount: Decimal | int = 10_000_000) -> None:
        self.home_currency = home_currency
        self.max_amount = Decimal(max_amount)

    def extract(self, text: str) -> list[AmountCandidate]:
        normalised = normalise_text(text)
        if not normalised:
            return []
        fallback_currency = estimate_currency(normalised, self.home_currency)

        found: list[tuple[int, int, AmountCandidate]] = []
        for line_index, line in enumerate(normalised.split("\n")):
            covered: list[tuple[int, int]] = []
            for code, patterns in _CURRENCY_PATTERNS:
                currency = get_currency(code)
                for pattern in patterns:
                    for match in pattern.finditer(line):
                        self._collect(found, covered, match, currency, line_index)
            for pattern in _BARE_PATTERNS:
                for match in pattern.finditer(line):
                    span = match.span(1)
                    if any(_overlaps(span, other) for other in covered):
                        continue
                    self._collect(found, covered, match, fallback_currency, line_index)

        found.sort(key=lambda item: (item[0], item[1]))
        unique: dict[tuple[Decimal, str], AmountCandidate] = {}
        for _, _, candidate in found:
            unique.setdefault(candidate.key(), candidate)
        candidates = list(unique.values())
        logger.debug("Extracted %d amount candidates", len(candidates))
        return candidates

    def _collect(
        self,
        found: list[tuple[int, int, AmountCandidate]],
        covered: list[tuple[int, int]],
        match: re.Match[str],
        currency: Currency,
        line_index: int,
    ) -> None:
        amount = parse_number(match.group(1))
        if amount is None or not (0 < amount < self.max_amount):
            return
        covered.append(match.span(1))
        found.append(
            (
                line_index,
                match.start(1),
                AmountCandidate(
                    amount=amount,
                    currency=currency,
                    matched_text=match.group(0).strip(),
                    line_index=line_index,
                ),
            )
        )


def _overlaps(first: tuple[int, int], second: tuple[int, int]) -> bool:
    return first[0] < second[1] and second[0] < first[1]
