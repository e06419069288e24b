"""Pick the receipt total out of the extracted amount candidates.

Each heuristic looks at the receipt independently and proposes candidates with
a confidence. Proposals are pooled per (amount, currency), keeping the highest
confidence, and the best pooled candidate wins.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from decimal import Decimal

from ..domain.entities import AmountCandidate
from .extractor import iter_numbers

logger = logging.getLogger(__name__)

KEYWORD_TIERS: tuple[tuple[float, tuple[str, ...]], ...] = (
    (
        0.9,
        (
            "grand total",
            "total",
            "合計",
            "総額",
            "総計",
            "お会計",
            "amount due",
            "balance due",
            "final amount",
            "最終金額",
        ),
    ),
    (
        0.7,
        (
            "subtotal",
            "sub total",
            "小計",
            "税込",
            "税込み",
            "tax included",
            "including tax",
            "incl. tax",
        ),
    ),
    (0.5, ("計", "sum", "amount")),
)

POSITION_WINDOW = 5
TAX_TOLERANCE = Decimal("0.02")
SUM_TOLERANCE = Decimal("0.05")
SECOND_LARGEST_RATIO = Decimal("0.8")

_PERCENT_RE = re.compile(r"(?<![\d.])(\d{1,2}(?:\.\d{1,2})?)\s*%")


def _keyword_regex(keyword: str) -> re.Pattern[str]:
    escaped = re.escape(keyword)
    if keyword.isascii():
        escaped = rf"(?<![A-Za-z]){escaped}(?![A-Za-z])"
    return re.compile(escaped, re.IGNORECASE)


_KEYWORDS: tuple[tuple[str, float, re.Pattern[str]], ...] = tuple(
    (keyword, confidence, _keyword_regex(keyword))
    for confidence, keywords in KEYWORD_TIERS
    for keyword in keywords
)


@dataclass(slots=True, frozen=True)
class KeywordHit:
    keyword: str
    confidence: float
    start: int
    end: int


def find_keywords(line: str) -> list[KeywordHit]:
    """Keyword occurrences in a line, ignoring ones nested in a longer keyword.

    ``subtotal`` therefore never counts as ``total`` and ``小計`` never as ``計``.
    """
    hits = [
        KeywordHit(keyword, confidence, match.start(), match.end())
        for keyword, confidence, pattern in _KEYWORDS
        for match in pattern.finditer(line)
    ]
    kept = [
        hit
        for hit in hits
        if not any(
            other is not hit
            and other.start <= hit.start
            and hit.end <= other.end
            and (other.end - other.start) > (hit.end - hit.start)
            for other in hits
        )
    ]
    return sorted(kept, key=lambda hit: hit.start)


def detect_tax_rate(text: str, default: float) -> Decimal:
    """Most frequently mentioned plausible percentage, else ``default``."""
    rates = Counter(
        Decimal(raw) for raw in _PERCENT_RE.findall(text) if 0 < Decimal(raw) <= 30
    )
    if not rates:
        return Decimal(str(default))
    rate, _ = rates.most_common(1)[0]
    return rate / 100


@dataclass(slots=True)
class ResolutionContext:
    lines: tuple[str, ...]
    candidates: tuple[AmountCandidate, ...]
    tax_rate: Decimal

    def lookup(self, amount: Decimal, line_index: int) -> AmountCandidate | None:
        """Candidate with this amount, preferring one found on ``line_index``."""
        matches = [candidate for candidate in self.candidates if candidate.amount == amount]
        for candidate in matches:
            if candidate.line_index == line_index:
                return candidate
        return matches[0] if matches else None

    def candidates_in_line(self, line_index: int, start: int = 0) -> list[AmountCandidate]:
        found = []
        for value, number_start, _ in iter_numbers(self.lines[line_index]):
            if number_start < start:
                continue
            candidate = self.lookup(value, line_index)
            if candidate is not None:
                found.append(candidate)
        return found


class Heuristic(ABC):
    name: str

    @abstractmethod
    def score(self, context: ResolutionContext) -> Iterable[AmountCandidate]:
        """Yield candidates with this heuristic's confidence."""


class KeywordHeuristic(Heuristic):
    """A total keyword followed by an amount, on the same or the next line."""

    name = "keyword"

    def score(self, context: ResolutionContext) -> Iterable[AmountCandidate]:
        for line_index, line in enumerate(context.lines):
            for hit in find_keywords(line):
                following = context.candidates_in_line(line_index, start=hit.end)
                if not following and line_index + 1 < len(context.lines):
                    following = context.candidates_in_line(line_index + 1)
                if following:
                    yield replace(following[0], confidence=hit.confidence)


class PositionHeuristic(Heuristic):
    """Totals sit near the bottom of a receipt."""

    name = "position"

    def __init__(self, window: int = POSITION_WINDOW) -> None:
        self.window = window

    def score(self, context: ResolutionContext) -> Iterable[AmountCandidate]:
        line_count = len(context.lines)
        for line_index in range(max(0, line_count - self.window), line_count):
            confidence = 0.4 + (line_index / line_count) * 0.3
            for candidate in context.candidates_in_line(line_index):
                yield replace(candidate, confidence=confidence)


class MagnitudeHeuristic(Heuristic):
    """The total is usually the largest amount printed."""

    name = "magnitude"

    def score(self, context: ResolutionContext) -> Iterable[AmountCandidate]:
        ranked = sorted(context.candidates, key=lambda candidate: candidate.amount, reverse=True)
        if not ranked:
            return
        largest = ranked[0]
        yield replace(largest, confidence=0.6)
        runner_up = next((c for c in ranked[1:] if c.amount < largest.amount), None)
        if runner_up is not None and runner_up.amount / largest.amount >= SECOND_LARGEST_RATIO:
            yield replace(runner_up, confidence=0.4)


class ArithmeticHeuristic(Heuristic):
    """Totals are consistent with a pre-tax amount or a sum of line items."""

    name = "arithmetic"

    def score(self, context: ResolutionContext) -> Iterable[AmountCandidate]:
        for candidate in context.candidates:
            pretax = candidate.amount / (1 + context.tax_rate)
            tolerance = candidate.amount * TAX_TOLERANCE
            if any(
                other is not candidate and abs(other.amount - pretax) <= tolerance
                for other in context.candidates
            ):
                yield replace(candidate, confidence=0.8)

            # a subtotal sits above the cut and stays out of the sum
            items = [
                other.amount
                for other in context.candidates
                if other.amount < candidate.amount * SECOND_LARGEST_RATIO
            ]
            if len(items) >= 2 and abs(sum(items) - candidate.amount) <= candidate.amount * SUM_TOLERANCE:
                yield replace(candidate, confidence=0.7)


DEFAULT_HEURISTICS: tuple[Heuristic, ...] = (
    KeywordHeuristic(),
    PositionHeuristic(),
    MagnitudeHeuristic(),
    ArithmeticHeuristic(),
)


@dataclass(slots=True, frozen=True)
class Resolution:
    total: AmountCandidate | None
    confidence: float
    ranked: tuple[AmountCandidate, ...] = ()
    supporting: frozenset[str] = field(default_factory=frozenset)


class TotalAmountResolver:
    def __init__(
        self,
        heuristics: Sequence[Heuristic] = DEFAULT_HEURISTICS,
        default_tax_rate: float = 0.10,
    ) -> None:
        self.heuristics = tuple(heuristics)
        self.default_tax_rate = default_tax_rate

    def resolve(self, text: str, candidates: Sequence[AmountCandidate]) -> Resolution:
        """Choose the total among ``candidates`` (found in normalised ``text``)."""
        if not candidates:
            return Resolution(total=None, confidence=0.0)

        context = ResolutionContext(
            lines=tuple(text.split("\n")),
            candidates=tuple(candidates),
            tax_rate=detect_tax_rate(text, self.default_tax_rate),
        )

        pooled: dict[tuple[Decimal, str], AmountCandidate] = {}
        support: dict[tuple[Decimal, str], set[str]] = {}
        for heuristic in self.heuristics:
            for proposal in heuristic.score(context):
                key = proposal.key()
                support.setdefault(key, set()).add(heuristic.name)
                best = pooled.get(key)
                if best is None or proposal.confidence > best.confidence:
                    pooled[key] = proposal

        if not pooled:
            largest = max(candidates, key=lambda candidate: candidate.amount)
            logger.info("No heuristic fired, falling back to largest amount %s", largest.amount)
            fallback = replace(largest, confidence=0.0)
            return Resolution(total=fallback, confidence=0.0, ranked=(fallback,))

        ranked = sorted(
            pooled.values(),
            key=lambda c: (c.confidence, len(support[c.key()]), c.amount, c.line_index),
            reverse=True,
        )
        winner = ranked[0]
        agreeing = frozenset(support[winner.key()])

        confidence = winner.confidence
        if len(agreeing) >= 2:
            confidence += 0.05
        if len(candidates) >= 3:
            confidence += 0.05
        if len(candidates) >= 5:
            confidence += 0.05
        confidence = min(confidence, 1.0)

        logger.debug(
            "Resolved total %s %s (confidence %.2f, heuristics %s)",
            winner.amount,
            winner.currency.code,
            confidence,
            sorted(agreeing),
        )
        return Resolution(total=winner, confidence=confidence, ranked=tuple(ranked), supporting=agreeing)
