from __future__ import annotations

import logging
import re

from ..domain.entities import AmountCandidate, AnalysisDetails, ReceiptAnalysis, ReceiptKind
from .extractor import AmountCandidateExtractor, normalise_text
from .resolver import TotalAmountResolver, find_keywords

logger = logging.getLogger(__name__)

_NUMERIC_LINE = re.compile(r"^[\d\s¥$€£,.\-*#:/]+$")
_DATE = re.compile(r"\d{4}[-/年.]\d{1,2}[-/月.]\d{1,2}")
_TIME = re.compile(r"\d{1,2}:\d{2}")
_RECEIPT_HEADER = re.compile(r"receipt|領収書|レシート|明細", re.IGNORECASE)
_RECEIPT_WORDS = re.compile(r"レシート|receipt|領収書|お買い?上げ|purchase|店舗|store", re.IGNORECASE)
_INVOICE_WORDS = re.compile(r"請求書|invoice|bill|明細書|statement", re.IGNORECASE)
_NON_ITEM_WORDS = re.compile(r"計|total|tax|税|receipt|領収書|店舗|store|tel|電話|change|お釣|お預", re.IGNORECASE)
_SUBTOTAL = re.compile(r"小計|sub\s?total", re.IGNORECASE)
_TAX = re.compile(r"税|(?<![A-Za-z])tax(?![A-Za-z])", re.IGNORECASE)
_DISCOUNT = re.compile(r"割引|値引|discount|(?<![A-Za-z])off(?![A-Za-z])", re.IGNORECASE)

MAX_STORE_NAME_LINES = 5
MAX_LINE_ITEMS = 10


class ReceiptParser:
    """Turns OCR text into a :class:`ReceiptAnalysis`."""

    def __init__(
        self,
        extractor: AmountCandidateExtractor | None = None,
        resolver: TotalAmountResolver | None = None,
    ) -> None:
        self.extractor = extractor or AmountCandidateExtractor()
        self.resolver = resolver or TotalAmountResolver()

    def parse(self, text: str) -> ReceiptAnalysis:
        normalised = normalise_text(text)
        lines = normalised.split("\n") if normalised else []

        candidates = self.extractor.extract(normalised)
        resolution = self.resolver.resolve(normalised, candidates)
        store_name = extract_store_name(lines)
        analysis = ReceiptAnalysis(
            candidates=tuple(candidates),
            resolved_total=resolution.total,
            confidence=resolution.confidence,
            store_name=store_name,
            line_items=tuple(extract_line_items(lines, candidates, store_name)),
            receipt_kind=detect_receipt_kind(normalised),
            details=analysis_details(lines),
        )
        if analysis.resolved_total is None:
            logger.info("No amount found in %d lines of OCR text", len(lines))
        else:
            logger.info(
                "Receipt total %s %s (confidence %.2f, %d candidates)",
                analysis.resolved_total.amount,
                analysis.resolved_total.currency.code,
                analysis.confidence,
                len(candidates),
            )
        return analysis


def _looks_like_noise(line: str) -> bool:
    return bool(_NUMERIC_LINE.match(line) or _DATE.search(line) or _TIME.search(line))


def extract_store_name(lines: list[str]) -> str | None:
    for line in lines[:MAX_STORE_NAME_LINES]:
        if len(line) >= 2 and not _looks_like_noise(line) and not _RECEIPT_HEADER.search(line):
            return line
    return None


def extract_line_items(
    lines: list[str], candidates: list[AmountCandidate], store_name: str | None
) -> list[str]:
    """Short descriptive lines that carry no amount and no receipt vocabulary."""
    matched = [candidate.matched_text for candidate in candidates]
    items: list[str] = []
    for line in lines:
        if line == store_name or not 2 <= len(line) <= 50:
            continue
        if _looks_like_noise(line) or _NON_ITEM_WORDS.search(line):
            continue
        if any(text and text in line for text in matched):
            continue
        items.append(line)
        if len(items) >= MAX_LINE_ITEMS:
            break
    return items


def detect_receipt_kind(text: str) -> ReceiptKind:
    if _RECEIPT_WORDS.search(text):
        return ReceiptKind.RECEIPT
    if _INVOICE_WORDS.search(text):
        return ReceiptKind.INVOICE
    return ReceiptKind.UNKNOWN


def analysis_details(lines: list[str]) -> AnalysisDetails:
    keywords: list[str] = []
    for line in lines:
        for hit in find_keywords(line):
            if hit.confidence >= 0.7 and hit.keyword not in keywords:
                keywords.append(hit.keyword)
    text = "\n".join(lines)
    return AnalysisDetails(
        total_keywords=tuple(keywords),
        subtotal_found=bool(_SUBTOTAL.search(text)),
        tax_found=bool(_TAX.search(text)),
        discount_found=bool(_DISCOUNT.search(text)),
    )


def parse_manual_entry(
    text: str, extractor: AmountCandidateExtractor
) -> tuple[AmountCandidate, str] | None:
    """Split a typed entry such as ``lunch 1200`` into an amount and a description."""
    normalised = normalise_text(text)
    candidates = extractor.extract(normalised)
    if not candidates:
        return None
    candidate = candidates[0]
    description = normalised.replace(candidate.matched_text, " ", 1)
    description = " ".join(description.split()).strip(" -:,")
    return candidate, description or "manual entry"
