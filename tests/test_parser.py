from decimal import Decimal

from expense_bot.domain.entities import ReceiptKind
from expense_bot.receipts.extractor import AmountCandidateExtractor
from expense_bot.receipts.parser import (
    ReceiptParser,
    detect_receipt_kind,
    extract_line_items,
    extract_store_name,
    parse_manual_entry,
)

CONVENIENCE_STORE = """LAWSON 渋谷店
2024/01/15 12:30
おにぎり 150
お茶 130
小計 280
消費税 8% 22
合計 ¥302
"""


def test_parse_convenience_store_receipt():
    analysis = ReceiptParser().parse(CONVENIENCE_STORE)

    assert analysis.found_amount
    assert analysis.resolved_total.amount == Decimal("302")
    assert analysis.resolved_total.currency.code == "JPY"
    assert analysis.confidence >= 0.9
    assert analysis.store_name == "LAWSON 渋谷店"
    assert len(analysis.candidates) == 5
    assert analysis.details.total_keywords == ("小計", "合計")
    assert analysis.details.subtotal_found
    assert analysis.details.tax_found
    assert not analysis.details.discount_found


def test_parse_without_amounts():
    analysis = ReceiptParser().parse("ありがとうございました")

    assert not analysis.found_amount
    assert analysis.confidence == 0.0
    assert analysis.candidates == ()


def test_store_name_skips_headers_and_dates():
    lines = ["領収書", "2024-03-01 10:00", "Blue Bottle Coffee", "Latte 650"]

    assert extract_store_name(lines) == "Blue Bottle Coffee"
    assert extract_store_name(["12,000", "2024/03/01"]) is None


def test_line_items_exclude_amounts_and_totals():
    lines = ["Cafe Mimi", "Croissant", "Cafe latte", "Total 1,100", "Tel 03-1234"]
    candidates = AmountCandidateExtractor().extract("\n".join(lines))

    assert extract_line_items(lines, candidates, "Cafe Mimi") == ["Croissant", "Cafe latte"]


def test_receipt_kind():
    assert detect_receipt_kind("領収書\n合計 500") is ReceiptKind.RECEIPT
    assert detect_receipt_kind("INVOICE #42") is ReceiptKind.INVOICE
    assert detect_receipt_kind("合計 500") is ReceiptKind.UNKNOWN


def test_manual_entry_splits_amount_and_description():
    extractor = AmountCandidateExtractor()

    candidate, description = parse_manual_entry("lunch 1200", extractor)
    assert candidate.amount == Decimal("1200")
    assert candidate.currency.code == "JPY"
    assert description == "lunch"

    candidate, description = parse_manual_entry("$12.50 taxi", extractor)
    assert (candidate.amount, candidate.currency.code) == (Decimal("12.50"), "USD")
    assert description == "taxi"


def test_manual_entry_without_description_or_amount():
    extractor = AmountCandidateExtractor()

    _, description = parse_manual_entry("¥800", extractor)
    assert description == "manual entry"
    assert parse_manual_entry("hello there", extractor) is None
