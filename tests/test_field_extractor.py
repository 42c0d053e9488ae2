import pytest

from extraction.field_extractor import (
    FieldExtractor,
    extract_amount,
    extract_transaction_fields,
    is_transaction_line,
    normalize_date,
    predict_category_from_description,
)

from conftest import BCR_STATEMENT


def test_card_payment_line():
    fields = extract_transaction_fields("15/09/2025  PLATA CARD KAUFLAND  -45.67")
    assert fields.date == "2025-09-15"
    assert fields.amount == pytest.approx(-45.67)
    assert fields.type == "expense"
    assert fields.description == "PLATA CARD KAUFLAND"
    assert fields.category == "Groceries"
    assert 0.0 <= fields.confidence <= 1.0


def test_short_lines_are_never_transactions():
    score = is_transaction_line("1.00 x")
    assert score.probability == 0.0


def test_line_score_features():
    score = is_transaction_line("15.09.2025 PLATA POS ACME SRL 120,00")
    assert score.probability == pytest.approx(1.0)
    assert score.confidence == 0.8
    assert "date" in score.features and "amount" in score.features
    assert "merchant_suffix" in score.features


def test_line_with_only_a_date_is_rejected():
    assert is_transaction_line("Perioada: 01.09.2025 - 30.09.2025").probability == pytest.approx(0.3)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("15/09/2025", "2025-09-15"),
        ("2025-09-15", "2025-09-15"),
        ("01.02.2024", "2024-02-01"),
        ("15-09-25", "2025-09-15"),
        ("31/02/2025", None),
        ("not a date", None),
    ],
)
def test_normalize_date(raw, expected):
    assert normalize_date(raw) == expected


def test_largest_amount_wins():
    amount, raw = extract_amount("12.09.2025 TRANSFER 100,00 SOLD 1.250,00")
    assert amount == pytest.approx(1250.0)
    assert raw == "1.250,00"


@pytest.mark.parametrize(
    "line, expected",
    [
        ("Plata 1.234,56 RON", 1234.56),
        ("Payment 1,234.56", 1234.56),
        ("Refund +15,00", 15.0),
        ("Debit card 12/03/2025 89,90", -89.9),
        ("Credit card 12/03/2025 +89,90 debit", 89.9),
    ],
)
def test_amount_formats_and_signs(line, expected):
    amount, _ = extract_amount(line)
    assert amount == pytest.approx(expected)


def test_date_digits_are_not_amounts():
    amount, _ = extract_amount("15.09.2025 PLATA POS LIDL 23,40")
    assert amount == pytest.approx(23.4)
    assert extract_amount("15.09.2025 fara suma")[0] is None


def test_short_description_is_dropped():
    fields = extract_transaction_fields("12/03/2025 POS 10,00")
    assert fields.description is None
    assert fields.amount == pytest.approx(10.0)


def test_category_from_description():
    assert predict_category_from_description("PLATĂ CARD LIDL") == ("Groceries", 0.8)
    assert predict_category_from_description("something else") == ("Other", 0.3)
    assert predict_category_from_description(None) == ("Other", 0.3)


def test_category_keywords_match_whole_words():
    assert predict_category_from_description("PLATA CARD ATMOSFERA CAFE") == ("Restaurants", 0.8)
    assert predict_category_from_description("FARMACIA TEI") == ("Health", 0.8)
    assert predict_category_from_description("ABONAMENT DIGITALOCEAN") == ("Other", 0.3)


def test_extract_lines_on_statement():
    lines = FieldExtractor().extract_lines(BCR_STATEMENT)
    descriptions = [fields.description for _, fields in lines]
    assert descriptions == [
        "PLATA CARD KAUFLAND",
        "PLATA CARD OMV PETROM",
        "TRANSFER SALARIU ACME SRL",
        "RETRAGERE ATM BCR",
    ]
    amounts = [fields.amount for _, fields in lines]
    assert amounts == pytest.approx([-45.67, -210.0, 5400.0, -300.0])
    # line numbers are 1-based positions in the text
    assert lines[0][0].line_number == 6
