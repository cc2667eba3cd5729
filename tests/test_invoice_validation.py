from invoice_pipeline.schemas import InvoiceHeader, InvoiceLineItem, ParsedInvoice
from invoice_pipeline.services.invoice_parser import parse_invoice_text
from invoice_pipeline.services.invoice_validation import validate_invoice, validate_line_item, validate_math


def _line(**fields) -> InvoiceLineItem:
    values = {"line_number": 1, "original_description": "ARROZ CAROLINO", "quantity": 2, "unit_price": 5.0, "line_total": 10.0}
    values.update(fields)
    return InvoiceLineItem(**values)


def test_sample_invoice_is_valid(sample_text: str) -> None:
    result = validate_invoice(parse_invoice_text(sample_text))

    assert result.valid
    assert result.errors == []
    assert result.warnings == []
    assert result.to_dict() == {"valid": True, "errors": [], "warnings": []}


def test_line_item_missing_values_are_errors() -> None:
    result = validate_line_item(_line(original_description="ab", quantity=None, unit_price=None), 2)

    assert not result.valid
    assert len(result.errors) == 3
    assert all(message.startswith("Ligne 2") for message in result.errors)


def test_line_item_phone_number_and_suspicious_descriptions() -> None:
    assert "téléphone" in validate_line_item(_line(original_description="219000000"), 1).errors[0]
    assert "suspecte" in validate_line_item(_line(original_description="Devolução de vasilhame"), 1).errors[0]


def test_line_item_discount_is_a_warning() -> None:
    result = validate_line_item(_line(quantity=10, unit_price=2.0, line_total=17.0), 1)

    assert result.valid
    assert len(result.warnings) == 1
    assert "remise" in result.warnings[0]


def test_line_item_inconsistent_total_is_an_error() -> None:
    result = validate_line_item(_line(quantity=10, unit_price=2.0, line_total=50.0), 1)

    assert not result.valid
    assert "incohérent" in result.errors[0]


def test_line_item_outliers_are_warnings() -> None:
    result = validate_line_item(_line(quantity=20000, unit_price=150000.0, line_total=None), 1)

    assert result.valid
    assert len(result.warnings) == 2


def test_math_line_sum_must_match_net_total() -> None:
    invoice = ParsedInvoice(
        header=InvoiceHeader(total_without_tax=100.0),
        line_items=[_line(line_total=10.0)],
    )

    result = validate_math(invoice)

    assert not result.valid
    assert "somme des lignes" in result.errors[0]


def test_math_small_line_sum_gap_is_a_warning() -> None:
    invoice = ParsedInvoice(header=InvoiceHeader(total_without_tax=10.5), line_items=[_line()])

    result = validate_math(invoice)

    assert result.valid
    assert "Petit écart" in result.warnings[0]


def test_math_totals_and_tax_rate() -> None:
    invoice = ParsedInvoice(
        header=InvoiceHeader(total_without_tax=10.0, total_tax=1.0, total_with_tax=12.0),
        line_items=[_line()],
    )

    result = validate_math(invoice)

    assert len(result.errors) == 1
    assert "TVA" in result.errors[0]
    assert len(result.warnings) == 1
    assert "Taux de TVA inhabituel" in result.warnings[0]


def test_math_gross_total_below_largest_line() -> None:
    invoice = ParsedInvoice(
        header=InvoiceHeader(total_with_tax=5.0),
        line_items=[_line()],
    )

    result = validate_math(invoice)

    assert any("plus grande ligne" in message for message in result.errors)


def test_math_without_lines_has_nothing_to_check() -> None:
    result = validate_math(ParsedInvoice(header=InvoiceHeader(total_with_tax=-1.0)))

    assert result.valid
    assert result.warnings == []
