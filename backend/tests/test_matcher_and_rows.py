import pytest

from catalog_ingest.core.errors import ParseError, RowError
from catalog_ingest.services.matcher import AliasMatcher, default_matcher, normalize_header
from catalog_ingest.utils.csv_validator import normalize_row, validate_headers


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("SKU", "sku"),
        (" Part Number ", "part_number"),
        ("item-no", "item_no"),
        ("Product.Code", "product_code"),
    ],
)
def test_normalize_header(raw, expected):
    assert normalize_header(raw) == expected


def test_resolve_prefers_configured_override():
    headers = ["sku", "Vendor Code", "name"]
    assert default_matcher.resolve(headers, "vendor code") == 1


def test_resolve_falls_back_to_aliases_when_override_missing():
    headers = ["name", "Part Number"]
    assert default_matcher.resolve(headers, "ean") == 1


def test_resolve_uses_alias_order():
    # "sku" outranks "id" even though "id" comes first
    assert default_matcher.resolve(["id", "name", "SKU"]) == 2


def test_resolve_fails_without_key_column():
    with pytest.raises(ParseError, match="business-key"):
        default_matcher.resolve(["name", "price"])


def test_custom_aliases():
    matcher = AliasMatcher(aliases=("EAN",))
    assert matcher.resolve(["name", "ean"]) == 1


def test_validate_headers_trims():
    assert validate_headers([" sku ", "name"]) == ["sku", "name"]


def test_normalize_row_splits_key_and_attributes():
    key, attributes = normalize_row([" A-1 ", " Widget ", "", "x"], ["sku", "name", "price", ""], 0)

    assert key == "A-1"
    assert attributes == {"sku": "A-1", "name": "Widget", "price": ""}


def test_normalize_row_rejects_missing_key():
    with pytest.raises(RowError, match="Missing business key"):
        normalize_row(["  ", "Widget"], ["sku", "name"], 0)


def test_normalize_row_rejects_long_values():
    with pytest.raises(RowError, match="too long"):
        normalize_row(["A-1", "x" * 11], ["sku", "name"], 0, max_length=10)


def test_normalize_row_rejects_unencodable_text():
    with pytest.raises(RowError, match="UTF-8"):
        normalize_row(["A-1", "bad \udcff"], ["sku", "name"], 0)


def test_normalize_row_rejects_width_mismatch():
    with pytest.raises(RowError):
        normalize_row(["A-1"], ["sku", "name"], 0)
