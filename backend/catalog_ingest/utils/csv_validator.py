"""Validate CSV headers and normalize individual rows."""

from __future__ import annotations

from typing import Sequence

from catalog_ingest.core.errors import ParseError, RowError

BUSINESS_KEY_MAX_LENGTH = 255


def validate_headers(headers: Sequence[str] | None) -> list[str]:
    """Return trimmed headers, or fail the whole file if none can be determined."""
    if not headers:
        raise ParseError("CSV requires a header row")
    cleaned = [(header or "").strip() for header in headers]
    if not any(cleaned):
        raise ParseError("CSV headers are empty or invalid after trimming")
    return cleaned


def _check_text(value: str, column: str, max_length: int) -> str:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise RowError(f"Invalid UTF-8 encoding in column: {column}") from exc
    if len(value) > max_length:
        raise RowError(f"Value too long in column: {column} ({len(value)} > {max_length})")
    return value


def normalize_row(
    row: Sequence[str],
    headers: Sequence[str],
    key_index: int,
    *,
    max_length: int = 1000,
) -> tuple[str, dict[str, str]]:
    """Split a row into its business key and attribute map.

    Values are trimmed; blank header columns are dropped. Raises ``RowError``
    when the business key is missing or a value cannot be stored.
    """
    if len(row) != len(headers):
        raise RowError(f"Row has {len(row)} values for {len(headers)} columns")

    key_raw = row[key_index]
    business_key = key_raw.strip() if isinstance(key_raw, str) else ""
    if not business_key:
        raise RowError(f"Missing business key in column: {headers[key_index]}")
    _check_text(business_key, headers[key_index], min(max_length, BUSINESS_KEY_MAX_LENGTH))

    attributes: dict[str, str] = {}
    for column, value in zip(headers, row):
        if not column:
            continue
        cleaned = value.strip() if isinstance(value, str) else ""
        attributes[column] = _check_text(cleaned, column, max_length)
    return business_key, attributes
