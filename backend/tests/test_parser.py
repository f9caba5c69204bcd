import io
import zipfile

import pytest

from catalog_ingest.core.errors import ParseError
from catalog_ingest.services.parser import (
    ParseFailure,
    ParseResult,
    detect_content_type,
    list_archive_members,
    parse_archive_member,
    parse_csv_bytes,
    parse_upload,
)


def _zip(entries, compression=zipfile.ZIP_STORED) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=compression) as archive:
        for name, payload in entries.items():
            archive.writestr(name, payload)
    return buffer.getvalue()


def test_parse_csv_strips_bom_and_pads_short_rows():
    content = "\ufeffsku,name,price\nA-1,Widget\n\nA-2,Gadget,3.50\n".encode("utf-8")

    result = parse_csv_bytes(content, "products.csv")

    assert result.headers == ["sku", "name", "price"]
    assert result.rows == [["A-1", "Widget", ""], ["A-2", "Gadget", "3.50"]]
    assert result.total_rows == 2


def test_parse_csv_truncates_extra_columns():
    result = parse_csv_bytes(b"sku,name\nA-1,Widget,surplus\n", "products.csv")
    assert result.rows == [["A-1", "Widget"]]


def test_parse_csv_header_only_has_zero_rows():
    result = parse_csv_bytes(b"sku,name\n", "empty.csv")
    assert result.total_rows == 0


def test_parse_csv_empty_file_fails():
    with pytest.raises(ParseError, match="empty"):
        parse_csv_bytes(b"", "nothing.csv")


def test_parse_csv_blank_headers_fail():
    with pytest.raises(ParseError):
        parse_csv_bytes(b" , \nA,B\n", "blank.csv")


def test_parse_csv_invalid_encoding_fails():
    with pytest.raises(ParseError, match="encoding"):
        parse_csv_bytes(b"sku,name\n\xff\xfe\xfa,bad\n", "latin.csv")


@pytest.mark.parametrize(
    "filename,declared,expected",
    [
        ("products.csv", None, "csv"),
        ("bundle.ZIP", None, "zip"),
        ("upload.bin", "text/csv", "csv"),
        ("upload.bin", "application/zip", "zip"),
        ("products.csv", "application/octet-stream", "csv"),
    ],
)
def test_detect_content_type(filename, declared, expected):
    assert detect_content_type(filename, declared) == expected


def test_detect_content_type_rejects_unknown():
    with pytest.raises(ParseError, match="Unsupported"):
        detect_content_type("report.xlsx")


def test_list_archive_members_skips_metadata_and_non_csv():
    content = _zip(
        {
            "a.csv": "sku\n1\n",
            "nested/b.csv": "sku\n2\n",
            "__MACOSX/._a.csv": "junk",
            ".DS_Store": "junk",
            "notes/.hidden.csv": "sku\n3\n",
            "readme.txt": "hello",
        }
    )

    assert list_archive_members(content) == ["a.csv", "nested/b.csv"]


def test_list_archive_members_rejects_non_zip():
    with pytest.raises(ParseError, match="ZIP"):
        list_archive_members(b"definitely not a zip")


def test_parse_archive_member_uses_basename():
    content = _zip({"nested/b.csv": "sku,name\nB-1,Bolt\n"}, compression=zipfile.ZIP_DEFLATED)

    result = parse_archive_member(content, "nested/b.csv")

    assert result.source_filename == "b.csv"
    assert result.rows == [["B-1", "Bolt"]]


def test_parse_upload_reports_bad_members_without_failing_the_rest():
    content = _zip({"good.csv": "sku\nG-1\n", "bad.csv": b"sku\n\xff\xff\n"})

    results = parse_upload(content, "bundle.zip")

    assert isinstance(results[0], ParseResult)
    assert results[0].source_filename == "good.csv"
    assert isinstance(results[1], ParseFailure)
    assert results[1].archive_member == "bad.csv"
    assert "encoding" in results[1].reason
