"""Turn uploaded bytes (CSV, or ZIP of CSVs) into parsed row sets."""

from __future__ import annotations

import csv
import io
import logging
import posixpath
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Iterator

from catalog_ingest.core.errors import ParseError
from catalog_ingest.utils.csv_validator import validate_headers

logger = logging.getLogger(__name__)

CSV = "csv"
ZIP = "zip"
SUPPORTED_CONTENT_TYPES = (CSV, ZIP)
SKIPPED_ARCHIVE_NAMES = ("__MACOSX", "Thumbs.db", "Desktop.ini", ".DS_Store")


@dataclass
class ParseResult:
    rows: list[list[str]]
    headers: list[str]
    source_filename: str

    @property
    def total_rows(self) -> int:
        return len(self.rows)


@dataclass
class ParseFailure:
    source_filename: str
    reason: str
    archive_member: str | None = field(default=None)


def detect_content_type(filename: str, declared: str | None = None) -> str:
    """Resolve ``csv``/``zip`` from the declared type or the filename suffix."""
    if declared:
        normalized = declared.lower().strip()
        if normalized in ("text/csv", "application/csv"):
            normalized = CSV
        elif normalized in ("application/zip", "application/x-zip-compressed"):
            normalized = ZIP
        if normalized in SUPPORTED_CONTENT_TYPES:
            return normalized
    suffix = posixpath.splitext(filename.lower())[1].lstrip(".")
    if suffix in SUPPORTED_CONTENT_TYPES:
        return suffix
    raise ParseError(f"Unsupported file type for {filename!r}; expected .csv or .zip")


def parse_csv_bytes(content: bytes, source_filename: str) -> ParseResult:
    """Parse one CSV document. The header row is required and not counted."""
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(f"File encoding error in {source_filename}: {e}") from e

    try:
        reader = csv.reader(io.StringIO(text, newline=""))
        try:
            raw_headers = next(reader)
        except StopIteration:
            raise ParseError(f"CSV file {source_filename} is empty") from None
        headers = validate_headers(raw_headers)

        width = len(headers)
        rows: list[list[str]] = []
        for raw in reader:
            if not raw or all(not cell.strip() for cell in raw):
                continue
            if len(raw) < width:
                raw = raw + [""] * (width - len(raw))
            rows.append(raw[:width])
    except csv.Error as e:
        raise ParseError(f"CSV parsing error in {source_filename}: {e}") from e

    logger.info(f"Parsed {source_filename}: {len(rows)} rows, headers={headers}")
    return ParseResult(rows=rows, headers=headers, source_filename=source_filename)


def _is_skipped_member(name: str) -> bool:
    basename = posixpath.basename(name)
    if basename.startswith("."):
        return True
    return any(marker in name for marker in SKIPPED_ARCHIVE_NAMES)


def _open_archive(content: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise ParseError(f"Failed to open ZIP archive: {e}") from e


def list_archive_members(content: bytes) -> list[str]:
    """Return CSV member names in archive order without reading their rows."""
    with _open_archive(content) as archive:
        members = []
        for info in archive.infolist():
            if info.is_dir() or _is_skipped_member(info.filename):
                continue
            if not info.filename.lower().endswith(".csv"):
                continue
            members.append(info.filename)
    return members


def parse_archive_member(content: bytes, member: str) -> ParseResult:
    """Extract and parse a single CSV member of a ZIP archive."""
    with _open_archive(content) as archive:
        try:
            payload = archive.read(member)
        except KeyError as e:
            raise ParseError(f"Archive entry not found: {member}") from e
        except (
            zipfile.BadZipFile,
            zipfile.LargeZipFile,
            zlib.error,
            NotImplementedError,
            RuntimeError,
            OSError,
            EOFError,
        ) as e:
            # Corrupt member data, unsupported compression or encryption
            raise ParseError(f"Failed to extract {member}: {e}") from e
    return parse_csv_bytes(payload, posixpath.basename(member))


def iter_archive(content: bytes) -> Iterator[ParseResult | ParseFailure]:
    """Yield one result per CSV member; bad members are reported, not fatal."""
    for member in list_archive_members(content):
        try:
            yield parse_archive_member(content, member)
        except ParseError as e:
            logger.warning(f"Skipping archive entry {member}: {e}")
            yield ParseFailure(
                source_filename=posixpath.basename(member),
                reason=str(e),
                archive_member=member,
            )


def parse_upload(
    content: bytes, filename: str, content_type: str | None = None
) -> list[ParseResult | ParseFailure]:
    """Parse an upload into one result per source CSV."""
    kind = detect_content_type(filename, content_type)
    if kind == CSV:
        return [parse_csv_bytes(content, filename)]
    return list(iter_archive(content))
