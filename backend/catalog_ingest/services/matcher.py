"""Business-key column resolution strategies."""

from __future__ import annotations

import logging
import re
from typing import Protocol, Sequence

from catalog_ingest.core.errors import ParseError

logger = logging.getLogger(__name__)

# Default inference order when no override is configured. Earlier aliases win.
DEFAULT_KEY_ALIASES = (
    "sku",
    "part_number",
    "partnumber",
    "part_no",
    "item_number",
    "item_no",
    "product_code",
    "id",
)


def normalize_header(header: str) -> str:
    """Lowercase and collapse spaces, dashes and dots into underscores."""
    collapsed = re.sub(r"[\s\-\.]+", "_", header.strip().lower())
    return collapsed.strip("_")


class Matcher(Protocol):
    def resolve(self, headers: Sequence[str], configured_override: str | None = None) -> int:
        """Return the index of the business-key column in ``headers``."""
        ...


class AliasMatcher:
    """Match the key column against an ordered list of header synonyms."""

    def __init__(self, aliases: Sequence[str] = DEFAULT_KEY_ALIASES):
        self.aliases = tuple(normalize_header(alias) for alias in aliases)

    def resolve(self, headers: Sequence[str], configured_override: str | None = None) -> int:
        normalized = [normalize_header(header) for header in headers]

        if configured_override:
            wanted = normalize_header(configured_override)
            if wanted in normalized:
                return normalized.index(wanted)
            logger.warning(
                f"Configured unique column {configured_override!r} not in headers, "
                "falling back to alias inference"
            )

        for alias in self.aliases:
            if alias in normalized:
                return normalized.index(alias)

        raise ParseError(
            f"Could not resolve a business-key column from headers {list(headers)}"
        )


default_matcher = AliasMatcher()
