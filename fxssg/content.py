"""Content processing for fxssg.

This module handles loading and parsing of ``.fx`` source documents.

A document is either a *page*, a header block of paired tags followed by a
delimiter line and a markup body::

    <title>About</title>
    <layout>base</layout>
    ------
    <h1>About us</h1>

or a *fragment*, a delimiter-free file whose whole text is the body. Fragments
have no metadata and are never wrapped in a layout.

Key classes:
- ContentDocument: Dataclass representing one parsed source file.
- ContentLoader: Discovers source files in a directory.

Key functions:
- parse_document: Split raw text into a ContentDocument.
- parse_metadata: Extract paired-tag metadata from a header block.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from .utils import is_source_file, slug_from_path

DELIMITER = "------"
DELIMITER_RE = re.compile(rf"^{re.escape(DELIMITER)}[ \t]*\r?$", re.MULTILINE)
METADATA_RE = re.compile(r"<(\w+)>(.*?)</\1>", re.DOTALL)

# Slugs served from the site root
HOME_SLUGS = frozenset({"home", "index"})


@dataclass
class ContentDocument:
    """Represents a single parsed source document.

    Attributes:
        slug: Filename without extension.
        route_key: Public route. Pages get a plain path at parse time;
            fragments stay None until the partial store assigns a
            versioned key.
        metadata: Values of the header tags (empty for fragments).
        body: Markup body.
        source_path: Path to the source file, when loaded from disk.
        has_header: Whether a delimiter line was found.
    """

    slug: str
    route_key: str | None
    metadata: dict[str, str] = field(default_factory=dict)
    body: str = ""
    source_path: Path | None = None
    has_header: bool = False

    @property
    def is_fragment(self) -> bool:
        """Whether the document is a bodiless-header fragment."""
        return not self.has_header


def parse_metadata(header: str) -> dict[str, str]:
    """Extract metadata from paired tags in a header block.

    Each ``<name>value</name>`` pair contributes one entry with the inner
    text trimmed. Unmatched or malformed tags are skipped. When a tag name
    repeats, the last occurrence wins.

    Args:
        header: Text before the delimiter line.

    Returns:
        Mapping of tag name to trimmed inner text.

    Examples:
        >>> parse_metadata("<title> A </title><title>B</title><bad>")
        {'title': 'B'}
    """
    metadata: dict[str, str] = {}
    for match in METADATA_RE.finditer(header):
        metadata[match.group(1)] = match.group(2).strip()
    return metadata


def page_route(slug: str) -> str:
    """Return the unversioned route for a page slug."""
    return "/" if slug in HOME_SLUGS else f"/{slug}"


def page_output_name(slug: str) -> str:
    """Return the output filename for a page slug."""
    return "index.html" if slug in HOME_SLUGS else f"{slug}.html"


def parse_document(
    text: str, slug: str, source_path: Path | None = None
) -> ContentDocument:
    """Parse raw document text.

    The first line that consists solely of the delimiter splits header from
    body. Anything after it, including further delimiter lines, is body.

    Args:
        text: Raw file contents.
        slug: Document slug.
        source_path: Optional path of the source file.

    Returns:
        ContentDocument for a page (delimiter found) or a fragment.
    """
    match = DELIMITER_RE.search(text)
    if match is None:
        return ContentDocument(
            slug=slug,
            route_key=None,
            metadata={},
            body=text.strip(),
            source_path=source_path,
            has_header=False,
        )
    header = text[: match.start()]
    body = text[match.end() :]
    return ContentDocument(
        slug=slug,
        route_key=page_route(slug),
        metadata=parse_metadata(header),
        body=body.strip(),
        source_path=source_path,
        has_header=True,
    )


def load_document(path: Path) -> ContentDocument:
    """Read and parse a source file.

    Args:
        path: Path to an ``.fx`` file.

    Returns:
        Parsed ContentDocument.

    Raises:
        OSError: If the file cannot be read.
        UnicodeDecodeError: If the file is not valid UTF-8.
    """
    text = path.read_text(encoding="utf-8")
    return parse_document(text, slug_from_path(path), source_path=path)


class ContentLoader:
    """Discovers source documents in a directory.

    Only top-level files are considered; the listing is sorted so that
    every build sees documents in the same order.

    Attributes:
        directory: Directory to scan.
        extension: Source file extension.
    """

    def __init__(self, directory: Path, extension: str = ".fx"):
        self.directory = directory
        self.extension = extension

    def iter_files(self) -> list[Path]:
        """List source files in directory order.

        Returns:
            Sorted list of source file paths. Empty if the directory is missing.
        """
        if not self.directory.is_dir():
            return []
        return sorted(
            (p for p in self.directory.iterdir() if is_source_file(p, self.extension)),
            key=lambda p: p.name,
        )
