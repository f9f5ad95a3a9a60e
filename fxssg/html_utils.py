"""HTML utility functions for fxssg.

This module provides the small amount of tag-level HTML handling the pipeline
needs: locating start tags, splitting a start tag into an ordered attribute
map and serializing it back.

Attribute values are kept exactly as written in the source (entities are not
decoded), so serializing only has to re-quote them.

Functions:
    quote_attribute: Make a raw attribute value safe inside double quotes.
    find_tags: Locate start tags of a given element name.
    parse_attributes: Parse the attribute section of a start tag.
    render_start_tag: Serialize a tag name and attributes back to markup.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping

# Attribute regex: name, then an optional double-quoted, single-quoted or bare value
_ATTR_RE = re.compile(
    r"""(?P<name>[^\s"'<>/=]+)"""
    r"""(?:\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<bare>[^\s"'=<>`]+)))?"""
)


def quote_attribute(value: str) -> str:
    """Return a raw attribute value wrapped in double quotes.

    Args:
        value: Attribute value as found in the source markup.

    Returns:
        The quoted value; embedded double quotes become ``&quot;``.

    Examples:
        >>> quote_attribute("it's")
        '"it\\'s"'
        >>> quote_attribute('say "hi"')
        '"say &quot;hi&quot;"'
    """
    return '"' + value.replace('"', "&quot;") + '"'


def find_tags(html: str, name: str) -> Iterator[re.Match]:
    """Yield every start tag ``<name ...>`` in the markup, case-insensitively.

    Args:
        html: Markup to scan.
        name: Element name, e.g. ``img``.

    Returns:
        Iterator of regex matches; group ``attrs`` holds the attribute text.
    """
    pattern = re.compile(
        rf"<{re.escape(name)}(?P<attrs>(?:\s(?:[^>\"']|\"[^\"]*\"|'[^']*')*)?)>",
        re.IGNORECASE,
    )
    return pattern.finditer(html)


def parse_attributes(text: str) -> tuple[dict[str, str | None], bool]:
    """Parse the attribute section of a start tag.

    Attribute names are lower-cased. Valueless attributes map to None.
    A duplicated attribute keeps its first value, as browsers do.

    Args:
        text: Everything between the tag name and the closing ``>``.

    Returns:
        Tuple of (ordered attribute map, whether the tag was self-closing).

    Examples:
        >>> parse_attributes(' src="a.png" alt=x hidden /')
        ({'src': 'a.png', 'alt': 'x', 'hidden': None}, True)
    """
    body = text.strip()
    self_closing = body.endswith("/")
    if self_closing:
        body = body[:-1]
    attrs: dict[str, str | None] = {}
    for match in _ATTR_RE.finditer(body):
        name = match.group("name").lower()
        if name in attrs:
            continue
        value = None
        for group in ("dq", "sq", "bare"):
            if match.group(group) is not None:
                value = match.group(group)
                break
        attrs[name] = value
    return attrs, self_closing


def render_start_tag(
    name: str, attrs: Mapping[str, str | None], self_closing: bool = False
) -> str:
    """Serialize a start tag.

    Args:
        name: Element name.
        attrs: Ordered attribute map; None values render as bare names.
        self_closing: Whether to emit the XHTML-style `` />`` ending.

    Returns:
        The start tag markup.

    Examples:
        >>> render_start_tag("img", {"src": "a.png", "hidden": None})
        '<img src="a.png" hidden>'
    """
    parts = [name]
    for attr, value in attrs.items():
        if value is None:
            parts.append(attr)
        else:
            parts.append(f"{attr}={quote_attribute(value)}")
    closing = " />" if self_closing else ">"
    return "<" + " ".join(parts) + closing
