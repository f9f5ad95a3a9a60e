"""HTML minification for fxssg.

The minifier compacts markup without changing what it renders. The markup
itself goes through minify-html, which knows which whitespace is significant
(inline text, ``<pre>``, ``<textarea>``), strips comments and drops
redundant attributes. Embedded code is compacted first: ``<script>`` bodies
go through rjsmin and ``<style>`` bodies through rcssmin. Scripts whose type
is not JavaScript (JSON data, templates) are left untouched.

Closing tags and the ``<html>``/``<head>`` start tags are always kept, so
fragments stay well-formed when they are swapped into a live page.

Key class:
- Minifier: Implements the MarkupMinifier protocol.
"""

from __future__ import annotations

import re

import minify_html
from rcssmin import cssmin
from rjsmin import jsmin

from .html_utils import parse_attributes

JS_TYPES = {"", "text/javascript", "application/javascript", "module"}

_EMBEDDED_RE = re.compile(
    r"(?P<open><(?P<tag>script|style)\b[^>]*>)(?P<content>.*?)(?P<close></(?P=tag)\s*>)",
    re.IGNORECASE | re.DOTALL,
)


class Minifier:
    """Compacts HTML documents and fragments.

    Attributes:
        minify_js: Whether to minify inline JavaScript.
        minify_css: Whether to minify inline CSS.
    """

    def __init__(self, minify_js: bool = True, minify_css: bool = True):
        self.minify_js = minify_js
        self.minify_css = minify_css

    def minify(self, html: str) -> str:
        """Minify markup.

        Args:
            html: Document or fragment markup.

        Returns:
            Compacted markup.
        """
        text = _EMBEDDED_RE.sub(self._compact_embedded, html)
        return minify_html.minify(
            text,
            keep_closing_tags=True,
            keep_comments=False,
            keep_html_and_head_opening_tags=True,
            minify_css=False,
            minify_js=False,
        )

    def _compact_embedded(self, match: re.Match) -> str:
        tag = match.group("tag").lower()
        open_tag = match.group("open")
        content = match.group("content")
        if content.strip():
            content = self._compact_block(tag, open_tag, content)
        return f"{open_tag}{content}{match.group('close')}"

    def _compact_block(self, tag: str, open_tag: str, content: str) -> str:
        if tag == "script":
            attrs, _ = parse_attributes(open_tag[len("<script") : -1])
            script_type = (attrs.get("type") or "").strip().lower()
            if self.minify_js and script_type in JS_TYPES:
                return jsmin(content).strip()
            return content
        if self.minify_css:
            return cssmin(content).strip()
        return content
