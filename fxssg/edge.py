"""Edge dispatch script generation for fxssg.

The emitted script is a standalone fetch handler. It embeds the fragment map
and answers exact path matches with the stored HTML; every other request is
passed to the origin untouched. There is no prefix matching and no
trailing-slash normalization.

Responses are cached as immutable: a fragment's route already carries the
build fingerprint, so its content can never change under the same path.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

ONE_YEAR = 31536000
CONTENT_TYPE = "text/html; charset=utf-8"

SCRIPT_TEMPLATE = """\
const fragments = {routes};
addEventListener("fetch", (event) => event.respondWith(handleRequest(event.request)));
async function handleRequest(request) {{
  const url = new URL(request.url);
  if (Object.prototype.hasOwnProperty.call(fragments, url.pathname)) {{
    return new Response(fragments[url.pathname], {{
      status: 200,
      headers: {{
        "Content-Type": {content_type},
        "Cache-Control": {cache_control},
      }},
    }});
  }}
  return fetch(request);
}}
"""


class EdgeScriptEmitter:
    """Serializes a route map into an edge dispatch script.

    Attributes:
        max_age: ``max-age`` in seconds for fragment responses.
    """

    def __init__(self, max_age: int = ONE_YEAR):
        self.max_age = max_age

    @property
    def cache_control(self) -> str:
        return f"public, max-age={self.max_age}, immutable"

    def render(self, routes: Mapping[str, str]) -> str:
        """Return the script source for a route map.

        Args:
            routes: Versioned route to HTML.

        Returns:
            JavaScript source text.
        """
        return SCRIPT_TEMPLATE.format(
            routes=json.dumps(dict(routes), ensure_ascii=True, sort_keys=True, indent=2),
            content_type=json.dumps(CONTENT_TYPE),
            cache_control=json.dumps(self.cache_control),
        )

    def write(self, routes: Mapping[str, str], path: Path) -> Path:
        """Render the script and write it to ``path``.

        Returns:
            The path written.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(routes), encoding="utf-8")
        logger.info("Edge script written to %s (%d routes)", path, len(routes))
        return path
