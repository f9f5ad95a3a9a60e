"""Partial store and build versioning for fxssg.

Fragments are collected in two stages. First every fragment's minified HTML
is added under its name. Then the store is sealed: the build fingerprint is
computed over all payloads in insertion order, and only from that point can
fragment route keys be produced. Every fragment in a build shares the same
version prefix::

    /__fx/v<fingerprint>/<name>

so changing any fragment moves all of them to new addresses.

Pages are tracked separately under their plain, unversioned routes; they are
written to disk and never served from the edge map.

Collisions are accepted overwrites: a fragment added under a name already in
use replaces the earlier entry, and a fragment sharing its name with a page is
reported. Both are logged and recorded, never raised.

Key classes:
- PartialEntry: A route key and its HTML.
- RouteCollision: Record of an accepted overwrite.
- PartialStore: Single-writer aggregate threaded through the build.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .utils import short_digest

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "/__fx"


@dataclass(frozen=True)
class PartialEntry:
    """A fragment route key and the HTML served for it."""

    route_key: str
    html: str


@dataclass(frozen=True)
class RouteCollision:
    """An accepted route overwrite.

    Attributes:
        name: The colliding addressable name.
        kind: ``"fragment"`` when a fragment replaced another fragment,
            ``"page"`` when a fragment and a page share a name.
        source: Description of the later writer.
    """

    name: str
    kind: str
    source: str = ""

    def describe(self) -> str:
        if self.kind == "fragment":
            return f"Collision: fragment '{self.name}' overwrites an earlier fragment"
        return f"Collision: fragment '{self.name}' shares its name with page '/{self.name}'"


def compute_fingerprint(payloads: Iterable[str]) -> str:
    """Return the build fingerprint for an ordered sequence of payloads."""
    return short_digest(payloads)


@dataclass
class PartialStore:
    """Accumulates fragment HTML and rendered pages for one build.

    Attributes:
        prefix: Route namespace for fragments.
        collisions: Overwrites accepted so far, in order.
    """

    prefix: str = DEFAULT_PREFIX
    collisions: list[RouteCollision] = field(default_factory=list)
    _fragments: dict[str, str] = field(default_factory=dict, init=False)
    _pages: dict[str, Path] = field(default_factory=dict, init=False)
    _fingerprint: str | None = field(default=None, init=False)

    @property
    def sealed(self) -> bool:
        return self._fingerprint is not None

    @property
    def fingerprint(self) -> str:
        """The build fingerprint.

        Raises:
            RuntimeError: If the store has not been sealed yet.
        """
        if self._fingerprint is None:
            raise RuntimeError("Fingerprint requested before all fragments were added")
        return self._fingerprint

    @property
    def fragment_names(self) -> list[str]:
        return list(self._fragments)

    @property
    def pages(self) -> dict[str, Path]:
        """Unversioned page routes mapped to the files written for them."""
        return dict(self._pages)

    def add_fragment(self, name: str, html: str, source: str = "") -> None:
        """Add a fragment's minified HTML.

        A name that is already present is overwritten; the collision is
        logged and recorded. A name matching an existing page is reported
        the same way.

        Raises:
            RuntimeError: If the store is already sealed.
        """
        if self.sealed:
            raise RuntimeError(f"Cannot add fragment '{name}' after the fingerprint was computed")
        if name in self._fragments:
            self._collide(RouteCollision(name, "fragment", source))
        if self._page_name_taken(name):
            self._collide(RouteCollision(name, "page", source))
        self._fragments[name] = html

    def add_page(self, route_key: str, output_path: Path) -> None:
        """Record a page written to disk under its unversioned route."""
        name = route_key.strip("/")
        if name and name in self._fragments:
            self._collide(RouteCollision(name, "page", str(output_path)))
        self._pages[route_key] = output_path

    def seal(self) -> str:
        """Compute the fingerprint over all fragment payloads.

        Sealing is idempotent; later calls return the same fingerprint.
        """
        if self._fingerprint is None:
            self._fingerprint = compute_fingerprint(self._fragments.values())
            logger.debug(
                "Sealed %d fragments with fingerprint %s",
                len(self._fragments),
                self._fingerprint,
            )
        return self._fingerprint

    def route_key(self, name: str) -> str:
        """Return the versioned route for a fragment name."""
        return f"{self.prefix}/v{self.fingerprint}/{name}"

    def route_keys(self) -> dict[str, str]:
        """Map each fragment name to its versioned route."""
        return {name: self.route_key(name) for name in self._fragments}

    def entries(self) -> list[PartialEntry]:
        return [
            PartialEntry(self.route_key(name), html)
            for name, html in self._fragments.items()
        ]

    def routes(self) -> dict[str, str]:
        """The edge dispatch table: versioned route to HTML."""
        return {entry.route_key: entry.html for entry in self.entries()}

    def get(self, route_key: str) -> str | None:
        return self.routes().get(route_key)

    def _page_name_taken(self, name: str) -> bool:
        return any(route.strip("/") == name for route in self._pages)

    def _collide(self, collision: RouteCollision) -> None:
        logger.warning(collision.describe())
        self.collisions.append(collision)
