"""Protocol definitions for fxssg.

This module defines the interfaces (protocols) used at the seams of the
build pipeline, following the Dependency Inversion Principle (DIP).

These protocols enable:
- Loose coupling between the orchestrator and its stages
- Easy testing through stub layouts and minifiers
- New layout storage formats without touching the renderer
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class LayoutFunction(Protocol):
    """A layout: a pure function from a data record to full document markup."""

    def __call__(self, data: Mapping[str, Any]) -> str: ...


@runtime_checkable
class LayoutLoader(Protocol):
    """Protocol for turning a stored layout into a LayoutFunction.

    Each loader understands one storage format (Python module, Jinja
    template, ...). The renderer asks loaders in priority order.
    """

    @abstractmethod
    def candidates(self, name: str) -> list[Path]:
        """Return the files this loader would read for a layout name."""
        ...

    @abstractmethod
    def load(self, name: str) -> LayoutFunction | None:
        """Load a layout by name.

        Args:
            name: Layout name from page metadata.

        Returns:
            The layout function, or None if this loader has no such layout.
        """
        ...


@runtime_checkable
class MarkupMinifier(Protocol):
    """Protocol for HTML minification."""

    @abstractmethod
    def minify(self, html: str) -> str:
        """Return compacted markup with the same rendered meaning."""
        ...
