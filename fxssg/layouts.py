"""Layout rendering for fxssg.

A layout is a named pure function that takes a data record and returns the
full document markup. The record holds the page metadata plus three fields
filled in by the build:

- ``body``: the rendered page body (after the first image pass).
- ``fingerprint``: the build fingerprint shared by all fragments.
- ``fragments``: mapping of fragment name to its versioned route.

Layouts can be registered directly, or loaded from the layouts directory:

- ``<name>.py`` exposing a module-level ``render(data)`` function.
- ``<name>.html.jinja`` or ``<name>.jinja`` rendered with Jinja2, with
  ``body`` marked safe so it is not escaped.

Key classes:
- LayoutRenderer: Selects and invokes layouts.
- PythonLayoutLoader / JinjaLayoutLoader: Storage formats.
- MissingLayout: Raised when no layout is registered under a name.
"""

from __future__ import annotations

import importlib.util
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup

from .protocols import LayoutFunction, LayoutLoader

logger = logging.getLogger(__name__)

DEFAULT_LAYOUT = "base"


class MissingLayout(Exception):
    """Error raised when a page names a layout that does not exist.

    Attributes:
        name: The requested layout name.
        searched_paths: Files that were checked.
    """

    def __init__(self, name: str, searched_paths: list[Path] | None = None):
        self.name = name
        self.searched_paths = searched_paths or []
        if self.searched_paths:
            paths_str = ", ".join(str(p) for p in self.searched_paths)
            message = f"Layout '{name}' not found. Searched: {paths_str}"
        else:
            message = f"Layout '{name}' not found"
        super().__init__(message)


class PythonLayoutLoader:
    """Loads ``<name>.py`` layouts exposing ``render(data)``."""

    def __init__(self, layouts_dir: Path):
        self.layouts_dir = layouts_dir

    def candidates(self, name: str) -> list[Path]:
        return [self.layouts_dir / f"{name}.py"]

    def load(self, name: str) -> LayoutFunction | None:
        path = self.layouts_dir / f"{name}.py"
        if not path.is_file():
            return None
        spec = importlib.util.spec_from_file_location(f"fxssg_layout_{name}", path)
        if spec is None or spec.loader is None:
            return None
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        render = getattr(module, "render", None)
        if not callable(render):
            raise TypeError(f"Layout module {path} does not define render(data)")
        return render


class JinjaLayoutLoader:
    """Loads Jinja2 template layouts.

    Templates may include or extend each other through the shared
    FileSystemLoader rooted at the layouts directory.
    """

    SUFFIXES = (".html.jinja", ".jinja")

    def __init__(self, layouts_dir: Path):
        self.layouts_dir = layouts_dir
        self.env = Environment(
            loader=FileSystemLoader([layouts_dir]),
            autoescape=select_autoescape(["html", "xml", "jinja"]),
            enable_async=False,
        )

    def candidates(self, name: str) -> list[Path]:
        return [self.layouts_dir / f"{name}{suffix}" for suffix in self.SUFFIXES]

    def load(self, name: str) -> LayoutFunction | None:
        for suffix in self.SUFFIXES:
            if (self.layouts_dir / f"{name}{suffix}").is_file():
                template = self.env.get_template(f"{name}{suffix}")

                def render(data: Mapping[str, Any], _template=template) -> str:
                    context = dict(data)
                    context["body"] = Markup(context.get("body", ""))
                    return _template.render(**context)

                return render
        return None


class LayoutRenderer:
    """Selects a layout by name and applies it to a page.

    Registered layouts take precedence over files. Loaded layouts are
    cached for the lifetime of the renderer.

    Attributes:
        layouts_dir: Directory holding layout files, or None.
        default: Layout used when metadata has no ``layout`` entry.
    """

    def __init__(
        self,
        layouts_dir: Path | None = None,
        default: str = DEFAULT_LAYOUT,
        loaders: list[LayoutLoader] | None = None,
    ):
        self.layouts_dir = layouts_dir
        self.default = default
        self._layouts: dict[str, LayoutFunction] = {}
        if loaders is not None:
            self._loaders = list(loaders)
        elif layouts_dir is not None:
            self._loaders = [PythonLayoutLoader(layouts_dir), JinjaLayoutLoader(layouts_dir)]
        else:
            self._loaders = []

    def register(self, name: str, layout: LayoutFunction) -> None:
        """Register a layout function under a name."""
        self._layouts[name] = layout

    def resolve(self, name: str) -> LayoutFunction:
        """Return the layout registered or stored under ``name``.

        Raises:
            MissingLayout: If no loader knows the name.
        """
        if name in self._layouts:
            return self._layouts[name]
        for loader in self._loaders:
            layout = loader.load(name)
            if layout is not None:
                logger.debug("Loaded layout %s via %s", name, type(loader).__name__)
                self._layouts[name] = layout
                return layout
        searched = [path for loader in self._loaders for path in loader.candidates(name)]
        raise MissingLayout(name, searched)

    def layout_name(self, metadata: Mapping[str, str]) -> str:
        return metadata.get("layout") or self.default

    def render(
        self,
        metadata: Mapping[str, str],
        body: str,
        fingerprint: str,
        fragments: Mapping[str, str] | None = None,
    ) -> str:
        """Render a page through its layout.

        Args:
            metadata: Page metadata.
            body: Rendered page body.
            fingerprint: Build fingerprint.
            fragments: Fragment name to versioned route mapping.

        Returns:
            Full document markup.

        Raises:
            MissingLayout: If the selected layout does not exist.
        """
        layout = self.resolve(self.layout_name(metadata))
        data: dict[str, Any] = dict(metadata)
        data["body"] = body
        data["fingerprint"] = fingerprint
        data["fragments"] = dict(fragments or {})
        return layout(data)
