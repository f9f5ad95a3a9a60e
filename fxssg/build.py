"""Site building functionality for fxssg.

This module contains the core logic for building a site from ``.fx`` sources.
It loads configuration, parses documents, renders pages and fragments, and
writes the page tree and the edge dispatch script.

The build runs in a fixed order:

1. Pre-flight: the pages directory must exist, before anything is written.
2. Output setup and asset copy.
3. All documents are read and parsed concurrently.
4. Fragments: first image pass and minification, concurrently. Then they are
   added to the partial store in listing order and the store is sealed,
   which fixes the build fingerprint.
5. Pages, concurrently: first image pass on the body, layout, second image
   pass on the full document, minification, disk write.
6. The edge script is emitted from the sealed store.

Page-scoped problems (unreadable file, missing layout, a layout that raises,
any other failure while rendering or writing) skip that page and the build
carries on. Layout rendering and minification run in worker threads so
pages in flight do not block each other.

Key functions:
- build_site: Build the whole site (blocking).
- build_site_async: The same build as a coroutine.
- load_config: Load configuration from fxssg.yaml.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .content import ContentDocument, ContentLoader, load_document, page_output_name
from .edge import EdgeScriptEmitter
from .images import DerivedImageCache, ImageDerivationEngine
from .layouts import LayoutRenderer, MissingLayout
from .minify import Minifier
from .partials import PartialStore, RouteCollision
from .protocols import MarkupMinifier
from .utils import copy_assets, ensure_clean_dir

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "fxssg.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "source_dir": "src",
    "pages_dir": "src/pages",
    "fragments_dir": "src/fragments",
    "assets_dir": "src/assets",
    "layouts_dir": "src/layouts",
    "output_dir": "public",
    "edge_dir": "edgescript",
    "edge_script": "worker.js",
    "extension": ".fx",
    "default_layout": "base",
    "image_sizes": [480, 800, 1200],
    "image_quality": 80,
    "image_marker": "data-opt",
    "image_cache": "content",
    "cache_dir": ".fxcache",
    "fragment_prefix": "/__fx",
    "cache_max_age": 31536000,
}


class BuildError(Exception):
    """Error during site build with file context.

    Attributes:
        source_path: Path to the file or directory that caused the error.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}")


class MissingContentRoot(BuildError):
    """The pages directory does not exist. Raised before any output is written."""

    def __init__(self, source_path: Path):
        super().__init__(source_path, "Could not find the pages directory")


@dataclass
class BuildResult:
    """Result of a site build operation.

    Attributes:
        pages: Unversioned page routes mapped to the files written.
        fragments: Fragment names mapped to their versioned routes.
        fingerprint: Build fingerprint shared by all fragment routes.
        output_dir: Directory where the pages were written.
        edge_script: Path of the generated edge dispatch script.
        skipped: Source files that produced no output.
        collisions: Route overwrites accepted during the build.
    """

    pages: dict[str, Path]
    fragments: dict[str, str]
    fingerprint: str
    output_dir: Path
    edge_script: Path
    skipped: list[Path] = field(default_factory=list)
    collisions: list[RouteCollision] = field(default_factory=list)


def load_config(project_root: Path) -> dict[str, Any]:
    """Load build configuration from fxssg.yaml.

    Args:
        project_root: Root directory of the project.

    Returns:
        Dictionary containing configuration values, with defaults applied.
    """
    config_path = project_root / CONFIG_FILENAME
    config = DEFAULT_CONFIG.copy()
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                config.update(loaded)
    return config


def _format_error_message(exc: Exception) -> str:
    """Format an exception into a user-friendly error message.

    Args:
        exc: The exception to format.

    Returns:
        A human-readable error message.
    """
    error_type = type(exc).__name__
    error_msg = str(exc)

    # Handle common Jinja2/template errors
    if error_type == "TemplateSyntaxError":
        lineno = getattr(exc, "lineno", None)
        return f"Template syntax error on line {lineno}: {getattr(exc, 'message', error_msg)}"
    if error_type == "UndefinedError":
        return f"Undefined variable: {error_msg}"
    if error_type == "TypeError":
        return f"Type error: {error_msg}"

    return f"{error_type}: {error_msg}"


def _write_page(output_path: Path, rendered: str) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(rendered)


class SiteBuilder:
    """Runs one build of a project.

    The builder owns the partial store; stages hand their results back and
    the builder is the only writer, so concurrent stages never race on it.

    Attributes:
        project_root: Root directory of the project.
        config: Effective configuration.
        output_dir: Page output directory.
        store: Partial store for this build.
    """

    def __init__(
        self,
        project_root: Path,
        config: dict[str, Any],
        output_dir: Path,
        layouts: LayoutRenderer | None = None,
        minifier: MarkupMinifier | None = None,
    ):
        self.project_root = project_root
        self.config = config
        self.output_dir = output_dir
        self.pages_dir = self._path("pages_dir")
        self.fragments_dir = self._path("fragments_dir")
        self.edge_path = self._path("edge_dir") / str(config["edge_script"])
        self.cache = DerivedImageCache.load(
            self._path("cache_dir") / "images.json", str(config["image_cache"])
        )
        self.images = ImageDerivationEngine(
            source_root=self._path("source_dir"),
            output_root=output_dir,
            sizes=tuple(int(size) for size in config["image_sizes"]),
            quality=int(config["image_quality"]),
            marker=str(config["image_marker"]),
            cache=self.cache,
        )
        self.layouts = layouts or LayoutRenderer(
            self._path("layouts_dir"), default=str(config["default_layout"])
        )
        self.minifier = minifier or Minifier()
        self.store = PartialStore(prefix=str(config["fragment_prefix"]).rstrip("/"))
        self.skipped: list[Path] = []

    def _path(self, key: str) -> Path:
        return self.project_root / str(self.config[key])

    async def build(self) -> BuildResult:
        """Run the build after pre-flight and output setup.

        Returns:
            BuildResult describing everything written.
        """
        extension = str(self.config["extension"])
        page_paths = ContentLoader(self.pages_dir, extension).iter_files()
        fragment_paths = ContentLoader(self.fragments_dir, extension).iter_files()
        loaded = await asyncio.gather(
            *(self._load(path) for path in page_paths + fragment_paths)
        )

        pages: list[ContentDocument] = []
        fragments: list[ContentDocument] = []
        for document in loaded:
            if document is None:
                continue
            if not document.is_fragment:
                pages.append(document)
                continue
            if document.source_path is not None and document.source_path.parent == self.pages_dir:
                logger.warning(
                    "Page %s is missing the '------' separator; using it as a fragment",
                    document.source_path.name,
                )
            fragments.append(document)

        fingerprint = await self._build_fragments(fragments)
        await self._build_pages(self._unique_outputs(pages), fingerprint)

        edge_script = EdgeScriptEmitter(int(self.config["cache_max_age"])).write(
            self.store.routes(), self.edge_path
        )
        self.cache.save()
        return BuildResult(
            pages=self.store.pages,
            fragments=self.store.route_keys(),
            fingerprint=fingerprint,
            output_dir=self.output_dir,
            edge_script=edge_script,
            skipped=list(self.skipped),
            collisions=list(self.store.collisions),
        )

    async def _load(self, path: Path) -> ContentDocument | None:
        try:
            return await asyncio.to_thread(load_document, path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Could not read %s: %s", path, exc)
            self.skipped.append(path)
            return None

    async def _build_fragments(self, fragments: list[ContentDocument]) -> str:
        payloads = await asyncio.gather(
            *(self._prepare_fragment(document) for document in fragments)
        )
        for document, html in zip(fragments, payloads):
            if html is None:
                if document.source_path is not None:
                    self.skipped.append(document.source_path)
                continue
            self.store.add_fragment(document.slug, html, source=str(document.source_path))

        # Route keys depend on every payload, so none exist before this point
        fingerprint = self.store.seal()
        for document in fragments:
            if document.slug in self.store.fragment_names:
                document.route_key = self.store.route_key(document.slug)
        for route_key in self.store.route_keys().values():
            logger.info("Fragment: %s", route_key)
        return fingerprint

    async def _prepare_fragment(self, document: ContentDocument) -> str | None:
        try:
            body = await self.images.process(document.body)
            return await asyncio.to_thread(self.minifier.minify, body)
        except Exception as exc:
            logger.error("Skipping fragment %s: %s", document.slug, _format_error_message(exc))
            return None

    def _unique_outputs(self, pages: list[ContentDocument]) -> list[ContentDocument]:
        """Keep the last page for each output file (``home`` and ``index`` share one)."""
        by_output: dict[str, ContentDocument] = {}
        for document in pages:
            name = page_output_name(document.slug)
            earlier = by_output.get(name)
            if earlier is not None:
                logger.warning(
                    "Pages '%s' and '%s' both write %s; using '%s'",
                    earlier.slug,
                    document.slug,
                    name,
                    document.slug,
                )
                if earlier.source_path is not None:
                    self.skipped.append(earlier.source_path)
                del by_output[name]
            by_output[name] = document
        return list(by_output.values())

    async def _build_pages(self, pages: list[ContentDocument], fingerprint: str) -> None:
        route_keys = self.store.route_keys()
        written = await asyncio.gather(
            *(self._render_page(document, fingerprint, route_keys) for document in pages)
        )
        for document, output_path in zip(pages, written):
            if output_path is None:
                if document.source_path is not None:
                    self.skipped.append(document.source_path)
                continue
            self.store.add_page(document.route_key or "/", output_path)

    async def _render_page(
        self,
        document: ContentDocument,
        fingerprint: str,
        route_keys: dict[str, str],
    ) -> Path | None:
        output_path = self.output_dir / page_output_name(document.slug)
        try:
            body = await self.images.process(document.body)
            rendered = await asyncio.to_thread(
                self.layouts.render, document.metadata, body, fingerprint, route_keys
            )
            rendered = await self.images.process(rendered)
            rendered = await asyncio.to_thread(self.minifier.minify, rendered)
            await asyncio.to_thread(_write_page, output_path, rendered)
        except MissingLayout as exc:
            logger.error("Skipping %s: %s", document.slug, exc)
            return None
        except Exception as exc:
            logger.error("Skipping %s: %s", document.slug, _format_error_message(exc))
            return None
        logger.info("Page: %s", document.route_key)
        return output_path


def prepare_output(
    project_root: Path,
    config: dict[str, Any],
    output_dir: Path,
    clean_output: bool = True,
) -> None:
    """Create the output directories and copy assets.

    Raises:
        MissingContentRoot: If the pages directory is missing. Checked first,
            so nothing is written for a project without content.
    """
    pages_dir = project_root / str(config["pages_dir"])
    if not pages_dir.is_dir():
        raise MissingContentRoot(pages_dir)

    if clean_output:
        ensure_clean_dir(output_dir)
    else:
        output_dir.mkdir(parents=True, exist_ok=True)
    (project_root / str(config["edge_dir"])).mkdir(parents=True, exist_ok=True)

    assets_dir = project_root / str(config["assets_dir"])
    copied = copy_assets(assets_dir, output_dir / assets_dir.name)
    if copied:
        logger.info("Copied %d asset files", copied)


async def build_site_async(
    project_root: Path,
    clean_output: bool = True,
    output_dir_override: Path | None = None,
    layouts: LayoutRenderer | None = None,
) -> BuildResult:
    """Build the site.

    Args:
        project_root: Root directory of the project.
        clean_output: Whether to wipe the output directory before building.
        output_dir_override: Optional path to write pages to instead of the
            configured output_dir.
        layouts: Optional pre-configured layout renderer.

    Returns:
        BuildResult for the build.

    Raises:
        MissingContentRoot: If the pages directory does not exist.
    """
    config = load_config(project_root)
    output_dir = output_dir_override or (project_root / str(config["output_dir"]))
    logger.info("Building from %s", project_root)
    prepare_output(project_root, config, output_dir, clean_output)
    builder = SiteBuilder(project_root, config, output_dir, layouts=layouts)
    return await builder.build()


def build_site(
    project_root: Path,
    clean_output: bool = True,
    output_dir_override: Path | None = None,
    layouts: LayoutRenderer | None = None,
) -> BuildResult:
    """Build the entire site, blocking until it is done.

    See build_site_async for the arguments.
    """
    return asyncio.run(
        build_site_async(
            project_root,
            clean_output=clean_output,
            output_dir_override=output_dir_override,
            layouts=layouts,
        )
    )
