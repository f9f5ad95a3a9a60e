"""Responsive image derivation for fxssg.

Marked ``<img>`` elements are turned into responsive images::

    <img src="/assets/hero.jpg" data-opt="300,600x400" alt="Hero">

becomes::

    <img src="/assets/hero.jpg" srcset="/assets/hero-300.webp 300w, /assets/hero-600x400.webp 600w" alt="Hero">

with the WebP variants written under the output directory, mirroring the
source asset path. A width-only size keeps the aspect ratio; ``WxH`` crops to
exactly that box around the centre. A marker without a value uses the default
sizes.

The engine runs twice per page, once on the body and once on the rendered
document. The marker attribute is removed when an element is rewritten, so
the second pass never selects an element the first pass already handled.

Key classes:
- ImageElement: Parsed ``<img>`` start tag with its optimization state.
- ImageDirective: What to derive for one element.
- ImageVariant: One derived rendition.
- DerivedImageCache: Decides whether an existing output file can be reused.
- ImageDerivationEngine: Finds, derives and rewrites marked elements.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import posixpath
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

from PIL import Image, ImageOps

from .html_utils import find_tags, parse_attributes, render_start_tag

logger = logging.getLogger(__name__)

DEFAULT_SIZES = (480, 800, 1200)
DEFAULT_QUALITY = 80
DEFAULT_MARKER = "data-opt"
OUTPUT_EXTENSION = "webp"
CACHE_STRATEGIES = ("content", "filename")


class ImageSourceNotFound(Exception):
    """Error raised when a marked image has no local source file.

    Attributes:
        src: The ``src`` attribute of the element.
        searched_path: Filesystem path that was checked, if any.
    """

    def __init__(self, src: str, searched_path: Path | None = None):
        self.src = src
        self.searched_path = searched_path
        where = f" (looked for {searched_path})" if searched_path else ""
        super().__init__(f"Image not found: {src!r}{where}")


class VariantWriteFailure(Exception):
    """Error raised when one variant cannot be produced.

    Attributes:
        output_path: The file that could not be written.
        original_error: The underlying exception.
    """

    def __init__(self, output_path: Path, original_error: Exception):
        self.output_path = output_path
        self.original_error = original_error
        super().__init__(f"Could not write {output_path}: {original_error}")


@dataclass(frozen=True)
class VariantSpec:
    """A requested size. Height is only set for cropped renditions."""

    width: int
    height: int | None = None

    @property
    def suffix(self) -> str:
        if self.height is None:
            return str(self.width)
        return f"{self.width}x{self.height}"


@dataclass
class ImageVariant:
    """A derived rendition of a source image.

    Attributes:
        width: Output width in pixels.
        height: Output height for cropped renditions, else None.
        output_path: Where the encoded file lives.
        descriptor: ``"<url> <width>w"`` entry for ``srcset``.
    """

    width: int
    height: int | None
    output_path: Path
    descriptor: str


@dataclass
class ImageDirective:
    """Everything needed to derive the variants of one element.

    Attributes:
        source_path: Resolved source file.
        variants: Requested sizes, in marker order.
        original_element_text: The element markup as found.
        output_dir: Directory the variants are written to.
        url_dir: URL directory the variants are served from.
        stem: Base name shared by all variant files.
    """

    source_path: Path
    variants: list[VariantSpec]
    original_element_text: str
    output_dir: Path
    url_dir: str
    stem: str

    def output_path(self, spec: VariantSpec) -> Path:
        return self.output_dir / f"{self.stem}-{spec.suffix}.{OUTPUT_EXTENSION}"

    def url(self, spec: VariantSpec) -> str:
        name = f"{self.stem}-{spec.suffix}.{OUTPUT_EXTENSION}"
        return f"{self.url_dir}/{name}" if self.url_dir else name


class ImageElement:
    """A parsed ``<img>`` start tag.

    The element is *optimizable* while it still carries the marker
    attribute. Rewriting consumes the marker, after which the element can
    never be selected again.

    Attributes:
        text: The tag markup as found in the document.
        attrs: Ordered attribute map.
        self_closing: Whether the tag used the `` />`` form.
        marker: Name of the marker attribute.
    """

    def __init__(
        self,
        text: str,
        attrs: dict[str, str | None],
        self_closing: bool = False,
        marker: str = DEFAULT_MARKER,
    ):
        self.text = text
        self.attrs = attrs
        self.self_closing = self_closing
        self.marker = marker

    @classmethod
    def from_tag(cls, text: str, attrs_text: str, marker: str = DEFAULT_MARKER):
        attrs, self_closing = parse_attributes(attrs_text)
        return cls(text, attrs, self_closing, marker)

    @property
    def optimizable(self) -> bool:
        return self.marker in self.attrs

    @property
    def src(self) -> str:
        return self.attrs.get("src") or ""

    @property
    def marker_value(self) -> str | None:
        return self.attrs.get(self.marker)

    def consume_marker(self) -> None:
        self.attrs.pop(self.marker, None)

    def rewrite(self, descriptors: Sequence[str]) -> str:
        """Consume the marker and return the tag with a ``srcset``.

        The ``srcset`` goes directly after ``src``; every other attribute
        keeps its position. An existing ``srcset`` is replaced.

        Args:
            descriptors: ``"<url> <width>w"`` entries.

        Returns:
            The rewritten tag markup.
        """
        self.consume_marker()
        srcset = ", ".join(descriptors)
        attrs: dict[str, str | None] = {}
        for name, value in self.attrs.items():
            if name == "srcset":
                continue
            attrs[name] = value
            if name == "src":
                attrs["srcset"] = srcset
        self.attrs = attrs
        self.text = render_start_tag("img", attrs, self.self_closing)
        return self.text


def parse_sizes(
    value: str | None, defaults: Iterable[int] = DEFAULT_SIZES
) -> list[VariantSpec]:
    """Parse a marker value into variant specs.

    Tokens are comma-separated ``W`` or ``WxH`` values. A missing or blank
    value yields the defaults, as does a value with no valid token.

    Args:
        value: Marker attribute value, or None for a bare marker.
        defaults: Widths to use when no explicit size is given.

    Returns:
        List of VariantSpec in the order given.

    Examples:
        >>> parse_sizes("300, 600x400")
        [VariantSpec(width=300, height=None), VariantSpec(width=600, height=400)]
    """
    fallback = [VariantSpec(int(width)) for width in defaults]
    if value is None or not value.strip():
        return fallback
    specs: list[VariantSpec] = []
    for token in value.split(","):
        token = token.strip().lower()
        if not token:
            continue
        width_text, _, height_text = token.partition("x")
        try:
            width = int(width_text)
            height = int(height_text) if height_text else None
        except ValueError:
            logger.warning("Ignoring invalid image size %r", token)
            continue
        if width <= 0 or (height is not None and height <= 0):
            logger.warning("Ignoring invalid image size %r", token)
            continue
        specs.append(VariantSpec(width, height))
    return specs or fallback


def file_digest(path: Path) -> str:
    """Return the SHA-256 hex digest of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


def render_variant(source: Path, dest: Path, spec: VariantSpec, quality: int) -> None:
    """Resize a source image and write it as WebP.

    Without a height the image is scaled to the target width keeping its
    aspect ratio. With a height it is scaled to cover the box and cropped
    around the centre.

    The file is written next to its destination first and moved into place,
    so a failed encode never leaves a partial file behind.

    Args:
        source: Source image path.
        dest: Destination path.
        spec: Requested size.
        quality: WebP quality (0-100).
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    try:
        with Image.open(source) as img:
            frame = img
            if frame.mode not in ("RGB", "RGBA"):
                has_alpha = "A" in frame.getbands() or "transparency" in frame.info
                frame = frame.convert("RGBA" if has_alpha else "RGB")
            if spec.height is None:
                height = max(1, round(frame.height * spec.width / frame.width))
                out = frame.resize((spec.width, height), Image.Resampling.LANCZOS)
            else:
                out = ImageOps.fit(
                    frame,
                    (spec.width, spec.height),
                    method=Image.Resampling.LANCZOS,
                    centering=(0.5, 0.5),
                )
            out.save(partial, format="WEBP", quality=quality)
        partial.replace(dest)
    finally:
        partial.unlink(missing_ok=True)


class DerivedImageCache:
    """Tracks derived files so unchanged variants are not re-encoded.

    With the ``content`` strategy each output file is recorded with a key
    built from the source bytes and the requested size, and is only reused
    while that key matches. The ``filename`` strategy reuses any existing
    file of the right name, even if the source changed since.

    Attributes:
        manifest_path: JSON file the keys are persisted to, or None.
        strategy: ``"content"`` or ``"filename"``.
    """

    def __init__(self, manifest_path: Path | None = None, strategy: str = "content"):
        if strategy not in CACHE_STRATEGIES:
            raise ValueError(f"Unknown image cache strategy: {strategy}")
        self.manifest_path = manifest_path
        self.strategy = strategy
        self._entries: dict[str, str] = {}

    @classmethod
    def load(cls, manifest_path: Path, strategy: str = "content") -> DerivedImageCache:
        """Create a cache backed by a manifest file, reading it if present.

        A corrupt manifest is ignored; every variant is then re-derived once.
        """
        cache = cls(manifest_path, strategy)
        if manifest_path.exists():
            try:
                payload = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable image cache %s: %s", manifest_path, exc)
                payload = {}
            if isinstance(payload, dict):
                cache._entries = {str(k): str(v) for k, v in payload.items()}
        return cache

    @property
    def uses_content(self) -> bool:
        return self.strategy == "content"

    def key(self, source_digest: str, spec: VariantSpec) -> str:
        return f"{source_digest}:{spec.suffix}"

    def is_fresh(self, output_path: Path, key: str) -> bool:
        if not output_path.exists():
            return False
        if not self.uses_content:
            return True
        return self._entries.get(output_path.as_posix()) == key

    def record(self, output_path: Path, key: str) -> None:
        self._entries[output_path.as_posix()] = key

    def save(self) -> None:
        if self.manifest_path is None or not self.uses_content:
            return
        self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
        self.manifest_path.write_text(
            json.dumps(self._entries, indent=2, sort_keys=True), encoding="utf-8"
        )


@dataclass
class ImageDerivationEngine:
    """Derives responsive variants for marked images in a document.

    Attributes:
        source_root: Directory that ``src`` paths are resolved against.
        output_root: Directory variants are written under.
        sizes: Default widths for a bare marker.
        quality: WebP quality.
        marker: Name of the marker attribute.
        cache: Reuse policy for existing variant files.
    """

    source_root: Path
    output_root: Path
    sizes: Sequence[int] = DEFAULT_SIZES
    quality: int = DEFAULT_QUALITY
    marker: str = DEFAULT_MARKER
    cache: DerivedImageCache = field(default_factory=DerivedImageCache)
    _locks: dict[Path, asyncio.Lock] = field(default_factory=dict, init=False, repr=False)

    def elements(self, markup: str) -> list[tuple[tuple[int, int], ImageElement]]:
        """Return the span and parsed element of every ``<img>`` tag."""
        return [
            (match.span(), ImageElement.from_tag(match.group(0), match.group("attrs"), self.marker))
            for match in find_tags(markup, "img")
        ]

    async def process(self, markup: str) -> str:
        """Rewrite every optimizable image in the markup.

        Args:
            markup: HTML text (a body or a whole document).

        Returns:
            Markup with marked elements rewritten. Elements that could not be
            processed are left exactly as they were.
        """
        targets = [(span, el) for span, el in self.elements(markup) if el.optimizable]
        if not targets:
            return markup
        rewritten = await asyncio.gather(
            *(self._process_element(element) for _, element in targets)
        )
        pieces: list[str] = []
        cursor = 0
        for ((start, end), _), tag in zip(targets, rewritten):
            pieces.append(markup[cursor:start])
            pieces.append(tag)
            cursor = end
        pieces.append(markup[cursor:])
        return "".join(pieces)

    def directive_for(self, element: ImageElement) -> ImageDirective:
        """Resolve an element's source and requested sizes.

        Raises:
            ImageSourceNotFound: If the source is remote, escapes the source
                root, or does not exist.
        """
        src = element.src
        parts = urlsplit(src)
        if not parts.path or parts.scheme or parts.netloc:
            raise ImageSourceNotFound(src)
        relative = PurePosixPath(parts.path.lstrip("/"))
        root = self.source_root.resolve()
        candidate = (root / relative).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            raise ImageSourceNotFound(src, candidate)

        stem = relative.stem
        if stem.endswith(".raw"):
            stem = stem[: -len(".raw")]
        return ImageDirective(
            source_path=candidate,
            variants=parse_sizes(element.marker_value, self.sizes),
            original_element_text=element.text,
            output_dir=self.output_root / relative.parent,
            url_dir=posixpath.dirname(parts.path),
            stem=stem,
        )

    async def _process_element(self, element: ImageElement) -> str:
        try:
            directive = self.directive_for(element)
        except ImageSourceNotFound as exc:
            logger.warning("%s; leaving element unchanged", exc)
            return element.text

        digest = ""
        if self.cache.uses_content:
            try:
                digest = await asyncio.to_thread(file_digest, directive.source_path)
            except OSError as exc:
                logger.warning(
                    "Could not read %s: %s; leaving element unchanged", element.src, exc
                )
                return element.text

        results = await asyncio.gather(
            *(self.derive(directive, spec, digest) for spec in directive.variants),
            return_exceptions=True,
        )
        descriptors: list[str] = []
        for result in results:
            if isinstance(result, VariantWriteFailure):
                logger.warning("%s; skipping variant", result)
            elif isinstance(result, BaseException):
                raise result
            else:
                descriptors.append(result.descriptor)

        if not descriptors:
            logger.warning(
                "No variants produced for %s; leaving element unchanged", element.src
            )
            return element.text

        logger.info(
            "Optimized: %s -> [%s]",
            directive.stem,
            ", ".join(str(spec.width) for spec in directive.variants),
        )
        return element.rewrite(descriptors)

    async def derive(
        self, directive: ImageDirective, spec: VariantSpec, source_digest: str = ""
    ) -> ImageVariant:
        """Produce one variant, reusing an existing file when the cache allows.

        Derivations targeting the same output file are serialized, so a
        file referenced twice in one build is encoded at most once.

        Raises:
            VariantWriteFailure: If decoding, resizing or writing fails for
                any reason, including images over Pillow's pixel limit.
        """
        output_path = directive.output_path(spec)
        key = self.cache.key(source_digest, spec)
        lock = self._locks.setdefault(output_path, asyncio.Lock())
        async with lock:
            if not self.cache.is_fresh(output_path, key):
                try:
                    await asyncio.to_thread(
                        render_variant,
                        directive.source_path,
                        output_path,
                        spec,
                        self.quality,
                    )
                except Exception as exc:
                    raise VariantWriteFailure(output_path, exc) from exc
                self.cache.record(output_path, key)
        return ImageVariant(
            width=spec.width,
            height=spec.height,
            output_path=output_path,
            descriptor=f"{directive.url(spec)} {spec.width}w",
        )
