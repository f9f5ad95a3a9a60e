"""Utility functions for fxssg.

This module contains filesystem and naming helpers shared by the build
pipeline.

Key functions:
    ensure_clean_dir: Ensure a directory exists and is empty.
    copy_assets: Mirror the source asset tree into the output directory.
    is_source_file: Check if a path is a processable ``.fx`` document.
    slug_from_path: Derive a document slug from its filename.
    short_digest: Hex digest helper used for fingerprints and cache keys.
"""

from __future__ import annotations

import hashlib
import shutil
from collections.abc import Iterable
from pathlib import Path


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    If the directory exists, removes all contents. Creates the
    directory if it doesn't exist.

    Args:
        path: Directory path to clean or create.
    """
    if path.exists():
        shutil.rmtree(str(path), ignore_errors=True)
        if path.exists():
            # Fallback for stubborn directories
            for item in path.rglob("*"):
                if item.is_file():
                    item.unlink()
            for item in sorted(
                [p for p in path.rglob("*") if p.is_dir()], reverse=True
            ):
                item.rmdir()
            path.rmdir()
    path.mkdir(parents=True, exist_ok=True)


def copy_assets(assets_dir: Path, target: Path) -> int:
    """Copy the asset tree into the output directory.

    Args:
        assets_dir: Source asset directory.
        target: Destination directory (created if missing).

    Returns:
        Number of files copied. Zero when there is no asset directory.
    """
    if not assets_dir.is_dir():
        return 0
    copied = 0
    for item in assets_dir.rglob("*"):
        if item.is_dir():
            continue
        dest = target / item.relative_to(assets_dir)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(item, dest)
        copied += 1
    return copied


def is_source_file(path: Path, extension: str = ".fx") -> bool:
    """Check if a path is a source document.

    Hidden files and editor leftovers (``.foo.fx``) are ignored.

    Args:
        path: Path to check.
        extension: Source file extension, including the dot.

    Returns:
        True if the path is a regular file with the source extension.
    """
    return (
        path.is_file()
        and path.suffix == extension
        and not path.name.startswith(".")
    )


def slug_from_path(path: Path) -> str:
    """Return the slug for a source file: its name without the extension."""
    return path.stem


def short_digest(chunks: Iterable[bytes | str], length: int = 10) -> str:
    """Hash an ordered sequence of chunks and return a short hex digest.

    Args:
        chunks: Byte or text chunks, hashed in iteration order.
        length: Number of hex characters to keep.

    Returns:
        Lowercase hex digest prefix.

    Examples:
        >>> short_digest(["a", "b"]) == short_digest(["ab"])
        True
    """
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(chunk.encode("utf-8") if isinstance(chunk, str) else chunk)
    return digest.hexdigest()[:length]
