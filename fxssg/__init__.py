"""FX static site generator.

This package turns a tree of ``.fx`` source documents into two outputs that
stay in sync: full HTML pages written to disk, and a versioned map of minified
HTML partials baked into a standalone edge dispatch script.

The main entry point is the CLI module, which exposes the ``build`` command.

Pipeline stages live in their own modules:
- content: Parsing ``.fx`` documents into metadata and body.
- images: Responsive image derivation for marked ``<img>`` elements.
- layouts: Named layout functions applied to pages.
- minify: HTML compaction with embedded script/style minification.
- partials: The fragment store and build fingerprint.
- edge: The edge dispatch script emitter.
- build: Orchestration of the whole build.
"""

import logging

__all__ = ["__version__"]
__version__ = "0.3.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())
