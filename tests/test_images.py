import asyncio
import json
import logging
from pathlib import Path

import pytest
from PIL import Image

from fxssg import images
from fxssg.images import (
    DEFAULT_SIZES,
    DerivedImageCache,
    ImageDerivationEngine,
    ImageElement,
    VariantSpec,
    parse_sizes,
)


def make_image(path: Path, size=(1000, 500), color="red", mode="RGB") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new(mode, size, color=color).save(path)
    return path


def make_engine(tmp_path: Path, **kwargs) -> ImageDerivationEngine:
    return ImageDerivationEngine(tmp_path / "src", tmp_path / "public", **kwargs)


def count_renders(monkeypatch) -> list:
    calls = []
    real = images.render_variant

    def counting(source, dest, spec, quality):
        calls.append(dest)
        real(source, dest, spec, quality)

    monkeypatch.setattr(images, "render_variant", counting)
    return calls


def test_explicit_sizes_resize_and_crop(tmp_path):
    make_image(tmp_path / "src" / "assets" / "img" / "hero.png")
    engine = make_engine(tmp_path)
    markup = '<p><img src="/assets/img/hero.png" data-opt="300,600x400" alt="Hero"></p>'

    result = asyncio.run(engine.process(markup))

    out_dir = tmp_path / "public" / "assets" / "img"
    assert sorted(p.name for p in out_dir.iterdir()) == ["hero-300.webp", "hero-600x400.webp"]
    with Image.open(out_dir / "hero-300.webp") as img:
        assert img.size == (300, 150)
    with Image.open(out_dir / "hero-600x400.webp") as img:
        assert img.size == (600, 400)
    assert result == (
        '<p><img src="/assets/img/hero.png" '
        'srcset="/assets/img/hero-300.webp 300w, /assets/img/hero-600x400.webp 600w" '
        'alt="Hero"></p>'
    )


def test_bare_marker_uses_default_sizes(tmp_path):
    make_image(tmp_path / "src" / "assets" / "logo.png", size=(1600, 800))
    engine = make_engine(tmp_path)

    result = asyncio.run(engine.process('<img data-opt src="/assets/logo.png">'))

    names = sorted(p.name for p in (tmp_path / "public" / "assets").iterdir())
    assert names == sorted(f"logo-{w}.webp" for w in DEFAULT_SIZES)
    assert result == (
        '<img src="/assets/logo.png" srcset="/assets/logo-480.webp 480w, '
        '/assets/logo-800.webp 800w, /assets/logo-1200.webp 1200w">'
    )


def test_missing_source_leaves_element(tmp_path, caplog):
    engine = make_engine(tmp_path)
    markup = '<img src="/assets/nope.png" data-opt="300">'
    with caplog.at_level(logging.WARNING, logger="fxssg"):
        result = asyncio.run(engine.process(markup))
    assert result == markup
    assert "Image not found" in caplog.text
    assert not (tmp_path / "public").exists()


def test_remote_and_escaping_sources_are_not_processed(tmp_path):
    make_image(tmp_path / "secret.png")
    (tmp_path / "src").mkdir()
    engine = make_engine(tmp_path)
    markup = (
        '<img src="https://cdn.example.com/a.png" data-opt>'
        '<img src="/../secret.png" data-opt>'
    )
    assert asyncio.run(engine.process(markup)) == markup


def test_second_pass_does_not_rematch(tmp_path, monkeypatch):
    make_image(tmp_path / "src" / "assets" / "hero.png")
    engine = make_engine(tmp_path)
    calls = count_renders(monkeypatch)
    markup = '<img src="/assets/hero.png" data-opt="300">'

    first = asyncio.run(engine.process(markup))
    assert len(calls) == 1
    second = asyncio.run(engine.process(f"<html><body>{first}</body></html>"))

    assert second == f"<html><body>{first}</body></html>"
    assert len(calls) == 1


def test_marker_consumed_on_rewrite():
    element = ImageElement.from_tag(
        '<img src="a.png" data-opt />', ' src="a.png" data-opt /'
    )
    assert element.optimizable
    tag = element.rewrite(["a-300.webp 300w"])
    assert not element.optimizable
    assert tag == '<img src="a.png" srcset="a-300.webp 300w" />'


def test_existing_srcset_replaced():
    element = ImageElement.from_tag(
        '<img srcset="old.png 1x" src="a.png" data-opt="1">',
        ' srcset="old.png 1x" src="a.png" data-opt="1"',
    )
    assert element.rewrite(["a-1.webp 1w"]) == '<img src="a.png" srcset="a-1.webp 1w">'


def test_parse_sizes():
    assert parse_sizes("300, 600x400") == [VariantSpec(300), VariantSpec(600, 400)]
    assert parse_sizes("640X480") == [VariantSpec(640, 480)]
    assert parse_sizes(None) == [VariantSpec(w) for w in DEFAULT_SIZES]
    assert parse_sizes("  ") == [VariantSpec(w) for w in DEFAULT_SIZES]
    assert parse_sizes("abc, 200") == [VariantSpec(200)]
    assert parse_sizes("abc") == [VariantSpec(w) for w in DEFAULT_SIZES]
    assert parse_sizes("0, -5") == [VariantSpec(w) for w in DEFAULT_SIZES]
    assert parse_sizes(None, defaults=[100]) == [VariantSpec(100)]


def test_raw_suffix_and_relative_src(tmp_path):
    make_image(tmp_path / "src" / "photos" / "beach.raw.jpg")
    engine = make_engine(tmp_path)

    result = asyncio.run(engine.process('<img src="photos/beach.raw.jpg" data-opt="200">'))

    assert (tmp_path / "public" / "photos" / "beach-200.webp").exists()
    assert 'srcset="photos/beach-200.webp 200w"' in result


def test_palette_and_alpha_sources(tmp_path):
    make_image(tmp_path / "src" / "p.png", mode="P", color=3)
    make_image(tmp_path / "src" / "la.png", mode="LA", color=(10, 128))
    engine = make_engine(tmp_path)

    asyncio.run(engine.process('<img src="/p.png" data-opt="50"><img src="/la.png" data-opt="50">'))

    with Image.open(tmp_path / "public" / "la-50.webp") as img:
        assert img.mode == "RGBA"
    assert (tmp_path / "public" / "p-50.webp").exists()


def test_duplicate_elements_render_once(tmp_path, monkeypatch):
    make_image(tmp_path / "src" / "a.png")
    engine = make_engine(tmp_path)
    calls = count_renders(monkeypatch)
    tag = '<img src="/a.png" data-opt="300">'

    result = asyncio.run(engine.process(tag + tag))

    assert len(calls) == 1
    assert result.count('srcset="/a-300.webp 300w"') == 2


def test_variant_write_failure_skips_only_that_variant(tmp_path, monkeypatch, caplog):
    make_image(tmp_path / "src" / "a.png")
    engine = make_engine(tmp_path)
    real = images.render_variant

    def flaky(source, dest, spec, quality):
        if spec.width == 600:
            raise OSError("disk full")
        real(source, dest, spec, quality)

    monkeypatch.setattr(images, "render_variant", flaky)
    with caplog.at_level(logging.WARNING, logger="fxssg"):
        result = asyncio.run(engine.process('<img src="/a.png" data-opt="300,600">'))

    assert result == '<img src="/a.png" srcset="/a-300.webp 300w">'
    assert "disk full" in caplog.text
    assert not (tmp_path / "public" / "a-600.webp").exists()


def test_all_variants_failing_leaves_element(tmp_path, monkeypatch):
    make_image(tmp_path / "src" / "a.png")
    engine = make_engine(tmp_path)

    def broken(source, dest, spec, quality):
        raise OSError("read-only")

    monkeypatch.setattr(images, "render_variant", broken)
    markup = '<img src="/a.png" data-opt="300">'
    assert asyncio.run(engine.process(markup)) == markup


def test_content_cache_rederives_changed_source(tmp_path):
    source = make_image(tmp_path / "src" / "a.png", size=(1000, 500))
    cache = DerivedImageCache(tmp_path / ".fxcache" / "images.json")
    engine = make_engine(tmp_path, cache=cache)
    markup = '<img src="/a.png" data-opt="300">'
    output = tmp_path / "public" / "a-300.webp"

    asyncio.run(engine.process(markup))
    with Image.open(output) as img:
        assert img.size == (300, 150)

    make_image(source, size=(1000, 1000), color="blue")
    asyncio.run(engine.process(markup))
    with Image.open(output) as img:
        assert img.size == (300, 300)


def test_filename_cache_reuses_existing_file(tmp_path):
    source = make_image(tmp_path / "src" / "a.png", size=(1000, 500))
    engine = make_engine(tmp_path, cache=DerivedImageCache(strategy="filename"))
    markup = '<img src="/a.png" data-opt="300">'
    output = tmp_path / "public" / "a-300.webp"

    asyncio.run(engine.process(markup))
    make_image(source, size=(1000, 1000))
    asyncio.run(engine.process(markup))

    with Image.open(output) as img:
        assert img.size == (300, 150)


def test_cache_manifest_round_trip(tmp_path):
    manifest = tmp_path / ".fxcache" / "images.json"
    output = tmp_path / "a-300.webp"
    output.write_bytes(b"x")

    cache = DerivedImageCache.load(manifest)
    key = cache.key("abc", VariantSpec(300))
    assert not cache.is_fresh(output, key)
    cache.record(output, key)
    cache.save()

    reloaded = DerivedImageCache.load(manifest)
    assert reloaded.is_fresh(output, key)
    assert not reloaded.is_fresh(output, cache.key("def", VariantSpec(300)))
    assert json.loads(manifest.read_text(encoding="utf-8")) == {output.as_posix(): key}


def test_corrupt_manifest_is_ignored(tmp_path, caplog):
    manifest = tmp_path / "images.json"
    manifest.write_text("{not json", encoding="utf-8")
    with caplog.at_level(logging.WARNING, logger="fxssg"):
        cache = DerivedImageCache.load(manifest)
    assert "Ignoring unreadable image cache" in caplog.text
    assert not cache.is_fresh(tmp_path / "x.webp", "k")


def test_unknown_cache_strategy():
    with pytest.raises(ValueError):
        DerivedImageCache(strategy="mtime")


def test_pixel_limit_error_skips_variant(tmp_path, monkeypatch, caplog):
    make_image(tmp_path / "src" / "big.png", size=(1000, 1000))
    engine = make_engine(tmp_path)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100_000)
    markup = '<img src="/big.png" data-opt="100">'

    with caplog.at_level(logging.WARNING, logger="fxssg"):
        result = asyncio.run(engine.process(markup))

    assert result == markup
    assert "exceeds limit" in caplog.text


def test_unexpected_render_error_becomes_variant_failure(tmp_path, monkeypatch):
    make_image(tmp_path / "src" / "a.png")
    engine = make_engine(tmp_path)
    real = images.render_variant

    def picky(source, dest, spec, quality):
        if spec.width == 600:
            raise RuntimeError("encoder bug")
        real(source, dest, spec, quality)

    monkeypatch.setattr(images, "render_variant", picky)
    result = asyncio.run(engine.process('<img src="/a.png" data-opt="300,600">'))
    assert result == '<img src="/a.png" srcset="/a-300.webp 300w">'


def test_unreadable_source_leaves_element(tmp_path, monkeypatch, caplog):
    make_image(tmp_path / "src" / "a.png")
    engine = make_engine(tmp_path)

    def denied(path):
        raise PermissionError("permission denied")

    monkeypatch.setattr(images, "file_digest", denied)
    markup = '<img src="/a.png" data-opt="300">'
    with caplog.at_level(logging.WARNING, logger="fxssg"):
        result = asyncio.run(engine.process(markup))

    assert result == markup
    assert "permission denied" in caplog.text
    assert not (tmp_path / "public" / "a-300.webp").exists()
