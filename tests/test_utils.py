from pathlib import Path

from fxssg.html_utils import (
    find_tags,
    parse_attributes,
    quote_attribute,
    render_start_tag,
)
from fxssg.utils import (
    copy_assets,
    ensure_clean_dir,
    is_source_file,
    short_digest,
    slug_from_path,
)


def test_ensure_clean_dir(tmp_path):
    target = tmp_path / "out"
    (target / "nested").mkdir(parents=True)
    (target / "nested" / "file.txt").write_text("x", encoding="utf-8")
    ensure_clean_dir(target)
    assert target.exists()
    assert list(target.iterdir()) == []


def test_copy_assets(tmp_path):
    assets = tmp_path / "assets"
    (assets / "img").mkdir(parents=True)
    (assets / "img" / "a.png").write_bytes(b"png")
    (assets / "site.css").write_text("body{}", encoding="utf-8")

    copied = copy_assets(assets, tmp_path / "public" / "assets")
    assert copied == 2
    assert (tmp_path / "public" / "assets" / "img" / "a.png").read_bytes() == b"png"
    assert copy_assets(tmp_path / "missing", tmp_path / "public") == 0


def test_is_source_file(tmp_path):
    good = tmp_path / "page.fx"
    good.write_text("x", encoding="utf-8")
    hidden = tmp_path / ".page.fx"
    hidden.write_text("x", encoding="utf-8")
    other = tmp_path / "page.md"
    other.write_text("x", encoding="utf-8")
    assert is_source_file(good)
    assert not is_source_file(hidden)
    assert not is_source_file(other)
    assert not is_source_file(tmp_path)
    assert slug_from_path(good) == "page"


def test_short_digest_is_order_sensitive():
    assert short_digest(["a", "b"]) == short_digest(["ab"])
    assert short_digest(["a", "b"]) != short_digest(["b", "a"])
    assert len(short_digest([b"x"])) == 10
    assert len(short_digest([b"x"], length=16)) == 16


def test_parse_attributes_keeps_order_and_quotes():
    attrs, self_closing = parse_attributes(
        """ class='hero' src="/a.png" data-opt alt=Logo title="it's" """
    )
    assert list(attrs) == ["class", "src", "data-opt", "alt", "title"]
    assert attrs["class"] == "hero"
    assert attrs["data-opt"] is None
    assert attrs["alt"] == "Logo"
    assert attrs["title"] == "it's"
    assert not self_closing


def test_parse_attributes_self_closing_and_duplicates():
    attrs, self_closing = parse_attributes(' SRC="a.png" src="b.png" /')
    assert attrs == {"src": "a.png"}
    assert self_closing


def test_render_start_tag():
    html = render_start_tag("img", {"src": "a.png", "alt": 'say "hi"', "hidden": None})
    assert html == '<img src="a.png" alt="say &quot;hi&quot;" hidden>'
    assert render_start_tag("img", {"src": "a.png"}, self_closing=True) == '<img src="a.png" />'
    assert quote_attribute("Tom &amp; Jerry") == '"Tom &amp; Jerry"'


def test_find_tags_handles_quoted_gt():
    html = '<p><img src="a.png" alt="a > b"><IMG src=b.png><imgx></p>'
    matches = list(find_tags(html, "img"))
    assert [m.group(0) for m in matches] == [
        '<img src="a.png" alt="a > b">',
        "<IMG src=b.png>",
    ]
