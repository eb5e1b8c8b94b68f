from __future__ import annotations

import base64

import pytest

from page_bundler import data_uri, encode, is_textual, mimetype


def test_mimetype_of_html_page() -> None:
    assert mimetype("https://sometest.com/index.html") == "text/html"
    assert mimetype("a/b/index.html") == "text/html"


def test_mimetype_of_png_image() -> None:
    assert mimetype("https://sometest.com/images/test.png") == "image/png"


def test_mimetype_ignores_query_and_fragment() -> None:
    assert mimetype("https://cdn.test/site.css?v=3#top") == "text/css"
    assert mimetype("/static/app.js?build=42") == "text/javascript"


@pytest.mark.parametrize(
    "value",
    ["can you explain this?", "no extension at all", "", "https://example.com", "http://[::1", "file.unknownext"],
)
def test_mimetype_defaults_to_text_plain(value: str) -> None:
    assert mimetype(value) == "text/plain"


def test_web_font_types_are_known() -> None:
    assert mimetype("/fonts/inter.woff2") == "font/woff2"


def test_data_uri_for_provided_data() -> None:
    assert data_uri("image.png", b"hello") == "data:image/png;base64,aGVsbG8="


def test_data_uri_prefers_response_content_type() -> None:
    assert data_uri("image.png", b"hello", "image/gif").startswith("data:image/gif;base64,")
    assert data_uri("site", b"a{}", "text/css; charset=utf-8") == "data:text/css;charset=utf-8;base64,YXt9"


def test_data_uri_ignores_blank_content_type() -> None:
    assert data_uri("logo.svg", b"<svg/>", "  ").startswith("data:image/svg+xml;base64,")


@pytest.mark.parametrize("content", [b"", b"\x00\xff\x10binary\r\n", "héllo wörld".encode("utf-8")])
def test_encode_payload_decodes_back_to_content(content: bytes) -> None:
    uri = encode("application/octet-stream", content)
    prefix, payload = uri.split(",", 1)

    assert prefix == "data:application/octet-stream;base64"
    assert base64.b64decode(payload) == content


def test_is_textual() -> None:
    assert is_textual("text/css; charset=utf-8")
    assert is_textual("application/javascript")
    assert is_textual("application/json")
    assert not is_textual("image/png")
    assert not is_textual("image/svg+xml")
    assert not is_textual("font/woff2")
    assert not is_textual(None)
