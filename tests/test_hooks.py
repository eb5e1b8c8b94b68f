from __future__ import annotations

import asyncio
import logging

import pytest

from page_bundler import (
    HOOK_NAMES,
    Bundler,
    HookRegistry,
    RequestOptions,
    filter_diffs,
    predicated,
    proxy_to,
    redirect_policy,
    replace_links,
    spoof_headers,
    strip_headers,
    third_party_only,
)


def test_registry_keeps_registration_order() -> None:
    registry = HookRegistry()
    first, second = (lambda diffs: diffs), (lambda diffs: diffs)
    registry.on("on_diffs_received", first)
    registry.on("on_diffs_received", second)

    assert registry.on_diffs_received == (first, second)


@pytest.mark.parametrize(
    "alias, canonical",
    [
        ("originalRequest", "before_original_request"),
        ("originalReceived", "on_original_received"),
        ("resourceRequest", "before_resource_request"),
        ("resourceReceived", "on_resource_received"),
        ("diffsReceived", "on_diffs_received"),
    ],
)
def test_registry_accepts_aliases(alias: str, canonical: str) -> None:
    registry = HookRegistry()
    hook = object()

    assert registry.on(alias, hook) is True
    assert registry.hooks(canonical) == (hook,)


def test_registry_ignores_unknown_names(caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="page_bundler")
    registry = HookRegistry()

    assert registry.on("afterEverything", lambda: None) is False
    assert all(registry.hooks(name) == () for name in HOOK_NAMES)
    assert any("afterEverything" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)


def test_bundler_on_is_chainable() -> None:
    b = Bundler("http://site.test/")

    assert b.on("on_diffs_received", lambda d: d).on("bogus", lambda d: d) is b
    assert len(b.hooks.on_diffs_received) == 1


def test_strip_headers_blanks_named_headers_only() -> None:
    options = RequestOptions(
        url="test.com", headers={"Origin": "testing.com", "Host": "bundler.ca", "Referer": "the internet"}
    )

    opts = strip_headers(["Origin", "Host"])(options)

    assert opts.url == "test.com"
    assert opts.headers == {"Origin": "", "Host": "", "Referer": "the internet"}
    assert options.headers["Origin"] == "testing.com"


def test_spoof_headers_returns_new_options() -> None:
    options = RequestOptions(url="http://site.test/")

    opts = spoof_headers({"Referer": "https://duckduckgo.com"})(options, "page placeholder")

    assert opts.headers["Referer"] == "https://duckduckgo.com"
    assert "Referer" not in options.headers


def test_request_options_are_immutable() -> None:
    options = RequestOptions(url="http://site.test/", headers={"A": "1"})

    with pytest.raises(TypeError):
        options.headers["A"] = "2"  # type: ignore[index]
    with pytest.raises(AttributeError):
        options.url = "http://other.test/"  # type: ignore[misc]


def test_proxy_and_redirect_hooks() -> None:
    options = RequestOptions(url="http://site.test/")

    opts = redirect_policy(False)(proxy_to("http://127.0.0.1:8118")(options))

    assert opts.proxy == "http://127.0.0.1:8118"
    assert opts.follow_redirects is False
    assert options.proxy is None and options.follow_redirects is True


def test_filter_diffs_removes_rejected_pairs() -> None:
    diffs = {"https://google.com": "test data", "/image.png": "test data 2"}

    kept = filter_diffs(lambda source, dest: "google" not in source)(diffs)

    assert kept == {"/image.png": "test data 2"}
    assert "https://google.com" in diffs


def test_third_party_only_keeps_foreign_hosts() -> None:
    keep = third_party_only("https://www.example.com/articles/1")

    assert keep("https://cdn.othersite.net/lib.js", "x")
    assert keep("//fonts.example.org/font.woff2", "x")
    assert not keep("/img/a.png", "x")
    assert not keep("https://www.example.com/style.css", "x")
    assert keep("https://static.example.com/style.css", "x")


def test_third_party_only_with_subdomains() -> None:
    keep = third_party_only("https://www.example.com/", include_subdomains=True)

    assert not keep("https://static.example.com/style.css", "x")
    assert keep("https://example.net/style.css", "x")


def test_replace_links_uses_replacer_results() -> None:
    html = '<a href="/one">1</a><a href="/two">2</a><a name="anchor">x</a><a href="/skip">3</a>'
    seen = []

    def replacer(url: str, href: str):
        seen.append((url, href))
        return None if href == "/skip" else f"{url}#{len(seen)}"

    diffs = replace_links(replacer)(None, html, "http://site.test/")

    assert diffs == {"/one": "http://site.test/#1", "/two": "http://site.test/#2"}
    assert [href for _, href in seen] == ["/one", "/two", "/skip"]


def test_predicated_runs_handler_when_predicate_passes() -> None:
    calls = []

    async def handler(fetcher, document, url):
        calls.append((fetcher, document, url))
        return {"a": "b"}

    result = asyncio.run(predicated(lambda doc, url: True, handler)("fetcher", "body", "test url"))

    assert result == {"a": "b"}
    assert calls == [("fetcher", "body", "test url")]


def test_predicated_skips_handler_when_predicate_fails() -> None:
    def handler(fetcher, document, url):
        raise AssertionError("handler must not run")

    assert asyncio.run(predicated(lambda doc, url: False, handler)(None, "body", "test url")) == {}


@pytest.mark.parametrize("name", ["beforeOriginalRequest", "onResourceReceived", "onDiffsReceived"])
def test_registry_rejects_camel_case_names(name: str) -> None:
    registry = HookRegistry()

    assert registry.on(name, object()) is False
    assert all(registry.hooks(hook_name) == () for hook_name in HOOK_NAMES)
