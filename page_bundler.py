#!/usr/bin/env python3
"""
Async web page bundler.

Fetches an HTML document and replaces every reference to an external resource
(images, stylesheets, scripts and CSS ``url()`` calls, including the ones found
inside fetched stylesheets) with a ``data:`` URI carrying the resource bytes:

    <img src="logo.png">  ->  <img src="data:image/png;base64,iVBORw0K...">

The result is a single self-contained document suitable for archiving,
offline viewing or proxying without follow-up requests to third-party hosts.

How a bundle is built
---------------------
1. ``before_original_request`` hooks rewrite the request options.
2. The original document is fetched.
3. ``on_original_received`` handlers run **concurrently**; each discovers one
   category of resource and returns a partial diff ``{reference: data_uri}``.
   Individual resources are fetched concurrently as well, going through the
   ``before_resource_request`` and ``on_resource_received`` hooks.
4. Partial diffs are merged and passed through ``on_diffs_received`` hooks.
5. The final diff is applied to the original text in one pass.

A resource that cannot be fetched contributes no diff and is logged; a failure
of the original fetch, of a handler, or of a request/diff hook fails the whole
bundle with ``BundleError``.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import dataclasses
import hashlib
import inspect
import logging
import mimetypes
import posixpath
import re
import sys
import time
from pathlib import Path
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, Iterable, Iterator, Mapping, Optional, Protocol, Tuple, Union
from urllib.parse import urljoin, urlsplit

import httpx
import tldextract
import yaml
from bs4 import BeautifulSoup
from slugify import slugify


# --------------------------- Configuration --------------------------------- #


DEFAULT_USER_AGENT = "PageBundler/1.0 (+https://example.com/bundler)"
DEFAULT_HANDLER_NAMES: tuple[str, ...] = ("images", "css", "js", "url_calls")


@dataclasses.dataclass(frozen=True)
class Config:
    results_dir: str = "results"
    user_agent: str = DEFAULT_USER_AGENT
    timeout: int = 20  # seconds per request
    concurrency: int = 8  # parallel resource fetches per bundle
    max_attempts: int = 3
    backoff_factor: float = 0.8
    verify_tls: bool = False
    follow_redirects: bool = True
    proxy: Optional[str] = None
    spoof_headers: Mapping[str, str] = dataclasses.field(default_factory=dict, hash=False)
    strip_headers: tuple[str, ...] = ()
    handlers: tuple[str, ...] = DEFAULT_HANDLER_NAMES
    recursive_css: bool = True
    third_party_only: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        unknown = [name for name in self.handlers if name not in HANDLERS_BY_NAME]
        if unknown:
            raise ValueError(f"Unknown resource handler(s): {', '.join(unknown)}")

    @staticmethod
    def from_yaml(path: Path) -> "Config":
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return Config(
            results_dir=data.get("results_dir", "results"),
            user_agent=data.get("user_agent", DEFAULT_USER_AGENT),
            timeout=int(data.get("timeout", 20)),
            concurrency=int(data.get("concurrency", 8)),
            max_attempts=int(data.get("max_attempts", 3)),
            backoff_factor=float(data.get("backoff_factor", 0.8)),
            verify_tls=bool(data.get("verify_tls", False)),
            follow_redirects=bool(data.get("follow_redirects", True)),
            proxy=data.get("proxy") or None,
            spoof_headers=dict(data.get("spoof_headers", {}) or {}),
            strip_headers=tuple(data.get("strip_headers", []) or ()),
            handlers=tuple(data.get("handlers", DEFAULT_HANDLER_NAMES) or ()),
            recursive_css=bool(data.get("recursive_css", True)),
            third_party_only=bool(data.get("third_party_only", False)),
            log_level=str(data.get("log_level", "INFO")).upper(),
        )

    def with_overrides(self, **overrides) -> "Config":
        """Return a copy with every non-None override applied (CLI flags)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes) if changes else self


# ----------------------------- Errors -------------------------------------- #


class BundlerError(Exception):
    pass


class BundleError(BundlerError):
    """The whole bundle failed; no document is produced."""


class ResourceFetchError(BundlerError):
    """A single resource could not be fetched."""


class InvalidReference(ResourceFetchError):
    """Malformed or non-fetchable reference (empty, ``javascript:``, ``data:``...)."""


# ----------------------------- Utilities ----------------------------------- #


_TLD_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


def sha1_short(s: str) -> str:
    return hashlib.sha1(s.encode("utf-8", errors="ignore")).hexdigest()[:10]


def file_safe_slug(text: str, maxlen: int = 80) -> str:
    s = slugify(text, max_length=maxlen, allow_unicode=False).strip("-_.")
    return s or sha1_short(text)


def derive_bundle_slug(url: str) -> str:
    parts = urlsplit(url)
    base = f"{parts.netloc}{parts.path}".rstrip("/") or url
    return file_safe_slug(base, maxlen=90)


def get_registrable_domain(url: str) -> Tuple[str, str, str]:
    ext = _TLD_EXTRACT(url)
    return ext.subdomain, ext.domain, ext.suffix


def in_same_scope(url: str, site_root: str, include_subdomains: bool) -> bool:
    if urlsplit(url).scheme not in ("http", "https"):
        return False
    s_sub, s_dom, s_suf = get_registrable_domain(site_root)
    u_sub, u_dom, u_suf = get_registrable_domain(url)
    if (s_dom, s_suf) != (u_dom, u_suf):
        return False
    if include_subdomains:
        return True
    return s_sub == u_sub


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


async def call_hook(hook: Callable, *args):
    """Call a hook that may be a plain function or a coroutine function."""
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def gather_or_cancel(aws: Iterable[Awaitable]) -> list:
    """Await all awaitables concurrently; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


# ----------------------------- Logging ------------------------------------- #


LOG_FORMAT = "%(asctime)s %(levelname)s [%(bundle)s] %(message)s"


def setup_root_logger(results_root: Path, level: str = "INFO") -> None:
    log_path = results_root / "page_bundler.log"
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root_logger = logging.getLogger("page_bundler")
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(formatter)
    ch = logging.StreamHandler(stream=sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(formatter)
    root_logger.addHandler(fh)
    root_logger.addHandler(ch)


def get_bundle_logger(url: str) -> logging.LoggerAdapter:
    label = derive_bundle_slug(url) if url else "-"
    return logging.LoggerAdapter(logging.getLogger("page_bundler"), extra={"bundle": label})


# ------------------------------ Encoder ------------------------------------ #


DEFAULT_MIMETYPE = "text/plain"

_MIME = mimetypes.MimeTypes()
for _type, _ext in (
    ("text/javascript", ".js"),
    ("text/javascript", ".mjs"),
    ("font/woff", ".woff"),
    ("font/woff2", ".woff2"),
    ("font/ttf", ".ttf"),
    ("font/otf", ".otf"),
    ("image/webp", ".webp"),
    ("image/avif", ".avif"),
    ("application/manifest+json", ".webmanifest"),
):
    _MIME.add_type(_type, _ext)

TEXTUAL_HINTS = ("css", "javascript", "ecmascript", "json", "xml")


def mimetype(url: str) -> str:
    """Guess a MIME type from the extension of a URL path; ``text/plain`` when unknown."""
    try:
        path = urlsplit(url).path
    except ValueError:
        path = url.split("?", 1)[0].split("#", 1)[0]
    ext = posixpath.splitext(path)[1].lower()
    if not ext:
        return DEFAULT_MIMETYPE
    guessed, _ = _MIME.guess_type(f"resource{ext}", strict=False)
    return guessed or DEFAULT_MIMETYPE


def encode(mime: str, content: bytes) -> str:
    payload = base64.b64encode(content).decode("ascii")
    return f"data:{mime};base64,{payload}"


def data_uri(url: str, content: bytes, content_type: Optional[str] = None) -> str:
    """Encode ``content`` as a data URI, preferring a response content type over the URL extension."""
    if content_type and content_type.strip():
        mime = ";".join(part.strip() for part in content_type.split(";") if part.strip())
    else:
        mime = mimetype(url)
    return encode(mime, content)


def is_textual(content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower().split(";", 1)[0].strip()
    if not ct or "svg" in ct:
        return False
    return ct.startswith("text/") or any(hint in ct for hint in TEXTUAL_HINTS)


# ----------------------------- Locators ------------------------------------ #


CSS_IMPORT_RE = re.compile(r"""@import\s+(["'])([^"']+)\1""", re.IGNORECASE)
CSS_DECLARATION_END = ";}\n"


def html_references(document: str, selector: str, attribute: str) -> Iterator[str]:
    """Yield the non-empty ``attribute`` value of every element matching ``selector``."""
    soup = BeautifulSoup(document, "lxml")
    for el in soup.select(selector):
        value = el.get(attribute)
        if isinstance(value, list):
            value = " ".join(value)
        if value and value.strip():
            yield value


def html_texts(document: str, tag: str) -> Iterator[str]:
    soup = BeautifulSoup(document, "lxml")
    for el in soup.find_all(tag):
        text = el.get_text()
        if text and text.strip():
            yield text


def css_references(text: str) -> Iterator[str]:
    """
    Best-effort scan for ``url(...)`` references in raw CSS text.

    From each ``url(`` the scan runs forward to the end of the declaration
    (``;``, ``}``, newline or end of text) and then back to the nearest ``)``.
    A following ``url(`` in the same declaration ends the current one, so
    ``url(a.png), url(b.png)`` yields both references.
    """
    start = text.find("url(")
    while start >= 0:
        begin = start + 4
        end = begin
        while end < len(text) and text[end] not in CSS_DECLARATION_END:
            end += 1
        following = text.find("url(", begin, end)
        if following >= 0:
            end = following
        close = text.rfind(")", begin, end)
        if close >= 0:
            reference = text[begin:close].strip().strip("\"'").strip()
            if reference:
                yield reference
            start = text.find("url(", close + 1)
        else:
            start = text.find("url(", begin)


def css_import_references(text: str) -> Iterator[str]:
    """Yield ``@import "file.css";`` references written without ``url()``."""
    for m in CSS_IMPORT_RE.finditer(text):
        reference = m.group(2).strip()
        if reference:
            yield reference


def effective_base_url(document: str, fallback: str) -> str:
    soup = BeautifulSoup(document, "lxml")
    tag = soup.find("base", href=True)
    if tag and tag.get("href", "").strip():
        return urljoin(fallback, tag["href"].strip())
    return fallback


# ----------------------------- Diff Engine --------------------------------- #


Diff = Dict[str, str]


def merge_diffs(diffs: Iterable[Mapping[str, str]], logger: Optional[logging.LoggerAdapter] = None) -> Diff:
    """Union of all diffs, left to right; the last value wins on key collision."""
    merged: Diff = {}
    for diff in diffs:
        for reference, replacement in diff.items():
            if logger is not None and merged.get(reference, replacement) != replacement:
                logger.debug(f"Diff collision for {reference!r}; keeping the later replacement")
            merged[reference] = replacement
    return merged


def apply_diffs(document: str, diffs: Mapping[str, str]) -> str:
    """
    Replace every literal occurrence of every diff key in ``document``.

    All keys are matched in a single left-to-right pass (longest key first at
    any position), so a replacement is never scanned again and the outcome
    does not depend on the order of the keys.
    """
    keys = sorted((k for k in diffs if k), key=len, reverse=True)
    if not keys:
        return document
    pattern = re.compile("|".join(re.escape(k) for k in keys))
    return pattern.sub(lambda m: diffs[m.group(0)], document)


# --------------------------- Request Options ------------------------------- #


@dataclasses.dataclass(frozen=True)
class RequestOptions:
    url: str
    headers: Mapping[str, str] = dataclasses.field(default_factory=dict, hash=False)
    proxy: Optional[str] = None
    follow_redirects: bool = True
    verify: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    def replace(self, **changes) -> "RequestOptions":
        return dataclasses.replace(self, **changes)

    def with_headers(self, updates: Mapping[str, str]) -> "RequestOptions":
        headers = dict(self.headers)
        headers.update(updates)
        return self.replace(headers=headers)


def initial_options(url: str, cfg: Config) -> RequestOptions:
    return RequestOptions(
        url=url,
        headers={
            "User-Agent": cfg.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en;q=0.7, *;q=0.5",
        },
        proxy=cfg.proxy,
        follow_redirects=cfg.follow_redirects,
        verify=cfg.verify_tls,
    )


# ------------------------------ Transport ---------------------------------- #


class ClientPool:
    """
    Per-bundle set of ``httpx.AsyncClient`` instances.

    httpx fixes proxy and TLS settings per client, so one client is opened for
    each (proxy, verify) pair that hooks ask for. All are closed when the
    bundle ends; nothing is reused across bundles.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        logger: logging.LoggerAdapter,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cfg = cfg
        self.logger = logger
        self._transport = transport
        self._clients: dict[tuple[Optional[str], bool], httpx.AsyncClient] = {}

    async def __aenter__(self) -> "ClientPool":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.aclose()

    def _client_for(self, options: RequestOptions) -> httpx.AsyncClient:
        key = (options.proxy, options.verify)
        client = self._clients.get(key)
        if client is None:
            kwargs = dict(
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=max(self.cfg.concurrency, 10)),
                timeout=httpx.Timeout(self.cfg.timeout),
                verify=options.verify,
            )
            if self._transport is not None:
                kwargs["transport"] = self._transport
            elif options.proxy:
                kwargs["proxy"] = options.proxy
            client = httpx.AsyncClient(**kwargs)
            self._clients[key] = client
        return client

    async def send(self, options: RequestOptions) -> httpx.Response:
        """GET ``options.url`` with retries and exponential backoff on transient failures."""
        client = self._client_for(options)
        last_error: Optional[Exception] = None
        attempt = 0
        while attempt < self.cfg.max_attempts:
            attempt += 1
            try:
                resp = await client.get(
                    options.url, headers=dict(options.headers), follow_redirects=options.follow_redirects
                )
                if resp.status_code >= 500:
                    raise httpx.HTTPStatusError(
                        f"Server error {resp.status_code}", request=resp.request, response=resp
                    )
                return resp
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
                raise InvalidReference(f"Invalid URI {options.url!r}: {e}") from e
            except (httpx.ConnectError, httpx.ReadTimeout, httpx.RemoteProtocolError, httpx.HTTPStatusError) as e:
                last_error = e
                if attempt >= self.cfg.max_attempts:
                    break
                wait = (2 ** (attempt - 1)) * self.cfg.backoff_factor
                self.logger.warning(f"Attempt {attempt} failed for {options.url}: {e}. Retrying in {wait:.1f}s")
                await asyncio.sleep(wait)
            except httpx.HTTPError as e:
                raise ResourceFetchError(f"Non-retriable error for {options.url}: {e}") from e
        raise ResourceFetchError(f"Exceeded retry limit for {options.url}: {last_error}") from last_error


def decode_text(resp: httpx.Response) -> str:
    try:
        return resp.text
    except UnicodeDecodeError:
        return resp.content.decode("utf-8", errors="replace")


# ------------------------------ Documents ---------------------------------- #


@dataclasses.dataclass(frozen=True)
class Page:
    """The original document of a bundle."""

    final_url: str
    base_url: str
    text: str
    response: httpx.Response


@dataclasses.dataclass
class Resource:
    reference: str
    url: str
    response: httpx.Response
    content_type: str
    content: bytes
    text: Optional[str] = None
    referrer: Optional[str] = None  # stylesheet whose references led here

    @property
    def content_type_header(self) -> Optional[str]:
        return self.response.headers.get("Content-Type") or None


def resolve_reference(base_url: str, reference: str) -> str:
    candidate = reference.strip()
    if not candidate:
        raise InvalidReference("Invalid URI: empty reference")
    try:
        url = urljoin(base_url, candidate)
        parts = urlsplit(url)
    except ValueError as e:
        raise InvalidReference(f"Invalid URI {reference!r}: {e}") from e
    if parts.scheme.lower() not in ("http", "https"):
        raise InvalidReference(f"Invalid protocol {parts.scheme!r} in {reference!r}")
    if not parts.netloc:
        raise InvalidReference(f"Invalid URI {reference!r}")
    return url


# ------------------------------ Hooks -------------------------------------- #



class RequestHook(Protocol):
    def __call__(self, options: RequestOptions) -> Union[RequestOptions, Awaitable[RequestOptions]]: ...


class ResourceHandler(Protocol):
    def __call__(
        self, fetcher: "ResourceFetcher", document: str, base_url: str
    ) -> Union[Diff, Awaitable[Diff]]: ...


class ResourceRequestHook(Protocol):
    def __call__(self, options: RequestOptions, page: Page) -> Union[RequestOptions, Awaitable[RequestOptions]]: ...


class ResourceReceivedHook(Protocol):
    def __call__(
        self, fetcher: "ResourceFetcher", resource: Resource, diffs: Diff, visited: set[str]
    ) -> Union[Diff, Awaitable[Diff]]: ...


class DiffHook(Protocol):
    def __call__(self, diffs: Diff) -> Union[Diff, Awaitable[Diff]]: ...


BEFORE_ORIGINAL_REQUEST = "before_original_request"
ON_ORIGINAL_RECEIVED = "on_original_received"
BEFORE_RESOURCE_REQUEST = "before_resource_request"
ON_RESOURCE_RECEIVED = "on_resource_received"
ON_DIFFS_RECEIVED = "on_diffs_received"

HOOK_NAMES: tuple[str, ...] = (
    BEFORE_ORIGINAL_REQUEST,
    ON_ORIGINAL_RECEIVED,
    BEFORE_RESOURCE_REQUEST,
    ON_RESOURCE_RECEIVED,
    ON_DIFFS_RECEIVED,
)

HOOK_ALIASES: dict[str, str] = {
    "originalRequest": BEFORE_ORIGINAL_REQUEST,
    "originalReceived": ON_ORIGINAL_RECEIVED,
    "resourceRequest": BEFORE_RESOURCE_REQUEST,
    "resourceReceived": ON_RESOURCE_RECEIVED,
    "diffsReceived": ON_DIFFS_RECEIVED,
}


class HookRegistry:
    """Hooks per extension point, kept in registration order."""

    def __init__(self, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.logger = logger or get_bundle_logger("")
        self._hooks: dict[str, list[Callable]] = {name: [] for name in HOOK_NAMES}

    def on(self, name: str, hook: Callable) -> bool:
        canonical = HOOK_ALIASES.get(name, name)
        if canonical not in self._hooks:
            self.logger.warning(f"Ignoring hook for unknown event {name!r}")
            return False
        self._hooks[canonical].append(hook)
        return True

    def hooks(self, name: str) -> tuple[Callable, ...]:
        return tuple(self._hooks[HOOK_ALIASES.get(name, name)])

    @property
    def before_original_request(self) -> tuple[RequestHook, ...]:
        return self.hooks(BEFORE_ORIGINAL_REQUEST)

    @property
    def resource_handlers(self) -> tuple[ResourceHandler, ...]:
        return self.hooks(ON_ORIGINAL_RECEIVED)

    @property
    def before_resource_request(self) -> tuple[ResourceRequestHook, ...]:
        return self.hooks(BEFORE_RESOURCE_REQUEST)

    @property
    def on_resource_received(self) -> tuple[ResourceReceivedHook, ...]:
        return self.hooks(ON_RESOURCE_RECEIVED)

    @property
    def on_diffs_received(self) -> tuple[DiffHook, ...]:
        return self.hooks(ON_DIFFS_RECEIVED)


# ---------------------------- Resource Fetcher ----------------------------- #


class ResourceFetcher:
    """
    Fetches the resources of one bundle and turns them into diff entries.

    One instance exists per bundle request. It owns the visited set, stylesheet
    scans and import graph used by recursive stylesheet resolution, and the
    semaphore bounding parallel fetches.
    """

    def __init__(
        self,
        pool: ClientPool,
        hooks: HookRegistry,
        page: Page,
        cfg: Config,
        *,
        logger: logging.LoggerAdapter,
    ) -> None:
        self.pool = pool
        self.hooks = hooks
        self.page = page
        self.cfg = cfg
        self.logger = logger
        self.visited: set[str] = set()
        self.stylesheets: dict[str, asyncio.Future] = {}  # url -> nested diff of its first scan
        self.imports: dict[str, set[str]] = {}  # stylesheet url -> urls it waits on
        self.sem = asyncio.Semaphore(max(cfg.concurrency, 1))
        self.requests_made: int = 0

    async def fetch(self, base_url: str, reference: str, referrer: Optional[str] = None) -> Resource:
        url = resolve_reference(base_url, reference)
        options = initial_options(url, self.cfg)
        for hook in self.hooks.before_resource_request:
            options = await call_hook(hook, options, self.page)

        async with self.sem:
            self.requests_made += 1
            resp = await self.pool.send(options)
        if resp.status_code >= 400:
            raise ResourceFetchError(f"HTTP {resp.status_code} for {options.url}")

        final_url = str(resp.url)
        content_type = resp.headers.get("Content-Type", "") or mimetype(final_url)
        resource = Resource(
            reference=reference,
            url=final_url,
            response=resp,
            content_type=content_type,
            content=resp.content,
            referrer=referrer,
        )
        if is_textual(content_type):
            resource.text = decode_text(resp)
            diffs: Diff = {}
            for hook in self.hooks.on_resource_received:
                diffs = await call_hook(hook, self, resource, diffs, self.visited)
            if diffs:
                resource.text = apply_diffs(resource.text, diffs)
                resource.content = resource.text.encode(resp.encoding or "utf-8", errors="replace")
        return resource

    async def diff_for(self, base_url: str, reference: str, referrer: Optional[str] = None) -> Diff:
        try:
            resource = await self.fetch(base_url, reference, referrer)
        except InvalidReference as e:
            self.logger.debug(f"Skipping {reference!r}: {e}")
            return {}
        except ResourceFetchError as e:
            self.logger.error(f"Failed to fetch {reference!r} relative to {base_url}: {e}")
            return {}
        return {reference: data_uri(resource.url, resource.content, resource.content_type_header)}

    async def diffs_for(
        self, base_url: str, references: Iterable[str], referrer: Optional[str] = None
    ) -> Diff:
        """Fetch every distinct reference concurrently and merge the diffs in discovery order."""
        unique = list(dict.fromkeys(references))
        partials = await gather_or_cancel(self.diff_for(base_url, ref, referrer) for ref in unique)
        return merge_diffs(partials)

    def reaches(self, src: str, dst: str) -> bool:
        """Whether stylesheet ``src`` is ``dst`` or imports it, directly or transitively."""
        seen, stack = set(), [src]
        while stack:
            url = stack.pop()
            if url == dst:
                return True
            if url not in seen:
                seen.add(url)
                stack.extend(self.imports.get(url, ()))
        return False


# --------------------------- Resource Handlers ----------------------------- #


def replace_all(selector: str, attribute: str, label: str) -> ResourceHandler:
    """Build a handler inlining the ``attribute`` of every element matching ``selector``."""

    async def handler(fetcher: ResourceFetcher, document: str, base_url: str) -> Diff:
        references = list(html_references(document, selector, attribute))
        fetcher.logger.info(f"Found {len(references)} {label} in {base_url}")
        return await fetcher.diffs_for(base_url, references)

    handler.__name__ = f"replace_{label}"
    return handler


replace_images = replace_all("img[src]", "src", "images")
replace_css_files = replace_all('link[rel~="stylesheet"][href]', "href", "stylesheets")
replace_js_files = replace_all("script[src]", "src", "scripts")


async def replace_url_calls(fetcher: ResourceFetcher, document: str, base_url: str) -> Diff:
    """Inline ``url()`` references found in ``style`` attributes and ``<style>`` blocks."""
    references: list[str] = []
    for style in html_references(document, "[style]", "style"):
        references.extend(css_references(style))
    for block in html_texts(document, "style"):
        references.extend(css_references(block))
        references.extend(css_import_references(block))
    fetcher.logger.info(f"Found {len(references)} url() reference(s) in {base_url}")
    return await fetcher.diffs_for(base_url, references)


def replace_links(replacer: Callable[[str, str], Optional[str]]) -> ResourceHandler:
    """
    Rewrite ``<a href>`` targets without fetching them.

    ``replacer(base_url, href)`` returns the replacement, or None to leave the
    link alone.
    """

    def handler(fetcher: ResourceFetcher, document: str, base_url: str) -> Diff:
        diffs: Diff = {}
        for href in html_references(document, "a[href]", "href"):
            replacement = replacer(base_url, href)
            if replacement is not None:
                diffs[href] = replacement
        return diffs

    return handler


def predicated(predicate: Callable[[str, str], bool], handler: ResourceHandler) -> ResourceHandler:
    """Run ``handler`` only when ``predicate(document, base_url)`` holds."""

    async def wrapper(fetcher: ResourceFetcher, document: str, base_url: str) -> Diff:
        if not predicate(document, base_url):
            return {}
        return await call_hook(handler, fetcher, document, base_url)

    return wrapper


HANDLERS_BY_NAME: dict[str, ResourceHandler] = {
    "images": replace_images,
    "css": replace_css_files,
    "js": replace_js_files,
    "url_calls": replace_url_calls,
}
DEFAULT_HANDLERS: tuple[ResourceHandler, ...] = tuple(HANDLERS_BY_NAME[name] for name in DEFAULT_HANDLER_NAMES)


# --------------------------- Recursive CSS --------------------------------- #


async def bundle_css_recursively(
    fetcher: ResourceFetcher, resource: Resource, diffs: Diff, visited: set[str]
) -> Diff:
    """
    Inline the references of a fetched stylesheet, recursing into nested ones.

    Each stylesheet URL is scanned once per bundle and every later copy reuses
    that scan's nested diff, so a stylesheet imported from two places is
    inlined fully processed both times. Only a stylesheet that imports one of
    its own ancestors (an import cycle) gets that ancestor inlined as fetched.
    """
    if "css" not in resource.content_type.lower():
        return diffs
    url, parent = resource.url, resource.referrer

    if url in visited:
        if url not in fetcher.stylesheets or (parent is not None and fetcher.reaches(url, parent)):
            fetcher.logger.debug(f"Import cycle: {url} already encloses {parent}")
            return diffs
        if parent is not None:
            fetcher.imports.setdefault(parent, set()).add(url)
        nested = await fetcher.stylesheets[url]
        return merge_diffs([diffs, nested])

    visited.add(url)
    scanned = fetcher.stylesheets[url] = asyncio.get_running_loop().create_future()
    if parent is not None:
        fetcher.imports.setdefault(parent, set()).add(url)
    text = resource.text or ""
    references = list(css_references(text)) + list(css_import_references(text))
    fetcher.logger.debug(f"Resolving {len(references)} reference(s) inside {url}")
    try:
        nested = await fetcher.diffs_for(url, references, referrer=url)
    except Exception as e:
        scanned.set_exception(e)
        raise
    except BaseException:
        scanned.cancel()
        raise
    scanned.set_result(nested)
    return merge_diffs([diffs, nested])


# ----------------------------- Request Hooks ------------------------------- #

# Each factory returns a hook usable both before the original request and
# before resource requests; the page argument of the latter is ignored.


def strip_headers(names: Iterable[str]) -> Callable[..., RequestOptions]:
    blanked = {name: "" for name in names}

    def hook(options: RequestOptions, *_) -> RequestOptions:
        return options.with_headers(blanked)

    return hook


def spoof_headers(spoofs: Mapping[str, str]) -> Callable[..., RequestOptions]:
    spoofs = dict(spoofs)

    def hook(options: RequestOptions, *_) -> RequestOptions:
        return options.with_headers(spoofs)

    return hook


def proxy_to(proxy_url: str) -> Callable[..., RequestOptions]:
    def hook(options: RequestOptions, *_) -> RequestOptions:
        return options.replace(proxy=proxy_url)

    return hook


def redirect_policy(follow: bool) -> Callable[..., RequestOptions]:
    def hook(options: RequestOptions, *_) -> RequestOptions:
        return options.replace(follow_redirects=follow)

    return hook


# ------------------------------ Diff Hooks --------------------------------- #


def filter_diffs(predicate: Callable[[str, str], bool]) -> DiffHook:
    """Keep only the diffs for which ``predicate(reference, replacement)`` is true."""

    def hook(diffs: Diff) -> Diff:
        return {ref: rep for ref, rep in diffs.items() if predicate(ref, rep)}

    return hook


def third_party_only(site_url: str, include_subdomains: bool = False) -> Callable[[str, str], bool]:
    """Predicate for ``filter_diffs`` keeping references hosted outside the site of ``site_url``."""

    def predicate(reference: str, replacement: str) -> bool:
        try:
            resolved = urljoin(site_url, reference.strip())
        except ValueError:
            return False
        return not in_same_scope(resolved, site_url, include_subdomains)

    return predicate


# ------------------------------ Pipeline ----------------------------------- #


class Bundler:
    """Bundles one URL. Register hooks with ``on`` and call ``bundle``."""

    def __init__(
        self,
        url: Optional[str],
        cfg: Optional[Config] = None,
        *,
        logger: Optional[logging.LoggerAdapter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.cfg = cfg or Config()
        self.logger = logger or get_bundle_logger(url or "")
        self.hooks = HookRegistry(self.logger)
        self._transport = transport

    def on(self, name: str, hook: Callable) -> "Bundler":
        self.hooks.on(name, hook)
        return self

    async def bundle(self) -> str:
        if not self.url:
            raise BundleError("No URL provided to bundler.")
        started = time.monotonic()
        self.logger.info(f"Starting bundle: {self.url}")

        options = initial_options(self.url, self.cfg)
        try:
            for hook in self.hooks.before_original_request:
                options = await call_hook(hook, options)
        except Exception as e:
            raise BundleError(f"before_original_request hook failed for {self.url}: {e}") from e

        async with ClientPool(self.cfg, logger=self.logger, transport=self._transport) as pool:
            page = await self._fetch_original(pool, options)
            fetcher = ResourceFetcher(pool, self.hooks, page, self.cfg, logger=self.logger)
            handlers = self.hooks.resource_handlers
            try:
                partials = await gather_or_cancel(
                    call_hook(handler, fetcher, page.text, page.base_url) for handler in handlers
                )
            except Exception as e:
                raise BundleError(f"Resource handler failed for {page.final_url}: {e}") from e

        diffs = merge_diffs(partials, logger=self.logger)
        try:
            for hook in self.hooks.on_diffs_received:
                diffs = await call_hook(hook, diffs)
        except Exception as e:
            raise BundleError(f"on_diffs_received hook failed for {self.url}: {e}") from e

        result = apply_diffs(page.text, diffs)
        elapsed = time.monotonic() - started
        self.logger.info(
            f"Completed: {len(diffs)} replacement(s), {fetcher.requests_made} resource request(s) in {elapsed:.1f}s"
        )
        return result

    async def _fetch_original(self, pool: ClientPool, options: RequestOptions) -> Page:
        try:
            resp = await pool.send(options)
        except ResourceFetchError as e:
            raise BundleError(f"Failed to fetch {options.url}: {e}") from e
        if resp.status_code >= 400:
            raise BundleError(f"Failed to fetch {options.url}: HTTP {resp.status_code}")
        final_url = str(resp.url)
        text = decode_text(resp)
        return Page(
            final_url=final_url,
            base_url=effective_base_url(text, final_url),
            text=text,
            response=resp,
        )


def bundler_from_config(
    url: str,
    cfg: Config,
    *,
    logger: Optional[logging.LoggerAdapter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Bundler:
    """Build a ``Bundler`` with the hooks a ``Config`` asks for."""
    bundler = Bundler(url, cfg, logger=logger, transport=transport)
    if cfg.strip_headers:
        hook = strip_headers(cfg.strip_headers)
        bundler.on(BEFORE_ORIGINAL_REQUEST, hook).on(BEFORE_RESOURCE_REQUEST, hook)
    if cfg.spoof_headers:
        hook = spoof_headers(cfg.spoof_headers)
        bundler.on(BEFORE_ORIGINAL_REQUEST, hook).on(BEFORE_RESOURCE_REQUEST, hook)
    for name in cfg.handlers:
        bundler.on(ON_ORIGINAL_RECEIVED, HANDLERS_BY_NAME[name])
    if cfg.recursive_css:
        bundler.on(ON_RESOURCE_RECEIVED, bundle_css_recursively)
    if cfg.third_party_only:
        bundler.on(ON_DIFFS_RECEIVED, filter_diffs(third_party_only(url)))
    return bundler


async def bundle(
    url: str,
    cfg: Optional[Config] = None,
    *,
    logger: Optional[logging.LoggerAdapter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Bundle ``url`` with the handlers and hooks configured in ``cfg``."""
    return await bundler_from_config(url, cfg or Config(), logger=logger, transport=transport).bundle()


# ------------------------------- CLI --------------------------------------- #


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bundle web pages into self-contained HTML documents.")
    parser.add_argument("urls", nargs="+", metavar="URL", help="Page(s) to bundle.")
    parser.add_argument("--config", "-c", type=Path, help="Path to YAML configuration file.")
    parser.add_argument("--output", "-o", type=Path, help="Output file (only with a single URL).")
    parser.add_argument("--proxy", help="Send every request through this proxy.")
    parser.add_argument(
        "--third-party-only", action="store_true", default=None, help="Only inline resources from other sites."
    )
    parser.add_argument(
        "--no-recursive-css",
        dest="recursive_css",
        action="store_false",
        default=None,
        help="Do not inline references inside fetched stylesheets.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level.")
    args = parser.parse_args(argv)
    if args.output and len(args.urls) > 1:
        parser.error("--output can only be used with a single URL")
    return args


def output_path_for(url: str, results_root: Path) -> Path:
    return results_root / f"{derive_bundle_slug(url)}.html"


async def run_for_url(
    url: str,
    cfg: Config,
    output: Path,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    logger = get_bundle_logger(url)
    try:
        document = await bundle(url, cfg, logger=logger, transport=transport)
    except BundleError as e:
        logger.error(f"Failed to create bundle for {url}: {e}")
        return False
    ensure_dir(output.parent)
    output.write_text(document, encoding="utf-8")
    logger.info(f"Saved bundle: {url} -> {output}")
    return True


async def main_async(
    cfg: Config,
    urls: Iterable[str],
    output: Optional[Path] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    results_root = Path(cfg.results_dir)
    ensure_dir(results_root)
    setup_root_logger(results_root, cfg.log_level)

    root_adapter = logging.LoggerAdapter(logging.getLogger("page_bundler"), extra={"bundle": "ALL"})
    urls = list(urls)
    root_adapter.info(f"Bundling {len(urls)} page(s)")
    failures = 0
    for url in urls:
        target = output or output_path_for(url, results_root)
        if not await run_for_url(url, cfg, target, transport=transport):
            failures += 1
    root_adapter.info(f"All done. {len(urls) - failures} succeeded, {failures} failed.")
    return 1 if failures else 0


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = parse_args(argv)
    cfg = Config.from_yaml(args.config) if args.config else Config()
    cfg = cfg.with_overrides(
        proxy=args.proxy,
        third_party_only=args.third_party_only,
        recursive_css=args.recursive_css,
        log_level="DEBUG" if args.verbose else None,
    )
    try:
        code = asyncio.run(main_async(cfg, args.urls, args.output))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
