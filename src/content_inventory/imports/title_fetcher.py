"""
Title Fetcher

Retrieves the HTML of a linked page so that import rows with a blank title
can be filled in. The same fetch also yields a publish date and an author
when the page declares them (meta tags, JSON-LD, <time> elements).

Every failure mode (network error, timeout, non-2xx status, non-HTML
content, missing or empty title) yields None or empty metadata; callers
never see an exception.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterator, Optional

import httpx
from bs4 import BeautifulSoup

from .dates import normalize_date
from .models import PageMetadata
from ..config import settings

logger = logging.getLogger(__name__)

# The <title> lives in <head>; there is no need to download whole documents.
MAX_HTML_BYTES = 1024 * 1024

# Checked in order; the first usable value wins.
DATE_META = [
    ("property", "article:published_time"),
    ("property", "og:article:published_time"),
    ("name", "date"),
    ("name", "publish-date"),
    ("name", "DC.date.issued"),
    ("name", "dcterms.date"),
]
AUTHOR_META = [
    ("name", "author"),
    ("property", "article:author"),
]
JSON_LD_DATE_KEYS = ("datePublished", "uploadDate", "dateCreated")


@asynccontextmanager
async def http_client_scope(
    client: Optional[httpx.AsyncClient],
    timeout: float,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield `client`, or a short-lived client when none is shared."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as owned:
        yield owned


def _text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = " ".join(value.split())
    return text or None


def _codec_name(declared: Optional[str]) -> str:
    if declared:
        try:
            return codecs.lookup(declared).name
        except LookupError:
            logger.debug("Unknown charset %r, decoding as utf-8", declared)
    return "utf-8"


# ---------------------------------------------------------------------
# HTML extraction
# ---------------------------------------------------------------------

def _title_from(soup: BeautifulSoup) -> Optional[str]:
    if soup.title is None:
        return None
    return _text(soup.title.get_text())


def _meta_content(soup: BeautifulSoup, attr: str, value: str) -> Optional[str]:
    tag = soup.find("meta", attrs={attr: value})
    if tag is None:
        return None
    return _text(tag.get("content"))


def _json_ld_objects(soup: BeautifulSoup) -> Iterator[Dict[str, Any]]:
    """Yield every JSON-LD object on the page, including `@graph` members."""
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.get_text())
        except ValueError:
            continue

        candidates = data if isinstance(data, list) else [data]
        for obj in candidates:
            if not isinstance(obj, dict):
                continue
            yield obj
            graph = obj.get("@graph")
            if isinstance(graph, list):
                yield from (item for item in graph if isinstance(item, dict))


def _json_ld_author(obj: Dict[str, Any]) -> Optional[str]:
    author = obj.get("author")
    if isinstance(author, list) and author:
        author = author[0]
    if isinstance(author, dict):
        author = author.get("name")
    return _text(author)


def _publish_date_from(soup: BeautifulSoup) -> Optional[str]:
    for obj in _json_ld_objects(soup):
        for key in JSON_LD_DATE_KEYS:
            parsed = normalize_date(_text(obj.get(key)))
            if parsed:
                return parsed

    for attr, value in DATE_META:
        parsed = normalize_date(_meta_content(soup, attr, value))
        if parsed:
            return parsed

    for selector in ("article time[datetime]", "time[datetime]"):
        tag = soup.select_one(selector)
        if tag is not None:
            parsed = normalize_date(_text(tag.get("datetime")))
            if parsed:
                return parsed

    return None


def _author_from(soup: BeautifulSoup) -> Optional[str]:
    for attr, value in AUTHOR_META:
        author = _meta_content(soup, attr, value)
        if author:
            return author

    for obj in _json_ld_objects(soup):
        author = _json_ld_author(obj)
        if author:
            return author

    return None


def extract_title(html: str) -> Optional[str]:
    """Return the whitespace-normalised <title> text, or None if absent."""
    return _title_from(BeautifulSoup(html, "html.parser"))


def extract_metadata(html: str) -> PageMetadata:
    """
    Extract title, publish date and author from an HTML document.

    Publish dates are returned as YYYY-MM-DD; values that cannot be
    normalised are ignored in favour of the next source.
    """
    soup = BeautifulSoup(html, "html.parser")
    return PageMetadata(
        title=_title_from(soup),
        publish_date=_publish_date_from(soup),
        author=_author_from(soup),
    )


# ---------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------

async def _fetch_html(
    url: str,
    timeout: float,
    client: Optional[httpx.AsyncClient],
) -> Optional[str]:
    headers = {
        "User-Agent": settings.title_fetch_user_agent,
        "Accept": "text/html,application/xhtml+xml",
    }

    async with http_client_scope(client, timeout) as http:
        async with http.stream("GET", url, headers=headers) as resp:
            if not resp.is_success:
                logger.debug("Page fetch for %s returned HTTP %s", url, resp.status_code)
                return None

            # Checked before reading the body so PDFs and media are never downloaded
            content_type = resp.headers.get("content-type", "")
            if "text/html" not in content_type.lower():
                logger.debug("Page fetch for %s skipped: content-type %r", url, content_type)
                return None

            body = bytearray()
            async for chunk in resp.aiter_bytes():
                body.extend(chunk)
                if len(body) >= MAX_HTML_BYTES:
                    break

            encoding = _codec_name(resp.charset_encoding)

    return body.decode(encoding, errors="replace")


async def fetch_page_metadata(
    url: str,
    timeout: Optional[float] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> PageMetadata:
    """
    Fetch `url` and return whatever metadata the page declares.

    Parameters
    ----------
    url : str
        Absolute http(s) URL.
    timeout : Optional[float]
        Overall deadline in seconds for the whole request, body included.
        Defaults to settings.title_fetch_timeout_seconds.
    client : Optional[httpx.AsyncClient]
        Shared client to use; a short-lived one is created when omitted.

    Returns
    -------
    PageMetadata
        Empty metadata on any failure.
    """
    deadline = settings.title_fetch_timeout_seconds if timeout is None else timeout

    try:
        html = await asyncio.wait_for(_fetch_html(url, deadline, client), timeout=deadline)
        if html is not None:
            return extract_metadata(html)
    except asyncio.TimeoutError:
        logger.debug("Page fetch for %s timed out after %.1fs", url, deadline)
    except Exception as exc:
        logger.debug("Page fetch for %s failed: %s: %s", url, type(exc).__name__, exc)

    return PageMetadata()


async def fetch_page_title(
    url: str,
    timeout: Optional[float] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Optional[str]:
    """
    Fetch `url` and return its page title, or None on any failure.
    """
    metadata = await fetch_page_metadata(url, timeout=timeout, client=client)
    return metadata.title
