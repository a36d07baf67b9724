"""
BeautifulSoup-based extraction of structured page content and outgoing links.
"""

from __future__ import annotations

from typing import List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag

from docgraph.exceptions import ExtractionError
from docgraph.models import ContentBlock, PageContent, PageMetadata

PARSER = "html.parser"

# Chrome and announcement furniture around the documentation body.
STRIP_SELECTOR = "nav, footer, .sidebar, script, style, iframe, .announcement-bar"

# Block kinds whose text keeps its own line structure.
PREFORMATTED_TAGS = frozenset(["pre"])

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Canonicalize an absolute URL the way a browser reports ``a.href``.

    Scheme and host are lowercased, the scheme's default port is dropped and an
    empty path becomes ``/``. Raises ValueError for an unparseable port.
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    netloc = host if port is None or port == DEFAULT_PORTS.get(scheme) else f"{host}:{port}"
    if parts.username is not None:
        userinfo = parts.username if parts.password is None else f"{parts.username}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    path = parts.path or ("/" if netloc else "")
    return urlunsplit((scheme, netloc, path, parts.query, parts.fragment))


def origin_of(url: str) -> str:
    """Return ``scheme://host[:port]`` for an absolute URL, default port omitted."""
    parts = urlsplit(normalize_url(url))
    return f"{parts.scheme}://{parts.netloc.rpartition('@')[2]}"


def _meta_content(soup: BeautifulSoup, name: str) -> Optional[str]:
    tag = soup.find("meta", attrs={"name": name})
    if isinstance(tag, Tag):
        value = tag.get("content")
        if isinstance(value, str):
            return value
    return None


def _block_for(element: Tag, page_url: str) -> ContentBlock:
    kind = element.name.lower()
    if kind == "table":
        return ContentBlock(type=kind, content=str(element))
    if kind == "img":
        src = element.get("src") or ""
        if isinstance(src, list):
            src = " ".join(src)
        alt = element.get("alt")
        return ContentBlock(
            type=kind,
            content=urljoin(page_url, src) if src else "",
            alt=alt if isinstance(alt, str) else None,
        )
    if kind in PREFORMATTED_TAGS:
        return ContentBlock(type=kind, content=element.get_text().strip())
    return ContentBlock(type=kind, content=" ".join(element.get_text(" ").split()))


def extract_content(html: str, page_url: str) -> PageContent:
    """Extract title, content blocks and metadata from a rendered page.

    Non-content elements are removed first; the blocks are the direct element
    children of ``<main>`` (or ``<body>`` when there is no ``<main>``), and
    blocks without content are dropped.
    """
    if not html or not html.strip():
        raise ExtractionError("Empty document", url=page_url)

    try:
        soup = BeautifulSoup(html, PARSER)

        title = soup.title.get_text(strip=True) if soup.title else ""
        metadata = PageMetadata(
            last_modified=_meta_content(soup, "last-modified"),
            author=_meta_content(soup, "author"),
        )

        for element in soup.select(STRIP_SELECTOR):
            element.decompose()

        root = soup.find("main") or soup.body or soup
        blocks = [
            block
            for block in (_block_for(child, page_url) for child in root.children if isinstance(child, Tag))
            if block.content
        ]
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Failed to extract content: {e}", url=page_url) from e

    return PageContent(title=title, blocks=blocks, metadata=metadata)


def extract_links(html: str, page_url: str, origin: str) -> List[str]:
    """Return the deduplicated same-origin links of a page, in document order.

    ``href`` values are resolved against ``page_url`` and normalized with
    ``normalize_url``. Links to other origins, non-http(s) schemes, and any URL
    carrying a fragment are excluded.
    """
    try:
        soup = BeautifulSoup(html, PARSER)
    except Exception as e:
        raise ExtractionError(f"Failed to parse links: {e}", url=page_url) from e

    wanted_origin = origin_of(origin)
    links: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        if not isinstance(href, str) or not href.strip():
            continue
        absolute = urljoin(page_url, href.strip())
        if "#" in absolute:
            continue
        try:
            absolute = normalize_url(absolute)
        except ValueError:
            continue
        if not absolute.startswith(("http://", "https://")):
            continue
        if origin_of(absolute) != wanted_origin:
            continue
        links.setdefault(absolute, None)
    return list(links)
