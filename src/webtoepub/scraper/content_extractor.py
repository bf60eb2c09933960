"""Generic novel table-of-contents and chapter extraction from raw HTML.

No per-site rules live here.  Table-of-contents pages are read with
BeautifulSoup heuristics (OpenGraph / ``<meta>`` tags for metadata, anchor
text and URL shape for chapter links, ``rel="next"`` for pagination), with
``trafilatura`` metadata as a fallback.  Chapter bodies are extracted with
``trafilatura``; when it finds nothing the densest text container on the
page is used instead.
"""

from __future__ import annotations

import html as html_module
import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urldefrag, urljoin, urlparse

import trafilatura
from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

#: Anchor text that names a chapter ("Chapter 12", "Ep. 3", "第12話", ...).
_CHAPTER_TEXT_RE = re.compile(
    r"\b(chapter|chap\.?|ch\.|episode|ep\.|prologue|epilogue|interlude|side story)\b"
    r"|第\s*[0-9０-９一二三四五六七八九十百千]+\s*[話章回節]",
    re.IGNORECASE,
)

#: URL path shapes that identify a chapter page.
_CHAPTER_PATH_RE = re.compile(
    r"(chapter|chap|episode)[-_/]?\d*|/ch[-_]?\d+|/\d+/?$",
    re.IGNORECASE,
)

#: Anchor text of a "next page" link on a paginated table of contents.
_NEXT_TEXT_RE = re.compile(r"^\s*(next( page)?|次へ|次のページ)\s*[»›>]*\s*$", re.IGNORECASE)

#: Label stripped from the text of an element whose class mentions "author".
_AUTHOR_PREFIX_RE = re.compile(r"^\s*(author|by)\s*[:：]?\s*", re.IGNORECASE)

#: Tags considered when looking for the element that holds chapter text.
_CONTAINER_TAGS: tuple[str, ...] = ("article", "main", "section", "div")


# ---------------------------------------------------------------------------
# Output dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ChapterLink:
    """A chapter discovered on a table-of-contents page."""

    index: int
    title: str
    url: str

    def to_payload(self) -> dict[str, Any]:
        return {"index": self.index, "title": self.title, "url": self.url}


@dataclass
class NovelInfo:
    """Metadata and chapter list read from a table-of-contents page.

    Attributes:
        url: URL the page was fetched from (after redirects).
        title: Novel title, or ``None`` if not detected.
        author: Author name, or ``None``.
        description: Synopsis, or ``None``.
        cover: Absolute cover image URL, or ``None``.
        chapters: Chapter links in document order, de-duplicated.
        next_page: Absolute URL of the next TOC page, if the TOC is paginated.
    """

    url: str
    title: str | None = None
    author: str | None = None
    description: str | None = None
    cover: str | None = None
    chapters: list[ChapterLink] = field(default_factory=list)
    next_page: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title or "Untitled",
            "author": self.author or "Unknown",
            "description": self.description or "",
            "cover": self.cover,
            "chapters": [chapter.to_payload() for chapter in self.chapters],
        }


@dataclass
class ExtractedChapter:
    """Readable content of one chapter page.

    Attributes:
        title: Chapter heading, or ``None`` if not detected.
        paragraphs: Body text split into paragraphs.
        images: Absolute URLs of images inside the chapter body.
    """

    title: str | None
    paragraphs: list[str]
    images: list[str] = field(default_factory=list)

    @property
    def html(self) -> str:
        """Return the paragraphs as escaped XHTML ``<p>`` elements."""
        return "".join(f"<p>{html_module.escape(p)}</p>" for p in self.paragraphs)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _clean(text: str | None) -> str | None:
    if not text:
        return None
    collapsed = re.sub(r"\s+", " ", text).strip()
    return collapsed or None


def _meta_content(soup: BeautifulSoup, *selectors: dict[str, str]) -> str | None:
    """Return the ``content`` of the first matching ``<meta>`` tag."""
    for attrs in selectors:
        tag = soup.find("meta", attrs=attrs)
        if isinstance(tag, Tag):
            value = _clean(tag.get("content"))
            if value:
                return value
    return None


def _absolute_http_url(base_url: str, href: str | None) -> str | None:
    """Resolve ``href`` against ``base_url``; ``None`` for non-HTTP targets."""
    if not href:
        return None
    href = href.strip()
    if not href or href.startswith(("#", "javascript:", "mailto:", "data:")):
        return None
    absolute, _fragment = urldefrag(urljoin(base_url, href))
    if urlparse(absolute).scheme not in ("http", "https"):
        return None
    return absolute


def _is_chapter_link(text: str, url: str) -> bool:
    if _CHAPTER_TEXT_RE.search(text):
        return True
    return bool(_CHAPTER_PATH_RE.search(urlparse(url).path))


def _find_next_page(soup: BeautifulSoup, base_url: str) -> str | None:
    for tag in soup.find_all(["link", "a"], rel="next"):
        url = _absolute_http_url(base_url, tag.get("href"))
        if url:
            return url
    for anchor in soup.find_all("a", href=True):
        if _NEXT_TEXT_RE.match(anchor.get_text(" ", strip=True)):
            return _absolute_http_url(base_url, anchor.get("href"))
    return None


def _densest_container(soup: BeautifulSoup) -> Tag:
    """Return the element whose direct children carry the most text.

    Novel sites put chapter text either in ``<p>`` children or as bare text
    separated by ``<br>``; both count towards the score.
    """
    best: Tag | None = None
    best_score = 0
    for candidate in soup.find_all(_CONTAINER_TAGS):
        score = sum(
            len(p.get_text(strip=True)) for p in candidate.find_all("p", recursive=False)
        )
        score += sum(len(s.strip()) for s in candidate.find_all(string=True, recursive=False))
        score += 20 * len(candidate.find_all("br", recursive=False))
        if score > best_score:
            best, best_score = candidate, score
    if best is not None:
        return best
    return soup.body if isinstance(soup.body, Tag) else soup


def _container_paragraphs(container: Tag) -> list[str]:
    paragraphs = [
        text
        for p in container.find_all("p")
        if (text := p.get_text(" ", strip=True))
    ]
    if paragraphs:
        return paragraphs
    return [line.strip() for line in container.get_text("\n").splitlines() if line.strip()]


def _trafilatura_metadata(html: str, url: str) -> Any:
    try:
        return trafilatura.extract_metadata(html, default_url=url)
    except Exception as exc:  # noqa: BLE001
        logger.debug("scraper: trafilatura metadata failed for %s: %s", url, exc)
        return None


# ---------------------------------------------------------------------------
# Public extraction functions
# ---------------------------------------------------------------------------


def parse_novel_page(html: str, url: str) -> NovelInfo:
    """Read novel metadata, chapter links and pagination from a TOC page.

    Args:
        html: Raw HTML of the table-of-contents page.
        url: URL the page was served from; relative links resolve against it.

    Returns:
        A :class:`NovelInfo`.  ``chapters`` is empty when nothing looked like
        a chapter link.
    """
    soup = BeautifulSoup(html, "html.parser")
    meta = _trafilatura_metadata(html, url)

    h1 = soup.find("h1")
    title = (
        _meta_content(soup, {"property": "og:title"}, {"name": "twitter:title"})
        or (_clean(h1.get_text(" ")) if isinstance(h1, Tag) else None)
        or _clean(getattr(meta, "title", None))
        or (_clean(soup.title.get_text()) if soup.title else None)
    )
    author = _meta_content(
        soup, {"name": "author"}, {"property": "book:author"}, {"property": "og:novel:author"}
    ) or _clean(getattr(meta, "author", None))
    if author is None:
        author_tag = soup.find(class_=re.compile(r"author", re.IGNORECASE))
        if isinstance(author_tag, Tag):
            author = _clean(_AUTHOR_PREFIX_RE.sub("", author_tag.get_text(" ")))
    description = _meta_content(
        soup, {"property": "og:description"}, {"name": "description"}
    ) or _clean(getattr(meta, "description", None))
    cover = _absolute_http_url(
        url, _meta_content(soup, {"property": "og:image"}, {"name": "twitter:image"})
    )

    page_host = urlparse(url).netloc
    page_url, _fragment = urldefrag(url)
    seen: set[str] = set()
    chapters: list[ChapterLink] = []
    for anchor in soup.find_all("a", href=True):
        link = _absolute_http_url(url, anchor.get("href"))
        if link is None or link == page_url or link in seen:
            continue
        if urlparse(link).netloc != page_host:
            continue
        text = anchor.get_text(" ", strip=True)
        if not _is_chapter_link(text, link):
            continue
        seen.add(link)
        chapters.append(
            ChapterLink(index=len(chapters), title=_clean(text) or f"Chapter {len(chapters) + 1}", url=link)
        )

    next_page = _find_next_page(soup, url)
    if next_page in seen:
        next_page = None

    logger.debug("scraper: parsed %s: %d chapter links", url, len(chapters))
    return NovelInfo(
        url=url,
        title=title,
        author=author,
        description=description,
        cover=cover,
        chapters=chapters,
        next_page=next_page,
    )


def extract_chapter(html: str, url: str) -> ExtractedChapter:
    """Extract the readable body of a chapter page.

    Args:
        html: Raw HTML of the chapter page.
        url: URL the page was served from.

    Returns:
        An :class:`ExtractedChapter`; ``paragraphs`` may be empty for pages
        with no readable text.
    """
    soup = BeautifulSoup(html, "html.parser")
    container = _densest_container(soup)

    heading = soup.find(["h1", "h2"])
    title = (
        (_clean(heading.get_text(" ")) if isinstance(heading, Tag) else None)
        or _meta_content(soup, {"property": "og:title"})
        or (_clean(soup.title.get_text()) if soup.title else None)
    )

    paragraphs: list[str] = []
    try:
        text = trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=False,
            favor_recall=True,
            output_format="txt",
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("scraper: trafilatura extraction failed for %s: %s", url, exc)
        text = None
    if text:
        paragraphs = [line.strip() for line in text.splitlines() if line.strip()]
    if not paragraphs:
        paragraphs = _container_paragraphs(container)

    images: list[str] = []
    for img in container.find_all("img"):
        src = _absolute_http_url(url, img.get("src") or img.get("data-src"))
        if src and src not in images:
            images.append(src)

    return ExtractedChapter(title=title, paragraphs=paragraphs, images=images)
