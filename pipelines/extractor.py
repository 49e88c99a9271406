"""HTML to clean text extraction.

Pure and deterministic: the same HTML always yields the same title and text.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

FALLBACK_TITLE = "Untitled Document"

# Page chrome that never carries documentation content
NOISE_SELECTORS = (
    "script, style, noscript, template, nav, header, footer, aside, "
    ".sidebar, .table-of-contents, .toc, [role=navigation]"
)

# Preferred content containers, most specific first
CONTENT_SELECTORS = ("article", "main", "body")

PARAGRAPH_TAGS = (
    "p", "div", "section", "pre", "blockquote", "table",
    "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "dl"
)
LINE_TAGS = ("li", "tr", "dt", "dd")

_INLINE_SPACE_RE = re.compile(r"[ \t\f\v ]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


@dataclass
class ExtractedPage:
    """Title and cleaned text of a fetched page."""
    url: Optional[str]
    title: str
    text: str
    word_count: int


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces, trim lines and keep at most one blank line."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


def _extract_title(soup: BeautifulSoup) -> str:
    h1 = soup.find("h1")
    if h1:
        title = h1.get_text(" ", strip=True)
        if title:
            return title

    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title and og_title.get("content", "").strip():
        return og_title["content"].strip()

    if soup.title and soup.title.string and soup.title.string.strip():
        return soup.title.string.strip()

    return FALLBACK_TITLE


def _extract_text(soup: BeautifulSoup) -> str:
    for element in soup.select(NOISE_SELECTORS):
        element.decompose()

    container = None
    for selector in CONTENT_SELECTORS:
        container = soup.find(selector)
        if container is not None:
            break
    if container is None:
        container = soup

    # Mark block boundaries so paragraphs survive get_text()
    for br in container.find_all("br"):
        br.replace_with("\n")
    for tag in container.find_all(LINE_TAGS):
        tag.insert_after("\n")
    for tag in container.find_all(PARAGRAPH_TAGS):
        tag.insert_after("\n\n")

    return normalize_whitespace(container.get_text())


def extract(raw_html: str, url: Optional[str] = None) -> ExtractedPage:
    """Extract the title and cleaned text from raw HTML.

    Title resolution order: first ``h1``, ``og:title`` meta tag, ``<title>``,
    then a fixed fallback. Malformed or empty markup yields empty text and
    the fallback title rather than an error.

    Args:
        raw_html: Page markup
        url: Source URL, carried through for logging and provenance

    Returns:
        ExtractedPage with title, text and word count
    """
    if not raw_html or not isinstance(raw_html, str):
        return ExtractedPage(url=url, title=FALLBACK_TITLE, text="", word_count=0)

    try:
        soup = BeautifulSoup(raw_html, "html.parser")
        title = _extract_title(soup)
        text = _extract_text(soup)
    except Exception as e:
        logger.warning(f"Failed to parse HTML from {url or 'unknown source'}: {e}")
        return ExtractedPage(url=url, title=FALLBACK_TITLE, text="", word_count=0)

    return ExtractedPage(url=url, title=title, text=text, word_count=count_words(text))
