from __future__ import annotations

import html as html_lib
import re
import urllib.parse
from abc import ABC, abstractmethod
from typing import List

from bs4 import BeautifulSoup

_CRAWLABLE_SCHEMES = ("http", "https")

# -----------------------------
# Patterns
# -----------------------------

# Pattern scan, not a DOM parse: attributes split across tags or broken markup
# can yield false positives/negatives.
_TITLE_RE = re.compile(r"<title\b[^>]*>(.*?)</title\s*>", re.IGNORECASE | re.DOTALL)
_ANCHOR_HREF_RE = re.compile(
    r"""<a\s(?:[^>]*?\s)?href\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'<>`=]+))""",
    re.IGNORECASE,
)
_WS_RE = re.compile(r"\s+")


class ExtractionError(Exception):
    """Raised when a page's markup defeats title/link extraction."""


# -----------------------------
# Helpers
# -----------------------------

def _clean_title(raw: str) -> str:
    return _WS_RE.sub(" ", html_lib.unescape(raw or "")).strip()


def _keep_href(href: str) -> bool:
    if not href:
        return False
    if href.startswith("#"):
        return False
    if href.lower().startswith("javascript:"):
        return False
    return True


def resolve_url(base: str, href: str) -> str:
    """RFC 3986 reference resolution. The result is not normalized further."""
    return urllib.parse.urljoin(base, href)


def hostname(url: str) -> str:
    try:
        return urllib.parse.urlsplit(url).hostname or ""
    except ValueError:
        return ""


def is_crawlable_url(url: str) -> bool:
    try:
        parts = urllib.parse.urlsplit(url)
        return parts.scheme.lower() in _CRAWLABLE_SCHEMES and bool(parts.hostname)
    except ValueError:
        return False


def is_in_scope(url: str, start_host: str, domain_only: bool) -> bool:
    """
    Domain filter. With domain_only the hostname must equal the start host
    exactly; sub.example.com is out of scope for a crawl of example.com.
    """
    if not is_crawlable_url(url):
        return False
    if domain_only and hostname(url) != start_host.lower():
        return False
    return True


# -----------------------------
# Extractors
# -----------------------------

class Extractor(ABC):
    """Turns raw HTML into a title and the raw href values of its anchors."""

    @abstractmethod
    def extract_title(self, html: str) -> str:
        ...

    @abstractmethod
    def extract_links(self, html: str) -> List[str]:
        ...


class RegexExtractor(Extractor):
    """Default extractor: fast pattern scan over the raw HTML."""

    def extract_title(self, html: str) -> str:
        try:
            m = _TITLE_RE.search(html or "")
        except (TypeError, re.error) as e:
            raise ExtractionError(f"title scan failed: {e}") from e
        return _clean_title(m.group(1)) if m else ""

    def extract_links(self, html: str) -> List[str]:
        links: List[str] = []
        try:
            for m in _ANCHOR_HREF_RE.finditer(html or ""):
                href = next((g for g in m.groups() if g is not None), "")
                href = html_lib.unescape(href).strip()
                if _keep_href(href):
                    links.append(href)
        except (TypeError, re.error) as e:
            raise ExtractionError(f"link scan failed: {e}") from e
        return links


class SoupExtractor(Extractor):
    """Tolerant tokenizer-based extractor (BeautifulSoup + lxml), same filtering rules."""

    def __init__(self, parser: str = "lxml") -> None:
        self.parser = parser

    def _soup(self, html: str) -> BeautifulSoup:
        try:
            return BeautifulSoup(html or "", self.parser)
        except Exception as e:
            raise ExtractionError(f"{type(e).__name__}: {e}") from e

    def extract_title(self, html: str) -> str:
        soup = self._soup(html)
        if soup.title is None:
            return ""
        return _clean_title(soup.title.get_text())

    def extract_links(self, html: str) -> List[str]:
        soup = self._soup(html)
        links: List[str] = []
        for a in soup.find_all("a", href=True):
            href = (a.get("href") or "").strip()
            if _keep_href(href):
                links.append(href)
        return links
