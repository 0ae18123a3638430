"""
URL Ingestion — fetch a web page and reduce it to plain text.

Flow:
  validate_url()      sync check in the API before a document row exists
  UrlFetcher.fetch()  httpx GET (browser User-Agent, redirects followed)
  html_to_text()      BeautifulSoup, script/style/noscript removed,
                      whitespace collapsed
  quality gate        < 100 chars or a JavaScript/cookie wall → ExtractionFailed

The resulting text enters the ingestion pipeline at the classification step.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from app.core.config import settings
from app.core.errors import ExtractionFailed, InvalidSourceUrl, NetworkError, ProviderTimeout

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

MIN_PAGE_TEXT_CHARS = 100

BLOCKED_PAGE_INDICATORS: tuple[str, ...] = (
    "javascript is not enabled",
    "browser version is no longer supported",
    "enable javascript",
    "please enable cookies",
)

GOOGLE_DOCS_MESSAGE = (
    "Google Docs URLs are not supported. Please download the document as PDF or "
    "DOCX and upload it directly using the file upload feature."
)
INSUFFICIENT_CONTENT_MESSAGE = (
    "Could not extract sufficient content from URL. The page may require "
    "JavaScript or may be behind authentication."
)
BLOCKED_PAGE_MESSAGE = (
    "This URL requires JavaScript or authentication. Please download the content "
    "and upload it as a file instead."
)


def validate_url(url: str) -> str:
    """Return the stripped URL or raise InvalidSourceUrl."""
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidSourceUrl("Only http and https URLs can be imported")
    if "docs.google.com" in parsed.netloc.lower():
        raise InvalidSourceUrl(GOOGLE_DOCS_MESSAGE)
    return url


def file_name_from_url(url: str) -> str:
    """hostname + path, with '/' replaced by '_' (e.g. example.com_blog_post)."""
    parsed = urlparse(url)
    return f"{parsed.hostname or ''}{parsed.path}".replace("/", "_").rstrip("_") or url


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style", "noscript"]):
        element.decompose()
    root = soup.body or soup
    text = root.get_text(separator=" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()


def check_page_text(text: str) -> None:
    if len(text) < MIN_PAGE_TEXT_CHARS:
        raise ExtractionFailed(INSUFFICIENT_CONTENT_MESSAGE)
    lowered = text.lower()
    if any(indicator in lowered for indicator in BLOCKED_PAGE_INDICATORS):
        raise ExtractionFailed(BLOCKED_PAGE_MESSAGE)


class UrlFetcher:
    """
    Usage:
        text = await UrlFetcher().fetch_text("https://example.com/post")
    """

    def __init__(
        self,
        client:  httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client  = client
        self._timeout = timeout or settings.url_fetch_timeout_seconds

    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        try:
            return await client.get(url, headers={"User-Agent": BROWSER_USER_AGENT})
        except httpx.TimeoutException as exc:
            raise ProviderTimeout("Timed out while loading the URL") from exc
        except httpx.HTTPError as exc:
            raise NetworkError() from exc

    async def fetch_html(self, url: str) -> str:
        url = validate_url(url)
        if self._client is not None:
            response = await self._get(self._client, url)
        else:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=True,
            ) as client:
                response = await self._get(client, url)

        if not response.is_success:
            logger.warning("UrlFetcher | url=%s status=%d", url, response.status_code)
            raise NetworkError(f"Could not load URL (HTTP {response.status_code})")
        return response.text

    async def fetch_text(self, url: str) -> str:
        html = await self.fetch_html(url)
        text = html_to_text(html)
        check_page_text(text)
        logger.info("UrlFetcher | url=%s chars=%d", url, len(text))
        return text
