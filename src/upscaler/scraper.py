"""Extract an ordered image list and a title from a chapter/gallery page.

Pages are fetched with the same proxy and client identity as image
downloads. Images are the ``<img>`` tags whose ``id`` starts with
``image-`` (the reader markup of the supported sites); the title is the part
of ``<title>`` before the first ``|``.
"""

from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import List, Optional
from urllib.parse import urljoin, urlparse

import httpx

from .exceptions import ScrapeError
from .fetcher import build_client
from .logging import get_logger
from .models import FetchConfig

logger = get_logger(__name__)

IMAGE_ID_PREFIX = "image-"


@dataclass
class ScrapedPage:
    url: str
    title: str
    images: List[str] = field(default_factory=list)


class _ReaderPageParser(HTMLParser):
    def __init__(self, id_prefix: str):
        super().__init__(convert_charrefs=True)
        self.id_prefix = id_prefix
        self.images: List[str] = []
        self._title_parts: List[str] = []
        self._in_title = False

    def handle_starttag(self, tag, attrs):
        if tag == "title":
            self._in_title = True
        elif tag == "img":
            attrs = dict(attrs)
            if (attrs.get("id") or "").startswith(self.id_prefix):
                src = (attrs.get("src") or attrs.get("data-src") or "").strip()
                if src:
                    self.images.append(src)

    def handle_endtag(self, tag):
        if tag == "title":
            self._in_title = False

    def handle_data(self, data):
        if self._in_title:
            self._title_parts.append(data)

    @property
    def title(self) -> str:
        return "".join(self._title_parts).split("|")[0].strip()


def parse_page(html: str, base_url: str, id_prefix: str = IMAGE_ID_PREFIX) -> ScrapedPage:
    """Parse reader markup into absolute image URLs (document order) and a title."""
    parser = _ReaderPageParser(id_prefix)
    parser.feed(html)
    parser.close()
    return ScrapedPage(
        url=base_url,
        title=parser.title,
        images=[urljoin(base_url, src) for src in parser.images],
    )


class PageScraper:
    def __init__(self, config: Optional[FetchConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or FetchConfig()
        self._client = client

    async def scrape(self, url: str) -> ScrapedPage:
        """Fetch ``url`` and extract its images.

        Raises:
            ScrapeError: if the page cannot be fetched or holds no images
        """
        try:
            parsed = urlparse(url)
        except ValueError as e:
            raise ScrapeError(f"Invalid URL {url}: {e}", url=url) from e
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ScrapeError(f"Not an http(s) URL: {url}", url=url)

        headers = {
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": f"{parsed.scheme}://{parsed.netloc}/",
        }
        client = self._client or build_client(self.config)
        try:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("scrape_failed", url=url, error=str(e))
            raise ScrapeError(f"Cannot fetch {url}: {e}", url=url) from e
        finally:
            if self._client is None:
                await client.aclose()

        page = parse_page(response.text, str(response.url))
        if not page.images:
            raise ScrapeError(f"No images found on {url}", url=url)

        logger.info("page_scraped", url=url, images=len(page.images), title=page.title)
        return page
