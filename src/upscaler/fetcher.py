"""Best-effort concurrent image downloads.

A failed download never fails the batch: the error is logged, recorded in
the returned :class:`BatchResult`, and the job carries on with whatever did
arrive (possibly nothing).
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import unquote, urlparse

import httpx

from .logging import get_logger
from .models import FetchConfig

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass
class BatchResult:
    """Outcome of a best-effort batch: per-item successes and failures."""

    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


def file_name_for(url: str) -> str:
    """Local file name for a source URL: the trailing segment of its path.

    Raises:
        ValueError: if the URL cannot be parsed
    """
    path = urlparse(url).path
    return unquote(path.rstrip("/").split("/")[-1]) if path.strip("/") else ""


def is_safe_name(name: str) -> bool:
    """True if ``name`` is a single plain path component."""
    return bool(name) and name not in (".", "..") and not any(c in name for c in "/\\\0")


def build_client(config: FetchConfig) -> httpx.AsyncClient:
    """HTTP client carrying the configured proxy, identity header and timeout."""
    headers = {"User-Agent": config.user_agent, **config.headers}
    return httpx.AsyncClient(
        proxy=config.proxy_url,
        headers=headers,
        timeout=config.timeout_s,
        follow_redirects=True,
    )


class FetchStage:
    """Downloads a job's source images into its input directory.

    Args:
        config: Fetch settings (concurrency, proxy, headers, timeout)
        client: Optional pre-built client; when omitted a client is built from
            ``config`` for each batch and closed afterwards
    """

    def __init__(self, config: Optional[FetchConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or FetchConfig()
        self._client = client

    async def fetch_all(self, urls: Iterable[str], dest_dir: Path) -> BatchResult:
        """Download every URL into ``dest_dir``, at most ``concurrency`` at a time.

        Returns only after every download has either succeeded or failed.
        """
        urls = list(urls)
        dest_dir = Path(dest_dir)
        result = BatchResult()
        # One limiter per batch: two jobs never share download slots.
        semaphore = asyncio.Semaphore(self.config.concurrency)

        client = self._client or build_client(self.config)
        try:
            outcomes = await asyncio.gather(
                *(self._fetch_one(client, semaphore, url, dest_dir, result) for url in urls),
                return_exceptions=True,
            )
            for url, outcome in zip(urls, outcomes):
                if isinstance(outcome, Exception):
                    logger.error("download_crashed", url=url, error=repr(outcome))
                    result.failed.setdefault(url, str(outcome) or type(outcome).__name__)
        finally:
            if self._client is None:
                await client.aclose()

        logger.info(
            "fetch_completed",
            requested=len(urls),
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        return result

    async def _fetch_one(
        self,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        url: str,
        dest_dir: Path,
        result: BatchResult,
    ) -> None:
        try:
            name = file_name_for(url)
        except ValueError as e:
            _record_failure(result, url, f"Invalid URL: {e}")
            return
        if not name:
            _record_failure(result, url, "URL has no file name")
            return
        if not is_safe_name(name):
            _record_failure(result, url, f"Unsafe file name: {name!r}")
            return

        async with semaphore:
            target = dest_dir / name
            logger.debug("download_started", url=url, target=str(target))
            try:
                await self._download(client, url, target)
            except (httpx.HTTPError, httpx.InvalidURL, ValueError, OSError) as e:
                _record_failure(result, url, str(e) or type(e).__name__)
                await _discard(target)
                return

        result.succeeded.append(name)

    @staticmethod
    async def _download(client: httpx.AsyncClient, url: str, target: Path) -> None:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            fh = await asyncio.to_thread(open, target, "wb")
            try:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    await asyncio.to_thread(fh.write, chunk)
            finally:
                await asyncio.to_thread(fh.close)


def _record_failure(result: BatchResult, url: str, reason: str) -> None:
    logger.warning("download_failed", url=url, error=reason)
    result.failed[url] = reason


async def _discard(target: Path) -> None:
    """Remove a partial download; a failed removal never fails the batch."""
    try:
        await asyncio.to_thread(target.unlink, missing_ok=True)
    except OSError as e:
        logger.warning("download_cleanup_failed", target=str(target), error=str(e))
