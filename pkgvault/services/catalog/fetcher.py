"""
Download repository listings and definition files.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Optional

import aiofiles
import httpx

from pkgvault.domain.errors import NetworkError, RateLimitedError

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass
    reset = response.headers.get("x-ratelimit-reset")
    if reset:
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            pass
    return None


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"


class RepositoryFetcher:
    """
    Fetch raw bytes over HTTP.

    Transient failures (connection errors, 5xx) are retried a few times;
    rate limits are reported immediately with their retry-after hint.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        attempts: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.transport = transport

    async def fetch(self, url: str) -> bytes:
        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                async with httpx.AsyncClient(
                    follow_redirects=True, timeout=self.timeout, transport=self.transport
                ) as client:
                    response = await client.get(url)

                if _is_rate_limited(response):
                    raise RateLimitedError(url, _retry_after(response))
                if 400 <= response.status_code < 500:
                    raise NetworkError(
                        f"Failed to download {url}: HTTP {response.status_code}",
                        url=url,
                        status_code=response.status_code,
                    )
                response.raise_for_status()
                logger.debug(f"Fetched {len(response.content)} bytes from {url}")
                return response.content
            except NetworkError:
                raise
            except httpx.HTTPError as e:
                last_error = e
                if attempt < self.attempts:
                    logger.warning(f"Download failed (attempt {attempt}/{self.attempts}): {e}. Retrying...")
                    await asyncio.sleep(self.retry_delay * attempt)

        raise NetworkError(f"Failed to download {url}: {last_error}", url=url)


async def write_file(path: Path, data: bytes) -> None:
    """Write downloaded bytes to a temp file first, then move it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
