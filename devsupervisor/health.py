"""
HTTP health checks for dev servers.

Verifies a dev server is actually serving after a (re)start, and probes
common ports when a server never printed its URL. Any 2xx or 3xx counts as
healthy, since dev servers often redirect.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class HealthResult:
    healthy: bool
    url: str
    latency_ms: int
    status_code: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "url": self.url,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def probe(url: str, timeout: float = 5.0, transport: httpx.AsyncBaseTransport = None) -> HealthResult:
    """Probe a URL with a single GET. Never raises for network errors."""
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(transport=transport, follow_redirects=False) as client:
            response = await client.get(url, timeout=timeout)
    except httpx.TimeoutException:
        return HealthResult(healthy=False, url=url, latency_ms=_elapsed_ms(start), error="timeout")
    except httpx.HTTPError as e:
        return HealthResult(healthy=False, url=url, latency_ms=_elapsed_ms(start), error=str(e) or type(e).__name__)

    code = response.status_code
    return HealthResult(
        healthy=200 <= code < 400,
        url=url,
        status_code=code,
        latency_ms=_elapsed_ms(start),
    )


async def check_health(
    url: str,
    timeout: float = 5.0,
    retries: int = 3,
    retry_delay: float = 1.0,
    transport: httpx.AsyncBaseTransport = None,
) -> HealthResult:
    """
    Run a health check with retries.

    Returns the first healthy probe, or the last failed probe once all
    retries are used up.
    """
    result = HealthResult(healthy=False, url=url, latency_ms=0, error="no attempts")

    for attempt in range(retries):
        if attempt > 0:
            await asyncio.sleep(retry_delay)
        result = await probe(url, timeout=timeout, transport=transport)
        if result.healthy:
            return result
        logger.debug(f"Health probe {attempt + 1}/{retries} for {url} failed: {result.error or result.status_code}")

    return result


async def _head(client: httpx.AsyncClient, url: str, timeout: float) -> Optional[str]:
    try:
        await client.head(url, timeout=timeout)
    except httpx.HTTPError:
        return None
    return url


async def probe_ports(
    ports: list[int],
    timeout: float = 2.0,
    host: str = "localhost",
    transport: httpx.AsyncBaseTransport = None,
) -> Optional[str]:
    """
    HEAD-probe several ports concurrently.

    Any HTTP response means something is serving. Returns the URL of the
    first port (in the given preference order) that answered, or None.
    """
    urls = [f"http://{host}:{port}" for port in ports]
    async with httpx.AsyncClient(transport=transport, follow_redirects=False) as client:
        results = await asyncio.gather(*(_head(client, url, timeout) for url in urls))
    for url in results:
        if url:
            return url
    return None
