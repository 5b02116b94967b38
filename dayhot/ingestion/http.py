"""
HTTP client plumbing shared by adapters.
"""

import gzip
import logging
from typing import Optional

import httpx

from dayhot.config import FetchSettings

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class GzipDecodingTransport(httpx.AsyncBaseTransport):
    """
    Transport wrapper that hands clients plain, uncompressed bodies.

    Bodies announced with ``Content-Encoding: gzip`` are decoded by httpx
    while being read here; bodies that are gzip but arrive without the
    header are detected by their magic bytes and decompressed explicitly.
    The rebuilt response drops the encoding and length headers.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        response = await self._transport.handle_async_request(request)
        body = await response.aread()

        if body[:2] == GZIP_MAGIC:
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError) as e:
                logger.warning(f"Body from {request.url} looked gzipped but failed to decode: {e}")

        headers = [
            (key, value)
            for key, value in response.headers.multi_items()
            if key.lower() not in ("content-encoding", "content-length")
        ]
        return httpx.Response(
            status_code=response.status_code,
            headers=headers,
            content=body,
            request=request,
            extensions=response.extensions,
        )

    async def aclose(self) -> None:
        await self._transport.aclose()


def build_client(
    settings: FetchSettings,
    *,
    base_url: str = "",
    headers: Optional[dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    decode_gzip: bool = False,
    follow_redirects: bool = False,
) -> httpx.AsyncClient:
    """Create the AsyncClient an adapter keeps for its lifetime."""
    if decode_gzip:
        transport = GzipDecodingTransport(transport)

    client_headers = {"User-Agent": settings.user_agent}
    client_headers.update(headers or {})

    return httpx.AsyncClient(
        base_url=base_url,
        headers=client_headers,
        timeout=settings.request_timeout_seconds,
        follow_redirects=follow_redirects,
        max_redirects=settings.max_redirects,
        transport=transport,
    )
