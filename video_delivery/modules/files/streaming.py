"""HTTP byte-range delivery.

Two ways to put an object's bytes on the wire:

* direct - ranged reads through the object store gateway;
* proxy - fetch a signed URL, forward the client's ``Range`` upstream and
  mirror the upstream response. An upstream reader task feeds a bounded
  queue that the response body drains; when the client goes away the body
  generator is closed, which cancels the reader and closes the upstream
  connection.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

import httpx

from video_delivery.core.exceptions import RangeNotSatisfiableError, UpstreamProxyError
from video_delivery.core.metrics import PROXY_DISCONNECTS_TOTAL, STREAMED_BYTES_TOTAL
from video_delivery.core.storage import ObjectStore

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^bytes=(?P<start>\d*)-(?P<end>\d*)$")

# Upstream headers copied onto the client response in proxy mode
MIRRORED_HEADERS = ("content-length", "content-range", "content-type", "accept-ranges")


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte span within an object of ``total`` bytes."""
    start: int
    end: int
    total: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"


def parse_range(
    header: Optional[str],
    total_size: int,
    max_chunk_size: int = 0,
) -> Optional[ByteRange]:
    """Parse a single-range ``Range`` header.

    ``bytes=start-end``, ``bytes=start-`` (to the end) and ``bytes=-N`` (the
    last N bytes) are accepted. A missing header means the whole object.

    Args:
        header: Raw header value
        total_size: Object size in bytes
        max_chunk_size: When positive, the end is clamped so at most this
            many bytes are served

    Returns:
        The range, or None when no range was requested

    Raises:
        RangeNotSatisfiableError: malformed, multi-range, or outside the object
    """
    if header is None or not header.strip():
        return None

    match = _RANGE_RE.match(header.strip().replace(" ", ""))
    if not match:
        raise RangeNotSatisfiableError(total_size, header)

    raw_start, raw_end = match.group("start"), match.group("end")
    if not raw_start and not raw_end:
        raise RangeNotSatisfiableError(total_size, header)

    if not raw_start:
        suffix = int(raw_end)
        if suffix == 0 or total_size == 0:
            raise RangeNotSatisfiableError(total_size, header)
        start, end = max(total_size - suffix, 0), total_size - 1
    else:
        start = int(raw_start)
        end = int(raw_end) if raw_end else total_size - 1

    if start >= total_size or end >= total_size or start > end:
        raise RangeNotSatisfiableError(total_size, header)

    if max_chunk_size > 0:
        end = min(end, start + max_chunk_size - 1)

    return ByteRange(start=start, end=end, total=total_size)


def range_etag(object_key: str, byte_range: ByteRange) -> str:
    """ETag naming both the object and the span, so caches never mix spans."""
    return f'"{object_key}-{byte_range.start}-{byte_range.end}"'


def partial_content_headers(
    object_key: str,
    byte_range: ByteRange,
    content_type: str,
    cache_ttl: int,
) -> dict[str, str]:
    """Headers for a 206 response."""
    return {
        "Content-Range": byte_range.content_range,
        "Accept-Ranges": "bytes",
        "Content-Length": str(byte_range.length),
        "Content-Type": content_type,
        "Cache-Control": f"public, max-age={cache_ttl}, immutable",
        "ETag": range_etag(object_key, byte_range),
        "Vary": "Range",
    }


def full_content_headers(
    total_size: int,
    content_type: str,
    cache_ttl: int,
    etag: Optional[str] = None,
) -> dict[str, str]:
    """Headers for a 200 response."""
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Length": str(total_size),
        "Content-Type": content_type,
        "Cache-Control": f"public, max-age={cache_ttl}, immutable",
        "Vary": "Range",
    }
    if etag:
        headers["ETag"] = f'"{etag}"'
    return headers


def not_satisfiable_headers(total_size: int) -> dict[str, str]:
    return {"Content-Range": f"bytes */{total_size}", "Accept-Ranges": "bytes"}


async def stream_object(
    store: ObjectStore,
    object_key: str,
    start: int,
    end: int,
    chunk_size: int,
) -> AsyncIterator[bytes]:
    """Yield exactly bytes ``start..end`` of an object from the store."""
    sent = 0
    try:
        async for chunk in store.iter_range(object_key, start, end, chunk_size):
            sent += len(chunk)
            yield chunk
    finally:
        STREAMED_BYTES_TOTAL.labels(mode="direct").inc(sent)


@dataclass
class ProxiedStream:
    """Upstream status and headers plus a body to forward to the client."""
    status_code: int
    headers: dict[str, str]
    body: AsyncIterator[bytes]
    reader: Optional["asyncio.Task[None]"] = None
    upstream: Optional[httpx.Response] = None

    async def aclose(self) -> None:
        """Stop the upstream reader. Safe to call more than once, and for a body never iterated."""
        if self.reader is not None:
            if not self.reader.done():
                self.reader.cancel()
            await asyncio.gather(self.reader, return_exceptions=True)
        # A reader cancelled before its first step never reaches its own cleanup
        if self.upstream is not None:
            await self.upstream.aclose()


class _EndOfStream:
    pass


_EOF = _EndOfStream()


async def _empty_body() -> AsyncIterator[bytes]:
    return
    yield b""


async def open_proxy_stream(
    client: httpx.AsyncClient,
    url: str,
    range_header: Optional[str],
    queue_size: int = 8,
    chunk_size: int = 64 * 1024,
) -> ProxiedStream:
    """Open ``url`` upstream and return a stream that mirrors it.

    Raises:
        UpstreamProxyError: upstream unreachable or answered with an error
    """
    request_headers = {"Range": range_header} if range_header else {}
    request = client.build_request("GET", url, headers=request_headers)
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        raise UpstreamProxyError(f"Upstream request failed: {e}") from e

    mirrored = {
        name: response.headers[name] for name in MIRRORED_HEADERS if name in response.headers
    }

    if response.status_code == 416:
        await response.aclose()
        return ProxiedStream(status_code=416, headers=mirrored, body=_empty_body())

    if response.status_code not in (200, 206):
        await response.aclose()
        raise UpstreamProxyError(
            f"Upstream answered {response.status_code}", status_code=response.status_code
        )

    queue: asyncio.Queue[Union[bytes, _EndOfStream, Exception]] = asyncio.Queue(maxsize=queue_size)

    async def read_upstream() -> None:
        try:
            async for chunk in response.aiter_bytes(chunk_size):
                await queue.put(chunk)
            await queue.put(_EOF)
        except httpx.HTTPError as e:
            await queue.put(UpstreamProxyError(f"Upstream stream broke: {e}"))
        except Exception as e:
            # The writer only stops on a queued terminal item
            logger.exception("Proxy upstream reader failed")
            await queue.put(UpstreamProxyError(f"Upstream reader failed: {e}"))
        finally:
            await response.aclose()

    reader = asyncio.create_task(read_upstream(), name="proxy-upstream-reader")

    async def write_client() -> AsyncIterator[bytes]:
        sent = 0
        finished = False
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _EndOfStream):
                    finished = True
                    return
                if isinstance(item, Exception):
                    raise item
                sent += len(item)
                yield item
        finally:
            STREAMED_BYTES_TOTAL.labels(mode="proxy").inc(sent)
            if not reader.done():
                reader.cancel()
            # Reader first, so nothing is mid-read when the upstream response closes
            await asyncio.gather(reader, return_exceptions=True)
            await response.aclose()
            if not finished:
                PROXY_DISCONNECTS_TOTAL.inc()
                logger.info("Proxy stream closed early", extra={"bytes_sent": sent})

    return ProxiedStream(
        status_code=response.status_code,
        headers=mirrored,
        body=write_client(),
        reader=reader,
        upstream=response,
    )
