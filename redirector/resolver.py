from __future__ import annotations

from typing import Mapping
from urllib.parse import quote, urlsplit

import httpx
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from loguru import logger
from starlette.background import BackgroundTask

from redirector.errors import CorruptRecord, GatewayTimeout, UpstreamFailure
from redirector.schemas import MappingRecord, TextContent, UrlMapping, is_absolute_url

FALLBACK_CONTENT_TYPE = "application/octet-stream"
TEXT_CACHE_CONTROL = "public, max-age=3600"
FETCHABLE_SCHEMES = ("http", "https")

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})
# The body is re-streamed decoded, so length and encoding no longer apply.
DROPPED_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding", "set-cookie"}


def attachment(filename: str) -> str:
    """
    Content-Disposition for a download. A name that is not plain
    printable ASCII gets a sanitized filename= fallback plus an
    RFC 5987 filename* parameter carrying the real name.
    """
    fallback = "".join(c if " " <= c <= "~" and c not in '"\\' else "_" for c in filename)
    if fallback == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def require_fetchable(url: str) -> None:
    if urlsplit(url).scheme.lower() not in FETCHABLE_SCHEMES:
        raise UpstreamFailure(f"Error fetching content: unsupported URL scheme in {url}")


def filename_from_url(url: str) -> str | None:
    """Last path segment of url if it looks like a file name (has a '.')."""
    last = urlsplit(url).path.rsplit("/", 1)[-1]
    return last if "." in last else None


def outbound_headers(upstream_headers: Mapping[str, str], original_url: str) -> dict[str, str]:
    """
    Headers sent back for a proxied URL mapping. Starts from the
    upstream's headers, never forwards cookies.
    """
    headers = {
        name.lower(): value
        for name, value in upstream_headers.items()
        if name.lower() not in DROPPED_HEADERS
    }
    headers["content-type"] = headers.get("content-type") or FALLBACK_CONTENT_TYPE

    filename = filename_from_url(original_url)
    if filename:
        headers["content-disposition"] = attachment(filename)

    headers["access-control-allow-origin"] = "*"
    return headers


def text_headers(record: TextContent) -> dict[str, str]:
    return {
        "content-type": record.content_type,
        "cache-control": TEXT_CACHE_CONTROL,
        "content-disposition": attachment(record.filename),
        "access-control-allow-origin": "*",
    }


class ContentResolver:
    """
    Turns a stored mapping into the response served at /m/{userId}/{path}.
    URL mappings are fetched and streamed through; text mappings are
    served from the record itself.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def resolve(self, record: MappingRecord) -> Response:
        if isinstance(record, UrlMapping):
            return await self._proxy(record.original_url)
        if isinstance(record, TextContent):
            return Response(content=record.content, headers=text_headers(record))
        raise CorruptRecord("Invalid mapping type")

    async def _proxy(self, url: str) -> Response:
        if not is_absolute_url(url):
            raise CorruptRecord("Invalid stored URL")
        require_fetchable(url)

        request = self._client.build_request("GET", url)
        try:
            upstream = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.warning("Timed out fetching {}", url)
            raise GatewayTimeout(f"Timed out fetching content from {url}") from e
        except httpx.HTTPError as e:
            logger.warning("Error fetching {}: {}", url, e)
            raise UpstreamFailure(f"Error fetching content: {e}") from e

        if not upstream.is_success:
            await upstream.aclose()
            logger.info("Upstream {} answered {}", url, upstream.status_code)
            return PlainTextResponse(
                f"Failed to fetch content: {upstream.status_code} {upstream.reason_phrase}",
                status_code=upstream.status_code,
            )

        return StreamingResponse(
            upstream.aiter_bytes(),
            status_code=upstream.status_code,
            headers=outbound_headers(upstream.headers, url),
            background=BackgroundTask(upstream.aclose),
        )
