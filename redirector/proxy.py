"""
Thin pass-through endpoints that never touch the mapping store:
QR code images, gist raw files, ad-hoc URL proxies and stateless
text downloads.
"""

from __future__ import annotations

import base64
import binascii
from urllib.parse import quote, unquote

import httpx
from fastapi.responses import PlainTextResponse, Response
from loguru import logger

from redirector.errors import GatewayTimeout, UpstreamFailure, ValidationError
from redirector.resolver import TEXT_CACHE_CONTROL, attachment, require_fetchable
from redirector.schemas import (
    DEFAULT_TEXT_FILENAME,
    GeneratedTextUrls,
    infer_content_type,
    is_absolute_url,
)

QR_CODE_SIZE = "300x300"
GIST_PROXY_SOURCE = "redirector-gist-proxy"
DIRECT_PROXY_SOURCE = "redirector-direct-proxy"
ENCODED_PROXY_SOURCE = "redirector-encoded-proxy"
TEXT_FILE_SOURCE = "dynamic-text-file"

NO_STORE_HEADERS = {
    "cache-control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "pragma": "no-cache",
    "expires": "0",
}
# What JavaScript's encodeURIComponent leaves alone.
URI_COMPONENT_SAFE = "-_.!~*'()"


async def _get(client: httpx.AsyncClient, url: str) -> httpx.Response:
    require_fetchable(url)
    try:
        return await client.get(url)
    except httpx.TimeoutException as e:
        raise GatewayTimeout(f"Timed out fetching content from {url}") from e
    except httpx.HTTPError as e:
        logger.error("Error fetching {}: {}", url, e)
        raise UpstreamFailure(f"Error fetching content: {e}") from e


def _mirror_error(r: httpx.Response) -> Response:
    return PlainTextResponse(f"Error: {r.status_code} {r.reason_phrase}", status_code=r.status_code)


async def fetch_qr_code(client: httpx.AsyncClient, service_url: str, target_url: str | None) -> Response:
    if not target_url:
        raise ValidationError("Missing URL parameter")
    if not is_absolute_url(target_url):
        raise ValidationError("Invalid URL parameter")

    try:
        r = await client.get(service_url, params={"size": QR_CODE_SIZE, "data": target_url})
        r.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Error generating QR code for {}: {}", target_url, e)
        raise UpstreamFailure("Error generating QR code") from e

    return Response(
        content=r.content,
        headers={
            "content-type": "image/png",
            "cache-control": TEXT_CACHE_CONTROL,
            "access-control-allow-origin": "*",
        },
    )


def gist_target(base_url: str, path: str) -> tuple[str, str]:
    """
    username/gist-id/raw/file-path -> (raw file URL, file name).
    The file path may itself contain folders.
    """
    segments = [s for s in path.split("/") if s]
    if len(segments) < 4:
        raise ValidationError("Invalid path format. Expected: /gist/username/gist-id/raw/file-path")

    username, gist_id, raw_keyword = segments[:3]
    file_path = "/".join(segments[3:])
    url = f"{base_url.rstrip('/')}/{username}/{gist_id}/{raw_keyword}/{file_path}"
    return url, file_path.rsplit("/", 1)[-1]


async def fetch_gist(
    client: httpx.AsyncClient,
    base_url: str,
    path: str,
    custom_filename: str | None = None,
) -> Response:
    url, original_filename = gist_target(base_url, path)
    logger.debug("Proxying gist request to {}", url)

    r = await _get(client, url)
    if not r.is_success:
        return _mirror_error(r)

    filename = custom_filename or original_filename or "download"
    return Response(
        content=r.content,
        headers={
            "content-type": r.headers.get("content-type") or "text/plain",
            "content-disposition": attachment(filename),
            "access-control-allow-origin": "*",
            "cache-control": TEXT_CACHE_CONTROL,
            "x-proxy-source": GIST_PROXY_SOURCE,
        },
    )


async def _pass_through(client: httpx.AsyncClient, url: str, source: str) -> Response:
    r = await _get(client, url)
    if not r.is_success:
        return _mirror_error(r)

    headers = {"content-type": r.headers.get("content-type") or "text/plain", **NO_STORE_HEADERS}
    if "content-disposition" in r.headers:
        headers["content-disposition"] = r.headers["content-disposition"]
    headers["x-proxy-source"] = source
    return Response(content=r.content, headers=headers)


async def fetch_direct(client: httpx.AsyncClient, target_url: str | None) -> Response:
    """/proxy-direct?url=...: fetch an arbitrary URL, uncached."""
    if not target_url:
        raise ValidationError("Missing url parameter")
    if not is_absolute_url(target_url):
        raise ValidationError("Invalid URL parameter")
    return await _pass_through(client, target_url, DIRECT_PROXY_SOURCE)


def decode_proxy_url(encoded: str) -> str:
    """
    Inverse of base64(encodeURIComponent(url)), the form browser
    clients build links in.
    """
    try:
        url = unquote(base64.b64decode(encoded, validate=True).decode("latin-1"))
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid encoded URL parameter") from e
    if not is_absolute_url(url):
        raise ValidationError("Invalid encoded URL parameter")
    return url


async def fetch_encoded(client: httpx.AsyncClient, encoded: str) -> Response:
    if not encoded:
        raise ValidationError("Missing encoded URL parameter")
    return await _pass_through(client, decode_proxy_url(encoded), ENCODED_PROXY_SOURCE)


def text_download(path: str, content: str | None, b64: str | None) -> Response:
    """
    /text/{filename}?content=... or ?b64=...: serve the query's text as
    a download without storing anything. b64 wins when both are given.
    """
    filename = path or DEFAULT_TEXT_FILENAME

    if b64:
        try:
            body: bytes | str = base64.b64decode(b64, validate=True)
        except binascii.Error as e:
            raise ValidationError("Invalid base64 content") from e
    elif content is not None:
        body = content
    else:
        raise ValidationError(
            "Missing content parameter. Use ?content=your-text or ?b64=base64-encoded-text"
        )

    return Response(
        content=body,
        headers={
            "content-type": infer_content_type(filename),
            "content-disposition": attachment(filename),
            "access-control-allow-origin": "*",
            "cache-control": "no-cache",
            "x-content-source": TEXT_FILE_SOURCE,
        },
    )


def generate_text_urls(content: str | None, filename: str | None, base_url: str) -> GeneratedTextUrls:
    """Links to text_download carrying content inline, plain and base64."""
    if not content:
        raise ValidationError("Content is required")
    filename = filename or DEFAULT_TEXT_FILENAME

    prefix = f"{base_url.rstrip('/')}/text/{filename}"
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    return GeneratedTextUrls(
        url=f"{prefix}?content={quote(content, safe=URI_COMPONENT_SAFE)}",
        base64_url=f"{prefix}?b64={quote(encoded, safe='')}",
        filename=filename,
        content_length=len(content),
    )
