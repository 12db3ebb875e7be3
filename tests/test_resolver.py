from datetime import datetime, timezone

import httpx
import pytest

from redirector.errors import CorruptRecord, GatewayTimeout, UpstreamFailure
from redirector.resolver import ContentResolver, attachment, filename_from_url, outbound_headers
from redirector.schemas import TextContent, UrlMapping

CREATED = datetime(2024, 5, 1, tzinfo=timezone.utc)


def url_record(url: str) -> UrlMapping:
    return UrlMapping(user_id="bob", custom_path="a", created_at=CREATED, original_url=url)


async def body_of(response) -> bytes:
    chunks = [chunk async for chunk in response.body_iterator]
    return b"".join(c if isinstance(c, bytes) else c.encode() for c in chunks)


# ---- header policy ----

def test_outbound_headers_strips_cookies_and_length():
    upstream = httpx.Headers({
        "Content-Type": "application/json",
        "Content-Length": "7",
        "Content-Encoding": "gzip",
        "Set-Cookie": "session=1",
        "Transfer-Encoding": "chunked",
        "ETag": '"abc"',
    })

    headers = outbound_headers(upstream, "https://example.com/a.json")

    assert headers == {
        "content-type": "application/json",
        "etag": '"abc"',
        "content-disposition": 'attachment; filename="a.json"',
        "access-control-allow-origin": "*",
    }


def test_outbound_headers_defaults_content_type():
    headers = outbound_headers(httpx.Headers(), "https://example.com/download")

    assert headers["content-type"] == "application/octet-stream"
    assert "content-disposition" not in headers


def test_outbound_headers_replaces_upstream_disposition_and_cors():
    upstream = {"Content-Disposition": "inline", "Access-Control-Allow-Origin": "https://x.example"}

    headers = outbound_headers(upstream, "https://example.com/files/report.pdf?v=2")

    assert headers["content-disposition"] == 'attachment; filename="report.pdf"'
    assert headers["access-control-allow-origin"] == "*"


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://example.com/a.json", "a.json"),
        ("https://example.com/dir/", None),
        ("https://example.com", None),
        ("https://example.com/v1.2/latest", None),
    ],
)
def test_filename_from_url(url, expected):
    assert filename_from_url(url) == expected


@pytest.mark.parametrize(
    "filename,expected",
    [
        ("a.json", 'attachment; filename="a.json"'),
        ("笔记.txt", "attachment; filename=\"__.txt\"; filename*=UTF-8''%E7%AC%94%E8%AE%B0.txt"),
        ('say "hi".txt', "attachment; filename=\"say _hi_.txt\"; filename*=UTF-8''say%20%22hi%22.txt"),
        ("a\r\nb.txt", "attachment; filename=\"a__b.txt\"; filename*=UTF-8''a%0D%0Ab.txt"),
    ],
)
def test_attachment_header_is_always_ascii(filename, expected):
    header = attachment(filename)

    assert header == expected
    header.encode("latin-1")


def test_outbound_headers_non_ascii_file_name():
    headers = outbound_headers(httpx.Headers(), "https://example.com/文件.json")

    assert headers["content-disposition"] == (
        "attachment; filename=\"__.json\"; filename*=UTF-8''%E6%96%87%E4%BB%B6.json"
    )


# ---- resolve ----

@pytest.mark.asyncio
async def test_resolve_streams_upstream_body(upstream, http_client):
    upstream.add(
        "https://example.com/a.json",
        content=b'{"x":1}',
        headers={"Content-Type": "application/json", "Set-Cookie": "s=1"},
    )

    response = await ContentResolver(http_client).resolve(url_record("https://example.com/a.json"))

    assert response.status_code == 200
    assert await body_of(response) == b'{"x":1}'
    assert response.headers["content-type"] == "application/json"
    assert response.headers["content-disposition"] == 'attachment; filename="a.json"'
    assert "set-cookie" not in response.headers
    assert str(upstream.requests[0].url) == "https://example.com/a.json"


@pytest.mark.asyncio
async def test_resolve_mirrors_upstream_error_status(upstream, http_client):
    upstream.add("https://example.com/gone.json", status=410, content=b"upstream error page")

    response = await ContentResolver(http_client).resolve(url_record("https://example.com/gone.json"))

    assert response.status_code == 410
    assert response.body == b"Failed to fetch content: 410 Gone"


@pytest.mark.asyncio
async def test_resolve_timeout(upstream, http_client):
    upstream.fail("https://slow.example/a", httpx.ReadTimeout("too slow"))

    with pytest.raises(GatewayTimeout) as exc_info:
        await ContentResolver(http_client).resolve(url_record("https://slow.example/a"))
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_resolve_network_error(upstream, http_client):
    upstream.fail("https://down.example/a", httpx.ConnectError("refused"))

    with pytest.raises(UpstreamFailure) as exc_info:
        await ContentResolver(http_client).resolve(url_record("https://down.example/a"))
    assert exc_info.value.status_code == 500


@pytest.mark.asyncio
async def test_resolve_invalid_stored_url(http_client):
    with pytest.raises(CorruptRecord, match="Invalid stored URL"):
        await ContentResolver(http_client).resolve(url_record("not-a-url"))


@pytest.mark.asyncio
async def test_resolve_text_content(http_client):
    record = TextContent(
        user_id="bob",
        custom_path="n",
        created_at=CREATED,
        content="hello",
        filename="note.txt",
        content_type="text/plain",
    )

    response = await ContentResolver(http_client).resolve(record)

    assert response.status_code == 200
    assert response.body == b"hello"
    assert response.headers["content-type"] == "text/plain"
    assert response.headers["content-disposition"] == 'attachment; filename="note.txt"'
    assert response.headers["cache-control"] == "public, max-age=3600"
    assert response.headers["access-control-allow-origin"] == "*"


@pytest.mark.asyncio
async def test_resolve_unknown_kind(http_client):
    with pytest.raises(CorruptRecord, match="Invalid mapping type"):
        await ContentResolver(http_client).resolve(object())


@pytest.mark.asyncio
async def test_resolve_text_content_with_non_ascii_filename(http_client):
    record = TextContent(
        user_id="bob",
        custom_path="n",
        created_at=CREATED,
        content="你好",
        filename="笔记.txt",
        content_type="text/plain",
    )

    response = await ContentResolver(http_client).resolve(record)

    assert response.body == "你好".encode()
    assert response.headers["content-disposition"].endswith("filename*=UTF-8''%E7%AC%94%E8%AE%B0.txt")


@pytest.mark.asyncio
@pytest.mark.parametrize("url", ["ftp://files.example.com/a.txt", "s3://bucket/key.json"])
async def test_resolve_unfetchable_scheme(upstream, http_client, url):
    with pytest.raises(UpstreamFailure, match="unsupported URL scheme"):
        await ContentResolver(http_client).resolve(url_record(url))
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_resolve_long_stored_url(upstream, http_client):
    url = "https://example.com/file.bin?sig=" + "a" * 3000
    upstream.add("https://example.com/file.bin", content=b"bin")

    response = await ContentResolver(http_client).resolve(url_record(url))

    assert response.status_code == 200
    assert await body_of(response) == b"bin"
    assert str(upstream.requests[0].url) == url
