"""Shared fixtures: an in-memory store and a scripted upstream for httpx."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from redirector.config import Settings
from redirector.main import create_app
from redirector.service import MappingRegistry
from redirector.store import InMemoryKeyValueStore, KeyValueStore


class Upstream:
    """
    MockTransport handler. Routes are matched on scheme://host/path,
    query strings are ignored; unknown URLs answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, bytes, dict[str, str]] | Exception] = {}
        self.requests: list[httpx.Request] = []

    def add(self, url: str, status: int = 200, content: bytes = b"", headers: dict[str, str] | None = None) -> None:
        self.routes[url] = (status, content, headers or {})

    def fail(self, url: str, error: Exception) -> None:
        self.routes[url] = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(f"{request.url.scheme}://{request.url.host}{request.url.path}")
        if route is None:
            return httpx.Response(404, request=request)
        if isinstance(route, Exception):
            raise route
        status, content, headers = route
        return httpx.Response(status, content=content, headers=headers, request=request)


def seed(store: KeyValueStore, key: str, value: str) -> None:
    asyncio.run(store.put(key, value))


def fetch(store: KeyValueStore, key: str) -> str | None:
    return asyncio.run(store.get(key))


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def registry(store) -> MappingRegistry:
    return MappingRegistry(store)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def http_client(upstream) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_backend="memory",
        index_scope="user",
        base_url="https://redirect.example",
        default_user_id="public",
        admin_username="",
        admin_password="",
    )


@pytest.fixture
def client(settings, store, http_client):
    app = create_app(settings, store=store, http_client=http_client)
    with TestClient(app) as c:
        yield c
