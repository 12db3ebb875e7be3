from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from fastapi import APIRouter, Depends, FastAPI, Form, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger

from redirector import keys
from redirector.auth import require_admin
from redirector.config import Settings, settings as default_settings
from redirector.errors import ConfigurationError, MappingError, NotFound, ValidationError
from redirector.log import configure_logging
from redirector.proxy import (
    fetch_direct,
    fetch_encoded,
    fetch_gist,
    fetch_qr_code,
    generate_text_urls,
    text_download,
)
from redirector.resolver import ContentResolver
from redirector.schemas import (
    TEXT_CONTENT,
    URL_MAPPING,
    AdminRequest,
    DeletedMapping,
    DeleteResponse,
    GeneratedTextUrls,
    MappingListResponse,
    MappingSummary,
    TextMappingCreated,
    UrlMapping,
    UrlMappingCreated,
)
from redirector.service import (
    MappingListing,
    MappingRegistry,
    build_text_mapping,
    build_url_mapping,
)
from redirector.store import KeyValueStore, build_store

PREVIEW_LENGTH = 100
# Routes whose errors are served as plain text rather than {"error": ...}
PLAIN_TEXT_PREFIXES = ("/m/", "/qrcode/", "/gist/", "/proxy", "/text/")

CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

router = APIRouter()


# ---- dependencies ----

def get_registry(request: Request) -> MappingRegistry:
    store = request.app.state.store
    if store is None:
        raise ConfigurationError(
            request.app.state.store_error
            or "Mapping store not configured. Please set STORE_BACKEND in your environment."
        )
    return MappingRegistry(store, index_scope=request.app.state.settings.index_scope)


def get_resolver(request: Request) -> ContentResolver:
    return ContentResolver(request.app.state.http_client)


def base_url(request: Request) -> str:
    configured = request.app.state.settings.base_url
    if configured:
        return configured.rstrip("/")
    return str(request.base_url).rstrip("/")


def mapped_url(request: Request, user_id: str, custom_path: str) -> str:
    return f"{base_url(request)}/m/{user_id}/{custom_path}"


def preflight() -> Response:
    return Response(status_code=204, headers=CORS_PREFLIGHT_HEADERS)


def preview(content: str) -> str:
    return content[:PREVIEW_LENGTH] + "..."


def summarize(listing: MappingListing) -> MappingSummary:
    entry, record = listing.entry, listing.record
    summary = MappingSummary(
        mapping_key=entry.mapping_key,
        custom_path=entry.custom_path,
        created_at=entry.created_at,
        type=entry.type,
    )
    if record is None:
        summary.error = "Could not retrieve detailed information"
    elif isinstance(record, UrlMapping):
        summary.original_url = record.original_url
    else:
        summary.content_preview = preview(record.content)
        summary.filename = record.filename
        summary.content_type = record.content_type
    return summary


def list_response(listings: list[MappingListing], user_id: str | None) -> MappingListResponse:
    mappings = [summarize(listing) for listing in listings]
    if not mappings:
        message = "No mappings found for this user" if user_id else "No mappings found"
    elif user_id:
        message = f"Retrieved {len(mappings)} mappings for user {user_id}"
    else:
        message = f"Retrieved {len(mappings)} mappings"
    return MappingListResponse(user_id=user_id, mappings=mappings, count=len(mappings), message=message)


# ---- routes ----

@router.get("/health")
def health(request: Request) -> dict:
    store = request.app.state.store
    return {
        "status": "ok",
        "service": "content-redirector",
        "store": store.name if store is not None else "unconfigured",
        "index_scope": request.app.state.settings.index_scope,
    }


@router.get("/m/{route_path:path}")
async def resolve_mapping(
    route_path: str,
    registry: MappingRegistry = Depends(get_registry),
    resolver: ContentResolver = Depends(get_resolver),
) -> Response:
    """
    Hot path: /m/{userId}/{customPath...}
    customPath keeps any further slashes.
    """
    user_id, _, custom_path = route_path.partition("/")
    if not user_id or not custom_path:
        raise ValidationError("Invalid path format. Expected /m/{userId}/{customPath}")

    record = await registry.get(user_id, custom_path)
    if record is None:
        raise NotFound("Mapping not found")

    return await resolver.resolve(record)


@router.post("/api/create-url-mapping", response_model=UrlMappingCreated)
@router.post("/api/create-user-mapping", response_model=UrlMappingCreated, include_in_schema=False)
async def create_url_mapping(
    request: Request,
    response: Response,
    original_url: str | None = Form(None, alias="originalUrl"),
    custom_path: str | None = Form(None, alias="customPath"),
    user_id: str | None = Form(None, alias="userId"),
    registry: MappingRegistry = Depends(get_registry),
) -> UrlMappingCreated:
    user_id = user_id or request.app.state.settings.default_user_id
    record = build_url_mapping(original_url, user_id, custom_path)
    key = await registry.create(record)

    response.headers["Access-Control-Allow-Origin"] = "*"
    return UrlMappingCreated(
        mapped_url=mapped_url(request, record.user_id, record.custom_path),
        mapping_key=key,
        user_id=record.user_id,
        custom_path=record.custom_path,
        original_url=record.original_url,
    )


@router.post("/api/create-text-mapping", response_model=TextMappingCreated)
async def create_text_mapping(
    request: Request,
    response: Response,
    content: str | None = Form(None),
    filename: str | None = Form(None),
    custom_path: str | None = Form(None, alias="customPath"),
    user_id: str | None = Form(None, alias="userId"),
    registry: MappingRegistry = Depends(get_registry),
) -> TextMappingCreated:
    user_id = user_id or request.app.state.settings.default_user_id
    record = build_text_mapping(content, user_id, custom_path, filename)
    key = await registry.create(record)

    url = mapped_url(request, record.user_id, record.custom_path)
    response.headers["Access-Control-Allow-Origin"] = "*"
    return TextMappingCreated(
        mapped_url=url,
        persistent_url=url,
        mapping_key=key,
        user_id=record.user_id,
        custom_path=record.custom_path,
        filename=record.filename,
        content_type=record.content_type,
    )


@router.get(
    "/api/user/{user_id}/mappings",
    response_model=MappingListResponse,
    response_model_exclude_none=True,
)
async def list_user_mappings(
    user_id: str,
    response: Response,
    registry: MappingRegistry = Depends(get_registry),
) -> MappingListResponse:
    listings = await registry.list_for_user(user_id)
    response.headers["Access-Control-Allow-Origin"] = "*"
    return list_response(listings, user_id)


@router.get(
    "/api/list-mappings",
    response_model=MappingListResponse,
    response_model_exclude_none=True,
)
async def list_mappings(
    response: Response,
    user_id: str | None = Query(None, alias="userId"),
    registry: MappingRegistry = Depends(get_registry),
) -> MappingListResponse:
    if user_id:
        listings = await registry.list_for_user(user_id)
    else:
        listings = await registry.list(registry.scope_for(None))
    response.headers["Access-Control-Allow-Origin"] = "*"
    return list_response(listings, user_id)


@router.delete("/api/user/{user_id}/mappings/{custom_path:path}/delete", response_model=DeleteResponse)
async def delete_user_mapping(
    user_id: str,
    custom_path: str,
    response: Response,
    registry: MappingRegistry = Depends(get_registry),
) -> DeleteResponse:
    key = await registry.delete(user_id, custom_path)
    response.headers["Access-Control-Allow-Origin"] = "*"
    return DeleteResponse(
        message=f"Mapping {key} deleted successfully",
        deleted_mapping=DeletedMapping(mapping_key=key, user_id=user_id, custom_path=custom_path),
    )


@router.post("/admin", dependencies=[Depends(require_admin)])
async def admin(payload: AdminRequest, registry: MappingRegistry = Depends(get_registry)) -> dict:
    """
    Bulk management surface used by the admin page. Same registry
    operations as the public API, addressed by full mapping key.

    list and delete_all act on one user when userId is given, even
    with a global index. Without userId they act on the global index,
    so with INDEX_SCOPE=user (one list per user) they answer 400.
    """
    if payload.action == "create":
        key = await registry.create(admin_record(payload))
        return {"success": True, "key": key, "message": "Mapping created successfully"}

    if payload.action == "list":
        if payload.user_id:
            listings = await registry.list_for_user(payload.user_id)
        else:
            listings = await registry.list(registry.scope_for(None))
        mappings = [admin_item(listing) for listing in listings]
        return {"success": True, "mappings": mappings, "count": len(mappings)}

    if payload.action == "delete":
        user_id, custom_path = keys.decode(require_key(payload))
        key = await registry.delete(user_id, custom_path)
        return {"success": True, "key": key, "message": f"Mapping {key} deleted successfully"}

    if payload.action == "delete_all":
        if payload.user_id:
            deleted = await registry.delete_all_for_user(payload.user_id)
        else:
            deleted = await registry.delete_all(registry.scope_for(None))
        return {"success": True, "deleted": deleted, "message": f"Deleted {deleted} mappings"}

    raise ValidationError(f"Unknown action {payload.action!r}")


@router.get("/qrcode/generate")
async def qrcode_generate(request: Request, url: str | None = Query(None)) -> Response:
    settings = request.app.state.settings
    return await fetch_qr_code(request.app.state.http_client, settings.qr_service_url, url)


@router.get("/gist/{gist_path:path}")
async def gist(request: Request, gist_path: str, filename: str | None = Query(None)) -> Response:
    settings = request.app.state.settings
    return await fetch_gist(request.app.state.http_client, settings.gist_raw_base_url, gist_path, filename)


@router.get("/proxy-direct")
async def proxy_direct(request: Request, url: str | None = Query(None)) -> Response:
    return await fetch_direct(request.app.state.http_client, url)


@router.get("/proxy/{encoded_url:path}")
async def proxy_encoded(request: Request, encoded_url: str) -> Response:
    return await fetch_encoded(request.app.state.http_client, encoded_url)


@router.get("/text/{text_path:path}")
def text_file(
    text_path: str,
    content: str | None = Query(None),
    b64: str | None = Query(None),
) -> Response:
    return text_download(text_path, content, b64)


@router.post("/api/generate-url", response_model=GeneratedTextUrls)
def generate_url(
    request: Request,
    response: Response,
    content: str | None = Form(None),
    filename: str | None = Form(None),
    link_base_url: str | None = Form(None, alias="baseUrl"),
) -> GeneratedTextUrls:
    response.headers["Access-Control-Allow-Origin"] = "*"
    return generate_text_urls(content, filename, link_base_url or base_url(request))


for _path in (
    "/api/create-url-mapping",
    "/api/create-user-mapping",
    "/api/create-text-mapping",
    "/api/generate-url",
    "/api/user/{user_id}/mappings",
    "/api/list-mappings",
    "/api/user/{user_id}/mappings/{custom_path:path}/delete",
    "/admin",
):
    router.add_api_route(_path, preflight, methods=["OPTIONS"], include_in_schema=False)


# ---- admin helpers ----

def require_key(payload: AdminRequest) -> str:
    if not payload.key or not keys.is_well_formed(payload.key):
        raise ValidationError("Invalid mapping key format. Use format: user:{userId}:path:{customPath}")
    return payload.key


def admin_record(payload: AdminRequest):
    user_id, custom_path = keys.decode(require_key(payload))

    value: Any = payload.value
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as e:
            raise ValidationError("Mapping value is not valid JSON") from e
    if not isinstance(value, dict):
        raise ValidationError("Mapping value is required")

    kind = payload.type or value.get("type") or URL_MAPPING
    if kind == URL_MAPPING:
        return build_url_mapping(value.get("originalUrl"), user_id, custom_path)
    if kind == TEXT_CONTENT:
        return build_text_mapping(
            value.get("content"),
            user_id,
            custom_path,
            value.get("filename"),
            value.get("contentType"),
        )
    raise ValidationError("Invalid mapping type")


def admin_item(listing: MappingListing) -> dict:
    if listing.record is None:
        return {
            "key": listing.entry.mapping_key,
            "type": listing.entry.type,
            "error": "Could not retrieve detailed information",
        }
    return {"key": listing.entry.mapping_key, **listing.record.model_dump(mode="json", by_alias=True)}


# ---- error handlers ----

async def mapping_error_handler(request: Request, exc: MappingError) -> Response:
    if request.url.path.startswith(PLAIN_TEXT_PREFIXES):
        return PlainTextResponse(exc.message, status_code=exc.status_code)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> Response:
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return JSONResponse({"error": f"Invalid request: {fields}"}, status_code=400)


# ---- application ----

def create_app(
    settings: Settings | None = None,
    store: KeyValueStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    Build the application. A store or HTTP client passed in is used as
    is and left open on shutdown; anything missing is built from settings.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        owns_store = app.state.store is None
        owns_client = app.state.http_client is None

        if owns_store:
            try:
                app.state.store = build_store(settings)
            except ConfigurationError as e:
                # Boot anyway; store-backed routes answer 500 with this message.
                logger.error("Mapping store not available: {}", e.message)
                app.state.store_error = e.message

        if app.state.store is not None:
            await app.state.store.open()
            logger.info("Using {} mapping store, {} index scope", app.state.store.name, settings.index_scope)

        if owns_client:
            app.state.http_client = httpx.AsyncClient(
                timeout=settings.upstream_timeout_seconds,
                follow_redirects=True,
            )

        yield

        if owns_client:
            await app.state.http_client.aclose()
        if owns_store and app.state.store is not None:
            await app.state.store.close()
        logger.info("Shut down")

    app = FastAPI(title="Content Redirector", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.store_error = None
    app.state.http_client = http_client

    app.include_router(router)
    app.add_exception_handler(MappingError, mapping_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    return app


app = create_app()
