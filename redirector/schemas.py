from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as SchemaError
from pydantic.alias_generators import to_camel

from redirector.errors import CorruptRecord

URL_MAPPING = "url_mapping"
TEXT_CONTENT = "text_content"
RECORD_TYPES = (URL_MAPPING, TEXT_CONTENT)

DEFAULT_TEXT_FILENAME = "text-content.txt"
DEFAULT_CONTENT_TYPE = "text/plain"

# Checked in order, first suffix match wins.
CONTENT_TYPES_BY_SUFFIX = (
    (".json", "application/json"),
    (".js", "application/javascript"),
    (".css", "text/css"),
    (".html", "text/html"),
    (".htm", "text/html"),
    (".xml", "application/xml"),
)


def infer_content_type(filename: str) -> str:
    for suffix, content_type in CONTENT_TYPES_BY_SUFFIX:
        if filename.endswith(suffix):
            return content_type
    return DEFAULT_CONTENT_TYPE


_any_url = TypeAdapter(AnyUrl)


def is_absolute_url(value: str) -> bool:
    """
    Any parseable absolute URL, with no length cap. Whether the scheme
    can actually be fetched is decided when it is fetched.
    """
    try:
        _any_url.validate_python(value)
    except SchemaError:
        return False
    return True


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---- persisted records ----

class _RecordBase(CamelModel):
    user_id: str
    custom_path: str
    created_at: datetime


class UrlMapping(_RecordBase):
    type: Literal["url_mapping"] = URL_MAPPING
    original_url: str


class TextContent(_RecordBase):
    type: Literal["text_content"] = TEXT_CONTENT
    content: str
    filename: str
    content_type: str = DEFAULT_CONTENT_TYPE


MappingRecord = Annotated[Union[UrlMapping, TextContent], Field(discriminator="type")]
mapping_record_adapter: TypeAdapter[MappingRecord] = TypeAdapter(MappingRecord)


class IndexEntry(CamelModel):
    mapping_key: str
    custom_path: str
    created_at: datetime
    type: str


index_list_adapter: TypeAdapter[list[IndexEntry]] = TypeAdapter(list[IndexEntry])


def dump_record(record: MappingRecord) -> str:
    return record.model_dump_json(by_alias=True)


def load_record(raw: str) -> MappingRecord:
    """
    Parse a stored value. Anything that is not a known record shape
    raises CorruptRecord; the stored bytes are bad, retrying won't help.
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise CorruptRecord("Invalid stored data format") from e

    if not isinstance(data, dict):
        raise CorruptRecord("Invalid stored data format")
    if data.get("type") not in RECORD_TYPES:
        raise CorruptRecord("Invalid mapping type")

    try:
        return mapping_record_adapter.validate_python(data)
    except SchemaError as e:
        raise CorruptRecord("Invalid stored data format") from e


# ---- API payloads ----

class UrlMappingCreated(CamelModel):
    success: bool = True
    mapped_url: str
    mapping_key: str
    user_id: str
    custom_path: str
    original_url: str
    message: str = "User-defined mapping created successfully"


class TextMappingCreated(CamelModel):
    success: bool = True
    mapped_url: str
    persistent_url: str
    mapping_key: str
    user_id: str
    custom_path: str
    filename: str
    content_type: str
    message: str = "Text content mapping created successfully"


class MappingSummary(CamelModel):
    mapping_key: str
    custom_path: str
    created_at: datetime
    type: str
    original_url: str | None = None
    content_preview: str | None = None
    filename: str | None = None
    content_type: str | None = None
    error: str | None = None


class MappingListResponse(CamelModel):
    success: bool = True
    user_id: str | None = None
    mappings: list[MappingSummary]
    count: int
    message: str


class DeletedMapping(CamelModel):
    mapping_key: str
    user_id: str
    custom_path: str


class DeleteResponse(CamelModel):
    success: bool = True
    message: str
    deleted_mapping: DeletedMapping


class GeneratedTextUrls(CamelModel):
    success: bool = True
    url: str
    base64_url: str
    filename: str
    content_length: int


class AdminRequest(CamelModel):
    action: str
    key: str | None = None
    value: str | dict[str, Any] | None = None
    type: str | None = None
    user_id: str | None = None
