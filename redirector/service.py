from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from loguru import logger

from redirector import keys
from redirector.errors import Conflict, CorruptRecord, NotFound, ValidationError
from redirector.index import IndexStore, KeyValueIndexStore, OwnerScope, scope_for
from redirector.schemas import (
    DEFAULT_TEXT_FILENAME,
    IndexEntry,
    MappingRecord,
    TextContent,
    UrlMapping,
    dump_record,
    infer_content_type,
    is_absolute_url,
    load_record,
)
from redirector.store import KeyValueStore


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_owner(user_id: str | None, custom_path: str | None) -> None:
    """
    userId is restricted to letters, digits, '-' and '_' so that
    mapping keys decode back to the same pair.
    """
    if not user_id:
        raise ValidationError("User ID is required")
    if not keys.is_valid_user_id(user_id):
        raise ValidationError(
            "User ID can only contain letters, numbers, hyphens, and underscores"
        )
    if not custom_path:
        raise ValidationError("Custom path is required")


def is_header_safe(value: str) -> bool:
    return all(" " <= c <= "~" for c in value)


def build_url_mapping(
    original_url: str | None,
    user_id: str | None,
    custom_path: str | None,
) -> UrlMapping:
    if not original_url:
        raise ValidationError("Original URL is required")
    validate_owner(user_id, custom_path)
    if not is_absolute_url(original_url):
        raise ValidationError("Invalid original URL")

    return UrlMapping(
        user_id=user_id,
        custom_path=custom_path,
        created_at=utcnow(),
        original_url=original_url,
    )


def build_text_mapping(
    content: str | None,
    user_id: str | None,
    custom_path: str | None,
    filename: str | None = None,
    content_type: str | None = None,
) -> TextContent:
    """
    Every text-creating path goes through here so the content type is
    always inferred the same way when the caller does not pin one.
    """
    if not content:
        raise ValidationError("Content is required")
    validate_owner(user_id, custom_path)

    if content_type and not is_header_safe(content_type):
        raise ValidationError("Invalid content type")

    filename = filename or DEFAULT_TEXT_FILENAME
    return TextContent(
        user_id=user_id,
        custom_path=custom_path,
        created_at=utcnow(),
        content=content,
        filename=filename,
        content_type=content_type or infer_content_type(filename),
    )


@dataclass(frozen=True)
class MappingListing:
    entry: IndexEntry
    # None when the stored value could not be parsed
    record: MappingRecord | None


class MappingRegistry:
    """
    Create/get/delete of mapping records plus the owner-scope index
    lists that make listing possible.

    Each record write is a single store put. Nothing spans the record and
    its index entry, and the existence check on create is not atomic
    with the put that follows it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        index: IndexStore | None = None,
        index_scope: str = "user",
    ) -> None:
        self._store = store
        self._index = index or KeyValueIndexStore(store)
        self._index_scope = index_scope

    def scope_for(self, user_id: str | None) -> OwnerScope:
        return scope_for(user_id, self._index_scope)

    async def create(self, record: MappingRecord) -> str:
        validate_owner(record.user_id, record.custom_path)
        if isinstance(record, UrlMapping) and not is_absolute_url(record.original_url):
            raise ValidationError("Invalid original URL")

        key = keys.encode(record.user_id, record.custom_path)

        existing = await self._store.get(key)
        if existing is not None:
            raise Conflict("A mapping with this user ID and custom path already exists")

        await self._store.put(key, dump_record(record))
        await self._index.append(
            self.scope_for(record.user_id),
            IndexEntry(
                mapping_key=key,
                custom_path=record.custom_path,
                created_at=record.created_at,
                type=record.type,
            ),
        )

        logger.info("Created {} mapping {}", record.type, key)
        return key

    async def get(self, user_id: str, custom_path: str) -> MappingRecord | None:
        raw = await self._store.get(keys.encode(user_id, custom_path))
        if raw is None:
            return None
        return load_record(raw)

    async def delete(self, user_id: str, custom_path: str) -> str:
        key = keys.encode(user_id, custom_path)

        existing = await self._store.get(key)
        if existing is None:
            raise NotFound("Mapping not found")

        await self._store.delete(key)

        # Index cleanup is best effort: a missing list does not fail the delete.
        scope = self.scope_for(user_id)
        if not await self._index.remove(scope, key):
            logger.warning("Deleted {} but {} has no index list", key, scope)

        logger.info("Deleted mapping {}", key)
        return key

    async def list(self, scope: OwnerScope) -> list[MappingListing]:
        """
        Records in index order. Entries whose record is gone are skipped;
        that is the tolerated index inconsistency, not an error.
        """
        listings: list[MappingListing] = []
        for entry in await self._index.load(scope):
            raw = await self._store.get(entry.mapping_key)
            if raw is None:
                logger.debug("Skipping dangling index entry {}", entry.mapping_key)
                continue
            try:
                record = load_record(raw)
            except CorruptRecord as e:
                logger.warning("Error parsing mapping details for {}: {}", entry.mapping_key, e)
                record = None
            listings.append(MappingListing(entry=entry, record=record))
        return listings

    async def list_for_user(self, user_id: str) -> list[MappingListing]:
        scope = self.scope_for(user_id)
        listings = await self.list(scope)
        if scope.is_global:
            prefix = keys.encode(user_id, "")
            listings = [item for item in listings if item.entry.mapping_key.startswith(prefix)]
        return listings

    async def delete_all(self, scope: OwnerScope) -> int:
        """
        Deletes every indexed record, then empties the index.
        A failure part way leaves the earlier deletes in place.
        """
        entries = await self._index.load(scope)
        for entry in entries:
            await self._store.delete(entry.mapping_key)
        await self._index.reset(scope)

        logger.info("Deleted {} mappings from {} index", len(entries), scope)
        return len(entries)

    async def delete_all_for_user(self, user_id: str) -> int:
        """
        delete_all restricted to one user. With a shared global index only
        that user's entries are deleted; the rest of the list is kept.
        """
        scope = self.scope_for(user_id)
        if not scope.is_global:
            return await self.delete_all(scope)

        prefix = keys.encode(user_id, "")
        entries = await self._index.load(scope)
        mine = [e for e in entries if e.mapping_key.startswith(prefix)]
        for entry in mine:
            await self._store.delete(entry.mapping_key)
        await self._index.replace(scope, [e for e in entries if not e.mapping_key.startswith(prefix)])

        logger.info("Deleted {} mappings of user {} from global index", len(mine), user_id)
        return len(mine)
