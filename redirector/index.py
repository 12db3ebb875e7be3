"""
Owner-scope index lists.

The store has no enumeration primitive, so every mapping is also
recorded as an IndexEntry in a JSON list stored under its owner scope's
key. KeyValueIndexStore updates that list by read-modify-write: two
concurrent writers to the same scope can lose an entry. The records
themselves are unaffected; they stay resolvable by key but drop out of
list(). A store with atomic append or compare-and-swap can replace this
class without touching the registry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from pydantic import ValidationError as SchemaError

from redirector import keys
from redirector.errors import CorruptRecord, ValidationError
from redirector.schemas import IndexEntry, index_list_adapter
from redirector.store import KeyValueStore

USER_SCOPE = "user"
GLOBAL_SCOPE = "global"


@dataclass(frozen=True)
class OwnerScope:
    user_id: str | None = None

    @property
    def is_global(self) -> bool:
        return self.user_id is None

    @property
    def key(self) -> str:
        if self.user_id is None:
            return keys.GLOBAL_INDEX_KEY
        return keys.user_index_key(self.user_id)

    def __str__(self) -> str:
        return "global" if self.user_id is None else f"user {self.user_id}"


def scope_for(user_id: str | None, mode: str) -> OwnerScope:
    """
    Pick the index a mapping owned by user_id lives in.
    In global mode every mapping shares one list; in user mode a
    scope without a user cannot be listed.
    """
    if mode == GLOBAL_SCOPE:
        return OwnerScope()
    if mode != USER_SCOPE:
        raise ValidationError(f"Unknown index scope mode {mode!r}")
    if not user_id:
        raise ValidationError("User ID is required when mappings are indexed per user")
    return OwnerScope(user_id)


class IndexStore(ABC):
    @abstractmethod
    async def load(self, scope: OwnerScope) -> list[IndexEntry]:
        pass

    @abstractmethod
    async def append(self, scope: OwnerScope, entry: IndexEntry) -> None:
        pass

    @abstractmethod
    async def remove(self, scope: OwnerScope, mapping_key: str) -> bool:
        """Drop entries for mapping_key. False if the scope has no list at all."""

    @abstractmethod
    async def replace(self, scope: OwnerScope, entries: list[IndexEntry]) -> None:
        pass

    async def reset(self, scope: OwnerScope) -> None:
        await self.replace(scope, [])


class KeyValueIndexStore(IndexStore):
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def _read(self, scope: OwnerScope) -> list[IndexEntry] | None:
        raw = await self._store.get(scope.key)
        if raw is None:
            return None
        try:
            return index_list_adapter.validate_json(raw)
        except SchemaError as e:
            raise CorruptRecord("Invalid mappings list format") from e

    async def _write(self, scope: OwnerScope, entries: list[IndexEntry]) -> None:
        raw = index_list_adapter.dump_json(entries, by_alias=True).decode()
        await self._store.put(scope.key, raw)

    async def load(self, scope: OwnerScope) -> list[IndexEntry]:
        return await self._read(scope) or []

    async def append(self, scope: OwnerScope, entry: IndexEntry) -> None:
        entries = await self.load(scope)
        entries.append(entry)
        await self._write(scope, entries)

    async def remove(self, scope: OwnerScope, mapping_key: str) -> bool:
        entries = await self._read(scope)
        if entries is None:
            return False
        await self._write(scope, [e for e in entries if e.mapping_key != mapping_key])
        return True

    async def replace(self, scope: OwnerScope, entries: list[IndexEntry]) -> None:
        await self._write(scope, entries)
