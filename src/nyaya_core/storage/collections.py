from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class FlatLayout(StrEnum):
    LIST = "list"
    GROUPED = "grouped"
    KEYED = "keyed"


@dataclass(slots=True, frozen=True)
class CollectionSpec:
    name: str
    key_path: str = "id"
    indexes: tuple[str, ...] = ()
    sort_field: str | None = None
    layout: FlatLayout = FlatLayout.LIST
    group_field: str | None = None
    legacy_key: str | None = None
    legacy_group_prefix: str | None = None
    parent: str | None = None
    is_cache: bool = False
    key_prefix: str | None = None

    def flat_prefix(self) -> str:
        if self.layout == FlatLayout.KEYED:
            return self.key_prefix or f"cache_{self.name}_"
        if self.layout == FlatLayout.GROUPED:
            return self.legacy_group_prefix or f"{self.name}_"
        return self.list_key()

    def list_key(self) -> str:
        return self.legacy_key or f"records_{self.name}"


PROJECTS = "projects"
SESSIONS = "sessions"
DOCUMENT_CACHE = "document_cache"
API_RESPONSE_CACHE = "api_response_cache"
METADATA = "metadata"

CACHE_COLLECTIONS: tuple[str, ...] = (DOCUMENT_CACHE, API_RESPONSE_CACHE)

DEFAULT_COLLECTIONS: tuple[CollectionSpec, ...] = (
    CollectionSpec(
        name=PROJECTS,
        indexes=("created_at", "name"),
        sort_field="created_at",
        legacy_key="nyayasutra_data",
    ),
    CollectionSpec(
        name=SESSIONS,
        indexes=("project_id", "created_at", "status"),
        sort_field="created_at",
        layout=FlatLayout.GROUPED,
        group_field="project_id",
        legacy_group_prefix="sessions_",
        parent=PROJECTS,
    ),
    CollectionSpec(
        name=DOCUMENT_CACHE,
        key_path="key",
        indexes=("expires_at", "content_hash"),
        layout=FlatLayout.KEYED,
        is_cache=True,
    ),
    CollectionSpec(
        name=API_RESPONSE_CACHE,
        key_path="key",
        indexes=("expires_at", "content_hash"),
        layout=FlatLayout.KEYED,
        is_cache=True,
    ),
    CollectionSpec(
        name=METADATA,
        layout=FlatLayout.KEYED,
        key_prefix="meta_",
    ),
)


def collection_map(specs: tuple[CollectionSpec, ...]) -> dict[str, CollectionSpec]:
    return {spec.name: spec for spec in specs}
