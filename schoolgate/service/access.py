from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional, Set

from schoolgate.logging import get_logger
from schoolgate.service.auth import AuthStore, Principal
from schoolgate.service.errors import (
    ChildAccessDeniedError,
    ChildIdInvalidError,
    DependencyUnavailableError,
)
from schoolgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

# Member stored in an otherwise empty child set so "no children" can be cached
EMPTY_SET_SENTINEL = "__none__"


def parent_children_key(parent_id: str, org_id: int) -> str:
    return f"parent_children:{parent_id}:{org_id}"


@dataclass(frozen=True)
class ValidatedChild:
    child_id: str
    organization_id: int


@dataclass(frozen=True)
class AccessScope:
    """Whose records a request may read, and in which organization."""

    subject_id: str
    organization_id: int
    via_parent: bool = False


class ParentChildValidator:
    """Checks that a parent may act on behalf of the requested child.

    Child sets are cached per (parent, organization). Cache failures fall
    through to the store; store failures are raised.
    """

    def __init__(
        self,
        store: AuthStore,
        cache,
        *,
        ttl_seconds: int = 300,
        cache_empty: bool = False,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.cache_empty = cache_empty

    @staticmethod
    def _normalize_child_id(requested_child_id: Optional[str]) -> str:
        if requested_child_id is None or not str(requested_child_id).strip():
            raise ChildIdInvalidError("Child ID is required")
        try:
            return str(uuid.UUID(str(requested_child_id).strip()))
        except ValueError:
            raise ChildIdInvalidError("Invalid child ID") from None

    async def _cached_children(self, key: str) -> Optional[Set[str]]:
        try:
            members = await self.cache.smembers(key)
        except Exception as exc:
            logger.warning("parent_children_cache_read_failed", key=key, error=str(exc))
            return None
        return members or None

    async def _cache_children(self, key: str, children: Set[str]) -> None:
        members = set(children)
        if not members:
            if not self.cache_empty:
                return
            members = {EMPTY_SET_SENTINEL}
        try:
            await self.cache.sadd(key, *sorted(members), ttl_seconds=self.ttl_seconds)
        except Exception as exc:
            logger.warning("parent_children_cache_write_failed", key=key, error=str(exc))

    async def children_of(self, parent: Principal) -> Set[str]:
        """Ids of the parent's active children in the parent's current organization."""
        key = parent_children_key(parent.id, parent.organization_id)
        cached = await self._cached_children(key)
        if cached is not None:
            return cached - {EMPTY_SET_SENTINEL}
        try:
            rows = self.store.list_active_children(parent.id, parent.organization_id)
        except StoreUnavailable as exc:
            logger.error("store_unavailable", operation="list_active_children", error=exc.message)
            raise DependencyUnavailableError("Internal server error") from exc
        children = {row.id for row in rows}
        await self._cache_children(key, children)
        return children

    async def validate(
        self, parent: Principal, requested_child_id: Optional[str]
    ) -> ValidatedChild:
        child_id = self._normalize_child_id(requested_child_id)
        if child_id not in await self.children_of(parent):
            logger.warning(
                "parent_child_access_denied", parent_id=parent.id, child_id=child_id
            )
            raise ChildAccessDeniedError()
        return ValidatedChild(child_id=child_id, organization_id=parent.organization_id)

    async def resolve_scope(
        self, principal: Principal, child_id: Optional[str] = None
    ) -> AccessScope:
        """Parents act through a validated child; everyone else reads as themselves."""
        if principal.role == "parent":
            child = await self.validate(principal, child_id)
            return AccessScope(
                subject_id=child.child_id,
                organization_id=child.organization_id,
                via_parent=True,
            )
        return AccessScope(subject_id=principal.id, organization_id=principal.organization_id)
