from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from services.territory_filter import (
    Role,
    ScopedUser,
    apply_territory_filter,
    can_access_record,
    get_territory_display_name,
    parse_territory,
    validate_territory,
)

DEFAULT_LIST_QUERY = {
    "pagination": {"page": 1, "perPage": 25},
    "sort": {"field": "id", "order": "ASC"},
    "filter": {},
}


class TerritoryScope:
    """
    Territory view of a single caller. A scope without a user is pending:
    queries pass through and no record is accessible until identity resolves.
    """

    def __init__(self, user: Optional[ScopedUser]):
        self.user = user

    @property
    def is_pending(self) -> bool:
        return self.user is None

    @property
    def has_restrictions(self) -> bool:
        return bool(self.user and self.user.has_restrictions)

    @property
    def display_name(self) -> str:
        if self.user is None:
            return "Loading..."
        return get_territory_display_name(self.user.territory or [])

    def apply_filter(self, resource: str, query: Mapping[str, Any]) -> Mapping[str, Any]:
        if self.user is None:
            return query
        return apply_territory_filter(self.user, resource, query)

    def can_access(self, record: Optional[Mapping[str, Any]], resource_type: str) -> bool:
        if self.user is None:
            return False
        return can_access_record(self.user, record, resource_type)

    def record_access(self, record: Optional[Mapping[str, Any]], resource_type: str) -> Dict[str, Any]:
        if self.user is None:
            return {"canAccess": False, "reason": "Loading user permissions..."}
        allowed = self.can_access(record, resource_type)
        if not allowed and self.user.role_kind is Role.BROKER:
            return {"canAccess": False, "reason": "Record is outside your assigned territory"}
        return {"canAccess": allowed}

    def list_query(self, resource: str, base: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
        query = {key: dict(value) for key, value in DEFAULT_LIST_QUERY.items()}
        for key, value in (base or {}).items():
            query[key] = value
        return self.apply_filter(resource, query)

    def summary(self) -> Dict[str, Any]:
        if self.user is None:
            return {"pending": True, "displayName": self.display_name, "hasRestrictions": False}
        territory = list(self.user.territory or [])
        return {
            "pending": False,
            "userId": self.user.id,
            "email": self.user.email,
            "role": self.user.role,
            "territory": territory,
            "principals": list(self.user.principals or []),
            "parsed": parse_territory(",".join(territory)),
            "validation": validate_territory(territory),
            "displayName": self.display_name,
            "hasRestrictions": self.has_restrictions,
        }
