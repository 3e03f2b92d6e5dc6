from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

STATE_PATTERN = re.compile(r"[A-Z]{2}")
ZIP_CODE_PATTERN = re.compile(r"[0-9]{5}(-[0-9]{4})?")
CITY_PATTERN = re.compile(r"[a-zA-Z\s'-]+")

# Filter value no primary key can take; forces an empty result set.
DENY_ALL_ID = -1

DIRECT_LOCATION_RESOURCES = {"organizations", "customers"}
ORGANIZATION_LOCATION_RESOURCES = {"contacts", "interactions", "deals", "visits", "reminders"}


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    BROKER = "broker"


UNRESTRICTED_ROLES = {Role.ADMIN, Role.MANAGER}


def parse_role(raw_role: Any) -> Optional[Role]:
    # Exact match: "ADMIN" or " broker" is an unknown role.
    value = raw_role if isinstance(raw_role, str) else ""
    for role in Role:
        if role.value == value:
            return role
    return None


class TokenKind(str, Enum):
    STATE = "state"
    ZIP_CODE = "zip_code"
    CITY = "city"


@dataclass(frozen=True)
class TerritoryToken:
    kind: TokenKind
    raw: str

    @property
    def match_value(self) -> str:
        if self.kind is TokenKind.ZIP_CODE:
            return self.raw.split("-")[0]
        if self.kind is TokenKind.CITY:
            return self.raw.lower()
        return self.raw

    def matches(self, state: Any, city: Any, zip_code: Any) -> bool:
        if self.kind is TokenKind.STATE:
            return state == self.raw
        if self.kind is TokenKind.ZIP_CODE:
            if not zip_code:
                return False
            return str(zip_code).split("-")[0] == self.match_value
        if city is None:
            return False
        return str(city).lower() == self.match_value


def classify_token(raw: Any) -> TerritoryToken:
    """Classify one territory token; every string lands in exactly one kind."""
    text = "" if raw is None else str(raw)
    if STATE_PATTERN.fullmatch(text):
        return TerritoryToken(TokenKind.STATE, text)
    if ZIP_CODE_PATTERN.fullmatch(text):
        return TerritoryToken(TokenKind.ZIP_CODE, text)
    return TerritoryToken(TokenKind.CITY, text)


def classify_territory(territory: Iterable[Any]) -> List[TerritoryToken]:
    return [classify_token(area) for area in territory or []]


@dataclass
class ScopedUser:
    id: Any
    role: str
    territory: List[str] = field(default_factory=list)
    principals: List[str] = field(default_factory=list)
    email: Optional[str] = None

    @property
    def role_kind(self) -> Optional[Role]:
        return parse_role(self.role)

    @property
    def has_restrictions(self) -> bool:
        return self.role_kind is Role.BROKER and len(self.territory or []) > 0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ScopedUser":
        territory = payload.get("territory") or []
        if isinstance(territory, str):
            territory = [area.strip() for area in territory.split(",") if area.strip()]
        principals = payload.get("principals") or []
        return cls(
            id=payload.get("id"),
            role=str(payload.get("role") or ""),
            territory=[str(area) for area in territory],
            principals=[str(name) for name in principals if name is not None],
            email=payload.get("email"),
        )


def parse_territory(territory_string: str) -> Dict[str, List[str]]:
    areas = [area.strip() for area in str(territory_string or "").split(",")]
    states: List[str] = []
    cities: List[str] = []
    zip_codes: List[str] = []
    for area in areas:
        if not area:
            continue
        token = classify_token(area)
        if token.kind is TokenKind.STATE:
            states.append(area)
        elif token.kind is TokenKind.ZIP_CODE:
            zip_codes.append(area)
        else:
            cities.append(area)
    return {"states": states, "cities": cities, "zipCodes": zip_codes}


def validate_territory(territory: Iterable[Any]) -> Dict[str, Any]:
    """
    Strict counterpart to parse_territory: reports every token that is empty
    or is neither a state code, a ZIP code nor a plausible city name.
    """
    errors: List[str] = []
    for index, area in enumerate(territory or [], start=1):
        text = "" if area is None else str(area)
        if not text.strip():
            errors.append(f"Territory area {index} is empty")
            continue
        token = classify_token(text)
        if token.kind is TokenKind.CITY and not CITY_PATTERN.fullmatch(text):
            errors.append(f'Territory area "{text}" has invalid format')
    return {"isValid": not errors, "errors": errors}


def get_territory_display_name(territory: Iterable[Any]) -> str:
    areas = [str(area) for area in territory or []]
    if not areas:
        return "No Territory Assigned"
    if len(areas) == 1:
        return areas[0]
    if len(areas) <= 3:
        return ", ".join(areas)
    return f"{', '.join(areas[:2])} +{len(areas) - 2} more"


def _split_buckets(territory: Iterable[Any]) -> Dict[TokenKind, List[str]]:
    buckets: Dict[TokenKind, List[str]] = {kind: [] for kind in TokenKind}
    for token in classify_territory(territory):
        buckets[token.kind].append(token.match_value if token.kind is TokenKind.ZIP_CODE else token.raw)
    return buckets


def build_territory_filter(territory: List[Any], resource: str) -> Dict[str, Any]:
    """Return the predicate map restricting `resource` to the given territory."""
    buckets = _split_buckets(territory)
    states = buckets[TokenKind.STATE]
    cities = buckets[TokenKind.CITY]
    zip_codes = buckets[TokenKind.ZIP_CODE]
    predicates: Dict[str, Any] = {}

    if resource in DIRECT_LOCATION_RESOURCES:
        if states:
            predicates["state@in"] = states
        if cities:
            predicates["city@in"] = cities
        if zip_codes:
            predicates["zipCode@in"] = zip_codes
    elif resource in ORGANIZATION_LOCATION_RESOURCES:
        if states or cities or zip_codes:
            predicates["organization.state@in"] = states
            predicates["organization.city@in"] = cities
            predicates["organization.zipCode@in"] = zip_codes
    elif resource == "users":
        if territory:
            predicates["territory@overlap"] = [str(area) for area in territory]
    return predicates


def _with_filter(query: Mapping[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(query.get("filter") or {})
    merged.update(extra)
    rewritten = dict(query)
    rewritten["filter"] = merged
    return rewritten


def apply_territory_filter(
    user: Optional[ScopedUser],
    resource: str,
    query: Mapping[str, Any],
) -> Mapping[str, Any]:
    if user is None:
        raise ValueError("user is required")

    role = user.role_kind
    if role in UNRESTRICTED_ROLES:
        return query
    if role is Role.BROKER:
        if not user.territory:
            return _with_filter(query, {"id": DENY_ALL_ID})
        return _with_filter(query, build_territory_filter(user.territory, resource))

    # Unrecognized roles are passed through unfiltered.
    logger.warning("Unrecognized role %r for user %s; territory filter not applied", user.role, user.id)
    return query


def _record_location(record: Mapping[str, Any], resource_type: str) -> Optional[tuple]:
    if resource_type in DIRECT_LOCATION_RESOURCES:
        source = record
    elif resource_type in ORGANIZATION_LOCATION_RESOURCES:
        source = record.get("organization") or {}
    else:
        return None
    if not isinstance(source, Mapping):
        source = {}
    return source.get("state"), source.get("city"), source.get("zipCode")


def is_record_in_territory(territory: List[Any], record: Optional[Mapping[str, Any]], resource_type: str) -> bool:
    if not territory:
        return False
    location = _record_location(record or {}, resource_type)
    if location is None:
        return True
    state, city, zip_code = location
    return any(token.matches(state, city, zip_code) for token in classify_territory(territory))


def can_access_record(user: Optional[ScopedUser], record: Optional[Mapping[str, Any]], resource_type: str) -> bool:
    if user is None:
        raise ValueError("user is required")
    role = user.role_kind
    if role in UNRESTRICTED_ROLES:
        return True
    if role is Role.BROKER:
        return is_record_in_territory(user.territory or [], record, resource_type)
    return False
