"""
RingVault data model — rings, members, key records and access requests.

All entities are pydantic models persisted as JSON documents (orjson) through
the document store. The store version a document was read at travels with the
model in ``version`` but is never written into the document body.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import orjson
from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_identifier(identifier: str) -> str:
    """Trim and lower-case an identifier (email, token or agent id)."""
    if identifier is None:
        raise ValueError("Identifier is required")
    value = str(identifier).strip().lower()
    if not value:
        raise ValueError("Identifier cannot be empty")
    return value


class RoleScheme(str, Enum):
    """Role vocabulary recorded on every ring."""
    LEGACY = "legacy"          # owner / architect / member, several per member
    SIMPLIFIED = "simplified"  # admin / member, exactly one per member


LEGACY_ROLES = frozenset({"owner", "architect", "member"})
SIMPLIFIED_ROLES = frozenset({"admin", "member"})

# Roles granted to a founding identifier when it is added implicitly.
FULL_ROLES = {
    RoleScheme.LEGACY: ["owner", "architect", "member"],
    RoleScheme.SIMPLIFIED: ["admin"],
}

DEFAULT_ROLE = "member"
ADMIN_ROLE = "admin"


class EntityType(str, Enum):
    PERSON = "person"
    AGENT = "agent"
    BOT = "bot"


class Visibility(str, Enum):
    SHARED = "shared"
    PRIVATE = "private"


class AccessStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"


def coerce_roles(roles: Any) -> list[str]:
    """Accept a role string or an iterable of roles; return a clean list."""
    if roles is None:
        return []
    if isinstance(roles, str):
        roles = [roles]
    result: list[str] = []
    for role in roles:
        name = str(role).strip().lower()
        if name and name not in result:
            result.append(name)
    return result


class Member(BaseModel):
    """A ring member. One identifier may belong to several rings."""

    identifier: str
    roles: list[str]
    entity_type: EntityType = EntityType.PERSON
    added_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("identifier")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        return normalize_identifier(v)

    @field_validator("roles", mode="before")
    @classmethod
    def validate_roles(cls, v: Any) -> list[str]:
        return coerce_roles(v)

    @property
    def role(self) -> str:
        """Effective role: ``admin`` or ``member``.

        Simplified members carry exactly one role. Legacy members map
        ``owner`` to ``admin`` and everything else to ``member``.
        """
        if ADMIN_ROLE in self.roles or "owner" in self.roles:
            return ADMIN_ROLE
        return DEFAULT_ROLE


class Ring(BaseModel):
    """An isolated group with its own membership and roles."""

    id: str
    scheme: RoleScheme = RoleScheme.SIMPLIFIED
    founding_identifier: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    members: dict[str, Member] = Field(default_factory=dict)
    version: int = Field(default=0, exclude=True)

    def membership(self) -> dict[str, list[str]]:
        """Return the identifier -> roles map the quorum validator checks."""
        return {ident: list(m.roles) for ident, m in self.members.items()}

    def has_member(self, identifier: str) -> bool:
        return normalize_identifier(identifier) in self.members

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_bytes(cls, data: bytes, version: int = 0) -> "Ring":
        ring = cls.model_validate(orjson.loads(data))
        ring.version = version
        return ring


class KeyRecord(BaseModel):
    """Metadata for a named secret stored inside a ring."""

    ring_id: str
    name: str
    visibility: Visibility = Visibility.SHARED
    creator_identifier: str
    ciphertext_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, exclude=True)

    @field_validator("creator_identifier")
    @classmethod
    def validate_creator(cls, v: str) -> str:
        return normalize_identifier(v)

    @property
    def is_private(self) -> bool:
        return self.visibility == Visibility.PRIVATE

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_bytes(cls, data: bytes, version: int = 0) -> "KeyRecord":
        record = cls.model_validate(orjson.loads(data))
        record.version = version
        return record


class AccessRequest(BaseModel):
    """An admin's request to read a private key."""

    ring_id: str
    key_name: str
    requester: str
    status: AccessStatus = AccessStatus.PENDING
    reason: Optional[str] = None
    requested_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    version: int = Field(default=0, exclude=True)

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_bytes(cls, data: bytes, version: int = 0) -> "AccessRequest":
        request = cls.model_validate(orjson.loads(data))
        request.version = version
        return request


class ValidationResult(BaseModel):
    valid: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid
