"""
Role Resolver — effective role of an identifier.

Ring membership wins; the legacy global role table is only a fallback for
identifiers that belong to no ring. The bootstrap identifier always resolves
to ``admin`` so a cold system can never lock its operator out.
"""
import logging
from typing import Any, Optional, Union

import orjson

from .exceptions import ConflictError, NotFoundError, ValidationError
from .models import (
    ADMIN_ROLE,
    DEFAULT_ROLE,
    SIMPLIFIED_ROLES,
    coerce_roles,
    normalize_identifier,
)
from .rings import RingRegistry, require_identifier
from .store import DocumentStore, bounded

logger = logging.getLogger("ringvault")

LEGACY_ROLES_KEY = "user-roles"


def _effective(value: Union[str, list, None]) -> Optional[str]:
    roles = coerce_roles(value)
    if not roles:
        return None
    if ADMIN_ROLE in roles or "owner" in roles:
        return ADMIN_ROLE
    return DEFAULT_ROLE


class RoleResolver:
    """Resolve roles from ring membership with a legacy fallback table.

    Args:
        registry: Ring registry used for membership lookups.
        store: Document store holding the legacy ``user-roles`` table.
    """

    def __init__(self, registry: RingRegistry, store: DocumentStore):
        self._registry = registry
        self._store = store
        self._bootstrap = registry.bootstrap_identifier
        self._timeout = registry.timeout

    async def _legacy_table(self) -> tuple[dict[str, Any], Optional[int]]:
        """Load the legacy table, creating it on first use.

        Creation is "write if absent", so concurrent first calls converge on
        one table.
        """
        doc = await bounded(
            self._store.get(LEGACY_ROLES_KEY), self._timeout, "get",
        )
        if doc is not None:
            return orjson.loads(doc.data), doc.version
        initial = {self._bootstrap: ADMIN_ROLE} if self._bootstrap else {}
        created = await bounded(
            self._store.compare_and_set(
                LEGACY_ROLES_KEY, None, orjson.dumps(initial),
            ),
            self._timeout,
            "compare_and_set",
        )
        if created:
            logger.info("Initialized legacy role table")
            return initial, 1
        doc = await bounded(
            self._store.get(LEGACY_ROLES_KEY), self._timeout, "get",
        )
        return (orjson.loads(doc.data), doc.version) if doc else (initial, None)

    async def resolve_role(self, identifier: str, ring_id: Optional[str] = None) -> str:
        """Return ``admin`` or ``member`` for ``identifier``.

        Args:
            identifier: Authenticated identifier (email, token or agent id).
            ring_id: Ring to resolve in; looked up from membership if omitted.
        """
        if not identifier or not str(identifier).strip():
            return DEFAULT_ROLE
        identifier = normalize_identifier(identifier)

        if ring_id is None:
            ring_id = await self._registry.find_ring_for(identifier)
        if ring_id:
            try:
                ring = await self._registry.get(ring_id)
            except NotFoundError:
                ring = None
            member = ring.members.get(identifier) if ring else None
            if member is not None:
                return member.role

        table, _ = await self._legacy_table()
        role = _effective(table.get(identifier))
        if role:
            return role
        if identifier == self._bootstrap:
            return ADMIN_ROLE
        return DEFAULT_ROLE

    async def has_role(
        self, identifier: str, role: str, ring_id: Optional[str] = None
    ) -> bool:
        return await self.resolve_role(identifier, ring_id) == role

    async def is_admin(self, identifier: str, ring_id: Optional[str] = None) -> bool:
        return await self.has_role(identifier, ADMIN_ROLE, ring_id)

    async def set_role(
        self, identifier: str, role: str, ring_id: Optional[str] = None
    ) -> None:
        """Assign ``role`` in the identifier's ring, or in the legacy table.

        Raises:
            ValidationError: Empty identifier, unknown role, or the ring quorum
                would break.
            ConflictError: The legacy table changed concurrently.
        """
        identifier = require_identifier(identifier)
        role = str(role).strip().lower()
        if role not in SIMPLIFIED_ROLES:
            raise ValidationError(
                f"Invalid role: {role}. Valid roles are: "
                f"{', '.join(sorted(SIMPLIFIED_ROLES))}"
            )

        if ring_id is None:
            ring_id = await self._registry.find_ring_for(identifier)
        if ring_id:
            ring = await self._registry.get(ring_id)
            membership: dict[str, Any] = {
                ident: {"roles": m.roles, "entity_type": m.entity_type}
                for ident, m in ring.members.items()
            }
            current = ring.members.get(identifier)
            membership[identifier] = {
                "roles": [role],
                "entity_type": current.entity_type if current else "person",
            }
            await self._registry.update_roles(ring_id, membership)
            return

        table, version = await self._legacy_table()
        table[identifier] = role
        written = await bounded(
            self._store.compare_and_set(LEGACY_ROLES_KEY, version, orjson.dumps(table)),
            self._timeout,
            "compare_and_set",
        )
        if not written:
            raise ConflictError("Legacy role table was modified concurrently")
        logger.info("Legacy role set: %s=%s", identifier, role)

    async def all_roles(self, ring_id: Optional[str] = None) -> dict[str, Any]:
        """Membership of ``ring_id``, or the legacy table when no ring matches."""
        if ring_id:
            try:
                ring = await self._registry.get(ring_id)
            except NotFoundError:
                ring = None
            if ring is not None:
                return ring.membership()
        table, _ = await self._legacy_table()
        return table
