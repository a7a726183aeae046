"""
Ring Registry — CRUD over rings with validate-before-write.

Every ring is its own versioned document (``rings/<id>``). Each mutation:

1. loads the committed ring and its version,
2. builds the proposed ring,
3. runs the quorum validator against the *proposed* membership,
4. raises ``ValidationError`` with the validator's reason if invalid,
5. commits with compare-and-set on the loaded version.

A lost compare-and-set raises ``ConflictError`` and writes nothing, so a
committed ring always satisfies its quorum rules.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any, Callable, Optional, Union

import orjson
from pydantic import ValidationError as ModelValidationError

from .exceptions import (
    ConflictError,
    NotFoundError,
    RingExistsError,
    ValidationError,
)
from .models import (
    FULL_ROLES,
    EntityType,
    Member,
    Ring,
    RoleScheme,
    coerce_roles,
    normalize_identifier,
    utcnow,
)
from .quorum import validate_ring_roles
from .store import DocumentStore, bounded
from .vault.config import VaultConfig

logger = logging.getLogger("ringvault")

RING_PREFIX = "rings/"
DEFAULT_RING_ID = "default"
ANONYMOUS_RING_PREFIX = "anon-"
ANONYMOUS_IDENTIFIER = "anonymous"
DEFAULT_TIMEOUT = 5.0


def is_anonymous_ring(ring_id: Optional[str]) -> bool:
    return bool(ring_id) and ring_id.startswith(ANONYMOUS_RING_PREFIX)


def _ring_key(ring_id: str) -> str:
    return f"{RING_PREFIX}{ring_id}"


def require_identifier(identifier: str) -> str:
    """Normalize an identifier, raising ``ValidationError`` when it is empty."""
    try:
        return normalize_identifier(identifier)
    except ValueError as err:
        raise ValidationError(str(err)) from None


def _member_from_spec(
    identifier: str, spec: Any, existing: Optional[Member] = None
) -> Member:
    """Build a Member from a role string, role list, mapping or Member."""
    entity_type = existing.entity_type if existing else EntityType.PERSON
    if isinstance(spec, Member):
        roles, entity_type = spec.roles, spec.entity_type
    elif isinstance(spec, Mapping):
        roles = spec.get("roles", spec.get("role"))
        entity_type = spec.get("entity_type", spec.get("entityType", entity_type))
    else:
        roles = spec
    try:
        member = Member(
            identifier=identifier,
            roles=coerce_roles(roles),
            entity_type=entity_type,
        )
    except ModelValidationError as err:
        raise ValidationError(
            f"Invalid member {identifier}: {err.errors()[0]['msg']}"
        ) from None
    if existing is not None:
        member.added_at = existing.added_at
        member.updated_at = utcnow()
    return member


class RingRegistry:
    """Ring CRUD on top of a versioned document store.

    Args:
        store: Document store adapter.
        config: Optional vault configuration supplying the bootstrap
            identifier, default role scheme and store timeout.
    """

    def __init__(self, store: DocumentStore, config: Optional[VaultConfig] = None):
        self._store = store
        self._bootstrap = config.bootstrap_identifier if config else None
        self._scheme = config.default_scheme if config else RoleScheme.SIMPLIFIED
        self._timeout = config.store_timeout if config else DEFAULT_TIMEOUT

    @property
    def bootstrap_identifier(self) -> Optional[str]:
        return self._bootstrap

    @property
    def timeout(self) -> float:
        return self._timeout

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, ring_id: str) -> Ring:
        """Return the committed ring.

        Raises:
            NotFoundError: If the ring does not exist.
        """
        if not ring_id:
            raise NotFoundError("Ring ID is required")
        doc = await bounded(self._store.get(_ring_key(ring_id)), self._timeout, "get")
        if doc is None:
            raise NotFoundError(f"Ring {ring_id} not found", {"ring_id": ring_id})
        return Ring.from_bytes(doc.data, doc.version)

    async def exists(self, ring_id: str) -> bool:
        try:
            await self.get(ring_id)
        except NotFoundError:
            return False
        return True

    async def list(self) -> list[Ring]:
        """Return every ring, sorted by id."""
        names = await bounded(self._store.scan(RING_PREFIX), self._timeout, "scan")
        rings = []
        for name in names:
            doc = await bounded(self._store.get(name), self._timeout, "get")
            if doc is not None:
                rings.append(Ring.from_bytes(doc.data, doc.version))
        return rings

    async def rings_for(self, identifier: str) -> list[str]:
        """Return the ids of every ring the identifier belongs to."""
        identifier = require_identifier(identifier)
        return [r.id for r in await self.list() if identifier in r.members]

    async def find_ring_for(self, identifier: str) -> Optional[str]:
        """Return the ring containing ``identifier``, or None.

        An identifier is expected to belong to at most one ring when no ring
        is named explicitly; with several, the first by id wins.
        """
        ring_ids = await self.rings_for(identifier)
        if len(ring_ids) > 1:
            logger.debug(
                "Identifier %s belongs to %d rings, using %s",
                identifier, len(ring_ids), ring_ids[0],
            )
        return ring_ids[0] if ring_ids else None

    async def member_roles(self, ring_id: str, identifier: str) -> list[str]:
        """Roles of ``identifier`` in ``ring_id``; empty when absent."""
        if not ring_id or not identifier:
            return []
        try:
            ring = await self.get(ring_id)
        except NotFoundError:
            return []
        member = ring.members.get(require_identifier(identifier))
        return list(member.roles) if member else []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _validate(self, ring: Ring, message: str) -> None:
        result = validate_ring_roles(ring.membership(), ring.scheme)
        if not result.valid:
            raise ValidationError(
                f"{message}: {result.reason}",
                {"ring_id": ring.id, "reason": result.reason},
            )

    async def _commit(self, current: Ring, proposed: Ring, action: str) -> Ring:
        proposed.updated_at = utcnow()
        written = await bounded(
            self._store.compare_and_set(
                _ring_key(proposed.id), current.version, proposed.to_bytes(),
            ),
            self._timeout,
            "compare_and_set",
        )
        if not written:
            logger.info("Ring %s changed concurrently during %s", proposed.id, action)
            raise ConflictError(
                f"Ring {proposed.id} was modified concurrently",
                {"ring_id": proposed.id, "expected_version": current.version},
            )
        proposed.version = current.version + 1
        logger.info(
            "Ring %s: %s (members=%d, version=%d)",
            proposed.id, action, len(proposed.members), proposed.version,
        )
        return proposed

    async def _mutate(
        self,
        ring_id: str,
        change: Callable[[Ring], None],
        action: str,
        message: str,
    ) -> Ring:
        current = await self.get(ring_id)
        proposed = current.model_copy(deep=True)
        change(proposed)
        self._validate(proposed, message)
        return await self._commit(current, proposed, action)

    async def create(
        self,
        ring_id: Optional[str] = None,
        initial_members: Optional[Mapping[str, Any]] = None,
        *,
        founding_identifier: Optional[str] = None,
        scheme: Union[RoleScheme, str, None] = None,
    ) -> Ring:
        """Create a ring.

        Args:
            ring_id: Ring id; ``ring-<hex>`` is generated when omitted.
            initial_members: Mapping of identifier to role spec.
            founding_identifier: Pinned member that can never be removed.
                Defaults to the first initial member, then the bootstrap
                identifier. Added with full roles when not listed.
            scheme: Role scheme; defaults to the configured scheme.

        Raises:
            ValidationError: If the configuration violates the quorum.
            RingExistsError: If ``ring_id`` is already taken.
        """
        try:
            scheme = RoleScheme(scheme or self._scheme)
        except ValueError:
            raise ValidationError(f"Unknown role scheme: {scheme}") from None
        ring_id = (ring_id or f"ring-{uuid.uuid4().hex[:12]}").strip()
        if not ring_id or "/" in ring_id:
            raise ValidationError(f"Invalid ring id: {ring_id!r}")

        members: dict[str, Member] = {}
        for identifier, spec in (initial_members or {}).items():
            identifier = require_identifier(identifier)
            members[identifier] = _member_from_spec(identifier, spec)

        if founding_identifier:
            founder = require_identifier(founding_identifier)
        elif members:
            founder = next(iter(members))
        elif self._bootstrap:
            founder = self._bootstrap
        else:
            raise ValidationError("Ring must have at least one member.")
        if founder not in members:
            members[founder] = _member_from_spec(founder, FULL_ROLES[scheme])

        ring = Ring(
            id=ring_id,
            scheme=scheme,
            founding_identifier=founder,
            members=members,
        )
        self._validate(ring, "Invalid ring configuration")

        written = await bounded(
            self._store.compare_and_set(_ring_key(ring_id), None, ring.to_bytes()),
            self._timeout,
            "compare_and_set",
        )
        if not written:
            raise RingExistsError(
                f"Ring {ring_id} already exists", {"ring_id": ring_id},
            )
        ring.version = 1
        logger.info(
            "Ring %s created (scheme=%s, members=%d)",
            ring_id, scheme.value, len(members),
        )
        return ring

    async def add_member(
        self,
        ring_id: str,
        identifier: str,
        role: Any = "member",
        *,
        entity_type: Union[EntityType, str] = EntityType.PERSON,
    ) -> Ring:
        """Add a new member.

        Raises:
            NotFoundError: If the ring does not exist.
            ValidationError: If already a member or the quorum would break.
        """
        identifier = require_identifier(identifier)
        member = _member_from_spec(
            identifier, {"roles": role, "entity_type": entity_type},
        )

        def change(ring: Ring) -> None:
            if identifier in ring.members:
                raise ValidationError(
                    f"{identifier} is already a member of ring {ring.id}",
                    {"ring_id": ring.id},
                )
            ring.members[identifier] = member

        return await self._mutate(
            ring_id, change, f"added {identifier}",
            "Adding this member would make ring invalid",
        )

    async def remove_member(self, ring_id: str, identifier: str) -> Ring:
        """Remove a member if the ring stays valid.

        Raises:
            NotFoundError: If the ring or the member does not exist.
            ValidationError: If the identifier is the founder or the quorum
                would break.
        """
        identifier = require_identifier(identifier)

        def change(ring: Ring) -> None:
            if identifier == ring.founding_identifier:
                raise ValidationError(
                    "Cannot remove the founding identifier from a ring",
                    {"ring_id": ring.id},
                )
            if identifier not in ring.members:
                raise NotFoundError(
                    f"{identifier} is not a member of ring {ring.id}",
                    {"ring_id": ring.id},
                )
            del ring.members[identifier]

        return await self._mutate(
            ring_id, change, f"removed {identifier}",
            "Removing this member would make ring invalid",
        )

    async def update_roles(
        self, ring_id: str, membership: Mapping[str, Any]
    ) -> Ring:
        """Replace the whole membership map.

        The founder is kept with their current roles when ``membership``
        omits them. Existing members keep their ``added_at``.
        """

        def change(ring: Ring) -> None:
            members: dict[str, Member] = {}
            for identifier, spec in membership.items():
                identifier = require_identifier(identifier)
                members[identifier] = _member_from_spec(
                    identifier, spec, ring.members.get(identifier),
                )
            founder = ring.founding_identifier
            if founder and founder not in members and founder in ring.members:
                members[founder] = ring.members[founder]
            ring.members = members

        return await self._mutate(
            ring_id, change, "roles updated", "Invalid ring configuration",
        )

    # ------------------------------------------------------------------
    # Bootstrap and import helpers
    # ------------------------------------------------------------------

    async def initialize_default(self, identifier: Optional[str] = None) -> Ring:
        """Return the first ring, creating ``default`` when there is none."""
        rings = await self.list()
        if rings:
            return rings[0]
        founder = identifier or self._bootstrap
        if not founder:
            raise ValidationError(
                "A bootstrap identifier is required to create the default ring"
            )
        founder = require_identifier(founder)
        return await self.create(
            DEFAULT_RING_ID,
            {founder: FULL_ROLES[self._scheme]},
            founding_identifier=founder,
        )

    async def create_anonymous(self, session_id: Optional[str] = None) -> Ring:
        """Create an isolated ring for anonymous usage."""
        suffix = session_id or uuid.uuid4().hex[:12]
        return await self.create(
            f"{ANONYMOUS_RING_PREFIX}{suffix}",
            {ANONYMOUS_IDENTIFIER: "admin"},
            founding_identifier=ANONYMOUS_IDENTIFIER,
            scheme=RoleScheme.SIMPLIFIED,
        )

    async def import_legacy(
        self,
        blob: Union[bytes, str, Mapping[str, Any]],
        *,
        scheme: Union[RoleScheme, str] = RoleScheme.LEGACY,
    ) -> dict:
        """Split a legacy single-document ``{ring_id: ring}`` map into rings.

        Rings that already exist are skipped, rings that fail the quorum are
        reported as invalid and not written.

        Returns:
            Stats dict with keys: total, imported, skipped, invalid.
        """
        data = orjson.loads(blob) if isinstance(blob, (bytes, str)) else blob
        scheme = RoleScheme(scheme)
        stats = {"total": 0, "imported": 0, "skipped": 0, "invalid": 0}
        for ring_id, raw in data.items():
            stats["total"] += 1
            members = {
                ident: spec if isinstance(spec, Mapping) else {"roles": spec}
                for ident, spec in (raw.get("members") or {}).items()
            }
            founder = raw.get("firstEmail") or raw.get("founding_identifier")
            try:
                await self.create(
                    raw.get("id", ring_id),
                    members,
                    founding_identifier=founder,
                    scheme=scheme,
                )
            except RingExistsError:
                stats["skipped"] += 1
            except ValidationError as err:
                logger.error("Legacy ring %s not imported: %s", ring_id, err.message)
                stats["invalid"] += 1
            else:
                stats["imported"] += 1
        logger.info("Legacy ring import complete: %s", stats)
        return stats
