"""
Key Visibility Engine — who may read which named secret inside a ring.

Keys are ``shared`` (every ring member) or ``private`` (creator only). An admin
of the key's ring may ask the creator for access; a grant flips the key to
shared for good. Visibility only ever widens, there is no revoke.

Layout in the document store:
    keys/<ring_id>/<name>                  -> KeyRecord
    access/<ring_id>/<name>/<requester>    -> AccessRequest

Security Note:
    Membership of ``key.ring_id`` is checked first on every path, so an
    identifier from another ring is denied even when it is an admin there.
    Creator-only calls authorize against the stored record, never the one
    passed in, and require the creator to still belong to the ring.
    Every decision is audited; the audit never holds secret values.
"""
import logging
from typing import Optional, Union

from .audit import AuditTrail
from .exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .models import (
    ADMIN_ROLE,
    AccessRequest,
    AccessStatus,
    KeyRecord,
    Visibility,
    normalize_identifier,
    utcnow,
)
from .rings import RingRegistry, require_identifier
from .roles import RoleResolver
from .store import DocumentStore, bounded

logger = logging.getLogger("ringvault")

KEY_PREFIX = "keys/"
ACCESS_PREFIX = "access/"


def _key_path(ring_id: str, name: str) -> str:
    return f"{KEY_PREFIX}{ring_id}/{name}"


def _access_prefix(ring_id: str, name: str) -> str:
    return f"{ACCESS_PREFIX}{ring_id}/{name}/"


def _access_path(ring_id: str, name: str, requester: str) -> str:
    return f"{_access_prefix(ring_id, name)}{requester}"


def _check_name(value: str, what: str) -> str:
    value = (value or "").strip()
    if not value or "/" in value:
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


def _visibility(value: Union[Visibility, str]) -> Visibility:
    try:
        return Visibility(value)
    except ValueError:
        raise ValidationError(f"Invalid visibility: {value!r}") from None


class KeyVisibilityEngine:
    """Visibility decisions and the access-grant workflow.

    Args:
        registry: Ring registry for membership checks.
        resolver: Role resolver for the admin check on access requests.
        store: Document store for key records and access requests.
        audit: Audit trail every decision is emitted to.
    """

    def __init__(
        self,
        registry: RingRegistry,
        resolver: RoleResolver,
        store: DocumentStore,
        audit: AuditTrail,
    ):
        self._registry = registry
        self._resolver = resolver
        self._store = store
        self._audit = audit
        self._timeout = registry.timeout

    async def _is_member(self, ring_id: str, identifier: str) -> bool:
        return bool(await self._registry.member_roles(ring_id, identifier))

    async def _load_request(
        self, ring_id: str, name: str, requester: str
    ) -> Optional[AccessRequest]:
        doc = await bounded(
            self._store.get(_access_path(ring_id, name, requester)),
            self._timeout,
            "get",
        )
        if doc is None:
            return None
        return AccessRequest.from_bytes(doc.data, doc.version)

    async def _save_request(self, request: AccessRequest) -> AccessRequest:
        path = _access_path(request.ring_id, request.key_name, request.requester)
        expected = request.version or None
        written = await bounded(
            self._store.compare_and_set(path, expected, request.to_bytes()),
            self._timeout,
            "compare_and_set",
        )
        if not written:
            raise ConflictError(
                f"Access request for {request.key_name} was modified concurrently",
                {"ring_id": request.ring_id, "key_name": request.key_name},
            )
        request.version = (expected or 0) + 1
        return request

    async def _list_requests(self, key: KeyRecord) -> list[AccessRequest]:
        prefix = _access_prefix(key.ring_id, key.name)
        paths = await bounded(self._store.scan(prefix), self._timeout, "scan")
        requests = []
        for path in paths:
            request = await self._load_request(
                key.ring_id, key.name, path[len(prefix):],
            )
            if request is not None:
                requests.append(request)
        return requests

    def _deny(
        self, operation: str, actor: str, ring_id: str, name: str, message: str
    ) -> None:
        self._audit.record(
            operation, actor, "denied", key_name=name, ring_id=ring_id,
        )
        raise AuthorizationError(message, {"ring_id": ring_id, "key_name": name})

    def _reject(
        self, operation: str, actor: str, ring_id: str, name: str, message: str
    ) -> None:
        self._audit.record(
            operation, actor, "rejected", key_name=name, ring_id=ring_id,
        )
        raise ValidationError(message, {"ring_id": ring_id, "key_name": name})

    async def _authorize_creator(
        self, operation: str, actor: str, key: KeyRecord, message: str
    ) -> KeyRecord:
        """Load the stored record and require ``actor`` to be its creator.

        The caller's ``key`` only names the record; ownership and ring
        membership are checked against what the store holds.
        """
        current = await self.require_key(key.ring_id, key.name)
        if actor != current.creator_identifier:
            self._deny(operation, actor, current.ring_id, current.name, message)
        if not await self._is_member(current.ring_id, actor):
            self._deny(
                operation, actor, current.ring_id, current.name,
                f"{actor} is no longer a member of ring {current.ring_id}",
            )
        return current

    # ------------------------------------------------------------------
    # Key catalog
    # ------------------------------------------------------------------

    async def store_key(
        self,
        ring_id: str,
        name: str,
        creator: str,
        *,
        visibility: Union[Visibility, str] = Visibility.SHARED,
        ciphertext_ref: Optional[str] = None,
    ) -> KeyRecord:
        """Create a key record, or update the ciphertext reference of one.

        Raises:
            AuthorizationError: If ``creator`` is not a member of the ring, or
                the key is private and belongs to somebody else.
            ValidationError: Malformed input, or the call would narrow a
                shared key to private.
            ConflictError: If the record changed concurrently.
        """
        ring_id = _check_name(ring_id, "ring id")
        name = _check_name(name, "key name")
        creator = require_identifier(creator)
        visibility = _visibility(visibility)
        if not await self._is_member(ring_id, creator):
            self._deny(
                "store_key", creator, ring_id, name,
                f"{creator} is not a member of ring {ring_id}",
            )

        current = await self.get_key(ring_id, name)
        if current is None:
            record = KeyRecord(
                ring_id=ring_id,
                name=name,
                visibility=visibility,
                creator_identifier=creator,
                ciphertext_ref=ciphertext_ref,
            )
            expected = None
            action = "created"
        else:
            if current.is_private and creator != current.creator_identifier:
                self._deny(
                    "store_key", creator, ring_id, name,
                    f"Key {name} is private to its creator",
                )
            if visibility == Visibility.PRIVATE and not current.is_private:
                self._reject(
                    "store_key", creator, ring_id, name,
                    f"Key {name} is shared and cannot be made private",
                )
            record = current.model_copy(
                update={"ciphertext_ref": ciphertext_ref, "updated_at": utcnow()},
            )
            expected = current.version
            action = "updated"

        written = await bounded(
            self._store.compare_and_set(
                _key_path(ring_id, name), expected, record.to_bytes(),
            ),
            self._timeout,
            "compare_and_set",
        )
        if not written:
            raise ConflictError(
                f"Key {name} was modified concurrently",
                {"ring_id": ring_id, "key_name": name},
            )
        record.version = (expected or 0) + 1
        self._audit.record(
            "store_key", creator, action, key_name=name, ring_id=ring_id,
            visibility=record.visibility.value,
        )
        logger.debug("Key %s/%s %s by %s", ring_id, name, action, creator)
        return record

    async def get_key(self, ring_id: str, name: str) -> Optional[KeyRecord]:
        doc = await bounded(
            self._store.get(_key_path(ring_id, name)), self._timeout, "get",
        )
        if doc is None:
            return None
        return KeyRecord.from_bytes(doc.data, doc.version)

    async def require_key(self, ring_id: str, name: str) -> KeyRecord:
        key = await self.get_key(ring_id, name)
        if key is None:
            raise NotFoundError(
                f"Key {name} not found in ring {ring_id}",
                {"ring_id": ring_id, "key_name": name},
            )
        return key

    async def list_keys(self, ring_id: str, requester: str) -> list[str]:
        """Names of the keys in ``ring_id`` that ``requester`` can view."""
        prefix = f"{KEY_PREFIX}{ring_id}/"
        paths = await bounded(self._store.scan(prefix), self._timeout, "scan")
        names = []
        for path in paths:
            key = await self.get_key(ring_id, path[len(prefix):])
            if key is not None and await self._decide(key, requester):
                names.append(key.name)
        return names

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    async def can_view(self, key: KeyRecord, requester: str) -> bool:
        """Whether ``requester`` may read ``key``.

        Non-members are always denied. Members see shared keys; the creator
        sees their own key whatever its visibility. The decision uses the
        stored record, a key that no longer exists is never visible.
        """
        stored = await self.get_key(key.ring_id, key.name)
        if stored is None:
            self._audit.record(
                "can_view", str(requester or "").strip().lower(), "denied",
                key_name=key.name, ring_id=key.ring_id,
            )
            return False
        return await self._decide(stored, requester)

    async def _decide(self, key: KeyRecord, requester: str) -> bool:
        if not requester or not str(requester).strip():
            allowed = False
            requester = ""
        else:
            requester = normalize_identifier(requester)
            if not await self._is_member(key.ring_id, requester):
                allowed = False
            elif not key.is_private:
                allowed = True
            else:
                allowed = requester == key.creator_identifier
        self._audit.record(
            "can_view", requester, "allowed" if allowed else "denied",
            key_name=key.name, ring_id=key.ring_id,
            visibility=key.visibility.value,
        )
        return allowed

    # ------------------------------------------------------------------
    # Access-grant workflow
    # ------------------------------------------------------------------

    async def request_access(
        self, key: KeyRecord, requester: str, reason: Optional[str] = None
    ) -> AccessRequest:
        """File a request for a private key.

        Raises:
            AuthorizationError: Requester is not an admin member of the ring.
            NotFoundError: The key record does not exist.
            ValidationError: Empty requester, or the key is already shared.
        """
        requester = require_identifier(requester)
        if not await self._is_member(key.ring_id, requester):
            self._deny(
                "request_access", requester, key.ring_id, key.name,
                f"{requester} is not a member of ring {key.ring_id}",
            )
        role = await self._resolver.resolve_role(requester, key.ring_id)
        if role != ADMIN_ROLE:
            self._deny(
                "request_access", requester, key.ring_id, key.name,
                "Only ring admins can request access to private keys",
            )
        current = await self.require_key(key.ring_id, key.name)
        if not current.is_private:
            self._reject(
                "request_access", requester, key.ring_id, key.name,
                f"Key {key.name} is already shared",
            )

        existing = await self._load_request(key.ring_id, key.name, requester)
        if existing is not None and existing.status == AccessStatus.PENDING:
            return existing

        request = AccessRequest(
            ring_id=key.ring_id,
            key_name=key.name,
            requester=requester,
            reason=reason,
        )
        if existing is not None:
            request.version = existing.version
        request = await self._save_request(request)
        self._audit.record(
            "request_access", requester, "pending",
            key_name=key.name, ring_id=key.ring_id,
        )
        logger.info(
            "Access to %s/%s requested by %s", key.ring_id, key.name, requester,
        )
        return request

    async def access_requests(
        self, key: KeyRecord, actor: str
    ) -> list[AccessRequest]:
        """All requests for ``key``; only its creator may list them."""
        actor = require_identifier(actor)
        current = await self._authorize_creator(
            "access_requests", actor, key,
            "Only the key creator can list access requests",
        )
        return await self._list_requests(current)

    async def grant_access(self, key: KeyRecord, granter: str) -> KeyRecord:
        """Make a private key shared.

        Granting an already shared key returns it unchanged.

        Raises:
            AuthorizationError: If ``granter`` is not the creator, or no
                longer a member of the ring.
            NotFoundError: If the key record no longer exists.
            ConflictError: If the record changed concurrently.
        """
        granter = require_identifier(granter)
        current = await self._authorize_creator(
            "grant_access", granter, key, "Only the key creator can grant access",
        )
        if not current.is_private:
            self._audit.record(
                "grant_access", granter, "unchanged",
                key_name=key.name, ring_id=key.ring_id,
            )
            return current

        shared = current.model_copy(
            update={"visibility": Visibility.SHARED, "updated_at": utcnow()},
        )
        written = await bounded(
            self._store.compare_and_set(
                _key_path(key.ring_id, key.name), current.version, shared.to_bytes(),
            ),
            self._timeout,
            "compare_and_set",
        )
        if not written:
            raise ConflictError(
                f"Key {key.name} was modified concurrently",
                {"ring_id": key.ring_id, "key_name": key.name},
            )
        shared.version = current.version + 1

        for request in await self._list_requests(shared):
            if request.status != AccessStatus.PENDING:
                continue
            request.status = AccessStatus.GRANTED
            request.resolved_at = utcnow()
            request.resolved_by = granter
            try:
                await self._save_request(request)
            except ConflictError:
                logger.warning(
                    "Access request of %s for %s/%s changed during grant",
                    request.requester, key.ring_id, key.name,
                )
        self._audit.record(
            "grant_access", granter, "granted",
            key_name=key.name, ring_id=key.ring_id,
        )
        logger.info("Key %s/%s shared by %s", key.ring_id, key.name, granter)
        return shared

    async def deny_access(
        self, key: KeyRecord, granter: str, requester: str
    ) -> AccessRequest:
        """Deny a pending request; the key stays private.

        Raises:
            AuthorizationError: If ``granter`` is not the creator, or no
                longer a member of the ring.
            NotFoundError: If there is no pending request from ``requester``.
        """
        granter = require_identifier(granter)
        requester = require_identifier(requester)
        await self._authorize_creator(
            "deny_access", granter, key, "Only the key creator can deny access",
        )
        request = await self._load_request(key.ring_id, key.name, requester)
        if request is None or request.status != AccessStatus.PENDING:
            raise NotFoundError(
                f"No pending access request from {requester} for {key.name}",
                {"ring_id": key.ring_id, "key_name": key.name},
            )
        request.status = AccessStatus.DENIED
        request.resolved_at = utcnow()
        request.resolved_by = granter
        request = await self._save_request(request)
        self._audit.record(
            "deny_access", granter, "denied",
            key_name=key.name, ring_id=key.ring_id, requester=requester,
        )
        logger.info(
            "Access of %s to %s/%s denied by %s",
            requester, key.ring_id, key.name, granter,
        )
        return request
