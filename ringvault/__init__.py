"""RingVault — Ring-scoped authorization and key-chain disclosure.

Rings isolate groups of identifiers. Inside a ring, roles are validated
against a quorum before every write, named keys carry a visibility, and
admins can request access to private keys from their creators.
"""

from .version import __version__
from .exceptions import (
    RingVaultError,
    ValidationError,
    RingExistsError,
    NotFoundError,
    ConflictError,
    StoreTimeoutError,
    AuthorizationError,
    CryptoFailure,
)
from .models import (
    RoleScheme,
    EntityType,
    Visibility,
    AccessStatus,
    Member,
    Ring,
    KeyRecord,
    AccessRequest,
    ValidationResult,
)
from .quorum import validate_ring_roles
from .store import (
    DocumentStore,
    MemoryDocumentStore,
    RedisDocumentStore,
    retry_on_conflict,
)
from .rings import RingRegistry
from .roles import RoleResolver
from .keys import KeyVisibilityEngine
from .audit import (
    AuditEntry,
    AuditTrail,
    MemoryAuditSink,
    LoggingAuditSink,
    PostgresAuditSink,
)
from .vault import (
    VaultConfig,
    DisclosureEngine,
    DisclosureEnvelope,
    DisclosureResult,
    encrypt_with_disclosure,
    decrypt_with_disclosure,
)

__all__ = [
    "__version__",
    "RingVaultError",
    "ValidationError",
    "RingExistsError",
    "NotFoundError",
    "ConflictError",
    "StoreTimeoutError",
    "AuthorizationError",
    "CryptoFailure",
    "RoleScheme",
    "EntityType",
    "Visibility",
    "AccessStatus",
    "Member",
    "Ring",
    "KeyRecord",
    "AccessRequest",
    "ValidationResult",
    "validate_ring_roles",
    "DocumentStore",
    "MemoryDocumentStore",
    "RedisDocumentStore",
    "retry_on_conflict",
    "RingRegistry",
    "RoleResolver",
    "KeyVisibilityEngine",
    "AuditEntry",
    "AuditTrail",
    "MemoryAuditSink",
    "LoggingAuditSink",
    "PostgresAuditSink",
    "VaultConfig",
    "DisclosureEngine",
    "DisclosureEnvelope",
    "DisclosureResult",
    "encrypt_with_disclosure",
    "decrypt_with_disclosure",
]
