"""Error taxonomy for RingVault.

Every error carries a stable ``code`` for programmatic handling and a
``retryable`` flag. Only conflicts and store timeouts are retryable, and the
core never retries on its own; that decision belongs to the caller.
"""
from typing import Any, Optional


class RingVaultError(Exception):
    """Base RingVault exception with stable error code."""

    code: str = "RV_E_INTERNAL"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def as_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(RingVaultError):
    """Quorum violation, malformed role or invalid visibility transition."""

    code = "RV_E_VALIDATION"


class RingExistsError(ValidationError):
    """A ring with the requested id already exists."""

    code = "RV_E_RING_EXISTS"


class NotFoundError(RingVaultError):
    """Ring, key or access request is absent."""

    code = "RV_E_NOT_FOUND"


class ConflictError(RingVaultError):
    """A concurrent write won the compare-and-set race."""

    code = "RV_E_CONFLICT"
    retryable = True


class StoreTimeoutError(RingVaultError):
    """A document store call exceeded its deadline; nothing was committed."""

    code = "RV_E_STORE_TIMEOUT"
    retryable = True


class AuthorizationError(RingVaultError):
    """The acting identifier is not eligible for the operation."""

    code = "RV_E_FORBIDDEN"


class CryptoFailure(RingVaultError):
    """Decryption failed.

    The message is deliberately constant: an integrity failure must look the
    same as an unrelated credential.
    """

    code = "RV_E_CRYPTO"

    def __init__(self, message: str = "decryption failed", details=None):
        super().__init__(message, details)
