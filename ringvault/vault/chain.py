"""
Key chains — deciding whether two credentials are "related".

The key-chain identity of a credential is a truncated SHA-256 of its bytes.
Two credentials are related iff their identities match. This is a lookup
relation that gates which envelope segments are attempted; authenticity comes
from the AEAD tag, never from the chain check.
"""
import hashlib
from collections.abc import Iterable
from typing import Any, Optional, Protocol, runtime_checkable

from .crypto import as_bytes

DEFAULT_CHAIN_ID_LENGTH = 16


def chain_identity(credential: Any, length: int = DEFAULT_CHAIN_ID_LENGTH) -> str:
    """Derive the fixed-length key-chain identity of a credential.

    Args:
        credential: Token string or raw credential bytes.
        length: Number of hex characters kept from the SHA-256 digest.

    Returns:
        Lowercase hex string of ``length`` characters.
    """
    if not 8 <= length <= 64:
        raise ValueError("chain identity length must be between 8 and 64")
    return hashlib.sha256(as_bytes(credential)).hexdigest()[:length]


def are_related(a: Any, b: Any, length: int = DEFAULT_CHAIN_ID_LENGTH) -> bool:
    if not a or not b:
        return False
    return chain_identity(a, length) == chain_identity(b, length)


@runtime_checkable
class RelatednessOracle(Protocol):
    """Decides whether a credential belongs to an envelope's key chain."""

    def is_related(self, credential: Any, chain_id: str) -> bool:
        ...


class CredentialHashRelatedness:
    """Related iff the credential derives the envelope's chain identity."""

    def __init__(self, length: int = DEFAULT_CHAIN_ID_LENGTH):
        self.length = length

    def is_related(self, credential: Any, chain_id: str) -> bool:
        if not credential or not chain_id:
            return False
        return chain_identity(credential, len(chain_id)) == chain_id


class ExplicitRelatedness:
    """Related iff the credential, or a credential the caller declares related
    to it, derives the envelope's chain identity.
    """

    def __init__(
        self,
        related_credentials: Optional[Iterable[Any]] = None,
        length: int = DEFAULT_CHAIN_ID_LENGTH,
    ):
        self.related = [c for c in (related_credentials or []) if c]
        self._hash = CredentialHashRelatedness(length)

    def is_related(self, credential: Any, chain_id: str) -> bool:
        if not credential:
            return False
        if self._hash.is_related(credential, chain_id):
            return True
        return any(self._hash.is_related(c, chain_id) for c in self.related)
