"""
Disclosure Engine — key-chain partial decryption of structured records.

An envelope moves through three states:

    Sealed --exact credential-->   FullyOpen      (completeness 100)
    Sealed --related credential--> PartiallyOpen  (only disclosable fields)
    Sealed --anything else-->      Sealed         (success False, completeness 0)

Each top-level field of the payload is classified as *disclosable* (expired,
deceased, inactive) or *sealed* (everything else, including fields the
classifier cannot decide). The whole payload is encrypted once under a key
derived from the credential. The disclosable fields are encrypted a second
time under a chain key derived from the active master key and the credential's
key-chain identity. Field masks and metadata are bound to both ciphertexts as
associated data.

Security Note:
    Never log payload values, credentials or ciphertext. A failed integrity
    check and an unrelated credential produce the same result, with no detail.
"""
import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, Field

from ..exceptions import CryptoFailure
from ..models import utcnow
from .chain import (
    CredentialHashRelatedness,
    ExplicitRelatedness,
    RelatednessOracle,
    chain_identity,
)
from .config import VaultConfig
from .crypto import (
    as_bytes,
    b64d,
    b64e,
    canonical_bytes,
    decrypt_for_chain,
    derive_key,
    deserialize_value,
    encrypt_for_chain,
    open_sealed,
    seal,
    serialize_value,
)

logger = logging.getLogger("ringvault")

ENVELOPE_VERSION = "1.0"
EXACT_CONTEXT = "vault-disclosure-exact"
SCALAR_FIELD = "_data"

EXPIRY_MARKERS = (
    "expiresAt", "expiredAt", "expirationDate",
    "expires_at", "expired_at", "expiration_date",
)
DEATH_MARKERS = (
    "diedAt", "deathDate", "dateOfDeath",
    "died_at", "death_date", "date_of_death",
)
DISCLOSABLE_STATUSES = frozenset({"expired", "deceased", "inactive"})


class FieldClass(str, Enum):
    SEALED = "sealed"
    DISCLOSABLE = "disclosable"


Classifier = Callable[[str, Any], Union[FieldClass, str, None]]


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            dt = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _is_past(value: Any, now: datetime) -> bool:
    dt = _as_datetime(value)
    return dt is not None and dt < now


def default_classifier(name: str, value: Any) -> FieldClass:
    """Classify one top-level field. Fails closed to ``SEALED``."""
    if not isinstance(value, Mapping):
        return FieldClass.SEALED
    now = datetime.now(timezone.utc)
    for marker in EXPIRY_MARKERS + DEATH_MARKERS:
        if marker in value and _is_past(value[marker], now):
            return FieldClass.DISCLOSABLE
    status = value.get("status")
    if isinstance(status, str) and status.strip().lower() in DISCLOSABLE_STATUSES:
        return FieldClass.DISCLOSABLE
    if value.get("deceased") is True:
        return FieldClass.DISCLOSABLE
    return FieldClass.SEALED


def _classify(classifier: Classifier, name: str, value: Any) -> FieldClass:
    try:
        result = classifier(name, value)
    except Exception as err:
        logger.warning("Classifier failed for field=%s, sealing it: %s", name, err)
        return FieldClass.SEALED
    try:
        return FieldClass(result)
    except ValueError:
        return FieldClass.SEALED


class DisclosureEnvelope(BaseModel):
    """Immutable sealed record. Binary fields are base64 in ``to_dict``."""

    ciphertext: bytes
    iv: bytes
    sealed_mask: list[str]
    disclosable_mask: list[str]
    disclosable_segment: Optional[bytes] = None
    metadata: dict[str, Any]

    model_config = {"frozen": True}

    @property
    def chain_id(self) -> str:
        return self.metadata.get("chain_id", "")

    @property
    def field_count(self) -> int:
        return len(self.sealed_mask) + len(self.disclosable_mask)

    def associated_data(self) -> bytes:
        return _associated_data(self.metadata, self.sealed_mask, self.disclosable_mask)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ciphertext": b64e(self.ciphertext),
            "iv": b64e(self.iv),
            "sealed_mask": list(self.sealed_mask),
            "disclosable_mask": list(self.disclosable_mask),
            "disclosable_segment": (
                b64e(self.disclosable_segment) if self.disclosable_segment else None
            ),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DisclosureEnvelope":
        segment = data.get("disclosable_segment")
        return cls(
            ciphertext=b64d(data["ciphertext"]),
            iv=b64d(data["iv"]),
            sealed_mask=list(data["sealed_mask"]),
            disclosable_mask=list(data["disclosable_mask"]),
            disclosable_segment=b64d(segment) if segment else None,
            metadata=dict(data["metadata"]),
        )


class DisclosureResult(BaseModel):
    success: bool
    data: Any = None
    completeness: int = 0
    omitted_fields: list[str] = Field(default_factory=list)


def _associated_data(
    metadata: Mapping[str, Any], sealed: list[str], disclosable: list[str]
) -> bytes:
    return canonical_bytes(
        {"metadata": dict(metadata), "sealed": sealed, "disclosable": disclosable}
    )


FAILED = DisclosureResult(success=False, data=None, completeness=0)


class DisclosureEngine:
    """Encrypts records with partial-disclosure support.

    Args:
        config: Vault configuration providing master keys and cipher backend.
        oracle: Relatedness check used when no related credentials are passed
            to ``decrypt``. Defaults to credential-hash comparison.
    """

    def __init__(
        self,
        config: VaultConfig,
        oracle: Optional[RelatednessOracle] = None,
    ):
        self._config = config
        self._oracle = oracle or CredentialHashRelatedness(config.chain_id_length)

    def chain_identity(self, credential: Any) -> str:
        return chain_identity(credential, self._config.chain_id_length)

    def encrypt(
        self,
        payload: Any,
        credential: Any,
        classifier: Optional[Classifier] = None,
    ) -> DisclosureEnvelope:
        """Seal ``payload`` under ``credential``.

        Args:
            payload: JSON-compatible value. Mappings are classified per
                top-level field; any other value is one sealed field.
            credential: Token string or raw bytes.
            classifier: ``(field_name, value) -> "sealed" | "disclosable"``.
                Unknown answers and classifier errors seal the field.

        Returns:
            A new DisclosureEnvelope.
        """
        secret = as_bytes(credential)
        if not secret:
            raise ValueError("credential cannot be empty")
        classifier = classifier or default_classifier

        sealed: list[str] = []
        disclosable: dict[str, Any] = {}
        if isinstance(payload, Mapping):
            for name, value in payload.items():
                name = str(name)
                if _classify(classifier, name, value) is FieldClass.DISCLOSABLE:
                    disclosable[name] = value
                else:
                    sealed.append(name)
        else:
            sealed.append(SCALAR_FIELD)

        backend = self._config.cipher_backend
        metadata = {
            "chain_id": self.chain_identity(secret),
            "version": ENVELOPE_VERSION,
            "cipher": backend,
            "created_at": utcnow().isoformat(),
        }
        disclosable_mask = list(disclosable)
        aad = _associated_data(metadata, sealed, disclosable_mask)

        exact_key = derive_key(secret, EXACT_CONTEXT)
        iv, ciphertext = seal(serialize_value(payload), exact_key, aad, backend)

        segment = None
        if disclosable:
            key_id, master_key = self._config.active_master_key
            segment = encrypt_for_chain(
                serialize_value(disclosable),
                metadata["chain_id"],
                key_id,
                master_key,
                aad,
                backend,
            )

        logger.debug(
            "Disclosure envelope sealed: fields=%d disclosable=%d",
            len(sealed) + len(disclosable_mask), len(disclosable_mask),
        )
        return DisclosureEnvelope(
            ciphertext=ciphertext,
            iv=iv,
            sealed_mask=sealed,
            disclosable_mask=disclosable_mask,
            disclosable_segment=segment,
            metadata=metadata,
        )

    def decrypt(
        self,
        envelope: DisclosureEnvelope,
        credential: Any,
        related_credentials: Optional[Iterable[Any]] = None,
    ) -> DisclosureResult:
        """Open an envelope as far as ``credential`` allows.

        Args:
            envelope: Envelope produced by :meth:`encrypt`.
            credential: Exact or related credential.
            related_credentials: Credentials the caller declares related to
                ``credential``. When given they replace the default oracle.

        Returns:
            DisclosureResult. ``completeness`` is 100 for the exact
            credential, the disclosable share of fields for a related one and
            0 otherwise.
        """
        try:
            secret = as_bytes(credential)
        except TypeError:
            return FAILED.model_copy(deep=True)
        if not secret:
            return FAILED.model_copy(deep=True)

        backend = envelope.metadata.get("cipher", self._config.cipher_backend)
        aad = envelope.associated_data()

        # (1) exact credential
        try:
            plaintext = open_sealed(
                envelope.iv,
                envelope.ciphertext,
                derive_key(secret, EXACT_CONTEXT),
                aad,
                backend,
            )
        except (CryptoFailure, ValueError):
            pass
        else:
            logger.debug("Disclosure envelope opened with exact credential")
            return DisclosureResult(
                success=True,
                data=deserialize_value(plaintext),
                completeness=100,
            )

        # (2) related credential: only the chain segment is ever attempted
        oracle = self._oracle
        if related_credentials is not None:
            oracle = ExplicitRelatedness(
                related_credentials, self._config.chain_id_length
            )
        if not envelope.chain_id or not oracle.is_related(secret, envelope.chain_id):
            logger.debug("Disclosure denied: credential not in chain")
            return FAILED.model_copy(deep=True)
        if not envelope.disclosable_segment or not envelope.disclosable_mask:
            return FAILED.model_copy(deep=True)

        try:
            plaintext = decrypt_for_chain(
                envelope.disclosable_segment,
                envelope.chain_id,
                self._config.master_keys,
                aad,
                backend,
            )
            fields = deserialize_value(plaintext)
        except (CryptoFailure, ValueError):
            logger.debug("Disclosure denied: chain segment failed to open")
            return FAILED.model_copy(deep=True)
        if not isinstance(fields, dict):
            return FAILED.model_copy(deep=True)

        allowed = set(envelope.disclosable_mask)
        data = {k: v for k, v in fields.items() if k in allowed}
        total = envelope.field_count
        completeness = int(len(data) / total * 100) if total else 0
        logger.debug(
            "Disclosure envelope partially opened: completeness=%d", completeness,
        )
        return DisclosureResult(
            success=True,
            data=data,
            completeness=completeness,
            omitted_fields=list(envelope.sealed_mask),
        )


def encrypt_with_disclosure(
    payload: Any,
    credential: Any,
    classifier: Optional[Classifier] = None,
    *,
    config: VaultConfig,
) -> DisclosureEnvelope:
    """Seal ``payload`` with a one-off :class:`DisclosureEngine`."""
    return DisclosureEngine(config).encrypt(payload, credential, classifier)


def decrypt_with_disclosure(
    envelope: DisclosureEnvelope,
    credential: Any,
    related_credentials: Optional[Iterable[Any]] = None,
    *,
    config: VaultConfig,
    oracle: Optional[RelatednessOracle] = None,
) -> DisclosureResult:
    """Open ``envelope`` with a one-off :class:`DisclosureEngine`."""
    return DisclosureEngine(config, oracle).decrypt(
        envelope, credential, related_credentials,
    )
