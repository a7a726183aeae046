"""Disclosure Vault — Key-chain based partial decryption of stored records.

Security Note (Threat Model):
    The key-chain identity is a lookup, not a trust boundary. It decides which
    segment of an envelope is attempted; the AEAD tag is what rejects forged
    or foreign ciphertext. The disclosable segment is protected by the server
    master key, so anyone holding both the master key and an envelope's chain
    identity can read its disclosable fields. Sealed fields need the exact
    credential. Decrypted values exist in process memory during use; this is
    an accepted limitation.
"""

from .chain import (
    chain_identity,
    are_related,
    RelatednessOracle,
    CredentialHashRelatedness,
    ExplicitRelatedness,
)
from .config import VaultConfig, load_master_keys, generate_master_key
from .disclosure import (
    DisclosureEngine,
    DisclosureEnvelope,
    DisclosureResult,
    FieldClass,
    default_classifier,
    encrypt_with_disclosure,
    decrypt_with_disclosure,
)
from .key_rotation import rotate_chain_key, rotate_stored_envelopes

__all__ = [
    "chain_identity",
    "are_related",
    "RelatednessOracle",
    "CredentialHashRelatedness",
    "ExplicitRelatedness",
    "VaultConfig",
    "load_master_keys",
    "generate_master_key",
    "DisclosureEngine",
    "DisclosureEnvelope",
    "DisclosureResult",
    "FieldClass",
    "default_classifier",
    "encrypt_with_disclosure",
    "decrypt_with_disclosure",
    "rotate_chain_key",
    "rotate_stored_envelopes",
]
