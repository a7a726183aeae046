"""
Vault Crypto Core — Key derivation, AEAD sealing, and serialization.

Two sealing layouts are used by disclosure envelopes:
- Credential layer: HKDF(credential, "vault-disclosure-exact") → AEAD → [nonce|payload]
- Chain layer: HKDF(MASTER_KEY_vN, "vault-chain-vN:<chain_id>") → AEAD → [key_id|nonce|payload]

Security Note:
    Never log plaintext, ciphertext or credentials.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import struct
import base64
import logging
from typing import Any, Optional

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import CryptoFailure

logger = logging.getLogger("ringvault")

NONCE_SIZE = 12  # 96-bit nonce
KEY_ID_SIZE = 2  # uint16 big-endian
KEY_LENGTH = 32  # AES-256
TAG_SIZE = 16

_BYTES_WRAPPER_KEY = "__vault_bytes_b64__"

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


def cipher_class(backend: str = "aesgcm") -> type:
    """Return the AEAD cipher class for a configured backend name."""
    try:
        return _CIPHERS[backend.lower()]
    except KeyError:
        raise ValueError(f"Unsupported cipher backend: {backend}") from None


def as_bytes(credential: Any) -> bytes:
    """Credentials arrive as str tokens or raw bytes."""
    if isinstance(credential, (bytes, bytearray, memoryview)):
        return bytes(credential)
    if isinstance(credential, str):
        return credential.encode("utf-8")
    raise TypeError(f"credential must be str or bytes, not {type(credential).__name__}")


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    Args:
        seed: Input key material (master key bytes or credential bytes).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic: the same credential must re-derive the key
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


# ---------------------------------------------------------------------------
# Credential layer
# ---------------------------------------------------------------------------

def seal(
    plaintext: bytes,
    key: bytes,
    aad: Optional[bytes] = None,
    backend: str = "aesgcm",
) -> tuple[bytes, bytes]:
    """Encrypt with a fresh nonce.

    Returns:
        Tuple of (nonce, ciphertext_with_tag).
    """
    cipher = cipher_class(backend)(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce, cipher.encrypt(nonce, plaintext, aad)


def open_sealed(
    nonce: bytes,
    ciphertext: bytes,
    key: bytes,
    aad: Optional[bytes] = None,
    backend: str = "aesgcm",
) -> bytes:
    """Decrypt and authenticate.

    Raises:
        CryptoFailure: On a wrong key, tampered data or malformed input.
    """
    if len(nonce) != NONCE_SIZE or len(ciphertext) < TAG_SIZE:
        raise CryptoFailure()
    cipher = cipher_class(backend)(key)
    try:
        return cipher.decrypt(nonce, ciphertext, aad)
    except InvalidTag:
        raise CryptoFailure() from None


# ---------------------------------------------------------------------------
# Chain layer (master-key versioned)
# ---------------------------------------------------------------------------

def chain_context(key_id: int, chain_id: str) -> str:
    return f"vault-chain-v{key_id}:{chain_id}"


def encrypt_for_chain(
    plaintext: bytes,
    chain_id: str,
    key_id: int,
    master_key: bytes,
    aad: Optional[bytes] = None,
    backend: str = "aesgcm",
) -> bytes:
    """Encrypt plaintext for a key chain with embedded key version.

    Format: [key_id 2B uint16 BE][nonce 12B][encrypted_payload + tag]
    """
    derived = derive_key(master_key, chain_context(key_id, chain_id))
    nonce, ct = seal(plaintext, derived, aad, backend)
    return struct.pack("!H", key_id) + nonce + ct


def chain_key_id(segment: bytes) -> int:
    """Read the master key version embedded in a chain segment."""
    if len(segment) < KEY_ID_SIZE:
        raise CryptoFailure()
    return struct.unpack("!H", segment[:KEY_ID_SIZE])[0]


def decrypt_for_chain(
    segment: bytes,
    chain_id: str,
    master_keys: dict[int, bytes],
    aad: Optional[bytes] = None,
    backend: str = "aesgcm",
) -> bytes:
    """Decrypt a chain segment using its embedded key version.

    Raises:
        CryptoFailure: If the version is unknown or authentication fails.
    """
    _min = KEY_ID_SIZE + NONCE_SIZE + TAG_SIZE
    if len(segment) < _min:
        raise CryptoFailure()
    key_id = chain_key_id(segment)
    master_key = master_keys.get(key_id)
    if master_key is None:
        logger.warning("Chain segment references unknown master key v%d", key_id)
        raise CryptoFailure()
    derived = derive_key(master_key, chain_context(key_id, chain_id))
    nonce = segment[KEY_ID_SIZE:KEY_ID_SIZE + NONCE_SIZE]
    ct = segment[KEY_ID_SIZE + NONCE_SIZE:]
    return open_sealed(nonce, ct, derived, aad, backend)


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def canonical_bytes(value: Any) -> bytes:
    """Deterministic JSON used as AEAD associated data."""
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS)


def serialize_value(value: Any) -> bytes:
    """Serialize a Python value to bytes for encryption.

    Supports: str, int, float, dict, list, bytes, bool, None.
    bytes values are wrapped as {"__vault_bytes_b64__": "<base64>"} for a safe
    JSON round-trip.
    """
    if isinstance(value, bytes):
        wrapped = {_BYTES_WRAPPER_KEY: base64.b64encode(value).decode("ascii")}
        return orjson.dumps(wrapped)
    return orjson.dumps(value)


def deserialize_value(data: bytes) -> Any:
    """Deserialize bytes back to a Python value."""
    parsed = orjson.loads(data)
    if isinstance(parsed, dict) and _BYTES_WRAPPER_KEY in parsed and len(parsed) == 1:
        return base64.b64decode(parsed[_BYTES_WRAPPER_KEY])
    return parsed


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))
