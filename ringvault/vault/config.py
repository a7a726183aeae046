"""
Vault Configuration — Master key loading and validated settings.

Reads master keys from environment variables in the format:
    VAULT_MASTER_KEY_v{N} = <base64-encoded 32-byte key>
    VAULT_ACTIVE_KEY_ID = <integer>

Master keys protect the disclosable segment of disclosure envelopes; the
credential itself protects the full payload.

Security Note:
    Never log key material. Only log key IDs and version numbers.
"""
import os
import re
import base64
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..models import RoleScheme, normalize_identifier

logger = logging.getLogger("ringvault")

_KEY_ENV_PATTERN = re.compile(r"^VAULT_MASTER_KEY_v(\d+)$")


def load_master_keys() -> dict[int, bytes]:
    """Load master keys from VAULT_MASTER_KEY_v{N} environment variables.

    Each env var value must be base64-encoded and decode to exactly 32 bytes.

    Returns:
        Mapping of key version (int) to raw 32-byte key.

    Raises:
        RuntimeError: If no master keys are found in the environment.
        ValueError: If a key does not decode to exactly 32 bytes.
    """
    keys: dict[int, bytes] = {}
    for name, value in os.environ.items():
        match = _KEY_ENV_PATTERN.match(name)
        if match:
            version = int(match.group(1))
            key_bytes = base64.b64decode(value)
            if len(key_bytes) != 32:
                raise ValueError(
                    f"{name} must decode to exactly 32 bytes, "
                    f"got {len(key_bytes)}"
                )
            keys[version] = key_bytes
    if not keys:
        raise RuntimeError(
            "No vault master keys found in environment. "
            "Set VAULT_MASTER_KEY_v1=<base64-encoded-32-byte-key>"
        )
    logger.debug("Loaded %d master key version(s): %s", len(keys), sorted(keys.keys()))
    return keys


def get_active_key_id() -> int:
    """Read the active master key version from VAULT_ACTIVE_KEY_ID env var.

    Raises:
        RuntimeError: If VAULT_ACTIVE_KEY_ID is not set.
        ValueError: If the value is not a valid integer.
    """
    raw = os.environ.get("VAULT_ACTIVE_KEY_ID")
    if raw is None:
        raise RuntimeError(
            "VAULT_ACTIVE_KEY_ID environment variable is not set"
        )
    return int(raw)


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return as base64 string.

    This is a utility for operators to generate new keys.
    """
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    master_keys: dict[int, bytes]
    active_key_id: int
    cipher_backend: str = Field(default="aesgcm")
    bootstrap_identifier: Optional[str] = None
    default_scheme: RoleScheme = RoleScheme.SIMPLIFIED
    store_timeout: float = Field(default=5.0, gt=0, le=120)
    chain_id_length: int = Field(default=16, ge=8, le=64)
    audit_queue_size: int = Field(default=1000, ge=1)

    model_config = {"arbitrary_types_allowed": True}

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @field_validator("bootstrap_identifier")
    @classmethod
    def validate_bootstrap(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return normalize_identifier(v)

    @model_validator(mode="after")
    def validate_active_key_exists(self) -> "VaultConfig":
        """Ensure active_key_id is present in master_keys."""
        if self.active_key_id not in self.master_keys:
            raise ValueError(
                f"active_key_id {self.active_key_id} not found in "
                f"master_keys (available: {sorted(self.master_keys.keys())})"
            )
        for version, key in self.master_keys.items():
            if len(key) != 32:
                raise ValueError(f"master key v{version} must be 32 bytes")
        return self

    @property
    def active_master_key(self) -> tuple[int, bytes]:
        """Return the active (key_id, key_bytes) tuple."""
        return self.active_key_id, self.master_keys[self.active_key_id]

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        env = os.environ
        return cls(
            master_keys=load_master_keys(),
            active_key_id=get_active_key_id(),
            cipher_backend=env.get("VAULT_CIPHER_BACKEND", "aesgcm"),
            bootstrap_identifier=env.get("VAULT_BOOTSTRAP_IDENTIFIER"),
            default_scheme=env.get("VAULT_RING_SCHEME", RoleScheme.SIMPLIFIED.value),
            store_timeout=float(env.get("VAULT_STORE_TIMEOUT", "5.0")),
            chain_id_length=int(env.get("VAULT_CHAIN_ID_LENGTH", "16")),
            audit_queue_size=int(env.get("VAULT_AUDIT_QUEUE_SIZE", "1000")),
        )
