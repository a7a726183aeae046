"""
Vault Key Rotation — Re-sealing disclosable segments under a new master key.

Only the chain segment of a disclosure envelope depends on a master key; the
credential-sealed payload is untouched. Rotation produces a new envelope since
envelopes are immutable. The batch variant walks envelopes stored as JSON
documents under a key prefix and commits each one with compare-and-set, so a
concurrent writer causes that envelope to be reported as an error rather than
overwritten. The operation is idempotent: envelopes already at the target
version are skipped.

Security Note:
    Disclosable plaintext exists in memory only while a segment is re-sealed.
    Never log plaintext or ciphertext values.
"""
import logging

import orjson

from ..exceptions import CryptoFailure
from ..store import DocumentStore, bounded
from .crypto import chain_key_id, decrypt_for_chain, encrypt_for_chain
from .disclosure import DisclosureEnvelope

logger = logging.getLogger("ringvault")


def rotate_chain_key(
    envelope: DisclosureEnvelope,
    master_keys: dict[int, bytes],
    new_key_id: int,
) -> DisclosureEnvelope:
    """Return a copy of ``envelope`` whose chain segment uses ``new_key_id``.

    Raises:
        KeyError: If new_key_id is not in master_keys.
        CryptoFailure: If the current segment cannot be opened.
    """
    if new_key_id not in master_keys:
        raise KeyError(
            f"New key version {new_key_id} not found in master_keys"
        )
    if not envelope.disclosable_segment:
        return envelope
    if chain_key_id(envelope.disclosable_segment) == new_key_id:
        return envelope
    backend = envelope.metadata.get("cipher", "aesgcm")
    aad = envelope.associated_data()
    plaintext = decrypt_for_chain(
        envelope.disclosable_segment, envelope.chain_id, master_keys, aad, backend,
    )
    segment = encrypt_for_chain(
        plaintext,
        envelope.chain_id,
        new_key_id,
        master_keys[new_key_id],
        aad,
        backend,
    )
    return envelope.model_copy(update={"disclosable_segment": segment})


async def rotate_stored_envelopes(
    store: DocumentStore,
    prefix: str,
    old_key_id: int,
    new_key_id: int,
    master_keys: dict[int, bytes],
    batch_size: int = 100,
    timeout: float = 5.0,
) -> dict:
    """Re-seal every stored envelope from old_key_id to new_key_id.

    Args:
        store: Document store holding envelopes as ``DisclosureEnvelope.to_dict``
            JSON documents.
        prefix: Key prefix the envelopes live under.
        old_key_id: Source key version to rotate from.
        new_key_id: Target key version to rotate to.
        master_keys: Mapping of all key versions to raw 32-byte keys.
        batch_size: Number of documents processed between progress logs.
        timeout: Deadline for each store call.

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.

    Raises:
        KeyError: If old_key_id or new_key_id is not in master_keys.
    """
    if old_key_id not in master_keys:
        raise KeyError(
            f"Old key version {old_key_id} not found in master_keys"
        )
    if new_key_id not in master_keys:
        raise KeyError(
            f"New key version {new_key_id} not found in master_keys"
        )

    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}
    logger.info(
        "Starting chain key rotation from v%d to v%d (batch_size=%d)",
        old_key_id, new_key_id, batch_size,
    )

    names = await bounded(store.scan(prefix), timeout, "scan")
    for offset in range(0, len(names), batch_size):
        batch = names[offset:offset + batch_size]
        logger.info(
            "Processing batch %d (%d envelopes)",
            (offset // batch_size) + 1, len(batch),
        )
        for name in batch:
            stats["total"] += 1
            try:
                doc = await bounded(store.get(name), timeout, "get")
                if doc is None:
                    stats["skipped"] += 1
                    continue
                envelope = DisclosureEnvelope.from_dict(orjson.loads(doc.data))
                segment = envelope.disclosable_segment
                if not segment or chain_key_id(segment) != old_key_id:
                    stats["skipped"] += 1
                    continue
                rotated = rotate_chain_key(envelope, master_keys, new_key_id)
                written = await bounded(
                    store.compare_and_set(
                        name, doc.version, orjson.dumps(rotated.to_dict()),
                    ),
                    timeout,
                    "compare_and_set",
                )
                if not written:
                    logger.error("Envelope %s changed during rotation", name)
                    stats["errors"] += 1
                    continue
                stats["rotated"] += 1
            except (CryptoFailure, KeyError, ValueError) as err:
                logger.error("Error rotating envelope %s: %s", name, err)
                stats["errors"] += 1

    logger.info("Chain key rotation complete: %s", stats)
    return stats
