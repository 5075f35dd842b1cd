"""
Round trip verification for a freshly configured encrypted client.

Writes a document through the encrypted client, reads it back, then reads
the same document through a plain client to confirm every protected field
is stored as opaque ciphertext.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from fieldvault.services.client_factory import (
    EncryptedClientHandle,
    PlainClientHandle,
    get_path,
    is_encrypted_value,
)
from fieldvault.services.schema_builder import EncryptionSchema
from fieldvault.utils.logger import get_logger

logger = get_logger("clients.verification")


@dataclass(frozen=True)
class VerificationReport:
    """
    Outcome of one verification round trip.

    Attributes:
        document_id: _id of the inserted document
        round_trip_ok: Every protected field read back as its original value
        deterministic_query_ok: Equality queries on deterministic fields
            matched through the encrypted client
        opaque_fields: Path -> stored value is ciphertext that neither equals
            nor contains the plaintext
        plaintext_query_matched: A plain-client query by a plaintext
            deterministic value matched the document (must be False)
    """

    document_id: Any
    round_trip_ok: bool
    deterministic_query_ok: bool
    opaque_fields: Dict[str, bool] = field(default_factory=dict)
    plaintext_query_matched: bool = False

    @property
    def passed(self) -> bool:
        return (
            self.round_trip_ok
            and self.deterministic_query_ok
            and bool(self.opaque_fields)
            and all(self.opaque_fields.values())
            and not self.plaintext_query_matched
        )


def _plaintext_bytes(value: Any) -> Optional[bytes]:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, bytes):
        return value
    if isinstance(value, (int, float)):
        return str(value).encode("utf-8")
    return None


def is_opaque(stored: Any, plaintext: Any) -> bool:
    """Check a stored value is ciphertext unrelated to its plaintext."""
    if not is_encrypted_value(stored):
        return False
    if stored == plaintext:
        return False
    needle = _plaintext_bytes(plaintext)
    if needle and needle in bytes(stored):
        return False
    return True


def verify_round_trip(
    encrypted: EncryptedClientHandle,
    plain: PlainClientHandle,
    schema: EncryptionSchema,
    document: Mapping[str, Any],
) -> VerificationReport:
    """
    Insert a document through the encrypted client and inspect it both ways.

    Args:
        encrypted: Encrypted client handle
        plain: Plain client handle on the same collection
        schema: Schema the encrypted client was built with
        document: Document containing every protected field

    Returns:
        VerificationReport

    Raises:
        CryptoAgentUnavailable: If the crypto agent is unreachable
        PyMongoError: On any other database failure
    """
    original = dict(document)
    document_id = encrypted.insert_one(original)
    logger.debug("Inserted verification document", document_id=str(document_id))

    fetched = encrypted.find_one({"_id": document_id}) or {}
    round_trip_ok = all(
        get_path(fetched, path) == get_path(original, path)
        for path in schema.protected_paths
    )

    # Deterministic fields stay queryable through the encrypted client
    deterministic_query_ok = True
    for path in schema.deterministic_paths:
        match = encrypted.find_one({"_id": document_id, path: get_path(original, path)})
        if match is None:
            deterministic_query_ok = False

    stored = plain.raw_fields(document_id, schema.protected_paths)
    opaque_fields = {
        path: is_opaque(stored[path], get_path(original, path))
        for path in schema.protected_paths
    }

    plaintext_query_matched = False
    for path in schema.deterministic_paths:
        if plain.find_one({"_id": document_id, path: get_path(original, path)}) is not None:
            plaintext_query_matched = True

    report = VerificationReport(
        document_id=document_id,
        round_trip_ok=round_trip_ok,
        deterministic_query_ok=deterministic_query_ok,
        opaque_fields=opaque_fields,
        plaintext_query_matched=plaintext_query_matched,
    )

    log = logger.info if report.passed else logger.warning
    log(
        "Verification round trip finished",
        document_id=str(document_id),
        passed=report.passed,
        round_trip_ok=round_trip_ok,
        opaque=",".join(path for path, ok in opaque_fields.items() if ok),
    )
    return report
