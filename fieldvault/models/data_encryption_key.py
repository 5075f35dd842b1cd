"""
Read model for Data Encryption Keys (DEKs) stored in the key vault.

The vault document format is owned by libmongocrypt:

    {
        "_id": Binary(<uuid>, 4),
        "keyAltNames": ["<alt name>"],
        "keyMaterial": Binary(<wrapped DEK>, 0),
        "creationDate": datetime,
        "updateDate": datetime,
        "status": 0,
        "masterKey": {"provider": "local", ...}
    }

Documents are created once per alternate name and never modified by this
package; destruction is an administrative action outside its scope.
"""
import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional

from bson.binary import UUID_SUBTYPE, Binary, UuidRepresentation


def key_id_to_base64(key_id: Binary) -> str:
    """Render a key id the way mongosh and the driver docs show it."""
    return base64.b64encode(bytes(key_id)).decode("ascii")


def key_id_from_base64(value: str) -> Binary:
    """Parse a base64 key id back into a UUID-subtype Binary."""
    raw = base64.b64decode(value, validate=True)
    if len(raw) != 16:
        raise ValueError(f"Key id must decode to 16 bytes, got {len(raw)}")
    return Binary(raw, UUID_SUBTYPE)


def as_key_id(value: Any) -> Any:
    """
    Normalize a key id read from the vault to a UUID-subtype Binary.

    A collection read with the standard UUID representation decodes the
    subtype 4 `_id` as uuid.UUID. Other values are returned unchanged.
    """
    if isinstance(value, uuid.UUID):
        return Binary.from_uuid(value, UuidRepresentation.STANDARD)
    return value


def key_id_to_uuid(key_id: Binary) -> uuid.UUID:
    """Convert a UUID-subtype Binary key id to a uuid.UUID."""
    return uuid.UUID(bytes=bytes(key_id))


@dataclass(frozen=True)
class DataEncryptionKey:
    """
    Data Encryption Key record from the key vault.

    Attributes:
        id: Key id (UUID-subtype Binary)
        key_alt_names: Alternate names; unique across the vault
        kms_provider: Provider tag of the master key that wraps this DEK
        key_material: Wrapped DEK bytes
        creation_date: Key creation timestamp
        update_date: Last update timestamp
        status: libmongocrypt key status (0 = active)
        master_key: Provider-specific master key document
    """

    id: Binary
    key_alt_names: List[str] = field(default_factory=list)
    kms_provider: Optional[str] = None
    key_material: bytes = field(default=b"", repr=False)
    creation_date: Optional[datetime] = None
    update_date: Optional[datetime] = None
    status: int = 0
    master_key: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "DataEncryptionKey":
        """Build a record from a raw key vault document."""
        master_key = dict(document.get("masterKey") or {})
        return cls(
            id=as_key_id(document["_id"]),
            key_alt_names=list(document.get("keyAltNames") or []),
            kms_provider=master_key.get("provider"),
            key_material=bytes(document.get("keyMaterial") or b""),
            creation_date=document.get("creationDate"),
            update_date=document.get("updateDate"),
            status=document.get("status", 0),
            master_key=master_key,
        )

    @property
    def key_id_base64(self) -> str:
        """Key id in base64 form, safe to log."""
        return key_id_to_base64(self.id)

    @property
    def is_active(self) -> bool:
        """Check if this DEK is active."""
        return self.status == 0

    def __repr__(self) -> str:
        return (
            f"<DataEncryptionKey id={self.key_id_base64} "
            f"alt_names={self.key_alt_names} "
            f"provider={self.kms_provider}>"
        )
