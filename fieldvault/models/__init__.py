"""
Document models for the key vault and the protected collection.
"""
from fieldvault.models.customer import (
    CUSTOMER_FIELD_SPECS,
    create_customer_document,
)
from fieldvault.models.data_encryption_key import (
    DataEncryptionKey,
    key_id_from_base64,
    key_id_to_base64,
    key_id_to_uuid,
)

__all__ = [
    "CUSTOMER_FIELD_SPECS",
    "create_customer_document",
    "DataEncryptionKey",
    "key_id_from_base64",
    "key_id_to_base64",
    "key_id_to_uuid",
]
