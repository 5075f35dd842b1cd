"""
Pydantic schemas for fieldvault.
"""
from fieldvault.schemas.encryption import EncryptionAlgorithmName, FieldSpec

__all__ = [
    "EncryptionAlgorithmName",
    "FieldSpec",
]
