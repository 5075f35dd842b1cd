"""
Local KMS provider.

Uses a 96-byte master key read from a local file. libmongocrypt wraps each
DEK with this key (AES-256-CBC + HMAC-SHA-512), so the key file is the only
secret needed to unwrap the vault.

This provider is meant for development and demonstrations; production
deployments should use a cloud provider.
"""
from typing import Any, ClassVar, Dict, Literal, Optional

from fieldvault.exceptions import KeyMaterialError
from fieldvault.services.kms_providers.base import KMSProvider
from fieldvault.services.master_key import LOCAL_MASTER_KEY_LENGTH, MasterKeyMaterial


class LocalKMSProvider(KMSProvider):
    """
    Local master key provider.

    The provider itself holds no key bytes; material is supplied per call so
    the caller stays the only owner and can clear it.
    """

    uses_key_material: ClassVar[bool] = True
    key_material_length: ClassVar[Optional[int]] = LOCAL_MASTER_KEY_LENGTH

    provider: Literal["local"] = "local"

    def kms_credentials(self, material: Optional[MasterKeyMaterial] = None) -> Dict[str, Any]:
        if material is None:
            raise KeyMaterialError("Local KMS provider requires master key material")
        if material.is_cleared:
            raise KeyMaterialError("Master key material has already been cleared")
        if len(material) != LOCAL_MASTER_KEY_LENGTH:
            raise KeyMaterialError(
                f"Master key must be exactly {LOCAL_MASTER_KEY_LENGTH} bytes, got {len(material)}"
            )
        return {"local": {"key": bytes(material)}}
