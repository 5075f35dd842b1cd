"""
Abstract base class for KMS providers.

A KMS provider holds the master key (key-encrypting key) that wraps every
Data Encryption Key stored in the key vault. The driver needs two things
from it:

1. Credentials, passed as ``kms_providers`` to ClientEncryption and
   AutoEncryptionOpts
2. A master key document, passed to ``create_data_key`` so the new DEK is
   wrapped under the right key

Each provider is a pydantic model with a literal ``provider`` tag, so the
provider set forms a tagged union and the credential shape is checked per
variant instead of by branching on strings.
"""
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict

from fieldvault.services.master_key import MasterKeyMaterial


class KMSProvider(BaseModel, ABC):
    """
    Abstract base class for KMS providers.

    Thread Safety:
        Providers are frozen models and safe to share between threads.

    Example:
        >>> provider = LocalKMSProvider()
        >>> kms_providers = provider.kms_credentials(material)
        >>> key_id = client_encryption.create_data_key(
        ...     provider.provider, master_key=provider.data_key_master_key()
        ... )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Whether master key material must be read from MASTER_KEY_FILE
    uses_key_material: ClassVar[bool] = False
    key_material_length: ClassVar[Optional[int]] = None

    provider: str

    @abstractmethod
    def kms_credentials(self, material: Optional[MasterKeyMaterial] = None) -> Dict[str, Any]:
        """
        Build the ``kms_providers`` mapping for the driver.

        Args:
            material: Master key material (local provider only)

        Returns:
            Mapping of provider name to provider-specific credentials

        Raises:
            KeyMaterialError: If the provider needs material that is missing or cleared
        """
        pass

    def data_key_master_key(self) -> Optional[Dict[str, Any]]:
        """
        Get the master key document for ``create_data_key``.

        Returns:
            Provider-specific master key document, or None when the provider
            has a single implicit master key
        """
        return None

    def get_provider_version(self) -> str:
        """Return the provider version string recorded in logs."""
        return f"{self.provider}-v1"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} version={self.get_provider_version()}>"
