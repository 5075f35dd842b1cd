"""
Cloud KMS providers (AWS, Azure, GCP).

The master key never leaves the cloud KMS; the driver sends DEKs to the KMS
for wrapping and unwrapping using the credentials configured here.
"""
from typing import Any, Dict, Literal, Optional

from pydantic import SecretStr

from fieldvault.services.kms_providers.base import KMSProvider
from fieldvault.services.master_key import MasterKeyMaterial


class AWSKMSProvider(KMSProvider):
    """AWS KMS customer master key."""

    provider: Literal["aws"] = "aws"
    access_key_id: str
    secret_access_key: SecretStr
    session_token: Optional[SecretStr] = None
    region: str
    key_arn: str
    endpoint: Optional[str] = None

    def kms_credentials(self, material: Optional[MasterKeyMaterial] = None) -> Dict[str, Any]:
        credentials = {
            "accessKeyId": self.access_key_id,
            "secretAccessKey": self.secret_access_key.get_secret_value(),
        }
        if self.session_token is not None:
            credentials["sessionToken"] = self.session_token.get_secret_value()
        return {"aws": credentials}

    def data_key_master_key(self) -> Optional[Dict[str, Any]]:
        master_key = {"region": self.region, "key": self.key_arn}
        if self.endpoint:
            master_key["endpoint"] = self.endpoint
        return master_key


class AzureKMSProvider(KMSProvider):
    """Azure Key Vault key."""

    provider: Literal["azure"] = "azure"
    tenant_id: str
    client_id: str
    client_secret: SecretStr
    key_vault_endpoint: str
    key_name: str
    key_version: Optional[str] = None

    def kms_credentials(self, material: Optional[MasterKeyMaterial] = None) -> Dict[str, Any]:
        return {
            "azure": {
                "tenantId": self.tenant_id,
                "clientId": self.client_id,
                "clientSecret": self.client_secret.get_secret_value(),
            }
        }

    def data_key_master_key(self) -> Optional[Dict[str, Any]]:
        master_key = {"keyVaultEndpoint": self.key_vault_endpoint, "keyName": self.key_name}
        if self.key_version:
            master_key["keyVersion"] = self.key_version
        return master_key


class GCPKMSProvider(KMSProvider):
    """Google Cloud KMS key."""

    provider: Literal["gcp"] = "gcp"
    email: str
    private_key: SecretStr  # base64-encoded service account key
    project_id: str
    location: str
    key_ring: str
    key_name: str
    key_version: Optional[str] = None

    def kms_credentials(self, material: Optional[MasterKeyMaterial] = None) -> Dict[str, Any]:
        return {
            "gcp": {
                "email": self.email,
                "privateKey": self.private_key.get_secret_value(),
            }
        }

    def data_key_master_key(self) -> Optional[Dict[str, Any]]:
        master_key = {
            "projectId": self.project_id,
            "location": self.location,
            "keyRing": self.key_ring,
            "keyName": self.key_name,
        }
        if self.key_version:
            master_key["keyVersion"] = self.key_version
        return master_key
