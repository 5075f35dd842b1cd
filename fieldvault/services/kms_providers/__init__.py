"""
KMS providers package.

Provides the master key (key-encrypting key) providers that wrap DEKs.
Each provider implements the KMSProvider ABC; together they form the
``KMSProviderConfig`` tagged union, discriminated on ``provider``.

Available providers:
- LocalKMSProvider: 96-byte master key file
- AWSKMSProvider: AWS KMS customer master key
- AzureKMSProvider: Azure Key Vault key
- GCPKMSProvider: Google Cloud KMS key
"""
from typing import TYPE_CHECKING, Annotated, Any, Callable, Dict, Union

from pydantic import Field, TypeAdapter, ValidationError

from fieldvault.exceptions import ConfigError
from fieldvault.services.kms_providers.base import KMSProvider
from fieldvault.services.kms_providers.cloud import (
    AWSKMSProvider,
    AzureKMSProvider,
    GCPKMSProvider,
)
from fieldvault.services.kms_providers.local import LocalKMSProvider

if TYPE_CHECKING:
    from fieldvault.config import Settings


KMSProviderConfig = Annotated[
    Union[LocalKMSProvider, AWSKMSProvider, AzureKMSProvider, GCPKMSProvider],
    Field(discriminator="provider"),
]

_KMS_PROVIDER_ADAPTER = TypeAdapter(KMSProviderConfig)


def _local_payload(settings: "Settings") -> Dict[str, Any]:
    return {"provider": "local"}


def _aws_payload(settings: "Settings") -> Dict[str, Any]:
    return {
        "provider": "aws",
        "access_key_id": settings.AWS_ACCESS_KEY_ID,
        "secret_access_key": settings.AWS_SECRET_ACCESS_KEY,
        "session_token": settings.AWS_SESSION_TOKEN,
        "region": settings.AWS_KMS_REGION,
        "key_arn": settings.AWS_KMS_KEY_ARN,
        "endpoint": settings.AWS_KMS_ENDPOINT,
    }


def _azure_payload(settings: "Settings") -> Dict[str, Any]:
    return {
        "provider": "azure",
        "tenant_id": settings.AZURE_TENANT_ID,
        "client_id": settings.AZURE_CLIENT_ID,
        "client_secret": settings.AZURE_CLIENT_SECRET,
        "key_vault_endpoint": settings.AZURE_KEY_VAULT_ENDPOINT,
        "key_name": settings.AZURE_KEY_NAME,
        "key_version": settings.AZURE_KEY_VERSION,
    }


def _gcp_payload(settings: "Settings") -> Dict[str, Any]:
    return {
        "provider": "gcp",
        "email": settings.GCP_EMAIL,
        "private_key": settings.GCP_PRIVATE_KEY,
        "project_id": settings.GCP_PROJECT_ID,
        "location": settings.GCP_LOCATION,
        "key_ring": settings.GCP_KEY_RING,
        "key_name": settings.GCP_KEY_NAME,
        "key_version": settings.GCP_KEY_VERSION,
    }


# Provider tag -> settings payload builder
KMS_PROVIDER_PAYLOADS: Dict[str, Callable[["Settings"], Dict[str, Any]]] = {
    "local": _local_payload,
    "aws": _aws_payload,
    "azure": _azure_payload,
    "gcp": _gcp_payload,
}


def parse_kms_provider(payload: Dict[str, Any]) -> KMSProvider:
    """
    Validate a provider payload against the tagged union.

    Raises:
        ConfigError: If the tag is unknown or the credentials are incomplete
    """
    try:
        return _KMS_PROVIDER_ADAPTER.validate_python(payload)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in error["loc"][1:]) for error in e.errors()})
        raise ConfigError(
            f"Invalid KMS provider configuration for "
            f"'{payload.get('provider')}': {', '.join(f for f in fields if f) or 'provider'}"
        ) from e


def create_kms_provider(settings: "Settings") -> KMSProvider:
    """
    Factory function to create the configured KMS provider.

    Args:
        settings: Loaded settings (KMS_PROVIDER selects the variant)

    Returns:
        Configured KMSProvider

    Raises:
        ConfigError: If the provider is not supported or misconfigured

    Example:
        >>> provider = create_kms_provider(settings)
        >>> provider.provider
        'local'
    """
    tag = settings.KMS_PROVIDER.lower()
    builder = KMS_PROVIDER_PAYLOADS.get(tag)
    if builder is None:
        raise ConfigError(
            f"Unsupported KMS provider: {tag} "
            f"(expected one of: {', '.join(sorted(KMS_PROVIDER_PAYLOADS))})"
        )

    payload = {key: value for key, value in builder(settings).items() if value is not None}
    return parse_kms_provider(payload)


__all__ = [
    "KMSProvider",
    "KMSProviderConfig",
    "LocalKMSProvider",
    "AWSKMSProvider",
    "AzureKMSProvider",
    "GCPKMSProvider",
    "create_kms_provider",
    "parse_kms_provider",
]
