"""
Exception taxonomy for key lifecycle and encrypted client bootstrap.

Fatal before any database operation:
- ConfigError
- KeyMaterialError

Raised by the key vault:
- KeyLookupError (retried once by the orchestrator)
- KeyProvisioningError (wraps the KMS or vault cause)

Raised while building the encrypted client:
- SchemaBuildError
- ClientConstructionError
- CryptoAgentUnavailable (fail closed, never downgraded to plaintext)
"""
from typing import Optional


class FieldVaultError(Exception):
    """Base exception for all fieldvault errors."""

    pass


class ConfigError(FieldVaultError):
    """Raised when a required configuration value is missing or empty."""

    pass


class KeyMaterialError(FieldVaultError):
    """Raised when master key material is unreadable, empty or the wrong length."""

    pass


class KeyLookupError(FieldVaultError):
    """Raised when the key vault cannot be queried."""

    pass


class KeyProvisioningError(FieldVaultError):
    """Raised when a data encryption key cannot be created."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SchemaBuildError(FieldVaultError):
    """Raised when a field spec cannot be turned into an encryption schema entry."""

    pass


class ClientConstructionError(FieldVaultError):
    """Raised when a database client cannot be constructed."""

    pass


class CryptoAgentUnavailable(FieldVaultError):
    """Raised when the crypto companion agent cannot be reached."""

    pass


__all__ = [
    "FieldVaultError",
    "ConfigError",
    "KeyMaterialError",
    "KeyLookupError",
    "KeyProvisioningError",
    "SchemaBuildError",
    "ClientConstructionError",
    "CryptoAgentUnavailable",
]
