"""
Key Vault Manager for Data Encryption Key (DEK) lifecycle.

Finds or provisions the DEK identified by an alternate name in the key vault
collection:

- find_key: lookup by alternate name
- ensure_index: unique partial index on keyAltNames (idempotent)
- create_key: wrap a fresh DEK under the master key and persist it
- provision_key: create_key that also reports whether this caller created it

Concurrency:
    Lookup and creation are not atomic. The unique index on keyAltNames is
    the only serialization point between processes racing to provision the
    same key: the loser gets a duplicate key error, re-runs the lookup and
    adopts the winner's id.

Usage:
    manager = KeyVaultManager(vault_client["encryption"]["__keyVault"])

    key_id = manager.find_key("demo-data-key")
    if key_id is None:
        manager.ensure_index()
        key_id = manager.create_key(kms_provider, material, "demo-data-key")
"""
from typing import Any, Callable, Optional, Tuple

from bson.binary import Binary, UuidRepresentation
from bson.codec_options import CodecOptions
from pymongo import ASCENDING
from pymongo.collection import Collection
from pymongo.encryption import ClientEncryption
from pymongo.errors import DuplicateKeyError, EncryptionError, OperationFailure, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from fieldvault.exceptions import KeyLookupError, KeyProvisioningError
from fieldvault.models.data_encryption_key import DataEncryptionKey, as_key_id, key_id_to_base64
from fieldvault.services.kms_providers.base import KMSProvider
from fieldvault.services.master_key import MasterKeyMaterial
from fieldvault.utils.logger import get_logger

logger = get_logger("keys.vault")

# Constants
ALT_NAME_FIELD = "keyAltNames"
ALT_NAME_INDEX = "keyAltNames_1"
DUPLICATE_KEY_CODE = 11000
# IndexAlreadyExists, IndexOptionsConflict, IndexKeySpecsConflict
INDEX_CONFLICT_CODES = frozenset({68, 85, 86})

KEY_VAULT_CODEC_OPTIONS = CodecOptions(uuid_representation=UuidRepresentation.STANDARD)

ClientEncryptionFactory = Callable[..., Any]


def key_vault_collection(client: Any, key_db: str, key_collection: str) -> Collection:
    """
    Get the key vault collection with majority read and write concern.

    Args:
        client: MongoClient connected to the vault cluster
        key_db: Key vault database name
        key_collection: Key vault collection name

    Returns:
        Collection configured for key vault access
    """
    return client[key_db][key_collection].with_options(
        codec_options=KEY_VAULT_CODEC_OPTIONS,
        read_concern=ReadConcern("majority"),
        write_concern=WriteConcern("majority"),
    )


def _is_duplicate_key_error(error: BaseException) -> bool:
    """Check an error (and any wrapped cause) for a duplicate key violation."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, DuplicateKeyError):
            return True
        if isinstance(current, OperationFailure) and current.code == DUPLICATE_KEY_CODE:
            return True
        if isinstance(current, EncryptionError):
            current = current.cause
        else:
            current = current.__cause__
    return False


class KeyVaultManager:
    """
    Finds and provisions DEKs in a key vault collection.

    Thread Safety:
        Safe to share between threads; all state lives in the vault. Racing
        creators in separate processes converge on one key id.

    Example:
        >>> manager = KeyVaultManager(key_vault_collection(client, "encryption", "__keyVault"))
        >>> manager.find_key("demo-data-key") is None
        True
    """

    def __init__(
        self,
        key_vault: Collection,
        client_encryption_factory: ClientEncryptionFactory = ClientEncryption,
    ):
        """
        Initialize with the vault collection.

        Args:
            key_vault: Key vault collection (see key_vault_collection)
            client_encryption_factory: Callable with the ClientEncryption
                signature, used to create data keys
        """
        self.key_vault = key_vault
        self._client_encryption_factory = client_encryption_factory

    @property
    def namespace(self) -> str:
        """Key vault namespace in "<db>.<collection>" form."""
        return self.key_vault.full_name

    # =========================================================================
    # Lookup
    # =========================================================================

    def find_key(self, alt_name: str) -> Optional[Binary]:
        """
        Find the DEK id for an alternate name.

        Args:
            alt_name: Key alternate name

        Returns:
            Key id, or None if no DEK has this alternate name

        Raises:
            KeyLookupError: If the vault cannot be queried
        """
        document = self._find_one(alt_name, projection={"_id": 1})
        if document is None:
            logger.debug("Key not found", alt_name=alt_name, namespace=self.namespace)
            return None

        key_id = as_key_id(document["_id"])
        logger.debug("Found key", alt_name=alt_name, key_id=key_id_to_base64(key_id))
        return key_id

    def get_key(self, alt_name: str) -> Optional[DataEncryptionKey]:
        """
        Get DEK metadata without unwrapping it.

        Args:
            alt_name: Key alternate name

        Returns:
            DataEncryptionKey record or None if not found

        Raises:
            KeyLookupError: If the vault cannot be queried
        """
        document = self._find_one(alt_name)
        if document is None:
            return None
        return DataEncryptionKey.from_document(document)

    def _find_one(self, alt_name: str, projection: Optional[dict] = None) -> Optional[dict]:
        if not alt_name:
            raise ValueError("Key alternate name cannot be empty")

        try:
            return self.key_vault.find_one({ALT_NAME_FIELD: alt_name}, projection)
        except PyMongoError as e:
            logger.error(
                "Failed to query key vault",
                alt_name=alt_name,
                namespace=self.namespace,
                error=str(e),
            )
            raise KeyLookupError(f"Failed to query key vault {self.namespace}: {e}") from e

    # =========================================================================
    # Provisioning
    # =========================================================================

    def ensure_index(self) -> None:
        """
        Create the unique index on key alternate names if absent.

        An index conflict counts as success only if a unique index on
        keyAltNames already exists, under any name or options.

        Raises:
            KeyProvisioningError: If the index cannot be created, or a
                conflicting index leaves alternate names without a unique
                constraint
        """
        try:
            self.key_vault.create_index(
                [(ALT_NAME_FIELD, ASCENDING)],
                name=ALT_NAME_INDEX,
                unique=True,
                partialFilterExpression={ALT_NAME_FIELD: {"$exists": True}},
            )
        except OperationFailure as e:
            if e.code in INDEX_CONFLICT_CODES:
                if self._has_unique_alt_name_index():
                    logger.debug(
                        "Unique key vault index already exists",
                        namespace=self.namespace,
                        code=e.code,
                    )
                    return
                logger.error(
                    "Conflicting key vault index is not unique",
                    namespace=self.namespace,
                    code=e.code,
                )
                raise KeyProvisioningError(
                    f"An index conflicting with {ALT_NAME_INDEX} exists on {self.namespace} "
                    f"and no unique index on {ALT_NAME_FIELD} was found: {e}",
                    cause=e,
                ) from e
            logger.error("Failed to create key vault index", namespace=self.namespace, error=str(e))
            raise KeyProvisioningError(
                f"Failed to create key vault index on {self.namespace}: {e}", cause=e
            ) from e
        except PyMongoError as e:
            logger.error("Failed to create key vault index", namespace=self.namespace, error=str(e))
            raise KeyProvisioningError(
                f"Failed to create key vault index on {self.namespace}: {e}", cause=e
            ) from e

        logger.debug("Ensured key vault index", namespace=self.namespace, index=ALT_NAME_INDEX)

    def _has_unique_alt_name_index(self) -> bool:
        """Check for a unique index keyed on keyAltNames alone."""
        try:
            indexes = self.key_vault.index_information()
        except PyMongoError as e:
            logger.error("Failed to list key vault indexes", namespace=self.namespace, error=str(e))
            raise KeyProvisioningError(
                f"Failed to list indexes on {self.namespace}: {e}", cause=e
            ) from e

        for info in indexes.values():
            fields = [field for field, _ in info.get("key", [])]
            if fields == [ALT_NAME_FIELD] and info.get("unique"):
                return True
        return False

    def create_key(
        self,
        kms_provider: KMSProvider,
        material: Optional[MasterKeyMaterial],
        alt_name: str,
    ) -> Binary:
        """
        Create a DEK wrapped under the provider's master key.

        Call only after find_key returned None. If another creator wins the
        race, the winner's id is returned instead of an error.

        Args:
            kms_provider: Provider holding the master key
            material: Master key material (local provider only)
            alt_name: Alternate name for the new key

        Returns:
            Id of the created (or concurrently created) key

        Raises:
            KeyMaterialError: If the provider needs material that is missing
            KeyProvisioningError: If the KMS or vault rejects the key
        """
        key_id, _ = self.provision_key(kms_provider, material, alt_name)
        return key_id

    def provision_key(
        self,
        kms_provider: KMSProvider,
        material: Optional[MasterKeyMaterial],
        alt_name: str,
    ) -> Tuple[Binary, bool]:
        """
        Same as create_key, also returning False when a concurrent creator won.

        Returns:
            Tuple of (key id, created by this call)
        """
        if not alt_name:
            raise ValueError("Key alternate name cannot be empty")

        kms_credentials = kms_provider.kms_credentials(material)

        try:
            with self._client_encryption_factory(
                kms_credentials,
                self.namespace,
                self.key_vault.database.client,
                KEY_VAULT_CODEC_OPTIONS,
            ) as client_encryption:
                key_id = as_key_id(client_encryption.create_data_key(
                    kms_provider.provider,
                    master_key=kms_provider.data_key_master_key(),
                    key_alt_names=[alt_name],
                ))
        except PyMongoError as e:
            if _is_duplicate_key_error(e):
                return self._adopt_existing_key(alt_name, e), False

            logger.error(
                "Failed to create DEK",
                alt_name=alt_name,
                provider=kms_provider.get_provider_version(),
                error=str(e),
            )
            raise KeyProvisioningError(f"Failed to create DEK '{alt_name}': {e}", cause=e) from e

        logger.info(
            "Created DEK",
            alt_name=alt_name,
            key_id=key_id_to_base64(key_id),
            provider=kms_provider.get_provider_version(),
        )
        return key_id, True

    def _adopt_existing_key(self, alt_name: str, conflict: PyMongoError) -> Binary:
        """Resolve the key created by a concurrent winner."""
        logger.info("DEK created concurrently, adopting existing key", alt_name=alt_name)

        try:
            key_id = self.find_key(alt_name)
        except KeyLookupError as e:
            raise KeyProvisioningError(
                f"DEK '{alt_name}' conflicted but the existing key could not be read: {e}",
                cause=e,
            ) from e

        if key_id is None:
            raise KeyProvisioningError(
                f"DEK '{alt_name}' conflicted but no existing key was found",
                cause=conflict,
            ) from conflict
        return key_id
