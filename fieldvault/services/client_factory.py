"""
Encrypted and plain client construction.

The encrypted client encrypts every field named in the schema before it
leaves the process and decrypts matching fields on read. It depends on a
crypto companion agent (mongocryptd, or the crypt_shared library) to
analyze commands against the schema. If the agent is unavailable the
factory fails closed: no client is built, and writes that hit an
unreachable agent raise CryptoAgentUnavailable instead of going out in
plaintext.

The plain client is for verification only. Its handle is read-only.

Both handles own a MongoClient and must be closed; use them as context
managers.
"""
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from bson.binary import Binary
from pymongo import MongoClient
from pymongo.encryption_options import AutoEncryptionOpts
from pymongo.errors import (
    ConfigurationError,
    ConnectionFailure,
    EncryptionError,
    PyMongoError,
)

from fieldvault.exceptions import ClientConstructionError, CryptoAgentUnavailable
from fieldvault.services.kms_providers.base import KMSProvider
from fieldvault.services.master_key import MasterKeyMaterial
from fieldvault.services.schema_builder import EncryptionSchema
from fieldvault.utils.logger import get_logger

logger = get_logger("clients.factory")

DEFAULT_MONGOCRYPTD_URI = "mongodb://localhost:27020"


@dataclass(frozen=True)
class ClientTimeouts:
    """Connection and operation timeouts applied to every client."""

    server_selection_ms: int = 5000
    connect_ms: int = 5000
    socket_ms: int = 10000

    def as_client_options(self) -> Dict[str, Any]:
        return {
            "serverSelectionTimeoutMS": self.server_selection_ms,
            "connectTimeoutMS": self.connect_ms,
            "socketTimeoutMS": self.socket_ms,
        }


@dataclass(frozen=True)
class EncryptedClientConfig:
    """
    Everything needed to build one encrypted client. Consumed immutably.

    Attributes:
        connection: MongoDB connection string
        database: Database holding protected documents
        collection: Collection holding protected documents
        key_vault_namespace: "<db>.<collection>" of the key vault
        kms_provider: Provider holding the master key
        schema: Encryption schema for the collection
        crypto_agent_path: Path to the mongocryptd binary
        master_key: Master key material (local provider only)
        crypto_agent_uri: mongocryptd URI
        crypto_agent_spawn_args: Extra mongocryptd arguments
        crypt_shared_lib_path: crypt_shared library, used instead of mongocryptd
        timeouts: Client timeouts
    """

    connection: str
    database: str
    collection: str
    key_vault_namespace: str
    kms_provider: KMSProvider
    schema: EncryptionSchema
    crypto_agent_path: str
    master_key: Optional[MasterKeyMaterial] = field(default=None, repr=False)
    crypto_agent_uri: str = DEFAULT_MONGOCRYPTD_URI
    crypto_agent_spawn_args: Optional[List[str]] = None
    crypt_shared_lib_path: Optional[str] = None
    timeouts: ClientTimeouts = field(default_factory=ClientTimeouts)

    @property
    def namespace(self) -> str:
        return f"{self.database}.{self.collection}"


def _is_crypto_agent_failure(error: EncryptionError) -> bool:
    cause = error.cause
    if isinstance(cause, ConnectionFailure):
        return True
    return "mongocryptd" in str(error).lower() or "mongocryptd" in str(cause).lower()


class _ClientHandle:
    """Owns a MongoClient scoped to one collection."""

    def __init__(self, client: Any, database: str, collection: str):
        self._client = client
        self.database = database
        self.collection_name = collection
        self._closed = False

    @property
    def collection(self):
        if self._closed:
            raise ClientConstructionError("Client handle is closed")
        return self._client[self.database][self.collection_name]

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the underlying client. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._client.close()
        logger.debug(
            "Closed client",
            handle=self.__class__.__name__,
            namespace=f"{self.database}.{self.collection_name}",
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class EncryptedClientHandle(_ClientHandle):
    """Client configured for automatic field encryption."""

    @contextmanager
    def _fail_closed(self) -> Iterator[None]:
        try:
            yield
        except EncryptionError as e:
            if _is_crypto_agent_failure(e):
                logger.error(
                    "Crypto agent unavailable during encrypted operation",
                    namespace=f"{self.database}.{self.collection_name}",
                    error=str(e),
                )
                raise CryptoAgentUnavailable(f"Crypto agent unavailable: {e}") from e
            raise

    def insert_one(self, document: Mapping[str, Any]) -> Any:
        """Insert a document; protected fields are encrypted before sending."""
        with self._fail_closed():
            return self.collection.insert_one(dict(document)).inserted_id

    def find_one(self, filter: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Find a document; protected fields are decrypted on read."""
        with self._fail_closed():
            return self.collection.find_one(filter)


class PlainClientHandle(_ClientHandle):
    """Client without encryption, for inspecting stored ciphertext only."""

    def find_one(self, filter: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return self.collection.find_one(filter)

    def raw_fields(self, document_id: Any, paths: Iterable[str]) -> Dict[str, Any]:
        """
        Read stored values for the given field paths.

        Args:
            document_id: _id of the document
            paths: Dotted field paths

        Returns:
            Mapping of path to stored value (None if absent)
        """
        document = self.find_one({"_id": document_id}) or {}
        return {path: get_path(document, path) for path in paths}


def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path in a nested document, or None if absent."""
    value: Any = document
    for segment in path.split("."):
        if not isinstance(value, Mapping) or segment not in value:
            return None
        value = value[segment]
    return value


def is_encrypted_value(value: Any) -> bool:
    """Check for BSON binary subtype 6 (client-side encrypted)."""
    return isinstance(value, Binary) and value.subtype == 6


class EncryptedClientFactory:
    """
    Builds encrypted and plain client handles.

    Example:
        >>> factory = EncryptedClientFactory(ClientTimeouts())
        >>> with factory.create_encrypted_client(config) as client:
        ...     client.insert_one({"ssn": "123-45-6789"})
    """

    def __init__(
        self,
        timeouts: Optional[ClientTimeouts] = None,
        mongo_client_cls: Callable[..., Any] = MongoClient,
    ):
        self.timeouts = timeouts or ClientTimeouts()
        self._mongo_client_cls = mongo_client_cls

    def connect(self, connection: str, **options) -> Any:
        """
        Create a plain MongoClient with bounded timeouts.

        Raises:
            ClientConstructionError: If the connection string or options are invalid
        """
        client_options = {"uuidRepresentation": "standard", **self.timeouts.as_client_options()}
        client_options.update(options)
        try:
            return self._mongo_client_cls(connection, **client_options)
        except (PyMongoError, ValueError, TypeError) as e:
            logger.error("Failed to construct client", error=str(e))
            raise ClientConstructionError(f"Failed to construct client: {e}") from e

    def create_plain_client(self, connection: str, database: str, collection: str) -> PlainClientHandle:
        """Create a non-encrypting, read-only handle on a collection."""
        client = self.connect(connection)
        logger.debug("Created plain client", namespace=f"{database}.{collection}")
        return PlainClientHandle(client, database, collection)

    def create_encrypted_client(self, config: EncryptedClientConfig) -> EncryptedClientHandle:
        """
        Create a handle configured for automatic field encryption.

        Args:
            config: Encrypted client configuration

        Returns:
            EncryptedClientHandle owning the new client

        Raises:
            CryptoAgentUnavailable: If the crypto agent cannot be found
            KeyMaterialError: If the provider needs material that is missing
            ClientConstructionError: If the driver rejects the configuration
        """
        self._check_crypto_agent(config)

        kms_credentials = config.kms_provider.kms_credentials(config.master_key)

        try:
            opts = AutoEncryptionOpts(**self._auto_encryption_options(config, kms_credentials))
        except ConfigurationError as e:
            logger.error("Failed to configure automatic encryption", error=str(e))
            raise ClientConstructionError(f"Failed to configure automatic encryption: {e}") from e

        client = self.connect(config.connection, auto_encryption_opts=opts)

        logger.info(
            "Created encrypted client",
            namespace=config.namespace,
            key_vault=config.key_vault_namespace,
            provider=config.kms_provider.get_provider_version(),
            fields=",".join(config.schema.protected_paths),
        )
        return EncryptedClientHandle(client, config.database, config.collection)

    def _auto_encryption_options(
        self,
        config: EncryptedClientConfig,
        kms_credentials: Dict[str, Any],
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "kms_providers": kms_credentials,
            "key_vault_namespace": config.key_vault_namespace,
            "schema_map": config.schema.schema_map(config.namespace),
        }
        if config.crypt_shared_lib_path:
            options["crypt_shared_lib_path"] = config.crypt_shared_lib_path
            options["crypt_shared_lib_required"] = True
        else:
            options["mongocryptd_uri"] = config.crypto_agent_uri
            options["mongocryptd_spawn_path"] = config.crypto_agent_path
            if config.crypto_agent_spawn_args:
                options["mongocryptd_spawn_args"] = list(config.crypto_agent_spawn_args)
        return options

    def _check_crypto_agent(self, config: EncryptedClientConfig) -> None:
        if config.crypt_shared_lib_path:
            if not Path(config.crypt_shared_lib_path).is_file():
                raise CryptoAgentUnavailable(
                    f"crypt_shared library not found: {config.crypt_shared_lib_path}"
                )
            return

        path = config.crypto_agent_path
        if not path or not os.path.isfile(path) or not os.access(path, os.X_OK):
            logger.error("Crypto agent not executable", path=path)
            raise CryptoAgentUnavailable(f"mongocryptd is not an executable file: {path}")
