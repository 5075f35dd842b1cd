"""
Bootstrap orchestration for field-level encryption.

Sequences the key lifecycle and client construction:

    Unresolved -> Lookup -> Ready
                         -> Missing -> Provisioning -> Ready
                                                   -> Fatal

1. Read master key material (local provider); failure is fatal before any
   database operation
2. Look up the DEK by alternate name, retrying a failed lookup once
3. If missing: ensure the unique alt name index, then create the DEK
   (a lost creation race adopts the winner's key)
4. On Ready: build the schema, construct encrypted and plain clients, run
   the verification round trip

Failures after Ready are reported in the result and never invalidate the
resolved key. Every client is released and the master key material is
cleared on every exit path.

Usage:
    settings = load_settings()
    result = BootstrapOrchestrator(settings).run()
    if result.ok:
        print(result.key_id_base64)
"""
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple, Union

from bson.binary import Binary
from pymongo.encryption import ClientEncryption
from pymongo.errors import PyMongoError

from fieldvault.config import Settings
from fieldvault.exceptions import (
    ClientConstructionError,
    ConfigError,
    FieldVaultError,
    KeyLookupError,
    KeyMaterialError,
    KeyProvisioningError,
)
from fieldvault.models.customer import CUSTOMER_FIELD_SPECS, create_customer_document
from fieldvault.models.data_encryption_key import key_id_to_base64
from fieldvault.schemas.encryption import FieldSpec
from fieldvault.services.client_factory import (
    ClientTimeouts,
    EncryptedClientConfig,
    EncryptedClientFactory,
)
from fieldvault.services.key_vault import KeyVaultManager, key_vault_collection
from fieldvault.services.kms_providers import KMSProvider, create_kms_provider
from fieldvault.services.master_key import MasterKeyMaterial, MasterKeySource
from fieldvault.services.schema_builder import EncryptionSchema, build_schema
from fieldvault.services.verification import VerificationReport, verify_round_trip
from fieldvault.utils.logger import get_logger

logger = get_logger("bootstrap")


class BootstrapState(str, Enum):
    """Key resolution states."""

    UNRESOLVED = "unresolved"
    LOOKUP = "lookup"
    MISSING = "missing"
    PROVISIONING = "provisioning"
    READY = "ready"
    FATAL = "fatal"


@dataclass(frozen=True)
class KeyResolution:
    """Resolved DEK id and whether this run created it."""

    key_id: Binary
    created: bool


@dataclass(frozen=True)
class BootstrapResult:
    """
    Outcome of a bootstrap run, owned by the caller for presentation.

    Attributes:
        state: Final key state (READY or FATAL)
        transitions: Ordered states visited
        key_id: Resolved DEK id (READY only)
        created: Whether this run created the DEK
        schema: Encryption schema (if built)
        verification: Round trip report (if it ran)
        error: Fatal error, or the failure reported from the post-Ready phase
    """

    state: BootstrapState
    transitions: Tuple[BootstrapState, ...]
    key_id: Optional[Binary] = None
    created: bool = False
    schema: Optional[EncryptionSchema] = None
    verification: Optional[VerificationReport] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return (
            self.state is BootstrapState.READY
            and self.error is None
            and self.verification is not None
            and self.verification.passed
        )

    @property
    def key_id_base64(self) -> Optional[str]:
        return key_id_to_base64(self.key_id) if self.key_id is not None else None


Transition = Callable[[BootstrapState], None]


def _noop_transition(state: BootstrapState) -> None:
    return None


def lookup_key_with_retry(
    manager: KeyVaultManager,
    alt_name: str,
    retries: int = 1,
) -> Optional[Binary]:
    """
    Look up a DEK, re-querying after a failed lookup.

    Raises:
        KeyLookupError: If every attempt fails
    """
    last_error: Optional[KeyLookupError] = None
    for attempt in range(retries + 1):
        try:
            return manager.find_key(alt_name)
        except KeyLookupError as e:
            last_error = e
            logger.warning(
                "Key lookup failed",
                alt_name=alt_name,
                attempt=attempt + 1,
                attempts=retries + 1,
            )
    raise last_error


def resolve_data_key(
    manager: KeyVaultManager,
    kms_provider: KMSProvider,
    material: Optional[MasterKeyMaterial],
    alt_name: str,
    lookup_retries: int = 1,
    on_transition: Transition = _noop_transition,
) -> KeyResolution:
    """
    Find the DEK for an alternate name, provisioning it if missing.

    Args:
        manager: Key vault manager
        kms_provider: Provider holding the master key
        material: Master key material (local provider only)
        alt_name: Key alternate name
        lookup_retries: Extra lookup attempts after a failure
        on_transition: Called with each state entered

    Returns:
        KeyResolution with the key id every racing caller converges on

    Raises:
        KeyLookupError: If the vault cannot be queried
        KeyMaterialError: If the provider needs material that is missing
        KeyProvisioningError: If the index or key cannot be created
    """
    on_transition(BootstrapState.LOOKUP)
    key_id = lookup_key_with_retry(manager, alt_name, retries=lookup_retries)

    if key_id is not None:
        on_transition(BootstrapState.READY)
        logger.info("Found existing DEK", alt_name=alt_name, key_id=key_id_to_base64(key_id))
        return KeyResolution(key_id=key_id, created=False)

    on_transition(BootstrapState.MISSING)
    on_transition(BootstrapState.PROVISIONING)
    manager.ensure_index()
    key_id, created = manager.provision_key(kms_provider, material, alt_name)

    on_transition(BootstrapState.READY)
    return KeyResolution(key_id=key_id, created=created)


class BootstrapOrchestrator:
    """
    Runs the bootstrap sequence against one configuration.

    Collaborators are injectable so each stage can be exercised without a
    live cluster.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        kms_provider: Optional[KMSProvider] = None,
        master_key_source: Optional[MasterKeySource] = None,
        client_factory: Optional[EncryptedClientFactory] = None,
        client_encryption_factory: Callable[..., Any] = ClientEncryption,
        field_specs: Sequence[Union[FieldSpec, Mapping[str, Any]]] = CUSTOMER_FIELD_SPECS,
        document_factory: Callable[[], Mapping[str, Any]] = create_customer_document,
        lookup_retries: int = 1,
    ):
        self.settings = settings
        self._kms_provider = kms_provider
        self._master_key_source = master_key_source
        self.client_factory = client_factory or EncryptedClientFactory(
            ClientTimeouts(
                server_selection_ms=settings.SERVER_SELECTION_TIMEOUT_MS,
                connect_ms=settings.CONNECT_TIMEOUT_MS,
                socket_ms=settings.SOCKET_TIMEOUT_MS,
            )
        )
        self._client_encryption_factory = client_encryption_factory
        self.field_specs = tuple(field_specs)
        self.document_factory = document_factory
        self.lookup_retries = lookup_retries

    def run(self) -> BootstrapResult:
        """
        Run the full bootstrap sequence.

        Never raises for expected failures; they are returned in the result.
        """
        settings = self.settings
        transitions = [BootstrapState.UNRESOLVED]

        try:
            kms_provider = self._kms_provider or create_kms_provider(settings)
            material = self._read_master_key(kms_provider)
        except (ConfigError, KeyMaterialError) as e:
            return self._fatal(transitions, e)

        with ExitStack() as stack:
            if material is not None:
                stack.callback(material.clear)

            try:
                vault_client = self.client_factory.connect(settings.CONNECTION)
                stack.callback(vault_client.close)
                manager = KeyVaultManager(
                    key_vault_collection(vault_client, settings.KEY_DB, settings.KEY_COLLECTION),
                    client_encryption_factory=self._client_encryption_factory,
                )
                resolution = resolve_data_key(
                    manager,
                    kms_provider,
                    material,
                    settings.KEY_ALT_NAME,
                    lookup_retries=self.lookup_retries,
                    on_transition=transitions.append,
                )
            except (ClientConstructionError, KeyLookupError, KeyMaterialError, KeyProvisioningError) as e:
                return self._fatal(transitions, e)

            schema: Optional[EncryptionSchema] = None
            verification: Optional[VerificationReport] = None
            error: Optional[BaseException] = None

            try:
                schema = build_schema(resolution.key_id, self.field_specs)
                config = self._encrypted_client_config(kms_provider, material, schema)
                encrypted = stack.enter_context(self.client_factory.create_encrypted_client(config))

                # The encrypted client holds its own copy of the KMS credentials
                if material is not None:
                    material.clear()

                plain = stack.enter_context(
                    self.client_factory.create_plain_client(
                        settings.CONNECTION, settings.DATABASE, settings.COLLECTION
                    )
                )
                verification = verify_round_trip(encrypted, plain, schema, self.document_factory())
            except (FieldVaultError, PyMongoError) as e:
                error = e
                logger.error(
                    "Post-provisioning phase failed; key remains ready",
                    key_id=key_id_to_base64(resolution.key_id),
                    error_type=e.__class__.__name__,
                    error=str(e),
                )

        return BootstrapResult(
            state=BootstrapState.READY,
            transitions=tuple(transitions),
            key_id=resolution.key_id,
            created=resolution.created,
            schema=schema,
            verification=verification,
            error=error,
        )

    def _read_master_key(self, kms_provider: KMSProvider) -> Optional[MasterKeyMaterial]:
        if not kms_provider.uses_key_material:
            return None
        source = self._master_key_source or MasterKeySource(kms_provider.key_material_length)
        return source.read(self.settings.MASTER_KEY_FILE)

    def _encrypted_client_config(
        self,
        kms_provider: KMSProvider,
        material: Optional[MasterKeyMaterial],
        schema: EncryptionSchema,
    ) -> EncryptedClientConfig:
        settings = self.settings
        return EncryptedClientConfig(
            connection=settings.CONNECTION,
            database=settings.DATABASE,
            collection=settings.COLLECTION,
            key_vault_namespace=settings.key_vault_namespace,
            kms_provider=kms_provider,
            schema=schema,
            crypto_agent_path=settings.MONGO_CRYPTD_PATH,
            master_key=material,
            crypto_agent_uri=settings.MONGO_CRYPTD_URI,
            crypto_agent_spawn_args=settings.mongocryptd_spawn_args,
            crypt_shared_lib_path=settings.CRYPT_SHARED_LIB_PATH,
            timeouts=self.client_factory.timeouts,
        )

    def _fatal(self, transitions: list, error: FieldVaultError) -> BootstrapResult:
        transitions.append(BootstrapState.FATAL)
        logger.error(
            "Bootstrap failed",
            state=transitions[-2].value,
            error_type=error.__class__.__name__,
            error=str(error),
        )
        return BootstrapResult(
            state=BootstrapState.FATAL,
            transitions=tuple(transitions),
            error=error,
        )
