"""
Pytest configuration and fixtures for fieldvault tests.

The fakes below stand in for a MongoDB deployment:
- FakeServer / FakeMongoClient / FakeCollection: in-memory storage with
  unique index enforcement, shared between client instances
- FakeClientEncryption: creates data keys in the vault the way
  ClientEncryption does, wrapping errors in EncryptionError
- FakeEncryptingClient: encrypts schema fields with AES-GCM on write and
  decrypts them on read, standing in for libmongocrypt
"""
import copy
import hashlib
import hmac
import json
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import bson
import pytest
from bson.binary import UUID_SUBTYPE, Binary
from bson.codec_options import CodecOptions
from bson.objectid import ObjectId
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pymongo.errors import (
    DuplicateKeyError,
    EncryptionError,
    OperationFailure,
    ServerSelectionTimeoutError,
)

from fieldvault.config import Settings
from fieldvault.services.client_factory import (
    ClientTimeouts,
    EncryptedClientConfig,
    EncryptedClientFactory,
    EncryptedClientHandle,
    get_path,
)
from fieldvault.services.master_key import LOCAL_MASTER_KEY_LENGTH
from fieldvault.services.schema_builder import EncryptionSchema


ENCRYPTED_SUBTYPE = 6
NONCE_LENGTH = 12

# Driver defaults: subtype 4 binaries decode as Binary
RAW_CODEC_OPTIONS = CodecOptions()


# =============================================================================
# In-memory MongoDB
# =============================================================================


def _as_set(value: Any) -> set:
    if isinstance(value, list):
        return {repr(v) for v in value}
    return {repr(value)}


def _bson_round_trip(document: Dict[str, Any], encode_with: CodecOptions, decode_with: CodecOptions) -> Dict[str, Any]:
    return bson.decode(bson.encode(document, codec_options=encode_with), codec_options=decode_with)


def _matches(document: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    for path, expected in (filter or {}).items():
        actual = get_path(document, path)
        if isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


class FakeInsertOneResult:
    def __init__(self, inserted_id: Any):
        self.inserted_id = inserted_id


class FakeCollection:
    """
    Thread-safe in-memory collection.

    Documents pass through BSON on the way in and out, decoded with the
    collection's codec options like a driver collection.
    """

    def __init__(self, database: "FakeDatabase", name: str):
        self.database = database
        self.name = name
        self.codec_options = RAW_CODEC_OPTIONS
        self.documents: List[Dict[str, Any]] = []
        self.indexes: Dict[str, Dict[str, Any]] = {}
        self.find_errors: List[Exception] = []
        self.index_error: Optional[Exception] = None
        self.find_calls = 0
        self.create_index_calls = 0
        self._lock = threading.Lock()

    @property
    def full_name(self) -> str:
        return f"{self.database.name}.{self.name}"

    def with_options(self, codec_options: Optional[CodecOptions] = None, **kwargs) -> "FakeCollectionView":
        return FakeCollectionView(self, codec_options or self.codec_options)

    def find_one(self, filter=None, projection=None):
        return self._find_one(filter, projection, self.codec_options)

    def insert_one(self, document):
        return self._insert_one(document, self.codec_options)

    def _find_one(self, filter, projection, codec_options: CodecOptions):
        with self._lock:
            self.find_calls += 1
            if self.find_errors:
                raise self.find_errors.pop(0)
            filter = _bson_round_trip(filter or {}, codec_options, RAW_CODEC_OPTIONS)
            for document in self.documents:
                if _matches(document, filter):
                    result = document
                    if projection:
                        keep = {key for key, flag in projection.items() if flag}
                        result = {key: value for key, value in result.items() if key in keep}
                    return _bson_round_trip(result, RAW_CODEC_OPTIONS, codec_options)
        return None

    def _insert_one(self, document, codec_options: CodecOptions):
        with self._lock:
            document = dict(document)
            document.setdefault("_id", ObjectId())
            stored = _bson_round_trip(document, codec_options, RAW_CODEC_OPTIONS)
            for index in self.indexes.values():
                if not index.get("unique"):
                    continue
                field = index["keys"][0][0]
                new_values = _as_set(get_path(stored, field))
                for existing in self.documents:
                    if new_values & _as_set(get_path(existing, field)):
                        raise DuplicateKeyError(
                            f"E11000 duplicate key error collection: {self.full_name} "
                            f"index: {index['name']}",
                            11000,
                        )
            self.documents.append(stored)
        return FakeInsertOneResult(document["_id"])

    def create_index(self, keys, name=None, unique=False, **kwargs):
        with self._lock:
            self.create_index_calls += 1
            if self.index_error is not None:
                raise self.index_error
            requested = {"keys": list(keys), "name": name, "unique": unique, **kwargs}
            for existing in self.indexes.values():
                same_name = existing["name"] == name
                same_keys = existing["keys"] == requested["keys"]
                if same_name and not same_keys:
                    raise OperationFailure(
                        f"An existing index has the same name as the requested index: {name}", 86
                    )
                if same_name and existing == requested:
                    return name
                if same_name or same_keys:
                    raise OperationFailure(
                        f"Index already exists with different options: {existing['name']}", 85
                    )
            self.indexes[name] = requested
        return name

    def index_information(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            information = {"_id_": {"key": [("_id", 1)], "v": 2}}
            for name, index in self.indexes.items():
                entry = {"key": list(index["keys"]), "v": 2}
                if index["unique"]:
                    entry["unique"] = True
                if "partialFilterExpression" in index:
                    entry["partialFilterExpression"] = index["partialFilterExpression"]
                information[name] = entry
            return information


class FakeCollectionView:
    """Collection returned by with_options; shares storage with its base."""

    def __init__(self, base: FakeCollection, codec_options: CodecOptions):
        self._base = base
        self.codec_options = codec_options

    def __getattr__(self, name: str) -> Any:
        return getattr(self._base, name)

    def with_options(self, codec_options: Optional[CodecOptions] = None, **kwargs) -> "FakeCollectionView":
        return FakeCollectionView(self._base, codec_options or self.codec_options)

    def find_one(self, filter=None, projection=None):
        return self._base._find_one(filter, projection, self.codec_options)

    def insert_one(self, document):
        return self._base._insert_one(document, self.codec_options)


class FakeDatabase:
    def __init__(self, server: "FakeServer", name: str):
        self.server = server
        self.name = name
        self.client = None
        self._collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(self, name)
        return self._collections[name]


class FakeServer:
    """Storage shared by every client connected to it."""

    def __init__(self):
        self._databases: Dict[str, FakeDatabase] = {}
        self._lock = threading.Lock()

    def database(self, name: str) -> FakeDatabase:
        with self._lock:
            if name not in self._databases:
                self._databases[name] = FakeDatabase(self, name)
            return self._databases[name]

    def collection(self, namespace: str) -> FakeCollection:
        database, collection = namespace.split(".", 1)
        return self.database(database)[collection]


class FakeMongoClient:
    """Plain client; each instance tracks its own closed state."""

    def __init__(self, server: FakeServer):
        self.server = server
        self.closed = False

    def __getitem__(self, name: str) -> FakeDatabase:
        database = self.server.database(name)
        database.client = self
        return database

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Key creation
# =============================================================================


class FakeClientEncryption:
    """Creates data keys in the vault like pymongo's ClientEncryption."""

    def __init__(self, factory: "FakeClientEncryptionFactory", kms_providers, key_vault_namespace, key_vault_client):
        self.factory = factory
        self.kms_providers = kms_providers
        database, collection = key_vault_namespace.split(".", 1)
        self.key_vault = key_vault_client[database][collection]
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        self.closed = True

    def create_data_key(self, kms_provider, master_key=None, key_alt_names=None, key_material=None):
        self.factory.create_calls.append(
            {"kms_provider": kms_provider, "master_key": master_key, "key_alt_names": key_alt_names}
        )
        if self.factory.error is not None:
            raise EncryptionError(self.factory.error)
        if self.factory.barrier is not None:
            self.factory.barrier.wait(timeout=5)

        key_id = Binary(uuid.uuid4().bytes, UUID_SUBTYPE)
        now = datetime.now(timezone.utc)
        document = {
            "_id": key_id,
            "keyAltNames": list(key_alt_names or []),
            "keyMaterial": Binary(os.urandom(160)),
            "creationDate": now,
            "updateDate": now,
            "status": 0,
            "masterKey": {"provider": kms_provider, **(master_key or {})},
        }
        try:
            self.key_vault.insert_one(document)
        except Exception as exc:
            raise EncryptionError(exc) from exc
        return key_id


class FakeClientEncryptionFactory:
    """Callable with the ClientEncryption constructor signature."""

    def __init__(self, barrier: Optional[threading.Barrier] = None, error: Optional[Exception] = None):
        self.barrier = barrier
        self.error = error
        self.instances: List[FakeClientEncryption] = []
        self.create_calls: List[Dict[str, Any]] = []

    def __call__(self, kms_providers, key_vault_namespace, key_vault_client, codec_options):
        instance = FakeClientEncryption(self, kms_providers, key_vault_namespace, key_vault_client)
        self.instances.append(instance)
        return instance


# =============================================================================
# Automatic encryption
# =============================================================================


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    segments = path.split(".")
    node = document
    for segment in segments[:-1]:
        node = node[segment]
    node[segments[-1]] = value


class FakeEncryptingCollection:
    """Encrypts schema fields before storing and decrypts them on read."""

    def __init__(self, backing: FakeCollection, schema: EncryptionSchema, client: "FakeEncryptingClient"):
        self.backing = backing
        self.schema = schema
        self.client = client
        self._dek = hashlib.sha256(bytes(schema.key_id)).digest()
        self._algorithms = {spec.path: spec.algorithm for spec in schema.fields}

    def _require_agent(self) -> None:
        if not self.client.agent_available:
            raise EncryptionError(
                ServerSelectionTimeoutError("mongocryptd error: connection refused localhost:27020")
            )

    def _encrypt(self, path: str, value: Any) -> Binary:
        plaintext = json.dumps(value).encode("utf-8")
        if self._algorithms[path] == "deterministic":
            nonce = hmac.new(self._dek, plaintext, hashlib.sha256).digest()[:NONCE_LENGTH]
            marker = b"\x01"
        else:
            nonce = os.urandom(NONCE_LENGTH)
            marker = b"\x02"
        ciphertext = AESGCM(self._dek).encrypt(nonce, plaintext, None)
        return Binary(marker + bytes(self.schema.key_id) + nonce + ciphertext, ENCRYPTED_SUBTYPE)

    def _decrypt(self, value: Binary) -> Any:
        raw = bytes(value)[17:]
        plaintext = AESGCM(self._dek).decrypt(raw[:NONCE_LENGTH], raw[NONCE_LENGTH:], None)
        return json.loads(plaintext.decode("utf-8"))

    def insert_one(self, document):
        self._require_agent()
        stored = copy.deepcopy(dict(document))
        stored.setdefault("_id", ObjectId())
        for path in self.schema.protected_paths:
            value = get_path(stored, path)
            if value is not None:
                _set_path(stored, path, self._encrypt(path, value))
        return self.backing.insert_one(stored)

    def find_one(self, filter=None):
        self._require_agent()
        translated = {}
        for path, value in (filter or {}).items():
            if path in self._algorithms:
                if self._algorithms[path] != "deterministic":
                    raise EncryptionError(Exception(f"Cannot query on randomly encrypted field {path}"))
                value = self._encrypt(path, value)
            translated[path] = value

        document = self.backing.find_one(translated)
        if document is None:
            return None
        for path in self.schema.protected_paths:
            value = get_path(document, path)
            if isinstance(value, Binary) and value.subtype == ENCRYPTED_SUBTYPE:
                _set_path(document, path, self._decrypt(value))
        return document


class FakeEncryptingClient:
    def __init__(self, server: FakeServer, schema: EncryptionSchema, agent_available: bool = True):
        self.server = server
        self.schema = schema
        self.agent_available = agent_available
        self.closed = False

    def __getitem__(self, database: str):
        client = self

        class _Database:
            def __getitem__(self, collection: str) -> FakeEncryptingCollection:
                backing = client.server.database(database)[collection]
                return FakeEncryptingCollection(backing, client.schema, client)

        return _Database()

    def close(self) -> None:
        self.closed = True


class FakeClientFactory(EncryptedClientFactory):
    """EncryptedClientFactory wired to a FakeServer instead of a cluster."""

    def __init__(self, server: FakeServer, agent_available: bool = True):
        super().__init__(ClientTimeouts())
        self.server = server
        self.agent_available = agent_available
        self.clients: List[Any] = []
        self.kms_credentials: List[Dict[str, Any]] = []

    def connect(self, connection: str, **options) -> FakeMongoClient:
        client = FakeMongoClient(self.server)
        self.clients.append(client)
        return client

    def create_encrypted_client(self, config: EncryptedClientConfig) -> EncryptedClientHandle:
        self._check_crypto_agent(config)
        self.kms_credentials.append(config.kms_provider.kms_credentials(config.master_key))
        client = FakeEncryptingClient(self.server, config.schema, agent_available=self.agent_available)
        self.clients.append(client)
        return EncryptedClientHandle(client, config.database, config.collection)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def vault_client(server: FakeServer) -> FakeMongoClient:
    return FakeMongoClient(server)


@pytest.fixture
def key_vault(vault_client: FakeMongoClient) -> FakeCollection:
    return vault_client["encryption"]["__keyVault"]


@pytest.fixture
def client_encryption_factory() -> FakeClientEncryptionFactory:
    return FakeClientEncryptionFactory()


@pytest.fixture
def key_id() -> Binary:
    return Binary(uuid.UUID("6f8d3c1e-2a4b-4c5d-8e9f-0a1b2c3d4e5f").bytes, UUID_SUBTYPE)


@pytest.fixture
def master_key_bytes() -> bytes:
    return bytes(range(LOCAL_MASTER_KEY_LENGTH))


@pytest.fixture
def master_key_file(tmp_path: Path, master_key_bytes: bytes) -> Path:
    path = tmp_path / "master-key.txt"
    path.write_bytes(master_key_bytes)
    return path


@pytest.fixture
def mongocryptd_path(tmp_path: Path) -> Path:
    path = tmp_path / "bin" / "mongocryptd"
    path.parent.mkdir()
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def settings_values(master_key_file: Path, mongocryptd_path: Path) -> Dict[str, Any]:
    return {
        "_env_file": None,
        "CONNECTION": "mongodb://localhost:27017",
        "DATABASE": "medicalRecords",
        "COLLECTION": "patients",
        "KEY_DB": "encryption",
        "KEY_COLLECTION": "__keyVault",
        "KMS_PROVIDER": "local",
        "KEY_ALT_NAME": "demo-data-key",
        "MASTER_KEY_FILE": str(master_key_file),
        "MONGO_CRYPTD_PATH": str(mongocryptd_path),
        "CRYPT_SHARED_LIB_PATH": None,
    }


@pytest.fixture
def settings(settings_values: Dict[str, Any]) -> Settings:
    return Settings(**settings_values)
