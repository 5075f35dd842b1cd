"""
Integration tests against a live MongoDB deployment.

Requires:
- FIELDVAULT_TEST_CONNECTION: connection string of a replica set or sharded cluster
- FIELDVAULT_TEST_MONGOCRYPTD: path to the mongocryptd binary
- pymongo[encryption] (pymongocrypt)

Each test uses throwaway database names and drops them afterwards.
"""
import os
import uuid

import pytest
from pymongo import MongoClient

from fieldvault.config import Settings
from fieldvault.services.bootstrap import BootstrapOrchestrator, BootstrapState
from fieldvault.services.master_key import write_local_master_key

CONNECTION = os.environ.get("FIELDVAULT_TEST_CONNECTION")
MONGOCRYPTD = os.environ.get("FIELDVAULT_TEST_MONGOCRYPTD")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not (CONNECTION and MONGOCRYPTD),
        reason="FIELDVAULT_TEST_CONNECTION and FIELDVAULT_TEST_MONGOCRYPTD not set",
    ),
]


@pytest.fixture
def live_settings(tmp_path):
    pytest.importorskip("pymongocrypt")
    suffix = uuid.uuid4().hex[:8]
    settings = Settings(
        _env_file=None,
        CONNECTION=CONNECTION,
        DATABASE=f"fieldvault_test_{suffix}",
        COLLECTION="patients",
        KEY_DB=f"fieldvault_keys_{suffix}",
        KEY_COLLECTION="__keyVault",
        KMS_PROVIDER="local",
        KEY_ALT_NAME=f"fieldvault-test-{suffix}",
        MASTER_KEY_FILE=str(write_local_master_key(tmp_path / "master-key.txt")),
        MONGO_CRYPTD_PATH=MONGOCRYPTD,
    )
    yield settings

    client = MongoClient(CONNECTION)
    try:
        client.drop_database(settings.DATABASE)
        client.drop_database(settings.KEY_DB)
    finally:
        client.close()


def test_first_run_provisions_and_second_run_reuses(live_settings):
    first = BootstrapOrchestrator(live_settings).run()

    assert first.ok, first.error
    assert first.created is True

    second = BootstrapOrchestrator(live_settings).run()

    assert second.ok, second.error
    assert second.created is False
    assert second.key_id == first.key_id
    assert second.transitions == (BootstrapState.UNRESOLVED, BootstrapState.LOOKUP, BootstrapState.READY)


def test_ssn_is_ciphertext_on_the_server(live_settings):
    result = BootstrapOrchestrator(live_settings).run()
    assert result.ok, result.error

    client = MongoClient(CONNECTION)
    try:
        stored = client[live_settings.DATABASE][live_settings.COLLECTION].find_one(
            {"_id": result.verification.document_id}
        )
    finally:
        client.close()

    assert stored["ssn"].subtype == 6
    assert b"123-45-6789" not in bytes(stored["ssn"])
    assert stored["name"] == "Jon Doe"


def test_missing_crypto_agent_keeps_key(live_settings, tmp_path):
    broken = live_settings.model_copy(update={"MONGO_CRYPTD_PATH": str(tmp_path / "missing")})

    result = BootstrapOrchestrator(broken).run()

    assert result.state is BootstrapState.READY
    assert result.key_id is not None
    assert result.error is not None
