import pytest

from trust_ledger.core.config import LedgerObjects, Settings
from trust_ledger.core.exceptions import ConfigurationError


def test_defaults():
    settings = Settings.from_env({})
    assert settings.database_path == "trust-ledger.db"
    assert settings.blob_gateway == "https://aggregator.walrus.xyz"
    assert settings.ledger_mode == "auto"
    assert settings.effective_ledger_mode == "simulated"
    assert settings.ledger_objects == LedgerObjects()
    assert settings.enclave_url == ""
    assert settings.enclave_timeout == 20
    assert settings.integrity_timeout == 15
    assert settings.ledger_timeout == 30
    assert settings.attestation_cache_ttl == 900
    assert settings.resolved_enclave_gateway == "https://aggregator.walrus.xyz"


def test_auto_mode_with_signing_key_uses_rpc():
    settings = Settings.from_env({"LEDGER_PRIVATE_KEY": "11" * 32})
    assert settings.effective_ledger_mode == "rpc"


def test_explicit_mode_wins():
    settings = Settings.from_env({"LEDGER_MODE": "LOCAL", "LEDGER_PRIVATE_KEY": "11" * 32})
    assert settings.effective_ledger_mode == "local"


def test_reads_environment():
    settings = Settings.from_env(
        {
            "TRUST_LEDGER_DB": "/tmp/ledger.db",
            "BLOB_GATEWAY": "https://gateway.example/",
            "BLOB_PUBLISHER": "https://publisher.example/",
            "BLOB_FORCE_MOCK": "true",
            "LEDGER_PACKAGE_ID": "0x123",
            "LEDGER_ORACLE_CAP": "0xcap",
            "ENCLAVE_URL": "https://enclave.example/",
            "ENCLAVE_GATEWAY": "https://gw.example",
            "ENCLAVE_PUBLIC_KEYS": "aa, bb ,",
            "ENCLAVE_EXPECTED_PCRS": "0=ABCD,2=ef01",
            "INTEGRITY_TIMEOUT": "2.5",
            "INDEXER_PAGE_SIZE": "10",
            "TRUSTED_HOSTS": "api.example,localhost",
            "AUDIT_LOG_PATH": "/tmp/audit.jsonl",
        }
    )
    assert settings.database_path == "/tmp/ledger.db"
    assert settings.blob_gateway == "https://gateway.example"
    assert settings.blob_publisher == "https://publisher.example"
    assert settings.blob_force_mock is True
    assert settings.ledger_objects.package_id == "0x123"
    assert settings.ledger_objects.oracle_cap == "0xcap"
    assert settings.ledger_objects.trust_oracle == "0x0"
    assert settings.enclave_url == "https://enclave.example"
    assert settings.resolved_enclave_gateway == "https://gw.example"
    assert settings.enclave_public_keys == ["aa", "bb"]
    assert settings.enclave_expected_pcrs == {"0": "abcd", "2": "ef01"}
    assert settings.integrity_timeout == 2.5
    assert settings.indexer_page_size == 10
    assert settings.trusted_hosts == ["api.example", "localhost"]
    assert settings.audit_log_path == "/tmp/audit.jsonl"


@pytest.mark.parametrize(
    "environ",
    [
        {"LEDGER_MODE": "mainnet"},
        {"ENCLAVE_TIMEOUT": "soon"},
        {"INDEXER_PAGE_SIZE": "0"},
        {"ATTESTATION_CACHE_SIZE": "-1"},
        {"ENCLAVE_EXPECTED_PCRS": "0abcd"},
        {"ENCLAVE_EXPECTED_PCRS": "=abcd"},
    ],
)
def test_invalid_values_raise_configuration_error(environ):
    with pytest.raises(ConfigurationError):
        Settings.from_env(environ)
