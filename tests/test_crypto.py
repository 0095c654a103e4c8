import json

import pytest

from hft_fleet.common.errors import NoCredentials
from hft_fleet.remote.crypto import decrypt_optional, decrypt_secret, encrypt_secret


def test_round_trip_uses_fresh_salt_and_iv():
    first = encrypt_secret("api-secret", secret="k1")
    second = encrypt_secret("api-secret", secret="k1")

    assert first != second
    assert set(json.loads(first)) == {"iv", "salt", "encryptedData"}
    assert decrypt_secret(first, secret="k1") == "api-secret"
    assert decrypt_secret(second, secret="k1") == "api-secret"


def test_wrong_key_is_reported_as_missing_credentials():
    blob = encrypt_secret("api-secret", secret="k1")
    with pytest.raises(NoCredentials):
        decrypt_secret(blob, secret="k2")


def test_malformed_blob_and_empty_values():
    with pytest.raises(NoCredentials):
        decrypt_secret("not json", secret="k1")
    with pytest.raises(NoCredentials):
        decrypt_secret(json.dumps({"iv": "00"}), secret="k1")
    assert decrypt_optional(None) is None
    assert decrypt_optional("") is None


def test_missing_encryption_key(monkeypatch):
    monkeypatch.delenv("ENCRYPTION_KEY", raising=False)
    with pytest.raises(NoCredentials):
        encrypt_secret("x")
