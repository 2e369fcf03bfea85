import time

import pytest

from passkeyrp.core.encryption import EncryptionUtils


@pytest.fixture
def encryption_utils():
    """Fixture to create an EncryptionUtils instance."""
    return EncryptionUtils()


def test_base64url_without_padding(encryption_utils):
    encoded = encryption_utils.base64url_encode(b"\xfb\xff")
    assert encoded == "-_8"
    assert encryption_utils.base64url_decode(encoded) == b"\xfb\xff"


def test_base64url_decode_rejects_non_strings(encryption_utils):
    with pytest.raises(ValueError):
        encryption_utils.base64url_decode(b"AQID")
    with pytest.raises(ValueError):
        encryption_utils.base64url_decode("A")


def test_tokens_and_hashes(encryption_utils):
    token = encryption_utils.gen_token()
    assert token != encryption_utils.gen_token()
    assert len(encryption_utils.hash_token(token)) == 64
    assert encryption_utils.hash_token(token) == encryption_utils.hash_token(token)
    assert len(encryption_utils.gen_random_bytes(32)) == 32


def test_create_and_decode_jwt_token(encryption_utils):
    token = encryption_utils.create_jwt_token({"token": "abc"})
    assert encryption_utils.decode_jwt_token(token)["token"] == "abc"


def test_expired_jwt_token(encryption_utils):
    token = encryption_utils.create_jwt_token({"token": "abc"}, expires_at=time.time() - 10)
    assert encryption_utils.decode_jwt_token(token) is None


def test_invalid_decode_jwt_token(encryption_utils):
    assert encryption_utils.decode_jwt_token("some_invalid_tkn") is None
    token = encryption_utils.create_jwt_token({"token": "abc"})
    assert encryption_utils.decode_jwt_token(token[:-2] + "xx") is None


@pytest.mark.parametrize("data", ["AQ ID", "AQ+D", "AQ/D", "AQID=", "AQ\nID", "AQ.ID"])
def test_base64url_decode_rejects_foreign_characters(encryption_utils, data):
    with pytest.raises(ValueError):
        encryption_utils.base64url_decode(data)
