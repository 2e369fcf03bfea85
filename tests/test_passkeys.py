import hashlib
import os

import cbor2
import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from passkeyrp.core.encryption import encryption_utils
from passkeyrp.core.exceptions import (
    MalformedResponseError, ChallengeMismatchError, OriginMismatchError, RelyingPartyMismatchError,
    UserVerificationError, UnsupportedAlgorithmError, SignatureInvalidError, CounterRegressionError,
)
from passkeyrp.core.passkeys import PasskeysCore
from authenticator import (
    SoftwareAuthenticator, ORIGIN, RP_ID, ES256, EDDSA, RS256, PS256, FLAG_UP, FLAG_UV,
    sign_with, self_signed_certificate,
)


@pytest.fixture
def passkeys_core():
    return PasskeysCore(rp_id=RP_ID, rp_name="Test RP", origins=[ORIGIN], algorithms=[ES256, EDDSA, PS256, RS256])


@pytest.fixture
def challenge():
    return os.urandom(32)


def registration_options(core, challenge):
    return core.generate_registration_options(
        challenge=challenge, user_handle="alice", display_name="Alice", webauthn_user_id=os.urandom(32),
    )


def verify_registration(core, response, challenge):
    return core.verify_registration(response, challenge, [ORIGIN], RP_ID)


# --- Options ---

def test_generate_registration_options(passkeys_core, challenge):
    excluded = os.urandom(16)
    options = passkeys_core.generate_registration_options(
        challenge=challenge, user_handle="alice", display_name="Alice", webauthn_user_id=b"\x01" * 32,
        exclude_credential_ids=[excluded],
    )
    assert encryption_utils.base64url_decode(options["challenge"]) == challenge
    assert options["rp"] == {"name": "Test RP", "id": RP_ID}
    assert options["user"]["name"] == "alice"
    assert options["user"]["id"] == encryption_utils.base64url_encode(b"\x01" * 32)
    assert [param["alg"] for param in options["pubKeyCredParams"]] == [ES256, EDDSA, PS256, RS256]
    assert options["excludeCredentials"] == [{"type": "public-key", "id": encryption_utils.base64url_encode(excluded)}]


def test_generate_authentication_options(passkeys_core, challenge):
    discoverable = passkeys_core.generate_authentication_options(challenge)
    assert "allowCredentials" not in discoverable
    assert discoverable["rpId"] == RP_ID
    assert passkeys_core.generate_authentication_options(challenge, [])["allowCredentials"] == []


# --- Registration ---

@pytest.mark.parametrize("alg", [ES256, EDDSA, RS256, PS256])
def test_verify_registration_success(passkeys_core, challenge, alg):
    authenticator = SoftwareAuthenticator(alg=alg)
    response = authenticator.create(registration_options(passkeys_core, challenge))
    result = verify_registration(passkeys_core, response, challenge)
    assert result["credential_id"] == authenticator.credential_id
    assert result["public_key"] == cbor2.dumps(authenticator.cose_key())
    assert result["alg"] == alg
    assert result["sign_count"] == 0
    assert result["transports"] == ["internal"]
    assert result["user_verified"] is True


def test_verify_registration_packed_self_attestation(passkeys_core, challenge):
    authenticator = SoftwareAuthenticator()
    response = authenticator.create(registration_options(passkeys_core, challenge), fmt="packed")
    assert verify_registration(passkeys_core, response, challenge)["credential_id"] == authenticator.credential_id


def test_verify_registration_packed_bad_signature(passkeys_core, challenge):
    authenticator = SoftwareAuthenticator()
    att_stmt = {"alg": ES256, "sig": authenticator.sign(b"something else")}
    response = authenticator.create(registration_options(passkeys_core, challenge), fmt="packed", att_stmt=att_stmt)
    with pytest.raises(SignatureInvalidError):
        verify_registration(passkeys_core, response, challenge)


def test_verify_registration_packed_x5c(passkeys_core, challenge):
    authenticator = SoftwareAuthenticator()
    options = registration_options(passkeys_core, challenge)
    attestation_key = ec.generate_private_key(ec.SECP256R1())
    unsigned = authenticator.create(options, fmt="packed")
    # Re-sign the same authData/clientData with the attestation certificate key.
    client_data = encryption_utils.base64url_decode(unsigned["response"]["clientDataJSON"])
    attestation_object = cbor2.loads(encryption_utils.base64url_decode(unsigned["response"]["attestationObject"]))
    signed = attestation_object["authData"] + hashlib.sha256(client_data).digest()
    attestation_object["attStmt"] = {
        "alg": ES256,
        "sig": sign_with(attestation_key, ES256, signed),
        "x5c": [self_signed_certificate(attestation_key)],
    }
    unsigned["response"]["attestationObject"] = encryption_utils.base64url_encode(cbor2.dumps(attestation_object))
    assert verify_registration(passkeys_core, unsigned, challenge)["alg"] == ES256


def test_registration_key_type_not_an_integer(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge),
                                              cose_key={1: [2], 3: ES256})
    with pytest.raises(MalformedResponseError):
        verify_registration(passkeys_core, response, challenge)


@pytest.mark.parametrize("x5c", [{1: b"a"}, [], [b"not a certificate", 7], b"raw"])
def test_packed_x5c_must_be_certificate_array(passkeys_core, challenge, x5c):
    att_stmt = {"alg": ES256, "sig": b"x", "x5c": x5c}
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge),
                                              fmt="packed", att_stmt=att_stmt)
    with pytest.raises(MalformedResponseError):
        verify_registration(passkeys_core, response, challenge)


def test_none_attestation_must_be_empty(passkeys_core, challenge):
    authenticator = SoftwareAuthenticator()
    response = authenticator.create(registration_options(passkeys_core, challenge), att_stmt={"sig": b"x"})
    with pytest.raises(MalformedResponseError):
        verify_registration(passkeys_core, response, challenge)


def test_unsupported_attestation_format(passkeys_core, challenge):
    authenticator = SoftwareAuthenticator()
    response = authenticator.create(registration_options(passkeys_core, challenge), fmt="tpm")
    with pytest.raises(MalformedResponseError, match="Unsupported attestation format"):
        verify_registration(passkeys_core, response, challenge)


def test_verify_registration_challenge_mismatch(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge))
    with pytest.raises(ChallengeMismatchError):
        verify_registration(passkeys_core, response, os.urandom(32))


def test_verify_registration_invalid_type(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge), client_type="webauthn.get")
    with pytest.raises(MalformedResponseError, match="Invalid client data type"):
        verify_registration(passkeys_core, response, challenge)


def test_verify_registration_invalid_origin(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge), origin="https://evil.com")
    with pytest.raises(OriginMismatchError):
        verify_registration(passkeys_core, response, challenge)


def test_cross_origin_is_rejected(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge), crossOrigin=True)
    with pytest.raises(OriginMismatchError):
        verify_registration(passkeys_core, response, challenge)


def test_challenge_is_checked_before_origin(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge), origin="https://evil.com")
    with pytest.raises(ChallengeMismatchError):
        verify_registration(passkeys_core, response, os.urandom(32))


def test_verify_registration_rp_id_hash_mismatch(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge), rp_id="evil.com")
    with pytest.raises(RelyingPartyMismatchError):
        verify_registration(passkeys_core, response, challenge)


def test_user_present_required(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge), flags=FLAG_UV)
    with pytest.raises(UserVerificationError, match="User Present"):
        verify_registration(passkeys_core, response, challenge)


def test_user_verification_required_by_policy(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge), flags=FLAG_UP)
    with pytest.raises(UserVerificationError, match="User Verified"):
        verify_registration(passkeys_core, response, challenge)


def test_user_verification_preferred_policy(challenge):
    core = PasskeysCore(rp_id=RP_ID, origins=[ORIGIN], algorithms=[ES256], user_verification="preferred")
    response = SoftwareAuthenticator().create(registration_options(core, challenge), flags=FLAG_UP)
    assert verify_registration(core, response, challenge)["user_verified"] is False


def test_algorithm_not_in_allow_list(challenge):
    core = PasskeysCore(rp_id=RP_ID, origins=[ORIGIN], algorithms=[ES256])
    response = SoftwareAuthenticator(alg=EDDSA).create(registration_options(core, challenge))
    with pytest.raises(UnsupportedAlgorithmError):
        verify_registration(core, response, challenge)


def test_private_key_material_rejected(passkeys_core, challenge):
    authenticator = SoftwareAuthenticator()
    cose_key = authenticator.cose_key()
    cose_key[-4] = b"\x02" * 32
    response = authenticator.create(registration_options(passkeys_core, challenge), cose_key=cose_key)
    with pytest.raises(MalformedResponseError):
        verify_registration(passkeys_core, response, challenge)


def test_raw_id_must_match_attested_credential(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge))
    response["rawId"] = encryption_utils.base64url_encode(b"other credential")
    with pytest.raises(MalformedResponseError):
        verify_registration(passkeys_core, response, challenge)


def test_malformed_client_data(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge))
    response["response"]["clientDataJSON"] = "!!not base64!!"
    with pytest.raises(MalformedResponseError):
        verify_registration(passkeys_core, response, challenge)
    with pytest.raises(MalformedResponseError):
        verify_registration(passkeys_core, {"response": "nope"}, challenge)


def test_attestation_object_not_cbor(passkeys_core, challenge):
    response = SoftwareAuthenticator().create(registration_options(passkeys_core, challenge))
    response["response"]["attestationObject"] = encryption_utils.base64url_encode(b"\xff\xff")
    with pytest.raises(MalformedResponseError):
        verify_registration(passkeys_core, response, challenge)


# --- Assertion ---

def assertion_case(passkeys_core, challenge, alg=ES256, **get_kwargs):
    authenticator = SoftwareAuthenticator(alg=alg)
    options = passkeys_core.generate_authentication_options(challenge, [authenticator.credential_id])
    return authenticator, authenticator.get(options, **get_kwargs)


def verify_assertion(core, response, challenge, authenticator, stored_sign_count=0):
    return core.verify_assertion(
        response, challenge, [ORIGIN], RP_ID, cbor2.dumps(authenticator.cose_key()), stored_sign_count,
    )


@pytest.mark.parametrize("alg", [ES256, EDDSA, RS256, PS256])
def test_verify_assertion_success(passkeys_core, challenge, alg):
    authenticator, response = assertion_case(passkeys_core, challenge, alg=alg)
    assert verify_assertion(passkeys_core, response, challenge, authenticator) == 1


def test_zero_counters_are_accepted(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge, sign_count=0)
    assert verify_assertion(passkeys_core, response, challenge, authenticator, stored_sign_count=0) == 0


def test_counter_regression(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge, sign_count=5)
    with pytest.raises(CounterRegressionError):
        verify_assertion(passkeys_core, response, challenge, authenticator, stored_sign_count=10)


def test_tampered_signature(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge, tamper=True)
    with pytest.raises(SignatureInvalidError):
        verify_assertion(passkeys_core, response, challenge, authenticator)


def test_signature_from_other_key(passkeys_core, challenge):
    _, response = assertion_case(passkeys_core, challenge)
    with pytest.raises(SignatureInvalidError):
        verify_assertion(passkeys_core, response, challenge, SoftwareAuthenticator())


def test_signature_checked_before_counter(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge, sign_count=1, tamper=True)
    with pytest.raises(SignatureInvalidError):
        verify_assertion(passkeys_core, response, challenge, authenticator, stored_sign_count=10)


def test_assertion_challenge_mismatch(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge)
    with pytest.raises(ChallengeMismatchError):
        verify_assertion(passkeys_core, response, os.urandom(32), authenticator)


def test_assertion_origin_mismatch(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge, origin="http://localhost:3001")
    with pytest.raises(OriginMismatchError):
        verify_assertion(passkeys_core, response, challenge, authenticator)


def test_assertion_rp_id_mismatch(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge, rp_id="example.org")
    with pytest.raises(RelyingPartyMismatchError):
        verify_assertion(passkeys_core, response, challenge, authenticator)


def test_assertion_requires_user_verification(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge, flags=FLAG_UP)
    with pytest.raises(UserVerificationError):
        verify_assertion(passkeys_core, response, challenge, authenticator)


def test_assertion_wrong_type(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge, client_type="webauthn.create")
    with pytest.raises(MalformedResponseError):
        verify_assertion(passkeys_core, response, challenge, authenticator)


def test_assertion_missing_signature(passkeys_core, challenge):
    authenticator, response = assertion_case(passkeys_core, challenge)
    del response["response"]["signature"]
    with pytest.raises(MalformedResponseError):
        verify_assertion(passkeys_core, response, challenge, authenticator)


def test_extract_credential_id_prefers_raw_id(passkeys_core):
    assert PasskeysCore.extract_credential_id({"rawId": "AQID", "id": "BAUG"}) == b"\x01\x02\x03"
    assert PasskeysCore.extract_credential_id({"id": "BAUG"}) == b"\x04\x05\x06"
    with pytest.raises(MalformedResponseError):
        PasskeysCore.extract_credential_id({})
