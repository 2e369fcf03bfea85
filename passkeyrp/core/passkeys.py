import hashlib
import json
import logging
from typing import List, Optional, Dict, Any, Iterable, Union

import cbor2
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm

from passkeyrp.core.authdata import parse_authenticator_data, AuthenticatorData
from passkeyrp.core.config import settings
from passkeyrp.core.cose import load_cose_key, verify_signature, ALGORITHM_NAMES
from passkeyrp.core.encryption import encryption_utils
from passkeyrp.core.exceptions import (
    MalformedResponseError, ChallengeMismatchError, OriginMismatchError, RelyingPartyMismatchError,
    UserVerificationError, UnsupportedAlgorithmError, CounterRegressionError,
)

logger = logging.getLogger(__name__)

CREATE_TYPE = "webauthn.create"
GET_TYPE = "webauthn.get"


def _decode_field(container: Dict[str, Any], key: str) -> bytes:
    value = container.get(key)
    if value is None:
        raise MalformedResponseError(f"Missing '{key}' in authenticator response.")
    try:
        return encryption_utils.base64url_decode(value)
    except ValueError as e:
        raise MalformedResponseError(f"'{key}' is not base64url: {e}")


def _inner_response(response: Any) -> Dict[str, Any]:
    if not isinstance(response, dict) or not isinstance(response.get("response"), dict):
        raise MalformedResponseError("Authenticator response must be a PublicKeyCredential JSON object.")
    return response["response"]


def _normalize_origins(expected_origin: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(expected_origin, str):
        expected_origin = [expected_origin]
    return [origin.rstrip("/") for origin in expected_origin]


class PasskeysCore:
    """
    Relying-party side of the WebAuthn protocol, written against the raw
    byte formats. Everything here is a pure function of its inputs: it never
    touches storage and reports failures as typed CeremonyError subclasses.
    """

    def __init__(self, rp_id: Optional[str] = None, rp_name: Optional[str] = None,
                 origins: Optional[List[str]] = None, algorithms: Optional[List[int]] = None,
                 user_verification: Optional[str] = None):
        self._rp_id = rp_id
        self._rp_name = rp_name
        self._origins = origins
        self._algorithms = algorithms
        self._user_verification = user_verification

    # Settings are read lazily so a core built at import time follows init_settings().
    @property
    def rp_id(self) -> str:
        return self._rp_id or settings.WEBAUTHN_RP_ID

    @property
    def rp_name(self) -> str:
        return self._rp_name or settings.WEBAUTHN_RP_NAME

    @property
    def origins(self) -> List[str]:
        return self._origins or settings.WEBAUTHN_ORIGINS

    @property
    def algorithms(self) -> List[int]:
        return self._algorithms or settings.WEBAUTHN_ALGORITHMS

    @property
    def user_verification(self) -> str:
        return self._user_verification or settings.WEBAUTHN_USER_VERIFICATION

    # --- Options ---

    def generate_registration_options(
            self, challenge: bytes, user_handle: str, display_name: str, webauthn_user_id: bytes,
            exclude_credential_ids: Iterable[bytes] = (),
    ) -> dict:
        """Generate options for a passkey registration ceremony."""
        return {
            "challenge": encryption_utils.base64url_encode(challenge),
            "rp": {"name": self.rp_name, "id": self.rp_id},
            "user": {
                "id": encryption_utils.base64url_encode(webauthn_user_id),
                "name": user_handle,
                "displayName": display_name,
            },
            "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in self.algorithms],
            "timeout": settings.WEBAUTHN_TIMEOUT_MS,
            "excludeCredentials": [
                {"type": "public-key", "id": encryption_utils.base64url_encode(cred_id)}
                for cred_id in exclude_credential_ids
            ],
            "authenticatorSelection": {
                "residentKey": settings.WEBAUTHN_RESIDENT_KEY,
                "requireResidentKey": settings.WEBAUTHN_RESIDENT_KEY == "required",
                "userVerification": self.user_verification,
            },
            "attestation": settings.WEBAUTHN_ATTESTATION,
        }

    def generate_authentication_options(
            self, challenge: bytes, allow_credential_ids: Optional[Iterable[bytes]] = None
    ) -> dict:
        """
        Generate options for an authentication ceremony. Passing None omits
        allowCredentials so the browser may offer discoverable credentials.
        """
        options = {
            "challenge": encryption_utils.base64url_encode(challenge),
            "timeout": settings.WEBAUTHN_TIMEOUT_MS,
            "rpId": self.rp_id,
            "userVerification": self.user_verification,
        }
        if allow_credential_ids is not None:
            options["allowCredentials"] = [
                {"type": "public-key", "id": encryption_utils.base64url_encode(cred_id)}
                for cred_id in allow_credential_ids
            ]
        return options

    # --- Decoding helpers ---

    def parse_client_data(self, response: dict, expected_type: str) -> tuple:
        """Returns (client_data dict, raw clientDataJSON bytes)."""
        raw = _decode_field(_inner_response(response), "clientDataJSON")
        try:
            client_data = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedResponseError(f"clientDataJSON is not valid JSON: {e}")
        if not isinstance(client_data, dict):
            raise MalformedResponseError("clientDataJSON is not a JSON object.")
        if client_data.get("type") != expected_type:
            raise MalformedResponseError(f"Invalid client data type: {client_data.get('type')!r}.")
        if not isinstance(client_data.get("challenge"), str) or not isinstance(client_data.get("origin"), str):
            raise MalformedResponseError("Client data lacks challenge or origin.")
        return client_data, raw

    def extract_challenge(self, response: dict, expected_type: str) -> bytes:
        """
        The challenge the client claims to answer. Only good for looking the
        real challenge up in the registry.
        """
        client_data, _ = self.parse_client_data(response, expected_type)
        try:
            return encryption_utils.base64url_decode(client_data["challenge"])
        except ValueError as e:
            raise MalformedResponseError(f"Client data challenge is not base64url: {e}")

    @staticmethod
    def extract_credential_id(response: dict) -> bytes:
        if not isinstance(response, dict):
            raise MalformedResponseError("Authenticator response must be a JSON object.")
        return _decode_field(response, "rawId" if "rawId" in response else "id")

    # --- Shared checks (steps 2 to 5) ---

    def _check_client_data(self, client_data: dict, expected_challenge: bytes,
                           expected_origin: Union[str, Iterable[str]]) -> None:
        try:
            presented = encryption_utils.base64url_decode(client_data["challenge"])
        except ValueError as e:
            raise MalformedResponseError(f"Client data challenge is not base64url: {e}")
        if not encryption_utils.constant_time_equals(presented, expected_challenge):
            raise ChallengeMismatchError("Challenge mismatch.")
        origin = client_data["origin"].rstrip("/")
        if origin not in _normalize_origins(expected_origin):
            raise OriginMismatchError(f"Origin '{origin}' is not allowed.")
        if client_data.get("crossOrigin") is True:
            raise OriginMismatchError("Cross-origin ceremonies are not allowed.")

    def _check_rp_and_flags(self, auth_data: AuthenticatorData, expected_rp_id: str) -> None:
        expected_hash = hashlib.sha256(expected_rp_id.encode("utf-8")).digest()
        if not encryption_utils.constant_time_equals(auth_data.rp_id_hash, expected_hash):
            raise RelyingPartyMismatchError("RP ID hash mismatch.")
        if not auth_data.user_present:
            raise UserVerificationError("User Present flag not set.")
        if self.user_verification == "required" and not auth_data.user_verified:
            raise UserVerificationError("User Verified flag not set.")

    # --- Registration ---

    def verify_registration(
            self, response: dict, expected_challenge: bytes,
            expected_origin: Union[str, Iterable[str], None], expected_rp_id: Optional[str],
    ) -> Dict[str, Any]:
        """
        Verify an attestation response and return the credential material to
        store. Raises a CeremonyError subclass on the first failed check.
        """
        expected_origin = expected_origin or self.origins
        expected_rp_id = expected_rp_id or self.rp_id

        # 1. Structural decode
        client_data, client_data_raw = self.parse_client_data(response, CREATE_TYPE)
        attestation_raw = _decode_field(_inner_response(response), "attestationObject")
        try:
            attestation_object = cbor2.loads(attestation_raw)
        except (cbor2.CBORDecodeError, ValueError) as e:
            raise MalformedResponseError(f"attestationObject is not valid CBOR: {e}")
        if not isinstance(attestation_object, dict) or not isinstance(attestation_object.get("authData"), bytes):
            raise MalformedResponseError("attestationObject lacks authData.")
        fmt = attestation_object.get("fmt")
        att_stmt = attestation_object.get("attStmt", {})
        if not isinstance(att_stmt, dict):
            raise MalformedResponseError("attStmt is not a map.")
        auth_data = parse_authenticator_data(attestation_object["authData"])
        attested = auth_data.attested_credential
        if attested is None:
            raise MalformedResponseError("Attested Credential Data flag not set.")
        if "rawId" in response or "id" in response:
            if self.extract_credential_id(response) != attested.credential_id:
                raise MalformedResponseError("Credential id does not match attested credential data.")

        # 2 + 3. Challenge and origin
        self._check_client_data(client_data, expected_challenge, expected_origin)
        # 4 + 5. RP id hash, UP/UV policy
        self._check_rp_and_flags(auth_data, expected_rp_id)

        # 6. Public key algorithm and attestation statement
        cose_key = load_cose_key(attested.public_key)
        if cose_key.alg not in self.algorithms:
            raise UnsupportedAlgorithmError(f"Algorithm {cose_key.algorithm_name} is not accepted.")

        client_data_hash = hashlib.sha256(client_data_raw).digest()
        self._verify_attestation_statement(fmt, att_stmt, auth_data, client_data_hash, cose_key)

        return {
            "credential_id": attested.credential_id,
            "public_key": attested.public_key_bytes,
            "alg": cose_key.alg,
            "sign_count": auth_data.sign_count,
            "aaguid": attested.aaguid,
            "transports": _inner_response(response).get("transports") or [],
            "is_backup_eligible": auth_data.backup_eligible,
            "is_backed_up": auth_data.backed_up,
            "user_verified": auth_data.user_verified,
        }

    def _verify_attestation_statement(self, fmt, att_stmt: dict, auth_data: AuthenticatorData,
                                      client_data_hash: bytes, cose_key) -> None:
        if fmt == "none":
            if att_stmt:
                raise MalformedResponseError("'none' attestation must carry an empty statement.")
            return
        if fmt != "packed":
            raise MalformedResponseError(f"Unsupported attestation format: {fmt}")

        alg, sig = att_stmt.get("alg"), att_stmt.get("sig")
        if not isinstance(alg, int) or not isinstance(sig, bytes):
            raise MalformedResponseError("Packed attestation statement lacks alg or sig.")
        if alg not in ALGORITHM_NAMES:
            raise UnsupportedAlgorithmError(f"Unsupported attestation algorithm: {alg}")
        signed_data = auth_data.raw + client_data_hash

        x5c = att_stmt.get("x5c")
        if x5c is not None:
            if not isinstance(x5c, list) or not x5c or not all(isinstance(cert, bytes) for cert in x5c):
                raise MalformedResponseError("x5c must be a non-empty array of DER certificates.")
            # Full attestation: the leaf certificate key signs. No trust anchors are evaluated.
            try:
                certificate = x509.load_der_x509_certificate(x5c[0])
                public_key = certificate.public_key()
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                raise MalformedResponseError(f"Invalid attestation certificate: {e}")
            verify_signature(public_key, alg, sig, signed_data)
            return

        if alg != cose_key.alg:
            raise MalformedResponseError("Self attestation algorithm does not match the credential key.")
        cose_key.verify(sig, signed_data)

    # --- Authentication ---

    def verify_assertion(
            self, response: dict, expected_challenge: bytes,
            expected_origin: Union[str, Iterable[str], None], expected_rp_id: Optional[str],
            stored_public_key: bytes, stored_sign_count: int = 0,
    ) -> int:
        """
        Verify an assertion against the stored public key and counter.
        Returns the authenticator's new sign count.
        """
        expected_origin = expected_origin or self.origins
        expected_rp_id = expected_rp_id or self.rp_id

        # 1. Structural decode
        client_data, client_data_raw = self.parse_client_data(response, GET_TYPE)
        inner = _inner_response(response)
        auth_data_raw = _decode_field(inner, "authenticatorData")
        signature = _decode_field(inner, "signature")
        auth_data = parse_authenticator_data(auth_data_raw)
        cose_key = load_cose_key(stored_public_key)

        # 2 - 5
        self._check_client_data(client_data, expected_challenge, expected_origin)
        self._check_rp_and_flags(auth_data, expected_rp_id)

        # 6. Signature
        cose_key.verify(signature, auth_data_raw + hashlib.sha256(client_data_raw).digest())

        # 7. Counter
        if auth_data.sign_count < stored_sign_count:
            raise CounterRegressionError(
                f"Sign count went backwards ({auth_data.sign_count} < {stored_sign_count}). Possible clone detected."
            )
        return auth_data.sign_count
