"""
COSE_Key decoding and signature verification for credential public keys.

Keys arrive as CBOR maps with integer labels (RFC 9052 / RFC 9053). Only the
public parameters are accepted; a key carrying private parameters is rejected
outright.
"""
from typing import Any, Dict, Union

import cbor2
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa, padding, ed25519

from passkeyrp.core.exceptions import MalformedResponseError, UnsupportedAlgorithmError, SignatureInvalidError

# Common labels
KTY, ALG = 1, 3
# Key types
KTY_OKP, KTY_EC2, KTY_RSA = 1, 2, 3

ES256, ES384, ES512 = -7, -35, -36
EDDSA = -8
RS256 = -257
PS256 = -37

ALGORITHM_NAMES = {
    ES256: "ES256",
    ES384: "ES384",
    ES512: "ES512",
    EDDSA: "EdDSA",
    RS256: "RS256",
    PS256: "PS256",
}

# alg -> (curve id, curve, hash)
_EC2_ALGORITHMS = {
    ES256: (1, ec.SECP256R1, hashes.SHA256),
    ES384: (2, ec.SECP384R1, hashes.SHA384),
    ES512: (3, ec.SECP521R1, hashes.SHA512),
}
_OKP_ED25519 = 6

# Labels that only ever appear in private keys.
_PRIVATE_LABELS = {
    KTY_OKP: {-4},
    KTY_EC2: {-4},
    KTY_RSA: {-3, -4, -5, -6, -7, -8, -9, -10, -11, -12},
}


def contains_private_material(cose_key: Dict[int, Any]) -> bool:
    """True if the COSE map carries any private-key parameter for its key type."""
    kty = cose_key.get(KTY)
    if not isinstance(kty, int):
        return False
    labels = _PRIVATE_LABELS.get(kty, set())
    return any(label in cose_key for label in labels)


class CoseKey:
    """A decoded, validated public COSE key bound to one signature algorithm."""

    def __init__(self, cose_map: Dict[int, Any]):
        if not isinstance(cose_map, dict):
            raise MalformedResponseError("COSE key is not a map.")
        self.params = cose_map
        self.kty = cose_map.get(KTY)
        self.alg = cose_map.get(ALG)
        if not isinstance(self.kty, int) or not isinstance(self.alg, int):
            raise MalformedResponseError("COSE key kty and alg must be integers.")
        if contains_private_material(cose_map):
            raise MalformedResponseError("COSE key contains private key material.")
        if self.alg not in ALGORITHM_NAMES:
            raise UnsupportedAlgorithmError(f"Unsupported COSE algorithm: {self.alg}")
        self._public_key = self._load()

    @property
    def algorithm_name(self) -> str:
        return ALGORITHM_NAMES[self.alg]

    def _load(self):
        try:
            if self.alg == EDDSA:
                if self.kty != KTY_OKP or self.params.get(-1) != _OKP_ED25519:
                    raise UnsupportedAlgorithmError("EdDSA is only supported on Ed25519 OKP keys.")
                return ed25519.Ed25519PublicKey.from_public_bytes(_require_bytes(self.params, -2))

            if self.alg in _EC2_ALGORITHMS:
                crv_id, curve, _ = _EC2_ALGORITHMS[self.alg]
                if self.kty != KTY_EC2 or self.params.get(-1) != crv_id:
                    raise UnsupportedAlgorithmError(f"Curve {self.params.get(-1)} does not match alg {self.alg}.")
                x, y = _require_bytes(self.params, -2), _require_bytes(self.params, -3)
                return ec.EllipticCurvePublicNumbers(
                    int.from_bytes(x, "big"), int.from_bytes(y, "big"), curve()
                ).public_key()

            # RS256 / PS256
            if self.kty != KTY_RSA:
                raise UnsupportedAlgorithmError(f"alg {self.alg} requires an RSA key.")
            n, e = _require_bytes(self.params, -1), _require_bytes(self.params, -2)
            return rsa.RSAPublicNumbers(int.from_bytes(e, "big"), int.from_bytes(n, "big")).public_key()
        except ValueError as e:
            raise MalformedResponseError(f"Invalid COSE key parameters: {e}")

    def verify(self, signature: bytes, message: bytes) -> None:
        """Raises SignatureInvalidError unless `signature` is valid over `message`."""
        verify_signature(self._public_key, self.alg, signature, message)


def verify_signature(public_key, alg: int, signature: bytes, message: bytes) -> None:
    """
    Verifies `signature` over `message` with a cryptography public key using
    the COSE algorithm `alg`. Also used for packed attestation certificates.
    """
    if alg not in ALGORITHM_NAMES:
        raise UnsupportedAlgorithmError(f"Unsupported COSE algorithm: {alg}")
    try:
        if alg == EDDSA and isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, message)
        elif alg in _EC2_ALGORITHMS and isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, message, ec.ECDSA(_EC2_ALGORITHMS[alg][2]()))
        elif alg == RS256 and isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
        elif alg == PS256 and isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(
                signature, message,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=hashes.SHA256.digest_size),
                hashes.SHA256(),
            )
        else:
            raise UnsupportedAlgorithmError(f"Key type does not match algorithm {ALGORITHM_NAMES[alg]}.")
    except (InvalidSignature, ValueError) as e:
        raise SignatureInvalidError(f"Signature verification failed under {ALGORITHM_NAMES[alg]}.") from e


def _require_bytes(params: Dict[int, Any], label: int) -> bytes:
    value = params.get(label)
    if not isinstance(value, bytes) or not value:
        raise MalformedResponseError(f"COSE key parameter {label} missing or not a byte string.")
    return value


def load_cose_key(data: Union[bytes, Dict[int, Any]]) -> CoseKey:
    """Decodes CBOR bytes (or an already decoded map) into a CoseKey."""
    if isinstance(data, (bytes, bytearray)):
        try:
            data = cbor2.loads(bytes(data))
        except (cbor2.CBORDecodeError, ValueError, TypeError) as e:
            raise MalformedResponseError(f"Public key is not valid CBOR: {e}")
    return CoseKey(data)
