"""
Binary layout of WebAuthn authenticator data.

    rpIdHash (32) | flags (1) | signCount (4, big endian)
    [ aaguid (16) | credIdLen (2) | credId | COSE_Key (CBOR) ]   when AT is set
    [ extensions (CBOR map) ]                                    when ED is set
"""
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, Optional

import cbor2

from passkeyrp.core.exceptions import MalformedResponseError

FLAG_UP = 0x01  # user present
FLAG_UV = 0x04  # user verified
FLAG_BE = 0x08  # backup eligible
FLAG_BS = 0x10  # backed up
FLAG_AT = 0x40  # attested credential data included
FLAG_ED = 0x80  # extension data included

_HEADER_LENGTH = 37


@dataclass
class AttestedCredentialData:
    aaguid: bytes
    credential_id: bytes
    public_key: Dict[int, Any]
    public_key_bytes: bytes


@dataclass
class AuthenticatorData:
    raw: bytes
    rp_id_hash: bytes
    flags: int
    sign_count: int
    attested_credential: Optional[AttestedCredentialData] = None
    extensions: Dict[Any, Any] = field(default_factory=dict)

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_UP)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_UV)

    @property
    def backup_eligible(self) -> bool:
        return bool(self.flags & FLAG_BE)

    @property
    def backed_up(self) -> bool:
        return bool(self.flags & FLAG_BS)


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    """Parses authenticator data, raising MalformedResponseError on any layout violation."""
    if not isinstance(raw, (bytes, bytearray)) or len(raw) < _HEADER_LENGTH:
        raise MalformedResponseError("Authenticator data is too short.")
    raw = bytes(raw)
    flags = raw[32]
    auth_data = AuthenticatorData(
        raw=raw,
        rp_id_hash=raw[:32],
        flags=flags,
        sign_count=int.from_bytes(raw[33:37], "big"),
    )

    stream = BytesIO(raw[_HEADER_LENGTH:])
    try:
        if flags & FLAG_AT:
            aaguid = stream.read(16)
            length_bytes = stream.read(2)
            if len(aaguid) != 16 or len(length_bytes) != 2:
                raise MalformedResponseError("Attested credential data is truncated.")
            credential_id = stream.read(int.from_bytes(length_bytes, "big"))
            if len(credential_id) != int.from_bytes(length_bytes, "big") or not credential_id:
                raise MalformedResponseError("Credential id is truncated.")
            key_start = stream.tell()
            public_key = cbor2.load(stream)
            key_bytes = stream.getvalue()[key_start:stream.tell()]
            if not isinstance(public_key, dict):
                raise MalformedResponseError("Credential public key is not a CBOR map.")
            auth_data.attested_credential = AttestedCredentialData(aaguid, credential_id, public_key, key_bytes)

        if flags & FLAG_ED:
            extensions = cbor2.load(stream)
            if not isinstance(extensions, dict):
                raise MalformedResponseError("Extension data is not a CBOR map.")
            auth_data.extensions = extensions
    except (cbor2.CBORDecodeError, EOFError, ValueError) as e:
        raise MalformedResponseError(f"Authenticator data is not valid CBOR: {e}")

    if stream.read():
        raise MalformedResponseError("Unexpected trailing bytes in authenticator data.")
    return auth_data
