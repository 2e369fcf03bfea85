"""
Rewrites credential public keys stored as base64 text by earlier releases into
the raw COSE_Key CBOR bytes. Rows that already hold a CBOR map are untouched.
"""
import base64
import binascii
import logging
from typing import Optional

import cbor2
from sqlalchemy import text

logger = logging.getLogger(__name__)


def _is_cose_map(data: bytes) -> bool:
    try:
        return isinstance(cbor2.loads(data), dict)
    except (cbor2.CBORDecodeError, ValueError, TypeError, EOFError):
        return False


def canonical_public_key(stored) -> Optional[bytes]:
    """
    Returns the canonical bytes for a stored key, or None if the row is already
    canonical or cannot be understood.
    """
    if isinstance(stored, memoryview):
        stored = stored.tobytes()
    if isinstance(stored, (bytes, bytearray)):
        stored = bytes(stored)
        if _is_cose_map(stored):
            return None
        try:
            stored = stored.decode("ascii")
        except UnicodeDecodeError:
            return None
    if not isinstance(stored, str):
        return None

    cleaned = stored.strip()
    padded = cleaned + "=" * (-len(cleaned) % 4)
    for decoder in (base64.urlsafe_b64decode, base64.b64decode):
        try:
            decoded = decoder(padded.encode("ascii"))
        except (binascii.Error, ValueError):
            continue
        if _is_cose_map(decoded):
            return decoded
    return None


async def upgrade(conn):
    result = await conn.execute(text("SELECT id, public_key FROM credentials"))
    rewritten = 0
    for row_id, stored in result.fetchall():
        canonical = canonical_public_key(stored)
        if canonical is None:
            continue
        await conn.execute(
            text("UPDATE credentials SET public_key = :public_key WHERE id = :id"),
            {"public_key": canonical, "id": row_id},
        )
        rewritten += 1
    logger.info(f"Converted {rewritten} legacy base64 public keys to COSE bytes.")
