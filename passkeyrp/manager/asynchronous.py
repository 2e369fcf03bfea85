import logging
import time
from typing import Optional, Tuple, List, Dict, Any

from sqlalchemy import select, func, delete, desc, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from passkeyrp.core.config import settings
from passkeyrp.core.database import (
    DatabaseManager, User, Credential, Challenge, Session as DBSession, AuditEvent,
)
from passkeyrp.core.encryption import encryption_utils
from passkeyrp.core.exceptions import (
    ChallengeNotFoundError, ChallengeExpiredError, ChallengeAlreadyUsedError, DuplicateCredentialError,
    SessionInvalidError, SessionExpiredError, UserNotFoundError, RateLimitError,
)
from passkeyrp.core.passkeys import PasskeysCore

logger = logging.getLogger(__name__)

REGISTRATION = "registration"
AUTHENTICATION = "authentication"


class UserManager:
    """Lookups and lifecycle of Users. Users are only created by a registration ceremony."""

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def get_by_id(self, user_id: int, db: AsyncSession = None) -> Optional[User]:
        if db:
            return await db.get(User, user_id)
        async with self._db_manager.get_db() as db:
            return await db.get(User, user_id)

    async def get_by_username(self, username: str, db: AsyncSession = None) -> Optional[User]:
        async def _get(session: AsyncSession):
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

        if db:
            return await _get(db)
        async with self._db_manager.get_db() as db:
            return await _get(db)

    async def count(self) -> int:
        async with self._db_manager.get_db() as db:
            return await db.scalar(select(func.count(User.id)))

    async def delete(self, user_id: int, ip_address: str = 'system') -> None:
        """Deletes a user; credentials and sessions go with it."""
        async with self._db_manager.get_db() as db:
            user = await db.get(User, user_id)
            if not user:
                raise UserNotFoundError("User not found.")
            await db.delete(user)
            await self._db_manager.log_audit_event(user_id, "USER_DELETED", ip_address,
                                                   {"username": user.username}, db=db)
            await db.commit()


class CredentialManager:
    """The credential store: public keys and counters, keyed by the authenticator's credential id."""

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def get_for_user(self, user_id: int, db: AsyncSession = None) -> List[Credential]:
        async def _get(session: AsyncSession):
            result = await session.execute(
                select(Credential).where(Credential.user_id == user_id).order_by(Credential.id)
            )
            return list(result.scalars().all())

        if db:
            return await _get(db)
        async with self._db_manager.get_db() as db:
            return await _get(db)

    async def get_by_credential_id(self, credential_id: bytes, db: AsyncSession = None) -> Optional[Credential]:
        async def _get(session: AsyncSession):
            result = await session.execute(select(Credential).where(Credential.credential_id == credential_id))
            return result.scalar_one_or_none()

        if db:
            return await _get(db)
        async with self._db_manager.get_db() as db:
            return await _get(db)

    async def count(self) -> int:
        async with self._db_manager.get_db() as db:
            return await db.scalar(select(func.count(Credential.id)))

    def build(self, user: User, cred_data: Dict[str, Any]) -> Credential:
        """Builds (but does not persist) a Credential from verified registration material."""
        return Credential(
            credential_id=cred_data["credential_id"],
            user=user,
            public_key=cred_data["public_key"],
            sign_count=cred_data["sign_count"],
            aaguid=cred_data.get("aaguid"),
            transports=cred_data.get("transports", []),
            is_backup_eligible=cred_data.get("is_backup_eligible", False),
            is_backed_up=cred_data.get("is_backed_up", False),
        )

    async def save_new_credential(self, user_id: int, cred_data: Dict[str, Any]) -> Credential:
        """
        Persists a verified credential for an existing user. The UNIQUE
        constraint on credential_id is the authority on duplicates.
        """
        async with self._db_manager.get_db() as db:
            user = await db.get(User, user_id)
            if not user:
                raise UserNotFoundError("User not found.")
            credential = self.build(user, cred_data)
            db.add(credential)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise DuplicateCredentialError("This credential is already registered.")
            return credential

    async def update_sign_count(self, credential_pk: int, expected_sign_count: int, new_sign_count: int) -> bool:
        """
        Compare-and-swap on the stored counter. Returns False when another
        request moved the counter first.
        """
        async with self._db_manager.get_db() as db:
            result = await db.execute(
                update(Credential)
                .where(Credential.id == credential_pk, Credential.sign_count == expected_sign_count)
                .values(sign_count=new_sign_count, last_used_at=time.time())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def delete_credential(self, user_id: int, credential_id_b64: str) -> bool:
        """Deletes a credential for a user, identified by its base64url ID."""
        try:
            credential_id = encryption_utils.base64url_decode(credential_id_b64)
        except ValueError:
            return False

        async with self._db_manager.get_db() as db:
            result = await db.execute(
                delete(Credential).where(Credential.credential_id == credential_id, Credential.user_id == user_id)
            )
            await db.commit()
            return result.rowcount > 0


class ChallengeManager:
    """
    The challenge registry. Challenges are single use: consumption is one
    conditional UPDATE, so of any number of concurrent consumers exactly one
    sees rowcount == 1.
    """

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def issue(self, kind: str, scope: Optional[str] = None, webauthn_user_id: Optional[bytes] = None,
                    display_name: Optional[str] = None) -> Challenge:
        if kind not in (REGISTRATION, AUTHENTICATION):
            raise ValueError(f"Unknown ceremony kind: {kind}")
        async with self._db_manager.get_db() as db:
            challenge = Challenge(
                value=encryption_utils.gen_random_bytes(32), kind=kind, scope=scope,
                webauthn_user_id=webauthn_user_id, display_name=display_name, created_at=time.time(),
            )
            db.add(challenge)
            await db.commit()
            return challenge

    async def consume(self, value: bytes, kind: str) -> Challenge:
        """
        Marks the challenge used and returns it. Fails closed with
        ChallengeNotFoundError, ChallengeAlreadyUsedError or
        ChallengeExpiredError; an expired challenge is consumed all the same.
        """
        now = time.time()
        async with self._db_manager.get_db() as db:
            result = await db.execute(
                update(Challenge)
                .where(Challenge.value == value, Challenge.kind == kind, Challenge.consumed == False)
                .values(consumed=True, consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            won = result.rowcount == 1
            challenge = (await db.execute(select(Challenge).where(Challenge.value == value))).scalar_one_or_none()

        if not won:
            if challenge is None or challenge.kind != kind:
                raise ChallengeNotFoundError("Challenge was not issued for this ceremony.")
            raise ChallengeAlreadyUsedError("Challenge has already been used.")
        if challenge.is_expired(now):
            raise ChallengeExpiredError("Challenge expired.")
        return challenge

    async def purge_expired(self) -> int:
        """Deletes challenges past their TTL. Housekeeping only."""
        cutoff = time.time() - settings.CHALLENGE_TTL_SECONDS
        async with self._db_manager.get_db() as db:
            result = await db.execute(delete(Challenge).where(Challenge.created_at < cutoff))
            await db.commit()
            return result.rowcount


class SessionManager:
    """
    Server-side sessions keyed by the hash of an opaque token. Expiry is
    computed from authenticated_at on every validation; nothing sweeps.
    """

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def create(self, user_id: int, ip_address: Optional[str] = None) -> Tuple[DBSession, str]:
        token = encryption_utils.gen_token()
        async with self._db_manager.get_db() as db:
            session = DBSession(
                token_hash=encryption_utils.hash_token(token), user_id=user_id,
                authenticated_at=time.time(), create_ip=ip_address,
            )
            db.add(session)
            await self._db_manager.log_audit_event(user_id, "SESSION_CREATED", ip_address, db=db)
            await db.commit()
            return session, token

    async def validate(self, token: str) -> User:
        """Returns the session's user or raises SessionInvalidError / SessionExpiredError."""
        if not token:
            raise SessionInvalidError("No session token.")
        async with self._db_manager.get_db() as db:
            session = await db.get(DBSession, encryption_utils.hash_token(token))
            if session is None:
                raise SessionInvalidError("Session not found.")
            user = await db.get(User, session.user_id)
            if user is None:
                await db.delete(session)
                await db.commit()
                raise SessionInvalidError("Session user no longer exists.")
            if session.is_expired():
                await db.delete(session)
                await db.commit()
                raise SessionExpiredError("Session expired.")
            return user

    async def destroy(self, token: str, ip_address: Optional[str] = None) -> bool:
        async with self._db_manager.get_db() as db:
            session = await db.get(DBSession, encryption_utils.hash_token(token))
            if session is None:
                return False
            await db.delete(session)
            await self._db_manager.log_audit_event(session.user_id, "SESSION_TERMINATED", ip_address, db=db)
            await db.commit()
            return True

    async def destroy_all_for_user(self, user_id: int, ip_address: Optional[str] = None) -> int:
        async with self._db_manager.get_db() as db:
            result = await db.execute(delete(DBSession).where(DBSession.user_id == user_id))
            await self._db_manager.log_audit_event(user_id, "SESSIONS_TERMINATED_ALL", ip_address, db=db)
            await db.commit()
            return result.rowcount


class AuditManager:
    """Queries the audit trail; also backs the failed-login rate limit."""

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def get_events_for_user(self, user_id: int, skip: int = 0, limit: int = 25) -> List[AuditEvent]:
        async with self._db_manager.get_db() as db:
            stmt = select(AuditEvent).where(AuditEvent.user_id == user_id).order_by(
                desc(AuditEvent.timestamp)).offset(skip).limit(limit)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def get_events_by_type(self, event_type: str, skip: int = 0, limit: int = 100) -> List[AuditEvent]:
        async with self._db_manager.get_db() as db:
            stmt = select(AuditEvent).where(AuditEvent.event_type == event_type).order_by(
                desc(AuditEvent.timestamp)).offset(skip).limit(limit)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def check_login_rate_limit(self, user_id: Optional[int], ip_address: Optional[str]) -> None:
        """
        Raises RateLimitError if the IP, or the user from that IP, has too many
        failed passkey logins inside the rate-limit window. Failures against a
        user from other addresses do not count toward the user limit.
        """
        window_start = time.time() - settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
        async with self._db_manager.get_db() as db:
            if ip_address:
                ip_attempts = await db.scalar(select(func.count()).select_from(AuditEvent).where(
                    AuditEvent.event_type == "PASSKEY_LOGIN_FAILED",
                    AuditEvent.ip_address == ip_address,
                    AuditEvent.timestamp > window_start,
                ))
                if ip_attempts >= settings.MAX_LOGIN_ATTEMPTS_PER_IP:
                    await self._db_manager.log_audit_event(
                        user_id, "LOGIN_RATE_LIMITED", ip_address,
                        {"reason": "ip_rate_limit_exceeded", "attempts": ip_attempts}, db=db,
                    )
                    await db.commit()
                    raise RateLimitError("Too many login attempts from this IP address. Please try again later.")

            if user_id is not None:
                user_attempts = await db.scalar(select(func.count()).select_from(AuditEvent).where(
                    AuditEvent.event_type == "PASSKEY_LOGIN_FAILED",
                    AuditEvent.user_id == user_id,
                    AuditEvent.ip_address == ip_address,
                    AuditEvent.timestamp > window_start,
                ))
                if user_attempts >= settings.MAX_LOGIN_ATTEMPTS_PER_USER:
                    await self._db_manager.log_audit_event(
                        user_id, "LOGIN_RATE_LIMITED", ip_address,
                        {"reason": "user_rate_limit_exceeded", "attempts": user_attempts}, db=db,
                    )
                    await db.commit()
                    raise RateLimitError("Too many failed login attempts for this account. Please try again later.")


class PasskeyService:
    """High-level facade over the relying-party engine."""

    def __init__(self, db_manager: DatabaseManager, core: Optional[PasskeysCore] = None):
        from passkeyrp.manager.ceremonies import RegistrationCeremony, AuthenticationCeremony

        self.db_manager = db_manager
        self.core = core or PasskeysCore()
        self.users = UserManager(db_manager)
        self.credentials = CredentialManager(db_manager)
        self.challenges = ChallengeManager(db_manager)
        self.sessions = SessionManager(db_manager)
        self.audit = AuditManager(db_manager)
        self.registration = RegistrationCeremony(self)
        self.authentication = AuthenticationCeremony(self)

    async def logout(self, token: str, ip_address: Optional[str] = None) -> bool:
        return await self.sessions.destroy(token, ip_address)

    async def delete_account(self, user_id: int, ip_address: str = 'system') -> None:
        await self.users.delete(user_id, ip_address)
