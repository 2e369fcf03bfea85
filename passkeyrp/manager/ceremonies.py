"""
Registration and authentication ceremonies.

Each ceremony is an options step (`begin`) and a verify step (`complete`).
A rejected ceremony raises a CeremonyError subclass; callers surface a generic
failure and keep `error.kind` for the logs.
"""
import enum
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from passkeyrp.core.database import User, Credential, Session as DBSession
from passkeyrp.core.encryption import encryption_utils
from passkeyrp.core.exceptions import (
    CeremonyError, ChallengeNotFoundError, CounterRegressionError, DuplicateCredentialError,
    UnknownCredentialError, UserHandleTakenError, MalformedResponseError,
)
from passkeyrp.core.passkeys import CREATE_TYPE, GET_TYPE
from passkeyrp.manager.asynchronous import REGISTRATION, AUTHENTICATION

if TYPE_CHECKING:
    from passkeyrp.manager.asynchronous import PasskeyService

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "Passkey User"


class CeremonyState(str, enum.Enum):
    IDLE = "idle"
    OPTIONS_ISSUED = "options_issued"
    VERIFIED = "verified"
    STORED = "stored"
    SESSION_ISSUED = "session_issued"
    REJECTED = "rejected"


@dataclass
class CeremonyResult:
    state: CeremonyState
    user: User
    credential: Credential
    session: DBSession
    token: str
    user_created: bool = False


class RegistrationCeremony:
    """Idle -> OptionsIssued -> Verified -> Stored, or Rejected."""

    def __init__(self, service: "PasskeyService"):
        self._service = service

    async def begin(self, user_handle: Optional[str] = None, display_name: Optional[str] = None,
                    current_user: Optional[User] = None) -> dict:
        """
        Issues a registration challenge and returns the creation options.

        An authenticated `current_user` always registers under its own handle.
        Without a handle a random one is generated, so passkey creation and
        account creation can be a single step.
        """
        service = self._service
        if current_user is not None:
            user_handle = current_user.username
            display_name = display_name or current_user.display_name or current_user.username
            webauthn_user_id = current_user.webauthn_user_id
            owner = current_user
        else:
            user_handle = user_handle or f"user_{secrets.token_hex(8)}"
            display_name = display_name or DEFAULT_DISPLAY_NAME
            owner = await service.users.get_by_username(user_handle)
            webauthn_user_id = owner.webauthn_user_id if owner else encryption_utils.gen_random_bytes(32)

        existing = await service.credentials.get_for_user(owner.id) if owner else []
        challenge = await service.challenges.issue(
            REGISTRATION, scope=user_handle, webauthn_user_id=webauthn_user_id, display_name=display_name,
        )
        logger.debug(f"Registration options issued for handle '{user_handle}'.")
        return service.core.generate_registration_options(
            challenge=challenge.value,
            user_handle=user_handle,
            display_name=display_name,
            webauthn_user_id=webauthn_user_id,
            exclude_credential_ids=[cred.credential_id for cred in existing],
        )

    async def complete(self, response: dict, current_user: Optional[User] = None,
                       ip_address: Optional[str] = None) -> CeremonyResult:
        """
        Verifies an attestation response, stores the credential (creating the
        user for an unseen handle) and opens a session.
        """
        service = self._service
        core = service.core
        try:
            claimed = core.extract_challenge(response, CREATE_TYPE)
            challenge = await service.challenges.consume(claimed, REGISTRATION)
            material = core.verify_registration(response, challenge.value, core.origins, core.rp_id)
            user, credential, created = await self._store(challenge, material, current_user, ip_address)
        except CeremonyError as e:
            logger.warning(f"Passkey registration rejected: {e.kind}: {e}")
            await service.db_manager.log_audit_event(
                current_user.id if current_user else None, "PASSKEY_REGISTRATION_FAILED", ip_address,
                {"kind": e.kind, "state": CeremonyState.REJECTED.value},
            )
            raise

        session, token = await service.sessions.create(user.id, ip_address)
        logger.info(f"Passkey registered for user {user.id} (new user: {created}).")
        return CeremonyResult(CeremonyState.STORED, user, credential, session, token, user_created=created)

    async def _store(self, challenge, material: dict, current_user: Optional[User], ip_address: Optional[str]):
        service = self._service
        async with service.db_manager.get_db() as db:
            user = await service.users.get_by_username(challenge.scope, db=db)
            created = False
            if user is None:
                user = User(
                    username=challenge.scope,
                    display_name=challenge.display_name or "",
                    webauthn_user_id=challenge.webauthn_user_id,
                )
                db.add(user)
                created = True
            elif current_user is None or current_user.id != user.id:
                raise UserHandleTakenError(f"Handle '{challenge.scope}' belongs to another user.")

            if await service.credentials.get_by_credential_id(material["credential_id"], db=db):
                raise DuplicateCredentialError("This credential is already registered.")

            credential = service.credentials.build(user, material)
            db.add(credential)
            try:
                await db.flush()
                await service.db_manager.log_audit_event(
                    user.id, "PASSKEY_REGISTERED", ip_address,
                    {"alg": material["alg"], "user_created": created}, db=db,
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                # Lost a race: the constraint decides which row was duplicated.
                if await service.credentials.get_by_credential_id(material["credential_id"]):
                    raise DuplicateCredentialError("This credential is already registered.")
                raise UserHandleTakenError(f"Handle '{challenge.scope}' was registered concurrently.")
            return user, credential, created


class AuthenticationCeremony:
    """Idle -> OptionsIssued -> Verified -> SessionIssued, or Rejected."""

    def __init__(self, service: "PasskeyService"):
        self._service = service

    async def begin(self, user_handle: Optional[str] = None) -> dict:
        """
        Issues an authentication challenge. With a handle the options list
        that user's credentials (an empty list for unknown handles); without
        one allowCredentials is omitted for discoverable credentials.
        """
        service = self._service
        allow = None
        if user_handle:
            owner = await service.users.get_by_username(user_handle)
            credentials = await service.credentials.get_for_user(owner.id) if owner else []
            allow = [cred.credential_id for cred in credentials]
        challenge = await service.challenges.issue(AUTHENTICATION, scope=user_handle or None)
        return service.core.generate_authentication_options(challenge.value, allow)

    async def complete(self, response: dict, ip_address: Optional[str] = None) -> CeremonyResult:
        """
        Verifies an assertion and opens a session for the credential's owner.
        The credential id in the response is the only correlator trusted.
        """
        service = self._service
        core = service.core
        await service.audit.check_login_rate_limit(None, ip_address)

        credential = None
        try:
            claimed = core.extract_challenge(response, GET_TYPE)
            challenge = await service.challenges.consume(claimed, AUTHENTICATION)
            credential_id = core.extract_credential_id(response)

            credential = await service.credentials.get_by_credential_id(credential_id)
            if credential is None:
                raise UnknownCredentialError("This passkey is not registered with our service.")
            await service.audit.check_login_rate_limit(credential.user_id, ip_address)

            owner = await service.users.get_by_id(credential.user_id)
            if owner is None:
                raise UnknownCredentialError("Credential owner no longer exists.")
            if challenge.scope is not None and challenge.scope != owner.username:
                raise ChallengeNotFoundError("Challenge was issued for a different user.")
            self._check_user_handle(response, owner)

            new_sign_count = core.verify_assertion(
                response, challenge.value, core.origins, core.rp_id,
                credential.public_key, credential.sign_count,
            )
            await self._store_sign_count(credential, new_sign_count)
        except CeremonyError as e:
            user_id = credential.user_id if credential is not None else None
            if isinstance(e, CounterRegressionError):
                logger.critical(f"Possible cloned authenticator for user {user_id}: {e}")
                await service.db_manager.log_audit_event(
                    user_id, "PASSKEY_CLONE_SUSPECTED", ip_address,
                    {"credential_id": encryption_utils.base64url_encode(credential.credential_id)},
                )
            elif e.kind == "SignatureInvalid":
                logger.error(f"Invalid passkey signature for user {user_id}.")
            else:
                logger.warning(f"Passkey login rejected: {e.kind}: {e}")
            await service.db_manager.log_audit_event(
                user_id, "PASSKEY_LOGIN_FAILED", ip_address,
                {"kind": e.kind, "state": CeremonyState.REJECTED.value},
            )
            raise

        credential.sign_count = new_sign_count
        session, token = await service.sessions.create(owner.id, ip_address)
        await service.db_manager.log_audit_event(owner.id, "PASSKEY_LOGIN_SUCCESS", ip_address)
        logger.info(f"Passkey login for user {owner.id}.")
        return CeremonyResult(CeremonyState.SESSION_ISSUED, owner, credential, session, token)

    async def _store_sign_count(self, credential: Credential, new_sign_count: int) -> None:
        """
        Compare-and-swap the new counter. When a concurrent login moved the
        counter first, re-read it and retry once if the new value still does
        not regress.
        """
        credentials = self._service.credentials
        if await credentials.update_sign_count(credential.id, credential.sign_count, new_sign_count):
            return
        current = await credentials.get_by_credential_id(credential.credential_id)
        if current is None:
            raise UnknownCredentialError("Credential was removed during login.")
        if new_sign_count < current.sign_count:
            raise CounterRegressionError(
                f"Sign count {new_sign_count} is behind {current.sign_count} stored by a concurrent login."
            )
        if not await credentials.update_sign_count(current.id, current.sign_count, new_sign_count):
            raise CounterRegressionError("Sign count kept changing under concurrent logins.")

    @staticmethod
    def _check_user_handle(response: dict, owner: User) -> None:
        user_handle = (response.get("response") or {}).get("userHandle")
        if not user_handle:
            return
        try:
            decoded = encryption_utils.base64url_decode(user_handle)
        except ValueError as e:
            raise MalformedResponseError(f"userHandle is not base64url: {e}")
        if decoded != owner.webauthn_user_id:
            raise UnknownCredentialError("userHandle does not belong to the credential owner.")
