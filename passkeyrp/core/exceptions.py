class PasskeyRPError(Exception):
    """Base exception for the passkeyrp library."""
    pass


class CeremonyError(PasskeyRPError):
    """
    Raised when a registration or authentication ceremony is rejected.
    `kind` names the failed check for logs and audit events; it is never
    shown to the end user.
    """
    kind = "CeremonyFailed"


class MalformedResponseError(CeremonyError):
    """Raised when the authenticator response cannot be decoded."""
    kind = "MalformedResponse"


class ChallengeNotFoundError(CeremonyError):
    """Raised when a challenge was never issued for this ceremony (or scope)."""
    kind = "ChallengeNotFound"


class ChallengeExpiredError(CeremonyError):
    """Raised when a challenge is presented after its TTL."""
    kind = "ChallengeExpired"


class ChallengeAlreadyUsedError(CeremonyError):
    """Raised when a challenge has already been consumed."""
    kind = "ChallengeAlreadyUsed"


class ChallengeMismatchError(CeremonyError):
    """Raised when the client data challenge differs from the issued one."""
    kind = "ChallengeMismatch"


class OriginMismatchError(CeremonyError):
    kind = "OriginMismatch"


class RelyingPartyMismatchError(CeremonyError):
    kind = "RelyingPartyMismatch"


class UserVerificationError(CeremonyError):
    """Raised when the UP/UV flags do not satisfy the configured policy."""
    kind = "UserVerification"


class UnsupportedAlgorithmError(CeremonyError):
    kind = "UnsupportedAlgorithm"


class SignatureInvalidError(CeremonyError):
    kind = "SignatureInvalid"


class CounterRegressionError(CeremonyError):
    """
    Raised when the authenticator counter went backwards. The signature may be
    perfectly valid; this is a probable cloned authenticator.
    """
    kind = "CounterRegression"


class DuplicateCredentialError(CeremonyError):
    """Raised when a credential id is already registered to any user."""
    kind = "DuplicateCredential"


class UnknownCredentialError(CeremonyError):
    kind = "UnknownCredential"


class UserHandleTakenError(CeremonyError):
    """Raised when registering under a handle owned by another user."""
    kind = "UserHandleTaken"


class SessionInvalidError(PasskeyRPError):
    """Raised when a session token is unknown, destroyed, or its user is gone."""
    pass


class SessionExpiredError(PasskeyRPError):
    pass


class UserNotFoundError(PasskeyRPError):
    pass


class RateLimitError(PasskeyRPError):
    """Raised when too many failed logins came from one IP or for one user."""
    pass
