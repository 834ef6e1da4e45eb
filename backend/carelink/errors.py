"""Error taxonomy for the disclosure and claim services.

Every error carries the HTTP status it maps to and a generic, user-safe
message. The message shown to end users never includes identifiers, stack
traces or cryptographic details; ``str(exc)`` may hold a more precise
internal reason for logs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class CareLinkError(Exception):
    status_code: int = 500
    public_message: str = "Something went wrong"

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or self.public_message)

    def public_payload(self) -> dict[str, Any]:
        """Extra fields that are safe to return to the client."""
        return {}


class InvalidInputError(CareLinkError):
    status_code = 400
    public_message = "Invalid request"


class NotFoundError(CareLinkError):
    status_code = 404
    public_message = "Invalid or expired link"


class ExpiredError(CareLinkError):
    status_code = 410
    public_message = "This link has expired"


class ConflictError(CareLinkError):
    status_code = 409
    public_message = "This request is no longer available"


class AlreadyUsedError(ConflictError):
    public_message = "This link has already been used"


class NotOpenError(ConflictError):
    public_message = "This referral is no longer open"


class AlreadyAcceptedError(ConflictError):
    """The referral is held by an invite; ``by_me`` tells whether it is ours."""

    public_message = "This referral has already been accepted by another provider"

    def __init__(
        self,
        reason: str | None = None,
        *,
        by_me: bool = False,
        accepted_by_name: str | None = None,
        accepted_at: datetime | None = None,
    ) -> None:
        super().__init__(reason)
        self.by_me = by_me
        self.accepted_by_name = accepted_by_name
        self.accepted_at = accepted_at
        if by_me:
            self.public_message = "You have already accepted this referral"

    def public_payload(self) -> dict[str, Any]:
        return {
            "already_accepted": True,
            "accepted_by_me": self.by_me,
            "accepted_by_name": None if self.by_me else self.accepted_by_name,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
        }


class UnauthorizedError(CareLinkError):
    status_code = 401
    public_message = "Invalid or expired session"


class InvalidCredentialsError(UnauthorizedError):
    public_message = "Invalid password"

    def __init__(self, remaining_attempts: int) -> None:
        super().__init__(f"invalid credentials, {remaining_attempts} attempts left")
        self.remaining_attempts = remaining_attempts

    def public_payload(self) -> dict[str, Any]:
        return {"remaining_attempts": self.remaining_attempts}


class WrongCodeError(UnauthorizedError):
    public_message = "Incorrect code"

    def __init__(self, remaining_attempts: int) -> None:
        super().__init__(f"wrong code, {remaining_attempts} attempts left")
        self.remaining_attempts = remaining_attempts

    def public_payload(self) -> dict[str, Any]:
        return {"remaining_attempts": self.remaining_attempts}


class BlockedError(CareLinkError):
    status_code = 429
    public_message = "Too many attempts. Request a new code."


class RateLimitedError(CareLinkError):
    status_code = 429
    public_message = "Too many login attempts. Try again later."

    def __init__(self, blocked_until: datetime | None, retry_after_seconds: int) -> None:
        super().__init__(f"rate limited for {retry_after_seconds}s")
        self.blocked_until = blocked_until
        self.retry_after_seconds = retry_after_seconds

    def public_payload(self) -> dict[str, Any]:
        return {
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
            "retry_after": self.retry_after_seconds,
        }


class CryptoError(CareLinkError):
    """Decryption or key handling failed. Fails closed, never partial output."""

    status_code = 500
    public_message = "The message could not be opened"


class KeyServiceUnavailableError(CryptoError):
    """The key service could not be reached. Safe for the platform to retry."""

    status_code = 503


class DeliveryError(CareLinkError):
    """A notification (code, invite link) could not be delivered."""

    status_code = 502
    public_message = "The message could not be delivered"
