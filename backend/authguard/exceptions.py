from datetime import datetime


class AuthGuardError(Exception):
    """Base exception for the abuse-prevention engine."""

    default_message = "Request could not be completed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentialsError(AuthGuardError):
    """Wrong secret or unknown identifier. Always reported identically."""

    default_message = "Invalid credentials."


class AccountLockedError(AuthGuardError):
    """Raised when the account is locked, with the remaining duration when known."""

    def __init__(self, locked_until: datetime | None = None, remaining_minutes: int | None = None):
        self.locked_until = locked_until
        self.remaining_minutes = remaining_minutes
        if locked_until is None:
            message = "Account is locked. Please contact support."
        else:
            message = (
                f"Account is locked. Please try again in {remaining_minutes or 1} minute(s)."
            )
        super().__init__(message)


class AddressBlockedError(AuthGuardError):
    """Raised when the source address is blocked."""

    default_message = (
        "Access from your network has been blocked due to suspicious activity. "
        "Please contact support."
    )


class CodeExpiredOrInvalidError(AuthGuardError):
    """Not found, expired, wrong value and exhausted attempts all map here."""

    default_message = "Invalid or expired code. Please request a new code."

    def __init__(self, attempts_remaining: int | None = None):
        self.attempts_remaining = attempts_remaining
        super().__init__()


class DeliveryFailedError(AuthGuardError):
    """The code was stored but could not be sent. Issuance may be retried."""

    default_message = "We could not send your code. Please try again."
    retryable = True

    def __init__(self, reason: str | None = None, code_id: int | None = None):
        self.reason = reason
        self.code_id = code_id
        super().__init__()


class DeliveryRateLimitedError(AuthGuardError):
    """Too many codes sent to the same destination within the last hour."""

    default_message = "Too many codes requested. Please try again in 1 hour."
    retryable = True


class PhoneNumberInUseError(AuthGuardError):
    default_message = "This phone number is already verified on another account."


class TwoFactorStateError(AuthGuardError):
    """2FA enable/disable requested in a state that does not allow it."""


class UserNotFoundError(AuthGuardError):
    """Only raised for administrative actions, never on public paths."""

    default_message = "User not found."


class StorageUnavailableError(AuthGuardError):
    """Storage failed during a security decision. The request is denied."""

    default_message = "Internal server error."
