from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code so the surrounding HTTP layer can render any outcome without
    inspecting messages:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Authentication outcomes


class InvalidCredentials(AuthenticationError):
    """Wrong identifier or secret; never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountBanned(ForbiddenError):
    error_code = "account_banned"


class AccountDeactivated(ForbiddenError):
    error_code = "account_deactivated"

    def __init__(
        self, message: str = "Account is deactivated. Contact an administrator.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ForbiddenError):
    error_code = "account_locked"

    def __init__(self, minutes_remaining: int, message: Optional[str] = None) -> None:
        unit = "minute" if minutes_remaining == 1 else "minutes"
        super().__init__(
            message
            or f"Account temporarily locked. Try again in {minutes_remaining} {unit}.",
            detail={"minutes_remaining": minutes_remaining},
        )
        self.minutes_remaining = minutes_remaining


class InvalidMfaCode(AuthenticationError):
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaLocked(RateLimitedError):
    error_code = "mfa_locked"

    def __init__(self, minutes_remaining: int) -> None:
        unit = "minute" if minutes_remaining == 1 else "minutes"
        super().__init__(
            f"Too many failed verification attempts. Try again in {minutes_remaining} {unit}.",
            detail={"minutes_remaining": minutes_remaining},
        )
        self.minutes_remaining = minutes_remaining


class MfaNotEnrolled(ConflictError):
    error_code = "mfa_not_enrolled"


class InvalidSession(AuthenticationError):
    """Pending MFA session missing, expired or already used."""
    error_code = "invalid_session"

    def __init__(
        self, message: str = "Verification session expired. Please log in again.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshToken(AuthenticationError):
    """Re-authentication required; the refresh chain may have been revoked."""
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "Invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshExpired(AuthenticationError):
    """Refresh token aged out; nothing suspicious, no revocation."""
    error_code = "refresh_expired"

    def __init__(
        self, message: str = "Refresh token expired. Please log in again.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


# Credential-change outcomes


class PasswordPolicyViolation(ValidationError):
    error_code = "password_policy_violation"

    def __init__(self, message: str, rule: str) -> None:
        super().__init__(message, detail={"rule": rule})
        self.rule = rule


class PasswordReused(ValidationError):
    error_code = "password_reused"

    def __init__(self, history_count: int) -> None:
        super().__init__(
            f"Password was used recently. Choose one not among your last {history_count} passwords.",
            detail={"history_count": history_count},
        )
        self.history_count = history_count


class ResetTokenInvalid(ValidationError):
    error_code = "reset_token_invalid"

    def __init__(
        self, message: str = "Reset link is invalid or has expired", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class CredentialChangeNotRequired(ForbiddenError):
    error_code = "credential_change_not_required"

    def __init__(
        self,
        message: str = "Password change is not required for this account",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "AccountBanned",
    "AccountDeactivated",
    "AccountLocked",
    "InvalidMfaCode",
    "MfaLocked",
    "MfaNotEnrolled",
    "InvalidSession",
    "InvalidRefreshToken",
    "RefreshExpired",
    "PasswordPolicyViolation",
    "PasswordReused",
    "ResetTokenInvalid",
    "CredentialChangeNotRequired",
]
